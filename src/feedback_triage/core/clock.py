"""Timezone-aware wall clock shared by models, repositories and the pipeline."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
