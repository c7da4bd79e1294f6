"""
Pytest configuration and shared fixtures.

Repository, orchestrator and API tests run against a throwaway SQLite file
through aiosqlite. LLM calls go to a scripted stub.

Run with:
    pytest tests/
    pytest tests/test_job_repository.py -v
"""

import os
from functools import partial
from typing import Optional

# Must be set before feedback_triage.config builds the settings object
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("MOCK_LLM", "true")
os.environ.setdefault("RUN_PIPELINE_WORKER", "false")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from feedback_triage.config import SenderType, ThreadStatus
from feedback_triage.infrastructure.database import Base, make_session_maker
from feedback_triage.pipeline.infrastructure import SQLAlchemyUnitOfWork
from feedback_triage.pipeline.infrastructure import models  # noqa: F401


# ========== Database ==========

@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh SQLite database file per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return make_session_maker(engine)


@pytest.fixture
def uow_factory(session_maker):
    return partial(SQLAlchemyUnitOfWork, session_maker)


@pytest.fixture
def make_thread(uow_factory):
    """Create a thread with user messages; returns its id."""

    async def _make(
        messages=("The export button does nothing when I click it.",),
        status: str = ThreadStatus.OPEN,
        thread_state: Optional[dict] = None,
    ) -> int:
        async with uow_factory() as uow:
            thread = await uow.threads.create(title="Export broken", status=status, thread_state=thread_state)
            for text in messages:
                await uow.messages.create(thread.id, sender_type=SenderType.USER, raw_text=text, sender_name="Dana")
            await uow.commit()
            return thread.id

    return _make


@pytest.fixture
def make_job(uow_factory):
    """Create a pending job for a thread; returns the detached row."""

    async def _make(thread_id: int, **kwargs):
        async with uow_factory() as uow:
            job = await uow.jobs.create(thread_id, **kwargs)
            await uow.commit()
            return job

    return _make


@pytest.fixture
def claim_one(uow_factory):
    async def _claim():
        async with uow_factory() as uow:
            jobs = await uow.jobs.claim_next(1)
            await uow.commit()
        assert len(jobs) == 1
        return jobs[0]

    return _claim
