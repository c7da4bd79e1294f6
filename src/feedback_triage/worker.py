"""
Standalone Pipeline Worker
==========================

Runs the poll loop without the HTTP API. Start as many of these as needed;
they coordinate through the database only.

    feedback-triage-worker
"""

import asyncio
import signal

from feedback_triage.config import settings
from feedback_triage.infrastructure.database import close_database, init_database
from feedback_triage.runtime import PipelineRuntime
from feedback_triage.shared.infrastructure.logging import get_logger, setup_logging

logger = get_logger(__name__)


async def run_worker() -> None:
    setup_logging(settings.log_level, settings.environment)
    init_database()

    runtime = PipelineRuntime()
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await runtime.start()
    logger.info("Pipeline worker running", extra={
        "claim_limit": runtime.worker.claim_limit,
        "concurrency": runtime.worker.concurrency,
        "lease_seconds": runtime.worker.lease_seconds,
        "heartbeat_interval_seconds": settings.pipeline_heartbeat_interval_seconds,
    })

    try:
        await stop_event.wait()
    finally:
        logger.info("Pipeline worker stopping")
        await runtime.stop(timeout=settings.llm_request_timeout_seconds)
        await close_database()
        logger.info("Pipeline worker stopped")


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
