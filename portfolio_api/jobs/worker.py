"""
One-shot job runner for cron and platform schedulers.

    python -m portfolio_api.jobs.worker scheduler_tick
    WORKER_JOB=notification_consumer python -m portfolio_api.jobs.worker

The job runs once; its summary is logged and the process exits non-zero when the
job raised.
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from portfolio_api.config import settings
from portfolio_api.errors import PipelineError
from portfolio_api.infrastructure.observability.logging import get_logger, setup_logging
from portfolio_api.jobs.notification_consumer_job import run_notification_consumer
from portfolio_api.jobs.scheduler_tick_job import run_scheduler_tick

logger = get_logger(__name__)

DEFAULT_JOB = "scheduler_tick"

JobCoroutine = Callable[[], Awaitable[dict]]

JOB_REGISTRY: dict[str, JobCoroutine] = {
    "scheduler_tick": run_scheduler_tick,
    "notification_consumer": run_notification_consumer,
}


def _resolve_job_name() -> str:
    """First CLI argument wins over WORKER_JOB."""
    raw = sys.argv[1] if len(sys.argv) > 1 else os.getenv("WORKER_JOB", DEFAULT_JOB)
    return raw.strip().lower()


async def run_worker(job_name: str | None = None) -> dict:
    name = (job_name or _resolve_job_name()).strip().lower()
    job = JOB_REGISTRY.get(name)
    if job is None:
        raise ValueError(f"Unknown worker job '{name}'. Available jobs: {', '.join(sorted(JOB_REGISTRY))}")

    logger.info("Worker job starting", job=name)
    summary = await job()
    logger.info("Worker job finished", job=name, summary=summary)
    return summary


def main() -> None:
    setup_logging(log_level=settings.LOG_LEVEL)
    job_name = _resolve_job_name()
    try:
        asyncio.run(run_worker(job_name))
    except PipelineError as e:
        logger.error("Worker job failed", job=job_name, error=e.message, error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    main()
