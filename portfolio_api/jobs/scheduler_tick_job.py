"""
Scheduler tick: deliver every due one-shot trigger to the worker webhook.

Meant to be run every minute by cron or the platform scheduler.
"""

from portfolio_api.config import settings
from portfolio_api.infrastructure.observability.logging import bind_invocation, get_logger
from portfolio_api.services.container import ServiceContainer, build_container

logger = get_logger(__name__)


async def run_scheduler_tick(container: ServiceContainer | None = None) -> dict:
    owns_container = container is None
    container = container or build_container(settings)
    bind_invocation(job="scheduler_tick")

    try:
        summary = await container.scheduler.fire_due()
        logger.info("Scheduler tick complete", **summary.to_dict())
        return summary.to_dict()
    finally:
        if owns_container:
            await container.close()
