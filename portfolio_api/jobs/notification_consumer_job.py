"""
Notification consumer: drain the dispatch queue.

Successful messages are acked. Failed ones stay pending and are redelivered
after the visibility timeout, until they land in the dead-letter stream.
"""

from portfolio_api.config import settings
from portfolio_api.errors import ConfigurationError
from portfolio_api.infrastructure.observability.logging import bind_invocation, get_logger
from portfolio_api.services.container import ServiceContainer, build_container

logger = get_logger(__name__)


async def run_notification_consumer(
    container: ServiceContainer | None = None,
    max_batches: int | None = None,
) -> dict:
    owns_container = container is None
    container = container or build_container(settings)
    max_batches = max_batches or settings.DISPATCH_CONSUMER_MAX_BATCHES
    bind_invocation(job="notification_consumer")

    totals = {"batches": 0, "received": 0, "processed": 0, "failed": 0, "acked": 0}
    try:
        if container.queue is None:
            raise ConfigurationError("DISPATCH_QUEUE_ENABLED is off; nothing to consume")

        for _ in range(max_batches):
            messages = await container.queue.receive()
            if not messages:
                break

            result = await container.consumer.process_messages(messages)
            failed_ids = {item["itemIdentifier"] for item in result.batch_item_failures}
            ack_ids = [m.message_id for m in messages if m.message_id not in failed_ids]
            acked = await container.queue.ack(ack_ids)

            totals["batches"] += 1
            totals["received"] += len(messages)
            totals["processed"] += result.processed
            totals["failed"] += result.failed
            totals["acked"] += acked

        logger.info("Notification consumer run complete", **totals)
        return totals
    finally:
        if owns_container:
            await container.close()
