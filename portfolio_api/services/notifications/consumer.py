"""
Dispatch queue consumer.

Every message is processed independently. A failure is reported as a discrete
retry item for that message only, so one bad message cannot block its siblings.
"""

from pydantic import ValidationError

from portfolio_api.infrastructure.observability.logging import get_logger
from portfolio_api.models.domain.notification_domain import (
    NOTIFICATION_MESSAGE_TYPE,
    BatchProcessResult,
    NotificationJob,
    QueueMessage,
)
from portfolio_api.security.hashing import mask_email
from portfolio_api.services.notifications.delivery import NotificationDeliverer

logger = get_logger(__name__)


class NotificationQueueConsumer:
    def __init__(self, deliverer: NotificationDeliverer):
        self.deliverer = deliverer

    async def process_messages(self, messages: list[QueueMessage]) -> BatchProcessResult:
        failures: dict[str, dict[str, str]] = {}
        processed = 0

        for message in messages:
            message_type = message.body.get("type")
            if not message_type:
                logger.warning("Queue message without a type", message_id=message.message_id)
                failures[message.message_id] = {"itemIdentifier": message.message_id}
                continue
            if message_type != NOTIFICATION_MESSAGE_TYPE:
                # Not ours; leave it to the processor that owns this type
                continue

            try:
                job = NotificationJob.model_validate(message.body.get("payload") or {})
            except ValidationError as e:
                logger.error(
                    "Malformed notification job",
                    message_id=message.message_id,
                    error_count=e.error_count(),
                )
                failures[message.message_id] = {"itemIdentifier": message.message_id}
                continue

            try:
                await self.deliverer.deliver(job)
                processed += 1
            except Exception as e:
                logger.error(
                    "Notification job failed",
                    message_id=message.message_id,
                    group_id=job.group_id,
                    to=mask_email(job.recipient_email),
                    receive_count=message.receive_count,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                failures[message.message_id] = {"itemIdentifier": message.message_id}

        batch_item_failures = list(failures.values())
        return BatchProcessResult(
            ok=not batch_item_failures,
            processed=processed,
            failed=len(batch_item_failures),
            batch_item_failures=batch_item_failures,
        )
