# models/domain/notification_domain.py
"""
Notification pipeline domain models: queued jobs and structured results.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

NOTIFICATION_MESSAGE_TYPE = "blog_post_notification"
PUBLISH_TRIGGER_KIND = "publish_blog_post"

DeliveryMode = Literal["direct", "queued"]


class NotificationJob(BaseModel):
    """One (post, recipient) notification. Re-derivable from post + subscriber."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    group_id: str
    topic: str
    email_hash: str
    recipient_email: str
    title: str
    summary: str = ""
    post_url: str
    hero_image_url: str | None = None
    tags: list[str] = Field(default_factory=list)
    read_time_minutes: int | None = None

    def to_message_body(self) -> dict[str, Any]:
        return {
            "type": NOTIFICATION_MESSAGE_TYPE,
            "payload": self.model_dump(by_alias=True),
        }


class QueueMessage(BaseModel):
    """A message as received from the dispatch queue."""

    message_id: str
    body: dict[str, Any]
    receive_count: int = 1


class QueueEntry(BaseModel):
    """A message ready to send, with optional FIFO group and dedup keys."""

    entry_id: str
    body: dict[str, Any]
    group_key: str | None = None
    dedup_id: str | None = None


class BatchSendResult(BaseModel):
    succeeded: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)


class NotificationResult(BaseModel):
    """Outcome of one fan-out attempt."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    ok: bool = True
    skipped: bool = False
    reason: str | None = None
    delivery: DeliveryMode | None = None
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    total: int = 0
    marker_written: bool = False

    @classmethod
    def noop(cls, reason: str) -> "NotificationResult":
        return cls(ok=True, skipped=True, reason=reason)


class BatchProcessResult(BaseModel):
    """Consumer-side result; failures are retried individually by the queue."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    ok: bool
    processed: int
    failed: int
    batch_item_failures: list[dict[str, str]] = Field(default_factory=list)


class PublishResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    ok: bool = True
    group_id: str
    published: bool = True
    already_published: bool = False
    notification: NotificationResult | None = None


class ScheduleResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    ok: bool = True
    schedule_name: str
    scheduled_for: str
