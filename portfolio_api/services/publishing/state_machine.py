"""
Publish State Machine: draft -> scheduled -> published.

The scheduled -> published edge is taken when the armed trigger fires the worker
webhook; ``publish_now`` is safe to call more than once for the same post.
"""

from collections.abc import Callable
from datetime import UTC, datetime

from portfolio_api.errors import InvalidRequestError, PipelineError
from portfolio_api.infrastructure.observability.logging import get_logger
from portfolio_api.models.domain.blog_domain import PublishStatus
from portfolio_api.models.domain.notification_domain import (
    PUBLISH_TRIGGER_KIND,
    PublishResult,
    ScheduleResult,
)
from portfolio_api.security.hashing import sha256_hex
from portfolio_api.services.content.blog_posts import BlogPostRepository
from portfolio_api.services.notifications.pipeline import NotificationPipeline
from portfolio_api.services.scheduler.bridge import SchedulerBridge, to_run_at_utc

logger = get_logger(__name__)

MAX_SCHEDULE_NAME_LENGTH = 64


def build_schedule_name(group_id: str, now: datetime) -> str:
    """Deterministic prefix per post plus a millisecond stamp per arm."""
    stamp = int(now.timestamp() * 1000)
    return f"blog-{sha256_hex(group_id)[:12]}-{stamp}"[:MAX_SCHEDULE_NAME_LENGTH]


def parse_publish_at(value: str | datetime, now: datetime) -> datetime:
    """
    Parse an ISO-8601 instant that must lie in the future.

    Naive values are taken as UTC. The result is truncated to whole seconds.

    Raises:
        InvalidRequestError: unparseable or not in the future
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        text = (value or "").strip()
        if not text:
            raise InvalidRequestError("publishAt is required")
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as e:
            raise InvalidRequestError("Invalid publishAt date") from e

    run_at = to_run_at_utc(parsed)
    if run_at <= now:
        raise InvalidRequestError("publishAt must be in the future")
    return run_at


def _utc_now() -> datetime:
    return datetime.now(UTC)


class PublishStateMachine:
    def __init__(
        self,
        posts: BlogPostRepository,
        scheduler: SchedulerBridge,
        pipeline: NotificationPipeline,
        default_topic: str = "blog_posts",
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.posts = posts
        self.scheduler = scheduler
        self.pipeline = pipeline
        self.default_topic = default_topic
        self.clock = clock

    async def schedule_publish(
        self,
        group_id: str,
        publish_at: str | datetime,
        notify: bool = True,
        topic: str | None = None,
    ) -> ScheduleResult:
        """
        Arm a one-shot trigger that publishes ``group_id`` at ``publish_at``.

        Rescheduling replaces the previous trigger; at most one trigger per post
        is live once this returns.

        Raises:
            ConfigurationError: scheduler target or secret missing
            InvalidRequestError: bad or past ``publish_at``
            NotFoundError: the post has no body content
        """
        self.scheduler.require_configured()

        now = self.clock()
        run_at = parse_publish_at(publish_at, now)
        topic = topic or self.default_topic

        records, post = await self.posts.require_post(group_id)

        if post.schedule_name:
            try:
                await self.scheduler.disarm(post.schedule_name)
            except PipelineError as e:
                logger.warning(
                    "Failed to disarm previous trigger",
                    group_id=group_id,
                    schedule_name=post.schedule_name,
                    error=e.message,
                )

        schedule_name = build_schedule_name(group_id, now)
        scheduled_for = await self.scheduler.arm(
            schedule_name,
            run_at,
            {
                "kind": PUBLISH_TRIGGER_KIND,
                "groupId": group_id,
                "notify": notify,
                "topic": topic,
            },
        )

        await self.posts.update_metadata(
            group_id,
            {
                "status": PublishStatus.SCHEDULED.value,
                "publishAt": scheduled_for.isoformat(),
                "scheduleName": schedule_name,
                "notifyTopic": topic,
                "notifyOnPublish": notify,
            },
            records=records,
        )

        logger.info(
            "Blog post scheduled",
            group_id=group_id,
            schedule_name=schedule_name,
            scheduled_for=scheduled_for.isoformat(),
            notify=notify,
        )
        return ScheduleResult(schedule_name=schedule_name, scheduled_for=scheduled_for.isoformat())

    async def cancel_schedule(self, schedule_name: str) -> bool:
        """
        Disarm a trigger by name. Post status is left as it is.

        Returns:
            True when a trigger existed
        """
        if not schedule_name or not schedule_name.strip():
            raise InvalidRequestError("scheduleName is required")
        removed = await self.scheduler.disarm(schedule_name.strip())
        logger.info("Schedule cancelled", schedule_name=schedule_name, existed=removed)
        return removed

    async def publish_now(
        self,
        group_id: str,
        notify: bool = True,
        topic: str | None = None,
    ) -> PublishResult:
        records, post = await self.posts.require_post(group_id)
        topic = topic or self.default_topic

        already_published = post.is_published()
        if already_published:
            logger.info("Blog post already published", group_id=group_id)
        else:
            await self.posts.update_metadata(
                group_id,
                {
                    "status": PublishStatus.PUBLISHED.value,
                    "publishAt": self.clock().isoformat(),
                    "scheduleName": None,
                },
                records=records,
            )
            logger.info("Blog post published", group_id=group_id, previous_status=post.status.value)

        result = PublishResult(group_id=group_id, already_published=already_published)
        if notify:
            result.notification = await self.pipeline.send_notification(group_id, topic)
            result.ok = result.notification.ok
        return result
