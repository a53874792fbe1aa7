"""
Notification Pipeline: fan a published post out to every subscribed recipient.

Idempotency is marker based. The ``blog_notify_sent`` marker for (topic, group) is
written only after every recipient was accepted by the queue (or sent directly).
A partial failure leaves no marker, so the next trigger re-attempts the whole
recipient set; recipients that already got the email may get it again.
"""

import asyncio
from datetime import UTC, datetime
from urllib.parse import quote

from portfolio_api.errors import PipelineError
from portfolio_api.infrastructure.observability.logging import get_logger
from portfolio_api.models.domain.blog_domain import BlogPost, ContentRecord
from portfolio_api.models.domain.notification_domain import NotificationJob, NotificationResult
from portfolio_api.models.domain.subscriber_domain import Subscriber
from portfolio_api.security.hashing import mask_email, normalize_email
from portfolio_api.services.content.blog_posts import BlogPostRepository
from portfolio_api.services.notifications.delivery import NotificationDeliverer
from portfolio_api.services.queue.dispatch_queue import DispatchQueue, build_entries, chunked
from portfolio_api.services.subscribers.directory import SubscriberDirectory
from portfolio_api.services.tokens.token_store import TokenStore

logger = get_logger(__name__)


def post_url(site_url: str, group_id: str) -> str:
    return f"{site_url}/blog/{quote(group_id, safe='')}"


class NotificationPipeline:
    def __init__(
        self,
        posts: BlogPostRepository,
        directory: SubscriberDirectory,
        tokens: TokenStore,
        deliverer: NotificationDeliverer,
        queue: DispatchQueue | None,
        site_url: str,
        enabled: bool = True,
        allowlist: list[str] | None = None,
        direct_concurrency: int = 10,
    ):
        self.posts = posts
        self.directory = directory
        self.tokens = tokens
        self.deliverer = deliverer
        self.queue = queue
        self.site_url = site_url
        self.enabled = enabled
        self.allowlist = set(allowlist) if allowlist else None
        self.direct_concurrency = max(1, direct_concurrency)

    async def send_notification(
        self, group_id: str, topic: str, force: bool = False
    ) -> NotificationResult:
        """
        Notify every subscriber of ``topic`` about the post ``group_id``.

        Returns a structured result; partial failure is reported, not raised.

        Raises:
            NotFoundError: the post has no body content
            DependencyUnavailableError: subscriber or token store unreachable
        """
        if not self.enabled:
            logger.info("Email notifications disabled, skipping", group_id=group_id, topic=topic)
            return NotificationResult.noop("notifications_disabled")

        if not force and await self.tokens.has_send_marker(topic, group_id):
            logger.info("Notification already sent, skipping", group_id=group_id, topic=topic)
            return NotificationResult.noop("already_sent")

        records, post = await self.posts.require_post(group_id)

        recipients = await self.compute_recipients(topic)
        jobs = self.build_jobs(post, recipients, topic)

        if self.queue is not None:
            delivery = "queued"
            succeeded, failed = await self._enqueue(jobs)
        else:
            delivery = "direct"
            succeeded, failed = await self._send_direct(jobs)

        result = NotificationResult(
            ok=failed == 0,
            delivery=delivery,
            attempted=len(jobs),
            succeeded=succeeded,
            failed=failed,
            total=len(recipients),
        )

        if failed:
            logger.warning(
                "Notification fan-out incomplete, marker withheld",
                group_id=group_id,
                topic=topic,
                delivery=delivery,
                succeeded=succeeded,
                failed=failed,
            )
            return result

        try:
            await self.tokens.write_send_marker(topic, group_id, delivery, len(jobs))
        except PipelineError as e:
            # Sends already went out: log and report, do not raise
            logger.error(
                "Failed to write notification marker",
                group_id=group_id,
                topic=topic,
                error=e.message,
            )
            return result
        result.marker_written = True

        await self._write_breadcrumb(group_id, records, delivery, len(jobs))

        logger.info(
            "Notification fan-out complete",
            group_id=group_id,
            topic=topic,
            delivery=delivery,
            recipients=len(jobs),
        )
        return result

    async def compute_recipients(self, topic: str) -> list[Subscriber]:
        recipients = await self.directory.list_subscribed(topic)
        if self.allowlist is None:
            return recipients
        allowed = [s for s in recipients if normalize_email(s.email) in self.allowlist]
        logger.info(
            "Send allow-list applied",
            topic=topic,
            subscribed=len(recipients),
            allowed=len(allowed),
        )
        return allowed

    def build_jobs(
        self, post: BlogPost, recipients: list[Subscriber], topic: str
    ) -> list[NotificationJob]:
        url = post_url(self.site_url, post.group_id)
        jobs = []
        for subscriber in recipients:
            if not subscriber.email:
                continue
            jobs.append(
                NotificationJob(
                    group_id=post.group_id,
                    topic=topic,
                    email_hash=subscriber.email_hash,
                    recipient_email=subscriber.email,
                    title=post.title,
                    summary=post.summary or "",
                    post_url=url,
                    hero_image_url=post.hero_image_url,
                    tags=post.tags,
                    read_time_minutes=post.read_time_minutes,
                )
            )
        return jobs

    async def _enqueue(self, jobs: list[NotificationJob]) -> tuple[int, int]:
        succeeded = 0
        failed = 0
        offset = 0
        for chunk in chunked(jobs):
            entries = build_entries(chunk, fifo=self.queue.fifo, offset=offset)
            offset += len(chunk)
            batch = await self.queue.send_batch(entries)
            succeeded += len(batch.succeeded)
            failed += len(batch.failed)
        return succeeded, failed

    async def _send_direct(self, jobs: list[NotificationJob]) -> tuple[int, int]:
        semaphore = asyncio.Semaphore(self.direct_concurrency)

        async def send_one(job: NotificationJob) -> bool:
            async with semaphore:
                try:
                    await self.deliverer.deliver(job)
                    return True
                except PipelineError as e:
                    logger.error(
                        "Direct notification send failed",
                        group_id=job.group_id,
                        to=mask_email(job.recipient_email),
                        error=e.message,
                        error_type=type(e).__name__,
                    )
                    return False

        outcomes = await asyncio.gather(*(send_one(job) for job in jobs))
        succeeded = sum(1 for ok in outcomes if ok)
        return succeeded, len(outcomes) - succeeded

    async def _write_breadcrumb(
        self,
        group_id: str,
        records: list[ContentRecord],
        delivery: str,
        recipient_count: int,
    ) -> None:
        try:
            await self.posts.update_metadata(
                group_id,
                {
                    "emailNotificationSentAt": datetime.now(UTC).isoformat(),
                    "delivery": delivery,
                    "recipientCount": recipient_count,
                },
                records=records,
            )
        except PipelineError as e:
            logger.warning("Failed to write notification breadcrumb", group_id=group_id, error=e.message)
