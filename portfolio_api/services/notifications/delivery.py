"""
Per-recipient delivery of a new-post notification.

Shared by the synchronous send path and the dispatch-queue consumer so that both
render, tokenize and record a send the same way.
"""

from datetime import UTC, datetime
from urllib.parse import quote

from portfolio_api.errors import PipelineError
from portfolio_api.infrastructure.observability.logging import get_logger
from portfolio_api.models.domain.notification_domain import NotificationJob
from portfolio_api.models.domain.subscriber_domain import UNSUBSCRIBE_TOKEN_TTL_SECONDS, TokenAction
from portfolio_api.security.hashing import mask_email
from portfolio_api.services.email.templates import build_new_post_email
from portfolio_api.services.email.transport import EmailTransport
from portfolio_api.services.subscribers.directory import SubscriberDirectory
from portfolio_api.services.tokens.token_store import TokenStore

logger = get_logger(__name__)


def unsubscribe_url(site_url: str, raw_token: str) -> str:
    return f"{site_url}/notifications/unsubscribe?token={quote(raw_token, safe='')}"


class NotificationDeliverer:
    def __init__(
        self,
        tokens: TokenStore,
        directory: SubscriberDirectory,
        transport: EmailTransport,
        site_url: str,
    ):
        self.tokens = tokens
        self.directory = directory
        self.transport = transport
        self.site_url = site_url

    async def deliver(self, job: NotificationJob) -> str | None:
        """
        Mint a fresh unsubscribe token, render and send one email.

        Raises whatever the token store or transport raises; recording the send
        on the subscriber afterwards is best-effort.
        """
        raw_token = await self.tokens.issue(
            job.email_hash, TokenAction.UNSUBSCRIBE, UNSUBSCRIBE_TOKEN_TTL_SECONDS
        )
        email = build_new_post_email(
            title=job.title,
            summary=job.summary,
            post_url=job.post_url,
            unsubscribe_url=unsubscribe_url(self.site_url, raw_token),
            image_url=job.hero_image_url,
            tags=job.tags,
            read_time_minutes=job.read_time_minutes,
        )
        message_id = await self.transport.send(job.recipient_email, email)

        try:
            touched = await self.directory.touch_last_notified(
                job.email_hash, datetime.now(UTC).isoformat()
            )
            if not touched:
                logger.debug("Notified recipient no longer has a subscriber record", to=mask_email(job.recipient_email))
        except PipelineError as e:
            logger.warning(
                "Failed to record lastNotifiedAt",
                to=mask_email(job.recipient_email),
                error=e.message,
            )

        return message_id
