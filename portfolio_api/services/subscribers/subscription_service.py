"""
Subscription Service: double opt-in subscriber lifecycle.

PENDING --confirm--> SUBSCRIBED --unsubscribe--> UNSUBSCRIBED
any --bounce--> BOUNCED, any --complaint--> COMPLAINED

BOUNCED and COMPLAINED are delivery-feedback overlays: confirm and unsubscribe
consume their token but never move a subscriber out of them.
"""

import re
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

from portfolio_api.errors import EmailDeliveryError, InvalidRequestError, PipelineError
from portfolio_api.infrastructure.observability.logging import get_logger
from portfolio_api.models.domain.subscriber_domain import (
    CONFIRM_TOKEN_TTL_SECONDS,
    MANAGE_TOKEN_TTL_SECONDS,
    UNSUBSCRIBE_TOKEN_TTL_SECONDS,
    ActionToken,
    DeliveryFeedback,
    FeedbackKind,
    SubscriberStatus,
    TokenAction,
)
from portfolio_api.security.hashing import hash_email, mask_email, normalize_email
from portfolio_api.services.email.templates import (
    build_confirm_email,
    build_manage_email,
    build_subscribed_email,
    build_unsubscribed_email,
)
from portfolio_api.services.email.transport import EmailTransport
from portfolio_api.services.subscribers.directory import SubscriberDirectory
from portfolio_api.services.tokens.token_store import TokenStore

logger = get_logger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
DEFAULT_TOPICS = ["blog_posts"]

FEEDBACK_EVENT_KINDS = {
    "email.bounced": FeedbackKind.BOUNCE,
    "email.complained": FeedbackKind.COMPLAINT,
}

SANDBOX_NOT_VERIFIED_MESSAGE = (
    "Email address is not verified. The sending domain is in test mode; "
    "verify your recipient email with the provider or request production access."
)


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_RE.match(email or ""))


def sanitize_topics(requested: Any, allowed: list[str]) -> list[str]:
    """Keep allowed topics in request order, without duplicates."""
    if not isinstance(requested, list):
        return list(DEFAULT_TOPICS)
    topics: list[str] = []
    for raw in requested:
        topic = str(raw or "").strip().lower()
        if topic and topic in allowed and topic not in topics:
            topics.append(topic)
    return topics or list(DEFAULT_TOPICS)


def parse_feedback_event(event: dict[str, Any]) -> DeliveryFeedback | None:
    """
    Normalize a provider webhook event.

    Returns None for event types that carry no bounce or complaint.
    """
    kind = FEEDBACK_EVENT_KINDS.get(str(event.get("type") or ""))
    if kind is None:
        return None

    data = event.get("data") or {}
    to = data.get("to") or []
    if isinstance(to, str):
        to = [to]

    detail = data.get("bounce") if kind == FeedbackKind.BOUNCE else data.get("complaint")
    feedback_type = None
    if isinstance(detail, dict):
        feedback_type = detail.get("type") or detail.get("subType")

    return DeliveryFeedback(
        kind=kind,
        recipients=[str(addr) for addr in to if addr],
        occurred_at=str(event.get("created_at") or datetime.now(UTC).isoformat()),
        feedback_type=feedback_type or kind.value,
    )


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class SubscriptionService:
    def __init__(
        self,
        directory: SubscriberDirectory,
        tokens: TokenStore,
        transport: EmailTransport,
        site_url: str,
        allowed_topics: list[str],
        brand_logo_url: str | None = None,
    ):
        self.directory = directory
        self.tokens = tokens
        self.transport = transport
        self.site_url = site_url
        self.allowed_topics = allowed_topics
        self.brand_logo_url = brand_logo_url

    def _link(self, path: str, raw_token: str) -> str:
        return f"{self.site_url}{path}?token={quote(raw_token, safe='')}"

    @property
    def blog_url(self) -> str:
        return f"{self.site_url}/blog"

    async def request_subscription(
        self,
        email: str,
        topics: list[str] | None = None,
        source: str = "blog",
        consent_ip: str | None = None,
        consent_user_agent: str | None = None,
    ) -> dict[str, Any]:
        """
        Start a double opt-in.

        Raises:
            InvalidRequestError: bad address, or recipient not verified by the provider
            EmailDeliveryError: confirmation email could not be sent
        """
        normalized = normalize_email(email)
        if not is_valid_email(normalized):
            raise InvalidRequestError("Invalid email address")

        topic_list = sanitize_topics(topics, self.allowed_topics)
        email_hash = hash_email(normalized)

        existing = await self.directory.get(email_hash)
        if existing is not None:
            if existing.status == SubscriberStatus.SUBSCRIBED:
                return {
                    "ok": True,
                    "status": "ALREADY_SUBSCRIBED",
                    "alreadySubscribed": True,
                    "message": "This email is already subscribed.",
                }
            if existing.status == SubscriberStatus.PENDING:
                return {
                    "ok": True,
                    "status": "ALREADY_PENDING",
                    "alreadyPending": True,
                    "message": "A confirmation email has already been sent. Please check your inbox.",
                }
            if existing.status.is_feedback_overlay:
                logger.info(
                    "Subscription request for suppressed address",
                    to=mask_email(normalized),
                    status=existing.status.value,
                )
                return {"ok": True, "status": "SUPPRESSED"}

        await self.directory.upsert_pending(
            email_hash,
            normalized,
            topic_list,
            source or "blog",
            _now_iso(),
            consent_ip=consent_ip,
            consent_user_agent=consent_user_agent,
        )

        raw_token = await self.tokens.issue(email_hash, TokenAction.CONFIRM, CONFIRM_TOKEN_TTL_SECONDS)
        confirm_email = build_confirm_email(
            self._link("/notifications/confirm", raw_token),
            brand_logo_url=self.brand_logo_url,
        )

        try:
            await self.transport.send(normalized, confirm_email)
        except EmailDeliveryError as e:
            if e.recipient_not_verified:
                raise InvalidRequestError(SANDBOX_NOT_VERIFIED_MESSAGE) from e
            raise EmailDeliveryError("Unable to send confirmation email at this time") from e

        logger.info("Subscription requested", to=mask_email(normalized), topics=topic_list)
        return {"ok": True, "status": SubscriberStatus.PENDING.value}

    async def _resolve_token(self, raw_token: str | None, allowed: set[TokenAction]) -> ActionToken:
        raw = (raw_token or "").strip()
        if not raw:
            raise InvalidRequestError("Missing token")

        token = await self.tokens.lookup(raw)
        if token is None or token.action not in allowed:
            raise InvalidRequestError("Invalid or expired token")

        if token.is_expired():
            if token.action.single_use:
                await self.tokens.consume(token.token_hash)
            raise InvalidRequestError("Token expired")
        return token

    async def _send_best_effort(self, email_hash: str, build, label: str) -> None:
        try:
            subscriber = await self.directory.get(email_hash)
            if subscriber is None or not subscriber.email:
                return
            await self.transport.send(subscriber.email, await build())
        except PipelineError as e:
            logger.warning("Best-effort email failed", email_kind=label, error=e.message)

    async def confirm_subscription(self, raw_token: str | None) -> dict[str, Any]:
        token = await self._resolve_token(raw_token, {TokenAction.CONFIRM})
        email_hash = token.subject_hash

        subscriber = await self.directory.get(email_hash)
        if subscriber is not None and subscriber.status.is_feedback_overlay:
            await self.tokens.consume(token.token_hash)
            logger.info("Confirm ignored for suppressed subscriber", status=subscriber.status.value)
            return {"ok": True, "status": subscriber.status.value}

        await self.directory.mark_subscribed(email_hash, _now_iso())
        await self.tokens.consume(token.token_hash)

        async def build_welcome():
            unsubscribe_token = await self.tokens.issue(
                email_hash, TokenAction.UNSUBSCRIBE, UNSUBSCRIBE_TOKEN_TTL_SECONDS
            )
            return build_subscribed_email(
                self.blog_url,
                self._link("/notifications/unsubscribe", unsubscribe_token),
                brand_logo_url=self.brand_logo_url,
            )

        await self._send_best_effort(email_hash, build_welcome, "subscribed")

        logger.info("Subscription confirmed")
        return {"ok": True, "status": SubscriberStatus.SUBSCRIBED.value}

    async def unsubscribe(self, raw_token: str | None) -> dict[str, Any]:
        token = await self._resolve_token(raw_token, {TokenAction.UNSUBSCRIBE, TokenAction.MANAGE})
        email_hash = token.subject_hash

        subscriber = await self.directory.get(email_hash)
        if subscriber is not None and subscriber.status.is_feedback_overlay:
            await self.tokens.consume(token.token_hash)
            return {"ok": True, "status": subscriber.status.value}

        await self.directory.mark_unsubscribed(email_hash, _now_iso())
        await self.tokens.consume(token.token_hash)

        async def build_goodbye():
            return build_unsubscribed_email(
                self.blog_url, self.blog_url, brand_logo_url=self.brand_logo_url
            )

        await self._send_best_effort(email_hash, build_goodbye, "unsubscribed")

        logger.info("Subscriber unsubscribed")
        return {"ok": True, "status": SubscriberStatus.UNSUBSCRIBED.value}

    async def update_preferences(self, raw_token: str | None, topics: list[str] | None) -> dict[str, Any]:
        """Rewrite topics. The manage token stays valid until it expires."""
        token = await self._resolve_token(raw_token, {TokenAction.MANAGE})
        topic_list = sanitize_topics(topics, self.allowed_topics)
        await self.directory.update_topics(token.subject_hash, topic_list, _now_iso())
        logger.info("Subscriber preferences updated", topics=topic_list)
        return {"ok": True, "topics": topic_list}

    async def request_manage_link(self, email: str) -> dict[str, Any]:
        """
        Email a preferences link to a subscribed address.

        The result is the same whether or not the address is subscribed.
        """
        normalized = normalize_email(email)
        if not is_valid_email(normalized):
            raise InvalidRequestError("Invalid email address")

        email_hash = hash_email(normalized)
        subscriber = await self.directory.get(email_hash)
        if subscriber is None or subscriber.status != SubscriberStatus.SUBSCRIBED:
            logger.info("Manage link requested for non-subscriber", to=mask_email(normalized))
            return {"ok": True}

        raw_token = await self.tokens.issue(email_hash, TokenAction.MANAGE, MANAGE_TOKEN_TTL_SECONDS)
        manage_email = build_manage_email(
            self._link("/notifications/manage", raw_token),
            brand_logo_url=self.brand_logo_url,
        )
        try:
            await self.transport.send(subscriber.email or normalized, manage_email)
        except EmailDeliveryError as e:
            logger.warning("Manage link email failed", to=mask_email(normalized), error=e.message)

        return {"ok": True}

    async def ingest_feedback(self, feedback: DeliveryFeedback) -> dict[str, int]:
        """
        Apply a bounce or complaint to each recipient.

        Recipients without a subscriber record are skipped. Replaying the same
        event leaves the record unchanged apart from ``updatedAt``.
        """
        if feedback.kind == FeedbackKind.BOUNCE:
            status = SubscriberStatus.BOUNCED
            set_once = {"bounceAt": feedback.occurred_at, "bounceType": feedback.feedback_type}
        else:
            status = SubscriberStatus.COMPLAINED
            set_once = {"complaintAt": feedback.occurred_at, "complaintType": feedback.feedback_type}

        now = _now_iso()
        applied = 0
        skipped = 0
        for address in feedback.recipients:
            normalized = normalize_email(address)
            if not normalized:
                skipped += 1
                continue
            if await self.directory.apply_feedback(hash_email(normalized), status, set_once, now):
                applied += 1
            else:
                skipped += 1

        logger.info(
            "Delivery feedback ingested",
            kind=feedback.kind.value,
            applied=applied,
            skipped=skipped,
        )
        return {"applied": applied, "skipped": skipped}
