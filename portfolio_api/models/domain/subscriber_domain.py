# models/domain/subscriber_domain.py
"""
Subscriber and action-token domain models.

Subscriber status precedence: BOUNCED and COMPLAINED are delivery-feedback overlays
stored in the same ``status`` field as the subscription intent. Once set they win
over confirm/unsubscribe, which only move between PENDING, SUBSCRIBED and
UNSUBSCRIBED.
"""

import time
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

CONFIRM_TOKEN_TTL_SECONDS = 24 * 60 * 60
UNSUBSCRIBE_TOKEN_TTL_SECONDS = 30 * 24 * 60 * 60
MANAGE_TOKEN_TTL_SECONDS = 7 * 24 * 60 * 60

CONSENT_VERSION = "v1"


class SubscriberStatus(str, Enum):
    PENDING = "PENDING"
    SUBSCRIBED = "SUBSCRIBED"
    UNSUBSCRIBED = "UNSUBSCRIBED"
    BOUNCED = "BOUNCED"
    COMPLAINED = "COMPLAINED"

    @property
    def is_feedback_overlay(self) -> bool:
        return self in (SubscriberStatus.BOUNCED, SubscriberStatus.COMPLAINED)


class TokenAction(str, Enum):
    CONFIRM = "confirm"
    UNSUBSCRIBE = "unsubscribe"
    MANAGE = "manage"
    BLOG_NOTIFY_SENT = "blog_notify_sent"

    @property
    def single_use(self) -> bool:
        return self != TokenAction.BLOG_NOTIFY_SENT


class Subscriber(BaseModel):
    """Stored subscriber record (camelCase field names in storage)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    email_hash: str
    email: str | None = None
    status: SubscriberStatus = SubscriberStatus.PENDING
    # None means the record predates topic tracking and accepts every topic
    topics: list[str] | None = None
    source: str | None = None

    created_at: str | None = None
    updated_at: str | None = None
    confirmed_at: str | None = None
    unsubscribed_at: str | None = None
    last_notified_at: str | None = None

    consent_version: str | None = None
    consent_ip: str | None = None
    consent_user_agent: str | None = None

    bounce_at: str | None = None
    bounce_type: str | None = None
    complaint_at: str | None = None
    complaint_type: str | None = None

    def accepts_topic(self, topic: str) -> bool:
        if self.topics is None:
            return True
        return topic in self.topics


class ActionToken(BaseModel):
    """Hashed action token. The raw token is never stored."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    token_hash: str
    action: TokenAction
    subject_hash: str
    expires_at_epoch: int
    created_at: str | None = None
    # Send-marker breadcrumbs
    delivery: str | None = None
    recipient_count: int | None = None

    def is_expired(self, now_epoch: int | None = None) -> bool:
        now = int(time.time()) if now_epoch is None else now_epoch
        return now > self.expires_at_epoch


class FeedbackKind(str, Enum):
    BOUNCE = "bounce"
    COMPLAINT = "complaint"


class DeliveryFeedback(BaseModel):
    """Normalized bounce/complaint event from the email provider."""

    kind: FeedbackKind
    recipients: list[str] = Field(default_factory=list)
    occurred_at: str
    feedback_type: str | None = None
