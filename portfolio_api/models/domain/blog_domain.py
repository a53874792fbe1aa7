# models/domain/blog_domain.py
"""
Blog post domain model.

A blog post is not stored as one document: it is the group of content records
sharing a ``ListItemID``. The blog-item record (page content 3) carries the
metadata blob that holds the publication lifecycle fields.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# Page content kinds used by blog posts
BLOG_ITEM_CONTENT_ID = 3
BLOG_TEXT_CONTENT_ID = 4
BLOG_IMAGE_CONTENT_ID = 5
BLOG_BODY_CONTENT_ID = 13
BLOG_PAGE_ID = 3

WORDS_PER_MINUTE = 200

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")
_HTTP_URL_RE = re.compile(r"^https?://", re.IGNORECASE)


class PublishStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    PUBLISHED = "published"


class ContentRecord(BaseModel):
    """One stored content record. Field aliases match the stored document shape."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(..., alias="ID")
    list_item_id: str | None = Field(default=None, alias="ListItemID")
    page_id: int | None = Field(default=None, alias="PageID")
    page_content_id: int | None = Field(default=None, alias="PageContentID")
    text: str | None = Field(default=None, alias="Text")
    photo: str | None = Field(default=None, alias="Photo")
    metadata: dict[str, Any] | None = Field(default=None, alias="Metadata")
    created_at: str | None = Field(default=None, alias="CreatedAt")
    updated_at: str | None = Field(default=None, alias="UpdatedAt")

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def has_text(self) -> bool:
        return isinstance(self.text, str) and bool(self.text.strip())


def strip_html(value: str | None) -> str:
    return _WS_RE.sub(" ", _TAG_RE.sub(" ", value or "")).strip()


def has_blog_body(records: list[ContentRecord]) -> bool:
    """True when the group holds a body or text record with non-blank text."""
    return any(
        r.page_content_id in (BLOG_BODY_CONTENT_ID, BLOG_TEXT_CONTENT_ID) and r.has_text()
        for r in records
    )


def find_metadata_record(records: list[ContentRecord]) -> ContentRecord | None:
    for record in records:
        if record.page_content_id == BLOG_ITEM_CONTENT_ID and record.metadata is not None:
            return record
    for record in records:
        if record.metadata is not None:
            return record
    return None


def _body_text(records: list[ContentRecord]) -> str:
    for content_id in (BLOG_BODY_CONTENT_ID, BLOG_TEXT_CONTENT_ID):
        for record in records:
            if record.page_content_id == content_id and record.has_text():
                return record.text or ""
    return ""


def estimate_read_time_minutes(body: str) -> int | None:
    text = strip_html(body)
    if not text:
        return None
    words = len(text.split())
    return max(1, round(words / WORDS_PER_MINUTE))


def extract_hero_image(records: list[ContentRecord]) -> str | None:
    """First absolute http(s) image URL; data URLs are never embedded in email."""
    candidates = [
        r for r in records if r.page_content_id == BLOG_IMAGE_CONTENT_ID and r.photo and r.photo.strip()
    ]
    if not candidates:
        candidates = [r for r in records if r.photo and r.photo.strip()]
    if not candidates:
        return None
    url = candidates[0].photo.strip()
    return url if _HTTP_URL_RE.match(url) else None


def _parse_timestamp(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class BlogPost(BaseModel):
    """View of a blog post assembled from its content record group."""

    group_id: str
    status: PublishStatus = PublishStatus.PUBLISHED
    publish_at: datetime | None = None
    schedule_name: str | None = None

    title: str = "Untitled"
    summary: str = ""
    tags: list[str] = Field(default_factory=list)
    hero_image_url: str | None = None
    read_time_minutes: int | None = None
    body_text: str = ""

    notify_topic: str | None = None
    notify_on_publish: bool = False

    email_notification_sent_at: datetime | None = None
    delivery: Literal["direct", "queued"] | None = None
    recipient_count: int | None = None

    @classmethod
    def from_records(cls, group_id: str, records: list[ContentRecord]) -> "BlogPost":
        meta_record = find_metadata_record(records)
        meta = meta_record.metadata if meta_record and isinstance(meta_record.metadata, dict) else {}

        raw_status = str(meta.get("status") or PublishStatus.PUBLISHED.value).lower()
        try:
            status = PublishStatus(raw_status)
        except ValueError:
            status = PublishStatus.PUBLISHED

        tags = meta.get("tags")
        body = _body_text(records)
        delivery = meta.get("delivery")

        return cls(
            group_id=group_id,
            status=status,
            publish_at=_parse_timestamp(meta.get("publishAt")),
            schedule_name=meta.get("scheduleName") or None,
            title=meta.get("title") or "Untitled",
            summary=meta.get("summary") or "",
            tags=[str(t) for t in tags] if isinstance(tags, list) else [],
            hero_image_url=extract_hero_image(records),
            read_time_minutes=estimate_read_time_minutes(body),
            body_text=body,
            notify_topic=meta.get("notifyTopic"),
            notify_on_publish=bool(meta.get("notifyOnPublish", False)),
            email_notification_sent_at=_parse_timestamp(meta.get("emailNotificationSentAt")),
            delivery=delivery if delivery in ("direct", "queued") else None,
            recipient_count=meta.get("recipientCount"),
        )

    def is_published(self) -> bool:
        return self.status == PublishStatus.PUBLISHED and not self.schedule_name
