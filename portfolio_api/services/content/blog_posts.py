"""
Blog post repository on top of the Content Accessor.

All group reads go through the index-lag guard so that "save post, immediately
schedule it" does not spuriously 404.
"""

from datetime import UTC, datetime
from typing import Any

from portfolio_api.errors import NotFoundError
from portfolio_api.infrastructure.observability.logging import get_logger
from portfolio_api.models.domain.blog_domain import (
    BLOG_ITEM_CONTENT_ID,
    BLOG_PAGE_ID,
    BlogPost,
    ContentRecord,
    has_blog_body,
)
from portfolio_api.services.content.accessor import ContentAccessor
from portfolio_api.services.content.consistency import resolve_group_with_retry

logger = get_logger(__name__)


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


class BlogPostRepository:
    def __init__(
        self,
        accessor: ContentAccessor,
        max_wait_ms: int = 2500,
        seed_ms: int = 120,
        cap_ms: int = 1000,
    ):
        self.accessor = accessor
        self.max_wait_ms = max_wait_ms
        self.seed_ms = seed_ms
        self.cap_ms = cap_ms

    async def resolve_group(self, group_id: str, require_body: bool = True) -> list[ContentRecord]:
        return await resolve_group_with_retry(
            self.accessor,
            group_id,
            self.max_wait_ms,
            require_body,
            seed_ms=self.seed_ms,
            cap_ms=self.cap_ms,
        )

    async def require_post(self, group_id: str) -> tuple[list[ContentRecord], BlogPost]:
        """
        Resolve a post that must already have body content.

        Raises:
            NotFoundError: no body content, even after waiting out index lag
        """
        records = await self.resolve_group(group_id, require_body=True)
        if not records or not has_blog_body(records):
            raise NotFoundError("Blog post not found")
        return records, BlogPost.from_records(group_id, records)

    async def update_metadata(
        self,
        group_id: str,
        patch: dict[str, Any],
        records: list[ContentRecord] | None = None,
    ) -> ContentRecord:
        """
        Merge ``patch`` into the blog-item metadata blob and write it back.

        Unconditional overwrite: concurrent writers race under last-write-wins.
        """
        if records is None:
            records = await self.resolve_group(group_id, require_body=False)

        blog_item = next((r for r in records if r.page_content_id == BLOG_ITEM_CONTENT_ID), None)
        meta_source = blog_item if blog_item and blog_item.metadata is not None else None
        if meta_source is None:
            meta_source = next((r for r in records if r.metadata is not None), None)
        base_meta = dict(meta_source.metadata) if meta_source and isinstance(meta_source.metadata, dict) else {}

        now = utc_now_iso()
        if blog_item is None:
            blog_item = ContentRecord(
                id=f"blog-item-{group_id.strip()}",
                text="",
                list_item_id=group_id,
                page_id=BLOG_PAGE_ID,
                page_content_id=BLOG_ITEM_CONTENT_ID,
                created_at=now,
            )
            logger.info("Creating blog item metadata record", group_id=group_id)

        updated = blog_item.model_copy(
            update={
                "list_item_id": group_id,
                "page_id": BLOG_PAGE_ID,
                "page_content_id": BLOG_ITEM_CONTENT_ID,
                "metadata": {**base_meta, **patch},
                "updated_at": now,
            }
        )
        await self.accessor.put_record(updated)
        return updated
