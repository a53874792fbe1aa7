"""
Content Accessor: read/write contract for content records.

The page-content CRUD surface lives elsewhere; this module only provides the two
calls the publish/notify pipeline needs, backed by Redis with an optional mirror.
"""

import json
from typing import Protocol

from redis.exceptions import RedisError

from portfolio_api.errors import DependencyUnavailableError
from portfolio_api.infrastructure.observability.logging import get_logger
from portfolio_api.models.domain.blog_domain import ContentRecord
from portfolio_api.services.infrastructure.redis_client import RedisHandle

logger = get_logger(__name__)

CONTENT_KEY_PREFIX = "content"
CONTENT_INDEX_KEY = "content:_index"
GROUP_INDEX_PREFIX = "content:group"


class ContentAccessor(Protocol):
    async def get_group(self, group_id: str) -> list[ContentRecord]: ...

    async def put_record(self, record: ContentRecord) -> None: ...


class RedisContentAccessor:
    """
    Content documents stored as JSON strings.

    The per-group secondary index is written after the document, so a reader
    racing a fresh write can observe the document missing from its group.
    """

    def __init__(self, redis_handle: RedisHandle):
        self._redis = redis_handle

    @staticmethod
    def _doc_key(record_id: str) -> str:
        return f"{CONTENT_KEY_PREFIX}:{record_id}"

    @staticmethod
    def _group_key(group_id: str) -> str:
        return f"{GROUP_INDEX_PREFIX}:{group_id}"

    async def get_group(self, group_id: str) -> list[ContentRecord]:
        try:
            client = await self._redis.get_client()
            ids = sorted(await client.smembers(self._group_key(group_id)))
            if not ids:
                return []
            raw_docs = await client.mget([self._doc_key(i) for i in ids])
        except (RedisError, RuntimeError) as e:
            logger.error("Content group read failed", group_id=group_id, error=str(e))
            raise DependencyUnavailableError("Content store unavailable") from e

        records = []
        for record_id, raw in zip(ids, raw_docs):
            if not raw:
                continue
            try:
                doc = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Skipping unreadable content document", record_id=record_id)
                continue
            if doc.get("ListItemID") != group_id:
                continue
            records.append(ContentRecord.model_validate(doc))
        return records

    async def put_record(self, record: ContentRecord) -> None:
        try:
            client = await self._redis.get_client()
            await client.set(self._doc_key(record.id), json.dumps(record.to_document()))
            await client.sadd(CONTENT_INDEX_KEY, record.id)
            if record.list_item_id:
                await client.sadd(self._group_key(record.list_item_id), record.id)
        except (RedisError, RuntimeError) as e:
            logger.error("Content write failed", record_id=record.id, error=str(e))
            raise DependencyUnavailableError("Content store unavailable") from e


class FallbackContentAccessor:
    """Reads the primary store, falling back to the mirror when the primary is down."""

    def __init__(self, primary: ContentAccessor, mirror: ContentAccessor):
        self.primary = primary
        self.mirror = mirror

    async def get_group(self, group_id: str) -> list[ContentRecord]:
        try:
            return await self.primary.get_group(group_id)
        except DependencyUnavailableError:
            logger.warning("Primary content store unavailable, reading mirror", group_id=group_id)
            return await self.mirror.get_group(group_id)

    async def put_record(self, record: ContentRecord) -> None:
        await self.primary.put_record(record)
        # Keep the mirror in sync for disaster recovery
        await self.mirror.put_record(record)
