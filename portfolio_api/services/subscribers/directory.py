"""
Subscriber Directory: persistence for subscriber records keyed by email hash.

Records are never deleted (they are retained for suppression), so "only if the
record exists" checks followed by a write cannot race a delete.
"""

import json
from typing import Any, Protocol

from redis.exceptions import RedisError

from portfolio_api.errors import DependencyUnavailableError
from portfolio_api.infrastructure.observability.logging import get_logger
from portfolio_api.models.domain.subscriber_domain import (
    CONSENT_VERSION,
    Subscriber,
    SubscriberStatus,
)
from portfolio_api.services.infrastructure.redis_client import RedisHandle

logger = get_logger(__name__)

SUBSCRIBER_KEY_PREFIX = "subscriber"
SUBSCRIBER_INDEX_KEY = "subscribers:_index"
SCAN_BATCH_SIZE = 100


class SubscriberDirectory(Protocol):
    async def get(self, email_hash: str) -> Subscriber | None: ...

    async def upsert_pending(
        self,
        email_hash: str,
        email: str,
        topics: list[str],
        source: str,
        now: str,
        consent_ip: str | None = None,
        consent_user_agent: str | None = None,
    ) -> None: ...

    async def mark_subscribed(self, email_hash: str, now: str) -> None: ...

    async def mark_unsubscribed(self, email_hash: str, now: str) -> None: ...

    async def update_topics(self, email_hash: str, topics: list[str], now: str) -> None: ...

    async def touch_last_notified(self, email_hash: str, now: str) -> bool: ...

    async def apply_feedback(
        self,
        email_hash: str,
        status: SubscriberStatus,
        set_once: dict[str, str],
        now: str,
    ) -> bool: ...

    async def list_subscribed(self, topic: str) -> list[Subscriber]: ...


def _decode(fields: dict[str, str]) -> Subscriber | None:
    if not fields or "emailHash" not in fields:
        return None
    data: dict[str, Any] = dict(fields)
    if "topics" in data:
        try:
            topics = json.loads(data["topics"])
            data["topics"] = [str(t) for t in topics] if isinstance(topics, list) else []
        except (TypeError, ValueError):
            data["topics"] = []
    status = str(data.get("status") or "").upper()
    data["status"] = status if status in SubscriberStatus.__members__ else SubscriberStatus.PENDING.value
    return Subscriber.model_validate(data)


class RedisSubscriberDirectory:
    def __init__(self, redis_handle: RedisHandle):
        self._redis = redis_handle

    @staticmethod
    def _key(email_hash: str) -> str:
        return f"{SUBSCRIBER_KEY_PREFIX}:{email_hash}"

    async def _client(self):
        try:
            return await self._redis.get_client()
        except RuntimeError as e:
            raise DependencyUnavailableError("Subscriber store unavailable") from e

    async def get(self, email_hash: str) -> Subscriber | None:
        client = await self._client()
        try:
            fields = await client.hgetall(self._key(email_hash))
        except RedisError as e:
            logger.error("Subscriber read failed", error=str(e))
            raise DependencyUnavailableError("Subscriber store unavailable") from e
        return _decode(fields)

    async def _write(
        self,
        email_hash: str,
        fields: dict[str, Any],
        set_once: dict[str, Any] | None = None,
    ) -> None:
        client = await self._client()
        key = self._key(email_hash)
        mapping = {k: v for k, v in fields.items() if v is not None}
        try:
            for field, value in (set_once or {}).items():
                if value is not None:
                    await client.hsetnx(key, field, value)
            if mapping:
                await client.hset(key, mapping=mapping)
        except RedisError as e:
            logger.error("Subscriber write failed", error=str(e))
            raise DependencyUnavailableError("Subscriber store unavailable") from e

    async def _exists(self, email_hash: str) -> bool:
        client = await self._client()
        try:
            return bool(await client.exists(self._key(email_hash)))
        except RedisError as e:
            raise DependencyUnavailableError("Subscriber store unavailable") from e

    async def upsert_pending(
        self,
        email_hash: str,
        email: str,
        topics: list[str],
        source: str,
        now: str,
        consent_ip: str | None = None,
        consent_user_agent: str | None = None,
    ) -> None:
        await self._write(
            email_hash,
            {
                "emailHash": email_hash,
                "status": SubscriberStatus.PENDING.value,
                "topics": json.dumps(topics),
                "source": source,
                "updatedAt": now,
                "consentVersion": CONSENT_VERSION,
                "consentIp": consent_ip,
                "consentUserAgent": consent_user_agent,
            },
            set_once={"email": email, "createdAt": now},
        )
        client = await self._client()
        try:
            await client.sadd(SUBSCRIBER_INDEX_KEY, email_hash)
        except RedisError as e:
            raise DependencyUnavailableError("Subscriber store unavailable") from e

    async def mark_subscribed(self, email_hash: str, now: str) -> None:
        await self._write(
            email_hash,
            {"status": SubscriberStatus.SUBSCRIBED.value, "updatedAt": now},
            set_once={"confirmedAt": now},
        )

    async def mark_unsubscribed(self, email_hash: str, now: str) -> None:
        await self._write(
            email_hash,
            {
                "status": SubscriberStatus.UNSUBSCRIBED.value,
                "unsubscribedAt": now,
                "updatedAt": now,
            },
        )

    async def update_topics(self, email_hash: str, topics: list[str], now: str) -> None:
        await self._write(email_hash, {"topics": json.dumps(topics), "updatedAt": now})

    async def touch_last_notified(self, email_hash: str, now: str) -> bool:
        if not await self._exists(email_hash):
            return False
        await self._write(email_hash, {"lastNotifiedAt": now})
        return True

    async def apply_feedback(
        self,
        email_hash: str,
        status: SubscriberStatus,
        set_once: dict[str, str],
        now: str,
    ) -> bool:
        if not await self._exists(email_hash):
            return False
        await self._write(email_hash, {"status": status.value, "updatedAt": now}, set_once=set_once)
        return True

    async def list_subscribed(self, topic: str) -> list[Subscriber]:
        client = await self._client()
        recipients = []
        try:
            async for email_hash in client.sscan_iter(SUBSCRIBER_INDEX_KEY, count=SCAN_BATCH_SIZE):
                subscriber = _decode(await client.hgetall(self._key(email_hash)))
                if subscriber is None:
                    continue
                if subscriber.status != SubscriberStatus.SUBSCRIBED:
                    continue
                if subscriber.accepts_topic(topic):
                    recipients.append(subscriber)
        except RedisError as e:
            logger.error("Subscriber scan failed", topic=topic, error=str(e))
            raise DependencyUnavailableError("Subscriber store unavailable") from e
        return recipients
