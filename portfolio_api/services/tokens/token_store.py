"""
Token Store for hashed action tokens.

Issues confirm/unsubscribe/manage tokens (single-use, expiring) and the durable
``blog_notify_sent`` idempotency marker. Only token hashes are stored; the raw
token is returned once to be embedded in an email link.
"""

import json
import time
from datetime import UTC, datetime
from typing import Protocol

from redis.exceptions import RedisError

from portfolio_api.errors import DependencyUnavailableError
from portfolio_api.infrastructure.observability.logging import get_logger
from portfolio_api.models.domain.subscriber_domain import ActionToken, TokenAction
from portfolio_api.security.hashing import hash_token, random_token, sha256_hex
from portfolio_api.services.infrastructure.redis_client import RedisHandle

logger = get_logger(__name__)

TOKEN_KEY_PREFIX = "email_token"


def send_marker_subject(topic: str, group_id: str) -> str:
    return sha256_hex(f"{topic}:{group_id}")


def send_marker_hash(topic: str, group_id: str) -> str:
    """Deterministic marker identity so presence can be checked without a scan."""
    return sha256_hex(f"{TokenAction.BLOG_NOTIFY_SENT.value}:{topic}:{group_id}")


class TokenStore(Protocol):
    async def issue(self, subject_hash: str, action: TokenAction, ttl_seconds: int) -> str: ...

    async def lookup(self, raw_token: str) -> ActionToken | None: ...

    async def consume(self, token_hash: str) -> bool: ...

    async def has_send_marker(self, topic: str, group_id: str) -> bool: ...

    async def write_send_marker(
        self, topic: str, group_id: str, delivery: str, recipient_count: int
    ) -> None: ...


class RedisTokenStore:
    def __init__(self, redis_handle: RedisHandle):
        self._redis = redis_handle

    @staticmethod
    def _key(token_hash: str) -> str:
        return f"{TOKEN_KEY_PREFIX}:{token_hash}"

    async def _put(self, token: ActionToken, ttl_seconds: int | None) -> None:
        try:
            client = await self._redis.get_client()
            payload = token.model_dump_json(by_alias=True, exclude_none=True)
            if ttl_seconds:
                await client.set(self._key(token.token_hash), payload, ex=ttl_seconds)
            else:
                await client.set(self._key(token.token_hash), payload)
        except (RedisError, RuntimeError) as e:
            logger.error("Token write failed", action=token.action.value, error=str(e))
            raise DependencyUnavailableError("Token store unavailable") from e

    async def issue(self, subject_hash: str, action: TokenAction, ttl_seconds: int) -> str:
        raw = random_token()
        token = ActionToken(
            token_hash=hash_token(raw),
            action=action,
            subject_hash=subject_hash,
            expires_at_epoch=int(time.time()) + ttl_seconds,
            created_at=datetime.now(UTC).isoformat(),
        )
        await self._put(token, ttl_seconds if action.single_use else None)
        logger.debug("Action token issued", action=action.value, ttl_seconds=ttl_seconds)
        return raw

    async def _get(self, token_hash: str) -> ActionToken | None:
        try:
            client = await self._redis.get_client()
            raw = await client.get(self._key(token_hash))
        except (RedisError, RuntimeError) as e:
            logger.error("Token read failed", error=str(e))
            raise DependencyUnavailableError("Token store unavailable") from e

        if not raw:
            return None
        try:
            return ActionToken.model_validate(json.loads(raw))
        except (ValueError, TypeError):
            logger.warning("Discarding malformed token record", token_preview=token_hash[:8] + "...")
            return None

    async def lookup(self, raw_token: str) -> ActionToken | None:
        if not raw_token or not raw_token.strip():
            return None
        return await self._get(hash_token(raw_token))

    async def consume(self, token_hash: str) -> bool:
        try:
            client = await self._redis.get_client()
            return bool(await client.delete(self._key(token_hash)))
        except (RedisError, RuntimeError) as e:
            logger.error("Token delete failed", error=str(e))
            raise DependencyUnavailableError("Token store unavailable") from e

    async def has_send_marker(self, topic: str, group_id: str) -> bool:
        return await self._get(send_marker_hash(topic, group_id)) is not None

    async def write_send_marker(
        self, topic: str, group_id: str, delivery: str, recipient_count: int
    ) -> None:
        marker = ActionToken(
            token_hash=send_marker_hash(topic, group_id),
            action=TokenAction.BLOG_NOTIFY_SENT,
            subject_hash=send_marker_subject(topic, group_id),
            # Last known send, not a real expiry
            expires_at_epoch=int(time.time()),
            created_at=datetime.now(UTC).isoformat(),
            delivery=delivery,
            recipient_count=recipient_count,
        )
        await self._put(marker, ttl_seconds=None)
        logger.info(
            "Notification send marker written",
            group_id=group_id,
            topic=topic,
            delivery=delivery,
            recipient_count=recipient_count,
        )
