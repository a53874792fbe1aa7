"""
Scheduler Bridge: one-shot, named, future-time triggers.

A trigger is armed with a fixed payload and, once due, is delivered by the
``scheduler_tick`` job as a POST to the worker webhook. Triggers delete
themselves after a successful delivery. Nothing in this module keeps an
in-process timer.
"""

import json
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

import httpx
from redis.exceptions import RedisError

from portfolio_api.errors import ConfigurationError, DependencyUnavailableError
from portfolio_api.infrastructure.observability.logging import get_logger
from portfolio_api.services.infrastructure.redis_client import RedisHandle

logger = get_logger(__name__)

SCHEDULER_SECRET_HEADER = "X-Scheduler-Secret"


def to_run_at_utc(value: datetime) -> datetime:
    """Whole seconds, UTC. Naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).replace(microsecond=0)


class SchedulerBridge(Protocol):
    def require_configured(self) -> None: ...

    async def arm(self, name: str, run_at: datetime, payload: dict[str, Any]) -> datetime: ...

    async def disarm(self, name: str) -> bool: ...


@dataclass
class FireSummary:
    due: int = 0
    fired: int = 0
    retried: int = 0
    dropped: int = 0

    def to_dict(self) -> dict:
        return {"due": self.due, "fired": self.fired, "retried": self.retried, "dropped": self.dropped}


class RedisSchedulerBridge:
    def __init__(
        self,
        redis_handle: RedisHandle,
        group_name: str,
        target_url: str | None,
        webhook_secret: str | None,
        invoke_timeout_s: float = 10.0,
        max_attempts: int = 3,
        retry_delay_s: int = 60,
    ):
        self._redis = redis_handle
        self.group_name = group_name
        self.target_url = target_url
        self.webhook_secret = webhook_secret
        self.invoke_timeout_s = invoke_timeout_s
        self.max_attempts = max_attempts
        self.retry_delay_s = retry_delay_s

    @property
    def _triggers_key(self) -> str:
        return f"scheduler:{self.group_name}:triggers"

    @property
    def _due_key(self) -> str:
        return f"scheduler:{self.group_name}:due"

    def require_configured(self) -> None:
        """
        Raises:
            ConfigurationError: target webhook or shared secret missing
        """
        if not self.target_url:
            raise ConfigurationError("SCHEDULER_TARGET_URL not configured")
        if not self.webhook_secret:
            raise ConfigurationError("SCHEDULER_WEBHOOK_SECRET not configured")

    async def _client(self):
        try:
            return await self._redis.get_client()
        except RuntimeError as e:
            raise DependencyUnavailableError("Scheduler store unavailable") from e

    async def arm(self, name: str, run_at: datetime, payload: dict[str, Any]) -> datetime:
        self.require_configured()
        run_at = to_run_at_utc(run_at)
        trigger = {
            "name": name,
            "runAt": run_at.isoformat(),
            "payload": payload,
            "attempts": 0,
        }

        client = await self._client()
        try:
            await client.hset(self._triggers_key, name, json.dumps(trigger))
            await client.zadd(self._due_key, {name: int(run_at.timestamp())})
        except RedisError as e:
            logger.error("Failed to arm trigger", schedule_name=name, error=str(e))
            raise DependencyUnavailableError("Scheduler unavailable") from e

        logger.info("Trigger armed", schedule_name=name, run_at=run_at.isoformat())
        return run_at

    async def disarm(self, name: str) -> bool:
        client = await self._client()
        try:
            removed_due = await client.zrem(self._due_key, name)
            removed_trigger = await client.hdel(self._triggers_key, name)
        except RedisError as e:
            logger.error("Failed to disarm trigger", schedule_name=name, error=str(e))
            raise DependencyUnavailableError("Scheduler unavailable") from e

        removed = bool(removed_due or removed_trigger)
        logger.info("Trigger disarmed", schedule_name=name, existed=removed)
        return removed

    async def _invoke(self, payload: dict[str, Any]) -> None:
        async with httpx.AsyncClient(timeout=self.invoke_timeout_s) as http:
            response = await http.post(
                self.target_url,
                json=payload,
                headers={SCHEDULER_SECRET_HEADER: self.webhook_secret},
            )
            response.raise_for_status()

    async def fire_due(self, now_epoch: int | None = None) -> FireSummary:
        """
        Deliver every trigger whose run time has passed.

        A claimed trigger is leased back into the due set at ``now + retry_delay_s``
        before delivery and only removed once the webhook accepted it. A trigger
        whose runner died mid-delivery comes due again when the lease runs out.
        """
        self.require_configured()
        now = int(time.time()) if now_epoch is None else now_epoch
        summary = FireSummary()

        client = await self._client()
        due_names = await client.zrangebyscore(self._due_key, "-inf", now)
        summary.due = len(due_names)

        for name in due_names:
            # ZREM is the claim: only one concurrent runner gets 1 back
            if not await client.zrem(self._due_key, name):
                continue
            await client.zadd(self._due_key, {name: now + self.retry_delay_s})

            try:
                await self._fire_one(client, name, summary)
            except RedisError as e:
                summary.retried += 1
                logger.error("Trigger delivery interrupted, lease kept", schedule_name=name, error=str(e))

        return summary

    async def _fire_one(self, client, name: str, summary: FireSummary) -> None:
        raw = await client.hget(self._triggers_key, name)
        if not raw:
            await client.zrem(self._due_key, name)
            return

        try:
            trigger = json.loads(raw)
            payload = trigger["payload"]
        except (ValueError, KeyError, TypeError) as e:
            await self._forget(client, name)
            summary.dropped += 1
            logger.error("Unreadable trigger dropped", schedule_name=name, error=str(e))
            return

        try:
            await self._invoke(payload)
        except Exception as e:
            trigger["attempts"] = int(trigger.get("attempts", 0)) + 1
            if trigger["attempts"] >= self.max_attempts:
                await self._forget(client, name)
                summary.dropped += 1
                logger.error(
                    "Trigger dropped after repeated delivery failures",
                    schedule_name=name,
                    attempts=trigger["attempts"],
                    error=str(e),
                    error_type=type(e).__name__,
                )
            else:
                # The lease already points at the next attempt
                await client.hset(self._triggers_key, name, json.dumps(trigger))
                summary.retried += 1
                logger.warning(
                    "Trigger delivery failed, will retry",
                    schedule_name=name,
                    attempts=trigger["attempts"],
                    error=str(e),
                    error_type=type(e).__name__,
                )
            return

        await self._forget(client, name)
        summary.fired += 1
        logger.info("Trigger fired", schedule_name=name)

    async def _forget(self, client, name: str) -> None:
        await client.hdel(self._triggers_key, name)
        await client.zrem(self._due_key, name)
