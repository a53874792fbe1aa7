"""
Dispatch Queue: durable, at-least-once, batchable work queue for notification jobs.

Backed by a Redis stream with a consumer group. A message that is not acked is
redelivered once it has been idle longer than the visibility timeout; after
``max_receive_count`` deliveries it is moved to the ``<queue>:dlq`` stream.
"""

import asyncio
import json
from typing import Protocol

from redis.exceptions import RedisError, ResponseError

from portfolio_api.errors import DependencyUnavailableError
from portfolio_api.infrastructure.observability.logging import get_logger
from portfolio_api.models.domain.notification_domain import (
    NOTIFICATION_MESSAGE_TYPE,
    BatchSendResult,
    NotificationJob,
    QueueEntry,
    QueueMessage,
)
from portfolio_api.security.hashing import sha256_hex
from portfolio_api.services.infrastructure.redis_client import RedisHandle

logger = get_logger(__name__)

MAX_BATCH_SIZE = 10
MAX_GROUP_KEY_LENGTH = 128


def notification_group_key(group_id: str) -> str:
    return f"blog-{group_id}"[:MAX_GROUP_KEY_LENGTH]


def notification_dedup_id(group_id: str, email_hash: str, topic: str) -> str:
    """Identical re-enqueues of the same (post, recipient, topic) share this id."""
    return sha256_hex(f"{NOTIFICATION_MESSAGE_TYPE}:{group_id}:{email_hash}:{topic}")


def build_entries(jobs: list[NotificationJob], fifo: bool, offset: int = 0) -> list[QueueEntry]:
    entries = []
    for idx, job in enumerate(jobs):
        entry = QueueEntry(entry_id=f"job-{offset + idx}", body=job.to_message_body())
        if fifo:
            entry.group_key = notification_group_key(job.group_id)
            entry.dedup_id = notification_dedup_id(job.group_id, job.email_hash, job.topic)
        entries.append(entry)
    return entries


def chunked(items: list, size: int = MAX_BATCH_SIZE) -> list[list]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class DispatchQueue(Protocol):
    fifo: bool

    async def send_batch(self, entries: list[QueueEntry]) -> BatchSendResult: ...

    async def receive(self, max_messages: int = MAX_BATCH_SIZE) -> list[QueueMessage]: ...

    async def ack(self, message_ids: list[str]) -> int: ...


class RedisStreamDispatchQueue:
    def __init__(
        self,
        redis_handle: RedisHandle,
        name: str,
        fifo: bool = False,
        send_timeout_s: float = 5.0,
        dedup_window_s: int = 300,
        visibility_timeout_s: int = 300,
        max_receive_count: int = 5,
        consumer_name: str = "consumer-1",
    ):
        self._redis = redis_handle
        self.name = name
        self.fifo = fifo
        self.send_timeout_s = send_timeout_s
        self.dedup_window_s = dedup_window_s
        self.visibility_timeout_s = visibility_timeout_s
        self.max_receive_count = max_receive_count
        self.consumer_name = consumer_name
        self._group_ready = False

    @property
    def stream_key(self) -> str:
        return f"queue:{self.name}"

    @property
    def dlq_key(self) -> str:
        return f"queue:{self.name}:dlq"

    @property
    def group_name(self) -> str:
        return f"{self.name}-consumers"

    def _dedup_key(self, dedup_id: str) -> str:
        return f"queue:{self.name}:dedup:{dedup_id}"

    async def _client(self):
        try:
            return await self._redis.get_client()
        except RuntimeError as e:
            raise DependencyUnavailableError("Dispatch queue unavailable") from e

    async def _ensure_group(self, client) -> None:
        if self._group_ready:
            return
        try:
            await client.xgroup_create(self.stream_key, self.group_name, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
        self._group_ready = True

    async def send_batch(self, entries: list[QueueEntry]) -> BatchSendResult:
        """
        Send up to 10 entries in one round trip.

        Per-entry failures are reported in ``failed``; they are never raised.
        """
        if len(entries) > MAX_BATCH_SIZE:
            raise ValueError(f"send_batch accepts at most {MAX_BATCH_SIZE} entries")

        result = BatchSendResult()
        if not entries:
            return result

        client = None
        to_send: list[QueueEntry] = []
        try:
            client = await self._client()
            for entry in entries:
                if self.fifo and entry.dedup_id:
                    fresh = await client.set(
                        self._dedup_key(entry.dedup_id), "1", nx=True, ex=self.dedup_window_s
                    )
                    if not fresh:
                        # Duplicate inside the dedup window collapses into the original
                        result.succeeded.append(entry.entry_id)
                        continue
                to_send.append(entry)

            if to_send:
                pipe = client.pipeline(transaction=False)
                for entry in to_send:
                    fields = {"body": json.dumps(entry.body)}
                    if entry.group_key:
                        fields["group"] = entry.group_key
                    if entry.dedup_id:
                        fields["dedupId"] = entry.dedup_id
                    pipe.xadd(self.stream_key, fields)
                replies = await asyncio.wait_for(
                    pipe.execute(raise_on_error=False), timeout=self.send_timeout_s
                )
                for entry, reply in zip(to_send, replies):
                    if isinstance(reply, Exception):
                        result.failed.append(entry.entry_id)
                        await self._release_dedup(client, entry)
                    else:
                        result.succeeded.append(entry.entry_id)
        except (RedisError, DependencyUnavailableError, TimeoutError) as e:
            sent = set(result.succeeded)
            result.failed = [entry.entry_id for entry in entries if entry.entry_id not in sent]
            if client is not None:
                for entry in to_send:
                    await self._release_dedup(client, entry)
            logger.error(
                "Dispatch queue batch send failed",
                queue=self.name,
                failed=len(result.failed),
                error=str(e),
                error_type=type(e).__name__,
            )

        return result

    async def _release_dedup(self, client, entry: QueueEntry) -> None:
        if not (self.fifo and entry.dedup_id):
            return
        try:
            await client.delete(self._dedup_key(entry.dedup_id))
        except RedisError as e:
            logger.warning("Failed to release dedup key", queue=self.name, error=str(e))

    async def receive(self, max_messages: int = MAX_BATCH_SIZE) -> list[QueueMessage]:
        client = await self._client()
        messages: list[QueueMessage] = []
        try:
            await self._ensure_group(client)

            # Redrive: reclaim messages whose previous delivery was never acked
            claimed = await client.xautoclaim(
                self.stream_key,
                self.group_name,
                self.consumer_name,
                min_idle_time=self.visibility_timeout_s * 1000,
                start_id="0-0",
                count=max_messages,
            )
            for message_id, fields in claimed[1] if claimed else []:
                if not fields:
                    continue
                receive_count = await self._times_delivered(client, message_id)
                if receive_count > self.max_receive_count:
                    await self._dead_letter(client, message_id, fields, receive_count)
                    continue
                messages.append(self._to_message(message_id, fields, receive_count))

            remaining = max_messages - len(messages)
            if remaining > 0:
                response = await client.xreadgroup(
                    self.group_name,
                    self.consumer_name,
                    {self.stream_key: ">"},
                    count=remaining,
                )
                for _stream, entries in response or []:
                    for message_id, fields in entries:
                        messages.append(self._to_message(message_id, fields, 1))
        except RedisError as e:
            logger.error("Dispatch queue receive failed", queue=self.name, error=str(e))
            raise DependencyUnavailableError("Dispatch queue unavailable") from e

        return messages

    async def _times_delivered(self, client, message_id: str) -> int:
        pending = await client.xpending_range(
            self.stream_key, self.group_name, min=message_id, max=message_id, count=1
        )
        if not pending:
            return 1
        return int(pending[0].get("times_delivered", 1))

    async def _dead_letter(self, client, message_id: str, fields: dict, receive_count: int) -> None:
        await client.xadd(
            self.dlq_key,
            {**fields, "sourceId": message_id, "receiveCount": str(receive_count)},
        )
        await client.xack(self.stream_key, self.group_name, message_id)
        await client.xdel(self.stream_key, message_id)
        logger.error(
            "Message moved to dead-letter stream",
            queue=self.name,
            message_id=message_id,
            receive_count=receive_count,
        )

    @staticmethod
    def _to_message(message_id: str, fields: dict, receive_count: int) -> QueueMessage:
        try:
            body = json.loads(fields.get("body") or "{}")
        except (TypeError, ValueError):
            body = {}
        return QueueMessage(
            message_id=message_id,
            body=body if isinstance(body, dict) else {},
            receive_count=receive_count,
        )

    async def ack(self, message_ids: list[str]) -> int:
        if not message_ids:
            return 0
        client = await self._client()
        try:
            acked = int(await client.xack(self.stream_key, self.group_name, *message_ids))
            # Acked entries leave the stream; redelivery only needs the pending ones
            await client.xdel(self.stream_key, *message_ids)
        except RedisError as e:
            logger.error("Dispatch queue ack failed", queue=self.name, error=str(e))
            raise DependencyUnavailableError("Dispatch queue unavailable") from e
        return acked
