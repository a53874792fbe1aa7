"""
Eventually-consistent read guard.

Reading a group right after a write may observe zero rows while the secondary index
catches up. The guard polls with exponential backoff until the expected shape shows
up or the deadline passes, then returns whatever it saw last. It never raises on
timeout; the caller decides whether an empty result is an error.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable

from portfolio_api.infrastructure.observability.logging import get_logger
from portfolio_api.models.domain.blog_domain import ContentRecord, has_blog_body
from portfolio_api.services.content.accessor import ContentAccessor

logger = get_logger(__name__)

DEFAULT_MAX_WAIT_MS = 2500
DEFAULT_SEED_MS = 120
DEFAULT_CAP_MS = 1000


def _satisfied(records: list[ContentRecord], require_body: bool) -> bool:
    if not records:
        return False
    return has_blog_body(records) if require_body else True


async def resolve_group_with_retry(
    accessor: ContentAccessor,
    group_id: str,
    max_wait_ms: int = DEFAULT_MAX_WAIT_MS,
    require_body: bool = True,
    *,
    seed_ms: int = DEFAULT_SEED_MS,
    cap_ms: int = DEFAULT_CAP_MS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> list[ContentRecord]:
    deadline = clock() + max_wait_ms / 1000
    delay_s = seed_ms / 1000
    attempts = 0

    while True:
        attempts += 1
        records = await accessor.get_group(group_id)
        if _satisfied(records, require_body):
            if attempts > 1:
                logger.info("Content group resolved after index lag", group_id=group_id, attempts=attempts)
            return records

        remaining = deadline - clock()
        if remaining <= 0:
            logger.warning(
                "Content group not resolved before deadline",
                group_id=group_id,
                attempts=attempts,
                records_seen=len(records),
                require_body=require_body,
            )
            return records

        await sleep(min(delay_s, remaining))
        delay_s = min(delay_s * 2, cap_ms / 1000)
