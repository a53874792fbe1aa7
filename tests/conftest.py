import fnmatch

import pytest
from fastapi import FastAPI
from redis.exceptions import ResponseError

from portfolio_api.auth.verify import auth_dependency
from portfolio_api.config import Settings
from portfolio_api.errors import EmailDeliveryError, install_error_handlers
from portfolio_api.models.domain.blog_domain import (
    BLOG_BODY_CONTENT_ID,
    BLOG_IMAGE_CONTENT_ID,
    BLOG_ITEM_CONTENT_ID,
    BLOG_PAGE_ID,
    ContentRecord,
)
from portfolio_api.models.domain.notification_domain import BatchSendResult
from portfolio_api.models.domain.subscriber_domain import SubscriberStatus
from portfolio_api.security.hashing import hash_email
from portfolio_api.services.container import ServiceContainer
from portfolio_api.services.content.accessor import RedisContentAccessor
from portfolio_api.services.content.blog_posts import BlogPostRepository
from portfolio_api.services.notifications.consumer import NotificationQueueConsumer
from portfolio_api.services.notifications.delivery import NotificationDeliverer
from portfolio_api.services.notifications.pipeline import NotificationPipeline
from portfolio_api.services.publishing.state_machine import PublishStateMachine
from portfolio_api.services.queue.dispatch_queue import RedisStreamDispatchQueue
from portfolio_api.services.scheduler.bridge import RedisSchedulerBridge
from portfolio_api.services.subscribers.directory import RedisSubscriberDirectory
from portfolio_api.services.subscribers.subscription_service import SubscriptionService
from portfolio_api.services.tokens.token_store import RedisTokenStore

SITE_URL = "https://example.test"
SCHEDULER_URL = "https://api.example.test/worker/publish"
SCHEDULER_SECRET = "scheduler-secret"


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": "admin-123"}

    return _override


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override

    return _apply


class FakePipeline:
    def __init__(self, redis: "FakeAsyncRedis"):
        self.redis = redis
        self.calls = []

    def xadd(self, key, fields):
        self.calls.append((key, fields))
        return self

    async def execute(self, raise_on_error=True):
        replies = []
        for key, fields in self.calls:
            if self.redis.xadd_failures > 0:
                self.redis.xadd_failures -= 1
                replies.append(ResponseError("simulated xadd failure"))
                continue
            replies.append(await self.redis.xadd(key, fields))
        self.calls = []
        return replies


def _seq(message_id):
    return int(message_id.split("-", 1)[0])


class FakeAsyncRedis:
    """In-memory subset of redis.asyncio.Redis (decode_responses=True)."""

    def __init__(self):
        self.strings: dict[str, str] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.sets: dict[str, set[str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.streams: dict[str, list[tuple[str, dict]]] = {}
        self.groups: dict[tuple[str, str], dict] = {}
        self.ttls: dict[str, int] = {}
        self.now_ms = 0
        self.xadd_failures = 0
        self._seq = 0

    async def ping(self):
        return True

    async def aclose(self):
        return None

    # strings
    async def get(self, key):
        return self.strings.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.strings:
            return None
        self.strings[key] = value
        if ex:
            self.ttls[key] = ex
        return True

    async def mget(self, keys):
        return [self.strings.get(k) for k in keys]

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            for store in (self.strings, self.hashes, self.sets, self.zsets):
                if key in store:
                    del store[key]
                    removed += 1
        return removed

    async def exists(self, key):
        return int(any(key in store for store in (self.strings, self.hashes, self.sets, self.zsets)))

    # sets
    async def sadd(self, key, *members):
        bucket = self.sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(members)
        return len(bucket) - before

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    async def sscan_iter(self, key, match=None, count=None):
        for member in sorted(self.sets.get(key, set())):
            if match is None or fnmatch.fnmatch(member, match):
                yield member

    # hashes
    async def hset(self, key, field=None, value=None, mapping=None):
        bucket = self.hashes.setdefault(key, {})
        added = 0
        items = dict(mapping or {})
        if field is not None:
            items[field] = value
        for f, v in items.items():
            added += f not in bucket
            bucket[f] = str(v)
        return added

    async def hsetnx(self, key, field, value):
        bucket = self.hashes.setdefault(key, {})
        if field in bucket:
            return 0
        bucket[field] = str(value)
        return 1

    async def hget(self, key, field):
        return self.hashes.get(key, {}).get(field)

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def hdel(self, key, *fields):
        bucket = self.hashes.get(key, {})
        return sum(1 for f in fields if bucket.pop(f, None) is not None)

    # sorted sets
    async def zadd(self, key, mapping):
        bucket = self.zsets.setdefault(key, {})
        added = sum(1 for m in mapping if m not in bucket)
        bucket.update({m: float(s) for m, s in mapping.items()})
        return added

    async def zrem(self, key, *members):
        bucket = self.zsets.get(key, {})
        return sum(1 for m in members if bucket.pop(m, None) is not None)

    async def zrangebyscore(self, key, min_score, max_score):
        lo = float("-inf") if min_score == "-inf" else float(min_score)
        hi = float("inf") if max_score == "+inf" else float(max_score)
        bucket = self.zsets.get(key, {})
        return [m for m, s in sorted(bucket.items(), key=lambda kv: kv[1]) if lo <= s <= hi]

    # streams
    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def xadd(self, key, fields):
        self._seq += 1
        message_id = f"{self._seq}-0"
        self.streams.setdefault(key, []).append((message_id, dict(fields)))
        return message_id

    async def xgroup_create(self, key, group, id="0", mkstream=False):
        if (key, group) in self.groups:
            raise ResponseError("BUSYGROUP Consumer Group name already exists")
        self.streams.setdefault(key, [])
        self.groups[(key, group)] = {"last_seq": 0, "pending": {}}

    async def xreadgroup(self, group, consumer, streams, count=None, block=None):
        response = []
        for key in streams:
            state = self.groups[(key, group)]
            entries = [e for e in self.streams.get(key, []) if _seq(e[0]) > state["last_seq"]]
            if count:
                entries = entries[:count]
            if entries:
                state["last_seq"] = _seq(entries[-1][0])
            for message_id, _fields in entries:
                state["pending"][message_id] = {"times": 1, "at": self.now_ms, "consumer": consumer}
            if entries:
                response.append([key, entries])
        return response

    async def xautoclaim(self, key, group, consumer, min_idle_time, start_id="0-0", count=None):
        state = self.groups[(key, group)]
        fields_by_id = dict(self.streams.get(key, []))
        claimed = []
        for message_id, info in list(state["pending"].items()):
            if count and len(claimed) >= count:
                break
            if self.now_ms - info["at"] < min_idle_time:
                continue
            info["times"] += 1
            info["at"] = self.now_ms
            info["consumer"] = consumer
            claimed.append((message_id, fields_by_id.get(message_id, {})))
        return ["0-0", claimed, []]

    async def xpending_range(self, key, group, min, max, count, consumername=None):
        info = self.groups[(key, group)]["pending"].get(min)
        if info is None:
            return []
        return [
            {
                "message_id": min,
                "consumer": info["consumer"],
                "time_since_delivered": self.now_ms - info["at"],
                "times_delivered": info["times"],
            }
        ]

    async def xack(self, key, group, *ids):
        pending = self.groups[(key, group)]["pending"]
        return sum(1 for i in ids if pending.pop(i, None) is not None)

    async def xdel(self, key, *ids):
        entries = self.streams.get(key, [])
        kept = [e for e in entries if e[0] not in ids]
        self.streams[key] = kept
        return len(entries) - len(kept)


class FakeRedisHandle:
    def __init__(self, client: FakeAsyncRedis, name: str = "primary", healthy: bool = True):
        self.client = client
        self.name = name
        self.healthy = healthy
        self.closed = False

    async def initialize(self):
        return None

    async def get_client(self):
        if not self.healthy:
            raise RuntimeError(f"Redis initialization failed for {self.name}")
        return self.client

    async def close(self):
        self.closed = True

    async def ping(self):
        return self.healthy


class RecordingTransport:
    """Email transport that records sends; selected addresses can be made to fail."""

    def __init__(self):
        self.sent: list[tuple[str, object]] = []
        self.fail_for: set[str] = set()
        self.not_verified = False

    async def send(self, to, email):
        if self.not_verified:
            raise EmailDeliveryError("Email address is not verified", recipient_not_verified=True)
        if to in self.fail_for:
            raise EmailDeliveryError("Provider rejected the message")
        self.sent.append((to, email))
        return f"msg-{len(self.sent)}"

    def sent_to(self, address):
        return [email for to, email in self.sent if to == address]


class ScriptedQueue:
    """Dispatch queue whose send_batch fails the entries listed in ``fail_ids`` once each."""

    def __init__(self, fifo: bool = False):
        self.fifo = fifo
        self.batches: list[list] = []
        self.fail_ids: set[str] = set()

    async def send_batch(self, entries):
        self.batches.append(list(entries))
        result = BatchSendResult()
        for entry in entries:
            if entry.entry_id in self.fail_ids:
                self.fail_ids.discard(entry.entry_id)
                result.failed.append(entry.entry_id)
            else:
                result.succeeded.append(entry.entry_id)
        return result


@pytest.fixture
def fake_redis():
    return FakeAsyncRedis()


@pytest.fixture
def redis_handle(fake_redis):
    return FakeRedisHandle(fake_redis)


@pytest.fixture
def mirror_handle():
    return FakeRedisHandle(FakeAsyncRedis(), name="mirror")


@pytest.fixture
def accessor(redis_handle):
    return RedisContentAccessor(redis_handle)


@pytest.fixture
def posts(accessor):
    return BlogPostRepository(accessor, max_wait_ms=40, seed_ms=5, cap_ms=10)


@pytest.fixture
def tokens(redis_handle):
    return RedisTokenStore(redis_handle)


@pytest.fixture
def directory(redis_handle):
    return RedisSubscriberDirectory(redis_handle)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def scheduler(redis_handle):
    return RedisSchedulerBridge(
        redis_handle,
        "test-group",
        SCHEDULER_URL,
        SCHEDULER_SECRET,
        max_attempts=3,
        retry_delay_s=60,
    )


@pytest.fixture
def deliverer(tokens, directory, transport):
    return NotificationDeliverer(tokens, directory, transport, SITE_URL)


@pytest.fixture
def make_pipeline(posts, directory, tokens, deliverer):
    def _make(queue=None, **kwargs):
        return NotificationPipeline(posts, directory, tokens, deliverer, queue, SITE_URL, **kwargs)

    return _make


@pytest.fixture
def pipeline(make_pipeline):
    return make_pipeline()


@pytest.fixture
def publisher(posts, scheduler, pipeline):
    return PublishStateMachine(posts, scheduler, pipeline)


@pytest.fixture
def subscriptions(directory, tokens, transport):
    return SubscriptionService(
        directory,
        tokens,
        transport,
        SITE_URL,
        ["blog_posts", "major_updates"],
        brand_logo_url=f"{SITE_URL}/favicon.png",
    )


@pytest.fixture
def stream_queue(redis_handle):
    return RedisStreamDispatchQueue(
        redis_handle,
        "test-dispatch",
        fifo=True,
        visibility_timeout_s=30,
        max_receive_count=3,
    )


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        PUBLIC_SITE_URL=SITE_URL,
        SCHEDULER_TARGET_URL=SCHEDULER_URL,
        SCHEDULER_WEBHOOK_SECRET=SCHEDULER_SECRET,
        FEEDBACK_WEBHOOK_SECRET="feedback-secret",
    )


@pytest.fixture
def container(test_settings, redis_handle, scheduler, posts, subscriptions, pipeline, publisher, deliverer):
    return ServiceContainer(
        settings=test_settings,
        redis=redis_handle,
        scheduler=scheduler,
        queue=None,
        posts=posts,
        subscriptions=subscriptions,
        pipeline=pipeline,
        publisher=publisher,
        consumer=NotificationQueueConsumer(deliverer),
    )


@pytest.fixture
def seed_post(accessor):
    """Write a blog post group: metadata record, body record and an optional image."""

    async def _seed(group_id="post-1", metadata=None, body="<p>Hello world</p>", photo=None):
        meta = {"title": "Hello", "summary": "A first post", "tags": ["intro"]}
        meta.update(metadata or {})
        await accessor.put_record(
            ContentRecord(
                id=f"blog-item-{group_id}",
                list_item_id=group_id,
                page_id=BLOG_PAGE_ID,
                page_content_id=BLOG_ITEM_CONTENT_ID,
                text="",
                metadata=meta,
            )
        )
        if body is not None:
            await accessor.put_record(
                ContentRecord(
                    id=f"blog-body-{group_id}",
                    list_item_id=group_id,
                    page_id=BLOG_PAGE_ID,
                    page_content_id=BLOG_BODY_CONTENT_ID,
                    text=body,
                )
            )
        if photo is not None:
            await accessor.put_record(
                ContentRecord(
                    id=f"blog-image-{group_id}",
                    list_item_id=group_id,
                    page_id=BLOG_PAGE_ID,
                    page_content_id=BLOG_IMAGE_CONTENT_ID,
                    photo=photo,
                )
            )

    return _seed


@pytest.fixture
def seed_subscriber(directory):
    """Create a subscriber directly in the given status."""

    async def _seed(email, status="SUBSCRIBED", topics=("blog_posts",)):
        email_hash = hash_email(email)
        await directory.upsert_pending(email_hash, email, list(topics), "test", "2026-01-01T00:00:00+00:00")
        if status == "SUBSCRIBED":
            await directory.mark_subscribed(email_hash, "2026-01-01T00:00:00+00:00")
        elif status == "UNSUBSCRIBED":
            await directory.mark_unsubscribed(email_hash, "2026-01-01T00:00:00+00:00")
        elif status in ("BOUNCED", "COMPLAINED"):
            await directory.apply_feedback(email_hash, SubscriberStatus(status), {}, "2026-01-01T00:00:00+00:00")
        return email_hash

    return _seed


@pytest.fixture
def scripted_queue():
    return ScriptedQueue()


@pytest.fixture
def make_app(container):
    """FastAPI app with the given route modules wired to the test container."""

    def _make(*route_modules):
        app = FastAPI()
        install_error_handlers(app)
        for module in route_modules:
            app.include_router(module.router)
        app.state.container = container
        return app

    return _make
