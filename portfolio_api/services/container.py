"""
Process-wide service container.

Every external client is a handle built once here and passed down explicitly.
Handles connect lazily, so building the container never touches the network.
"""

from dataclasses import dataclass, field

from portfolio_api.config import Settings
from portfolio_api.infrastructure.observability.logging import get_logger
from portfolio_api.services.content.accessor import (
    ContentAccessor,
    FallbackContentAccessor,
    RedisContentAccessor,
)
from portfolio_api.services.content.blog_posts import BlogPostRepository
from portfolio_api.services.email.transport import ResendEmailTransport
from portfolio_api.services.infrastructure.redis_client import RedisHandle
from portfolio_api.services.notifications.consumer import NotificationQueueConsumer
from portfolio_api.services.notifications.delivery import NotificationDeliverer
from portfolio_api.services.notifications.pipeline import NotificationPipeline
from portfolio_api.services.publishing.state_machine import PublishStateMachine
from portfolio_api.services.queue.dispatch_queue import RedisStreamDispatchQueue
from portfolio_api.services.scheduler.bridge import RedisSchedulerBridge
from portfolio_api.services.subscribers.directory import RedisSubscriberDirectory
from portfolio_api.services.subscribers.subscription_service import SubscriptionService
from portfolio_api.services.tokens.token_store import RedisTokenStore

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    redis: RedisHandle
    scheduler: RedisSchedulerBridge
    queue: RedisStreamDispatchQueue | None
    posts: BlogPostRepository
    subscriptions: SubscriptionService
    pipeline: NotificationPipeline
    publisher: PublishStateMachine
    consumer: NotificationQueueConsumer
    extra_handles: list[RedisHandle] = field(default_factory=list)

    async def close(self) -> None:
        for handle in [*self.extra_handles, self.redis]:
            await handle.close()


def build_container(settings: Settings) -> ServiceContainer:
    redis_handle = RedisHandle(
        settings.REDIS_URL,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT_S,
    )
    extra_handles: list[RedisHandle] = []

    accessor: ContentAccessor = RedisContentAccessor(redis_handle)
    if settings.CONTENT_MIRROR_REDIS_URL:
        mirror_handle = RedisHandle(
            settings.CONTENT_MIRROR_REDIS_URL,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT_S,
            name="content-mirror",
        )
        extra_handles.append(mirror_handle)
        accessor = FallbackContentAccessor(accessor, RedisContentAccessor(mirror_handle))

    posts = BlogPostRepository(accessor, **settings.get_index_lag_config())
    tokens = RedisTokenStore(redis_handle)
    directory = RedisSubscriberDirectory(redis_handle)
    transport = ResendEmailTransport(
        settings.RESEND_API_KEY,
        settings.EMAIL_FROM_ADDRESS,
        timeout_s=settings.EMAIL_SEND_TIMEOUT_S,
    )
    scheduler = RedisSchedulerBridge(
        redis_handle,
        settings.SCHEDULER_GROUP_NAME,
        settings.SCHEDULER_TARGET_URL,
        settings.SCHEDULER_WEBHOOK_SECRET,
        invoke_timeout_s=settings.SCHEDULER_INVOKE_TIMEOUT_S,
        max_attempts=settings.SCHEDULER_MAX_ATTEMPTS,
        retry_delay_s=settings.SCHEDULER_RETRY_DELAY_S,
    )

    queue = None
    if settings.DISPATCH_QUEUE_ENABLED:
        queue = RedisStreamDispatchQueue(
            redis_handle,
            settings.DISPATCH_QUEUE_NAME,
            fifo=settings.DISPATCH_QUEUE_FIFO,
            send_timeout_s=settings.DISPATCH_QUEUE_SEND_TIMEOUT_S,
            dedup_window_s=settings.DISPATCH_QUEUE_DEDUP_WINDOW_S,
            visibility_timeout_s=settings.DISPATCH_QUEUE_VISIBILITY_TIMEOUT_S,
            max_receive_count=settings.DISPATCH_QUEUE_MAX_RECEIVE_COUNT,
            consumer_name=settings.DISPATCH_CONSUMER_NAME,
        )

    site_url = settings.site_url()
    deliverer = NotificationDeliverer(tokens, directory, transport, site_url)
    pipeline = NotificationPipeline(
        posts,
        directory,
        tokens,
        deliverer,
        queue,
        site_url,
        enabled=settings.EMAIL_NOTIFICATIONS_ENABLED,
        allowlist=settings.send_allowlist(),
        direct_concurrency=settings.DIRECT_SEND_CONCURRENCY,
    )
    publisher = PublishStateMachine(
        posts, scheduler, pipeline, default_topic=settings.DEFAULT_NOTIFY_TOPIC
    )
    subscriptions = SubscriptionService(
        directory,
        tokens,
        transport,
        site_url,
        settings.allowed_topics(),
        brand_logo_url=settings.brand_logo_url(),
    )

    logger.info(
        "Service container built",
        dispatch_queue=queue is not None,
        content_mirror=bool(extra_handles),
        notifications_enabled=settings.EMAIL_NOTIFICATIONS_ENABLED,
    )
    return ServiceContainer(
        settings=settings,
        redis=redis_handle,
        scheduler=scheduler,
        queue=queue,
        posts=posts,
        subscriptions=subscriptions,
        pipeline=pipeline,
        publisher=publisher,
        consumer=NotificationQueueConsumer(deliverer),
        extra_handles=extra_handles,
    )
