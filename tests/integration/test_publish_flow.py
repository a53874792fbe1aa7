"""
End-to-end publish flows through the HTTP surface, the scheduler and the pipeline.
"""

from datetime import UTC, datetime, timedelta

import httpx
import pytest

from portfolio_api.models.domain.blog_domain import PublishStatus
from portfolio_api.routes import notifications, worker

SCHEDULER_SECRET = "scheduler-secret"


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


def _route_triggers_to(scheduler, client):
    async def _invoke(payload):
        response = await client.post(
            "/worker/publish", json=payload, headers={"X-Scheduler-Secret": SCHEDULER_SECRET}
        )
        response.raise_for_status()

    scheduler._invoke = _invoke


@pytest.mark.asyncio
async def test_duplicate_webhook_publishes_and_notifies_once(make_app, posts, transport, seed_post, seed_subscriber):
    await seed_post("post-1", metadata={"status": "scheduled", "scheduleName": "blog-abc-1"})
    await seed_subscriber("a@example.com")
    await seed_subscriber("b@example.com")
    trigger = {"kind": "publish_blog_post", "groupId": "post-1", "notify": True, "topic": "blog_posts"}

    async with _client(make_app(worker)) as client:
        first = await client.post("/worker/publish", json=trigger, headers={"X-Scheduler-Secret": SCHEDULER_SECRET})
        second = await client.post("/worker/publish", json=trigger, headers={"X-Scheduler-Secret": SCHEDULER_SECRET})

    assert first.status_code == 200
    assert first.json()["alreadyPublished"] is False
    assert first.json()["notification"]["markerWritten"] is True
    assert second.json()["alreadyPublished"] is True
    assert second.json()["notification"]["reason"] == "already_sent"
    assert len(transport.sent) == 2

    _, post = await posts.require_post("post-1")
    assert post.status == PublishStatus.PUBLISHED
    assert post.delivery == "direct"
    assert post.recipient_count == 2


@pytest.mark.asyncio
async def test_schedule_then_fire(make_app, apply_auth_override, scheduler, posts, transport, seed_post, seed_subscriber):
    await seed_post("post-1", metadata={"status": "draft"})
    await seed_subscriber("a@example.com")
    app = make_app(notifications, worker)
    apply_auth_override(app)
    publish_at = (datetime.now(UTC) + timedelta(hours=1)).replace(microsecond=0)

    async with _client(app) as client:
        scheduled = await client.post(
            "/notifications/schedule", json={"groupId": "post-1", "publishAt": publish_at.isoformat()}
        )
        assert scheduled.status_code == 200

        # Not due yet
        early = await scheduler.fire_due(now_epoch=int(publish_at.timestamp()) - 60)
        assert early.fired == 0
        assert transport.sent == []

        _route_triggers_to(scheduler, client)
        summary = await scheduler.fire_due(now_epoch=int(publish_at.timestamp()))

    assert summary.fired == 1
    assert [to for to, _ in transport.sent] == ["a@example.com"]
    _, post = await posts.require_post("post-1")
    assert post.status == PublishStatus.PUBLISHED
    assert post.schedule_name is None


@pytest.mark.asyncio
async def test_reschedule_leaves_one_live_trigger(make_app, apply_auth_override, scheduler, transport, seed_post, seed_subscriber):
    await seed_post("post-1", metadata={"status": "draft"})
    await seed_subscriber("a@example.com")
    app = make_app(notifications, worker)
    apply_auth_override(app)
    first_at = datetime.now(UTC) + timedelta(hours=1)
    second_at = datetime.now(UTC) + timedelta(hours=2)

    async with _client(app) as client:
        await client.post("/notifications/schedule", json={"groupId": "post-1", "publishAt": first_at.isoformat()})
        response = await client.post(
            "/notifications/schedule", json={"groupId": "post-1", "publishAt": second_at.isoformat()}
        )
        schedule_name = response.json()["scheduleName"]

        _route_triggers_to(scheduler, client)
        summary = await scheduler.fire_due(now_epoch=int(second_at.timestamp()) + 60)

    assert summary.due == 1
    assert summary.fired == 1
    assert schedule_name.startswith("blog-")
    assert len(transport.sent) == 1


@pytest.mark.asyncio
async def test_failed_webhook_delivery_is_retried(scheduler, seed_post):
    await seed_post("post-1")
    run_at = datetime.now(UTC) + timedelta(minutes=5)
    await scheduler.arm("blog-retry-1", run_at, {"kind": "publish_blog_post", "groupId": "post-1"})

    calls = []

    async def _invoke(payload):
        calls.append(payload)
        if len(calls) == 1:
            raise httpx.ConnectError("worker down")

    scheduler._invoke = _invoke
    now = int(run_at.timestamp())

    first = await scheduler.fire_due(now_epoch=now)
    second = await scheduler.fire_due(now_epoch=now + scheduler.retry_delay_s)

    assert first.retried == 1
    assert second.fired == 1
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_partial_enqueue_failure_withholds_marker(make_pipeline, scripted_queue, posts, tokens, seed_post, seed_subscriber):
    await seed_post("post-1")
    for n in range(10):
        await seed_subscriber(f"r{n}@example.com")
    scripted_queue.fail_ids = {"job-3", "job-7"}
    pipeline = make_pipeline(queue=scripted_queue)

    first = await pipeline.send_notification("post-1", "blog_posts")

    assert first.ok is False
    assert first.succeeded == 8
    assert first.failed == 2
    assert first.marker_written is False
    assert await tokens.has_send_marker("blog_posts", "post-1") is False
    _, post = await posts.require_post("post-1")
    assert post.email_notification_sent_at is None

    retry = await pipeline.send_notification("post-1", "blog_posts")

    assert retry.ok is True
    assert retry.attempted == 10
    assert retry.marker_written is True
    assert len(scripted_queue.batches[-1]) == 10
    assert await tokens.has_send_marker("blog_posts", "post-1") is True
