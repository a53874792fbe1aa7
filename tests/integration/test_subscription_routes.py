import re
from urllib.parse import unquote

import httpx
import pytest

from portfolio_api.models.domain.subscriber_domain import SubscriberStatus
from portfolio_api.routes import subscriptions
from portfolio_api.security.hashing import hash_email

TOKEN_RE = re.compile(r"token=([A-Za-z0-9_%\-]+)")


def _token_from(email) -> str:
    return unquote(TOKEN_RE.search(email.text).group(1))


@pytest.fixture
def client(make_app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=make_app(subscriptions)), base_url="http://test")


@pytest.mark.asyncio
async def test_double_opt_in_over_http(client, directory, transport):
    async with client:
        requested = await client.post(
            "/subscriptions/request",
            json={"email": "Reader@Example.com", "topics": ["major_updates"], "source": "footer"},
            headers={"x-forwarded-for": "203.0.113.5, 10.0.0.1", "user-agent": "pytest"},
        )
        assert requested.status_code == 200
        assert requested.json() == {"ok": True, "status": "PENDING"}

        subscriber = await directory.get(hash_email("reader@example.com"))
        assert subscriber.consent_ip == "203.0.113.5"
        assert subscriber.consent_user_agent == "pytest"
        assert subscriber.source == "footer"

        token = _token_from(transport.sent_to("reader@example.com")[-1])
        confirmed = await client.get("/subscriptions/confirm", params={"token": token})
        assert confirmed.json() == {"ok": True, "status": "SUBSCRIBED"}

        replay = await client.get("/subscriptions/confirm", params={"token": token})
        assert replay.status_code == 400
        assert replay.json() == {"error": "Invalid or expired token"}

        unsubscribe_token = _token_from(transport.sent_to("reader@example.com")[-1])
        left = await client.get("/subscriptions/unsubscribe", params={"token": unsubscribe_token})
        assert left.json() == {"ok": True, "status": "UNSUBSCRIBED"}

    assert (await directory.get(hash_email("reader@example.com"))).status == SubscriberStatus.UNSUBSCRIBED


@pytest.mark.asyncio
async def test_request_rejects_bad_email(client, transport):
    async with client:
        response = await client.post("/subscriptions/request", json={"email": "nope"})

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid email address"}
    assert transport.sent == []


@pytest.mark.asyncio
async def test_confirm_without_token(client):
    async with client:
        response = await client.get("/subscriptions/confirm")

    assert response.status_code == 400
    assert response.json() == {"error": "Missing token"}


@pytest.mark.asyncio
async def test_manage_link_then_preferences(client, directory, transport, seed_subscriber):
    email_hash = await seed_subscriber("reader@example.com")

    async with client:
        sent = await client.post("/subscriptions/manage-link", json={"email": "reader@example.com"})
        assert sent.json() == {"ok": True}

        token = _token_from(transport.sent_to("reader@example.com")[-1])
        updated = await client.post(
            "/subscriptions/preferences", json={"token": token, "topics": ["major_updates", "blog_posts"]}
        )

    assert updated.status_code == 200
    assert updated.json() == {"ok": True, "topics": ["major_updates", "blog_posts"]}
    assert (await directory.get(email_hash)).topics == ["major_updates", "blog_posts"]


@pytest.mark.asyncio
async def test_manage_link_for_unknown_address_is_silent(client, transport):
    async with client:
        response = await client.post("/subscriptions/manage-link", json={"email": "stranger@example.com"})

    assert response.json() == {"ok": True}
    assert transport.sent == []
