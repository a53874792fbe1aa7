# portfolio_api/routes/subscriptions.py
"""
Public subscription endpoints (double opt-in, unsubscribe, preferences).
"""

from fastapi import APIRouter, Depends, Query, Request

from portfolio_api.models.api.subscription_request import (
    ManageLinkRequest,
    PreferencesRequest,
    SubscribeRequest,
)
from portfolio_api.routes.dependencies import get_container
from portfolio_api.services.container import ServiceContainer

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


@router.post("/request")
async def request_subscription(
    body: SubscribeRequest,
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    return await container.subscriptions.request_subscription(
        body.email,
        topics=body.topics,
        source=body.source,
        consent_ip=_client_ip(request),
        consent_user_agent=request.headers.get("user-agent"),
    )


@router.get("/confirm")
async def confirm(
    token: str | None = Query(default=None),
    container: ServiceContainer = Depends(get_container),
):
    return await container.subscriptions.confirm_subscription(token)


@router.get("/unsubscribe")
async def unsubscribe(
    token: str | None = Query(default=None),
    container: ServiceContainer = Depends(get_container),
):
    return await container.subscriptions.unsubscribe(token)


@router.post("/preferences")
async def update_preferences(
    body: PreferencesRequest,
    container: ServiceContainer = Depends(get_container),
):
    return await container.subscriptions.update_preferences(body.token, body.topics)


@router.post("/manage-link")
async def manage_link(
    body: ManageLinkRequest,
    container: ServiceContainer = Depends(get_container),
):
    return await container.subscriptions.request_manage_link(body.email)
