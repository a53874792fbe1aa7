# portfolio_api/routes/feedback.py
"""
Delivery feedback webhook (bounces and complaints) from the email provider.
"""

import hashlib
import hmac
import json

from fastapi import APIRouter, Depends, HTTPException, Request

from portfolio_api.infrastructure.observability.logging import get_logger
from portfolio_api.routes.dependencies import get_container
from portfolio_api.services.container import ServiceContainer
from portfolio_api.services.subscribers.subscription_service import parse_feedback_event

router = APIRouter(tags=["feedback"])
logger = get_logger(__name__)

FEEDBACK_SIGNATURE_HEADER = "x-feedback-signature"


def verify_feedback_hmac(secret: str | None, raw: bytes, signature: str | None):
    if not secret:
        raise HTTPException(status_code=401, detail="Feedback webhook disabled")
    if not signature:
        raise HTTPException(status_code=401, detail="Missing signature")
    mac = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(mac, signature.strip().lower()):
        raise HTTPException(status_code=401, detail="Invalid signature")


@router.post("/notifications/feedback")
async def delivery_feedback(request: Request, container: ServiceContainer = Depends(get_container)):
    raw = await request.body()
    verify_feedback_hmac(
        container.settings.FEEDBACK_WEBHOOK_SECRET,
        raw,
        request.headers.get(FEEDBACK_SIGNATURE_HEADER),
    )

    try:
        event = json.loads(raw or b"{}")
    except ValueError as e:
        raise HTTPException(status_code=400, detail="Invalid JSON body") from e
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid event")

    feedback = parse_feedback_event(event)
    if feedback is None:
        logger.info("Ignoring feedback event", event_type=event.get("type"))
        return {"ok": True, "ignored": True}

    summary = await container.subscriptions.ingest_feedback(feedback)
    return {"ok": True, **summary}
