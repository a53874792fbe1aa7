# portfolio_api/routes/worker.py
"""
Worker webhook invoked by fired schedule triggers.
"""

import hmac

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError

from portfolio_api.infrastructure.observability.logging import bind_invocation, get_logger
from portfolio_api.models.api.notification_request import PublishTriggerRequest
from portfolio_api.models.domain.notification_domain import PUBLISH_TRIGGER_KIND
from portfolio_api.routes.dependencies import get_container
from portfolio_api.services.container import ServiceContainer

router = APIRouter(prefix="/worker", tags=["worker"])
logger = get_logger(__name__)


def verify_scheduler_secret(expected: str | None, provided: str | None) -> None:
    if not expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Worker webhook disabled")
    if not provided or not hmac.compare_digest(expected.encode(), provided.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid scheduler secret")


@router.post("/publish")
async def publish_from_trigger(
    request: Request,
    x_scheduler_secret: str | None = Header(default=None),
    container: ServiceContainer = Depends(get_container),
):
    # Authenticate before the body is read or validated
    verify_scheduler_secret(container.settings.SCHEDULER_WEBHOOK_SECRET, x_scheduler_secret)

    try:
        payload = await request.json()
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body") from e
    try:
        body = PublishTriggerRequest.model_validate(payload)
    except ValidationError as e:
        raise RequestValidationError(e.errors()) from e

    if body.kind and body.kind != PUBLISH_TRIGGER_KIND:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unsupported trigger kind: {body.kind}")

    bind_invocation(group_id=body.group_id, trigger=PUBLISH_TRIGGER_KIND)
    logger.info("Publish trigger received", notify=body.notify, topic=body.topic)

    result = await container.publisher.publish_now(body.group_id, notify=body.notify, topic=body.topic)
    return result.model_dump(by_alias=True)
