# portfolio_api/routes/notifications.py
"""
Admin endpoints for publishing and notifications.
"""

from fastapi import APIRouter, Depends

from portfolio_api.auth.verify import auth_dependency
from portfolio_api.infrastructure.observability.logging import get_logger
from portfolio_api.models.api.notification_request import ScheduleRequest, SendNowRequest
from portfolio_api.routes.dependencies import get_container
from portfolio_api.services.container import ServiceContainer

router = APIRouter(prefix="/notifications", tags=["notifications"])
logger = get_logger(__name__)


@router.post("/send-now")
async def send_now(
    body: SendNowRequest,
    claims: dict = Depends(auth_dependency),
    container: ServiceContainer = Depends(get_container),
):
    topic = body.topic or container.settings.DEFAULT_NOTIFY_TOPIC
    logger.info("Manual notification requested", group_id=body.group_id, topic=topic, force=body.force, admin=claims.get("sub"))
    result = await container.pipeline.send_notification(body.group_id, topic, force=body.force)
    return result.model_dump(by_alias=True)


@router.post("/schedule")
async def schedule(
    body: ScheduleRequest,
    claims: dict = Depends(auth_dependency),
    container: ServiceContainer = Depends(get_container),
):
    result = await container.publisher.schedule_publish(
        body.group_id, body.publish_at, notify=body.notify, topic=body.topic
    )
    return result.model_dump(by_alias=True)


@router.delete("/schedule/{schedule_name}")
async def cancel_schedule(
    schedule_name: str,
    claims: dict = Depends(auth_dependency),
    container: ServiceContainer = Depends(get_container),
):
    removed = await container.publisher.cancel_schedule(schedule_name)
    return {"ok": True, "scheduleName": schedule_name, "removed": removed}
