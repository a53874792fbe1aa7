# portfolio_api/models/api/notification_request.py
"""
Publish and notification API request models.
Wire names are camelCase (``groupId``, ``publishAt``).
"""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PublishTriggerRequest(CamelModel):
    """Payload delivered by a fired schedule trigger."""

    kind: str | None = Field(default=None, description="Trigger kind, e.g. publish_blog_post")
    group_id: str = Field(..., min_length=1, description="Blog post group id")
    notify: bool = Field(default=True, description="Notify subscribers after publishing")
    topic: str | None = Field(default=None, description="Notification topic")


class SendNowRequest(CamelModel):
    group_id: str = Field(..., min_length=1, description="Blog post group id")
    topic: str | None = Field(default=None, description="Notification topic")
    force: bool = Field(default=False, description="Ignore the already-sent marker")


class ScheduleRequest(CamelModel):
    group_id: str = Field(..., min_length=1, description="Blog post group id")
    publish_at: str = Field(..., min_length=1, description="ISO-8601 instant, naive means UTC")
    notify: bool = Field(default=True)
    topic: str | None = Field(default=None)
