# portfolio_api/models/api/subscription_request.py
"""
Subscription API request models.
"""

from pydantic import Field

from portfolio_api.models.api.notification_request import CamelModel


class SubscribeRequest(CamelModel):
    email: str = Field(..., max_length=320)
    topics: list[str] | None = Field(default=None, description="Requested topics (sanitized server-side)")
    source: str = Field(default="blog", max_length=64)


class PreferencesRequest(CamelModel):
    token: str = Field(..., description="Manage token from the preferences email")
    topics: list[str] | None = None


class ManageLinkRequest(CamelModel):
    email: str = Field(..., max_length=320)
