"""
Error taxonomy for the publish/notify pipeline.

Every error carries the HTTP status the API layer should surface. Partial batch
failures are not errors; they are returned as structured results.
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from portfolio_api.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class PipelineError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ConfigurationError(PipelineError):
    """Missing scheduler, queue or email identity. Fix operationally; never retried."""

    status_code = 500


class NotFoundError(PipelineError):
    """Blog post has no body content, even after waiting out index lag."""

    status_code = 404


class InvalidRequestError(PipelineError):
    """Bad email, bad date, bad or expired token, missing field."""

    status_code = 400


class EmailDeliveryError(PipelineError):
    """Email provider rejected the message or could not be reached."""

    status_code = 502

    def __init__(self, message: str, recipient_not_verified: bool = False):
        super().__init__(message)
        self.recipient_not_verified = recipient_not_verified


class DependencyUnavailableError(PipelineError):
    """A store, queue or scheduler call failed; the outer caller may retry."""

    status_code = 503


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "Request failed",
            path=request.url.path,
            error=exc.message,
            error_type=type(exc).__name__,
        )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PipelineError, pipeline_error_handler)
