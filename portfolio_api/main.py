"""
FastAPI application: blog publish/notify backend.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from portfolio_api.config import settings
from portfolio_api.errors import install_error_handlers
from portfolio_api.infrastructure.observability.logging import (
    clear_invocation,
    get_logger,
    log_request,
    setup_logging,
)
from portfolio_api.routes import feedback, health, notifications, subscriptions, worker
from portfolio_api.services.container import build_container

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the service container on startup and close its handles on shutdown."""
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    container = build_container(settings)
    app.state.container = container

    # Connect eagerly so a bad REDIS_URL shows up at boot; handles reconnect lazily later
    try:
        await container.redis.initialize()
    except RuntimeError as e:
        logger.warning("Redis not reachable at startup", error=str(e))

    yield

    logger.info("Application shutting down")
    try:
        await container.close()
    except Exception as e:
        logger.error("Error closing services", error=str(e))
    else:
        logger.info("All services closed successfully")


app = FastAPI(
    title="Portfolio API",
    description="Blog publishing, scheduling and subscriber notifications",
    version="0.1.0",
    lifespan=lifespan,
)

install_error_handlers(app)

# Include routers
app.include_router(health.router)
app.include_router(worker.router)
app.include_router(notifications.router)
app.include_router(subscriptions.router)
app.include_router(feedback.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    clear_invocation()
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    log_request(
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
