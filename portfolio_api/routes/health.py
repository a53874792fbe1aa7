# portfolio_api/routes/health.py
"""
Liveness and readiness endpoints.
"""

import time

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from portfolio_api.routes.dependencies import get_container
from portfolio_api.services.container import ServiceContainer

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "portfolio-api"}


@router.get("/readyz")
async def readyz(container: ServiceContainer = Depends(get_container)):
    """Readiness check: every Redis handle must answer a ping."""
    checks = {}
    overall_ok = True

    for handle in [container.redis, *container.extra_handles]:
        t0 = time.time()
        redis_ok = await handle.ping()
        checks[f"redis:{handle.name}"] = {
            "ok": redis_ok,
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = overall_ok and redis_ok

    checks["dispatch_queue"] = {"enabled": container.queue is not None}
    checks["scheduler"] = {
        "configured": bool(container.settings.SCHEDULER_TARGET_URL and container.settings.SCHEDULER_WEBHOOK_SECRET)
    }

    body = {"status": "ready" if overall_ok else "not_ready", "checks": checks}
    return JSONResponse(status_code=200 if overall_ok else 503, content=body)
