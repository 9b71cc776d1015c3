import logging
from typing import Awaitable, Callable, Mapping

from fastapi import APIRouter, Response
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

logger = logging.getLogger(__name__)

ReadinessCheck = Callable[[], Awaitable[bool]]


def create_health_router(
    checks: Mapping[str, ReadinessCheck],
    service_name: str = "cryptolotto",
) -> APIRouter:
    """Liveness, per-component readiness (ledger, event stream) and Prometheus metrics."""

    router = APIRouter(tags=["health"])

    @router.get("/health/live")
    async def liveness():
        return {"status": "ok", "service": service_name}

    @router.get("/health/ready")
    async def readiness():
        results = {}
        for component, check in checks.items():
            try:
                results[component] = bool(await check())
            except Exception as e:
                logger.warning(f"Readiness check {component} failed: {e}")
                results[component] = False

        ready = all(results.values())
        return JSONResponse(
            status_code=200 if ready else 503,
            content={
                "status": "ready" if ready else "not_ready",
                "service": service_name,
                "checks": results,
            },
        )

    @router.get("/metrics")
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return router
