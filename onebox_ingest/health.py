"""FastAPI health endpoints for liveness and readiness probes."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from .models import HealthStatus, ServiceStatus

if TYPE_CHECKING:
    from .service import IngestionService


def create_health_app(service: IngestionService) -> FastAPI:
    """Build a minimal FastAPI app with ``/health`` and ``/ready`` routes.

    ``/health`` reports store statistics, fetch activity and the watch
    registry; it answers 503 when the store cannot be queried.
    """
    app = FastAPI(title=f"{service.config.name} health", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> JSONResponse:
        code = 200
        try:
            details = await service.health_details()
        except Exception as exc:
            details = {"error": str(exc)}
            code = 503
        status = HealthStatus(
            service=service.config.name,
            status=service.status,
            uptime_seconds=time.monotonic() - service.start_time,
            details=details,
        )
        if service.status not in (ServiceStatus.RUNNING, ServiceStatus.STARTING):
            code = 503
        return JSONResponse(content=status.model_dump(mode="json"), status_code=code)

    @app.get("/ready")
    async def ready() -> JSONResponse:
        is_ready = service.status == ServiceStatus.RUNNING
        return JSONResponse(
            content={"ready": is_ready},
            status_code=200 if is_ready else 503,
        )

    return app
