"""
tasklink.api.main — Monitoring API application
================================================

``create_app(runtime)`` builds a FastAPI app over one bot runtime.  The bot
serves it with uvicorn when ``MONITOR_PORT`` is set; tests drive it with
``TestClient``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, datetime

from fastapi import FastAPI

from tasklink.api.deps import RuntimeDep, load_jwt_secret
from tasklink.api.routes.security import router as security_router
from tasklink.runtime import Runtime

logger = logging.getLogger(__name__)


def create_app(
    runtime: Runtime,
    *,
    jwt_secret: str | None = None,
    env: Mapping[str, str] | None = None,
) -> FastAPI:
    """Monitoring app for *runtime*.

    *jwt_secret* defaults to the validated ``JWT_SECRET`` from *env*.
    """
    app = FastAPI(title="TaskLink Monitoring API", version="1.0.0")
    app.state.runtime = runtime
    app.state.jwt_secret = jwt_secret or load_jwt_secret(env)

    app.include_router(security_router, prefix="/api")

    @app.get("/api/health")
    async def health(runtime: RuntimeDep):
        uptime = (datetime.now(UTC) - runtime.started_at).total_seconds()
        if runtime.health is None:
            return {"status": "unknown", "uptime_seconds": uptime, "components": {}}
        return {**runtime.health.snapshot(), "uptime_seconds": uptime}

    logger.info("Monitoring API app created")
    return app
