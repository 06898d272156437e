"""
tasklink.api.routes.security — Admin monitoring endpoints (JWT‑protected)
===========================================================================
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel

from tasklink.api.deps import AdminDep, RuntimeDep
from tasklink.engine.audit import AuditFilter
from tasklink.engine.security import Severity

router = APIRouter(tags=["security"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class LockdownLifted(BaseModel):
    guild_id: str
    lifted: bool
    lifted_by: str


# ---------------------------------------------------------------------------
# Security
# ---------------------------------------------------------------------------
@router.get("/security/stats")
async def security_stats(runtime: RuntimeDep, admin: AdminDep) -> dict[str, Any]:
    return {
        "security": runtime.monitor.statistics(),
        "permissions": runtime.permissions.statistics(),
        "alerts": runtime.alerts.statistics(),
        "audit": runtime.audit.statistics(),
        "backend": runtime.backend.statistics(),
        "cache": runtime.cache.status(),
    }


@router.get("/security/events")
async def security_events(
    runtime: RuntimeDep,
    admin: AdminDep,
    limit: int = Query(50, ge=1, le=500),
    guild_id: str | None = None,
    min_severity: Severity | None = None,
) -> dict[str, Any]:
    events = runtime.monitor.recent_events(limit, guild_id=guild_id, min_severity=min_severity)
    return {"count": len(events), "events": [e.to_dict() for e in events]}


@router.delete("/security/lockdowns/{guild_id}", response_model=LockdownLifted)
async def lift_lockdown(guild_id: str, runtime: RuntimeDep, admin: AdminDep) -> LockdownLifted:
    lifted_by = f"api:{admin.get('sub', 'admin')}"
    if not runtime.monitor.lift_lockdown(guild_id, lifted_by=lifted_by):
        raise HTTPException(status.HTTP_404_NOT_FOUND, "No active lockdown for this guild")
    return LockdownLifted(guild_id=guild_id, lifted=True, lifted_by=lifted_by)


# ---------------------------------------------------------------------------
# Audit & rate limits
# ---------------------------------------------------------------------------
@router.get("/audit")
async def audit_entries(
    runtime: RuntimeDep,
    admin: AdminDep,
    type: str | None = None,
    user_id: str | None = None,
    guild_id: str | None = None,
    command_name: str | None = None,
    success: bool | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = Query(100, ge=1, le=1000),
) -> dict[str, Any]:
    flt = AuditFilter(
        type=type, user_id=user_id, guild_id=guild_id, command_name=command_name,
        success=success, since=since, until=until, limit=limit,
    )
    entries = await runtime.audit.search(flt)
    return {"count": len(entries), "entries": entries}


@router.get("/rate-limits")
async def rate_limits(
    runtime: RuntimeDep,
    admin: AdminDep,
    identifier: str | None = None,
) -> dict[str, Any]:
    """Limiter statistics, plus per-action windows for one *identifier*."""
    limiter = runtime.limiter
    result: dict[str, Any] = {"statistics": limiter.statistics()}
    if identifier is not None:
        result["identifier"] = identifier
        result["violations"] = limiter.violations(identifier)
        result["windows"] = {
            action: {
                "allowed": verdict.allowed,
                "remaining": verdict.remaining,
                "limit": verdict.limit,
                "retry_after_ms": verdict.retry_after,
            }
            for action in limiter.rules
            for verdict in (limiter.status(identifier, action),)
        }
    return result
