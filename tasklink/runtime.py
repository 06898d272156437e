"""
tasklink.runtime — Shared Component Container
===============================================

Builds every process-local component once and holds them together so the
bot, the dispatcher, the scheduler and the monitoring API all receive the
same instances explicitly.  There are no module-level singletons; tests
build a runtime with in-memory doubles instead.

Usage::

    cfg = load_config()
    engine = create_db_engine(cfg.storage_uri)
    runtime = build_runtime(cfg, engine=engine)
    await runtime.cache.connect()
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

import httpx
from sqlalchemy import Engine

from tasklink.config import TaskLinkConfig
from tasklink.database.engine import ping_db, run_db
from tasklink.engine.audit import AuditLog
from tasklink.engine.cache import CacheLayer
from tasklink.engine.permissions import PermissionEvaluator
from tasklink.engine.rate_limiter import RateLimiter
from tasklink.engine.security import SecurityMonitor
from tasklink.services.alerts import AlertQueue
from tasklink.services.backend_client import BackendClient
from tasklink.services.guild_service import GuildStateStore
from tasklink.services.health import HealthMonitor

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    config: TaskLinkConfig
    engine: Engine | None
    cache: CacheLayer
    limiter: RateLimiter
    audit: AuditLog
    monitor: SecurityMonitor
    permissions: PermissionEvaluator
    alerts: AlertQueue
    backend: BackendClient
    guilds: GuildStateStore
    health: HealthMonitor | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    async def close(self) -> None:
        """Flush what must survive, then release network resources."""
        try:
            await self.audit.flush()
        except Exception:
            logger.exception("Final audit flush failed", extra={"task": "shutdown"})
        await self.backend.close()
        await self.cache.close()


def build_runtime(
    cfg: TaskLinkConfig,
    *,
    engine: Engine | None = None,
    cache: CacheLayer | None = None,
    backend_transport: httpx.AsyncBaseTransport | None = None,
) -> Runtime:
    """Wire every core component from *cfg*."""
    audit = AuditLog(engine, retention_days=cfg.audit_retention_days)
    if cache is None:
        cache = CacheLayer(
            cfg.cache_url,
            max_reconnect_attempts=cfg.cache_reconnect_attempts,
            reconnect_interval=cfg.cache_reconnect_interval,
        )
    limiter = RateLimiter(cfg.rate_limits)
    alerts = AlertQueue(high_water=cfg.alert_high_water, batch_seconds=cfg.alert_batch_seconds)
    monitor = SecurityMonitor(cfg.security, audit=audit, alerts=alerts)
    permissions = PermissionEvaluator(monitor=monitor, audit=audit)
    backend = BackendClient(
        cfg.api_base_url,
        cfg.api_key,
        cache=cache,
        timeout=cfg.backend_timeout,
        transport=backend_transport,
    )
    guilds = GuildStateStore(engine, cache)
    monitor.add_lockdown_listener(guilds.on_lockdown_change)

    return Runtime(
        config=cfg,
        engine=engine,
        cache=cache,
        limiter=limiter,
        audit=audit,
        monitor=monitor,
        permissions=permissions,
        alerts=alerts,
        backend=backend,
        guilds=guilds,
    )


def build_health(
    runtime: Runtime,
    discord_check: Callable[[], Awaitable[bool]] | None = None,
) -> HealthMonitor:
    """Health monitor over the runtime's dependencies.

    Components without a configured dependency are reported as disabled.
    """
    engine = runtime.engine

    async def _database() -> bool:
        return await run_db(ping_db, engine)

    health = HealthMonitor({
        "discord": discord_check,
        "database": _database if engine is not None else None,
        "cache": runtime.cache.ping if runtime.config.cache_url else None,
        "backend": runtime.backend.ping,
    })
    runtime.health = health
    return health
