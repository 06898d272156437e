"""
tasklink.services.guild_service — Guild State Store
=====================================================

Resolves :class:`~tasklink.engine.guild.GuildState` for the dispatcher:
cache first (``discord:server:<guild>``, up to one hour), then storage,
then repopulates the cache.  With the cache down every load goes to
storage; with storage down the guild is treated as unlinked, so commands
that need a link are denied instead of crashing the pipeline.

Every mutation writes storage first and invalidates the cached state.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime

from sqlalchemy import Engine

from tasklink.database import repository as repo
from tasklink.database.engine import run_db
from tasklink.engine.cache import CacheLayer
from tasklink.engine.guild import CommunityMapping, GuildState, Lockdown
from tasklink.engine.security import SecurityMonitor

logger = logging.getLogger(__name__)


class GuildStateStore:
    """Cache-fronted access to per-guild link, lockdown and alert state."""

    def __init__(
        self,
        engine: Engine | None,
        cache: CacheLayer,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._engine = engine
        self._cache = cache
        self._clock = clock
        self._tasks: set[asyncio.Task] = set()

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------
    async def load(self, guild_id: str | None) -> GuildState | None:
        """Current state of *guild_id* (``None`` outside a guild)."""
        if guild_id is None:
            return None

        cached = await self._cache.get_cached_server_mapping(guild_id)
        if cached is not None:
            try:
                return GuildState.from_dict(cached)
            except (KeyError, TypeError, ValueError):
                logger.warning("Discarding malformed cached state for guild %s", guild_id)
                await self._cache.invalidate_server_mapping(guild_id)

        if self._engine is None:
            return GuildState(guild_id=guild_id)

        try:
            mapping = await run_db(repo.get_server_mapping, self._engine, guild_id)
            lockdown_row = await run_db(repo.get_lockdown, self._engine, guild_id)
        except Exception:
            logger.exception("Guild state lookup failed for %s", guild_id, extra={"guild_id": guild_id})
            return GuildState(guild_id=guild_id)

        community = None
        alert_channel_id = None
        if mapping is not None:
            community = CommunityMapping(
                community_id=mapping["community_id"],
                linked_by=mapping["linked_by"],
                linked_at=mapping["linked_at"],
            )
            alert_channel_id = mapping.get("alert_channel_id")

        lockdown = None
        if lockdown_row is not None and lockdown_row["until"] > self._clock():
            lockdown = Lockdown(
                reason=lockdown_row["reason"],
                until=lockdown_row["until"],
                triggered_by=lockdown_row["triggered_by"],
            )

        state = GuildState(
            guild_id=guild_id,
            community=community,
            lockdown=lockdown,
            alert_channel_id=alert_channel_id,
        )
        await self._cache.cache_server_mapping(guild_id, state.to_dict())
        return state

    async def alert_channel(self, guild_id: str) -> str | None:
        state = await self.load(guild_id)
        return state.alert_channel_id if state else None

    # -------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------
    async def invalidate(self, guild_id: str) -> None:
        await self._cache.invalidate_server_mapping(guild_id)

    def _require_engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Guild state changes need a storage engine")
        return self._engine

    async def link(self, guild_id: str, community_id: str, linked_by: str) -> GuildState:
        engine = self._require_engine()
        await run_db(repo.upsert_server_mapping, engine, guild_id, community_id, linked_by,
                     linked_at=self._clock())
        await self.invalidate(guild_id)
        return await self.load(guild_id)  # type: ignore[return-value]

    async def unlink(self, guild_id: str) -> bool:
        removed = await run_db(repo.deactivate_server_mapping, self._require_engine(), guild_id)
        await self.invalidate(guild_id)
        return removed

    async def set_alert_channel(self, guild_id: str, channel_id: str | None) -> bool:
        updated = await run_db(repo.set_alert_channel, self._require_engine(), guild_id, channel_id)
        await self.invalidate(guild_id)
        return updated

    async def save_lockdown(self, guild_id: str, lockdown: Lockdown) -> None:
        await run_db(
            repo.save_lockdown, self._require_engine(), guild_id,
            lockdown.reason, lockdown.until, lockdown.triggered_by,
        )
        await self.invalidate(guild_id)

    async def clear_lockdown(self, guild_id: str) -> bool:
        cleared = await run_db(repo.clear_lockdown, self._require_engine(), guild_id)
        await self.invalidate(guild_id)
        return cleared

    # -------------------------------------------------------------------
    # Security Monitor integration
    # -------------------------------------------------------------------
    def on_lockdown_change(self, guild_id: str, lockdown: Lockdown | None) -> None:
        """Lockdown listener: persist the change in the background."""
        if self._engine is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Lockdown change for %s not persisted (no running loop)", guild_id)
            return
        coro = self.save_lockdown(guild_id, lockdown) if lockdown else self.clear_lockdown(guild_id)
        task = loop.create_task(self._persist(coro, guild_id), name="lockdown-persist")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _persist(self, coro, guild_id: str) -> None:
        try:
            await coro
        except Exception:
            logger.exception("Failed to persist lockdown change", extra={"guild_id": guild_id})

    async def restore_lockdowns(self, monitor: SecurityMonitor) -> int:
        """Reinstate every unexpired stored lockdown into *monitor*."""
        if self._engine is None:
            return 0
        rows = await run_db(repo.list_active_lockdowns, self._engine, self._clock())
        for row in rows:
            monitor.restore_lockdown(
                row["guild_id"],
                Lockdown(reason=row["reason"], until=row["until"], triggered_by=row["triggered_by"]),
            )
        if rows:
            logger.info("Restored %d active guild lockdown(s)", len(rows))
        return len(rows)
