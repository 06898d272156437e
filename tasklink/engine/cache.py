"""
tasklink.engine.cache — Redis Cache Layer with Degraded Mode
==============================================================

A typed key/value cache in front of the backend API and storage.  Keys are
always :class:`~tasklink.engine.keys.CacheKey` values (never raw strings)
and values are always canonical JSON, so anything stored round-trips
unchanged.

**Degraded mode.**  Every operation checks the connection flag first.  When
the cache is down, reads return ``None`` (or an empty equivalent), writes
return ``False`` and callers carry on without it.  No operation raises;
failures are logged and swallowed.

**Reconnection.**  A transport failure flips the layer into degraded mode
and schedules a reconnect loop with linear backoff
(``interval × attempt``).  After ``max_reconnect_attempts`` the loop gives
up and :attr:`reconnect_failed` stays set until :meth:`connect` is called
again.

Usage::

    cache = CacheLayer(cfg.cache_url)
    await cache.connect()

    await cache.cache_server_mapping(guild_id, {"community_id": "abc"})
    mapping = await cache.get_cached_server_mapping(guild_id)
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from tasklink.engine.keys import (
    CacheKey,
    CacheNamespace,
    CachePattern,
    cache_key,
    cache_pattern,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Keys deleted per round-trip during pattern invalidation
_DELETE_BATCH = 500

# Transport-level failures that mean "the connection is gone"
_TRANSPORT_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError, TimeoutError)


def dumps(value: Any) -> str:
    """Canonical JSON: sorted keys, compact separators."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class CacheLayer:
    """Async Redis cache that never raises to its callers.

    Parameters
    ----------
    url:
        Redis URL (``CACHE_URL``).  ``None`` means "no cache configured":
        the layer stays in degraded mode for the life of the process.
    client:
        Pre-built client object exposing the ``redis.asyncio.Redis`` API.
        Tests pass an in-memory double here.
    """

    def __init__(
        self,
        url: str | None,
        *,
        client: Any = None,
        max_reconnect_attempts: int = 5,
        reconnect_interval: float = 5.0,
        op_timeout: float = 2.0,
    ) -> None:
        self._url = url
        self._client = client
        self._max_reconnect_attempts = max_reconnect_attempts
        self._reconnect_interval = reconnect_interval
        self._op_timeout = op_timeout

        self._connected = False
        self._closing = False
        self._reconnect_attempts = 0
        self._reconnect_failed = False
        self._reconnect_task: asyncio.Task | None = None

    # -------------------------------------------------------------------
    # Connection state
    # -------------------------------------------------------------------
    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def reconnect_failed(self) -> bool:
        """True once the reconnect loop exhausted its attempts."""
        return self._reconnect_failed

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    def status(self) -> dict[str, Any]:
        """Snapshot for the health monitor and the monitoring API."""
        return {
            "configured": self._url is not None or self._client is not None,
            "connected": self._connected,
            "reconnect_attempts": self._reconnect_attempts,
            "reconnect_failed": self._reconnect_failed,
        }

    async def connect(self) -> bool:
        """Open the connection and verify it with ``PING``.

        Returns True when connected.  On failure the layer stays degraded
        and a reconnect loop is scheduled.
        """
        self._closing = False
        self._reconnect_failed = False
        if self._client is None:
            if not self._url:
                logger.warning("CACHE_URL not set — cache running in degraded mode")
                return False
            self._client = aioredis.Redis.from_url(
                self._url,
                decode_responses=True,
                socket_connect_timeout=self._op_timeout,
                socket_timeout=self._op_timeout,
            )

        try:
            await asyncio.wait_for(self._client.ping(), self._op_timeout)
        except (*_TRANSPORT_ERRORS, RedisError) as exc:
            logger.warning("Cache connection failed: %s — entering degraded mode", exc)
            self._mark_disconnected()
            return False

        self._connected = True
        self._reconnect_attempts = 0
        logger.info("Cache connected")
        return True

    async def close(self) -> None:
        """Stop reconnecting and release the client."""
        self._closing = True
        self._connected = False
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        self._reconnect_task = None
        if self._client is not None:
            try:
                await self._client.aclose()
            except (*_TRANSPORT_ERRORS, RedisError) as exc:
                logger.debug("Cache close raised: %s", exc)
        logger.info("Cache closed")

    def _mark_disconnected(self) -> None:
        self._connected = False
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._closing or self._reconnect_failed or self._client is None:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._reconnect_task = loop.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        while not self._closing and self._reconnect_attempts < self._max_reconnect_attempts:
            self._reconnect_attempts += 1
            delay = self._reconnect_interval * self._reconnect_attempts
            logger.info(
                "Cache reconnect attempt %d/%d in %.1fs",
                self._reconnect_attempts, self._max_reconnect_attempts, delay,
            )
            await asyncio.sleep(delay)
            try:
                await asyncio.wait_for(self._client.ping(), self._op_timeout)
            except (*_TRANSPORT_ERRORS, RedisError) as exc:
                logger.warning("Cache reconnect attempt %d failed: %s", self._reconnect_attempts, exc)
                continue
            self._connected = True
            self._reconnect_attempts = 0
            logger.info("Cache reconnected")
            return

        if not self._closing:
            self._reconnect_failed = True
            logger.error(
                "Cache reconnect gave up after %d attempts — staying in degraded mode",
                self._max_reconnect_attempts,
            )

    # -------------------------------------------------------------------
    # Guarded execution
    # -------------------------------------------------------------------
    async def _call(
        self,
        op: str,
        default: T,
        fn: Callable[[], Awaitable[T]],
        *,
        timeout: float | None = None,
    ) -> T:
        if not self._connected or self._client is None:
            return default
        try:
            return await asyncio.wait_for(fn(), timeout or self._op_timeout)
        except _TRANSPORT_ERRORS as exc:
            logger.warning("Cache %s failed (%s) — entering degraded mode", op, exc)
            self._mark_disconnected()
        except RedisError as exc:
            logger.warning("Cache %s failed: %s", op, exc)
        except Exception:
            logger.exception("Unexpected cache error during %s", op)
        return default

    @staticmethod
    def _loads(raw: Any) -> Any:
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarding undecodable cache value")
            return None

    # -------------------------------------------------------------------
    # Core KV operations
    # -------------------------------------------------------------------
    async def set(self, key: CacheKey, value: Any, ttl: int | None = None) -> bool:
        """Store *value* under *key* for *ttl* seconds (namespace default)."""
        try:
            payload = dumps(value)
        except (TypeError, ValueError) as exc:
            logger.warning("Refusing to cache non-JSON value under %s: %s", key, exc)
            return False
        expiry = ttl if ttl is not None else key.default_ttl

        async def _op() -> bool:
            return bool(await self._client.set(key.render(), payload, ex=expiry))

        return await self._call("set", False, _op)

    async def get(self, key: CacheKey) -> Any:
        """Return the decoded value for *key*, or ``None``."""

        async def _op() -> Any:
            return self._loads(await self._client.get(key.render()))

        return await self._call("get", None, _op)

    async def delete(self, key: CacheKey) -> bool:
        async def _op() -> bool:
            return bool(await self._client.delete(key.render()))

        return await self._call("delete", False, _op)

    async def exists(self, key: CacheKey) -> bool:
        async def _op() -> bool:
            return bool(await self._client.exists(key.render()))

        return await self._call("exists", False, _op)

    async def mget(self, keys: Sequence[CacheKey]) -> list[Any]:
        """Return decoded values for *keys* in order (``None`` for misses)."""
        if not keys:
            return []

        async def _op() -> list[Any]:
            raw = await self._client.mget([k.render() for k in keys])
            return [self._loads(v) for v in raw]

        return await self._call("mget", [None] * len(keys), _op)

    async def mset(self, items: Mapping[CacheKey, Any], ttl: int | None = None) -> bool:
        """Store every item atomically, each with *ttl* or its namespace TTL."""
        if not items:
            return True
        try:
            rows = [
                (k.render(), dumps(v), ttl if ttl is not None else k.default_ttl)
                for k, v in items.items()
            ]
        except (TypeError, ValueError) as exc:
            logger.warning("Refusing to cache non-JSON value in mset: %s", exc)
            return False

        async def _op() -> bool:
            async with self._client.pipeline(transaction=True) as pipe:
                for name, payload, expiry in rows:
                    pipe.set(name, payload, ex=expiry)
                await pipe.execute()
            return True

        return await self._call("mset", False, _op)

    async def delete_pattern(self, pattern: CachePattern) -> int:
        """Delete every key matching *pattern*; returns the number removed."""

        async def _op() -> int:
            deleted = 0
            batch: list[str] = []
            async for name in self._client.scan_iter(match=pattern.render(), count=_DELETE_BATCH):
                batch.append(name)
                if len(batch) >= _DELETE_BATCH:
                    deleted += await self._client.delete(*batch)
                    batch.clear()
            if batch:
                deleted += await self._client.delete(*batch)
            return deleted

        deleted = await self._call("delete_pattern", 0, _op, timeout=self._op_timeout * 5)
        if deleted:
            logger.debug("Invalidated %d keys matching %s", deleted, pattern)
        return deleted

    async def ping(self) -> bool:
        """Health check: True only when connected and ``PING`` succeeds."""

        async def _op() -> bool:
            return bool(await self._client.ping())

        return await self._call("ping", False, _op)

    # -------------------------------------------------------------------
    # Domain helpers
    # -------------------------------------------------------------------
    async def cache_server_mapping(self, guild_id: int | str, mapping: dict[str, Any]) -> bool:
        return await self.set(cache_key(CacheNamespace.SERVER_MAPPING, guild_id), mapping)

    async def get_cached_server_mapping(self, guild_id: int | str) -> dict[str, Any] | None:
        return await self.get(cache_key(CacheNamespace.SERVER_MAPPING, guild_id))

    async def invalidate_server_mapping(self, guild_id: int | str) -> bool:
        return await self.delete(cache_key(CacheNamespace.SERVER_MAPPING, guild_id))

    async def set_session(self, user_id: int | str, data: dict[str, Any]) -> bool:
        return await self.set(cache_key(CacheNamespace.SESSION, user_id), data)

    async def get_session(self, user_id: int | str) -> dict[str, Any] | None:
        return await self.get(cache_key(CacheNamespace.SESSION, user_id))

    async def delete_session(self, user_id: int | str) -> bool:
        return await self.delete(cache_key(CacheNamespace.SESSION, user_id))

    async def cache_task(self, task_id: str, data: dict[str, Any]) -> bool:
        return await self.set(cache_key(CacheNamespace.TASK_CACHE, task_id), data)

    async def get_cached_task(self, task_id: str) -> dict[str, Any] | None:
        return await self.get(cache_key(CacheNamespace.TASK_CACHE, task_id))

    async def invalidate_tasks(self, *parts: object) -> int:
        """Drop cached task entries under *parts* (whole namespace if empty)."""
        return await self.delete_pattern(cache_pattern(CacheNamespace.TASK_CACHE, *parts))

    async def set_temp(self, name: str, value: Any, ttl: int | None = None) -> bool:
        return await self.set(cache_key(CacheNamespace.TEMP_DATA, name), value, ttl)

    async def get_temp(self, name: str) -> Any:
        return await self.get(cache_key(CacheNamespace.TEMP_DATA, name))
