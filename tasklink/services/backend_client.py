"""
tasklink.services.backend_client — Backend API Client
=======================================================

Async JSON-over-HTTPS client for the community backend, built on
``httpx.AsyncClient`` with bearer auth and a 10 s default timeout.

**Errors.**  Every failure is raised as :class:`BackendError` with a closed
:class:`ErrorKind`.  Callers branch on ``kind``/``retriable``, never on the
message text.

**Retries.**  Idempotent methods (GET/PUT/DELETE) retry ``network``,
``timeout``, ``rate_limited`` and ``server`` errors with exponential
backoff (250 ms base, ×2, ±20 % jitter, 5 attempts).  POST retries only
when the request failed while connecting, before any byte was sent.
A ``Retry-After`` header on 429 is honoured when longer than the backoff.

**Read-through cache.**  Server mappings, task metadata and user links are
served from the cache layer when present and written back on a miss.
Mutations invalidate the related keys.  If the backend is unreachable, the
last good copy seen by this process is served instead (stale-if-error).
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from tasklink.engine.cache import CacheLayer
from tasklink.engine.keys import CacheKey, CacheNamespace, cache_key

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
PING_TIMEOUT = 5.0
_STALE_MAX = 1_000

_IDEMPOTENT = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE"})


class ErrorKind(enum.StrEnum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    AUTH = "auth"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    SERVER = "server"
    VALIDATION = "validation"


_RETRIABLE_KINDS = frozenset({
    ErrorKind.NETWORK,
    ErrorKind.TIMEOUT,
    ErrorKind.RATE_LIMITED,
    ErrorKind.SERVER,
})


class BackendError(Exception):
    """Classified backend failure."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        status: int | None = None,
        path: str | None = None,
        retry_after: float | None = None,
        connect_phase: bool = False,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.path = path
        self.retry_after = retry_after
        # True when the request never left the client (safe to resend a POST)
        self.connect_phase = connect_phase

    @property
    def retriable(self) -> bool:
        return self.kind in _RETRIABLE_KINDS

    def __repr__(self) -> str:
        return f"BackendError(kind={self.kind}, status={self.status}, path={self.path!r})"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    base_delay: float = 0.25
    factor: float = 2.0
    jitter: float = 0.2
    max_attempts: int = 5

    def delay(self, attempt: int) -> float:
        """Backoff before retry number *attempt* (1-based)."""
        raw = self.base_delay * (self.factor ** (attempt - 1))
        return raw * (1 + random.uniform(-self.jitter, self.jitter))


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _classify_status(response: httpx.Response, path: str) -> BackendError:
    status = response.status_code
    if status in (401, 403):
        kind = ErrorKind.AUTH
    elif status == 404:
        kind = ErrorKind.NOT_FOUND
    elif status == 429:
        kind = ErrorKind.RATE_LIMITED
    elif status >= 500:
        kind = ErrorKind.SERVER
    else:
        kind = ErrorKind.VALIDATION
    return BackendError(
        kind,
        f"Backend returned {status} for {path}",
        status=status,
        path=path,
        retry_after=_parse_retry_after(response.headers.get("retry-after")) if status == 429 else None,
    )


class BackendClient:
    """Typed access to the community backend.

    Parameters
    ----------
    cache:
        Cache layer for read-through paths.  Optional; without it every read
        goes to the backend.
    transport:
        Custom httpx transport (tests pass ``httpx.MockTransport``).
    sleep:
        Awaitable used between retries.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        cache: CacheLayer | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        retry: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._cache = cache
        self._timeout = timeout
        self.retry = retry or RetryPolicy()
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None
        self._stale: OrderedDict[str, Any] = OrderedDict()
        self._stats: dict[str, int] = {
            "requests": 0,
            "retries": 0,
            "failures": 0,
            "cache_hits": 0,
            "cache_misses": 0,
            "stale_served": 0,
        }

    # -------------------------------------------------------------------
    # HTTP plumbing
    # -------------------------------------------------------------------
    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Accept": "application/json",
                    "User-Agent": "tasklink-bot",
                },
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None,
        body: Any,
        timeout: float | None,
    ) -> Any:
        client = self._get_client()
        self._stats["requests"] += 1
        try:
            response = await client.request(
                method,
                path,
                params=params,
                json=body,
                timeout=timeout if timeout is not None else self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise BackendError(
                ErrorKind.TIMEOUT, f"Timed out calling {path}", path=path,
                connect_phase=isinstance(exc, httpx.ConnectTimeout),
            ) from exc
        except httpx.TransportError as exc:
            raise BackendError(
                ErrorKind.NETWORK, f"Network error calling {path}: {exc}", path=path,
                connect_phase=isinstance(exc, httpx.ConnectError),
            ) from exc

        if response.status_code >= 400:
            raise _classify_status(response, path)
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise BackendError(
                ErrorKind.SERVER, f"Invalid JSON from {path}", status=response.status_code, path=path,
            ) from exc

    def _should_retry(self, exc: BackendError, method: str) -> bool:
        if method in _IDEMPOTENT:
            return exc.retriable
        return exc.connect_phase

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        timeout: float | None = None,
        retry: bool = True,
    ) -> Any:
        """Send one logical request, retrying per :attr:`retry`.

        Raises
        ------
        BackendError
            Once retries are exhausted or the failure is not retriable.
        """
        method = method.upper()
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._send(method, path, params, json, timeout)
            except BackendError as exc:
                if not retry or attempt >= self.retry.max_attempts or not self._should_retry(exc, method):
                    self._stats["failures"] += 1
                    logger.warning(
                        "Backend %s %s failed (%s, status=%s) after %d attempt(s)",
                        method, path, exc.kind, exc.status, attempt,
                    )
                    raise
                delay = self.retry.delay(attempt)
                if exc.retry_after is not None:
                    delay = max(delay, exc.retry_after)
                self._stats["retries"] += 1
                logger.debug("Retrying %s %s in %.2fs (%s)", method, path, delay, exc.kind)
                await self._sleep(delay)

    async def get(self, path: str, params: dict[str, Any] | None = None, **kw: Any) -> Any:
        return await self.request("GET", path, params=params, **kw)

    async def post(self, path: str, body: Any = None, **kw: Any) -> Any:
        return await self.request("POST", path, json=body, **kw)

    async def put(self, path: str, body: Any = None, **kw: Any) -> Any:
        return await self.request("PUT", path, json=body, **kw)

    async def delete(self, path: str, **kw: Any) -> Any:
        return await self.request("DELETE", path, **kw)

    # -------------------------------------------------------------------
    # Read-through cache
    # -------------------------------------------------------------------
    def _remember(self, key: CacheKey, value: Any) -> None:
        name = key.render()
        self._stale[name] = value
        self._stale.move_to_end(name)
        while len(self._stale) > _STALE_MAX:
            self._stale.popitem(last=False)

    async def _forget(self, *keys: CacheKey) -> None:
        for key in keys:
            self._stale.pop(key.render(), None)
            if self._cache is not None:
                await self._cache.delete(key)

    async def _cached_get(
        self,
        key: CacheKey,
        path: str,
        params: dict[str, Any] | None = None,
        *,
        ttl: int | None = None,
        missing_ok: bool = False,
    ) -> Any:
        if self._cache is not None:
            hit = await self._cache.get(key)
            if hit is not None:
                self._stats["cache_hits"] += 1
                return hit
        self._stats["cache_misses"] += 1

        try:
            data = await self.get(path, params)
        except BackendError as exc:
            if missing_ok and exc.kind == ErrorKind.NOT_FOUND:
                await self._forget(key)
                return None
            stale = self._stale.get(key.render())
            if exc.retriable and stale is not None:
                self._stats["stale_served"] += 1
                logger.warning("Serving stale %s after backend %s", key, exc.kind)
                return stale
            raise

        if data is not None:
            if self._cache is not None:
                await self._cache.set(key, data, ttl)
            self._remember(key, data)
        return data

    # -------------------------------------------------------------------
    # Communities & server mappings
    # -------------------------------------------------------------------
    @staticmethod
    def _mapping_key(guild_id: str) -> CacheKey:
        return cache_key(CacheNamespace.SERVER_MAPPING, "backend", guild_id)

    async def get_community(self, community_id: str) -> dict[str, Any] | None:
        return await self._cached_get(
            cache_key(CacheNamespace.TEMP_DATA, "community", community_id),
            f"/api/communities/{community_id}",
            missing_ok=True,
        )

    async def get_server_mapping(self, guild_id: str) -> dict[str, Any] | None:
        return await self._cached_get(
            self._mapping_key(guild_id),
            "/api/discord/server-mappings",
            {"server_id": guild_id},
            missing_ok=True,
        )

    async def save_server_mapping(
        self, guild_id: str, community_id: str, linked_by: str, guild_name: str | None = None,
    ) -> dict[str, Any]:
        result = await self.post("/api/discord/server-mappings", {
            "server_id": guild_id,
            "community_id": community_id,
            "linked_by": linked_by,
            "server_name": guild_name,
        })
        await self._forget(self._mapping_key(guild_id))
        return result or {}

    async def delete_server_mapping(self, guild_id: str) -> None:
        await self.delete(f"/api/discord/server-mappings/{guild_id}")
        await self._forget(self._mapping_key(guild_id))

    # -------------------------------------------------------------------
    # Social tasks
    # -------------------------------------------------------------------
    async def list_tasks(self, community_id: str, status: str = "active") -> list[dict[str, Any]]:
        data = await self._cached_get(
            cache_key(CacheNamespace.TASK_CACHE, "list", community_id, status),
            f"/api/communities/{community_id}/social-tasks",
            {"status": status} if status != "all" else None,
        )
        if isinstance(data, dict):
            data = data.get("tasks", [])
        return list(data or [])

    async def get_task(self, task_id: str) -> dict[str, Any] | None:
        return await self._cached_get(
            cache_key(CacheNamespace.TASK_CACHE, task_id),
            f"/api/social-tasks/{task_id}",
            missing_ok=True,
        )

    async def create_task(self, community_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        result = await self.post(f"/api/communities/{community_id}/social-tasks", payload)
        if self._cache is not None:
            await self._cache.invalidate_tasks("list", community_id)
        return result or {}

    async def complete_task(self, task_id: str, user_id: str, *, community_id: str | None = None) -> dict[str, Any]:
        result = await self.post(f"/api/social-tasks/{task_id}/complete", {"discord_user_id": user_id})
        await self._forget(cache_key(CacheNamespace.TASK_CACHE, task_id))
        if self._cache is not None and community_id is not None:
            await self._cache.invalidate_tasks("list", community_id)
        return result or {}

    # -------------------------------------------------------------------
    # Allowlists
    # -------------------------------------------------------------------
    async def get_allowlist(self, allowlist_id: str) -> dict[str, Any] | None:
        return await self._cached_get(
            cache_key(CacheNamespace.TEMP_DATA, "allowlist", allowlist_id),
            f"/api/allowlists/{allowlist_id}",
            missing_ok=True,
        )

    async def enter_allowlist(self, allowlist_id: str, user_id: str) -> dict[str, Any]:
        result = await self.post(f"/api/allowlists/{allowlist_id}/entries", {"discord_user_id": user_id})
        await self._forget(cache_key(CacheNamespace.TEMP_DATA, "allowlist", allowlist_id))
        return result or {}

    async def allowlist_analytics(
        self, community_id: str, *, allowlist_id: str | None = None, period: str = "7d",
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"period": period}
        if allowlist_id is not None:
            params["allowlist_id"] = allowlist_id
        return await self.get(f"/api/communities/{community_id}/allowlists/analytics", params) or {}

    # -------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------
    async def get_user_link(self, user_id: str) -> dict[str, Any] | None:
        return await self._cached_get(
            cache_key(CacheNamespace.SESSION, "link", user_id),
            f"/api/discord/users/{user_id}/link",
            missing_ok=True,
        )

    # -------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------
    async def ping(self) -> bool:
        """Lightweight ``GET /health`` (5 s timeout, no retries)."""
        try:
            await self.request("GET", "/health", timeout=PING_TIMEOUT, retry=False)
        except BackendError:
            return False
        return True

    def statistics(self) -> dict[str, int]:
        return dict(self._stats)
