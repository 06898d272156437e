"""
tasklink.services.health — Component Health Monitor
=====================================================

Checks ``discord``, ``database``, ``cache`` and ``backend`` (each bounded
by a 5 s timeout), tracks consecutive failures and response times, and
folds the results into one overall status:

- ``healthy``   every component is healthy or disabled
- ``degraded``  at least one component is healthy
- ``unhealthy`` nothing is healthy

A component that fails three checks in a row is logged at ``error`` once;
a check slower than five seconds is logged at ``warning``.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

HealthCheck = Callable[[], Awaitable[bool]]


class HealthStatus(enum.StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    DISABLED = "disabled"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class ComponentState:
    name: str
    status: HealthStatus = HealthStatus.UNKNOWN
    response_ms: float | None = None
    error: str | None = None
    checked_at: datetime | None = None
    consecutive_failures: int = 0
    history: list[float] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        avg = sum(self.history) / len(self.history) if self.history else None
        return {
            "status": str(self.status),
            "response_ms": round(self.response_ms, 1) if self.response_ms is not None else None,
            "avg_response_ms": round(avg, 1) if avg is not None else None,
            "error": self.error,
            "checked_at": self.checked_at.isoformat() if self.checked_at else None,
            "consecutive_failures": self.consecutive_failures,
        }


class HealthMonitor:
    """Runs registered checks and keeps the latest result per component.

    A check of ``None`` marks the component as disabled (for example no
    ``CACHE_URL`` configured).
    """

    def __init__(
        self,
        checks: Mapping[str, HealthCheck | None],
        *,
        timeout: float = 5.0,
        failure_threshold: int = 3,
        slow_ms: float = 5_000.0,
        history: int = 20,
    ) -> None:
        self._checks = dict(checks)
        self.timeout = timeout
        self.failure_threshold = failure_threshold
        self.slow_ms = slow_ms
        self._history = history
        self._states: dict[str, ComponentState] = {
            name: ComponentState(name, HealthStatus.DISABLED if check is None else HealthStatus.UNKNOWN)
            for name, check in self._checks.items()
        }

    async def check_component(self, name: str) -> ComponentState:
        state = self._states[name]
        check = self._checks[name]
        if check is None:
            state.status = HealthStatus.DISABLED
            return state

        started = time.perf_counter()
        error: str | None = None
        try:
            ok = bool(await asyncio.wait_for(check(), timeout=self.timeout))
            if not ok:
                error = "check reported failure"
        except TimeoutError:
            ok = False
            error = f"timed out after {self.timeout:.0f}s"
        except Exception as exc:
            ok = False
            error = f"{type(exc).__name__}: {exc}"
        elapsed_ms = (time.perf_counter() - started) * 1000

        state.response_ms = elapsed_ms
        state.checked_at = datetime.now(UTC)
        state.history.append(elapsed_ms)
        del state.history[:-self._history]

        if ok:
            if state.consecutive_failures >= self.failure_threshold:
                logger.info("%s recovered after %d failed checks", name, state.consecutive_failures)
            state.status = HealthStatus.HEALTHY
            state.error = None
            state.consecutive_failures = 0
            if elapsed_ms > self.slow_ms:
                logger.warning("%s health check slow: %.0f ms", name, elapsed_ms)
        else:
            state.status = HealthStatus.UNHEALTHY
            state.error = error
            state.consecutive_failures += 1
            if state.consecutive_failures == self.failure_threshold:
                logger.error(
                    "%s unhealthy for %d consecutive checks: %s", name, state.consecutive_failures, error,
                    extra={"task": "health"},
                )
            else:
                logger.warning("%s health check failed: %s", name, error)
        return state

    async def check_all(self) -> dict[str, Any]:
        await asyncio.gather(*(self.check_component(name) for name in self._checks))
        return self.snapshot()

    def overall(self) -> HealthStatus:
        statuses = [s.status for s in self._states.values()]
        active = [s for s in statuses if s != HealthStatus.DISABLED]
        if all(s == HealthStatus.HEALTHY for s in active):
            return HealthStatus.HEALTHY
        if any(s == HealthStatus.HEALTHY for s in active):
            return HealthStatus.DEGRADED
        return HealthStatus.UNHEALTHY

    def snapshot(self) -> dict[str, Any]:
        return {
            "status": str(self.overall()),
            "components": {name: state.to_dict() for name, state in self._states.items()},
        }
