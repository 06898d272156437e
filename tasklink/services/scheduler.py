"""
tasklink.services.scheduler — Periodic Background Jobs
========================================================

Every recurring job runs on a ``discord.ext.tasks`` loop owned by one
:class:`Scheduler`, so shutdown has a single place to stop them:

==========================  ==========  ==========================================
Job                         Interval    Work
==========================  ==========  ==========================================
``rate_limit_compaction``   60 s        drop idle rate-limit and violation entries
``security_cleanup``        5 min       expire restrictions, windows and lockdowns
``security_report``         1 h         log a summary of the last hour
``audit_flush``             5 s         persist buffered audit entries
``audit_retention``         24 h        delete audit entries past retention
``interaction_retention``   24 h        delete interaction logs past retention
``task_post_expiry``        1 h         mark posted tasks past their end as expired
``alert_flush``             60 s        deliver batched low/medium alerts
``health_check``            30 s        check discord, database, cache and backend
==========================  ==========  ==========================================

A failing job logs and waits for its next tick; it never stops its loop.
Storage work goes through ``run_db()`` so the event loop is not blocked.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from discord.ext import tasks

from tasklink.database import repository as repo
from tasklink.database.engine import run_db

if TYPE_CHECKING:
    from tasklink.runtime import Runtime

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Job:
    name: str
    seconds: float
    func: Callable[[], Awaitable[Any]]


class Scheduler:
    """Builds and owns one ``tasks.Loop`` per job.

    *wait_until_ready* (normally ``bot.wait_until_ready``) is awaited before
    each loop's first iteration.
    """

    def __init__(
        self,
        runtime: Runtime,
        *,
        wait_until_ready: Callable[[], Awaitable[Any]] | None = None,
    ) -> None:
        self.runtime = runtime
        self._wait_until_ready = wait_until_ready
        cfg = runtime.config
        self.jobs: dict[str, Job] = {
            job.name: job
            for job in (
                Job("rate_limit_compaction", 60, self._compact_rate_limits),
                Job("security_cleanup", 300, self._security_cleanup),
                Job("security_report", 3600, self._security_report),
                Job("audit_flush", 5, self._audit_flush),
                Job("audit_retention", 86_400, self._audit_retention),
                Job("interaction_retention", 86_400, self._interaction_retention),
                Job("task_post_expiry", 3600, self._expire_task_posts),
                Job("alert_flush", cfg.alert_batch_seconds, self._alert_flush),
                Job("health_check", 30, self._health_check),
            )
        }
        self._loops: dict[str, tasks.Loop] = {}
        self.last_results: dict[str, Any] = {}

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return any(loop.is_running() for loop in self._loops.values())

    def _build_loop(self, job: Job) -> tasks.Loop:
        async def _tick() -> None:
            await self.run(job.name)

        loop = tasks.loop(seconds=job.seconds)(_tick)

        if self._wait_until_ready is not None:
            @loop.before_loop
            async def _wait() -> None:
                await self._wait_until_ready()

        return loop

    def start(self) -> None:
        """Start every loop that is not already running."""
        for name, job in self.jobs.items():
            loop = self._loops.get(name)
            if loop is None:
                loop = self._loops[name] = self._build_loop(job)
            if not loop.is_running():
                loop.start()
        logger.info("Scheduler started %d jobs", len(self.jobs))

    async def stop(self) -> None:
        """Cancel every loop, then run the final audit and alert flush."""
        if not self._loops:
            return
        for loop in self._loops.values():
            loop.cancel()
        self._loops.clear()
        await self.run("audit_flush")
        await self.run("alert_flush")
        logger.info("Scheduler stopped")

    async def run(self, name: str) -> Any:
        """Run one job body now.  Failures are logged, never raised."""
        job = self.jobs[name]
        try:
            result = await job.func()
        except Exception:
            logger.exception("Scheduled job %s failed", name, extra={"task": name})
            return None
        self.last_results[name] = result
        return result

    # -------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------
    async def _compact_rate_limits(self) -> dict[str, int]:
        result = self.runtime.limiter.compact()
        if any(result.values()):
            logger.debug("Rate-limit compaction: %s", result)
        return result

    async def _security_cleanup(self) -> dict[str, int]:
        result = self.runtime.monitor.cleanup()
        engine = self.runtime.engine
        if engine is not None:
            result["stored_lockdowns_deleted"] = await run_db(repo.delete_expired_lockdowns, engine)
        return result

    async def _security_report(self) -> dict[str, Any]:
        return self.runtime.monitor.report(hours=1.0)

    async def _audit_flush(self) -> int:
        return await self.runtime.audit.flush()

    async def _audit_retention(self) -> dict[str, int]:
        return await run_db(self.runtime.audit.cleanup)

    async def _interaction_retention(self) -> int:
        engine = self.runtime.engine
        if engine is None:
            return 0
        days = self.runtime.config.interaction_log_retention_days
        cutoff = datetime.now(UTC) - timedelta(days=days)
        deleted = await run_db(repo.delete_interaction_logs_before, engine, cutoff)
        if deleted:
            logger.info("Interaction log retention (%d days): %d rows deleted", days, deleted)
        return deleted

    async def _expire_task_posts(self) -> int:
        engine = self.runtime.engine
        if engine is None:
            return 0
        return await run_db(repo.expire_task_posts, engine)

    async def _alert_flush(self) -> int:
        return await self.runtime.alerts.flush()

    async def _health_check(self) -> dict[str, Any] | None:
        health = self.runtime.health
        if health is None:
            return None
        return await health.check_all()
