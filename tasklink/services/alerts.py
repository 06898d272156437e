"""
tasklink.services.alerts — Security Alert Queue
=================================================

Fan-out of :class:`~tasklink.engine.security.SecurityEvent` to each
guild's configured alert channel.

- ``high`` and ``critical`` events are delivered right away.
- ``low`` and ``medium`` events are batched per guild and flushed by the
  Scheduler every ``batch_seconds``.
- Past ``high_water`` pending alerts, new ``low`` events are dropped and
  counted.  ``medium`` and above are always retained.

Delivery itself is a pluggable async ``sender(guild_id, events)``; the bot
supplies one that posts embeds.  Events without a guild are logged only.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict, deque
from collections.abc import Awaitable, Callable
from typing import Any

from tasklink.engine.security import SecurityEvent, Severity

logger = logging.getLogger(__name__)

AlertSender = Callable[[str, list[SecurityEvent]], Awaitable[None]]

DEFAULT_HIGH_WATER = 1_000


class AlertQueue:
    """Severity-aware alert buffer with backpressure."""

    def __init__(
        self,
        sender: AlertSender | None = None,
        *,
        high_water: int = DEFAULT_HIGH_WATER,
        batch_seconds: float = 60.0,
    ) -> None:
        self._sender = sender
        self.high_water = high_water
        self.batch_seconds = batch_seconds
        self._pending: deque[SecurityEvent] = deque()
        self._urgent: deque[SecurityEvent] = deque()
        self._tasks: set[asyncio.Task] = set()
        self._dropped = 0
        self._delivered = 0
        self._failed = 0
        self._unroutable = 0

    def set_sender(self, sender: AlertSender) -> None:
        self._sender = sender

    @property
    def pending(self) -> int:
        return len(self._pending) + len(self._urgent)

    @property
    def dropped(self) -> int:
        return self._dropped

    def pending_for(self, guild_id: str) -> list[SecurityEvent]:
        return [e for e in (*self._urgent, *self._pending) if e.guild_id == guild_id]

    # -------------------------------------------------------------------
    # Intake
    # -------------------------------------------------------------------
    def submit(self, event: SecurityEvent) -> bool:
        """Accept *event* for delivery.  Returns False if it was dropped."""
        if event.guild_id is None:
            self._unroutable += 1
            logger.info("Security alert without guild (%s) logged only", event.type)
            return True

        if event.severity.rank >= Severity.HIGH.rank:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                # No loop (sync caller): deliver on the next flush, ahead of the batch
                self._urgent.append(event)
                return True
            task = loop.create_task(self._deliver(event.guild_id, [event]), name="alert-deliver")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return True

        if len(self._pending) >= self.high_water and event.severity == Severity.LOW:
            self._dropped += 1
            if self._dropped == 1 or self._dropped % 100 == 0:
                logger.warning("Alert queue over high-water mark: %d low alerts dropped", self._dropped)
            return False
        self._pending.append(event)
        return True

    # -------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------
    async def _deliver(self, guild_id: str, events: list[SecurityEvent]) -> bool:
        if self._sender is None:
            logger.debug("No alert sender configured; %d alert(s) for %s discarded", len(events), guild_id)
            return False
        try:
            await self._sender(guild_id, events)
        except Exception:
            self._failed += len(events)
            logger.exception(
                "Alert delivery to guild %s failed", guild_id,
                extra={"guild_id": guild_id, "task": "alerts"},
            )
            return False
        self._delivered += len(events)
        return True

    async def flush(self) -> int:
        """Deliver every queued alert, grouped per guild.  Returns events sent."""
        batch = [*self._urgent, *self._pending]
        self._urgent.clear()
        self._pending.clear()
        if not batch:
            return 0

        by_guild: OrderedDict[str, list[SecurityEvent]] = OrderedDict()
        for event in batch:
            by_guild.setdefault(event.guild_id, []).append(event)  # type: ignore[arg-type]

        sent = 0
        for guild_id, events in by_guild.items():
            if await self._deliver(guild_id, events):
                sent += len(events)
        return sent

    async def join(self) -> None:
        """Wait for in-flight immediate deliveries."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def statistics(self) -> dict[str, Any]:
        return {
            "pending": self.pending,
            "in_flight": len(self._tasks),
            "delivered": self._delivered,
            "failed": self._failed,
            "dropped": self._dropped,
            "unroutable": self._unroutable,
            "high_water": self.high_water,
        }
