"""
tests/test_alerts.py — Security Alert Queue Tests
===================================================
"""

from __future__ import annotations

from datetime import UTC, datetime

from conftest import run_async

from tasklink.engine.security import SecurityEvent, SecurityEventType, Severity
from tasklink.services.alerts import AlertQueue

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def _event(severity: Severity, guild_id: str | None = "5001",
           etype: SecurityEventType = SecurityEventType.RAPID_COMMANDS) -> SecurityEvent:
    return SecurityEvent(etype, severity, NOW, "1001", guild_id, {})


class RecordingSender:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.batches: list[tuple[str, list[SecurityEvent]]] = []

    async def __call__(self, guild_id: str, events: list[SecurityEvent]) -> None:
        if self.fail:
            raise RuntimeError("channel gone")
        self.batches.append((guild_id, list(events)))


class TestSubmit:
    def test_low_and_medium_are_batched(self):
        queue = AlertQueue(RecordingSender())
        assert queue.submit(_event(Severity.LOW))
        assert queue.submit(_event(Severity.MEDIUM))
        assert queue.pending == 2

    def test_event_without_guild_is_logged_only(self):
        queue = AlertQueue(RecordingSender())
        assert queue.submit(_event(Severity.CRITICAL, guild_id=None)) is True
        assert queue.pending == 0
        assert queue.statistics()["unroutable"] == 1

    def test_high_without_loop_goes_to_urgent_queue(self):
        sender = RecordingSender()
        queue = AlertQueue(sender)
        queue.submit(_event(Severity.LOW))
        queue.submit(_event(Severity.HIGH))
        assert queue.pending == 2

        run_async(queue.flush())
        severities = [e.severity for e in sender.batches[0][1]]
        assert severities == [Severity.HIGH, Severity.LOW]

    def test_critical_is_delivered_immediately(self):
        sender = RecordingSender()
        queue = AlertQueue(sender)

        async def _inner():
            queue.submit(_event(Severity.CRITICAL, etype=SecurityEventType.EMERGENCY_LOCKDOWN))
            await queue.join()

        run_async(_inner())
        assert len(sender.batches) == 1
        assert queue.pending == 0
        assert queue.statistics()["delivered"] == 1

    def test_high_water_drops_low_only(self):
        queue = AlertQueue(RecordingSender(), high_water=2)
        queue.submit(_event(Severity.LOW))
        queue.submit(_event(Severity.LOW))
        assert queue.submit(_event(Severity.LOW)) is False
        assert queue.submit(_event(Severity.MEDIUM)) is True
        assert queue.pending == 3
        assert queue.dropped == 1


class TestFlush:
    def test_groups_per_guild(self):
        sender = RecordingSender()
        queue = AlertQueue(sender)
        queue.submit(_event(Severity.LOW, "a"))
        queue.submit(_event(Severity.MEDIUM, "b"))
        queue.submit(_event(Severity.LOW, "a"))

        assert run_async(queue.flush()) == 3
        assert [(g, len(events)) for g, events in sender.batches] == [("a", 2), ("b", 1)]
        assert queue.pending == 0

    def test_empty_flush(self):
        assert run_async(AlertQueue(RecordingSender()).flush()) == 0

    def test_failed_delivery_is_counted(self):
        queue = AlertQueue(RecordingSender(fail=True))
        queue.submit(_event(Severity.LOW))
        assert run_async(queue.flush()) == 0
        assert queue.statistics()["failed"] == 1

    def test_no_sender_discards(self):
        queue = AlertQueue()
        queue.submit(_event(Severity.MEDIUM))
        assert run_async(queue.flush()) == 0
        assert queue.pending == 0

    def test_pending_for_guild(self):
        queue = AlertQueue(RecordingSender())
        queue.submit(_event(Severity.LOW, "a"))
        queue.submit(_event(Severity.LOW, "b"))
        assert len(queue.pending_for("a")) == 1

    def test_statistics_keys(self):
        stats = AlertQueue().statistics()
        assert set(stats) == {"pending", "in_flight", "delivered", "failed", "dropped", "unroutable", "high_water"}
