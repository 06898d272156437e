"""
tasklink.engine.rate_limiter — Sliding-Window Rate Limiter
============================================================

Counts requests per ``(identifier, action)`` in a sliding window kept as a
list of millisecond timestamps.  Every denial is recorded in a
:class:`ViolationLedger`; the Security Monitor turns repeated violations
into restrictions that the Permission Evaluator enforces.

Default actions (all per 60 s)::

    command      5
    interaction  10
    api          20
    global       100

Unknown actions fall back to the ``global`` rule.

The limiter fails open: if anything inside it raises, the request is
allowed and the error is logged.  Checks are CPU-only and never suspend.
A periodic :meth:`RateLimiter.compact` (driven by the Scheduler) prunes
stale timestamps, drops idle entries and enforces the entry cap (LRU).
"""

from __future__ import annotations

import enum
import logging
import math
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from threading import Lock
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RateLimitRule:
    """``requests`` allowed per ``window_ms`` milliseconds."""

    requests: int
    window_ms: int


DEFAULT_RULES: dict[str, RateLimitRule] = {
    "command": RateLimitRule(requests=5, window_ms=60_000),
    "interaction": RateLimitRule(requests=10, window_ms=60_000),
    "api": RateLimitRule(requests=20, window_ms=60_000),
    "global": RateLimitRule(requests=100, window_ms=60_000),
}

DEFAULT_MAX_ENTRIES = 10_000
DEFAULT_IDLE_EVICTION_MS = 5 * 60_000
DEFAULT_VIOLATION_WINDOW_MS = 10 * 60_000


class Escalation(enum.StrEnum):
    """Rungs of the violation ladder."""
    NONE = "none"
    WARN = "warn"
    RESTRICT = "restrict"
    EXTENDED = "extended_restriction"


@dataclass(frozen=True, slots=True)
class RateLimitVerdict:
    """Result of a rate-limit check.  Times are epoch milliseconds."""

    allowed: bool
    remaining: int
    reset_time: int
    retry_after: int
    limit: int
    action: str
    violations: int = 0

    @property
    def retry_after_seconds(self) -> int:
        """Whole seconds to wait, rounded up (0 when allowed)."""
        if self.retry_after <= 0:
            return 0
        return max(1, math.ceil(self.retry_after / 1000))

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "reset_time": self.reset_time,
            "retry_after": self.retry_after,
            "limit": self.limit,
            "action": self.action,
            "violations": self.violations,
        }


class RateEntry:
    """Timestamps for one ``identifier:action`` key."""

    __slots__ = ("window_ms", "timestamps", "last_access")

    def __init__(self, window_ms: int, now: int) -> None:
        self.window_ms = window_ms
        self.timestamps: list[int] = []
        self.last_access = now

    def prune(self, now: int) -> int:
        """Drop timestamps at or beyond the window; returns how many."""
        before = len(self.timestamps)
        self.timestamps = [ts for ts in self.timestamps if now - ts < self.window_ms]
        return before - len(self.timestamps)


# ---------------------------------------------------------------------------
# Violation ledger
# ---------------------------------------------------------------------------
class ViolationLedger:
    """Per-identifier breach timestamps inside a decaying window.

    Not locked on its own; the owning :class:`RateLimiter` serialises access.
    """

    def __init__(self, window_ms: int = DEFAULT_VIOLATION_WINDOW_MS) -> None:
        self.window_ms = window_ms
        self._hits: dict[str, list[int]] = {}

    def _live(self, identifier: str, now: int) -> list[int]:
        hits = [t for t in self._hits.get(identifier, ()) if now - t < self.window_ms]
        if hits:
            self._hits[identifier] = hits
        else:
            self._hits.pop(identifier, None)
        return hits

    def record(self, identifier: str, now: int) -> int:
        hits = self._live(identifier, now)
        hits.append(now)
        self._hits[identifier] = hits
        return len(hits)

    def count(self, identifier: str, now: int) -> int:
        return len(self._live(identifier, now))

    def clear(self, identifier: str | None = None) -> None:
        if identifier is None:
            self._hits.clear()
        else:
            self._hits.pop(identifier, None)

    def compact(self, now: int) -> int:
        stale = [i for i, hits in self._hits.items() if all(now - t >= self.window_ms for t in hits)]
        for identifier in stale:
            del self._hits[identifier]
        return len(stale)

    def __len__(self) -> int:
        return len(self._hits)


def escalation_for(violations: int) -> Escalation:
    """Map a violation count onto its escalation rung."""
    if violations <= 0:
        return Escalation.NONE
    if violations == 1:
        return Escalation.WARN
    if violations == 2:
        return Escalation.RESTRICT
    return Escalation.EXTENDED


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------
class RateLimiter:
    """Thread-safe sliding-window limiter keyed by ``identifier:action``.

    Parameters
    ----------
    rules:
        Action → rule overrides merged over :data:`DEFAULT_RULES`.
    clock:
        Returns the current time in **seconds** (``time.time`` by default).
        Tests inject a controllable clock.
    """

    def __init__(
        self,
        rules: Mapping[str, RateLimitRule] | None = None,
        *,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        idle_eviction_ms: int = DEFAULT_IDLE_EVICTION_MS,
        violation_window_ms: int = DEFAULT_VIOLATION_WINDOW_MS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._rules: dict[str, RateLimitRule] = dict(DEFAULT_RULES)
        if rules:
            self._rules.update(rules)
        self.max_entries = max_entries
        self.idle_eviction_ms = idle_eviction_ms
        self._clock = clock
        self._lock = Lock()
        self._entries: OrderedDict[str, RateEntry] = OrderedDict()
        self._ledger = ViolationLedger(violation_window_ms)
        self._checks = 0
        self._deny_count = 0
        self._errors = 0
        self._evicted = 0

    def _now(self) -> int:
        return int(self._clock() * 1000)

    # -------------------------------------------------------------------
    # Rules
    # -------------------------------------------------------------------
    def rule_for(self, action: str) -> RateLimitRule:
        return self._rules.get(action) or self._rules["global"]

    @property
    def rules(self) -> dict[str, RateLimitRule]:
        with self._lock:
            return dict(self._rules)

    def update_rule(self, action: str, rule: RateLimitRule) -> None:
        """Replace the rule for *action* (takes effect on the next check)."""
        if rule.requests < 0 or rule.window_ms <= 0:
            raise ValueError(f"Invalid rate limit rule: {rule!r}")
        with self._lock:
            self._rules[action] = rule
        logger.info("Rate limit for %r set to %d/%dms", action, rule.requests, rule.window_ms)

    # -------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------
    def _prepare(
        self, identifier: str, action: str, override: RateLimitRule | None, now: int,
    ) -> tuple[RateEntry, RateLimitRule]:
        rule = override or self.rule_for(action)
        key = f"{identifier}:{action}"
        entry = self._entries.get(key)
        if entry is None:
            entry = RateEntry(rule.window_ms, now)
            self._entries[key] = entry
        else:
            self._entries.move_to_end(key)
            entry.window_ms = rule.window_ms
        entry.last_access = now
        entry.prune(now)
        return entry, rule

    @staticmethod
    def _denied(
        entry: RateEntry, rule: RateLimitRule, action: str, now: int, violations: int,
    ) -> RateLimitVerdict:
        oldest = min(entry.timestamps) if entry.timestamps else now
        reset_time = oldest + rule.window_ms
        return RateLimitVerdict(
            allowed=False,
            remaining=0,
            reset_time=reset_time,
            retry_after=max(0, reset_time - now),
            limit=rule.requests,
            action=action,
            violations=violations,
        )

    @staticmethod
    def _accepted(
        entry: RateEntry, rule: RateLimitRule, action: str, now: int, violations: int,
    ) -> RateLimitVerdict:
        return RateLimitVerdict(
            allowed=True,
            remaining=max(0, rule.requests - len(entry.timestamps)),
            reset_time=now + rule.window_ms,
            retry_after=0,
            limit=rule.requests,
            action=action,
            violations=violations,
        )

    def _fail_open(self, identifier: str, action: str) -> RateLimitVerdict:
        self._errors += 1
        logger.exception(
            "Rate limiter failed for %s:%s — failing open", identifier, action,
            extra={"user_id": identifier, "action": action},
        )
        rule = DEFAULT_RULES.get(action, DEFAULT_RULES["global"])
        return RateLimitVerdict(
            allowed=True,
            remaining=rule.requests,
            reset_time=int(time.time() * 1000) + rule.window_ms,
            retry_after=0,
            limit=rule.requests,
            action=action,
        )

    def _enforce_cap(self) -> None:
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
            self._evicted += 1

    def check(
        self,
        identifier: str,
        action: str = "global",
        override: RateLimitRule | None = None,
    ) -> RateLimitVerdict:
        """Count one request for ``identifier`` under *action*.

        A request at exactly ``window_ms`` after the oldest tracked request
        is accepted (the oldest has left the window).
        """
        try:
            with self._lock:
                now = self._now()
                self._checks += 1
                entry, rule = self._prepare(identifier, action, override, now)
                if len(entry.timestamps) >= rule.requests:
                    self._deny_count += 1
                    violations = self._ledger.record(identifier, now)
                    return self._denied(entry, rule, action, now, violations)
                entry.timestamps.append(now)
                self._enforce_cap()
                return self._accepted(entry, rule, action, now, self._ledger.count(identifier, now))
        except Exception:
            return self._fail_open(identifier, action)

    def check_multiple(self, identifier: str, actions: Iterable[str]) -> RateLimitVerdict:
        """Check several actions as one request.

        Allowed iff every action allows; nothing is counted unless all
        allow.  ``remaining`` is the minimum, ``retry_after`` the maximum.
        A combined denial records a single violation.
        """
        actions = list(actions)
        if not actions:
            raise ValueError("check_multiple() needs at least one action")
        label = "+".join(actions)
        try:
            with self._lock:
                now = self._now()
                self._checks += 1
                prepared = [(a, *self._prepare(identifier, a, None, now)) for a in actions]
                blocked = [(a, e, r) for a, e, r in prepared if len(e.timestamps) >= r.requests]
                if blocked:
                    self._deny_count += 1
                    violations = self._ledger.record(identifier, now)
                    verdicts = [self._denied(e, r, a, now, violations) for a, e, r in blocked]
                else:
                    for _, entry, _ in prepared:
                        entry.timestamps.append(now)
                    self._enforce_cap()
                    violations = self._ledger.count(identifier, now)
                    verdicts = [self._accepted(e, r, a, now, violations) for a, e, r in prepared]
        except Exception:
            return self._fail_open(identifier, label)

        return RateLimitVerdict(
            allowed=not blocked,
            remaining=min(v.remaining for v in verdicts),
            reset_time=max(v.reset_time for v in verdicts),
            retry_after=max(v.retry_after for v in verdicts),
            limit=min(v.limit for v in verdicts),
            action=label,
            violations=violations,
        )

    def status(self, identifier: str, action: str = "global") -> RateLimitVerdict:
        """Peek at the current window without counting a request."""
        with self._lock:
            now = self._now()
            rule = self.rule_for(action)
            entry = self._entries.get(f"{identifier}:{action}")
            live = [ts for ts in entry.timestamps if now - ts < rule.window_ms] if entry else []
            violations = self._ledger.count(identifier, now)
        if len(live) >= rule.requests:
            reset_time = (min(live) if live else now) + rule.window_ms
            return RateLimitVerdict(False, 0, reset_time, max(0, reset_time - now), rule.requests, action, violations)
        return RateLimitVerdict(
            True, rule.requests - len(live), now + rule.window_ms, 0, rule.requests, action, violations,
        )

    # -------------------------------------------------------------------
    # Violations
    # -------------------------------------------------------------------
    def violations(self, identifier: str) -> int:
        with self._lock:
            return self._ledger.count(identifier, self._now())

    def escalation(self, identifier: str) -> Escalation:
        return escalation_for(self.violations(identifier))

    # -------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------
    def reset(self, identifier: str | None = None, action: str | None = None) -> None:
        """Clear state for one key, one identifier, or everything."""
        with self._lock:
            if identifier is None:
                self._entries.clear()
                self._ledger.clear()
                return
            if action is not None:
                self._entries.pop(f"{identifier}:{action}", None)
                return
            prefix = f"{identifier}:"
            for key in [k for k in self._entries if k.startswith(prefix)]:
                del self._entries[key]
            self._ledger.clear(identifier)

    def compact(self) -> dict[str, int]:
        """Prune timestamps, drop idle empty entries, enforce the LRU cap."""
        with self._lock:
            now = self._now()
            pruned = 0
            dropped = 0
            for key, entry in list(self._entries.items()):
                pruned += entry.prune(now)
                if not entry.timestamps and now - entry.last_access > self.idle_eviction_ms:
                    del self._entries[key]
                    dropped += 1
            before = self._evicted
            self._enforce_cap()
            evicted = self._evicted - before
            ledger_dropped = self._ledger.compact(now)
            remaining = len(self._entries)

        if dropped or evicted:
            logger.debug(
                "Rate limiter compacted: %d timestamps pruned, %d idle dropped, %d evicted, %d remain",
                pruned, dropped, evicted, remaining,
            )
        return {
            "pruned": pruned,
            "dropped": dropped,
            "evicted": evicted,
            "violations_dropped": ledger_dropped,
            "entries": remaining,
        }

    def statistics(self) -> dict[str, Any]:
        with self._lock:
            by_action: dict[str, int] = {}
            identifiers: set[str] = set()
            for key in self._entries:
                identifier, _, action = key.rpartition(":")
                identifiers.add(identifier)
                by_action[action] = by_action.get(action, 0) + 1
            return {
                "entries": len(self._entries),
                "identifiers": len(identifiers),
                "entries_by_action": by_action,
                "violators": len(self._ledger),
                "checks": self._checks,
                "denied": self._deny_count,
                "errors": self._errors,
                "evicted": self._evicted,
                "rules": {
                    a: {"requests": r.requests, "window_ms": r.window_ms}
                    for a, r in self._rules.items()
                },
            }

    def __len__(self) -> int:
        return len(self._entries)
