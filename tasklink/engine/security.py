"""
tasklink.engine.security — Behavioural Security Monitor
=========================================================

Mines the interaction stream for anomalies and responds to them.

Rolling windows are kept per ``(user_id, kind)`` and per
``(guild_id, kind)``.  Each rule observes an event, updates its window and
may emit a :class:`SecurityEvent`:

=====================  ========  ==============================================
Rule                   Severity  Fires when
=====================  ========  ==============================================
rapid_commands         medium    > 10 slash commands from one user in 60 s
rapid_buttons          medium    > 12 button presses from one user in 60 s
mass_joins             high      > 10 member joins into one guild in 300 s
new_account_activity   low       sensitive action < 24 h after account creation
suspicious_content     medium    message text matches a known abuse pattern
coordinated_attack     critical  ≥ 3 source addresses each > 3 failures on one
                                 guild in 300 s
auto_restriction       high      violations reach the extended-restriction rung
emergency_lockdown     critical  a guild lockdown is triggered
=====================  ========  ==============================================

A rule fires at most once per key per window, so a burst yields one event.

Every event is buffered in a bounded ring (ephemeral; the audit log is the
durable record), written to the audit log, and handed to the alert sink.

Restrictions follow ``clean → warned → restricted → extended_restriction``
as rate-limit violations accumulate, and decay back to ``clean`` once the
restriction has expired and the quiet window has passed.
"""

from __future__ import annotations

import enum
import logging
import re
from collections import Counter, deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from threading import Lock
from typing import TYPE_CHECKING, Any, Protocol

from tasklink.engine.guild import Lockdown
from tasklink.engine.interactions import Interaction, InteractionKind

if TYPE_CHECKING:
    from tasklink.engine.audit import AuditLog

logger = logging.getLogger(__name__)


class SecurityEventType(enum.StrEnum):
    RAPID_COMMANDS = "rapid_commands"
    RAPID_BUTTONS = "rapid_buttons"
    MASS_JOINS = "mass_joins"
    NEW_ACCOUNT_ACTIVITY = "new_account_activity"
    COORDINATED_ATTACK = "coordinated_attack"
    AUTO_RESTRICTION = "auto_restriction"
    SUSPICIOUS_CONTENT = "suspicious_content"
    EMERGENCY_LOCKDOWN = "emergency_lockdown"


class Severity(enum.StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK: dict[Severity, int] = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class RestrictionLevel(enum.StrEnum):
    CLEAN = "clean"
    WARNED = "warned"
    RESTRICTED = "restricted"
    EXTENDED = "extended_restriction"


_LEVEL_RANK: dict[RestrictionLevel, int] = {
    RestrictionLevel.CLEAN: 0,
    RestrictionLevel.WARNED: 1,
    RestrictionLevel.RESTRICTED: 2,
    RestrictionLevel.EXTENDED: 3,
}

# Message patterns flagged as suspicious_content
SUSPICIOUS_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("invite_laundering", re.compile(
        r"(?:discord(?:app)?\.com/invite|discord\.gg|dsc\.gg|invite\.gg)/[A-Za-z0-9-]+", re.I,
    )),
    ("phishing_url", re.compile(
        r"https?://[^\s/]*(?:d[il1]sc[o0]r[cdl]|n[il1]tr[o0]|steamc[o0]mmun[il1]ty|"
        r"walletconnect|metamask)[^\s/]*\.(?:gift|gifts|ru|tk|ml|ga|cf|xyz|click|link|top)\b", re.I,
    )),
    ("free_nitro", re.compile(r"\bfree\s+(?:discord\s+)?nitro\b", re.I)),
    ("credential_solicitation", re.compile(
        r"\b(?:send|give|share|enter|verify|dm)\b.{0,30}"
        r"\b(?:password|seed\s*phrase|private\s*key|recovery\s*phrase|2fa\s*code|token)\b", re.I,
    )),
    ("everyone_external_link", re.compile(r"@(?:everyone|here)\b.*https?://", re.I | re.S)),
)


@dataclass(frozen=True, slots=True)
class SecurityThresholds:
    """Every tunable of the monitor.  Durations are in seconds."""

    rapid_commands: int = 10
    rapid_commands_window: float = 60.0
    rapid_buttons: int = 12
    rapid_buttons_window: float = 60.0
    mass_joins: int = 10
    mass_joins_window: float = 300.0
    new_account_hours: float = 24.0
    coordinated_sources: int = 3
    coordinated_failures: int = 3
    coordinated_window: float = 300.0
    auto_restriction_violations: int = 3
    restriction_seconds: float = 300.0
    extended_restriction_seconds: float = 3600.0
    quiet_window: float = 1800.0
    lockdown_seconds: float = 1800.0
    auto_lockdown_on_coordinated_attack: bool = True
    event_buffer: int = 1000


@dataclass(frozen=True, slots=True)
class SecurityEvent:
    type: SecurityEventType
    severity: Severity
    timestamp: datetime
    user_id: str | None = None
    guild_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": str(self.type),
            "severity": str(self.severity),
            "timestamp": self.timestamp.isoformat(),
            "user_id": self.user_id,
            "guild_id": self.guild_id,
            "details": dict(self.details),
        }


@dataclass(slots=True)
class Restriction:
    level: RestrictionLevel
    since: datetime
    until: datetime | None = None
    violations: int = 0

    def active(self, now: datetime) -> bool:
        return self.until is not None and now < self.until


class AlertSink(Protocol):
    def submit(self, event: SecurityEvent) -> bool: ...


LockdownListener = Callable[[str, Lockdown | None], None]


class SecurityMonitor:
    """Thread-safe anomaly detector with restriction and lockdown state.

    Parameters
    ----------
    audit:
        Receives one entry per emitted event (type mirrors the event type).
    alerts:
        Receives every emitted event for delivery to guild alert channels.
    clock:
        Returns an aware ``datetime``; tests inject a controllable one.
    """

    def __init__(
        self,
        thresholds: SecurityThresholds | None = None,
        *,
        audit: AuditLog | None = None,
        alerts: AlertSink | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.thresholds = thresholds or SecurityThresholds()
        self._audit = audit
        self._alerts = alerts
        self._clock = clock
        self._lock = Lock()

        self._events: deque[SecurityEvent] = deque(maxlen=self.thresholds.event_buffer)
        self._user_windows: dict[tuple[str, str], deque[float]] = {}
        self._guild_windows: dict[tuple[str, str], deque[float]] = {}
        self._join_ages: dict[str, deque[tuple[float, float]]] = {}
        self._failures: dict[str, dict[str, deque[float]]] = {}
        self._cooldowns: dict[tuple[str, str], float] = {}
        self._restrictions: dict[str, Restriction] = {}
        self._lockdowns: dict[str, Lockdown] = {}
        self._lockdown_listeners: list[LockdownListener] = []
        self._counts: Counter[str] = Counter()
        self._severity_counts: Counter[str] = Counter()

    def attach_alerts(self, alerts: AlertSink) -> None:
        self._alerts = alerts

    def add_lockdown_listener(self, listener: LockdownListener) -> None:
        """Call *listener(guild_id, lockdown_or_None)* on every lockdown change."""
        self._lockdown_listeners.append(listener)

    # -------------------------------------------------------------------
    # Window helpers (call with the lock held)
    # -------------------------------------------------------------------
    @staticmethod
    def _hit(windows: dict[Any, deque[float]], key: Any, now: float, window: float) -> int:
        hits = windows.setdefault(key, deque())
        hits.append(now)
        while hits and now - hits[0] >= window:
            hits.popleft()
        return len(hits)

    def _cooled(self, rule: str, key: str, now: float, window: float) -> bool:
        """True (and arms the cooldown) if *rule* may fire again for *key*."""
        until = self._cooldowns.get((rule, key))
        if until is not None and now < until:
            return False
        self._cooldowns[(rule, key)] = now + window
        return True

    def _event(
        self,
        etype: SecurityEventType,
        severity: Severity,
        now: datetime,
        *,
        user_id: str | None = None,
        guild_id: str | None = None,
        **details: Any,
    ) -> SecurityEvent:
        return SecurityEvent(etype, severity, now, user_id, guild_id, details)

    # -------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------
    def observe(
        self,
        interaction: Interaction,
        *,
        failed: bool = False,
        sensitive: bool = False,
    ) -> list[SecurityEvent]:
        """Feed one interaction through every applicable rule.

        ``failed`` marks an interaction that was denied or errored (input to
        ``coordinated_attack``); ``sensitive`` marks a state-changing action
        (input to ``new_account_activity``).
        """
        now = self._clock()
        ts = now.timestamp()
        t = self.thresholds
        user_id = interaction.user_id
        guild_id = interaction.guild_id
        events: list[SecurityEvent] = []
        lockdown_guild: str | None = None

        with self._lock:
            kind = interaction.kind
            if kind == InteractionKind.SLASH_COMMAND:
                count = self._hit(self._user_windows, (user_id, "command"), ts, t.rapid_commands_window)
                if count > t.rapid_commands and self._cooled("rapid_commands", user_id, ts, t.rapid_commands_window):
                    events.append(self._event(
                        SecurityEventType.RAPID_COMMANDS, Severity.MEDIUM, now,
                        user_id=user_id, guild_id=guild_id,
                        count=count, window_seconds=t.rapid_commands_window,
                        command=interaction.name,
                    ))

            elif kind == InteractionKind.BUTTON:
                count = self._hit(self._user_windows, (user_id, "button"), ts, t.rapid_buttons_window)
                if count > t.rapid_buttons and self._cooled("rapid_buttons", user_id, ts, t.rapid_buttons_window):
                    events.append(self._event(
                        SecurityEventType.RAPID_BUTTONS, Severity.MEDIUM, now,
                        user_id=user_id, guild_id=guild_id,
                        count=count, window_seconds=t.rapid_buttons_window,
                    ))

            elif kind == InteractionKind.MEMBER_JOIN and guild_id is not None:
                count = self._hit(self._guild_windows, (guild_id, "join"), ts, t.mass_joins_window)
                ages = self._join_ages.setdefault(guild_id, deque())
                ages.append((ts, interaction.invoker.account_age_seconds(now)))
                while ages and ts - ages[0][0] >= t.mass_joins_window:
                    ages.popleft()
                if count > t.mass_joins and self._cooled("mass_joins", guild_id, ts, t.mass_joins_window):
                    new_accounts = sum(1 for _, age in ages if age < 7 * 86400)
                    events.append(self._event(
                        SecurityEventType.MASS_JOINS, Severity.HIGH, now,
                        guild_id=guild_id,
                        count=count, new_accounts=new_accounts,
                        window_seconds=t.mass_joins_window,
                    ))

            elif kind == InteractionKind.MESSAGE and interaction.content:
                matched = self.check_content(interaction.content)
                if matched:
                    events.append(self._event(
                        SecurityEventType.SUSPICIOUS_CONTENT, Severity.MEDIUM, now,
                        user_id=user_id, guild_id=guild_id,
                        patterns=matched, channel_id=interaction.channel_id,
                    ))

            if sensitive and kind in (InteractionKind.SLASH_COMMAND, InteractionKind.BUTTON):
                age_hours = interaction.invoker.account_age_seconds(now) / 3600
                if age_hours < t.new_account_hours and self._cooled(
                    "new_account_activity", user_id, ts, t.new_account_hours * 3600,
                ):
                    events.append(self._event(
                        SecurityEventType.NEW_ACCOUNT_ACTIVITY, Severity.LOW, now,
                        user_id=user_id, guild_id=guild_id,
                        account_age_hours=round(age_hours, 2), action=interaction.name,
                    ))

            if failed and guild_id is not None and interaction.source_address:
                sources = self._failures.setdefault(guild_id, {})
                self._hit(sources, interaction.source_address, ts, t.coordinated_window)
                offenders = [
                    src for src, hits in sources.items()
                    if sum(1 for h in hits if ts - h < t.coordinated_window) > t.coordinated_failures
                ]
                if len(offenders) >= t.coordinated_sources and self._cooled(
                    "coordinated_attack", guild_id, ts, t.coordinated_window,
                ):
                    events.append(self._event(
                        SecurityEventType.COORDINATED_ATTACK, Severity.CRITICAL, now,
                        guild_id=guild_id,
                        sources=len(offenders), window_seconds=t.coordinated_window,
                    ))
                    if t.auto_lockdown_on_coordinated_attack:
                        lockdown_guild = guild_id

        for event in events:
            self._dispatch(event)
        if lockdown_guild is not None:
            self.trigger_emergency_lockdown(
                lockdown_guild, "Coordinated attack detected", triggered_by="security_monitor",
            )
        return events

    def check_content(self, text: str) -> list[str]:
        """Names of every suspicious pattern *text* matches."""
        return [name for name, pattern in SUSPICIOUS_PATTERNS if pattern.search(text)]

    def report_suspicious(
        self,
        interaction: Interaction,
        reason: str,
        **details: Any,
    ) -> SecurityEvent:
        """Emit ``suspicious_content`` for malformed input (e.g. a bad custom id)."""
        event = self._event(
            SecurityEventType.SUSPICIOUS_CONTENT, Severity.MEDIUM, self._clock(),
            user_id=interaction.user_id, guild_id=interaction.guild_id,
            reason=reason, **details,
        )
        self._dispatch(event)
        return event

    # -------------------------------------------------------------------
    # Restrictions
    # -------------------------------------------------------------------
    def _current(self, user_id: str, now: datetime) -> Restriction | None:
        """Return the decayed restriction for *user_id* (lock held)."""
        r = self._restrictions.get(user_id)
        if r is None:
            return None
        if r.until is not None and now >= r.until:
            r.level = RestrictionLevel.WARNED
            r.since = r.until
            r.until = None
        if r.level == RestrictionLevel.WARNED and (now - r.since).total_seconds() >= self.thresholds.quiet_window:
            del self._restrictions[user_id]
            return None
        return r

    def record_violation(
        self, user_id: str, guild_id: str | None, violations: int,
    ) -> list[SecurityEvent]:
        """Advance the restriction state machine for *user_id*.

        *violations* is the live count from the rate limiter's ledger.  The
        state only ever escalates here; decay happens with time.
        """
        t = self.thresholds
        now = self._clock()
        if violations >= t.auto_restriction_violations:
            target = RestrictionLevel.EXTENDED
            until = now + timedelta(seconds=t.extended_restriction_seconds)
        elif violations >= 2:
            target = RestrictionLevel.RESTRICTED
            until = now + timedelta(seconds=t.restriction_seconds)
        elif violations >= 1:
            target = RestrictionLevel.WARNED
            until = None
        else:
            return []

        events: list[SecurityEvent] = []
        with self._lock:
            current = self._current(user_id, now)
            current_level = current.level if current else RestrictionLevel.CLEAN
            if _LEVEL_RANK[target] < _LEVEL_RANK[current_level]:
                return []
            if current is not None and target == current_level and target == RestrictionLevel.WARNED:
                current.violations = violations
                return []
            self._restrictions[user_id] = Restriction(target, now, until, violations)
            escalated = _LEVEL_RANK[target] > _LEVEL_RANK[current_level]
            if target == RestrictionLevel.EXTENDED and escalated:
                events.append(self._event(
                    SecurityEventType.AUTO_RESTRICTION, Severity.HIGH, now,
                    user_id=user_id, guild_id=guild_id,
                    violations=violations, until=until.isoformat(),
                ))

        if escalated:
            logger.warning(
                "User %s escalated to %s after %d violations", user_id, target, violations,
                extra={"user_id": user_id, "guild_id": guild_id},
            )
        for event in events:
            self._dispatch(event)
        return events

    def is_restricted(self, user_id: str) -> Restriction | None:
        """The active restriction for *user_id*, or ``None``."""
        now = self._clock()
        with self._lock:
            r = self._current(user_id, now)
            if r is not None and r.active(now):
                return r
        return None

    def restriction_level(self, user_id: str) -> RestrictionLevel:
        with self._lock:
            r = self._current(user_id, self._clock())
            return r.level if r else RestrictionLevel.CLEAN

    def lift_restriction(self, user_id: str) -> bool:
        with self._lock:
            return self._restrictions.pop(user_id, None) is not None

    # -------------------------------------------------------------------
    # Lockdown
    # -------------------------------------------------------------------
    def trigger_emergency_lockdown(
        self,
        guild_id: str,
        reason: str,
        duration_seconds: float | None = None,
        *,
        triggered_by: str = "system",
    ) -> Lockdown:
        """Block every command in *guild_id* until the duration elapses."""
        now = self._clock()
        seconds = duration_seconds if duration_seconds is not None else self.thresholds.lockdown_seconds
        lockdown = Lockdown(reason=reason, until=now + timedelta(seconds=seconds), triggered_by=triggered_by)
        with self._lock:
            self._lockdowns[guild_id] = lockdown

        logger.warning(
            "Emergency lockdown on guild %s until %s: %s", guild_id, lockdown.until.isoformat(), reason,
            extra={"guild_id": guild_id},
        )
        self._dispatch(self._event(
            SecurityEventType.EMERGENCY_LOCKDOWN, Severity.CRITICAL, now,
            guild_id=guild_id,
            reason=reason, until=lockdown.until.isoformat(), triggered_by=triggered_by,
        ))
        self._notify_lockdown(guild_id, lockdown)
        return lockdown

    def lift_lockdown(self, guild_id: str, *, lifted_by: str = "system") -> bool:
        with self._lock:
            removed = self._lockdowns.pop(guild_id, None)
        if removed is None:
            return False
        logger.info("Lockdown lifted on guild %s by %s", guild_id, lifted_by)
        if self._audit is not None:
            self._audit.log(
                "lockdown_lifted", user_id=lifted_by, guild_id=guild_id,
                success=True, details={"reason": removed.reason},
            )
        self._notify_lockdown(guild_id, None)
        return True

    def restore_lockdown(self, guild_id: str, lockdown: Lockdown) -> None:
        """Reinstate a persisted lockdown at startup (no event, no listeners)."""
        if lockdown.active(self._clock()):
            with self._lock:
                self._lockdowns[guild_id] = lockdown

    def lockdown_for(self, guild_id: str | None) -> Lockdown | None:
        if guild_id is None:
            return None
        now = self._clock()
        with self._lock:
            lockdown = self._lockdowns.get(guild_id)
            if lockdown is not None and not lockdown.active(now):
                del self._lockdowns[guild_id]
                return None
            return lockdown

    def is_guild_locked(self, guild_id: str | None) -> bool:
        return self.lockdown_for(guild_id) is not None

    def _notify_lockdown(self, guild_id: str, lockdown: Lockdown | None) -> None:
        for listener in self._lockdown_listeners:
            try:
                listener(guild_id, lockdown)
            except Exception:
                logger.exception("Lockdown listener failed", extra={"guild_id": guild_id})

    # -------------------------------------------------------------------
    # Event fan-out
    # -------------------------------------------------------------------
    def _dispatch(self, event: SecurityEvent) -> None:
        with self._lock:
            self._events.append(event)
            self._counts[event.type] += 1
            self._severity_counts[event.severity] += 1

        logger.warning(
            "Security event %s (%s) user=%s guild=%s", event.type, event.severity,
            event.user_id, event.guild_id,
            extra={"event_type": str(event.type), "user_id": event.user_id, "guild_id": event.guild_id},
        )
        if self._audit is not None:
            self._audit.log(
                event.type,
                user_id=event.user_id,
                guild_id=event.guild_id,
                details={"severity": str(event.severity), **event.details},
            )
        if self._alerts is not None:
            try:
                self._alerts.submit(event)
            except Exception:
                logger.exception("Alert submission failed", extra={"event_type": str(event.type)})

    # -------------------------------------------------------------------
    # Read side
    # -------------------------------------------------------------------
    def recent_events(
        self,
        limit: int = 50,
        *,
        guild_id: str | None = None,
        min_severity: Severity | None = None,
    ) -> list[SecurityEvent]:
        """Newest-first events from the ring buffer."""
        with self._lock:
            snapshot = list(self._events)
        result: list[SecurityEvent] = []
        for event in reversed(snapshot):
            if guild_id is not None and event.guild_id != guild_id:
                continue
            if min_severity is not None and event.severity.rank < min_severity.rank:
                continue
            result.append(event)
            if len(result) >= limit:
                break
        return result

    def statistics(self) -> dict[str, Any]:
        now = self._clock()
        with self._lock:
            active_restrictions = sum(1 for r in self._restrictions.values() if r.active(now))
            active_lockdowns = sum(1 for lk in self._lockdowns.values() if lk.active(now))
            return {
                "events_buffered": len(self._events),
                "events_by_type": dict(self._counts),
                "events_by_severity": dict(self._severity_counts),
                "tracked_users": len({k[0] for k in self._user_windows}),
                "tracked_guilds": len({k[0] for k in self._guild_windows}),
                "restrictions": len(self._restrictions),
                "active_restrictions": active_restrictions,
                "active_lockdowns": active_lockdowns,
                "thresholds": asdict(self.thresholds),
            }

    def report(self, hours: float = 1.0) -> dict[str, Any]:
        """Summary of the last *hours* of events (logged by the Scheduler)."""
        cutoff = self._clock() - timedelta(hours=hours)
        with self._lock:
            recent = [e for e in self._events if e.timestamp >= cutoff]
        by_type = Counter(str(e.type) for e in recent)
        by_severity = Counter(str(e.severity) for e in recent)
        summary = {
            "period_hours": hours,
            "total": len(recent),
            "by_type": dict(by_type),
            "by_severity": dict(by_severity),
            "guilds": sorted({e.guild_id for e in recent if e.guild_id}),
        }
        if recent:
            logger.info("Security report (%.0fh): %d events %s", hours, len(recent), dict(by_severity))
        return summary

    # -------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------
    def clear_user(self, user_id: str) -> None:
        """Forget every window, cooldown and restriction held for *user_id*."""
        with self._lock:
            for key in [k for k in self._user_windows if k[0] == user_id]:
                del self._user_windows[key]
            for key in [k for k in self._cooldowns if k[1] == user_id]:
                del self._cooldowns[key]
            self._restrictions.pop(user_id, None)

    def cleanup(self) -> dict[str, int]:
        """Drop stale windows, cooldowns, decayed restrictions and lockdowns."""
        now = self._clock()
        ts = now.timestamp()
        horizon = max(
            self.thresholds.rapid_commands_window,
            self.thresholds.rapid_buttons_window,
            self.thresholds.mass_joins_window,
            self.thresholds.coordinated_window,
        )
        removed = 0
        with self._lock:
            for windows in (self._user_windows, self._guild_windows):
                for key in [k for k, hits in windows.items() if not hits or ts - hits[-1] >= horizon]:
                    del windows[key]
                    removed += 1
            for guild_id in [g for g, ages in self._join_ages.items() if not ages or ts - ages[-1][0] >= horizon]:
                del self._join_ages[guild_id]
            for guild_id, sources in list(self._failures.items()):
                for src in [s for s, hits in sources.items() if not hits or ts - hits[-1] >= horizon]:
                    del sources[src]
                if not sources:
                    del self._failures[guild_id]
            for key in [k for k, until in self._cooldowns.items() if ts >= until]:
                del self._cooldowns[key]
            restrictions_before = len(self._restrictions)
            for user_id in list(self._restrictions):
                self._current(user_id, now)
            restrictions_cleared = restrictions_before - len(self._restrictions)
            expired = [g for g, lk in self._lockdowns.items() if not lk.active(now)]
            for guild_id in expired:
                del self._lockdowns[guild_id]

        return {
            "windows_removed": removed,
            "restrictions_cleared": restrictions_cleared,
            "lockdowns_expired": len(expired),
        }
