"""
tasklink.engine.audit — Redacting, Append-Only Audit Log
=========================================================

Every pipeline decision and every state change lands here as an
:class:`AuditEntry`.  Entries are:

1. **Redacted** before they are stored: :func:`sanitize` replaces the value
   of any field whose name is on the denylist with ``[REDACTED]``.  There is
   no way for a caller to skip this.
2. **Buffered** in a bounded in-memory ring (newest 10 000) for fast
   queries and the monitoring API.
3. **Persisted** in batches by :meth:`AuditLog.flush`, which the Scheduler
   runs every few seconds and the bot runs once more at shutdown.

Retention is enforced by :meth:`AuditLog.cleanup` (default 90 days) over
both the buffer and storage.
"""

from __future__ import annotations

import csv
import enum
import io
import json
import logging
import uuid
from collections import Counter, deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from threading import Lock
from typing import TYPE_CHECKING, Any

from tasklink.constants import REDACTED, REDACTION_ALIASES, REDACTION_DENYLIST

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 10_000
DEFAULT_RETENTION_DAYS = 90


class AuditEventType(enum.StrEnum):
    """Audit taxonomy.  The last block mirrors SecurityEvent types."""
    COMMAND_EXECUTED = "command_executed"
    COMMAND_FAILED = "command_failed"
    PERMISSION_GRANTED = "permission_granted"
    PERMISSION_DENIED = "permission_denied"
    SECURITY_EVENT = "security_event"
    CONFIG_CHANGED = "config_changed"
    RATE_LIMIT_HIT = "rate_limit_hit"
    COMMUNITY_LINKED = "community_linked"
    COMMUNITY_UNLINKED = "community_unlinked"
    TASK_CREATED = "task_created"
    TASK_COMPLETED = "task_completed"
    ALLOWLIST_CONNECTED = "allowlist_connected"
    ALLOWLIST_ENTERED = "allowlist_entered"
    MEMBER_JOINED = "member_joined"
    LOCKDOWN_LIFTED = "lockdown_lifted"

    RAPID_COMMANDS = "rapid_commands"
    RAPID_BUTTONS = "rapid_buttons"
    MASS_JOINS = "mass_joins"
    NEW_ACCOUNT_ACTIVITY = "new_account_activity"
    COORDINATED_ATTACK = "coordinated_attack"
    AUTO_RESTRICTION = "auto_restriction"
    SUSPICIOUS_CONTENT = "suspicious_content"
    EMERGENCY_LOCKDOWN = "emergency_lockdown"


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------
def _normalise_field(name: str) -> str:
    return name.lower().replace("_", "").replace("-", "")


def is_sensitive_field(name: str) -> bool:
    """True when *name* (any case, ``_``/``-`` ignored) is on the denylist."""
    normalised = _normalise_field(name)
    return normalised in REDACTION_DENYLIST or normalised in REDACTION_ALIASES


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, bool | int | float | str):
        return value
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    return str(value)


def _sanitize_value(value: Any) -> Any:
    if isinstance(value, Mapping):
        return sanitize(value)
    if isinstance(value, list | tuple | set | frozenset):
        return [_sanitize_value(v) for v in value]
    return _jsonable(value)


def sanitize(details: Mapping[str, Any] | None) -> dict[str, Any]:
    """Return a redacted, JSON-safe copy of *details*.

    Top-level fields on the denylist are replaced by ``[REDACTED]``.  The
    walk also descends into nested mappings and lists so a secret cannot
    hide one level down.  Non-JSON leaves are stringified.  The function is
    idempotent: ``sanitize(sanitize(x)) == sanitize(x)``.
    """
    if not details:
        return {}
    clean: dict[str, Any] = {}
    for key, value in details.items():
        name = str(key)
        clean[name] = REDACTED if is_sensitive_field(name) else _sanitize_value(value)
    return clean


# ---------------------------------------------------------------------------
# Entry + filter
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class AuditEntry:
    id: str
    type: str
    timestamp: datetime
    user_id: str | None = None
    guild_id: str | None = None
    command_name: str | None = None
    success: bool | None = None
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "timestamp": self.timestamp.isoformat(),
            "user_id": self.user_id,
            "guild_id": self.guild_id,
            "command_name": self.command_name,
            "success": self.success,
            "details": self.details or {},
        }

    def to_row(self) -> dict[str, Any]:
        """Column mapping for :class:`~tasklink.database.models.AuditLog`."""
        row = self.to_dict()
        row["timestamp"] = self.timestamp
        return row


@dataclass(slots=True)
class AuditFilter:
    """Conjunctive filter for :meth:`AuditLog.query` and :meth:`AuditLog.search`."""

    type: str | None = None
    user_id: str | None = None
    guild_id: str | None = None
    command_name: str | None = None
    success: bool | None = None
    since: datetime | None = None
    until: datetime | None = None
    limit: int = 100

    def matches(self, entry: AuditEntry) -> bool:
        if self.type is not None and entry.type != self.type:
            return False
        if self.user_id is not None and entry.user_id != self.user_id:
            return False
        if self.guild_id is not None and entry.guild_id != self.guild_id:
            return False
        if self.command_name is not None and entry.command_name != self.command_name:
            return False
        if self.success is not None and entry.success is not self.success:
            return False
        if self.since is not None and entry.timestamp < self.since:
            return False
        if self.until is not None and entry.timestamp > self.until:
            return False
        return True

    def as_kwargs(self) -> dict[str, Any]:
        return {
            "event_type": self.type,
            "user_id": self.user_id,
            "guild_id": self.guild_id,
            "command_name": self.command_name,
            "success": self.success,
            "since": self.since,
            "until": self.until,
            "limit": self.limit,
        }


_CSV_COLUMNS = ("id", "type", "timestamp", "user_id", "guild_id", "command_name", "success", "details")


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------
class AuditLog:
    """In-memory ring + batched persistence of redacted audit entries.

    Parameters
    ----------
    engine:
        SQLAlchemy engine for durable storage.  ``None`` keeps the log
        memory-only (tests, CLI tools).
    clock:
        Returns an aware ``datetime`` for the entry timestamp.
    """

    def __init__(
        self,
        engine: Engine | None = None,
        *,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._engine = engine
        self.max_entries = max_entries
        self.retention_days = retention_days
        self._clock = clock
        self._lock = Lock()
        self._buffer: deque[AuditEntry] = deque(maxlen=max_entries)
        self._pending: deque[AuditEntry] = deque()
        self._counts: Counter[str] = Counter()
        self._persist_dropped = 0

    def __len__(self) -> int:
        return len(self._buffer)

    @property
    def pending(self) -> int:
        return len(self._pending)

    # -------------------------------------------------------------------
    # Write side
    # -------------------------------------------------------------------
    def log(
        self,
        event_type: str,
        *,
        user_id: str | None = None,
        guild_id: str | None = None,
        command_name: str | None = None,
        success: bool | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> AuditEntry:
        """Append one redacted entry and return it."""
        entry = AuditEntry(
            id=uuid.uuid4().hex,
            type=str(event_type),
            timestamp=self._clock(),
            user_id=str(user_id) if user_id is not None else None,
            guild_id=str(guild_id) if guild_id is not None else None,
            command_name=command_name,
            success=success,
            details=sanitize(details),
        )
        with self._lock:
            self._buffer.append(entry)
            self._counts[entry.type] += 1
            if self._engine is not None:
                if len(self._pending) >= self.max_entries:
                    self._pending.popleft()
                    self._persist_dropped += 1
                self._pending.append(entry)
        logger.debug(
            "audit %s user=%s guild=%s command=%s success=%s",
            entry.type, entry.user_id, entry.guild_id, entry.command_name, entry.success,
        )
        return entry

    def flush_sync(self) -> int:
        """Persist pending entries.  Returns how many were written.

        On failure the batch is put back at the front of the queue so the
        next flush retries it.
        """
        if self._engine is None:
            return 0
        with self._lock:
            batch = list(self._pending)
            self._pending.clear()
        if not batch:
            return 0

        from tasklink.database.repository import insert_audit_entries

        try:
            written = insert_audit_entries(self._engine, [e.to_row() for e in batch])
        except Exception:
            logger.exception(
                "Audit flush failed, %d entries re-queued", len(batch),
                extra={"task": "audit_flush"},
            )
            with self._lock:
                self._pending.extendleft(reversed(batch))
                overflow = len(self._pending) - self.max_entries
                for _ in range(max(0, overflow)):
                    self._pending.pop()
                    self._persist_dropped += 1
            return 0
        return written

    async def flush(self) -> int:
        """Async wrapper around :meth:`flush_sync` (runs on a worker thread)."""
        from tasklink.database.engine import run_db

        return await run_db(self.flush_sync)

    # -------------------------------------------------------------------
    # Read side
    # -------------------------------------------------------------------
    def query(self, flt: AuditFilter | None = None) -> list[AuditEntry]:
        """Matching buffered entries, newest first, at most ``flt.limit``."""
        flt = flt or AuditFilter()
        with self._lock:
            snapshot = list(self._buffer)
        matches: list[AuditEntry] = []
        for entry in reversed(snapshot):
            if flt.matches(entry):
                matches.append(entry)
                if len(matches) >= flt.limit:
                    break
        return matches

    async def search(self, flt: AuditFilter | None = None) -> list[dict[str, Any]]:
        """Same filter against durable storage (falls back to the buffer)."""
        flt = flt or AuditFilter()
        if self._engine is None:
            return [e.to_dict() for e in self.query(flt)]

        from tasklink.database.engine import run_db
        from tasklink.database.repository import query_audit_entries

        return await run_db(query_audit_entries, self._engine, **flt.as_kwargs())

    def statistics(self) -> dict[str, Any]:
        with self._lock:
            snapshot = list(self._buffer)
            totals = dict(self._counts)
            pending = len(self._pending)
            dropped = self._persist_dropped
        outcomes = [e.success for e in snapshot if e.success is not None]
        success_rate = (sum(1 for s in outcomes if s) / len(outcomes)) if outcomes else None
        return {
            "buffered": len(snapshot),
            "pending_persist": pending,
            "persist_dropped": dropped,
            "totals_by_type": totals,
            "success_rate": success_rate,
            "oldest": snapshot[0].timestamp.isoformat() if snapshot else None,
            "newest": snapshot[-1].timestamp.isoformat() if snapshot else None,
        }

    def export(self, fmt: str = "json", flt: AuditFilter | None = None) -> str:
        """Render matching buffered entries as ``json`` or ``csv`` text."""
        entries = [e.to_dict() for e in self.query(flt)]
        if fmt == "json":
            return json.dumps(entries, indent=2, sort_keys=True)
        if fmt == "csv":
            out = io.StringIO()
            writer = csv.DictWriter(out, fieldnames=_CSV_COLUMNS)
            writer.writeheader()
            for row in entries:
                row["details"] = json.dumps(row["details"], sort_keys=True)
                writer.writerow(row)
            return out.getvalue()
        raise ValueError(f"Unsupported export format: {fmt!r}")

    # -------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------
    def cleanup(self, retention_days: int | None = None) -> dict[str, int]:
        """Remove entries older than the retention window.

        Synchronous; the Scheduler calls it through ``run_db``.
        """
        days = self.retention_days if retention_days is None else retention_days
        cutoff = self._clock() - timedelta(days=days)
        with self._lock:
            before = len(self._buffer)
            kept = [e for e in self._buffer if e.timestamp >= cutoff]
            self._buffer = deque(kept, maxlen=self.max_entries)
            buffer_removed = before - len(kept)

        storage_deleted = 0
        if self._engine is not None:
            from tasklink.database.repository import delete_audit_before

            storage_deleted = delete_audit_before(self._engine, cutoff)

        if buffer_removed or storage_deleted:
            logger.info(
                "Audit retention (%d days): %d buffered and %d stored entries removed",
                days, buffer_removed, storage_deleted,
            )
        return {"buffer_removed": buffer_removed, "storage_deleted": storage_deleted}
