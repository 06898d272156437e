"""
tasklink.database.repository — Thin Storage Interface
=======================================================

Plain synchronous functions taking the engine first.  Async callers wrap
them with :func:`~tasklink.database.engine.run_db`.  Every function returns
plain dicts (never live ORM objects) so results can cross threads and be
cached as JSON.

Large deletes are batched so retention jobs never hold long row locks.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Engine, delete, func, select

from tasklink.database.engine import get_session
from tasklink.database.models import (
    AccountLink,
    AllowlistConnection,
    AuditLog,
    Base,
    GuildLockdown,
    InteractionLog,
    ServerMapping,
    TaskPost,
)

logger = logging.getLogger(__name__)

BATCH_SIZE = 5_000


def _aware(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _row_to_dict(obj: Any) -> dict[str, Any] | None:
    if obj is None:
        return None
    result: dict[str, Any] = {}
    for col in obj.__table__.columns:
        val = getattr(obj, col.key)
        if isinstance(val, datetime):
            val = _aware(val)
        result[col.name] = val
    return result


# ---------------------------------------------------------------------------
# Server mappings
# ---------------------------------------------------------------------------
def get_server_mapping(engine: Engine, guild_id: str) -> dict[str, Any] | None:
    """Active mapping for *guild_id*, or ``None``."""
    with get_session(engine) as session:
        row = session.get(ServerMapping, str(guild_id))
        if row is None or not row.is_active:
            return None
        return _row_to_dict(row)


def upsert_server_mapping(
    engine: Engine,
    guild_id: str,
    community_id: str,
    linked_by: str,
    *,
    linked_at: datetime | None = None,
) -> dict[str, Any]:
    """Link (or re-link) *guild_id* to *community_id*.  Keeps the alert channel."""
    now = linked_at or datetime.now(UTC)
    with get_session(engine) as session:
        row = session.get(ServerMapping, str(guild_id))
        if row is None:
            row = ServerMapping(guild_id=str(guild_id))
            session.add(row)
        row.community_id = community_id
        row.linked_by = str(linked_by)
        row.linked_at = now
        row.is_active = True
        row.updated_at = now
        session.flush()
        result = _row_to_dict(row)
    logger.info("Guild %s linked to community %s by %s", guild_id, community_id, linked_by)
    return result  # type: ignore[return-value]


def deactivate_server_mapping(engine: Engine, guild_id: str) -> bool:
    with get_session(engine) as session:
        row = session.get(ServerMapping, str(guild_id))
        if row is None or not row.is_active:
            return False
        row.is_active = False
        row.updated_at = datetime.now(UTC)
    logger.info("Guild %s unlinked", guild_id)
    return True


def set_alert_channel(engine: Engine, guild_id: str, channel_id: str | None) -> bool:
    """Point security alerts for *guild_id* at *channel_id* (mapping must exist)."""
    with get_session(engine) as session:
        row = session.get(ServerMapping, str(guild_id))
        if row is None:
            return False
        row.alert_channel_id = str(channel_id) if channel_id is not None else None
        row.updated_at = datetime.now(UTC)
    return True


def list_server_mappings(engine: Engine, *, active_only: bool = True) -> list[dict[str, Any]]:
    with get_session(engine) as session:
        stmt = select(ServerMapping).order_by(ServerMapping.linked_at)
        if active_only:
            stmt = stmt.where(ServerMapping.is_active.is_(True))
        return [_row_to_dict(r) for r in session.scalars(stmt).all()]  # type: ignore[misc]


# ---------------------------------------------------------------------------
# Lockdowns
# ---------------------------------------------------------------------------
def save_lockdown(
    engine: Engine,
    guild_id: str,
    reason: str,
    until: datetime,
    triggered_by: str = "system",
) -> None:
    with get_session(engine) as session:
        row = session.get(GuildLockdown, str(guild_id))
        if row is None:
            row = GuildLockdown(guild_id=str(guild_id))
            session.add(row)
        row.reason = reason
        row.until = until
        row.triggered_by = triggered_by
        row.created_at = datetime.now(UTC)


def get_lockdown(engine: Engine, guild_id: str) -> dict[str, Any] | None:
    with get_session(engine) as session:
        return _row_to_dict(session.get(GuildLockdown, str(guild_id)))


def clear_lockdown(engine: Engine, guild_id: str) -> bool:
    with get_session(engine) as session:
        result = session.execute(delete(GuildLockdown).where(GuildLockdown.guild_id == str(guild_id)))
        return bool(result.rowcount)


def list_active_lockdowns(engine: Engine, now: datetime | None = None) -> list[dict[str, Any]]:
    now = now or datetime.now(UTC)
    with get_session(engine) as session:
        rows = session.scalars(select(GuildLockdown).where(GuildLockdown.until > now)).all()
        return [_row_to_dict(r) for r in rows]  # type: ignore[misc]


def delete_expired_lockdowns(engine: Engine, now: datetime | None = None) -> int:
    now = now or datetime.now(UTC)
    with get_session(engine) as session:
        result = session.execute(delete(GuildLockdown).where(GuildLockdown.until <= now))
        return result.rowcount or 0


# ---------------------------------------------------------------------------
# Account links
# ---------------------------------------------------------------------------
def get_account_link(engine: Engine, discord_user_id: str) -> dict[str, Any] | None:
    with get_session(engine) as session:
        row = session.scalar(
            select(AccountLink).where(
                AccountLink.discord_user_id == str(discord_user_id),
                AccountLink.is_active.is_(True),
            )
        )
        return _row_to_dict(row)


def upsert_account_link(engine: Engine, discord_user_id: str, backend_user_id: str) -> dict[str, Any]:
    with get_session(engine) as session:
        row = session.scalar(
            select(AccountLink).where(AccountLink.discord_user_id == str(discord_user_id))
        )
        if row is None:
            row = AccountLink(discord_user_id=str(discord_user_id))
            session.add(row)
        row.backend_user_id = backend_user_id
        row.is_active = True
        row.linked_at = datetime.now(UTC)
        session.flush()
        return _row_to_dict(row)  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Task posts
# ---------------------------------------------------------------------------
def record_task_post(
    engine: Engine,
    *,
    task_id: str,
    guild_id: str,
    created_by: str,
    title: str,
    task_type: str,
    points: int = 0,
    channel_id: str | None = None,
    message_id: str | None = None,
    expires_at: datetime | None = None,
) -> dict[str, Any]:
    with get_session(engine) as session:
        row = TaskPost(
            task_id=task_id,
            guild_id=str(guild_id),
            channel_id=channel_id,
            message_id=message_id,
            created_by=str(created_by),
            title=title,
            task_type=task_type,
            points=points,
            expires_at=expires_at,
            created_at=datetime.now(UTC),
        )
        session.add(row)
        session.flush()
        return _row_to_dict(row)  # type: ignore[return-value]


def list_task_posts(
    engine: Engine,
    guild_id: str,
    status: str | None = None,
    limit: int = 25,
) -> list[dict[str, Any]]:
    with get_session(engine) as session:
        stmt = select(TaskPost).where(TaskPost.guild_id == str(guild_id))
        if status is not None:
            stmt = stmt.where(TaskPost.status == status)
        stmt = stmt.order_by(TaskPost.created_at.desc(), TaskPost.id.desc()).limit(limit)
        return [_row_to_dict(r) for r in session.scalars(stmt).all()]  # type: ignore[misc]


def set_task_post_status(engine: Engine, guild_id: str, task_id: str, status: str) -> bool:
    with get_session(engine) as session:
        row = session.scalar(
            select(TaskPost).where(TaskPost.guild_id == str(guild_id), TaskPost.task_id == task_id)
        )
        if row is None:
            return False
        row.status = status
    return True


def expire_task_posts(engine: Engine, now: datetime | None = None) -> int:
    """Flip active posts whose ``expires_at`` has passed to ``expired``."""
    now = now or datetime.now(UTC)
    with get_session(engine) as session:
        rows = session.scalars(
            select(TaskPost).where(
                TaskPost.status == "active",
                TaskPost.expires_at.is_not(None),
                TaskPost.expires_at <= now,
            )
        ).all()
        for row in rows:
            row.status = "expired"
        return len(rows)


# ---------------------------------------------------------------------------
# Allowlist connections
# ---------------------------------------------------------------------------
def record_allowlist_connection(
    engine: Engine,
    *,
    allowlist_id: str,
    guild_id: str,
    connected_by: str,
    channel_id: str | None = None,
) -> dict[str, Any]:
    """Connect (or reactivate) *allowlist_id* in *guild_id*."""
    with get_session(engine) as session:
        row = session.scalar(
            select(AllowlistConnection).where(
                AllowlistConnection.guild_id == str(guild_id),
                AllowlistConnection.allowlist_id == allowlist_id,
            )
        )
        if row is None:
            row = AllowlistConnection(
                allowlist_id=allowlist_id,
                guild_id=str(guild_id),
                created_at=datetime.now(UTC),
            )
            session.add(row)
        row.channel_id = channel_id
        row.connected_by = str(connected_by)
        row.status = "active"
        session.flush()
        return _row_to_dict(row)  # type: ignore[return-value]


def list_allowlist_connections(engine: Engine, guild_id: str) -> list[dict[str, Any]]:
    with get_session(engine) as session:
        rows = session.scalars(
            select(AllowlistConnection)
            .where(AllowlistConnection.guild_id == str(guild_id))
            .order_by(AllowlistConnection.created_at)
        ).all()
        return [_row_to_dict(r) for r in rows]  # type: ignore[misc]


# ---------------------------------------------------------------------------
# Interaction log
# ---------------------------------------------------------------------------
def record_interaction(
    engine: Engine,
    *,
    user_id: str,
    kind: str,
    outcome: str,
    guild_id: str | None = None,
    name: str = "",
    reason: str | None = None,
    duration_ms: int = 0,
) -> None:
    with get_session(engine) as session:
        session.add(InteractionLog(
            guild_id=guild_id,
            user_id=str(user_id),
            kind=kind,
            name=name[:100],
            outcome=outcome,
            reason=reason,
            duration_ms=duration_ms,
            created_at=datetime.now(UTC),
        ))


def _batched_delete(engine: Engine, model: Any, column: Any, cutoff: datetime) -> int:
    deleted = 0
    while True:
        with get_session(engine) as session:
            ids = session.scalars(select(model.id).where(column < cutoff).limit(BATCH_SIZE)).all()
            if not ids:
                break
            result = session.execute(delete(model).where(model.id.in_(ids)))
            deleted += result.rowcount or 0
    return deleted


def delete_interaction_logs_before(engine: Engine, cutoff: datetime) -> int:
    deleted = _batched_delete(engine, InteractionLog, InteractionLog.created_at, cutoff)
    if deleted:
        logger.info("Retention: deleted %d interaction_logs rows before %s", deleted, cutoff.isoformat())
    return deleted


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------
def insert_audit_entries(engine: Engine, rows: Iterable[Mapping[str, Any]]) -> int:
    """Bulk-insert already redacted audit rows.  Returns the count written."""
    objects = [AuditLog(**dict(row)) for row in rows]
    if not objects:
        return 0
    with get_session(engine) as session:
        session.add_all(objects)
    return len(objects)


def query_audit_entries(
    engine: Engine,
    *,
    event_type: str | None = None,
    user_id: str | None = None,
    guild_id: str | None = None,
    command_name: str | None = None,
    success: bool | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = 100,
) -> list[dict[str, Any]]:
    """Stored audit entries matching every given filter, newest first."""
    stmt = select(AuditLog)
    if event_type is not None:
        stmt = stmt.where(AuditLog.type == event_type)
    if user_id is not None:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if guild_id is not None:
        stmt = stmt.where(AuditLog.guild_id == guild_id)
    if command_name is not None:
        stmt = stmt.where(AuditLog.command_name == command_name)
    if success is not None:
        stmt = stmt.where(AuditLog.success.is_(success))
    if since is not None:
        stmt = stmt.where(AuditLog.timestamp >= since)
    if until is not None:
        stmt = stmt.where(AuditLog.timestamp <= until)
    stmt = stmt.order_by(AuditLog.timestamp.desc()).limit(limit)

    with get_session(engine) as session:
        results = []
        for row in session.scalars(stmt).all():
            item = _row_to_dict(row)
            item["timestamp"] = item["timestamp"].isoformat()  # type: ignore[index]
            item["details"] = item.get("details") or {}  # type: ignore[union-attr]
            results.append(item)
        return results  # type: ignore[return-value]


def delete_audit_before(engine: Engine, cutoff: datetime) -> int:
    return _batched_delete(engine, AuditLog, AuditLog.timestamp, cutoff)


# ---------------------------------------------------------------------------
# Admin helpers (CLI)
# ---------------------------------------------------------------------------
_SUMMARY_TABLES: tuple[tuple[str, Any, Any], ...] = (
    ("server_mappings", ServerMapping, ServerMapping.linked_at),
    ("guild_lockdowns", GuildLockdown, GuildLockdown.created_at),
    ("account_links", AccountLink, AccountLink.linked_at),
    ("task_posts", TaskPost, TaskPost.created_at),
    ("allowlist_connections", AllowlistConnection, AllowlistConnection.created_at),
    ("interaction_logs", InteractionLog, InteractionLog.created_at),
    ("audit_log", AuditLog, AuditLog.timestamp),
)


def data_summary(engine: Engine) -> dict[str, dict[str, Any]]:
    """Row count plus oldest/newest timestamp for every table."""
    summary: dict[str, dict[str, Any]] = {}
    with get_session(engine) as session:
        for name, model, column in _SUMMARY_TABLES:
            count = session.scalar(select(func.count()).select_from(model)) or 0
            oldest = _aware(session.scalar(select(func.min(column))))
            newest = _aware(session.scalar(select(func.max(column))))
            summary[name] = {
                "rows": count,
                "oldest": oldest.isoformat() if oldest else None,
                "newest": newest.isoformat() if newest else None,
            }
    return summary


def rebuild_indexes(engine: Engine) -> list[str]:
    """Drop and recreate every declared index.  Returns the index names."""
    rebuilt: list[str] = []
    with engine.begin() as conn:
        for table in Base.metadata.sorted_tables:
            for index in sorted(table.indexes, key=lambda i: i.name or ""):
                index.drop(conn, checkfirst=True)
                index.create(conn, checkfirst=True)
                rebuilt.append(str(index.name))
    logger.info("Rebuilt %d indexes", len(rebuilt))
    return rebuilt
