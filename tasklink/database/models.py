"""
tasklink.database.models — SQLAlchemy 2.0 Data Models
=======================================================

Tables:
- server_mappings       — guild → backend community link (+ alert channel)
- guild_lockdowns       — active emergency lockdowns, restored at startup
- account_links         — Discord user → backend user
- task_posts            — task announcements posted into a guild
- allowlist_connections — allowlists connected to a guild channel
- interaction_logs      — one row per dispatched interaction
- audit_log             — persisted, redacted audit entries

Discord snowflakes are stored as strings, the same form the pipeline uses.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all TaskLink ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class InteractionOutcome(enum.StrEnum):
    """How the dispatcher finished an interaction."""
    OK = "ok"
    RATE_LIMITED = "rate_limited"
    DENIED = "denied"
    INVALID = "invalid"
    ERROR = "error"
    OBSERVED = "observed"


class TaskPostStatus(enum.StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"


# ---------------------------------------------------------------------------
# ServerMapping: one row per linked guild
# ---------------------------------------------------------------------------
class ServerMapping(Base):
    __tablename__ = "server_mappings"

    guild_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    community_id: Mapped[str] = mapped_column(String(64), nullable=False)
    linked_by: Mapped[str] = mapped_column(String(32), nullable=False)
    linked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    alert_channel_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_server_mappings_community", "community_id"),
    )

    def __repr__(self) -> str:
        return f"<ServerMapping guild={self.guild_id} community={self.community_id}>"


# ---------------------------------------------------------------------------
# GuildLockdown: at most one active lockdown per guild
# ---------------------------------------------------------------------------
class GuildLockdown(Base):
    __tablename__ = "guild_lockdowns"

    guild_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    triggered_by: Mapped[str] = mapped_column(String(64), default="system")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


# ---------------------------------------------------------------------------
# AccountLink: Discord user ↔ backend user
# ---------------------------------------------------------------------------
class AccountLink(Base):
    __tablename__ = "account_links"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    discord_user_id: Mapped[str] = mapped_column(String(32), nullable=False)
    backend_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    linked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    __table_args__ = (
        UniqueConstraint("discord_user_id", name="uq_account_links_discord_user"),
    )


# ---------------------------------------------------------------------------
# TaskPost: a task announced in a guild channel
# ---------------------------------------------------------------------------
class TaskPost(Base):
    __tablename__ = "task_posts"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(String(64), nullable=False)
    guild_id: Mapped[str] = mapped_column(String(32), nullable=False)
    channel_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    message_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_by: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    task_type: Mapped[str] = mapped_column(String(32), nullable=False)
    points: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(16), default=TaskPostStatus.ACTIVE)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("guild_id", "task_id", name="uq_task_posts_guild_task"),
        Index("ix_task_posts_guild_status", "guild_id", "status"),
    )


# ---------------------------------------------------------------------------
# AllowlistConnection: allowlist connected to a guild
# ---------------------------------------------------------------------------
class AllowlistConnection(Base):
    __tablename__ = "allowlist_connections"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    allowlist_id: Mapped[str] = mapped_column(String(64), nullable=False)
    guild_id: Mapped[str] = mapped_column(String(32), nullable=False)
    channel_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    connected_by: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="active")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("guild_id", "allowlist_id", name="uq_allowlist_connections_guild_allowlist"),
    )


# ---------------------------------------------------------------------------
# InteractionLog: one row per dispatched interaction
# ---------------------------------------------------------------------------
class InteractionLog(Base):
    __tablename__ = "interaction_logs"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    guild_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    user_id: Mapped[str] = mapped_column(String(32), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    name: Mapped[str] = mapped_column(String(100), default="")
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_interaction_logs_guild_time", "guild_id", "created_at"),
        Index("ix_interaction_logs_user_time", "user_id", "created_at"),
    )


# ---------------------------------------------------------------------------
# AuditLog: persisted AuditEntry (details already redacted)
# ---------------------------------------------------------------------------
class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    guild_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    command_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    success: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    details: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    __table_args__ = (
        Index("ix_audit_log_timestamp", "timestamp"),
        Index("ix_audit_log_type_time", "type", "timestamp"),
        Index("ix_audit_log_guild_time", "guild_id", "timestamp"),
        Index("ix_audit_log_user_time", "user_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<AuditLog id={self.id} type={self.type}>"
