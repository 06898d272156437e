"""Initial TaskLink schema

Revision ID: 0a1f3c9e7b21
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0a1f3c9e7b21"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _created_at(name: str = "created_at") -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now())


def upgrade() -> None:
    """Create guild state, links, posts, interaction and audit tables."""
    op.create_table(
        "server_mappings",
        sa.Column("guild_id", sa.String(32), primary_key=True),
        sa.Column("community_id", sa.String(64), nullable=False),
        sa.Column("linked_by", sa.String(32), nullable=False),
        _created_at("linked_at"),
        sa.Column("alert_channel_id", sa.String(32), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        _created_at("updated_at"),
    )
    op.create_index("ix_server_mappings_community", "server_mappings", ["community_id"])

    op.create_table(
        "guild_lockdowns",
        sa.Column("guild_id", sa.String(32), primary_key=True),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("triggered_by", sa.String(64), server_default="system"),
        _created_at(),
    )

    op.create_table(
        "account_links",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("discord_user_id", sa.String(32), nullable=False),
        sa.Column("backend_user_id", sa.String(64), nullable=False),
        _created_at("linked_at"),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        sa.UniqueConstraint("discord_user_id", name="uq_account_links_discord_user"),
    )

    op.create_table(
        "task_posts",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("task_id", sa.String(64), nullable=False),
        sa.Column("guild_id", sa.String(32), nullable=False),
        sa.Column("channel_id", sa.String(32), nullable=True),
        sa.Column("message_id", sa.String(32), nullable=True),
        sa.Column("created_by", sa.String(32), nullable=False),
        sa.Column("title", sa.String(100), nullable=False),
        sa.Column("task_type", sa.String(32), nullable=False),
        sa.Column("points", sa.Integer(), server_default="0"),
        sa.Column("status", sa.String(16), server_default="active"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.UniqueConstraint("guild_id", "task_id", name="uq_task_posts_guild_task"),
    )
    op.create_index("ix_task_posts_guild_status", "task_posts", ["guild_id", "status"])

    op.create_table(
        "allowlist_connections",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("allowlist_id", sa.String(64), nullable=False),
        sa.Column("guild_id", sa.String(32), nullable=False),
        sa.Column("channel_id", sa.String(32), nullable=True),
        sa.Column("connected_by", sa.String(32), nullable=False),
        sa.Column("status", sa.String(16), server_default="active"),
        _created_at(),
        sa.UniqueConstraint("guild_id", "allowlist_id", name="uq_allowlist_connections_guild_allowlist"),
    )

    op.create_table(
        "interaction_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("guild_id", sa.String(32), nullable=True),
        sa.Column("user_id", sa.String(32), nullable=False),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("name", sa.String(100), server_default=""),
        sa.Column("outcome", sa.String(16), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), server_default="0"),
        _created_at(),
    )
    op.create_index("ix_interaction_logs_guild_time", "interaction_logs", ["guild_id", "created_at"])
    op.create_index("ix_interaction_logs_user_time", "interaction_logs", ["user_id", "created_at"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("user_id", sa.String(32), nullable=True),
        sa.Column("guild_id", sa.String(32), nullable=True),
        sa.Column("command_name", sa.String(100), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=True),
        sa.Column("details", _JSON, nullable=True),
    )
    op.create_index("ix_audit_log_timestamp", "audit_log", ["timestamp"])
    op.create_index("ix_audit_log_type_time", "audit_log", ["type", "timestamp"])
    op.create_index("ix_audit_log_guild_time", "audit_log", ["guild_id", "timestamp"])
    op.create_index("ix_audit_log_user_time", "audit_log", ["user_id", "timestamp"])


def downgrade() -> None:
    op.drop_table("audit_log")
    op.drop_table("interaction_logs")
    op.drop_table("allowlist_connections")
    op.drop_table("task_posts")
    op.drop_table("account_links")
    op.drop_table("guild_lockdowns")
    op.drop_table("server_mappings")
