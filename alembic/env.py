"""Alembic environment: wired to TaskLink models and STORAGE_URI."""

from __future__ import annotations

import os
from logging.config import fileConfig

from dotenv import load_dotenv
from sqlalchemy import engine_from_config, pool

from alembic import context

# Load .env so STORAGE_URI is available
load_dotenv()

# Alembic Config object
config = context.config

# An explicit sqlalchemy.url (set by `tasklink-admin migrate`) wins over the environment
if not config.get_main_option("sqlalchemy.url"):
    storage_uri = os.getenv("STORAGE_URI")
    if storage_uri:
        config.set_main_option("sqlalchemy.url", storage_uri.replace("%", "%%"))

# Python logging from alembic.ini, when run through the alembic CLI
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Import all models so Alembic sees them for autogenerate
from tasklink.database.models import Base  # noqa: E402

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
