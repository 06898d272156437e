"""
tasklink.database.engine — Engine, Sessions & the Async Bridge
================================================================

SQLAlchemy + psycopg2 is synchronous and the bot runs on an ``asyncio``
loop.  Every storage call made from async code goes through
:func:`run_db`, which ships the synchronous function to the default
thread pool so the event loop never blocks on a query.

Usage::

    from tasklink.database.engine import create_db_engine, init_db, run_db

    engine = create_db_engine(cfg.storage_uri)
    init_db(engine)

    mapping = await run_db(get_server_mapping, engine, guild_id)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.orm import Session

from tasklink.database.models import Base

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(url: str) -> Engine:
    """Build an :class:`Engine` for *url* (``STORAGE_URI``).

    Server databases get a small pool sized for one bot process:
    * ``pool_size=5`` with ``max_overflow=10``
    * ``pool_timeout=10`` so a starved pool fails instead of hanging
    * ``pool_recycle=3600`` to drop hour-old connections

    SQLite URLs (local runs) use SQLAlchemy's defaults.
    """
    if url.startswith("sqlite"):
        engine = create_engine(url, echo=False, connect_args={"check_same_thread": False})
    else:
        engine = create_engine(
            url,
            echo=False,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
            pool_timeout=10,
            pool_recycle=3600,
        )
    logger.info("Database engine created → %s", engine.url.host or engine.url.database)
    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine) -> None:
    """Create every table in :mod:`tasklink.database.models` if missing.

    .. note::

        Production schemas are managed by alembic (``tasklink-admin
        migrate``).  ``create_all`` covers dev and test databases.
    """
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created.")


def ping_db(engine: Engine) -> bool:
    """``SELECT 1`` round trip.  Raises on failure."""
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return True


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine) -> Iterator[Session]:
    """Yield a :class:`Session` that commits on success and rolls back on
    exception.

    Usage::

        with get_session(engine) as session:
            session.add(ServerMapping(guild_id="123", community_id="abc", linked_by="42"))
    """
    session = Session(engine)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a synchronous storage function on a worker thread.

    ::

        result = await run_db(my_sync_db_function, engine, guild_id)
    """
    return await asyncio.to_thread(func, *args, **kwargs)
