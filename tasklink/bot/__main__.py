"""
tasklink.bot.__main__ — Entry point for ``python -m tasklink.bot``
===================================================================

Wiring:
1. Load .env (secrets).
2. Build the config from the environment and ``tasklink.yaml``.
3. Create the SQLAlchemy engine and check storage is reachable.
4. Build the runtime (cache, limiter, audit, security, backend client…).
5. Create the TaskLinkBot and run it (blocking).

Any failure in steps 2–3 is fatal: log and exit with status 1.

Run with::

    uv run python -m tasklink.bot
"""

from __future__ import annotations

import logging
import sys

from dotenv import load_dotenv

from tasklink.bot.core import TaskLinkBot
from tasklink.config import ConfigError, load_config
from tasklink.database.engine import create_db_engine, ping_db
from tasklink.runtime import build_runtime

logger = logging.getLogger("tasklink")


def main() -> None:
    """Bootstrap and run the TaskLink bot."""

    # 1. Environment variables (secrets).
    load_dotenv()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
        datefmt="%H:%M:%S",
    )

    # 2. Configuration.
    try:
        cfg = load_config()
    except ConfigError as exc:
        logger.critical("Configuration error: %s", exc)
        sys.exit(1)
    logging.getLogger().setLevel(cfg.log_level)
    logger.info("Config loaded for application %s", cfg.client_id)

    # 3. Storage.
    engine = create_db_engine(cfg.storage_uri)
    try:
        ping_db(engine)
    except Exception as exc:
        logger.critical("Storage is unreachable: %s", exc)
        sys.exit(1)

    # 4. Runtime.
    runtime = build_runtime(cfg, engine=engine)

    # 5. Bot (blocks until Ctrl+C or SIGTERM).
    bot = TaskLinkBot(runtime)
    logger.info("Starting TaskLink bot…")
    try:
        bot.run(cfg.bot_token, log_handler=None)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")
    except Exception:
        logger.exception("Bot stopped on an unhandled error")
        sys.exit(1)


if __name__ == "__main__":
    main()
