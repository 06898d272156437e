"""
tasklink.cli — Administrative command line (``tasklink-admin``)
=================================================================

Command registration against the Discord REST API and storage
maintenance.  Every command exits 0 on success and 1 on failure.

::

    tasklink-admin register                 # global commands (up to 1 h to propagate)
    tasklink-admin register-guild [GUILD]   # one guild, instant (default DEV_GUILD_ID)
    tasklink-admin clear | clear-guild [GUILD] | list [--guild GUILD]
    tasklink-admin migrate                  # alembic upgrade head
    tasklink-admin cleanup                  # retention sweep
    tasklink-admin data:summary
    tasklink-admin health
    tasklink-admin indexes:rebuild
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, NoReturn

import click
import httpx
from dotenv import load_dotenv

from tasklink.config import ConfigError, TaskLinkConfig, load_config

logger = logging.getLogger(__name__)

DISCORD_API = "https://discord.com/api/v10"
ALEMBIC_DIR = Path(__file__).resolve().parent.parent / "alembic"


class CommandRegistrar:
    """Bulk-overwrites application commands through the Discord REST API."""

    def __init__(
        self,
        token: str,
        client_id: str,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.client_id = client_id
        self._client = httpx.Client(
            base_url=DISCORD_API,
            headers={"Authorization": f"Bot {token}"},
            timeout=30.0,
            transport=transport,
        )

    def _path(self, guild_id: str | None) -> str:
        if guild_id:
            return f"/applications/{self.client_id}/guilds/{guild_id}/commands"
        return f"/applications/{self.client_id}/commands"

    def put(self, payloads: list[dict[str, Any]], guild_id: str | None = None) -> list[dict[str, Any]]:
        resp = self._client.put(self._path(guild_id), json=payloads)
        resp.raise_for_status()
        return resp.json()

    def list(self, guild_id: str | None = None) -> list[dict[str, Any]]:
        resp = self._client.get(self._path(guild_id))
        resp.raise_for_status()
        return resp.json()

    def close(self) -> None:
        self._client.close()


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------
def _config(ctx: click.Context) -> TaskLinkConfig:
    obj = ctx.ensure_object(dict)
    if "config" not in obj:
        try:
            obj["config"] = load_config(obj.get("env"))
        except ConfigError as exc:
            click.echo(f"Configuration error: {exc}", err=True)
            ctx.exit(1)
    return obj["config"]


def _engine(ctx: click.Context):
    obj = ctx.ensure_object(dict)
    if "engine" not in obj:
        from tasklink.database.engine import create_db_engine

        obj["engine"] = create_db_engine(_config(ctx).storage_uri)
    return obj["engine"]


def _registrar(ctx: click.Context) -> CommandRegistrar:
    cfg = _config(ctx)
    return CommandRegistrar(cfg.bot_token, cfg.client_id, transport=ctx.obj.get("transport"))


def _payloads() -> list[dict[str, Any]]:
    from tasklink.bot.registry import default_registry

    return default_registry().payloads()


def _fail(message: str) -> NoReturn:
    click.echo(f"✗ {message}", err=True)
    sys.exit(1)


def _guild_or_default(ctx: click.Context, guild_id: str | None) -> str:
    if guild_id:
        return guild_id
    dev_guild = _config(ctx).dev_guild_id
    if dev_guild is None:
        _fail("Guild ID is required (argument or DEV_GUILD_ID)")
    return str(dev_guild)


# ---------------------------------------------------------------------------
# Group
# ---------------------------------------------------------------------------
@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """TaskLink administration: command registration and storage maintenance."""
    load_dotenv()
    ctx.ensure_object(dict)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
        datefmt="%H:%M:%S",
    )


# ---------------------------------------------------------------------------
# Command registration
# ---------------------------------------------------------------------------
def _register(ctx: click.Context, guild_id: str | None) -> None:
    registrar = _registrar(ctx)
    try:
        data = registrar.put(_payloads(), guild_id)
    except httpx.HTTPError as exc:
        _fail(f"Registration failed: {exc}")
    finally:
        registrar.close()
    where = f"guild {guild_id}" if guild_id else "all guilds"
    click.echo(f"✓ Registered {len(data)} commands for {where}")
    for cmd in data:
        click.echo(f"  /{cmd.get('name')}")


def _clear(ctx: click.Context, guild_id: str | None) -> None:
    registrar = _registrar(ctx)
    try:
        registrar.put([], guild_id)
    except httpx.HTTPError as exc:
        _fail(f"Clearing commands failed: {exc}")
    finally:
        registrar.close()
    click.echo(f"✓ Cleared commands for {f'guild {guild_id}' if guild_id else 'all guilds'}")


@main.command()
@click.pass_context
def register(ctx: click.Context) -> None:
    """Register every slash command globally."""
    _register(ctx, None)


@main.command("register-guild")
@click.argument("guild_id", required=False)
@click.pass_context
def register_guild(ctx: click.Context, guild_id: str | None) -> None:
    """Register every slash command in one guild (instant)."""
    _register(ctx, _guild_or_default(ctx, guild_id))


@main.command()
@click.pass_context
def clear(ctx: click.Context) -> None:
    """Remove every global slash command."""
    _clear(ctx, None)


@main.command("clear-guild")
@click.argument("guild_id", required=False)
@click.pass_context
def clear_guild(ctx: click.Context, guild_id: str | None) -> None:
    """Remove every slash command from one guild."""
    _clear(ctx, _guild_or_default(ctx, guild_id))


@main.command("list")
@click.option("--guild", "guild_id", default=None, help="List guild commands instead of global ones")
@click.pass_context
def list_commands(ctx: click.Context, guild_id: str | None) -> None:
    """Show the commands Discord currently has registered."""
    registrar = _registrar(ctx)
    try:
        data = registrar.list(guild_id)
    except httpx.HTTPError as exc:
        _fail(f"Listing commands failed: {exc}")
    finally:
        registrar.close()
    click.echo(f"Registered commands ({len(data)}):")
    for cmd in data:
        click.echo(f"  /{cmd.get('name')}: {cmd.get('description', '')}")


# ---------------------------------------------------------------------------
# Storage maintenance
# ---------------------------------------------------------------------------
@main.command()
@click.option("--revision", default="head", show_default=True)
@click.pass_context
def migrate(ctx: click.Context, revision: str) -> None:
    """Apply alembic migrations."""
    from alembic import command
    from alembic.config import Config

    alembic_cfg = Config()
    alembic_cfg.set_main_option("script_location", str(ALEMBIC_DIR))
    alembic_cfg.set_main_option("sqlalchemy.url", _config(ctx).storage_uri.replace("%", "%%"))
    try:
        command.upgrade(alembic_cfg, revision)
    except Exception as exc:
        _fail(f"Migration failed: {exc}")
    click.echo(f"✓ Database upgraded to {revision}")


@main.command()
@click.pass_context
def cleanup(ctx: click.Context) -> None:
    """Apply retention: audit entries, interaction logs, expired lockdowns and task posts."""
    from datetime import UTC, datetime, timedelta

    from tasklink.database import repository as repo
    from tasklink.engine.audit import AuditLog

    cfg = _config(ctx)
    engine = _engine(ctx)
    try:
        audit = AuditLog(engine, retention_days=cfg.audit_retention_days).cleanup()
        cutoff = datetime.now(UTC) - timedelta(days=cfg.interaction_log_retention_days)
        result = {
            "audit_entries_deleted": audit["storage_deleted"],
            "interaction_logs_deleted": repo.delete_interaction_logs_before(engine, cutoff),
            "lockdowns_deleted": repo.delete_expired_lockdowns(engine),
            "task_posts_expired": repo.expire_task_posts(engine),
        }
    except Exception as exc:
        _fail(f"Cleanup failed: {exc}")

    click.echo("=== Cleanup Results ===")
    for key, value in result.items():
        click.echo(f"{key}: {value}")


@main.command("data:summary")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
@click.pass_context
def data_summary(ctx: click.Context, as_json: bool) -> None:
    """Row counts and time ranges for every table."""
    from tasklink.database.repository import data_summary as summarize

    try:
        summary = summarize(_engine(ctx))
    except Exception as exc:
        _fail(f"Summary failed: {exc}")

    if as_json:
        click.echo(json.dumps(summary, indent=2))
        return
    click.echo("=== Database Summary ===")
    for table, info in summary.items():
        span = f"{info['oldest']} → {info['newest']}" if info["rows"] else "empty"
        click.echo(f"{table:<24} {info['rows']:>8}  {span}")


@main.command("indexes:rebuild")
@click.pass_context
def indexes_rebuild(ctx: click.Context) -> None:
    """Drop and recreate every declared index."""
    from tasklink.database.repository import rebuild_indexes

    try:
        names = rebuild_indexes(_engine(ctx))
    except Exception as exc:
        _fail(f"Index rebuild failed: {exc}")
    click.echo(f"✓ Rebuilt {len(names)} indexes")
    for name in names:
        click.echo(f"  {name}")


@main.command()
@click.pass_context
def health(ctx: click.Context) -> None:
    """Check storage, cache and backend once."""
    from tasklink.runtime import build_health, build_runtime

    cfg = _config(ctx)
    runtime = build_runtime(cfg, engine=_engine(ctx), backend_transport=ctx.obj.get("backend_transport"))
    monitor = build_health(runtime)

    async def _check_all() -> dict[str, Any]:
        await runtime.cache.connect()
        try:
            return await monitor.check_all()
        finally:
            await runtime.backend.close()
            await runtime.cache.close()

    snapshot = asyncio.run(_check_all())
    for name, state in snapshot["components"].items():
        if name == "discord":
            continue
        mark = {"healthy": "✓", "disabled": "-"}.get(state["status"], "✗")
        line = f"{mark} {name:<9} {state['status']}"
        if state.get("error"):
            line += f" ({state['error']})"
        click.echo(line)

    checked = [s["status"] for n, s in snapshot["components"].items() if n != "discord"]
    if any(status not in ("healthy", "disabled") for status in checked):
        sys.exit(1)
