"""
tests/test_cli.py — Admin CLI Tests
=====================================

Drives ``tasklink-admin`` through click's :class:`CliRunner`.  Discord's
REST API is an ``httpx.MockTransport``; storage is the in-memory SQLite
engine from ``conftest``.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

import httpx
import pytest
import sqlalchemy as sa
from click.testing import CliRunner
from conftest import make_config

from tasklink.cli import main
from tasklink.database import repository as repo

CLIENT_ID = "123456789012345678"


class DiscordStub:
    """Records command PUTs and serves the stored list back."""

    def __init__(self, status: int = 200) -> None:
        self.status = status
        self.requests: list[httpx.Request] = []
        self.commands: dict[str, list[dict]] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status != 200:
            return httpx.Response(self.status, json={"message": "nope"})
        path = request.url.path
        if request.method == "PUT":
            self.commands[path] = json.loads(request.content)
        return httpx.Response(200, json=self.commands.get(path, []))

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def cli_runner():
    return CliRunner()


@pytest.fixture
def discord():
    return DiscordStub()


def _invoke(runner, args, *, config=None, **obj):
    obj.setdefault("config", config or make_config(cache_url=None))
    return runner.invoke(main, args, obj=obj)


class TestRegistration:
    def test_register_global(self, cli_runner, discord):
        result = _invoke(cli_runner, ["register"], transport=discord.transport)
        assert result.exit_code == 0, result.output
        assert "✓ Registered 8 commands for all guilds" in result.output
        request = discord.requests[0]
        assert request.url.path == f"/api/v10/applications/{CLIENT_ID}/commands"
        assert request.headers["Authorization"] == "Bot test-bot-token"

    def test_register_guild(self, cli_runner, discord):
        result = _invoke(cli_runner, ["register-guild", "5001"], transport=discord.transport)
        assert result.exit_code == 0, result.output
        assert discord.requests[0].url.path.endswith("/guilds/5001/commands")
        assert "/create-task" in result.output

    def test_register_guild_uses_dev_guild(self, cli_runner, discord):
        config = make_config(cache_url=None, dev_guild_id=42)
        result = _invoke(cli_runner, ["register-guild"], config=config, transport=discord.transport)
        assert result.exit_code == 0, result.output
        assert discord.requests[0].url.path.endswith("/guilds/42/commands")

    def test_register_guild_needs_a_guild(self, cli_runner, discord):
        result = _invoke(cli_runner, ["register-guild"], transport=discord.transport)
        assert result.exit_code == 1
        assert "Guild ID is required" in result.output
        assert discord.requests == []

    def test_register_failure(self, cli_runner):
        result = _invoke(cli_runner, ["register"], transport=DiscordStub(status=401).transport)
        assert result.exit_code == 1
        assert "Registration failed" in result.output

    def test_clear_and_list(self, cli_runner, discord):
        _invoke(cli_runner, ["register"], transport=discord.transport)
        result = _invoke(cli_runner, ["clear"], transport=discord.transport)
        assert result.exit_code == 0
        assert "✓ Cleared commands for all guilds" in result.output

        result = _invoke(cli_runner, ["list"], transport=discord.transport)
        assert "Registered commands (0):" in result.output

    def test_list_guild(self, cli_runner, discord):
        _invoke(cli_runner, ["register-guild", "5001"], transport=discord.transport)
        result = _invoke(cli_runner, ["list", "--guild", "5001"], transport=discord.transport)
        assert "Registered commands (8):" in result.output
        assert "  /help: " in result.output


class TestStorageCommands:
    def test_data_summary_json(self, cli_runner, db_engine):
        repo.upsert_server_mapping(db_engine, "5001", "c1", "1001")
        result = _invoke(cli_runner, ["data:summary", "--json"], engine=db_engine)
        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["server_mappings"]["rows"] == 1

    def test_data_summary_table(self, cli_runner, db_engine):
        result = _invoke(cli_runner, ["data:summary"], engine=db_engine)
        assert "=== Database Summary ===" in result.output
        assert "audit_log" in result.output

    def test_cleanup(self, cli_runner, db_engine):
        repo.save_lockdown(db_engine, "5001", "old", datetime.now(UTC) - timedelta(minutes=1))
        repo.record_task_post(db_engine, task_id="t1", guild_id="5001", created_by="1", title="T",
                              task_type="custom", expires_at=datetime.now(UTC) - timedelta(hours=1))
        result = _invoke(cli_runner, ["cleanup"], engine=db_engine)
        assert result.exit_code == 0, result.output
        assert "lockdowns_deleted: 1" in result.output
        assert "task_posts_expired: 1" in result.output
        assert "audit_entries_deleted: 0" in result.output

    def test_indexes_rebuild(self, cli_runner, db_engine):
        result = _invoke(cli_runner, ["indexes:rebuild"], engine=db_engine)
        assert result.exit_code == 0, result.output
        assert "ix_audit_log_timestamp" in result.output

    def test_migrate(self, cli_runner, tmp_path):
        url = f"sqlite:///{tmp_path / 'tasklink.db'}"
        result = _invoke(cli_runner, ["migrate"], config=make_config(cache_url=None, storage_uri=url))
        assert result.exit_code == 0, result.output
        tables = set(sa.inspect(sa.create_engine(url)).get_table_names())
        assert {"server_mappings", "audit_log", "interaction_logs"} <= tables


class TestHealthCommand:
    def test_all_healthy(self, cli_runner, db_engine, backend):
        backend.add("GET", "/health", {"ok": True})
        result = _invoke(cli_runner, ["health"], engine=db_engine, backend_transport=backend.transport)
        assert result.exit_code == 0, result.output
        assert "✓ database" in result.output
        assert "- cache" in result.output
        assert "discord" not in result.output

    def test_backend_down(self, cli_runner, db_engine, backend):
        backend.add("GET", "/health", status=503)
        result = _invoke(cli_runner, ["health"], engine=db_engine, backend_transport=backend.transport)
        assert result.exit_code == 1
        assert "✗ backend" in result.output


class TestConfiguration:
    def test_missing_environment(self, cli_runner, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        result = cli_runner.invoke(main, ["data:summary"], obj={"env": {}})
        assert result.exit_code == 1
        assert "Configuration error" in result.output
