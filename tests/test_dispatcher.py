"""
tests/test_dispatcher.py — Interaction Pipeline Tests
=======================================================

End-to-end scenarios through :class:`Dispatcher` with a fully wired
runtime: SQLite storage, FakeRedis cache, the backend stub, and a
:class:`FakeResponder` in place of Discord.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from conftest import GUILD_ID, FakeResponder, make_interaction, run_async

from tasklink.bot.dispatcher import Dispatcher
from tasklink.bot.registry import CommandRegistry, CommandSpec, custom_id
from tasklink.constants import (
    REASON_ACCOUNT_AGE,
    REASON_BOT,
    REASON_LOCKDOWN,
    REASON_REQUIRES_LINK,
    REPLY_BACKEND_UNAVAILABLE,
    REPLY_GENERIC_ERROR,
    REPLY_INVALID_BUTTON,
    REPLY_UNKNOWN_BUTTON,
)
from tasklink.database import repository as repo
from tasklink.database.models import InteractionOutcome
from tasklink.engine.audit import AuditEventType, AuditFilter
from tasklink.engine.interactions import InteractionKind, Reply
from tasklink.engine.permissions import Capability, CommandPolicy
from tasklink.engine.security import SecurityEventType
from tasklink.engine.validation import NoOptions

TASK_UUID = "123e4567-e89b-12d3-a456-426614174000"

BUTTON = InteractionKind.BUTTON
MEMBER_JOIN = InteractionKind.MEMBER_JOIN


@pytest.fixture
def dispatcher(runtime):
    return Dispatcher(runtime)


@pytest.fixture
def linked(runtime):
    run_async(runtime.guilds.link(GUILD_ID, "c1", "1"))
    return runtime


def _dispatch(dispatcher, interaction, responder=None):
    responder = responder if responder is not None else FakeResponder()

    async def _inner():
        result = await dispatcher.dispatch(interaction, responder)
        while dispatcher.runtime.guilds._tasks:
            await next(iter(dispatcher.runtime.guilds._tasks))
        return result

    return run_async(_inner()), responder


def _audit_types(runtime) -> list[str]:
    return [e.type for e in runtime.audit.query()]


class TestCommands:
    def test_help_replies_once(self, dispatcher, runtime):
        result, responder = _dispatch(dispatcher, make_interaction(name="help"))
        assert result.outcome == InteractionOutcome.OK
        assert result.replied is True
        assert len(responder.sent) == 1
        assert responder.last.embed is not None
        assert runtime.audit.query(AuditFilter(type=AuditEventType.COMMAND_EXECUTED))[0].command_name == "help"

    def test_unlinked_guild_denied(self, dispatcher):
        inter = make_interaction(name="create-task", options={"task_type": "custom", "title": "t", "description": "d"})
        result, responder = _dispatch(dispatcher, inter)
        assert result.outcome == InteractionOutcome.DENIED
        assert result.reason == REASON_REQUIRES_LINK
        assert responder.last.content == f"❌ {REASON_REQUIRES_LINK}"

    def test_invalid_options(self, dispatcher, linked):
        inter = make_interaction(
            name="create-task", options={"task_type": "custom", "title": "x" * 101, "description": "d"},
        )
        result, responder = _dispatch(dispatcher, inter)
        assert result.outcome == InteractionOutcome.INVALID
        assert responder.last.content == "❌ Invalid title: must be at most 100 characters"
        failed = linked.audit.query(AuditFilter(type=AuditEventType.COMMAND_FAILED))[0]
        assert failed.details["field"] == "title"

    def test_community_id_charset(self, dispatcher, runtime, backend):
        inter = make_interaction(name="link-community", options={"community_id": "my community"}, owner=True)
        result, responder = _dispatch(dispatcher, inter)
        assert result.outcome == InteractionOutcome.INVALID
        assert responder.last.content == (
            "❌ Invalid community id: use only letters, digits, '.', '_', ':' or '-'"
        )
        failed = runtime.audit.query(AuditFilter(type=AuditEventType.COMMAND_FAILED))[0]
        assert failed.details["field"] == "community_id"
        assert backend.requests == []

    def test_create_task(self, dispatcher, linked, backend, db_engine):
        backend.add("POST", "/api/communities/c1/social-tasks", {"id": "t1"})
        inter = make_interaction(
            name="create-task",
            options={"task_type": "twitter_follow", "title": "Follow us", "description": "Follow", "points": 50},
        )
        result, responder = _dispatch(dispatcher, inter)
        assert result.outcome == InteractionOutcome.OK
        assert responder.deferred == [False]
        assert responder.edits[0].ephemeral is False
        assert [b.custom_id for b in responder.edits[0].buttons] == ["complete_task_t1", "view_task_t1"]
        assert repo.list_task_posts(db_engine, GUILD_ID)[0]["task_id"] == "t1"
        assert AuditEventType.TASK_CREATED in _audit_types(linked)

    def test_backend_outage(self, dispatcher, linked, backend):
        backend.add("GET", "/api/communities/c1/social-tasks", status=503)
        result, responder = _dispatch(dispatcher, make_interaction(name="list-tasks"))
        assert result.outcome == InteractionOutcome.ERROR
        assert result.reason == "backend_server"
        assert responder.last.content == REPLY_BACKEND_UNAVAILABLE

    def test_unexpected_handler_failure(self, runtime):
        async def boom(ctx, opts) -> Reply:
            raise RuntimeError("kaboom")

        spec = CommandSpec("boom", "Explodes", CommandPolicy(Capability.PUBLIC), (), NoOptions, boom)
        dispatcher = Dispatcher(runtime, CommandRegistry([spec]))
        result, responder = _dispatch(dispatcher, make_interaction(name="boom"))
        assert result.outcome == InteractionOutcome.ERROR
        assert responder.last.content == REPLY_GENERIC_ERROR
        failed = runtime.audit.query(AuditFilter(type=AuditEventType.COMMAND_FAILED))[0]
        assert failed.details == {"reason": "RuntimeError"}

    def test_command_needs_responder(self, dispatcher):
        with pytest.raises(ValueError):
            run_async(dispatcher.dispatch(make_interaction(name="help")))


class TestRateLimiting:
    def test_sixth_command_is_limited(self, dispatcher, runtime):
        for _ in range(5):
            assert _dispatch(dispatcher, make_interaction(name="help"))[0].outcome == InteractionOutcome.OK
        result, responder = _dispatch(dispatcher, make_interaction(name="help"))
        assert result.outcome == InteractionOutcome.RATE_LIMITED
        assert responder.last.content.startswith("⏱️ You've hit the rate limit.")
        hit = runtime.audit.query(AuditFilter(type=AuditEventType.RATE_LIMIT_HIT))[0]
        assert hit.details["violations"] == 1

    def test_buttons_have_their_own_budget(self, dispatcher):
        for _ in range(5):
            _dispatch(dispatcher, make_interaction(name="help"))
        result, _ = _dispatch(dispatcher, make_interaction(BUTTON, "help_setup"))
        assert result.outcome == InteractionOutcome.OK


class TestDenials:
    def _denied(self, runtime) -> list:
        return runtime.audit.query(AuditFilter(type=AuditEventType.PERMISSION_DENIED))

    def test_bot_account(self, dispatcher, runtime):
        result, responder = _dispatch(dispatcher, make_interaction(name="help", bot=True))
        assert result.outcome == InteractionOutcome.DENIED
        assert result.reason == REASON_BOT
        assert responder.last.content == f"❌ {REASON_BOT}"
        assert responder.last.ephemeral is True
        assert len(self._denied(runtime)) == 1

    def test_new_account(self, dispatcher, runtime):
        young = datetime.now(UTC) - timedelta(days=1)
        result, responder = _dispatch(dispatcher, make_interaction(name="help", created_at=young))
        assert result.outcome == InteractionOutcome.DENIED
        assert result.reason == REASON_ACCOUNT_AGE
        assert responder.last.content == f"❌ {REASON_ACCOUNT_AGE}"
        assert responder.last.ephemeral is True
        assert len(self._denied(runtime)) == 1

    def test_rate_limit_reply_is_private(self, dispatcher, runtime):
        for _ in range(5):
            _dispatch(dispatcher, make_interaction(name="help"))
        result, responder = _dispatch(dispatcher, make_interaction(name="help"))
        assert result.outcome == InteractionOutcome.RATE_LIMITED
        assert responder.last.ephemeral is True
        assert len(responder.sent) == 1
        assert len(runtime.audit.query(AuditFilter(type=AuditEventType.RATE_LIMIT_HIT))) == 1
        assert self._denied(runtime) == []


class TestButtons:
    def test_suspicious_custom_id(self, dispatcher, runtime):
        result, responder = _dispatch(dispatcher, make_interaction(BUTTON, "launch; rm -rf /"))
        assert result.outcome == InteractionOutcome.INVALID
        assert responder.last.content == REPLY_INVALID_BUTTON
        assert SecurityEventType.SUSPICIOUS_CONTENT in [e.type for e in result.events]

    def test_unknown_action(self, dispatcher):
        result, responder = _dispatch(dispatcher, make_interaction(BUTTON, "launch_rocket"))
        assert result.outcome == InteractionOutcome.INVALID
        assert responder.last.content == REPLY_UNKNOWN_BUTTON
        assert result.events == ()

    def test_button_policy_applies(self, dispatcher):
        result, _ = _dispatch(dispatcher, make_interaction(BUTTON, "view_task_t1"))
        assert result.outcome == InteractionOutcome.DENIED
        assert result.reason == REASON_REQUIRES_LINK

    def test_complete_task(self, dispatcher, linked, backend, db_engine):
        backend.add("GET", "/api/discord/users/1001/link", {"user_id": "u1"})
        backend.add("POST", f"/api/social-tasks/{TASK_UUID}/complete", {"points_awarded": 50})
        result, responder = _dispatch(dispatcher, make_interaction(BUTTON, custom_id("complete_task", TASK_UUID)))
        assert result.outcome == InteractionOutcome.OK
        assert responder.deferred == [True]
        assert responder.last.content == "✅ Task completed! You earned **50** points."
        assert repo.get_account_link(db_engine, "1001")["backend_user_id"] == "u1"

    def test_complete_task_needs_account_link(self, dispatcher, linked):
        result, responder = _dispatch(dispatcher, make_interaction(BUTTON, "complete_task_t1"))
        assert result.outcome == InteractionOutcome.ERROR
        assert responder.last.content.startswith("\U0001f517 Link your account")

    def test_help_button(self, dispatcher):
        result, responder = _dispatch(dispatcher, make_interaction(BUTTON, "help_setup"))
        assert result.outcome == InteractionOutcome.OK
        assert responder.last.content.startswith("**Getting started**")

    def test_dashed_allowlist_id_round_trips_through_buttons(self, dispatcher, linked, backend):
        backend.add("GET", "/api/allowlists/summer-drop", {"id": "summer-drop", "name": "Summer Drop", "community_id": "c1"})
        inter = make_interaction(name="connect-allowlist", options={"allowlist_id": "summer-drop"}, admin=True)
        result, responder = _dispatch(dispatcher, inter)
        assert result.outcome == InteractionOutcome.OK
        buttons = [b.custom_id for b in responder.last.buttons]
        assert buttons == ["enter_allowlist_summerzddrop", "view_allowlist_summerzddrop"]

        result, responder = _dispatch(dispatcher, make_interaction(BUTTON, buttons[1]))
        assert result.outcome == InteractionOutcome.OK
        assert SecurityEventType.SUSPICIOUS_CONTENT not in [e.type for e in result.events]
        assert "Summer Drop" in responder.last.embed.title
        assert [b.custom_id for b in responder.last.buttons] == [buttons[0]]

    def test_malformed_id_reported_before_permissions(self, dispatcher, linked):
        result, responder = _dispatch(dispatcher, make_interaction(BUTTON, "unlink_community_$(x)"))
        assert result.outcome == InteractionOutcome.DENIED
        assert responder.last.content.startswith("❌ ")
        assert SecurityEventType.SUSPICIOUS_CONTENT in [e.type for e in result.events]


class TestExpiry:
    def test_expired_interaction_skips_storage(self, dispatcher, runtime, backend, db_engine):
        backend.add("GET", "/api/communities/c9", {"id": "c9", "name": "Nine"})
        backend.add("POST", "/api/discord/server-mappings", {"ok": True})
        inter = make_interaction(name="link-community", options={"community_id": "c9"}, owner=True)
        result, responder = _dispatch(dispatcher, inter, FakeResponder(expired=True))

        assert result.outcome == InteractionOutcome.OK
        assert result.replied is False
        assert repo.get_server_mapping(db_engine, GUILD_ID) is None
        executed = runtime.audit.query(AuditFilter(type=AuditEventType.COMMAND_EXECUTED))[0]
        assert executed.details == {"expired": True}
        assert dispatcher.statistics()["expired"] == 1

    def test_owner_links_community(self, dispatcher, runtime, backend, db_engine):
        backend.add("GET", "/api/communities/c9", {"id": "c9", "name": "Nine"})
        backend.add("POST", "/api/discord/server-mappings", {"ok": True})
        inter = make_interaction(name="link-community", options={"community_id": "c9"}, owner=True)
        result, _ = _dispatch(dispatcher, inter)
        assert result.outcome == InteractionOutcome.OK
        assert repo.get_server_mapping(db_engine, GUILD_ID)["community_id"] == "c9"
        assert AuditEventType.COMMUNITY_LINKED in _audit_types(runtime)


class TestSecurityFlows:
    def test_manual_lockdown_blocks_everyone(self, dispatcher, runtime, db_engine):
        lock = make_interaction(
            name="security", options={"action": "lockdown", "duration_minutes": 5, "reason": "raid"}, owner=True,
        )
        result, responder = _dispatch(dispatcher, lock)
        assert result.outcome == InteractionOutcome.OK
        assert responder.last.ephemeral is False
        assert repo.get_lockdown(db_engine, GUILD_ID)["reason"] == "raid"

        result, responder = _dispatch(dispatcher, make_interaction(name="help", user_id="1002"))
        assert result.outcome == InteractionOutcome.DENIED
        assert responder.last.content == f"❌ {REASON_LOCKDOWN}"

    def test_alert_channel_requires_link(self, dispatcher):
        inter = make_interaction(name="security", options={"action": "alert-channel"}, admin=True)
        result, _ = _dispatch(dispatcher, inter)
        assert result.outcome == InteractionOutcome.ERROR

    def test_alert_channel(self, dispatcher, linked):
        inter = make_interaction(name="security", options={"action": "alert-channel"}, admin=True)
        result, _ = _dispatch(dispatcher, inter)
        assert result.outcome == InteractionOutcome.OK
        assert run_async(linked.guilds.alert_channel(GUILD_ID)) == "7001"


class TestObservedEvents:
    def test_member_join(self, dispatcher, runtime):
        result = run_async(dispatcher.dispatch(make_interaction(MEMBER_JOIN, "")))
        assert result.outcome == InteractionOutcome.OBSERVED
        assert result.replied is False
        joined = runtime.audit.query(AuditFilter(type=AuditEventType.MEMBER_JOINED))[0]
        assert joined.details["account_age_hours"] > 24

    def test_every_dispatch_is_logged(self, dispatcher, db_engine):
        _dispatch(dispatcher, make_interaction(name="help"))
        run_async(dispatcher.dispatch(make_interaction(MEMBER_JOIN, "")))
        assert repo.data_summary(db_engine)["interaction_logs"]["rows"] == 2
        assert dispatcher.statistics()["outcomes"] == {"ok": 1, "observed": 1}
