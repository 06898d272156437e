"""
tests/test_adapter.py — discord.py Translation Tests
======================================================

discord.py objects are ``MagicMock(spec=...)`` doubles; nothing talks to
Discord.
"""

from __future__ import annotations

from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest
from conftest import run_async

from tasklink.bot.adapter import DiscordResponder, build_invoker, build_view, from_interaction
from tasklink.engine.interactions import ButtonSpec, InteractionExpired, InteractionKind, Reply

CREATED = datetime(2021, 6, 1, tzinfo=UTC)


def _role(role_id: int, default: bool = False) -> MagicMock:
    role = MagicMock()
    role.id = role_id
    role.is_default.return_value = default
    return role


def _member(user_id: int = 1001, *, roles=(), administrator=False, manage_guild=False) -> MagicMock:
    member = MagicMock(spec=discord.Member)
    member.id = user_id
    member.created_at = CREATED
    member.bot = False
    member.display_name = "Tester"
    member.roles = [_role(5001, default=True), *roles]
    member.guild_permissions = SimpleNamespace(administrator=administrator, manage_guild=manage_guild)
    return member


def _guild(owner_id: int = 1) -> MagicMock:
    guild = MagicMock(spec=discord.Guild)
    guild.id = 5001
    guild.owner_id = owner_id
    return guild


def _not_found(code: int) -> discord.NotFound:
    response = SimpleNamespace(status=404, reason="Not Found")
    return discord.NotFound(response, {"code": code, "message": "Unknown interaction"})


class TestBuildInvoker:
    def test_plain_member(self):
        invoker = build_invoker(_member(roles=[_role(77)]), _guild())
        assert invoker.user_id == "1001"
        assert invoker.is_member and not invoker.is_admin and not invoker.is_owner
        assert invoker.role_ids == ("77",)
        assert invoker.created_at == CREATED

    def test_manage_guild_is_admin(self):
        assert build_invoker(_member(manage_guild=True), _guild()).is_admin

    def test_configured_admin_role(self):
        invoker = build_invoker(_member(roles=[_role(88)]), _guild(), admin_role_ids=["88"])
        assert invoker.is_admin

    def test_owner(self):
        assert build_invoker(_member(1001), _guild(owner_id=1001)).is_owner

    def test_direct_message_user(self):
        user = SimpleNamespace(id=1001, created_at=CREATED, bot=False, display_name="DM")
        invoker = build_invoker(user, None)
        assert not invoker.is_member
        assert invoker.role_ids == ()


class TestFromInteraction:
    def _interaction(self, type_, data) -> SimpleNamespace:
        return SimpleNamespace(
            type=type_, data=data, user=_member(), guild=_guild(), guild_id=5001,
            channel_id=7001, id=9001, created_at=CREATED,
        )

    def test_slash_command(self):
        inter = from_interaction(self._interaction(
            discord.InteractionType.application_command,
            {"name": "create-task", "options": [{"name": "title", "type": 3, "value": "Follow"}]},
        ))
        assert inter.kind == InteractionKind.SLASH_COMMAND
        assert inter.name == "create-task"
        assert inter.options == {"title": "Follow"}
        assert (inter.guild_id, inter.channel_id, inter.id) == ("5001", "7001", "9001")

    def test_button(self):
        inter = from_interaction(self._interaction(
            discord.InteractionType.component, {"component_type": 2, "custom_id": "view_task_t1"},
        ))
        assert inter.kind == InteractionKind.BUTTON
        assert inter.name == "view_task_t1"

    def test_select_menu_ignored(self):
        raw = self._interaction(discord.InteractionType.component, {"component_type": 3, "custom_id": "x"})
        assert from_interaction(raw) is None


class TestBuildView:
    def test_no_buttons(self):
        assert build_view([]) is None

    def test_buttons_keep_order_and_style(self):
        async def _build():
            return build_view([
                ButtonSpec("complete_task_t1", "Complete", style="success"),
                ButtonSpec("view_task_t1", "View", style="sparkly"),
            ])

        view = run_async(_build())
        assert [item.custom_id for item in view.children] == ["complete_task_t1", "view_task_t1"]
        assert view.children[0].style == discord.ButtonStyle.success
        assert view.children[1].style == discord.ButtonStyle.secondary


class TestDiscordResponder:
    def _raw(self) -> MagicMock:
        raw = MagicMock()
        raw.response.send_message = AsyncMock()
        raw.response.defer = AsyncMock()
        raw.response.is_done.return_value = False
        raw.edit_original_response = AsyncMock()
        return raw

    def test_reply(self):
        raw = self._raw()
        run_async(DiscordResponder(raw).reply(Reply(content="hi", ephemeral=False)))
        raw.response.send_message.assert_awaited_once_with(ephemeral=False, content="hi", embed=None)

    def test_reply_after_response_edits(self):
        raw = self._raw()
        raw.response.send_message.side_effect = discord.InteractionResponded(raw)
        run_async(DiscordResponder(raw).reply(Reply(content="hi")))
        raw.edit_original_response.assert_awaited_once_with(content="hi", embed=None)

    @pytest.mark.parametrize("code", [10062, 10015])
    def test_expired_token(self, code):
        raw = self._raw()
        raw.response.send_message.side_effect = _not_found(code)
        with pytest.raises(InteractionExpired):
            run_async(DiscordResponder(raw).reply(Reply(content="hi")))

    def test_other_not_found_propagates(self):
        raw = self._raw()
        raw.edit_original_response.side_effect = _not_found(10008)
        with pytest.raises(discord.NotFound):
            run_async(DiscordResponder(raw).edit_reply(Reply(content="hi")))

    def test_defer_is_idempotent(self):
        raw = self._raw()
        raw.response.is_done.return_value = True
        run_async(DiscordResponder(raw).defer_reply(ephemeral=False))
        raw.response.defer.assert_not_awaited()

    def test_defer(self):
        raw = self._raw()
        run_async(DiscordResponder(raw).defer_reply(ephemeral=False))
        raw.response.defer.assert_awaited_once_with(ephemeral=False, thinking=True)
