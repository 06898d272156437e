"""
tasklink.bot.adapter — discord.py ↔ core translation
======================================================

Turns ``discord.Interaction``, ``discord.Member`` and ``discord.Message``
objects into core :class:`~tasklink.engine.interactions.Interaction`
records, and wraps a ``discord.Interaction`` in a :class:`DiscordResponder`
that renders :class:`~tasklink.engine.interactions.Reply` values.

"Unknown interaction" / "Unknown webhook" errors from Discord mean the
interaction token is gone; they surface as :class:`InteractionExpired`.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

import discord

from tasklink.engine.interactions import (
    ButtonSpec,
    Interaction,
    InteractionExpired,
    InteractionKind,
    Invoker,
    Reply,
)

logger = logging.getLogger(__name__)

_EXPIRED_CODES = frozenset({10062, 10015})  # Unknown interaction, Unknown webhook
_BUTTON_STYLES = {
    "primary": discord.ButtonStyle.primary,
    "secondary": discord.ButtonStyle.secondary,
    "success": discord.ButtonStyle.success,
    "danger": discord.ButtonStyle.danger,
}
_VIEW_TIMEOUT = 900.0  # interaction tokens live for 15 minutes


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------
def build_invoker(
    user: discord.User | discord.Member,
    guild: discord.Guild | None,
    admin_role_ids: Iterable[int] = (),
) -> Invoker:
    """Identity and guild capabilities of *user*."""
    role_ids: tuple[str, ...] = ()
    is_member = is_admin = is_owner = False
    if guild is not None and isinstance(user, discord.Member):
        is_member = True
        role_ids = tuple(str(r.id) for r in user.roles if not r.is_default())
        perms = user.guild_permissions
        is_owner = guild.owner_id == user.id
        admin_roles = {int(r) for r in admin_role_ids}
        is_admin = (
            perms.administrator
            or perms.manage_guild
            or any(r.id in admin_roles for r in user.roles)
        )
    return Invoker(
        user_id=str(user.id),
        created_at=user.created_at,
        bot=user.bot,
        display_name=user.display_name,
        role_ids=role_ids,
        is_member=is_member,
        is_admin=is_admin,
        is_owner=is_owner,
    )


def _flatten_options(options: list[dict[str, Any]] | None) -> dict[str, Any]:
    """Top-level option values keyed by name (no sub-commands are registered)."""
    return {opt["name"]: opt.get("value") for opt in options or [] if "name" in opt}


# ---------------------------------------------------------------------------
# Inbound translation
# ---------------------------------------------------------------------------
def from_interaction(
    interaction: discord.Interaction,
    admin_role_ids: Iterable[int] = (),
) -> Interaction | None:
    """Core record for a slash command or button press, else ``None``."""
    data: dict[str, Any] = dict(interaction.data or {})
    if interaction.type == discord.InteractionType.application_command:
        kind = InteractionKind.SLASH_COMMAND
        name = str(data.get("name", ""))
        options = _flatten_options(data.get("options"))
    elif interaction.type == discord.InteractionType.component and data.get("component_type") == 2:
        kind = InteractionKind.BUTTON
        name = str(data.get("custom_id", ""))
        options = {}
    else:
        return None

    return Interaction(
        kind=kind,
        invoker=build_invoker(interaction.user, interaction.guild, admin_role_ids),
        guild_id=str(interaction.guild_id) if interaction.guild_id else None,
        channel_id=str(interaction.channel_id) if interaction.channel_id else None,
        name=name,
        options=options,
        id=str(interaction.id),
        received_at=interaction.created_at,
    )


def from_member_join(member: discord.Member) -> Interaction:
    return Interaction(
        kind=InteractionKind.MEMBER_JOIN,
        invoker=build_invoker(member, member.guild),
        guild_id=str(member.guild.id),
        name="member_join",
    )


def from_message(message: discord.Message) -> Interaction:
    return Interaction(
        kind=InteractionKind.MESSAGE,
        invoker=build_invoker(message.author, message.guild),
        guild_id=str(message.guild.id) if message.guild else None,
        channel_id=str(message.channel.id),
        name="message",
        content=message.content,
        id=str(message.id),
        received_at=message.created_at,
    )


# ---------------------------------------------------------------------------
# Outbound rendering
# ---------------------------------------------------------------------------
def build_view(buttons: Iterable[ButtonSpec]) -> discord.ui.View | None:
    """Button row(s) for a reply.  Presses are routed by the gateway cog."""
    buttons = list(buttons)
    if not buttons:
        return None
    view = discord.ui.View(timeout=_VIEW_TIMEOUT)
    for spec in buttons[:25]:
        view.add_item(discord.ui.Button(
            style=_BUTTON_STYLES.get(spec.style, discord.ButtonStyle.secondary),
            label=spec.label,
            custom_id=spec.custom_id,
            emoji=spec.emoji,
        ))
    return view


def _is_expired(exc: discord.HTTPException) -> bool:
    return isinstance(exc, discord.NotFound) and exc.code in _EXPIRED_CODES


class DiscordResponder:
    """Responder capability backed by one ``discord.Interaction``."""

    def __init__(self, interaction: discord.Interaction) -> None:
        self._interaction = interaction

    @property
    def responded(self) -> bool:
        return self._interaction.response.is_done()

    def _kwargs(self, reply: Reply) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"content": reply.content, "embed": reply.embed}
        view = build_view(reply.buttons)
        if view is not None:
            kwargs["view"] = view
        return kwargs

    async def reply(self, reply: Reply) -> None:
        try:
            await self._interaction.response.send_message(ephemeral=reply.ephemeral, **self._kwargs(reply))
        except discord.InteractionResponded:
            await self.edit_reply(reply)
        except discord.HTTPException as exc:
            if _is_expired(exc):
                raise InteractionExpired(str(exc)) from exc
            raise

    async def edit_reply(self, reply: Reply) -> None:
        try:
            await self._interaction.edit_original_response(**self._kwargs(reply))
        except discord.HTTPException as exc:
            if _is_expired(exc):
                raise InteractionExpired(str(exc)) from exc
            raise

    async def defer_reply(self, *, ephemeral: bool = True) -> None:
        if self.responded:
            return
        try:
            await self._interaction.response.defer(ephemeral=ephemeral, thinking=True)
        except discord.HTTPException as exc:
            if _is_expired(exc):
                raise InteractionExpired(str(exc)) from exc
            raise

    async def get_user(self, user_id: str) -> discord.User | None:
        client = self._interaction.client
        user = client.get_user(int(user_id))
        if user is None:
            try:
                user = await client.fetch_user(int(user_id))
            except discord.NotFound:
                return None
        return user

    async def get_guild_member(self, user_id: str) -> discord.Member | None:
        guild = self._interaction.guild
        if guild is None:
            return None
        member = guild.get_member(int(user_id))
        if member is None:
            try:
                member = await guild.fetch_member(int(user_id))
            except discord.NotFound:
                return None
        return member

    async def get_guild_owner(self) -> discord.Member | None:
        guild = self._interaction.guild
        if guild is None:
            return None
        if guild.owner is not None:
            return guild.owner
        return await self.get_guild_member(str(guild.owner_id))
