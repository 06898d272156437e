"""
tasklink.bot.cogs.gateway — Gateway Events → Dispatcher
=========================================================

Every slash command, button press, member join and guild message enters
the core here.  The cog only translates (via :mod:`tasklink.bot.adapter`)
and hands over; all policy lives in the dispatcher.

Requires the GUILD_MEMBERS and MESSAGE_CONTENT privileged intents.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord
from discord.ext import commands

from tasklink.bot.adapter import (
    DiscordResponder,
    from_interaction,
    from_member_join,
    from_message,
)

if TYPE_CHECKING:
    from tasklink.bot.core import TaskLinkBot

logger = logging.getLogger(__name__)


class Gateway(commands.Cog, name="Gateway"):
    """Routes gateway events into the dispatcher."""

    def __init__(self, bot: TaskLinkBot) -> None:
        self.bot = bot

    @commands.Cog.listener()
    async def on_interaction(self, interaction: discord.Interaction) -> None:
        core = from_interaction(interaction, self.bot.cfg.admin_role_ids)
        if core is None:
            return
        try:
            result = await self.bot.dispatcher.dispatch(core, DiscordResponder(interaction))
            logger.debug("%s %s → %s", core.kind, core.name, result.outcome)
        except Exception:
            logger.exception(
                "Unhandled error dispatching %s", core.name,
                extra={"event_type": str(core.kind), "user_id": core.user_id, "guild_id": core.guild_id},
            )

    @commands.Cog.listener()
    async def on_member_join(self, member: discord.Member) -> None:
        try:
            await self.bot.dispatcher.dispatch(from_member_join(member))
        except Exception:
            logger.exception(
                "Error processing member_join for %s", member.id,
                extra={"event_type": "member_join", "user_id": member.id},
            )

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot or message.guild is None:
            return
        try:
            await self.bot.dispatcher.dispatch(from_message(message))
        except Exception:
            logger.exception(
                "Error processing message %s", message.id,
                extra={"event_type": "message", "user_id": message.author.id},
            )


async def setup(bot: TaskLinkBot) -> None:
    await bot.add_cog(Gateway(bot))
