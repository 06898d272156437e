"""
tasklink.bot.core — Bot Instance & Runtime Wiring
===================================================

:class:`TaskLinkBot` is the ``commands.Bot`` subclass that carries the
shared :class:`~tasklink.runtime.Runtime`, the :class:`Dispatcher` and the
:class:`Scheduler`.  Cogs reach them through ``self.bot.*``.

Startup (``setup_hook``):

1. Connect the cache layer (degraded mode if Redis is unreachable).
2. Restore unexpired guild lockdowns from storage.
3. Install the alert sender that posts security embeds to each guild's
   alert channel.
4. Build the health monitor (with a gateway check) and start the scheduler.
5. Load the gateway cog and, when ``MONITOR_PORT`` is set, serve the
   monitoring API with uvicorn on the bot's event loop.

Slash commands are registered out of band with ``tasklink-admin register``;
the dispatcher owns routing, so the command tree only has to stay quiet
about commands it does not know.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math

import discord
import uvicorn
from discord import app_commands
from discord.ext import commands

from tasklink.bot.dispatcher import Dispatcher
from tasklink.bot.registry import CommandRegistry
from tasklink.engine.security import SecurityEvent
from tasklink.runtime import Runtime, build_health
from tasklink.services.embeds import build_security_events_embed
from tasklink.services.scheduler import Scheduler

logger = logging.getLogger(__name__)

# Cog modules to load on startup.
EXTENSIONS: list[str] = [
    "tasklink.bot.cogs.gateway",
]


class DispatcherTree(app_commands.CommandTree):
    """Command tree that leaves unknown application commands to the dispatcher."""

    async def on_error(
        self,
        interaction: discord.Interaction,
        error: app_commands.AppCommandError,
    ) -> None:
        if isinstance(error, app_commands.CommandNotFound):
            return
        await super().on_error(interaction, error)


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to discord.py."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class TaskLinkBot(commands.Bot):
    """Custom Bot subclass that carries the project runtime.

    Parameters
    ----------
    runtime:
        Every shared component, built by :func:`~tasklink.runtime.build_runtime`.
    registry:
        Command registry; defaults to every shipped command and button.
    """

    def __init__(self, runtime: Runtime, registry: CommandRegistry | None = None) -> None:
        # MEMBERS is privileged: join monitoring.  MESSAGE_CONTENT is
        # privileged: suspicious-content scanning.  Presences stay off.
        intents = discord.Intents.default()
        intents.members = True
        intents.message_content = True
        intents.presences = False

        super().__init__(
            command_prefix=commands.when_mentioned,
            intents=intents,
            tree_cls=DispatcherTree,
            help_command=None,
        )

        self.runtime = runtime
        self.dispatcher = Dispatcher(runtime, registry)
        self.scheduler = Scheduler(runtime, wait_until_ready=self.wait_until_ready)
        self._api_server: uvicorn.Server | None = None
        self._api_task: asyncio.Task | None = None

    @property
    def cfg(self):
        return self.runtime.config

    # -----------------------------------------------------------------------
    # Lifecycle hooks
    # -----------------------------------------------------------------------
    async def setup_hook(self) -> None:
        runtime = self.runtime

        if not await runtime.cache.connect():
            logger.warning("Cache unavailable; running in degraded mode")

        try:
            await runtime.guilds.restore_lockdowns(runtime.monitor)
        except Exception:
            logger.exception("Failed to restore guild lockdowns", extra={"task": "startup"})

        runtime.alerts.set_sender(self._send_alerts)
        build_health(runtime, discord_check=self._discord_check)
        self.scheduler.start()

        for ext in EXTENSIONS:
            try:
                await self.load_extension(ext)
                logger.info("Loaded extension: %s", ext)
            except Exception as exc:
                logger.error("Failed to load extension %s: %s", ext, exc)

        if self.cfg.monitor_port:
            self._start_monitoring_api(self.cfg.monitor_port)

    async def on_ready(self) -> None:
        """Fired when the bot has connected and the cache is populated."""
        if self.user is not None:
            logger.info("Logged in as %s (ID: %s) in %d guild(s)", self.user.name, self.user.id, len(self.guilds))

    async def close(self) -> None:
        """Graceful shutdown: stop jobs, flush, release resources."""
        logger.info("Bot shutting down…")
        await self.scheduler.stop()
        await self.runtime.alerts.join()
        if self._api_server is not None:
            self._api_server.should_exit = True
            if self._api_task is not None:
                with contextlib.suppress(asyncio.CancelledError):
                    await self._api_task
        await self.runtime.close()
        await super().close()

    # -----------------------------------------------------------------------
    # Monitoring API
    # -----------------------------------------------------------------------
    def _start_monitoring_api(self, port: int) -> None:
        from tasklink.api.main import create_app

        app = create_app(self.runtime)
        config = uvicorn.Config(app, host="0.0.0.0", port=port, log_config=None)
        self._api_server = _EmbeddedServer(config)
        self._api_task = asyncio.create_task(self._api_server.serve(), name="monitoring-api")
        logger.info("Monitoring API listening on port %d", port)

    # -----------------------------------------------------------------------
    # Runtime callbacks
    # -----------------------------------------------------------------------
    async def _discord_check(self) -> bool:
        return self.is_ready() and not self.is_closed() and not math.isnan(self.latency)

    async def _send_alerts(self, guild_id: str, events: list[SecurityEvent]) -> None:
        """Post *events* to the guild's configured alert channel."""
        channel_id = await self.runtime.guilds.alert_channel(guild_id)
        if channel_id is None:
            logger.debug("No alert channel for guild %s; %d alert(s) logged only", guild_id, len(events))
            return

        channel = self.get_channel(int(channel_id))
        if channel is None:
            channel = await self.fetch_channel(int(channel_id))
        if not isinstance(channel, discord.abc.Messageable):
            logger.warning("Alert channel %s in guild %s is not messageable", channel_id, guild_id)
            return
        await channel.send(embed=build_security_events_embed(events))
