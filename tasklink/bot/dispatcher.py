"""
tasklink.bot.dispatcher — Interaction Pipeline
================================================

Every inbound :class:`~tasklink.engine.interactions.Interaction` goes
through one sequence of awaited steps:

1. classify (``slash_command`` / ``button`` / ``member_join`` / ``message``)
2. rate limit: ``command`` or ``interaction`` combined with ``global``
3. permission check against the registry policy and the guild state
4. Security Monitor observation (always, denied or not)
5. buttons: custom-id routing; grammar violations are reported as
   ``suspicious_content`` ahead of step 3
6. commands: option schema parsing into the command's typed options
7. handler, inside a guarded scope
8. audit ``command_executed`` / ``command_failed``

Exactly one reply is produced for each slash command or button, deferred
and then edited when the command asks for it.  ``member_join`` and
``message`` events only feed the Security Monitor.

If the platform refuses a reply (:class:`InteractionExpired`), the outcome
is still audited and logged; handlers see ``ctx.expired`` and skip storage
commits.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from tasklink.bot.registry import (
    CommandRegistry,
    HandlerContext,
    HandlerError,
    default_registry,
)
from tasklink.constants import (
    REPLY_BACKEND_UNAVAILABLE,
    REPLY_GENERIC_ERROR,
    REPLY_INVALID_BUTTON,
    REPLY_RATE_LIMITED,
    REPLY_UNKNOWN_BUTTON,
)
from tasklink.database import repository as repo
from tasklink.database.engine import run_db
from tasklink.database.models import InteractionOutcome
from tasklink.engine.audit import AuditEventType
from tasklink.engine.interactions import (
    Interaction,
    InteractionExpired,
    InteractionKind,
    Reply,
    Responder,
)
from tasklink.engine.permissions import Capability, CommandPolicy
from tasklink.engine.security import SecurityEvent
from tasklink.engine.validation import (
    CustomIdError,
    OptionValidationError,
    is_valid_custom_id,
    parse_custom_id,
    parse_options,
)
from tasklink.services.backend_client import BackendError

if TYPE_CHECKING:
    from tasklink.runtime import Runtime

logger = logging.getLogger(__name__)

# Buttons that match no registered action still pass the identity checks
_UNROUTED_BUTTON = CommandPolicy(Capability.PUBLIC)


@dataclass(frozen=True, slots=True)
class DispatchResult:
    outcome: InteractionOutcome
    reason: str | None = None
    events: tuple[SecurityEvent, ...] = ()
    replied: bool = False


class Dispatcher:
    """Runs the pipeline against an explicit :class:`~tasklink.runtime.Runtime`."""

    def __init__(self, runtime: Runtime, registry: CommandRegistry | None = None) -> None:
        self.runtime = runtime
        self.registry = registry or default_registry()
        self._outcomes: Counter[str] = Counter()
        self._expired = 0

    # -------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------
    async def dispatch(self, interaction: Interaction, responder: Responder | None = None) -> DispatchResult:
        started = time.perf_counter()
        if interaction.kind in (InteractionKind.MEMBER_JOIN, InteractionKind.MESSAGE):
            result = self._observe_only(interaction)
        elif responder is None:
            raise ValueError(f"{interaction.kind} interactions need a responder")
        else:
            result = await self._run(interaction, responder)

        self._outcomes[str(result.outcome)] += 1
        await self._log_interaction(interaction, result, started)
        return result

    def statistics(self) -> dict[str, Any]:
        return {"outcomes": dict(self._outcomes), "expired": self._expired}

    # -------------------------------------------------------------------
    # Gateway events (no reply)
    # -------------------------------------------------------------------
    def _observe_only(self, interaction: Interaction) -> DispatchResult:
        rt = self.runtime
        events = rt.monitor.observe(interaction)
        if interaction.kind == InteractionKind.MEMBER_JOIN:
            age_hours = interaction.invoker.account_age_seconds(interaction.received_at) / 3600
            rt.audit.log(
                AuditEventType.MEMBER_JOINED,
                user_id=interaction.user_id,
                guild_id=interaction.guild_id,
                details={"account_age_hours": round(age_hours, 1)},
            )
        return DispatchResult(InteractionOutcome.OBSERVED, events=tuple(events))

    # -------------------------------------------------------------------
    # Commands & buttons
    # -------------------------------------------------------------------
    async def _run(self, interaction: Interaction, responder: Responder) -> DispatchResult:
        rt = self.runtime
        is_button = interaction.kind == InteractionKind.BUTTON
        user_id = interaction.user_id
        guild_id = interaction.guild_id
        events: list[SecurityEvent] = []

        # Step 2: rate limit
        verdict = rt.limiter.check_multiple(user_id, ["interaction" if is_button else "command", "global"])
        if not verdict.allowed:
            events += rt.monitor.observe(interaction, failed=True)
            events += rt.monitor.record_violation(user_id, guild_id, verdict.violations)
            rt.audit.log(
                AuditEventType.RATE_LIMIT_HIT,
                user_id=user_id,
                guild_id=guild_id,
                command_name=interaction.name,
                success=False,
                details={
                    "action": verdict.action,
                    "retry_after_ms": verdict.retry_after,
                    "violations": verdict.violations,
                },
            )
            logger.warning("Rate limited %s on %s (%d violations)", user_id, interaction.name, verdict.violations)
            ctx = HandlerContext(rt, interaction, responder)
            replied = await self._send(ctx, Reply(content=REPLY_RATE_LIMITED.format(seconds=verdict.retry_after_seconds)))
            return DispatchResult(InteractionOutcome.RATE_LIMITED, "rate_limited", tuple(events), replied)

        # Step 3: permissions
        guild_state = await rt.guilds.load(guild_id)
        ctx = HandlerContext(rt, interaction, responder, guild_state)
        if is_button:
            if not is_valid_custom_id(interaction.name):
                events.append(rt.monitor.report_suspicious(
                    interaction, "invalid_custom_id", custom_id=interaction.name[:120],
                ))
            action_name, button = self._match_button(interaction.name)
            policy = button.policy if button is not None else _UNROUTED_BUTTON
            sensitive = button.sensitive if button is not None else False
            command_name = action_name or "button"
        else:
            spec = self.registry.command(interaction.name)
            policy = spec.policy if spec is not None else None
            sensitive = spec.sensitive if spec is not None else False
            command_name = interaction.name

        permission = rt.permissions.check(interaction, command_name, guild_state, policy=policy)

        # Step 4: observation
        events += rt.monitor.observe(interaction, failed=not permission.allowed, sensitive=sensitive)

        if not permission.allowed:
            replied = await self._send(ctx, Reply(content=f"❌ {permission.reason}"))
            return DispatchResult(InteractionOutcome.DENIED, permission.reason, tuple(events), replied)

        # Steps 5-8
        if is_button:
            return await self._run_button(ctx, events)
        return await self._run_command(ctx, events)

    def _match_button(self, custom_id: str) -> tuple[str | None, Any]:
        """Longest registered action prefixing *custom_id*.

        Used for the permission policy only; the grammar is checked (and
        violations reported) before this runs.
        """
        for action in sorted(self.registry.button_arities, key=len, reverse=True):
            if custom_id == action or custom_id.startswith(action + "_"):
                return action, self.registry.button(action)
        return None, None

    async def _run_button(self, ctx: HandlerContext, events: list[SecurityEvent]) -> DispatchResult:
        rt = self.runtime
        interaction = ctx.interaction
        try:
            action_name, args = parse_custom_id(interaction.name, self.registry.button_arities)
        except CustomIdError as exc:
            message = REPLY_INVALID_BUTTON if exc.suspicious else REPLY_UNKNOWN_BUTTON
            rt.audit.log(
                AuditEventType.COMMAND_FAILED,
                user_id=interaction.user_id,
                guild_id=interaction.guild_id,
                command_name="button",
                success=False,
                details={"reason": str(exc), "custom_id": interaction.name[:120]},
            )
            replied = await self._send(ctx, Reply(content=message))
            return DispatchResult(InteractionOutcome.INVALID, str(exc), tuple(events), replied)

        button = self.registry.button(action_name)
        return await self._invoke(
            ctx, action_name, lambda: button.handler(ctx, args), button.defer, True, events,  # type: ignore[union-attr]
        )

    async def _run_command(self, ctx: HandlerContext, events: list[SecurityEvent]) -> DispatchResult:
        rt = self.runtime
        interaction = ctx.interaction
        spec = self.registry.command(interaction.name)
        if spec is None:
            raise LookupError(f"No handler registered for {interaction.name!r}")

        try:
            options = parse_options(spec.options, interaction.options, spec.options_type)
        except OptionValidationError as exc:
            rt.audit.log(
                AuditEventType.COMMAND_FAILED,
                user_id=interaction.user_id,
                guild_id=interaction.guild_id,
                command_name=spec.name,
                success=False,
                details={"reason": "invalid_options", "field": exc.field, "message": exc.message},
            )
            replied = await self._send(ctx, Reply(content=f"❌ {exc.message}"))
            return DispatchResult(InteractionOutcome.INVALID, exc.message, tuple(events), replied)

        return await self._invoke(
            ctx, spec.name, lambda: spec.handler(ctx, options), spec.defer, spec.defer_ephemeral, events,
        )

    async def _invoke(
        self,
        ctx: HandlerContext,
        command_name: str,
        call: Callable[[], Awaitable[Reply]],
        defer: bool,
        ephemeral: bool,
        events: list[SecurityEvent],
    ) -> DispatchResult:
        """Steps 7 and 8: run the handler, send its reply, audit the outcome."""
        rt = self.runtime
        interaction = ctx.interaction

        if defer:
            try:
                await ctx.responder.defer_reply(ephemeral=ephemeral)
            except InteractionExpired:
                self._mark_expired(ctx)

        failure: str | None = None
        outcome = InteractionOutcome.OK
        try:
            reply = await call()
        except HandlerError as exc:
            failure, outcome = exc.user_message, InteractionOutcome.ERROR
            reply = Reply(content=exc.user_message)
        except BackendError as exc:
            failure, outcome = f"backend_{exc.kind}", InteractionOutcome.ERROR
            logger.warning("Backend %s during %s: %s", exc.kind, command_name, exc)
            reply = Reply(content=REPLY_BACKEND_UNAVAILABLE)
        except Exception as exc:
            failure, outcome = type(exc).__name__, InteractionOutcome.ERROR
            logger.exception(
                "Handler %s failed", command_name,
                extra={"user_id": interaction.user_id, "guild_id": interaction.guild_id},
            )
            reply = Reply(content=REPLY_GENERIC_ERROR)

        replied = await self._send(ctx, reply)

        if failure is None:
            rt.audit.log(
                AuditEventType.COMMAND_EXECUTED,
                user_id=interaction.user_id,
                guild_id=interaction.guild_id,
                command_name=command_name,
                success=True,
                details={"expired": True} if ctx.expired else None,
            )
        else:
            rt.audit.log(
                AuditEventType.COMMAND_FAILED,
                user_id=interaction.user_id,
                guild_id=interaction.guild_id,
                command_name=command_name,
                success=False,
                details={"reason": failure},
            )
        return DispatchResult(outcome, failure, tuple(events), replied)

    # -------------------------------------------------------------------
    # Replies & logging
    # -------------------------------------------------------------------
    def _mark_expired(self, ctx: HandlerContext) -> None:
        if not ctx.expired:
            ctx.expired = True
            self._expired += 1
            logger.info("Interaction %s expired before it could be answered", ctx.interaction.id or ctx.interaction.name)

    async def _send(self, ctx: HandlerContext, reply: Reply) -> bool:
        """Deliver the single reply.  Returns False if the platform refused it."""
        if ctx.expired:
            return False
        try:
            if ctx.responder.responded:
                await ctx.responder.edit_reply(reply)
            else:
                await ctx.responder.reply(reply)
        except InteractionExpired:
            self._mark_expired(ctx)
            return False
        return True

    async def _log_interaction(self, interaction: Interaction, result: DispatchResult, started: float) -> None:
        engine = self.runtime.engine
        if engine is None:
            return
        try:
            await run_db(
                repo.record_interaction, engine,
                user_id=interaction.user_id,
                kind=str(interaction.kind),
                outcome=str(result.outcome),
                guild_id=interaction.guild_id,
                name=interaction.name,
                reason=(result.reason or "")[:200] or None,
                duration_ms=int((time.perf_counter() - started) * 1000),
            )
        except Exception:
            logger.exception("Interaction log write failed", extra={"user_id": interaction.user_id})
