"""
tasklink.engine.permissions — Permission Evaluator
====================================================

Combines a static per-command policy with the dynamic state of the guild.
Evaluation stops at the first deny, in this order:

1. guild lockdown
2. bot invoker
3. account age (< 7 days)
4. active restriction from the Security Monitor
5. required capability (public / member / admin / owner)
6. owner-only community linking
7. community link precondition

``check`` is CPU-only.  The dispatcher resolves :class:`GuildState` before
calling it, so nothing here suspends.
"""

from __future__ import annotations

import enum
import logging
from collections import Counter
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from threading import Lock
from typing import TYPE_CHECKING, Any

from tasklink.constants import (
    CMD_ALLOWLIST_ANALYTICS,
    CMD_CONNECT_ALLOWLIST,
    CMD_CREATE_TASK,
    CMD_HELP,
    CMD_LINK_COMMUNITY,
    CMD_LIST_TASKS,
    CMD_SECURITY,
    CMD_STATUS,
    REASON_ACCOUNT_AGE,
    REASON_BOT,
    REASON_LOCKDOWN,
    REASON_NOT_MEMBER,
    REASON_OWNER_LINK_ONLY,
    REASON_REQUIRES_ADMIN,
    REASON_REQUIRES_LINK,
    REASON_REQUIRES_OWNER,
    REASON_RESTRICTED,
    REASON_UNKNOWN_COMMAND,
)
from tasklink.engine.audit import AuditEventType
from tasklink.engine.guild import GuildState
from tasklink.engine.interactions import Interaction, Invoker

if TYPE_CHECKING:
    from tasklink.engine.audit import AuditLog
    from tasklink.engine.security import SecurityMonitor

logger = logging.getLogger(__name__)

MIN_ACCOUNT_AGE = timedelta(days=7)


class Capability(enum.StrEnum):
    PUBLIC = "public"
    MEMBER = "member"
    ADMIN = "admin"
    OWNER = "owner"


_CAPABILITY_REASON: dict[Capability, str] = {
    Capability.MEMBER: REASON_NOT_MEMBER,
    Capability.ADMIN: REASON_REQUIRES_ADMIN,
    Capability.OWNER: REASON_REQUIRES_OWNER,
}


@dataclass(frozen=True, slots=True)
class CommandPolicy:
    """Static requirements of one command or button action."""

    capability: Capability
    requires_link: bool = False
    owner_only: bool = False


DEFAULT_POLICIES: dict[str, CommandPolicy] = {
    CMD_LINK_COMMUNITY: CommandPolicy(Capability.MEMBER, owner_only=True),
    CMD_CREATE_TASK: CommandPolicy(Capability.MEMBER, requires_link=True),
    CMD_LIST_TASKS: CommandPolicy(Capability.MEMBER, requires_link=True),
    CMD_CONNECT_ALLOWLIST: CommandPolicy(Capability.ADMIN, requires_link=True),
    CMD_ALLOWLIST_ANALYTICS: CommandPolicy(Capability.ADMIN, requires_link=True),
    CMD_STATUS: CommandPolicy(Capability.MEMBER),
    CMD_HELP: CommandPolicy(Capability.PUBLIC),
    CMD_SECURITY: CommandPolicy(Capability.ADMIN),
}

# Button actions (the custom-id prefix before any arguments)
BUTTON_POLICIES: dict[str, CommandPolicy] = {
    "complete_task": CommandPolicy(Capability.MEMBER, requires_link=True),
    "view_task": CommandPolicy(Capability.MEMBER, requires_link=True),
    "tasks_page": CommandPolicy(Capability.MEMBER, requires_link=True),
    "enter_allowlist": CommandPolicy(Capability.MEMBER, requires_link=True),
    "view_allowlist": CommandPolicy(Capability.MEMBER, requires_link=True),
    "refresh_status": CommandPolicy(Capability.MEMBER),
    "unlink_community": CommandPolicy(Capability.MEMBER, requires_link=True, owner_only=True),
    "relink_community": CommandPolicy(Capability.MEMBER, owner_only=True),
    "test_connection": CommandPolicy(Capability.ADMIN, requires_link=True),
    "help": CommandPolicy(Capability.PUBLIC),
}


@dataclass(frozen=True, slots=True)
class PermissionVerdict:
    allowed: bool
    reason: str | None = None
    step: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"allowed": self.allowed, "reason": self.reason, "step": self.step}


_ALLOW = PermissionVerdict(True)


def capabilities_of(invoker: Invoker) -> frozenset[Capability]:
    """Capability set held by *invoker* in the guild the event came from."""
    caps = {Capability.PUBLIC}
    if invoker.bot:
        return frozenset(caps)
    if invoker.is_member:
        caps.add(Capability.MEMBER)
    if invoker.is_admin or invoker.is_owner:
        caps.add(Capability.ADMIN)
    if invoker.is_owner:
        caps.add(Capability.OWNER)
    return frozenset(caps)


class PermissionEvaluator:
    """Static policy × dynamic guild state → :class:`PermissionVerdict`.

    Every decision is written to the audit log (``permission_granted`` or
    ``permission_denied`` with the exact reason string).
    """

    def __init__(
        self,
        policies: Mapping[str, CommandPolicy] | None = None,
        *,
        monitor: SecurityMonitor | None = None,
        audit: AuditLog | None = None,
        min_account_age: timedelta = MIN_ACCOUNT_AGE,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._policies = dict(DEFAULT_POLICIES if policies is None else policies)
        self._monitor = monitor
        self._audit = audit
        self.min_account_age = min_account_age
        self._clock = clock
        self._lock = Lock()
        self._granted = 0
        self._denied: Counter[str] = Counter()

    def policy_for(self, command_name: str) -> CommandPolicy | None:
        return self._policies.get(command_name)

    @property
    def policies(self) -> dict[str, CommandPolicy]:
        return dict(self._policies)

    # -------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------
    def _evaluate(
        self,
        interaction: Interaction,
        policy: CommandPolicy | None,
        guild_state: GuildState | None,
        now: datetime,
    ) -> PermissionVerdict:
        invoker = interaction.invoker

        lockdown = guild_state.lockdown if guild_state is not None else None
        if (lockdown is not None and lockdown.active(now)) or (
            self._monitor is not None and self._monitor.is_guild_locked(interaction.guild_id)
        ):
            return PermissionVerdict(False, REASON_LOCKDOWN, "lockdown")

        if invoker.bot:
            return PermissionVerdict(False, REASON_BOT, "bot")

        if now - invoker.created_at < self.min_account_age:
            return PermissionVerdict(False, REASON_ACCOUNT_AGE, "account_age")

        if self._monitor is not None and self._monitor.is_restricted(invoker.user_id) is not None:
            return PermissionVerdict(False, REASON_RESTRICTED, "restriction")

        if policy is None:
            return PermissionVerdict(False, REASON_UNKNOWN_COMMAND, "capability")

        if policy.capability not in capabilities_of(invoker):
            return PermissionVerdict(False, _CAPABILITY_REASON[policy.capability], "capability")

        if policy.owner_only and not invoker.is_owner:
            return PermissionVerdict(False, REASON_OWNER_LINK_ONLY, "owner_only")

        if policy.requires_link and (guild_state is None or not guild_state.is_linked):
            return PermissionVerdict(False, REASON_REQUIRES_LINK, "link")

        return _ALLOW

    def check(
        self,
        interaction: Interaction,
        command_name: str,
        guild_state: GuildState | None = None,
        *,
        policy: CommandPolicy | None = None,
    ) -> PermissionVerdict:
        """Evaluate *command_name* for *interaction* and audit the decision.

        *policy* overrides the table lookup (button actions pass theirs).
        """
        if policy is None:
            policy = self.policy_for(command_name)
        verdict = self._evaluate(interaction, policy, guild_state, self._clock())

        with self._lock:
            if verdict.allowed:
                self._granted += 1
            else:
                self._denied[verdict.reason or ""] += 1

        if not verdict.allowed:
            logger.debug(
                "Permission denied for %s on %s: %s",
                interaction.user_id, command_name, verdict.reason,
            )
        if self._audit is not None:
            self._audit.log(
                AuditEventType.PERMISSION_GRANTED if verdict.allowed else AuditEventType.PERMISSION_DENIED,
                user_id=interaction.user_id,
                guild_id=interaction.guild_id,
                command_name=command_name,
                success=verdict.allowed,
                details={"reason": verdict.reason, "step": verdict.step} if not verdict.allowed else None,
            )
        return verdict

    def statistics(self) -> dict[str, Any]:
        with self._lock:
            denied_total = sum(self._denied.values())
            return {
                "granted": self._granted,
                "denied": denied_total,
                "denied_by_reason": dict(self._denied),
            }
