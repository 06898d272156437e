"""
tasklink.bot.registry — Typed Command & Button Registry
=========================================================

Every slash command is a :class:`CommandSpec` value (name, policy, option
schema, parsed-options type, handler) and every button family is a
:class:`ButtonAction` (custom-id action prefix, policy, argument count,
handler).  The dispatcher indexes a fixed list of both; nothing is
discovered at runtime.

Handlers receive a :class:`HandlerContext` plus their parsed options (or
custom-id arguments) and return a :class:`~tasklink.engine.interactions.Reply`.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from tasklink.constants import CUSTOM_ID_SEGMENT_MAX, TASK_TYPE_LABELS
from tasklink.engine.interactions import Interaction, Reply, Responder
from tasklink.engine.permissions import CommandPolicy
from tasklink.engine.validation import OptionSpec

if TYPE_CHECKING:
    from tasklink.engine.guild import GuildState
    from tasklink.runtime import Runtime

_HEX32 = re.compile(r"^[0-9a-f]{32}$")


class HandlerError(Exception):
    """Expected handler failure.  ``user_message`` is shown as-is."""

    def __init__(self, user_message: str) -> None:
        super().__init__(user_message)
        self.user_message = user_message


@dataclass(slots=True)
class HandlerContext:
    """Everything a handler may touch for one interaction."""

    runtime: Runtime
    interaction: Interaction
    responder: Responder
    guild_state: GuildState | None = None
    # Set once the platform has refused a reply; handlers skip storage commits.
    expired: bool = False
    audit_details: dict[str, Any] = field(default_factory=dict)

    @property
    def user_id(self) -> str:
        return self.interaction.user_id

    @property
    def guild_id(self) -> str | None:
        return self.interaction.guild_id

    @property
    def community_id(self) -> str | None:
        state = self.guild_state
        if state is None or state.community is None:
            return None
        return state.community.community_id


CommandHandler = Callable[[HandlerContext, Any], Awaitable[Reply]]
ButtonHandler = Callable[[HandlerContext, tuple[str, ...]], Awaitable[Reply]]


@dataclass(frozen=True, slots=True)
class CommandSpec:
    name: str
    description: str
    policy: CommandPolicy
    options: tuple[OptionSpec, ...]
    options_type: type
    handler: CommandHandler
    defer: bool = False
    # Ephemerality of the deferred reply; public confirmations defer publicly
    defer_ephemeral: bool = True
    # Sensitive commands count as privileged activity for new-account detection
    sensitive: bool = False

    def to_payload(self) -> dict[str, Any]:
        """Discord application-command JSON (``CHAT_INPUT``)."""
        return {
            "name": self.name,
            "description": self.description,
            "type": 1,
            "dm_permission": False,
            "options": [opt.to_payload(TASK_TYPE_LABELS) for opt in self.options],
        }


@dataclass(frozen=True, slots=True)
class ButtonAction:
    action: str
    policy: CommandPolicy
    arity: int
    handler: ButtonHandler
    sensitive: bool = False
    defer: bool = False


class CommandRegistry:
    """Name → :class:`CommandSpec` and action → :class:`ButtonAction`."""

    def __init__(
        self,
        commands: Iterable[CommandSpec] = (),
        buttons: Iterable[ButtonAction] = (),
    ) -> None:
        self._commands: dict[str, CommandSpec] = {}
        self._buttons: dict[str, ButtonAction] = {}
        for spec in commands:
            self.add_command(spec)
        for action in buttons:
            self.add_button(action)

    def add_command(self, spec: CommandSpec) -> None:
        if spec.name in self._commands:
            raise ValueError(f"Duplicate command {spec.name!r}")
        self._commands[spec.name] = spec

    def add_button(self, action: ButtonAction) -> None:
        if action.action in self._buttons:
            raise ValueError(f"Duplicate button action {action.action!r}")
        self._buttons[action.action] = action

    def command(self, name: str) -> CommandSpec | None:
        return self._commands.get(name)

    def button(self, action: str) -> ButtonAction | None:
        return self._buttons.get(action)

    @property
    def commands(self) -> list[CommandSpec]:
        return list(self._commands.values())

    @property
    def buttons(self) -> list[ButtonAction]:
        return list(self._buttons.values())

    @property
    def button_arities(self) -> dict[str, int]:
        return {name: action.arity for name, action in self._buttons.items()}

    def payloads(self) -> list[dict[str, Any]]:
        return [spec.to_payload() for spec in self._commands.values()]


def default_registry() -> CommandRegistry:
    """Registry holding every shipped command and button."""
    from tasklink.bot.handlers import BUTTONS, COMMANDS

    return CommandRegistry(COMMANDS, BUTTONS)


# ---------------------------------------------------------------------------
# Custom-id helpers
# ---------------------------------------------------------------------------
_ESCAPES = {"z": "z", "-": "d", "_": "u", ".": "p", ":": "c"}
_UNESCAPES = {code: char for char, code in _ESCAPES.items()}


def _is_canonical_uuid(text: str) -> bool:
    try:
        return str(uuid.UUID(text)) == text
    except ValueError:
        return False


def compact_id(value: object) -> str:
    """Encode a backend id as one custom-id segment (``[A-Za-z0-9]{1,64}``).

    Canonical UUIDs become their 32 hex digits.  Anything else is escaped
    with ``z``: ``zz``, ``zd``, ``zu``, ``zp`` and ``zc`` stand for ``z``,
    ``-``, ``_``, ``.`` and ``:``, and a raw id that already is 32 hex
    digits gets a ``zh`` prefix.  :func:`expand_id` inverts it exactly.

    Raises
    ------
    ValueError
        If the id is empty, holds other characters, or encodes to more
        than 64 characters.
    """
    text = str(value)
    if _is_canonical_uuid(text):
        encoded = text.replace("-", "")
    elif _HEX32.match(text):
        encoded = "zh" + text
    else:
        parts = []
        for char in text:
            if char in _ESCAPES:
                parts.append("z" + _ESCAPES[char])
            elif char.isascii() and char.isalnum():
                parts.append(char)
            else:
                raise ValueError(f"Id {text!r} cannot be carried in a custom id")
        encoded = "".join(parts)
    if not encoded or len(encoded) > CUSTOM_ID_SEGMENT_MAX:
        raise ValueError(f"Id {text!r} does not fit in one custom-id segment")
    return encoded


def expand_id(value: str) -> str:
    """Inverse of :func:`compact_id`."""
    if _HEX32.match(value):
        return str(uuid.UUID(value))
    if value.startswith("zh") and _HEX32.match(value[2:]):
        return value[2:]
    out = []
    i = 0
    while i < len(value):
        if value[i] == "z" and i + 1 < len(value) and value[i + 1] in _UNESCAPES:
            out.append(_UNESCAPES[value[i + 1]])
            i += 2
        else:
            out.append(value[i])
            i += 1
    return "".join(out)


def custom_id(action: str, *args: object) -> str:
    """``action_arg1_arg2…`` with every argument passed through :func:`compact_id`."""
    return "_".join([action, *(compact_id(a) for a in args)])
