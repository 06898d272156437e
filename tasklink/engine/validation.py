"""
tasklink.engine.validation — Option Schemas & Custom-Id Grammar
=================================================================

Inbound option bags are parsed against the command's declared
:class:`OptionSpec` list and turned into a frozen, per-command dataclass
before a handler ever sees them.  Unknown fields are rejected.

Button custom ids must match ``^[a-z_]+(?:_[A-Za-z0-9]{1,64}){0,4}$`` and
stay within 100 characters.  Anything else (whitespace, shell
metacharacters, oversize) raises :class:`CustomIdError` with
``suspicious=True`` so the dispatcher can report it.
"""

from __future__ import annotations

import enum
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

from tasklink.constants import (
    ANALYTICS_PERIODS,
    CUSTOM_ID_MAX_LENGTH,
    CUSTOM_ID_PATTERN,
    RESOURCE_ID_PATTERN,
    SECURITY_ACTIONS,
    TASK_STATUSES,
    TASK_TYPES,
)

T = TypeVar("T")


class OptionValidationError(ValueError):
    """An option failed its schema.  ``message`` is safe to show the user."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field
        self.message = message


class CustomIdError(ValueError):
    def __init__(self, message: str, *, suspicious: bool) -> None:
        super().__init__(message)
        self.suspicious = suspicious


class OptionKind(enum.Enum):
    STRING = 3
    INTEGER = 4

    @property
    def discord_type(self) -> int:
        return self.value


@dataclass(frozen=True, slots=True)
class OptionSpec:
    """One declared option; drives both validation and registration."""

    name: str
    description: str
    kind: OptionKind = OptionKind.STRING
    required: bool = False
    choices: tuple[str, ...] = ()
    min_length: int | None = None
    max_length: int | None = None
    min_value: int | None = None
    max_value: int | None = None
    default: Any = None
    label: str | None = None
    pattern: re.Pattern[str] | None = None
    pattern_hint: str = "contains characters that are not allowed"

    @property
    def display(self) -> str:
        return self.label or self.name.replace("_", " ")

    def to_payload(self, choice_labels: Mapping[str, str] | None = None) -> dict[str, Any]:
        """Discord application-command option JSON."""
        payload: dict[str, Any] = {
            "type": self.kind.discord_type,
            "name": self.name,
            "description": self.description,
            "required": self.required,
        }
        if self.choices:
            labels = choice_labels or {}
            payload["choices"] = [{"name": labels.get(c, c), "value": c} for c in self.choices]
        if self.min_length is not None:
            payload["min_length"] = self.min_length
        if self.max_length is not None:
            payload["max_length"] = self.max_length
        if self.min_value is not None:
            payload["min_value"] = self.min_value
        if self.max_value is not None:
            payload["max_value"] = self.max_value
        return payload


# ---------------------------------------------------------------------------
# Parsed option variants (one per command)
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class NoOptions:
    pass


@dataclass(frozen=True, slots=True)
class LinkCommunityOptions:
    community_id: str


@dataclass(frozen=True, slots=True)
class CreateTaskOptions:
    task_type: str
    title: str
    description: str
    points: int = 0
    duration_hours: int = 168
    target_url: str | None = None


@dataclass(frozen=True, slots=True)
class ListTasksOptions:
    status: str = "active"


@dataclass(frozen=True, slots=True)
class ConnectAllowlistOptions:
    allowlist_id: str


@dataclass(frozen=True, slots=True)
class AllowlistAnalyticsOptions:
    allowlist_id: str | None = None
    period: str = "7d"


@dataclass(frozen=True, slots=True)
class HelpOptions:
    command: str | None = None


@dataclass(frozen=True, slots=True)
class SecurityOptions:
    action: str
    duration_minutes: int | None = None
    reason: str | None = None


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------
_ID_HINT = "use only letters, digits, '.', '_', ':' or '-'"

LINK_COMMUNITY_OPTIONS: tuple[OptionSpec, ...] = (
    OptionSpec("community_id", "Community id from the dashboard", required=True, min_length=1, max_length=50,
               label="community id", pattern=RESOURCE_ID_PATTERN, pattern_hint=_ID_HINT),
)

CREATE_TASK_OPTIONS: tuple[OptionSpec, ...] = (
    OptionSpec("task_type", "Kind of social task", required=True, choices=TASK_TYPES, label="task type"),
    OptionSpec("title", "Short task title", required=True, min_length=1, max_length=100),
    OptionSpec("description", "What members need to do", required=True, min_length=1, max_length=2000),
    OptionSpec("points", "Points awarded on completion", kind=OptionKind.INTEGER, min_value=0,
               max_value=1_000_000, default=0),
    OptionSpec("duration_hours", "How long the task stays open", kind=OptionKind.INTEGER, min_value=1,
               max_value=8760, default=168, label="duration"),
    OptionSpec("target_url", "Link members should visit", max_length=500, label="target URL"),
)

LIST_TASKS_OPTIONS: tuple[OptionSpec, ...] = (
    OptionSpec("status", "Filter by status", choices=TASK_STATUSES, default="active"),
)

CONNECT_ALLOWLIST_OPTIONS: tuple[OptionSpec, ...] = (
    OptionSpec("allowlist_id", "Allowlist id from the dashboard", required=True, min_length=1, max_length=50,
               label="allowlist id", pattern=RESOURCE_ID_PATTERN, pattern_hint=_ID_HINT),
)

ALLOWLIST_ANALYTICS_OPTIONS: tuple[OptionSpec, ...] = (
    OptionSpec("allowlist_id", "Limit to one allowlist", min_length=1, max_length=50, label="allowlist id",
               pattern=RESOURCE_ID_PATTERN, pattern_hint=_ID_HINT),
    OptionSpec("period", "Reporting period", choices=ANALYTICS_PERIODS, default="7d"),
)

HELP_OPTIONS: tuple[OptionSpec, ...] = (
    OptionSpec("command", "Command to explain", min_length=1, max_length=50),
)

SECURITY_OPTIONS: tuple[OptionSpec, ...] = (
    OptionSpec("action", "What to do", required=True, choices=SECURITY_ACTIONS),
    OptionSpec("duration_minutes", "Lockdown duration", kind=OptionKind.INTEGER, min_value=1, max_value=1440,
               label="duration"),
    OptionSpec("reason", "Why (shown in the audit log)", min_length=1, max_length=200),
)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------
def _check_string(spec: OptionSpec, value: Any) -> str:
    if not isinstance(value, str):
        raise OptionValidationError(spec.name, f"Invalid {spec.display}: expected text")
    value = value.strip()
    if spec.min_length is not None and len(value) < spec.min_length:
        raise OptionValidationError(
            spec.name, f"Invalid {spec.display}: must be at least {spec.min_length} characters",
        )
    if spec.max_length is not None and len(value) > spec.max_length:
        raise OptionValidationError(
            spec.name, f"Invalid {spec.display}: must be at most {spec.max_length} characters",
        )
    if spec.choices and value not in spec.choices:
        raise OptionValidationError(
            spec.name, f"Invalid {spec.display}: choose one of {', '.join(spec.choices)}",
        )
    if spec.pattern is not None and spec.pattern.fullmatch(value) is None:
        raise OptionValidationError(spec.name, f"Invalid {spec.display}: {spec.pattern_hint}")
    return value


def _check_integer(spec: OptionSpec, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise OptionValidationError(spec.name, f"Invalid {spec.display}: expected a whole number")
    if spec.min_value is not None and value < spec.min_value:
        raise OptionValidationError(spec.name, f"Invalid {spec.display}: must be at least {spec.min_value}")
    if spec.max_value is not None and value > spec.max_value:
        raise OptionValidationError(spec.name, f"Invalid {spec.display}: must be at most {spec.max_value}")
    return value


def parse_options(specs: Sequence[OptionSpec], raw: Mapping[str, Any], options_type: type[T]) -> T:
    """Validate *raw* against *specs* and build *options_type*.

    Raises
    ------
    OptionValidationError
        On the first unknown, missing, or out-of-range option.
    """
    by_name = {spec.name: spec for spec in specs}
    for name in raw:
        if name not in by_name:
            raise OptionValidationError(name, f"Invalid option: {name}")

    values: dict[str, Any] = {}
    for spec in specs:
        value = raw.get(spec.name)
        if value is None:
            if spec.required:
                raise OptionValidationError(spec.name, f"Invalid {spec.display}: this option is required")
            if spec.default is not None:
                values[spec.name] = spec.default
            continue
        if spec.kind is OptionKind.INTEGER:
            values[spec.name] = _check_integer(spec, value)
        else:
            values[spec.name] = _check_string(spec, value)
    return options_type(**values)


def is_valid_custom_id(custom_id: object) -> bool:
    """True when *custom_id* fits the button grammar and length limit."""
    return (
        isinstance(custom_id, str)
        and len(custom_id) <= CUSTOM_ID_MAX_LENGTH
        and CUSTOM_ID_PATTERN.fullmatch(custom_id) is not None
    )


def parse_custom_id(custom_id: str, arities: Mapping[str, int]) -> tuple[str, tuple[str, ...]]:
    """Split *custom_id* into ``(action, args)``.

    *arities* maps each known action to its exact argument count.  The
    longest action that prefixes the id wins, so ``view_task_x`` resolves
    to ``view_task`` rather than a shorter action.
    """
    if not is_valid_custom_id(custom_id):
        raise CustomIdError("Custom id does not match the button grammar", suspicious=True)

    for action in sorted(arities, key=len, reverse=True):
        if custom_id == action:
            args: tuple[str, ...] = ()
        elif custom_id.startswith(action + "_"):
            args = tuple(custom_id[len(action) + 1:].split("_"))
        else:
            continue
        if len(args) != arities[action]:
            raise CustomIdError(
                f"Button {action!r} expects {arities[action]} argument(s), got {len(args)}",
                suspicious=False,
            )
        return action, args

    raise CustomIdError(f"Unknown button action in {custom_id!r}", suspicious=False)
