"""
tasklink.engine.interactions — Interaction Record & Responder Capability
==========================================================================

The core never touches discord.py objects directly.  The bot adapter turns
every gateway event into an :class:`Interaction` (one dispatch, never
persisted) and hands the dispatcher a :class:`Responder` for replying.

Replies are plain :class:`Reply` values; the adapter decides how to render
them (content, embed, and a row of buttons identified by custom id).
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol


class InteractionKind(enum.StrEnum):
    """Inbound event classes handled by the dispatcher."""
    SLASH_COMMAND = "slash_command"
    BUTTON = "button"
    MEMBER_JOIN = "member_join"
    MESSAGE = "message"


class InteractionExpired(Exception):
    """The platform no longer accepts a reply for this interaction."""


@dataclass(frozen=True, slots=True)
class Invoker:
    """Identity of whoever triggered the interaction."""

    user_id: str
    created_at: datetime
    bot: bool = False
    display_name: str = ""
    role_ids: tuple[str, ...] = ()
    is_member: bool = False   # invoked inside a guild, as a member of it
    is_admin: bool = False    # Administrator / Manage Guild / configured admin role
    is_owner: bool = False    # guild owner

    def account_age_seconds(self, now: datetime) -> float:
        return (now - self.created_at).total_seconds()


@dataclass(frozen=True, slots=True)
class Interaction:
    """One inbound event, normalised.

    ``name`` is the command name for slash commands and the custom id for
    buttons.  ``options`` is the raw option bag as received; handlers only
    ever see the parsed, typed form.
    """

    kind: InteractionKind
    invoker: Invoker
    guild_id: str | None = None
    channel_id: str | None = None
    name: str = ""
    options: dict[str, Any] = field(default_factory=dict)
    content: str | None = None
    source_address: str | None = None
    id: str = ""
    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def user_id(self) -> str:
        return self.invoker.user_id


@dataclass(frozen=True, slots=True)
class ButtonSpec:
    """A button attached to a reply."""

    custom_id: str
    label: str
    style: str = "secondary"   # primary | secondary | success | danger
    emoji: str | None = None


@dataclass(frozen=True, slots=True)
class Reply:
    """What a handler wants shown to the user."""

    content: str | None = None
    embed: Any = None
    ephemeral: bool = True
    buttons: tuple[ButtonSpec, ...] = ()


class Responder(Protocol):
    """Capabilities the dispatcher needs from the chat platform."""

    @property
    def responded(self) -> bool: ...

    async def reply(self, reply: Reply) -> None: ...

    async def edit_reply(self, reply: Reply) -> None: ...

    async def defer_reply(self, *, ephemeral: bool = True) -> None: ...

    async def get_user(self, user_id: str) -> Any: ...

    async def get_guild_member(self, user_id: str) -> Any: ...

    async def get_guild_owner(self) -> Any: ...
