"""
tasklink.engine.guild — Per-Guild State
========================================

``GuildState`` is what the permission evaluator needs to know about a guild:
whether it is linked to a backend community, whether it is locked down,
and where security alerts go.  It is persisted by the storage layer and
cached for up to an hour; see :mod:`tasklink.services.guild_service`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


def _parse_dt(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass(frozen=True, slots=True)
class CommunityMapping:
    community_id: str
    linked_by: str
    linked_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "community_id": self.community_id,
            "linked_by": self.linked_by,
            "linked_at": self.linked_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CommunityMapping:
        return cls(
            community_id=str(data["community_id"]),
            linked_by=str(data["linked_by"]),
            linked_at=_parse_dt(data["linked_at"]),
        )


@dataclass(frozen=True, slots=True)
class Lockdown:
    reason: str
    until: datetime
    triggered_by: str = "system"

    def active(self, now: datetime) -> bool:
        """A lockdown denies strictly before ``until``."""
        return now < self.until

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "until": self.until.isoformat(),
            "triggered_by": self.triggered_by,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Lockdown:
        return cls(
            reason=str(data["reason"]),
            until=_parse_dt(data["until"]),
            triggered_by=str(data.get("triggered_by") or "system"),
        )


@dataclass(frozen=True, slots=True)
class GuildState:
    guild_id: str
    community: CommunityMapping | None = None
    lockdown: Lockdown | None = None
    alert_channel_id: str | None = None

    @property
    def is_linked(self) -> bool:
        return self.community is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "guild_id": self.guild_id,
            "community": self.community.to_dict() if self.community else None,
            "lockdown": self.lockdown.to_dict() if self.lockdown else None,
            "alert_channel_id": self.alert_channel_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GuildState:
        return cls(
            guild_id=str(data["guild_id"]),
            community=CommunityMapping.from_dict(data["community"]) if data.get("community") else None,
            lockdown=Lockdown.from_dict(data["lockdown"]) if data.get("lockdown") else None,
            alert_channel_id=data.get("alert_channel_id"),
        )
