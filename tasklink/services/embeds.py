"""
tasklink.services.embeds — Discord embed builders
===================================================

All embed construction lives here so handlers and the alert sender only
supply data.  Backend payloads are treated as loose dicts; missing fields
fall back to placeholders instead of raising.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

import discord

from tasklink.constants import BRAND_COLOR, SEVERITY_EMOJI, TASK_TYPE_LABELS
from tasklink.engine.audit import AuditEntry
from tasklink.engine.guild import GuildState, Lockdown
from tasklink.engine.security import SecurityEvent

_MAX_FIELDS = 25


def _brand() -> discord.Color:
    return discord.Color(BRAND_COLOR)


def _short(text: Any, limit: int = 200) -> str:
    value = str(text or "")
    return value if len(value) <= limit else value[: limit - 1] + "…"


def _ts(value: datetime | str | None) -> str:
    """Discord relative timestamp markup."""
    if value is None:
        return "—"
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return value
    return f"<t:{int(value.timestamp())}:R>"


# ---------------------------------------------------------------------------
# Community
# ---------------------------------------------------------------------------
def build_community_linked_embed(community: Mapping[str, Any], guild_name: str) -> discord.Embed:
    embed = discord.Embed(
        title="\U0001f517 Community Linked",
        description=f"**{guild_name}** is now connected to **{_short(community.get('name') or community.get('id'), 100)}**.",
        color=discord.Color.green(),
    )
    if community.get("description"):
        embed.add_field(name="About", value=_short(community["description"], 1000), inline=False)
    embed.set_footer(text=f"Community id: {community.get('id', 'unknown')}")
    return embed


def build_status_embed(
    state: GuildState | None,
    community: Mapping[str, Any] | None,
    user_link: Mapping[str, Any] | None,
    *,
    link_known: bool = True,
) -> discord.Embed:
    """Server link, lockdown and the invoker's account-link status."""
    embed = discord.Embed(title="\U0001f4e1 TaskLink Status", color=_brand())
    if state is None or not state.is_linked:
        embed.add_field(name="Server", value="Not linked to a community", inline=False)
    else:
        name = (community or {}).get("name") or state.community.community_id  # type: ignore[union-attr]
        embed.add_field(
            name="Server",
            value=f"Linked to **{_short(name, 100)}** {_ts(state.community.linked_at)}",  # type: ignore[union-attr]
            inline=False,
        )
    if state is not None and state.lockdown is not None:
        embed.add_field(name="Lockdown", value=f"Active until {_ts(state.lockdown.until)}", inline=False)
    if not link_known:
        account = "Unknown (backend unavailable)"
    elif user_link:
        account = f"Linked as **{_short(user_link.get('username') or user_link.get('user_id'), 80)}**"
    else:
        account = "Not linked. Sign in on the community dashboard to connect your account."
    embed.add_field(name="Your account", value=account, inline=False)
    return embed


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------
def build_task_embed(task: Mapping[str, Any], *, title_prefix: str = "\U0001f4cb") -> discord.Embed:
    task_type = str(task.get("type") or task.get("task_type") or "custom")
    embed = discord.Embed(
        title=f"{title_prefix} {_short(task.get('title') or 'Untitled task', 100)}",
        description=_short(task.get("description"), 2000) or None,
        color=_brand(),
        url=task.get("target_url") or None,
    )
    embed.add_field(name="Type", value=TASK_TYPE_LABELS.get(task_type, task_type), inline=True)
    embed.add_field(name="Points", value=str(task.get("points", 0)), inline=True)
    if task.get("expires_at"):
        embed.add_field(name="Ends", value=_ts(task["expires_at"]), inline=True)
    if task.get("status"):
        embed.add_field(name="Status", value=str(task["status"]).title(), inline=True)
    if task.get("completions") is not None:
        embed.add_field(name="Completions", value=str(task["completions"]), inline=True)
    return embed


def build_task_list_embed(
    tasks: list[Mapping[str, Any]],
    status: str,
    *,
    page: int = 0,
    per_page: int = 10,
) -> discord.Embed:
    start = page * per_page
    chunk = tasks[start:start + per_page]
    embed = discord.Embed(
        title=f"\U0001f4cb {status.title()} Tasks",
        color=_brand(),
    )
    if not chunk:
        embed.description = "No tasks to show."
        return embed
    lines = []
    for task in chunk:
        task_type = str(task.get("type") or "custom")
        lines.append(
            f"**{_short(task.get('title') or 'Untitled', 80)}** · "
            f"{TASK_TYPE_LABELS.get(task_type, task_type)} · {task.get('points', 0)} pts"
        )
    embed.description = "\n".join(lines)
    pages = max(1, -(-len(tasks) // per_page))
    embed.set_footer(text=f"Page {page + 1}/{pages} · {len(tasks)} task(s)")
    return embed


# ---------------------------------------------------------------------------
# Allowlists
# ---------------------------------------------------------------------------
def build_allowlist_embed(allowlist: Mapping[str, Any]) -> discord.Embed:
    embed = discord.Embed(
        title=f"\U0001f39f️ {_short(allowlist.get('name') or 'Allowlist', 100)}",
        description=_short(allowlist.get("description"), 2000) or None,
        color=_brand(),
    )
    if allowlist.get("spots") is not None:
        embed.add_field(name="Spots", value=str(allowlist["spots"]), inline=True)
    if allowlist.get("entries") is not None:
        embed.add_field(name="Entries", value=str(allowlist["entries"]), inline=True)
    if allowlist.get("closes_at"):
        embed.add_field(name="Closes", value=_ts(allowlist["closes_at"]), inline=True)
    return embed


def build_analytics_embed(analytics: Mapping[str, Any], period: str) -> discord.Embed:
    embed = discord.Embed(title=f"\U0001f4ca Allowlist Analytics ({period})", color=_brand())
    totals = analytics.get("totals") or {}
    for key in ("entries", "unique_users", "conversions", "conversion_rate"):
        if key in totals:
            embed.add_field(name=key.replace("_", " ").title(), value=str(totals[key]), inline=True)
    for row in list(analytics.get("allowlists") or [])[:10]:
        embed.add_field(
            name=_short(row.get("name") or row.get("id"), 100),
            value=f"{row.get('entries', 0)} entries",
            inline=False,
        )
    if not embed.fields:
        embed.description = "No analytics for this period yet."
    return embed


# ---------------------------------------------------------------------------
# Help
# ---------------------------------------------------------------------------
def build_help_embed(commands: Iterable[tuple[str, str, str]], topic: str | None = None) -> discord.Embed:
    """*commands* is ``(name, description, capability)`` triples."""
    embed = discord.Embed(
        title="❓ TaskLink Help" + (f": {topic}" if topic else ""),
        color=_brand(),
    )
    for name, description, capability in commands:
        suffix = "" if capability in ("public", "member") else f" · *{capability}*"
        embed.add_field(name=f"/{name}", value=f"{description}{suffix}", inline=False)
    return embed


# ---------------------------------------------------------------------------
# Security
# ---------------------------------------------------------------------------
def build_security_events_embed(events: list[SecurityEvent], title: str = "\U0001f6a8 Security Alerts") -> discord.Embed:
    worst = max((e.severity.rank for e in events), default=0)
    color = discord.Color.red() if worst >= 2 else discord.Color.orange() if worst == 1 else _brand()
    embed = discord.Embed(title=title, color=color)
    if not events:
        embed.description = "No security events recorded."
        return embed
    for event in events[:_MAX_FIELDS]:
        emoji = SEVERITY_EMOJI.get(str(event.severity), "")
        who = f"<@{event.user_id}>" if event.user_id else "guild-wide"
        detail = ", ".join(f"{k}={v}" for k, v in list(event.details.items())[:4])
        embed.add_field(
            name=f"{emoji} {event.type} ({event.severity})",
            value=_short(f"{who} · {_ts(event.timestamp)}\n{detail}", 1000),
            inline=False,
        )
    if len(events) > _MAX_FIELDS:
        embed.set_footer(text=f"{len(events) - _MAX_FIELDS} more not shown")
    return embed


def build_security_report_embed(report: Mapping[str, Any]) -> discord.Embed:
    embed = discord.Embed(
        title=f"\U0001f6e1️ Security Report (last {report.get('period_hours', 1):g}h)",
        description=f"**{report.get('total', 0)}** event(s)",
        color=_brand(),
    )
    for severity, count in sorted((report.get("by_severity") or {}).items()):
        embed.add_field(name=f"{SEVERITY_EMOJI.get(severity, '')} {severity}", value=str(count), inline=True)
    by_type = report.get("by_type") or {}
    if by_type:
        embed.add_field(
            name="By type",
            value="\n".join(f"{name}: {count}" for name, count in sorted(by_type.items())),
            inline=False,
        )
    return embed


def build_stats_embed(sections: Mapping[str, Mapping[str, Any]]) -> discord.Embed:
    embed = discord.Embed(title="\U0001f4c8 Protection Statistics", color=_brand())
    for section, values in sections.items():
        lines = [f"{k}: {v}" for k, v in values.items() if not isinstance(v, dict)]
        embed.add_field(name=section, value=_short("\n".join(lines) or "—", 1000), inline=False)
    return embed


def build_audit_embed(entries: list[AuditEntry]) -> discord.Embed:
    embed = discord.Embed(title="\U0001f4dc Recent Audit Entries", color=_brand())
    if not entries:
        embed.description = "Nothing recorded yet."
        return embed
    lines = []
    for entry in entries:
        mark = "" if entry.success is None else (" ✅" if entry.success else " ❌")
        who = f" <@{entry.user_id}>" if entry.user_id else ""
        cmd = f" /{entry.command_name}" if entry.command_name else ""
        lines.append(f"{_ts(entry.timestamp)} `{entry.type}`{cmd}{who}{mark}")
    embed.description = _short("\n".join(lines), 4000)
    return embed


def build_policies_embed(policies: Mapping[str, Any]) -> discord.Embed:
    embed = discord.Embed(title="\U0001f510 Command Permissions", color=_brand())
    for name, policy in sorted(policies.items()):
        flags = [str(policy.capability)]
        if policy.owner_only:
            flags.append("owner only")
        if policy.requires_link:
            flags.append("needs link")
        embed.add_field(name=f"/{name}", value=" · ".join(flags), inline=True)
    return embed


def build_lockdown_embed(lockdown: Lockdown) -> discord.Embed:
    embed = discord.Embed(
        title="\U0001f512 Emergency Lockdown",
        description=f"All commands are blocked until {_ts(lockdown.until)}.",
        color=discord.Color.red(),
    )
    embed.add_field(name="Reason", value=_short(lockdown.reason, 1000), inline=False)
    embed.set_footer(text=f"Triggered by {lockdown.triggered_by}")
    return embed
