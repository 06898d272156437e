"""
tasklink.constants — Shared Constants
=======================================

Single source of truth for command names, option vocabularies, user-facing
denial strings and presentation emoji.  Import from here instead of
duplicating in handlers, the dispatcher, and tests.
"""

from __future__ import annotations

import re

# ---------------------------------------------------------------------------
# Command names (registered slash commands)
# ---------------------------------------------------------------------------
CMD_LINK_COMMUNITY = "link-community"
CMD_CREATE_TASK = "create-task"
CMD_LIST_TASKS = "list-tasks"
CMD_CONNECT_ALLOWLIST = "connect-allowlist"
CMD_ALLOWLIST_ANALYTICS = "allowlist-analytics"
CMD_STATUS = "status"
CMD_HELP = "help"
CMD_SECURITY = "security"

# ---------------------------------------------------------------------------
# Option vocabularies
# ---------------------------------------------------------------------------
TASK_TYPES: tuple[str, ...] = ("twitter_follow", "discord_join", "telegram_join", "custom")
TASK_STATUSES: tuple[str, ...] = ("active", "completed", "expired", "all")
ANALYTICS_PERIODS: tuple[str, ...] = ("7d", "30d", "all")
SECURITY_ACTIONS: tuple[str, ...] = (
    "report", "stats", "alerts", "alert-channel", "audit", "permissions", "lockdown",
)

TASK_TYPE_LABELS: dict[str, str] = {
    "twitter_follow": "Twitter/X Follow",
    "discord_join": "Discord Join",
    "telegram_join": "Telegram Join",
    "custom": "Custom Task",
}

# ---------------------------------------------------------------------------
# Custom-id grammar for buttons
# ---------------------------------------------------------------------------
CUSTOM_ID_PATTERN = re.compile(r"^[a-z_]+(?:_[A-Za-z0-9]{1,64}){0,4}$")
CUSTOM_ID_MAX_LENGTH = 100
CUSTOM_ID_SEGMENT_MAX = 64

# Backend ids typed into options (community, allowlist); same charset as cache key parts
RESOURCE_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]+$")

# ---------------------------------------------------------------------------
# Audit redaction
# ---------------------------------------------------------------------------
REDACTED = "[REDACTED]"
REDACTION_DENYLIST: frozenset[str] = frozenset({
    "password",
    "token",
    "apikey",
    "secret",
    "email",
    "phone",
    "ip",
})
# Common spellings of the same secrets, compared after normalisation
REDACTION_ALIASES: frozenset[str] = frozenset({
    "ipaddress",
    "accesstoken",
    "refreshtoken",
    "bottoken",
    "clientsecret",
})

# ---------------------------------------------------------------------------
# Denial reasons (exact strings, audited verbatim)
# ---------------------------------------------------------------------------
REASON_LOCKDOWN = "Guild is under emergency lockdown"
REASON_BOT = "Bots cannot use commands"
REASON_ACCOUNT_AGE = "Account must be at least 7 days old to use commands"
REASON_RESTRICTED = "You are temporarily restricted from using commands"
REASON_NOT_MEMBER = "This command can only be used inside a server"
REASON_REQUIRES_ADMIN = "This command requires administrator permissions"
REASON_REQUIRES_OWNER = "This command requires the server owner"
REASON_OWNER_LINK_ONLY = "Only the server owner can link communities"
REASON_REQUIRES_LINK = (
    "This server is not linked to a community yet. "
    "Ask the server owner to run /link-community first"
)
REASON_UNKNOWN_COMMAND = "Unknown command"

# Generic replies
REPLY_RATE_LIMITED = "⏱️ You've hit the rate limit. Try again in {seconds}s."
REPLY_GENERIC_ERROR = "❌ Something went wrong while handling that. Please try again later."
REPLY_INVALID_BUTTON = "❌ That button is not valid."
REPLY_UNKNOWN_BUTTON = "❌ That button is no longer supported."
REPLY_BACKEND_UNAVAILABLE = "⚠️ The community service is unavailable right now. Please try again in a moment."

# ---------------------------------------------------------------------------
# Presentation
# ---------------------------------------------------------------------------
SEVERITY_EMOJI: dict[str, str] = {
    "low": "\U0001f7e2",       # 🟢
    "medium": "\U0001f7e1",    # 🟡
    "high": "\U0001f7e0",      # 🟠
    "critical": "\U0001f534",  # 🔴
}

BRAND_COLOR = 0x6C5CE7
