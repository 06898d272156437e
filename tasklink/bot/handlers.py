"""
tasklink.bot.handlers — Slash Command & Button Handlers
=========================================================

One coroutine per registry entry.  Handlers only see parsed options (or
custom-id arguments), talk to the backend client and storage, and return a
:class:`~tasklink.engine.interactions.Reply`.  They never reply themselves;
the dispatcher sends exactly one reply per interaction.

Raising :class:`~tasklink.bot.registry.HandlerError` shows its message to
the user and audits ``command_failed``.  :class:`BackendError` is handled
by the dispatcher the same way with a generic "unavailable" message.

Storage commits are skipped when ``ctx.expired`` is set (the platform has
already dropped the interaction).
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime, timedelta
from typing import Any

from tasklink.bot.registry import (
    ButtonAction,
    CommandSpec,
    HandlerContext,
    HandlerError,
    custom_id,
    expand_id,
)
from tasklink.constants import (
    CMD_ALLOWLIST_ANALYTICS,
    CMD_CONNECT_ALLOWLIST,
    CMD_CREATE_TASK,
    CMD_HELP,
    CMD_LINK_COMMUNITY,
    CMD_LIST_TASKS,
    CMD_SECURITY,
    CMD_STATUS,
)
from tasklink.database import repository as repo
from tasklink.database.engine import run_db
from tasklink.engine.audit import AuditEventType, AuditFilter
from tasklink.engine.interactions import ButtonSpec, Reply
from tasklink.engine.permissions import BUTTON_POLICIES, DEFAULT_POLICIES
from tasklink.engine.validation import (
    ALLOWLIST_ANALYTICS_OPTIONS,
    CONNECT_ALLOWLIST_OPTIONS,
    CREATE_TASK_OPTIONS,
    HELP_OPTIONS,
    LINK_COMMUNITY_OPTIONS,
    LIST_TASKS_OPTIONS,
    SECURITY_OPTIONS,
    AllowlistAnalyticsOptions,
    ConnectAllowlistOptions,
    CreateTaskOptions,
    HelpOptions,
    LinkCommunityOptions,
    ListTasksOptions,
    NoOptions,
    SecurityOptions,
)
from tasklink.services import embeds
from tasklink.services.backend_client import BackendError, ErrorKind

logger = logging.getLogger(__name__)

TASKS_PER_PAGE = 10


def _entity_id(data: dict[str, Any]) -> str | None:
    value = data.get("id") or data.get("_id")
    return str(value) if value else None


def _require_community(ctx: HandlerContext) -> str:
    community_id = ctx.community_id
    if community_id is None:
        raise HandlerError("❌ This server is not linked to a community yet.")
    return community_id


async def _require_account_link(ctx: HandlerContext) -> dict[str, Any]:
    """Backend account link of the invoker, remembered locally on success."""
    link = await ctx.runtime.backend.get_user_link(ctx.user_id)
    if not link:
        raise HandlerError(
            "\U0001f517 Link your account on the community dashboard first, then try again."
        )
    await _remember_account_link(ctx, link)
    return link


async def _remember_account_link(ctx: HandlerContext, link: dict[str, Any]) -> None:
    engine = ctx.runtime.engine
    backend_user_id = link.get("user_id") or link.get("userId")
    if engine is None or ctx.expired or not backend_user_id:
        return
    try:
        await run_db(repo.upsert_account_link, engine, ctx.user_id, str(backend_user_id))
    except Exception:
        logger.exception("Could not store account link", extra={"user_id": ctx.user_id})


def _task_buttons(task_id: str) -> tuple[ButtonSpec, ...]:
    try:
        return (
            ButtonSpec(custom_id("complete_task", task_id), "Complete", "success", "✅"),
            ButtonSpec(custom_id("view_task", task_id), "Details", "secondary"),
        )
    except ValueError:
        logger.warning("Task id %r cannot be carried in a button; posting without buttons", task_id)
        return ()


def _page_buttons(status: str, page: int, total: int) -> tuple[ButtonSpec, ...]:
    buttons = []
    if page > 0:
        buttons.append(ButtonSpec(custom_id("tasks_page", status, page - 1), "Previous", "secondary", "◀️"))
    if (page + 1) * TASKS_PER_PAGE < total:
        buttons.append(ButtonSpec(custom_id("tasks_page", status, page + 1), "Next", "secondary", "▶️"))
    return tuple(buttons)


def _allowlist_buttons(allowlist_id: str) -> tuple[ButtonSpec, ...]:
    try:
        return (
            ButtonSpec(custom_id("enter_allowlist", allowlist_id), "Enter", "primary", "\U0001f39f️"),
            ButtonSpec(custom_id("view_allowlist", allowlist_id), "Details", "secondary"),
        )
    except ValueError:
        logger.warning("Allowlist id %r cannot be carried in a button; posting without buttons", allowlist_id)
        return ()


# ---------------------------------------------------------------------------
# /link-community
# ---------------------------------------------------------------------------
async def link_community(ctx: HandlerContext, opts: LinkCommunityOptions) -> Reply:
    rt = ctx.runtime
    guild_id = ctx.guild_id
    if guild_id is None:
        raise HandlerError("❌ Run this command inside the server you want to link.")

    if ctx.community_id == opts.community_id:
        return Reply(
            content=f"ℹ️ This server is already linked to community `{opts.community_id}`.",
            buttons=(
                ButtonSpec("test_connection", "Test connection", "secondary"),
                ButtonSpec("unlink_community", "Unlink", "danger"),
            ),
        )

    community = await rt.backend.get_community(opts.community_id)
    if not community:
        raise HandlerError(
            f"❌ Community `{opts.community_id}` was not found. Check the id on your dashboard."
        )

    await rt.backend.save_server_mapping(guild_id, opts.community_id, ctx.user_id)
    if not ctx.expired:
        await rt.guilds.link(guild_id, opts.community_id, ctx.user_id)

    rt.audit.log(
        AuditEventType.COMMUNITY_LINKED,
        user_id=ctx.user_id,
        guild_id=guild_id,
        command_name=CMD_LINK_COMMUNITY,
        success=True,
        details={"community_id": opts.community_id, "previous": ctx.community_id},
    )
    return Reply(
        embed=embeds.build_community_linked_embed(community, "This server"),
        ephemeral=False,
        buttons=(
            ButtonSpec("test_connection", "Test connection", "secondary", "\U0001f50c"),
            ButtonSpec("unlink_community", "Unlink", "danger"),
        ),
    )


# ---------------------------------------------------------------------------
# /create-task
# ---------------------------------------------------------------------------
async def create_task(ctx: HandlerContext, opts: CreateTaskOptions) -> Reply:
    rt = ctx.runtime
    community_id = _require_community(ctx)
    expires_at = datetime.now(UTC) + timedelta(hours=opts.duration_hours)

    task = await rt.backend.create_task(community_id, {
        "type": opts.task_type,
        "title": opts.title,
        "description": opts.description,
        "points": opts.points,
        "duration_hours": opts.duration_hours,
        "target_url": opts.target_url,
        "expires_at": expires_at.isoformat(),
        "created_by_discord_id": ctx.user_id,
        "discord_server_id": ctx.guild_id,
    })
    task_id = _entity_id(task)
    if task_id is None:
        raise HandlerError("❌ The task could not be created. Please try again later.")

    if not ctx.expired and rt.engine is not None:
        await run_db(
            repo.record_task_post, rt.engine,
            task_id=task_id,
            guild_id=ctx.guild_id,
            created_by=ctx.user_id,
            title=opts.title,
            task_type=opts.task_type,
            points=opts.points,
            channel_id=ctx.interaction.channel_id,
            expires_at=expires_at,
        )

    rt.audit.log(
        AuditEventType.TASK_CREATED,
        user_id=ctx.user_id,
        guild_id=ctx.guild_id,
        command_name=CMD_CREATE_TASK,
        success=True,
        details={"task_id": task_id, "type": opts.task_type, "points": opts.points},
    )
    shown = {
        "type": opts.task_type,
        "title": opts.title,
        "description": opts.description,
        "points": opts.points,
        "target_url": opts.target_url,
        "expires_at": expires_at,
        **task,
    }
    return Reply(
        embed=embeds.build_task_embed(shown, title_prefix="\U0001f195"),
        ephemeral=False,
        buttons=_task_buttons(task_id),
    )


# ---------------------------------------------------------------------------
# /list-tasks and task buttons
# ---------------------------------------------------------------------------
async def _task_page(ctx: HandlerContext, status: str, page: int) -> Reply:
    community_id = _require_community(ctx)
    tasks = await ctx.runtime.backend.list_tasks(community_id, status)
    last_page = max(0, (len(tasks) - 1) // TASKS_PER_PAGE)
    page = min(max(page, 0), last_page)
    return Reply(
        embed=embeds.build_task_list_embed(tasks, status, page=page, per_page=TASKS_PER_PAGE),
        buttons=_page_buttons(status, page, len(tasks)),
    )


async def list_tasks(ctx: HandlerContext, opts: ListTasksOptions) -> Reply:
    return await _task_page(ctx, opts.status, 0)


async def tasks_page(ctx: HandlerContext, args: tuple[str, ...]) -> Reply:
    status, raw_page = args
    if status not in ("active", "completed", "expired", "all") or not raw_page.isdigit():
        raise HandlerError("❌ That page no longer exists.")
    return await _task_page(ctx, status, int(raw_page))


async def view_task(ctx: HandlerContext, args: tuple[str, ...]) -> Reply:
    task_id = expand_id(args[0])
    task = await ctx.runtime.backend.get_task(task_id)
    if not task:
        raise HandlerError("❌ That task no longer exists.")
    return Reply(embed=embeds.build_task_embed(task), buttons=_task_buttons(task_id)[:1])


async def complete_task(ctx: HandlerContext, args: tuple[str, ...]) -> Reply:
    rt = ctx.runtime
    task_id = expand_id(args[0])
    await _require_account_link(ctx)
    try:
        result = await rt.backend.complete_task(task_id, ctx.user_id, community_id=ctx.community_id)
    except BackendError as exc:
        if exc.kind is ErrorKind.NOT_FOUND:
            raise HandlerError("❌ That task no longer exists.") from exc
        if exc.kind is ErrorKind.VALIDATION:
            raise HandlerError("❌ This task can't be completed. It may already be done or closed.") from exc
        raise

    rt.audit.log(
        AuditEventType.TASK_COMPLETED,
        user_id=ctx.user_id,
        guild_id=ctx.guild_id,
        command_name="complete_task",
        success=True,
        details={"task_id": task_id, "points": result.get("points_awarded")},
    )
    points = result.get("points_awarded")
    suffix = f" You earned **{points}** points." if points else ""
    return Reply(content=f"✅ Task completed!{suffix}")


# ---------------------------------------------------------------------------
# /connect-allowlist and allowlist buttons
# ---------------------------------------------------------------------------
async def connect_allowlist(ctx: HandlerContext, opts: ConnectAllowlistOptions) -> Reply:
    rt = ctx.runtime
    community_id = _require_community(ctx)
    allowlist = await rt.backend.get_allowlist(opts.allowlist_id)
    if not allowlist:
        raise HandlerError(f"❌ Allowlist `{opts.allowlist_id}` was not found.")
    owner = allowlist.get("community_id") or allowlist.get("communityId")
    if owner and str(owner) != community_id:
        raise HandlerError("❌ That allowlist belongs to a different community.")

    if not ctx.expired and rt.engine is not None:
        await run_db(
            repo.record_allowlist_connection, rt.engine,
            allowlist_id=opts.allowlist_id,
            guild_id=ctx.guild_id,
            connected_by=ctx.user_id,
            channel_id=ctx.interaction.channel_id,
        )

    rt.audit.log(
        AuditEventType.ALLOWLIST_CONNECTED,
        user_id=ctx.user_id,
        guild_id=ctx.guild_id,
        command_name=CMD_CONNECT_ALLOWLIST,
        success=True,
        details={"allowlist_id": opts.allowlist_id},
    )
    return Reply(
        embed=embeds.build_allowlist_embed(allowlist),
        ephemeral=False,
        buttons=_allowlist_buttons(opts.allowlist_id),
    )


async def view_allowlist(ctx: HandlerContext, args: tuple[str, ...]) -> Reply:
    allowlist_id = expand_id(args[0])
    allowlist = await ctx.runtime.backend.get_allowlist(allowlist_id)
    if not allowlist:
        raise HandlerError("❌ That allowlist no longer exists.")
    return Reply(embed=embeds.build_allowlist_embed(allowlist), buttons=_allowlist_buttons(allowlist_id)[:1])


async def enter_allowlist(ctx: HandlerContext, args: tuple[str, ...]) -> Reply:
    rt = ctx.runtime
    allowlist_id = expand_id(args[0])
    await _require_account_link(ctx)
    try:
        await rt.backend.enter_allowlist(allowlist_id, ctx.user_id)
    except BackendError as exc:
        if exc.kind is ErrorKind.NOT_FOUND:
            raise HandlerError("❌ That allowlist no longer exists.") from exc
        if exc.kind is ErrorKind.VALIDATION:
            raise HandlerError("❌ You can't enter this allowlist. It may be closed or you're already in.") from exc
        raise

    rt.audit.log(
        AuditEventType.ALLOWLIST_ENTERED,
        user_id=ctx.user_id,
        guild_id=ctx.guild_id,
        command_name="enter_allowlist",
        success=True,
        details={"allowlist_id": allowlist_id},
    )
    return Reply(content="\U0001f39f️ You're entered. Good luck!")


async def allowlist_analytics(ctx: HandlerContext, opts: AllowlistAnalyticsOptions) -> Reply:
    community_id = _require_community(ctx)
    data = await ctx.runtime.backend.allowlist_analytics(
        community_id, allowlist_id=opts.allowlist_id, period=opts.period,
    )
    return Reply(embed=embeds.build_analytics_embed(data, opts.period))


# ---------------------------------------------------------------------------
# /status and server buttons
# ---------------------------------------------------------------------------
async def status(ctx: HandlerContext, opts: NoOptions) -> Reply:
    rt = ctx.runtime
    state = ctx.guild_state
    community = None
    if ctx.community_id is not None:
        try:
            community = await rt.backend.get_community(ctx.community_id)
        except BackendError as exc:
            logger.warning("Community lookup failed for status: %s", exc.kind)

    link_known = True
    user_link = None
    try:
        user_link = await rt.backend.get_user_link(ctx.user_id)
    except BackendError:
        link_known = False
        if rt.engine is not None:
            local = await run_db(repo.get_account_link, rt.engine, ctx.user_id)
            if local is not None:
                user_link, link_known = {"user_id": local["backend_user_id"]}, True
    else:
        if user_link:
            await _remember_account_link(ctx, user_link)

    buttons = [ButtonSpec("refresh_status", "Refresh", "secondary", "\U0001f504")]
    if state is not None and state.is_linked and ctx.interaction.invoker.is_admin:
        buttons.append(ButtonSpec("test_connection", "Test connection", "secondary", "\U0001f50c"))
    return Reply(
        embed=embeds.build_status_embed(state, community, user_link, link_known=link_known),
        buttons=tuple(buttons),
    )


async def refresh_status(ctx: HandlerContext, args: tuple[str, ...]) -> Reply:
    return await status(ctx, NoOptions())


async def test_connection(ctx: HandlerContext, args: tuple[str, ...]) -> Reply:
    started = time.perf_counter()
    ok = await ctx.runtime.backend.ping()
    elapsed_ms = (time.perf_counter() - started) * 1000
    if not ok:
        return Reply(content="❌ The community backend is not reachable right now.")
    return Reply(content=f"✅ Backend reachable ({elapsed_ms:.0f} ms). Community `{ctx.community_id}` is linked.")


async def unlink_community(ctx: HandlerContext, args: tuple[str, ...]) -> Reply:
    rt = ctx.runtime
    guild_id = ctx.guild_id
    community_id = _require_community(ctx)
    await rt.backend.delete_server_mapping(guild_id)  # type: ignore[arg-type]
    if not ctx.expired:
        await rt.guilds.unlink(guild_id)  # type: ignore[arg-type]
    rt.audit.log(
        AuditEventType.COMMUNITY_UNLINKED,
        user_id=ctx.user_id,
        guild_id=guild_id,
        command_name="unlink_community",
        success=True,
        details={"community_id": community_id},
    )
    return Reply(content=f"\U0001f513 This server is no longer linked to community `{community_id}`.", ephemeral=False)


async def relink_community(ctx: HandlerContext, args: tuple[str, ...]) -> Reply:
    return Reply(content="\U0001f517 Run `/link-community` with the new community id to relink this server.")


# ---------------------------------------------------------------------------
# /help
# ---------------------------------------------------------------------------
_SETUP_TEXT = (
    "1. The server owner runs `/link-community` with the id from the dashboard.\n"
    "2. Admins create tasks with `/create-task` and post allowlists with `/connect-allowlist`.\n"
    "3. Members link their account on the dashboard, then use the buttons to take part.\n"
    "4. Admins pick an alert channel with `/security action:alert-channel`."
)


def _help_reply(topic: str | None) -> Reply:
    buttons = (
        ButtonSpec("help_commands", "Commands", "secondary"),
        ButtonSpec("help_setup", "Setup", "secondary"),
    )
    if topic == "setup":
        return Reply(content=f"**Getting started**\n{_SETUP_TEXT}", buttons=buttons)

    if topic and topic != "commands":
        spec = next((c for c in COMMANDS if c.name == topic.lstrip("/")), None)
        if spec is None:
            raise HandlerError(f"❌ Unknown command `{topic}`.")
        options = "\n".join(
            f"`{o.name}`{' (required)' if o.required else ''}: {o.description}" for o in spec.options
        )
        return Reply(
            embed=embeds.build_help_embed([(spec.name, spec.description, str(spec.policy.capability))], spec.name),
            content=options or None,
            buttons=buttons,
        )

    rows = [(c.name, c.description, str(c.policy.capability)) for c in COMMANDS]
    return Reply(embed=embeds.build_help_embed(rows), buttons=buttons)


async def help_command(ctx: HandlerContext, opts: HelpOptions) -> Reply:
    return _help_reply(opts.command)


async def help_button(ctx: HandlerContext, args: tuple[str, ...]) -> Reply:
    return _help_reply(args[0])


# ---------------------------------------------------------------------------
# /security
# ---------------------------------------------------------------------------
async def security(ctx: HandlerContext, opts: SecurityOptions) -> Reply:
    rt = ctx.runtime
    guild_id = ctx.guild_id

    if opts.action == "report":
        return Reply(embed=embeds.build_security_report_embed(rt.monitor.report(hours=24.0)))

    if opts.action == "stats":
        return Reply(embed=embeds.build_stats_embed({
            "Rate limiter": rt.limiter.statistics(),
            "Security monitor": rt.monitor.statistics(),
            "Permissions": rt.permissions.statistics(),
            "Alerts": rt.alerts.statistics(),
            "Audit log": rt.audit.statistics(),
        }))

    if opts.action == "alerts":
        events = rt.monitor.recent_events(10, guild_id=guild_id)
        return Reply(embed=embeds.build_security_events_embed(events))

    if opts.action == "alert-channel":
        channel_id = ctx.interaction.channel_id
        if channel_id is None or guild_id is None:
            raise HandlerError("❌ Run this inside the channel that should receive alerts.")
        if ctx.community_id is None:
            raise HandlerError("❌ Link this server with `/link-community` before choosing an alert channel.")
        if not ctx.expired:
            await rt.guilds.set_alert_channel(guild_id, channel_id)
        rt.audit.log(
            AuditEventType.CONFIG_CHANGED,
            user_id=ctx.user_id,
            guild_id=guild_id,
            command_name=CMD_SECURITY,
            success=True,
            details={"setting": "alert_channel_id", "value": channel_id},
        )
        return Reply(content=f"\U0001f6a8 Security alerts will be posted in <#{channel_id}>.")

    if opts.action == "audit":
        entries = rt.audit.query(AuditFilter(guild_id=guild_id, limit=15))
        return Reply(embed=embeds.build_audit_embed(entries))

    if opts.action == "permissions":
        return Reply(embed=embeds.build_policies_embed(rt.permissions.policies))

    if opts.action == "lockdown":
        if guild_id is None:
            raise HandlerError("❌ Lockdown only applies inside a server.")
        seconds = opts.duration_minutes * 60 if opts.duration_minutes else None
        lockdown = rt.monitor.trigger_emergency_lockdown(
            guild_id,
            opts.reason or "Manual lockdown by an administrator",
            seconds,
            triggered_by=ctx.user_id,
        )
        return Reply(embed=embeds.build_lockdown_embed(lockdown), ephemeral=False)

    raise HandlerError(f"❌ Unknown security action `{opts.action}`.")


# ---------------------------------------------------------------------------
# Registry entries
# ---------------------------------------------------------------------------
COMMANDS: list[CommandSpec] = [
    CommandSpec(
        CMD_LINK_COMMUNITY, "Link this server to your community",
        DEFAULT_POLICIES[CMD_LINK_COMMUNITY], LINK_COMMUNITY_OPTIONS, LinkCommunityOptions,
        link_community, defer=True, defer_ephemeral=False, sensitive=True,
    ),
    CommandSpec(
        CMD_CREATE_TASK, "Create a social task for your community",
        DEFAULT_POLICIES[CMD_CREATE_TASK], CREATE_TASK_OPTIONS, CreateTaskOptions,
        create_task, defer=True, defer_ephemeral=False, sensitive=True,
    ),
    CommandSpec(
        CMD_LIST_TASKS, "Show the community's social tasks",
        DEFAULT_POLICIES[CMD_LIST_TASKS], LIST_TASKS_OPTIONS, ListTasksOptions,
        list_tasks,
    ),
    CommandSpec(
        CMD_CONNECT_ALLOWLIST, "Post an allowlist in this channel",
        DEFAULT_POLICIES[CMD_CONNECT_ALLOWLIST], CONNECT_ALLOWLIST_OPTIONS, ConnectAllowlistOptions,
        connect_allowlist, defer=True, defer_ephemeral=False, sensitive=True,
    ),
    CommandSpec(
        CMD_ALLOWLIST_ANALYTICS, "Allowlist performance for your community",
        DEFAULT_POLICIES[CMD_ALLOWLIST_ANALYTICS], ALLOWLIST_ANALYTICS_OPTIONS, AllowlistAnalyticsOptions,
        allowlist_analytics, defer=True,
    ),
    CommandSpec(
        CMD_STATUS, "Server link and account status",
        DEFAULT_POLICIES[CMD_STATUS], (), NoOptions,
        status,
    ),
    CommandSpec(
        CMD_HELP, "How to use TaskLink",
        DEFAULT_POLICIES[CMD_HELP], HELP_OPTIONS, HelpOptions,
        help_command,
    ),
    CommandSpec(
        CMD_SECURITY, "Security reports and emergency tools",
        DEFAULT_POLICIES[CMD_SECURITY], SECURITY_OPTIONS, SecurityOptions,
        security, sensitive=True,
    ),
]

BUTTONS: list[ButtonAction] = [
    ButtonAction("complete_task", BUTTON_POLICIES["complete_task"], 1, complete_task, defer=True),
    ButtonAction("view_task", BUTTON_POLICIES["view_task"], 1, view_task),
    ButtonAction("tasks_page", BUTTON_POLICIES["tasks_page"], 2, tasks_page),
    ButtonAction("enter_allowlist", BUTTON_POLICIES["enter_allowlist"], 1, enter_allowlist, defer=True),
    ButtonAction("view_allowlist", BUTTON_POLICIES["view_allowlist"], 1, view_allowlist),
    ButtonAction("refresh_status", BUTTON_POLICIES["refresh_status"], 0, refresh_status),
    ButtonAction("unlink_community", BUTTON_POLICIES["unlink_community"], 0, unlink_community, sensitive=True),
    ButtonAction("relink_community", BUTTON_POLICIES["relink_community"], 0, relink_community, sensitive=True),
    ButtonAction("test_connection", BUTTON_POLICIES["test_connection"], 0, test_connection),
    ButtonAction("help", BUTTON_POLICIES["help"], 1, help_button),
]
