"""
tasklink.config — Environment + YAML Configuration Loader
==========================================================

Secrets and endpoints come from the environment (``.env`` is loaded by the
entry points via python-dotenv).  Optional tuning (rate-limit table,
security thresholds, retention windows) comes from ``tasklink.yaml``.

Everything is folded into one immutable :class:`TaskLinkConfig` built once
at startup and passed down explicitly.  Nothing else in the package reads
``os.environ``.

Usage::

    from tasklink.config import load_config

    cfg = load_config()             # env + ./tasklink.yaml (if present)
    print(cfg.api_base_url)
    print(cfg.rate_limits["command"])   # RateLimitRule(requests=5, window_ms=60000)
"""

from __future__ import annotations

import dataclasses
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from tasklink.engine.rate_limiter import DEFAULT_RULES, RateLimitRule
from tasklink.engine.security import SecurityThresholds

logger = logging.getLogger(__name__)

REQUIRED_ENV: tuple[str, ...] = (
    "BOT_TOKEN",
    "CLIENT_ID",
    "STORAGE_URI",
    "API_BASE_URL",
    "API_KEY",
)

_LOG_LEVELS: dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

# YAML tuning keys that map 1:1 onto TaskLinkConfig scalar fields
_SCALAR_TUNING: dict[str, type] = {
    "audit_retention_days": int,
    "interaction_log_retention_days": int,
    "alert_high_water": int,
    "alert_batch_seconds": float,
    "cache_reconnect_attempts": int,
    "cache_reconnect_interval": float,
    "backend_timeout": float,
}


class ConfigError(RuntimeError):
    """Raised when the environment or tuning file is unusable."""


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TaskLinkConfig:
    """Immutable runtime configuration.

    Secrets are excluded from ``repr`` so the object can be logged.
    """

    # Required
    bot_token: str = field(repr=False)
    client_id: str
    storage_uri: str = field(repr=False)
    api_base_url: str
    api_key: str = field(repr=False)

    # Optional environment
    cache_url: str | None = field(default=None, repr=False)
    log_level: int = logging.INFO
    dev_guild_id: int | None = None
    admin_role_ids: tuple[int, ...] = ()
    monitor_port: int | None = None

    # Tuning (tasklink.yaml)
    rate_limits: dict[str, RateLimitRule] = field(default_factory=lambda: dict(DEFAULT_RULES))
    security: SecurityThresholds = field(default_factory=SecurityThresholds)
    audit_retention_days: int = 90
    interaction_log_retention_days: int = 30
    alert_high_water: int = 1000
    alert_batch_seconds: float = 60.0
    cache_reconnect_attempts: int = 5
    cache_reconnect_interval: float = 5.0
    backend_timeout: float = 10.0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def parse_log_level(value: str | None) -> int:
    """Map ``LOG_LEVEL`` (debug/info/warn/error) onto a :mod:`logging` level."""
    if not value:
        return logging.INFO
    level = _LOG_LEVELS.get(value.strip().lower())
    if level is None:
        logger.warning("Unknown LOG_LEVEL %r; falling back to info", value)
        return logging.INFO
    return level


def _optional_int(env: Mapping[str, str], name: str) -> int | None:
    raw = (env.get(name) or "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _parse_role_ids(raw: str | None) -> tuple[int, ...]:
    if not raw:
        return ()
    try:
        return tuple(int(part) for part in raw.split(",") if part.strip())
    except ValueError as exc:
        raise ConfigError(f"ADMIN_ROLE_IDS must be comma-separated integers, got {raw!r}") from exc


def _load_tuning(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with open(path, encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Tuning file {path} must contain a mapping at the top level")
    return raw


def _parse_rate_limits(raw: Any) -> dict[str, RateLimitRule]:
    rules = dict(DEFAULT_RULES)
    if raw is None:
        return rules
    if not isinstance(raw, dict):
        raise ConfigError("rate_limits must be a mapping of action → {requests, window_ms}")
    for action, spec in raw.items():
        try:
            rules[str(action)] = RateLimitRule(
                requests=int(spec["requests"]),
                window_ms=int(spec["window_ms"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid rate limit for action {action!r}: {spec!r}") from exc
    return rules


def _parse_security(raw: Any) -> SecurityThresholds:
    defaults = SecurityThresholds()
    if raw is None:
        return defaults
    if not isinstance(raw, dict):
        raise ConfigError("security must be a mapping of threshold → value")

    known = {f.name: f for f in dataclasses.fields(SecurityThresholds)}
    overrides: dict[str, Any] = {}
    for key, value in raw.items():
        fld = known.get(key)
        if fld is None:
            logger.warning("Ignoring unknown security threshold %r", key)
            continue
        caster = type(getattr(defaults, key))
        if caster is bool:
            if not isinstance(value, bool):
                raise ConfigError(f"security.{key} must be true or false, got {value!r}")
            overrides[key] = value
            continue
        try:
            overrides[key] = caster(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid value for security.{key}: {value!r}") from exc
    return dataclasses.replace(defaults, **overrides)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(
    env: Mapping[str, str] | None = None,
    path: str | Path = "tasklink.yaml",
) -> TaskLinkConfig:
    """Build a :class:`TaskLinkConfig` from *env* (default ``os.environ``)
    and the optional YAML tuning file at *path*.

    Raises
    ------
    ConfigError
        If a required variable is missing or a value cannot be parsed.
    """
    env = os.environ if env is None else env

    missing = [name for name in REQUIRED_ENV if not (env.get(name) or "").strip()]
    if missing:
        raise ConfigError(
            f"Missing required environment variables: {', '.join(missing)}.  "
            "Copy .env.example → .env and fill them in."
        )

    tuning = _load_tuning(Path(path))
    scalars: dict[str, Any] = {}
    for key, value in tuning.items():
        if key in ("rate_limits", "security"):
            continue
        caster = _SCALAR_TUNING.get(key)
        if caster is None:
            logger.warning("Ignoring unknown tuning key %r in %s", key, path)
            continue
        try:
            scalars[key] = caster(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid value for {key}: {value!r}") from exc

    return TaskLinkConfig(
        bot_token=env["BOT_TOKEN"].strip(),
        client_id=env["CLIENT_ID"].strip(),
        storage_uri=env["STORAGE_URI"].strip(),
        api_base_url=env["API_BASE_URL"].strip().rstrip("/"),
        api_key=env["API_KEY"].strip(),
        cache_url=(env.get("CACHE_URL") or "").strip() or None,
        log_level=parse_log_level(env.get("LOG_LEVEL")),
        dev_guild_id=_optional_int(env, "DEV_GUILD_ID"),
        admin_role_ids=_parse_role_ids(env.get("ADMIN_ROLE_IDS")),
        monitor_port=_optional_int(env, "MONITOR_PORT"),
        rate_limits=_parse_rate_limits(tuning.get("rate_limits")),
        security=_parse_security(tuning.get("security")),
        **scalars,
    )
