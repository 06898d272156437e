"""
tasklink.engine.keys — Enumerated Cache Key Builder
=====================================================

Every key the cache layer ever sees is built here.  A key is a namespace
(one of the fixed prefixes below) plus one or more validated suffix parts;
call sites never concatenate raw strings.

Usage::

    from tasklink.engine.keys import CacheNamespace, cache_key, cache_pattern

    key = cache_key(CacheNamespace.SERVER_MAPPING, guild_id)
    key.render()            # "discord:server:1234"
    cache_pattern(CacheNamespace.TASK_CACHE).render()   # "discord:task:*"
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass

# Allowed characters in a single suffix part.  ``*``/``?``/``[`` are glob
# metacharacters for SCAN and must never appear in a concrete key.
_PART_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")
_GLOB_RE = re.compile(r"^[A-Za-z0-9._:*-]{1,128}$")


class CacheNamespace(enum.Enum):
    """Fixed key prefixes with their default TTL in seconds."""

    SESSION = ("discord:session:", 86_400)
    SERVER_MAPPING = ("discord:server:", 3_600)
    TASK_CACHE = ("discord:task:", 1_800)
    RATE_LIMITING = ("discord:ratelimit:", 60)
    TEMP_DATA = ("discord:temp:", 300)

    @property
    def prefix(self) -> str:
        return self.value[0]

    @property
    def default_ttl(self) -> int:
        return self.value[1]


def _check_part(part: object) -> str:
    text = str(part)
    if not _PART_RE.match(text):
        raise ValueError(f"Invalid cache key part: {text!r}")
    return text


@dataclass(frozen=True, slots=True)
class CacheKey:
    """A concrete key: namespace + ``:``-joined suffix parts."""

    namespace: CacheNamespace
    suffix: str

    def render(self) -> str:
        return f"{self.namespace.prefix}{self.suffix}"

    @property
    def default_ttl(self) -> int:
        return self.namespace.default_ttl

    def __str__(self) -> str:
        return self.render()


@dataclass(frozen=True, slots=True)
class CachePattern:
    """A glob over one namespace, used by ``delete_pattern``."""

    namespace: CacheNamespace
    glob: str = "*"

    def render(self) -> str:
        return f"{self.namespace.prefix}{self.glob}"

    def __str__(self) -> str:
        return self.render()


def cache_key(namespace: CacheNamespace, *parts: object) -> CacheKey:
    """Build a :class:`CacheKey` from *namespace* and one or more parts.

    Raises
    ------
    ValueError
        If no parts are given or any part contains characters outside
        ``[A-Za-z0-9._:-]``.
    """
    if not parts:
        raise ValueError("cache_key() needs at least one suffix part")
    return CacheKey(namespace, ":".join(_check_part(p) for p in parts))


def cache_pattern(namespace: CacheNamespace, *parts: object) -> CachePattern:
    """Build a :class:`CachePattern` matching every key under *parts*.

    ``cache_pattern(ns)`` matches the whole namespace;
    ``cache_pattern(ns, "list", community_id)`` matches
    ``<prefix>list:<community_id>*``.
    """
    if not parts:
        return CachePattern(namespace, "*")
    glob = ":".join(_check_part(p) for p in parts) + "*"
    if not _GLOB_RE.match(glob):
        raise ValueError(f"Invalid cache pattern: {glob!r}")
    return CachePattern(namespace, glob)
