"""
tasklink.api.deps — FastAPI dependency injection
==================================================

The monitoring API is built per :class:`~tasklink.runtime.Runtime`; the
runtime and the validated JWT secret live on ``app.state``.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, Request, status
from jwt.exceptions import InvalidTokenError

from tasklink.runtime import Runtime

_WEAK_SECRETS = frozenset({
    "tasklink-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"


def load_jwt_secret(env: Mapping[str, str] | None = None) -> str:
    """Load and validate ``JWT_SECRET``.

    Raises RuntimeError if the secret is missing, blank, too short
    (< 32 chars), or a known weak default.
    """
    env = os.environ if env is None else env
    secret = env.get("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_current_admin(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Validate the bearer JWT and return its payload. Raises 401/403."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, request.app.state.jwt_secret, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    if not payload.get("is_admin"):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not admin")
    return payload


RuntimeDep = Annotated[Runtime, Depends(get_runtime)]
AdminDep = Annotated[dict, Depends(get_current_admin)]
