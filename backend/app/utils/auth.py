"""Caller identity taken from headers set by the upstream gateway.

The gateway authenticates the user and forwards ``X-User-ID`` and a comma
separated ``X-User-Roles`` header. Nothing is verified here.
"""

from __future__ import annotations

import functools
from collections.abc import Callable, Iterable
from typing import Any, TypeVar, cast

from flask import current_app, g, request

from ..workflow.errors import UnauthorizedError

TCallable = TypeVar("TCallable", bound=Callable[..., Any])

USER_ID_HEADER = "X-User-ID"
USER_ROLES_HEADER = "X-User-Roles"


def get_user_id() -> str | None:
    user_id = (request.headers.get(USER_ID_HEADER) or "").strip()
    return user_id or None


def get_user_roles() -> list[str]:
    raw = request.headers.get(USER_ROLES_HEADER) or ""
    return [role.strip() for role in raw.split(",") if role.strip()]


def has_role(
    roles: Iterable[str], required_role: str | None, super_role: str | None = None
) -> bool:
    """Return whether ``roles`` satisfy ``required_role``.

    No required role always passes; the super-role satisfies every role.
    """

    if not required_role:
        return True
    granted = set(roles)
    if super_role and super_role in granted:
        return True
    return required_role in granted


def require_user(func: TCallable) -> TCallable:
    """Reject requests without an ``X-User-ID`` header with UNAUTHORIZED."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any):
        user_id = get_user_id()
        if user_id is None:
            current_app.logger.debug("Rejected %s %s without user id", request.method, request.path)
            raise UnauthorizedError("X-User-ID header is required")
        g.user_id = user_id
        return func(*args, **kwargs)

    return cast(TCallable, wrapper)
