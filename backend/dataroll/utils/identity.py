"""Caller identity and team access helpers for the HTTP layer.

Authentication happens in front of this service; the caller's user id
arrives in the ``X-User-Id`` header.
"""

from __future__ import annotations

import functools
from collections.abc import Callable
from http import HTTPStatus
from typing import Any, TypeVar, cast

from flask import jsonify, request

from ..workflows import get_services

TCallable = TypeVar("TCallable", bound=Callable[..., Any])

USER_HEADER = "X-User-Id"


def current_user_id() -> str | None:
    value = (request.headers.get(USER_HEADER) or "").strip()
    return value or None


def _unauthorized(message: str):
    return jsonify({"error": {"code": "unauthorized", "message": message}}), HTTPStatus.UNAUTHORIZED


def forbidden(message: str):
    return jsonify({"error": {"code": "forbidden", "message": message}}), HTTPStatus.FORBIDDEN


def require_user(func: TCallable) -> TCallable:
    """Reject requests that do not identify the calling user."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any):
        user_id = current_user_id()
        if not user_id:
            return _unauthorized(f"missing {USER_HEADER} header")
        return func(*args, **kwargs)

    return cast(TCallable, wrapper)


def can_access_team(team_id: str) -> bool:
    user_id = current_user_id()
    if not user_id:
        return False
    return get_services().permissions.is_member(user_id, team_id)
