"""Helper utilities resolving the calling user from request headers."""

from __future__ import annotations

import functools
from collections.abc import Callable
from http import HTTPStatus
from typing import Any, TypeVar, cast

from flask import g, jsonify, request

from ..engine import roles
from ..extensions import db
from ..models.user import User

TCallable = TypeVar("TCallable", bound=Callable[..., Any])

USER_HEADER = "X-User-Id"


def _unauthorized(message: str):
    response = jsonify({"error": "unauthorized", "message": message})
    response.status_code = HTTPStatus.UNAUTHORIZED
    return response


def _forbidden(message: str):
    return jsonify({"error": "permission_denied", "message": message}), HTTPStatus.FORBIDDEN


def current_user() -> User:
    """Return the user resolved by :func:`require_user` for this request."""

    return cast(User, g.current_user)


def require_user(role: str = roles.USER) -> Callable[[TCallable], TCallable]:
    """Decorator resolving ``X-User-Id`` to an active user with at least ``role``."""

    def decorator(func: TCallable) -> TCallable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any):
            user_id = (request.headers.get(USER_HEADER) or "").strip()
            if not user_id:
                return _unauthorized(f"missing {USER_HEADER} header")

            user = db.session.get(User, user_id)
            if user is None:
                return _unauthorized("unknown user")
            if not user.is_active:
                return _unauthorized("user is inactive")
            if not roles.has_permission(user.role, role):
                return _forbidden("insufficient role")

            g.current_user = user
            g.current_user_id = user.id
            return func(*args, **kwargs)

        return cast(TCallable, wrapper)

    return decorator
