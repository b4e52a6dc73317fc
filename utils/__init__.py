from __future__ import annotations

from functools import wraps
from typing import Callable, TypeVar, Any, cast
from flask import session, jsonify

F = TypeVar("F", bound=Callable[..., Any])

FINANCE_ROLES = ("admin", "accountant")
STAFF_ROLES = ("admin", "teacher", "accountant")


def actor_name() -> str:
    """Display name of the signed-in user, used for audit and history columns."""
    return session.get("username") or "System"


def role_required(*roles: str) -> Callable[[F], F]:
    """Decorator that requires a signed-in session whose role is in ``roles``.

    - No session: 401 ``not_authenticated``.
    - Wrong role: 403 ``forbidden``.
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any):
            if not session.get("user_id"):
                return jsonify({"error": "not_authenticated", "message": "Sign in required"}), 401
            if roles and session.get("role") not in roles:
                return jsonify({"error": "forbidden", "message": "Insufficient role"}), 403
            return func(*args, **kwargs)

        return cast(F, wrapper)

    return decorator


def login_required(func: F) -> F:
    return role_required()(func)


def admin_required(func: F) -> F:
    return role_required("admin")(func)


def is_admin() -> bool:
    return session.get("role") == "admin"
