from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g, jsonify

from app.pharmaqa.models import User


def user_permissions(user: User | None) -> set[str]:
    if not user or not user.is_active:
        return set()
    return {perm.key for role in user.roles for perm in role.permissions}


def user_has_permission(user: User | None, permission_key: str) -> bool:
    return permission_key in user_permissions(user)


def current_reviewer() -> User:
    """The logged-in user behind a decision. Only valid inside a require_permission view."""
    user: User | None = getattr(g, "current_user", None)
    if not user:
        raise RuntimeError("No current user")
    return user


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    JSON-only guard for review endpoints.

    401 `login_required` when nobody is logged in, 403 `forbidden` when the
    account lacks `permission_key`. The missing key is left on g for logging.
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not user or not user.is_active:
                return jsonify({"error": "login_required", "message": "Log in to continue."}), 401
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                return jsonify({"error": "forbidden", "message": f"Missing permission {permission_key}."}), 403
            return fn(*args, **kwargs)

        return wrapped

    return decorator
