from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g, jsonify, redirect, request, url_for

from app.erp.models import User

# Every key passed to require_permission(), collected at import time so the
# seed script can create exactly the permissions the routes check.
KNOWN_PERMISSIONS: set[str] = set()


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def _is_api_request() -> bool:
    return "/api/" in request.path or request.is_json


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    KNOWN_PERMISSIONS.add(permission_key)

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not user or not user.is_active:
                if _is_api_request():
                    return jsonify({"success": False, "error": "Authentication required"}), 401
                nxt = request.full_path or request.path
                # Avoid trailing '?' from full_path when there is no query string.
                if nxt.endswith("?"):
                    nxt = nxt[:-1]
                return redirect(url_for("auth.login_get", next=nxt))
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
