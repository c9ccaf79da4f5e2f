from __future__ import annotations

from functools import wraps

from flask import abort
from flask_login import current_user

from app.core.models import UserRole


def current_role() -> UserRole | None:
    if not current_user.is_authenticated:
        return None
    return UserRole(current_user.role)


def require_role(role: str):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            if not current_user.is_authenticated:
                abort(401)
            acting = current_role()
            if acting is None or acting.value != role.lower():
                abort(403)
            return fn(*args, **kwargs)

        return wrapper

    return decorator
