from __future__ import annotations

from flask import g

from app.erp.models import User


def current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def current_company_id() -> int:
    return current_user().company_id
