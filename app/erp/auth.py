from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, session, url_for
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash

from app.erp.audit import record_event
from app.erp.db import db_session
from app.erp.models import User

bp = Blueprint("auth", __name__)

SKIP_USER_LOAD = ("/static/", "/health", "/healthz")


class LoginThrottle:
    """Sliding-window count of login attempts per client address."""

    def __init__(self, limit: int = 5, window_seconds: int = 300):
        self.limit = limit
        self.window = timedelta(seconds=window_seconds)
        self._hits: dict[str, list[datetime]] = defaultdict(list)

    def blocked(self, key: str) -> bool:
        cutoff = datetime.utcnow() - self.window
        recent = [t for t in self._hits[key] if t > cutoff]
        self._hits[key] = recent
        return len(recent) >= self.limit

    def hit(self, key: str) -> None:
        self._hits[key].append(datetime.utcnow())

    def reset(self, key: str) -> None:
        self._hits.pop(key, None)

    def clear(self) -> None:
        self._hits.clear()


_login_attempts = LoginThrottle()


def _safe_next(raw: str) -> str | None:
    # Local paths only; "//host" would leave the site.
    if raw.startswith("/") and not raw.startswith("//"):
        return raw
    return None


def _usable(user: User | None) -> bool:
    return bool(user and user.is_active and user.company and user.company.is_active)


def load_current_user() -> None:
    """
    Resolve g.current_user from the session cookie and stamp g.request_id.

    Users that are inactive, or whose company is inactive, are logged out on
    their next request.
    """
    g.request_id = getattr(g, "request_id", None) or uuid.uuid4().hex
    g.current_user = None
    if request.path.startswith(SKIP_USER_LOAD):
        return

    user_id = session.get("user_id")
    if not user_id:
        return
    try:
        user = db_session().get(User, int(user_id))
    except Exception as e:
        current_app.logger.error("Could not load session user %s, clearing session: %s", user_id, e)
        session.pop("user_id", None)
        return
    if not _usable(user):
        session.pop("user_id", None)
        return
    g.current_user = user


def _authenticate(s: Session, email: str, password: str) -> User | None:
    user = s.query(User).filter(User.email == email).one_or_none()
    if user is None or not user.is_active:
        return None
    if not check_password_hash(user.password_hash, password):
        return None
    return user


@bp.get("/login")
def login_get():
    return render_template("auth/login.html", next=(request.args.get("next") or "").strip())


@bp.post("/login")
def login_post():
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    target = _safe_next((request.form.get("next") or "").strip())
    ip = request.remote_addr or "unknown"

    if _login_attempts.blocked(ip):
        flash("Too many login attempts. Please wait 5 minutes.", "danger")
        return redirect(url_for("auth.login_get"))
    _login_attempts.hit(ip)

    s = db_session()
    user = _authenticate(s, email, password)
    if user is None:
        known = s.query(User.company_id).filter(User.email == email).scalar()
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            reason="Invalid credentials",
            metadata={"email": email},
            company_id=known,
        )
        s.commit()
        current_app.logger.warning("Failed login for %s from %s", email, ip)
        flash("Invalid credentials.", "danger")
        return redirect(url_for("auth.login_get"))

    session["user_id"] = user.id
    user.last_login_at = datetime.utcnow()
    _login_attempts.reset(ip)
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
    s.commit()
    current_app.logger.info("User %s logged in (request_id=%s)", user.id, g.request_id)
    return redirect(target or url_for("admin.index"))


@bp.get("/logout")
def logout():
    user = getattr(g, "current_user", None)
    if user is not None:
        s = db_session()
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.pop("user_id", None)
    return redirect(url_for("routes.index"))
