from datetime import datetime, time, timedelta

from flask import Blueprint, current_app, flash, g, render_template, request
from sqlalchemy import text

from app.erp.db import db_session
from app.erp.models import AuditEvent
from app.erp.modules import MODULES
from app.erp.querying import parse_date
from app.erp.rbac import require_permission, user_has_permission
from app.erp.tenancy import current_company_id

bp = Blueprint("admin", __name__)

AUDIT_LIMIT = 200


@bp.get("/")
@require_permission("admin.view")
def index():
    s = db_session()
    user = g.current_user
    status = {
        "env": (current_app.config.get("ENV") or "development").strip().lower(),
        "db_connected": False,
        "db_error": None,
        "storage_backend": current_app.config.get("STORAGE_BACKEND") or "local",
        "storage_configured": True,
        "storage_error": None,
    }

    try:
        s.execute(text("SELECT 1"))
        status["db_connected"] = True
    except Exception as e:
        current_app.logger.warning("Admin status DB check failed: %s", e)
        status["db_error"] = str(e)

    if status["storage_backend"] == "s3":
        missing = [
            k
            for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not current_app.config.get(k)
        ]
        status["storage_configured"] = not missing
        if missing:
            status["storage_error"] = f"Missing: {', '.join(missing)}"

    modules = [m for m in MODULES if user_has_permission(user, m.permission)]
    return render_template("admin/index.html", modules=modules, status=status)


@bp.get("/audit")
@require_permission("admin.audit.view")
def audit_list():
    """
    Company audit trail (last 200 events) with filters:
    - action (contains)
    - actor_email (contains)
    - date range (YYYY-MM-DD, inclusive)
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    actor_email = (request.args.get("actor_email") or "").strip()
    raw_from = (request.args.get("date_from") or "").strip()
    raw_to = (request.args.get("date_to") or "").strip()
    date_from = parse_date(raw_from)
    date_to = parse_date(raw_to)

    if raw_from and not date_from:
        flash("date_from must be YYYY-MM-DD", "danger")
    if raw_to and not date_to:
        flash("date_to must be YYYY-MM-DD", "danger")

    q = s.query(AuditEvent).filter(AuditEvent.company_id == current_company_id())
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor_email.lower()}%"))
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(AUDIT_LIMIT).all()
    return render_template(
        "admin/audit.html",
        events=events,
        action=action,
        actor_email=actor_email,
        date_from=raw_from,
        date_to=raw_to,
    )
