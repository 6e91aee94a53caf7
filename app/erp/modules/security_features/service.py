"""
Security features: audit trail, alerts, encryption keys, compliance,
privacy requests and incident response.

Encryption keys are per-company AES-256 data keys stored wrapped with the
master key (see app.erp.crypto). encrypt/decrypt never raise on a bad key or
token; they record a failed EncryptionLog row and hand it back so the caller
can commit the log and still answer with an error.
"""
from __future__ import annotations

import logging
import secrets
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from app.erp.api import require_fields
from app.erp.audit import record_event
from app.erp.crypto import EncryptionError, decrypt_text, encrypt_text, generate_key, unwrap_key, wrap_key
from app.erp.models import Permission, Role, RolePermission, User, UserRole
from app.erp.querying import FilterBuilder, get_scoped, hour_bucket, pct

from .models import (
    ComplianceControl,
    DataSubjectRequest,
    EncryptionKey,
    EncryptionLog,
    SecurityAlert,
    SecurityAlertNotification,
    SecurityAuditLog,
    SecurityIncident,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)

SEVERITIES = ("low", "medium", "high", "critical")
ALERT_STATUSES = ("new", "acknowledged", "resolved")
KEY_STATUSES = ("active", "rotated", "revoked")
CONTROL_STATUSES = ("compliant", "non_compliant", "in_progress")
DSR_TYPES = ("access", "erasure", "rectification", "portability")
DSR_OPEN_STATUSES = ("pending", "in_progress")
INCIDENT_STATUSES = ("open", "contained", "resolved")

ALERT_RECIPIENT_PERMISSION = "security.monitoring.view"
DSR_DUE_DAYS = 30
AUDIT_PAGE_LIMIT = 1000


def _number(prefix: str) -> str:
    return f"{prefix}-{datetime.utcnow():%Y%m%d}-{secrets.token_hex(3).upper()}"


def _check_choice(value: Any, choices: tuple[str, ...], label: str) -> str:
    value = str(value or "").strip()
    if value not in choices:
        raise ValueError(f"Invalid {label}. Must be one of: {', '.join(choices)}")
    return value


# ---------- Reads / aggregates ----------


def dashboard_stats(s: Session, company_id: int, *, now: datetime | None = None) -> dict[str, Any]:
    now = now or datetime.utcnow()

    alerts_by_severity = dict(
        s.execute(
            select(SecurityAlert.severity, func.count(SecurityAlert.id))
            .where(SecurityAlert.company_id == company_id, SecurityAlert.status != "resolved")
            .group_by(SecurityAlert.severity)
        ).all()
    )
    events_24h = s.execute(
        select(func.count(SecurityAuditLog.id)).where(
            SecurityAuditLog.company_id == company_id, SecurityAuditLog.created_at >= now - timedelta(hours=24)
        )
    ).scalar_one()
    enc_total, enc_ok = s.execute(
        select(
            func.count(EncryptionLog.id),
            func.coalesce(func.sum(case((EncryptionLog.status == "success", 1), else_=0)), 0),
        ).where(EncryptionLog.company_id == company_id)
    ).one()
    open_incidents = s.execute(
        select(func.count(SecurityIncident.id)).where(
            SecurityIncident.company_id == company_id, SecurityIncident.status != "resolved"
        )
    ).scalar_one()
    pending_requests = s.execute(
        select(func.count(DataSubjectRequest.id)).where(
            DataSubjectRequest.company_id == company_id, DataSubjectRequest.status.in_(DSR_OPEN_STATUSES)
        )
    ).scalar_one()

    return {
        "alerts_by_severity": alerts_by_severity,
        "open_alerts": sum(alerts_by_severity.values()),
        "audit_events_24h": events_24h,
        "encryption_success_rate": pct(enc_ok, enc_total),
        "compliance_score": compliance_score(s, company_id),
        "open_incidents": open_incidents,
        "pending_privacy_requests": pending_requests,
    }


def compliance_score(s: Session, company_id: int) -> float | None:
    total, compliant = s.execute(
        select(
            func.count(ComplianceControl.id),
            func.coalesce(func.sum(case((ComplianceControl.status == "compliant", 1), else_=0)), 0),
        ).where(ComplianceControl.company_id == company_id)
    ).one()
    return pct(compliant, total)


def compliance_by_framework(s: Session, company_id: int) -> list[dict[str, Any]]:
    rows = s.execute(
        select(
            ComplianceControl.framework,
            func.count(ComplianceControl.id),
            func.coalesce(func.sum(case((ComplianceControl.status == "compliant", 1), else_=0)), 0),
            func.coalesce(func.sum(case((ComplianceControl.status == "non_compliant", 1), else_=0)), 0),
        )
        .where(ComplianceControl.company_id == company_id)
        .group_by(ComplianceControl.framework)
        .order_by(ComplianceControl.framework)
    ).all()
    return [
        {"framework": fw, "controls": total, "compliant": ok, "non_compliant": bad, "score": pct(ok, total)}
        for fw, total, ok, bad in rows
    ]


def audit_log_query(s: Session, company_id: int, args: Mapping[str, Any]):
    fb = FilterBuilder(SecurityAuditLog, company_id)
    user_id = str(args.get("user_id") or "").strip()
    fb.add(SecurityAuditLog.user_id, "eq", int(user_id) if user_id.isdigit() else None)
    fb.add(SecurityAuditLog.action, "like", args.get("action"))
    fb.add(SecurityAuditLog.resource_type, "eq", args.get("resource_type"))
    fb.add(SecurityAuditLog.severity, "eq", args.get("severity"))
    fb.date_range("created_at", args.get("date_from"), args.get("date_to"))
    return (
        fb.apply(s.query(SecurityAuditLog))
        .order_by(SecurityAuditLog.created_at.desc(), SecurityAuditLog.id.desc())
        .limit(AUDIT_PAGE_LIMIT)
    )


def encryption_overview(s: Session, company_id: int) -> dict[str, Any]:
    keys = (
        s.query(EncryptionKey)
        .filter(EncryptionKey.company_id == company_id)
        .order_by(EncryptionKey.created_at.desc(), EncryptionKey.id.desc())
        .all()
    )
    ops = s.execute(
        select(EncryptionLog.operation, EncryptionLog.status, func.count(EncryptionLog.id))
        .where(EncryptionLog.company_id == company_id)
        .group_by(EncryptionLog.operation, EncryptionLog.status)
        .order_by(EncryptionLog.operation, EncryptionLog.status)
    ).all()
    return {
        "keys": keys,
        "operations": [{"operation": op, "status": st, "count": n} for op, st, n in ops],
    }


def privacy_requests(s: Session, company_id: int, *, today: date | None = None) -> list[dict[str, Any]]:
    today = today or date.today()
    rows = (
        s.query(DataSubjectRequest)
        .filter(DataSubjectRequest.company_id == company_id)
        .order_by(DataSubjectRequest.due_date.asc(), DataSubjectRequest.id.asc())
        .all()
    )
    return [
        {
            "id": r.id,
            "request_type": r.request_type,
            "subject_email": r.subject_email,
            "status": r.status,
            "due_date": r.due_date,
            "overdue": r.status in DSR_OPEN_STATUSES and r.due_date < today,
            "created_at": r.created_at,
        }
        for r in rows
    ]


def monitoring_overview(s: Session, company_id: int, *, now: datetime | None = None) -> dict[str, Any]:
    now = now or datetime.utcnow()
    open_alerts = (
        s.query(SecurityAlert)
        .filter(SecurityAlert.company_id == company_id, SecurityAlert.status != "resolved")
        .order_by(SecurityAlert.created_at.desc(), SecurityAlert.id.desc())
        .all()
    )
    bucket = hour_bucket(s, SecurityAuditLog.created_at)
    per_hour = s.execute(
        select(bucket, func.count(SecurityAuditLog.id))
        .where(SecurityAuditLog.company_id == company_id, SecurityAuditLog.created_at >= now - timedelta(hours=24))
        .group_by(bucket)
        .order_by(bucket)
    ).all()
    return {
        "open_alerts": open_alerts,
        "events_per_hour": [{"hour": h, "events": n} for h, n in per_hour],
    }


def access_control_overview(s: Session, company_id: int) -> dict[str, Any]:
    perm_counts = dict(
        s.execute(select(RolePermission.role_id, func.count(RolePermission.permission_id)).group_by(RolePermission.role_id)).all()
    )
    user_counts = dict(
        s.execute(
            select(UserRole.role_id, func.count(UserRole.user_id))
            .join(User, User.id == UserRole.user_id)
            .where(User.company_id == company_id)
            .group_by(UserRole.role_id)
        ).all()
    )
    roles = s.query(Role).order_by(Role.key).all()
    users = s.query(User).filter(User.company_id == company_id).order_by(User.email).all()
    return {
        "roles": [
            {"key": r.key, "name": r.name, "permissions": perm_counts.get(r.id, 0), "users": user_counts.get(r.id, 0)}
            for r in roles
        ],
        "users": [
            {"email": u.email, "is_active": u.is_active, "roles": ", ".join(sorted(r.key for r in u.roles)), "last_login_at": u.last_login_at}
            for u in users
        ],
    }


def incident_overview(s: Session, company_id: int) -> dict[str, Any]:
    incidents = (
        s.query(SecurityIncident)
        .filter(SecurityIncident.company_id == company_id)
        .order_by(SecurityIncident.detected_at.desc(), SecurityIncident.id.desc())
        .all()
    )
    hours = [
        (i.resolved_at - i.detected_at).total_seconds() / 3600
        for i in incidents
        if i.status == "resolved" and i.resolved_at is not None
    ]
    by_status: dict[str, int] = {}
    for i in incidents:
        by_status[i.status] = by_status.get(i.status, 0) + 1
    return {
        "incidents": incidents,
        "by_status": by_status,
        "mttr_hours": round(sum(hours) / len(hours), 2) if hours else None,
    }


# ---------- Audit log + alerts ----------


def log_audit_event(
    s: Session,
    payload: dict,
    *,
    user: User,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> SecurityAuditLog:
    require_fields(payload, ("action", "resource_type"))
    severity = _check_choice(payload.get("severity") or "low", SEVERITIES, "severity")
    details = payload.get("details")
    if details is not None and not isinstance(details, dict):
        raise ValueError("details must be an object")

    row = SecurityAuditLog(
        company_id=user.company_id,
        user_id=user.id,
        action=str(payload["action"]).strip(),
        resource_type=str(payload["resource_type"]).strip(),
        resource_id=str(payload["resource_id"]) if payload.get("resource_id") not in (None, "") else None,
        severity=severity,
        ip_address=ip_address,
        user_agent=(user_agent or "")[:512] or None,
        details=details,
    )
    s.add(row)
    s.flush()
    if severity in ("high", "critical"):
        logger.warning("security audit event action=%s severity=%s company=%s", row.action, severity, user.company_id)
    return row


def alert_recipients(s: Session, company_id: int) -> list[User]:
    return (
        s.query(User)
        .join(UserRole, UserRole.user_id == User.id)
        .join(RolePermission, RolePermission.role_id == UserRole.role_id)
        .join(Permission, Permission.id == RolePermission.permission_id)
        .filter(
            User.company_id == company_id,
            User.is_active.is_(True),
            Permission.key == ALERT_RECIPIENT_PERMISSION,
        )
        .distinct()
        .all()
    )


def create_security_alert(s: Session, payload: dict, *, user: User) -> tuple[SecurityAlert, int]:
    require_fields(payload, ("alert_type", "severity", "title"))
    severity = _check_choice(payload.get("severity"), SEVERITIES, "severity")

    alert = SecurityAlert(
        company_id=user.company_id,
        alert_type=str(payload["alert_type"]).strip(),
        severity=severity,
        title=str(payload["title"]).strip(),
        description=payload.get("description"),
        source=payload.get("source"),
        status="new",
    )
    s.add(alert)
    s.flush()

    recipients = alert_recipients(s, user.company_id)
    for r in recipients:
        s.add(SecurityAlertNotification(alert_id=alert.id, user_id=r.id, status="pending"))

    record_event(
        s,
        actor=user,
        action="security.alert.create",
        entity_type="SecurityAlert",
        entity_id=str(alert.id),
        metadata={"severity": severity, "notified": len(recipients)},
    )
    return alert, len(recipients)


def update_alert_status(s: Session, alert: SecurityAlert, status: Any, *, user: User) -> SecurityAlert:
    status = _check_choice(status, ALERT_STATUSES, "status")
    alert.status = status
    alert.resolved_at = datetime.utcnow() if status == "resolved" else None
    record_event(
        s,
        actor=user,
        action="security.alert.status",
        entity_type="SecurityAlert",
        entity_id=str(alert.id),
        metadata={"status": status},
    )
    return alert


# ---------- Encryption ----------


def create_encryption_key(s: Session, payload: dict, *, user: User, master_secret: str) -> EncryptionKey:
    require_fields(payload, ("key_name",))
    key = EncryptionKey(
        company_id=user.company_id,
        key_name=str(payload["key_name"]).strip(),
        key_material=wrap_key(master_secret, generate_key()),
        status="active",
        created_by_user_id=user.id,
    )
    s.add(key)
    s.flush()
    record_event(
        s,
        actor=user,
        action="security.key.create",
        entity_type="EncryptionKey",
        entity_id=str(key.id),
        metadata={"key_name": key.key_name, "algorithm": key.algorithm},
    )
    return key


def rotate_encryption_key(s: Session, key: EncryptionKey, *, user: User, master_secret: str) -> EncryptionKey:
    if key.status != "active":
        raise ValueError("Only active keys can be rotated")
    now = datetime.utcnow()
    key.status = "rotated"
    key.rotated_at = now

    replacement = EncryptionKey(
        company_id=key.company_id,
        key_name=key.key_name,
        algorithm=key.algorithm,
        key_material=wrap_key(master_secret, generate_key()),
        status="active",
        created_by_user_id=user.id,
        created_at=now,
    )
    s.add(replacement)
    s.flush()
    record_event(
        s,
        actor=user,
        action="security.key.rotate",
        entity_type="EncryptionKey",
        entity_id=str(key.id),
        metadata={"replacement_id": replacement.id},
    )
    return replacement


def _log_operation(s: Session, *, user: User, key_id: int | None, operation: str, error: str | None) -> EncryptionLog:
    log = EncryptionLog(
        company_id=user.company_id,
        key_id=key_id,
        operation=operation,
        status="failure" if error else "success",
        error_message=error,
        user_id=user.id,
    )
    s.add(log)
    s.flush()
    if error:
        logger.warning("%s failed key_id=%s company=%s: %s", operation, key_id, user.company_id, error)
    return log


def _usable_key(s: Session, key_id: Any, company_id: int, allowed: tuple[str, ...]) -> EncryptionKey:
    key = get_scoped(s, EncryptionKey, key_id, company_id)
    if key is None:
        raise EncryptionError("Encryption key not found")
    if key.status not in allowed:
        raise EncryptionError(f"Encryption key is {key.status}")
    return key


def encrypt_data(
    s: Session, key_id: Any, plaintext: Any, *, user: User, master_secret: str
) -> tuple[EncryptionLog, str | None]:
    key_ref = None
    try:
        if not isinstance(plaintext, str) or plaintext == "":
            raise EncryptionError("data is required")
        key = _usable_key(s, key_id, user.company_id, ("active",))
        key_ref = key.id
        token = encrypt_text(unwrap_key(master_secret, key.key_material), plaintext)
    except EncryptionError as e:
        return _log_operation(s, user=user, key_id=key_ref, operation="encrypt", error=str(e)), None
    return _log_operation(s, user=user, key_id=key_ref, operation="encrypt", error=None), token


def decrypt_data(
    s: Session, key_id: Any, token: Any, *, user: User, master_secret: str
) -> tuple[EncryptionLog, str | None]:
    key_ref = None
    try:
        if not isinstance(token, str) or token == "":
            raise EncryptionError("data is required")
        key = _usable_key(s, key_id, user.company_id, ("active", "rotated"))
        key_ref = key.id
        plaintext = decrypt_text(unwrap_key(master_secret, key.key_material), token)
    except (EncryptionError, UnicodeDecodeError) as e:
        return _log_operation(s, user=user, key_id=key_ref, operation="decrypt", error=str(e)), None
    return _log_operation(s, user=user, key_id=key_ref, operation="decrypt", error=None), plaintext


# ---------- Compliance + privacy ----------


def upsert_compliance_control(s: Session, payload: dict, *, user: User) -> ComplianceControl:
    require_fields(payload, ("framework", "control_ref", "title"))
    status = _check_choice(payload.get("status") or "in_progress", CONTROL_STATUSES, "status")
    framework = str(payload["framework"]).strip()
    ref = str(payload["control_ref"]).strip()

    row = (
        s.query(ComplianceControl)
        .filter(
            ComplianceControl.company_id == user.company_id,
            ComplianceControl.framework == framework,
            ComplianceControl.control_ref == ref,
        )
        .one_or_none()
    )
    if row is None:
        row = ComplianceControl(company_id=user.company_id, framework=framework, control_ref=ref)
        s.add(row)
    row.title = str(payload["title"]).strip()
    row.status = status
    row.last_reviewed_at = datetime.utcnow()
    s.flush()
    record_event(
        s,
        actor=user,
        action="security.compliance.review",
        entity_type="ComplianceControl",
        entity_id=str(row.id),
        metadata={"framework": framework, "control_ref": ref, "status": status},
    )
    return row


def create_data_subject_request(s: Session, payload: dict, *, user: User, today: date | None = None) -> DataSubjectRequest:
    require_fields(payload, ("request_type", "subject_email"))
    request_type = _check_choice(payload.get("request_type"), DSR_TYPES, "request type")
    email = str(payload["subject_email"]).strip().lower()
    if "@" not in email:
        raise ValueError("subject_email must be a valid email")

    row = DataSubjectRequest(
        company_id=user.company_id,
        request_type=request_type,
        subject_email=email,
        status="pending",
        due_date=(today or date.today()) + timedelta(days=DSR_DUE_DAYS),
        notes=payload.get("notes"),
    )
    s.add(row)
    s.flush()
    record_event(
        s,
        actor=user,
        action="security.privacy_request.create",
        entity_type="DataSubjectRequest",
        entity_id=str(row.id),
        metadata={"request_type": request_type},
    )
    return row


# ---------- Incidents ----------


def create_incident(s: Session, payload: dict, *, user: User) -> SecurityIncident:
    require_fields(payload, ("title",))
    severity = _check_choice(payload.get("severity") or "medium", SEVERITIES, "severity")

    alert_id = payload.get("alert_id")
    if alert_id not in (None, ""):
        alert = get_scoped(s, SecurityAlert, alert_id, user.company_id)
        if alert is None:
            raise ValueError("Security alert not found")
        alert_id = alert.id
        if alert.status == "new":
            alert.status = "acknowledged"
    else:
        alert_id = None

    incident = SecurityIncident(
        company_id=user.company_id,
        incident_number=_number("INC"),
        title=str(payload["title"]).strip(),
        description=payload.get("description"),
        severity=severity,
        status="open",
        alert_id=alert_id,
        reported_by_user_id=user.id,
    )
    s.add(incident)
    s.flush()
    record_event(
        s,
        actor=user,
        action="security.incident.create",
        entity_type="SecurityIncident",
        entity_id=str(incident.id),
        metadata={"incident_number": incident.incident_number, "severity": severity},
    )
    return incident


def resolve_incident(s: Session, incident: SecurityIncident, payload: dict, *, user: User) -> SecurityIncident:
    require_fields(payload, ("resolution",))
    if incident.status == "resolved":
        raise ValueError("Incident is already resolved")
    incident.status = "resolved"
    incident.resolution = str(payload["resolution"]).strip()
    incident.resolved_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="security.incident.resolve",
        entity_type="SecurityIncident",
        entity_id=str(incident.id),
        metadata={"incident_number": incident.incident_number},
    )
    return incident
