from __future__ import annotations

from flask import Blueprint, current_app, request

from app.erp.api import NotFound, get_payload, json_endpoint, json_error, json_success, model_to_dict
from app.erp.db import db_session
from app.erp.modules.security_features import service as svc
from app.erp.modules.security_features.models import EncryptionKey, SecurityAlert, SecurityIncident
from app.erp.pages import render_module_page, stat_list, table
from app.erp.querying import get_scoped
from app.erp.rbac import require_permission
from app.erp.tenancy import current_company_id, current_user

bp = Blueprint("security_features", __name__)

SUBNAV = [
    ("Dashboard", "security_features.index", "security.view"),
    ("Encryption", "security_features.encryption", "security.encryption.view"),
    ("Audit trail", "security_features.audit_trail", "security.audit.view"),
    ("Compliance", "security_features.compliance", "security.compliance.view"),
    ("Privacy", "security_features.privacy", "security.privacy.view"),
    ("Monitoring", "security_features.monitoring", "security.monitoring.view"),
    ("Access control", "security_features.access_control", "security.access.view"),
    ("Incident response", "security_features.incident_response", "security.incidents.view"),
]

ALERT_COLUMNS = [
    ("created_at", "Raised"),
    ("alert_type", "Type"),
    ("severity", "Severity"),
    ("title", "Title"),
    ("source", "Source"),
    ("status", "Status"),
]
AUDIT_COLUMNS = [
    ("created_at", "When"),
    ("user_email", "User"),
    ("action", "Action"),
    ("resource_type", "Resource"),
    ("resource_id", "ID"),
    ("severity", "Severity"),
    ("ip_address", "IP"),
]
INCIDENT_COLUMNS = [
    ("incident_number", "Incident #"),
    ("title", "Title"),
    ("severity", "Severity"),
    ("status", "Status"),
    ("detected_at", "Detected"),
    ("resolved_at", "Resolved"),
]


def _master_secret() -> str:
    return current_app.config.get("ENCRYPTION_MASTER_KEY") or current_app.config["SECRET_KEY"]


def _audit_row(log) -> dict:
    row = model_to_dict(log)
    row["user_email"] = log.user.email if log.user else None
    return row


# ---------- Pages ----------


@bp.get("/")
@require_permission("security.view")
def index():
    s = db_session()
    cid = current_company_id()
    stats = svc.dashboard_stats(s, cid)
    monitoring = svc.monitoring_overview(s, cid)
    return render_module_page(
        "security_features",
        page_title="Security",
        subnav=SUBNAV,
        stats=stat_list(
            {
                "Open alerts": stats["open_alerts"],
                "Audit events (24h)": stats["audit_events_24h"],
                "Encryption success %": stats["encryption_success_rate"],
                "Compliance score %": stats["compliance_score"],
                "Open incidents": stats["open_incidents"],
                "Pending privacy requests": stats["pending_privacy_requests"],
            }
        ),
        tables=[
            table(
                "Open alerts by severity",
                [("severity", "Severity"), ("count", "Alerts")],
                [{"severity": k, "count": v} for k, v in sorted(stats["alerts_by_severity"].items())],
            ),
            table("Latest alerts", ALERT_COLUMNS, monitoring["open_alerts"][:10]),
        ],
    )


@bp.get("/encryption")
@require_permission("security.encryption.view")
def encryption():
    s = db_session()
    overview = svc.encryption_overview(s, current_company_id())
    return render_module_page(
        "security_features",
        page_title="Encryption",
        subnav=SUBNAV,
        stats=stat_list(
            {
                "Keys": len(overview["keys"]),
                "Active keys": sum(1 for k in overview["keys"] if k.status == "active"),
            }
        ),
        tables=[
            table(
                "Keys",
                [("key_name", "Key"), ("algorithm", "Algorithm"), ("status", "Status"), ("created_at", "Created"), ("rotated_at", "Rotated")],
                [model_to_dict(k, exclude=("key_material",)) for k in overview["keys"]],
            ),
            table("Operations", [("operation", "Operation"), ("status", "Status"), ("count", "Count")], overview["operations"]),
        ],
    )


@bp.get("/audit")
@require_permission("security.audit.view")
def audit_trail():
    s = db_session()
    rows = svc.audit_log_query(s, current_company_id(), request.args).all()
    return render_module_page(
        "security_features",
        page_title="Security audit trail",
        subnav=SUBNAV,
        filters={
            "user_id": ("User id", None),
            "action": ("Action", None),
            "resource_type": ("Resource type", None),
            "severity": ("Severity", ("all",) + svc.SEVERITIES),
            "date_from": ("From", "date"),
            "date_to": ("To", "date"),
        },
        tables=[table("Events", AUDIT_COLUMNS, [_audit_row(r) for r in rows])],
    )


@bp.get("/compliance")
@require_permission("security.compliance.view")
def compliance():
    s = db_session()
    cid = current_company_id()
    return render_module_page(
        "security_features",
        page_title="Compliance",
        subnav=SUBNAV,
        stats=stat_list({"Overall score %": svc.compliance_score(s, cid)}),
        tables=[
            table(
                "Frameworks",
                [("framework", "Framework"), ("controls", "Controls"), ("compliant", "Compliant"), ("non_compliant", "Non-compliant"), ("score", "Score %")],
                svc.compliance_by_framework(s, cid),
            )
        ],
    )


@bp.get("/privacy")
@require_permission("security.privacy.view")
def privacy():
    s = db_session()
    rows = svc.privacy_requests(s, current_company_id())
    return render_module_page(
        "security_features",
        page_title="Data privacy",
        subnav=SUBNAV,
        stats=stat_list(
            {
                "Requests": len(rows),
                "Open": sum(1 for r in rows if r["status"] in svc.DSR_OPEN_STATUSES),
                "Overdue": sum(1 for r in rows if r["overdue"]),
            }
        ),
        tables=[
            table(
                "Data subject requests",
                [("request_type", "Type"), ("subject_email", "Subject"), ("status", "Status"), ("due_date", "Due"), ("overdue", "Overdue")],
                rows,
            )
        ],
    )


@bp.get("/monitoring")
@require_permission("security.monitoring.view")
def monitoring():
    s = db_session()
    data = svc.monitoring_overview(s, current_company_id())
    return render_module_page(
        "security_features",
        page_title="Security monitoring",
        subnav=SUBNAV,
        stats=stat_list({"Open alerts": len(data["open_alerts"])}),
        tables=[
            table("Open alerts", ALERT_COLUMNS, data["open_alerts"]),
            table("Events per hour (24h)", [("hour", "Hour"), ("events", "Events")], data["events_per_hour"]),
        ],
    )


@bp.get("/access-control")
@require_permission("security.access.view")
def access_control():
    s = db_session()
    data = svc.access_control_overview(s, current_company_id())
    return render_module_page(
        "security_features",
        page_title="Access control",
        subnav=SUBNAV,
        tables=[
            table("Roles", [("key", "Role"), ("name", "Name"), ("permissions", "Permissions"), ("users", "Users")], data["roles"]),
            table("Users", [("email", "User"), ("roles", "Roles"), ("is_active", "Active"), ("last_login_at", "Last login")], data["users"]),
        ],
    )


@bp.get("/incidents")
@require_permission("security.incidents.view")
def incident_response():
    s = db_session()
    data = svc.incident_overview(s, current_company_id())
    return render_module_page(
        "security_features",
        page_title="Incident response",
        subnav=SUBNAV,
        stats=stat_list(
            {
                "Open": data["by_status"].get("open", 0),
                "Contained": data["by_status"].get("contained", 0),
                "Resolved": data["by_status"].get("resolved", 0),
                "MTTR (hours)": data["mttr_hours"],
            }
        ),
        tables=[table("Incidents", INCIDENT_COLUMNS, data["incidents"])],
    )


# ---------- JSON API ----------


@bp.post("/api/audit-events")
@require_permission("security.audit.create")
@json_endpoint
def api_log_audit_event():
    row = svc.log_audit_event(
        db_session(),
        get_payload(),
        user=current_user(),
        ip_address=request.remote_addr,
        user_agent=request.headers.get("User-Agent"),
    )
    return json_success({"log_id": row.id}, message="Audit event logged", status=201)


@bp.post("/api/alerts")
@require_permission("security.monitoring.create")
@json_endpoint
def api_create_alert():
    alert, notified = svc.create_security_alert(db_session(), get_payload(), user=current_user())
    return json_success({"alert_id": alert.id, "notified_users": notified}, message="Security alert created", status=201)


@bp.post("/api/alerts/<int:alert_id>/status")
@require_permission("security.monitoring.create")
@json_endpoint
def api_update_alert_status(alert_id: int):
    s = db_session()
    alert = get_scoped(s, SecurityAlert, alert_id, current_company_id())
    if alert is None:
        raise NotFound("Security alert not found")
    svc.update_alert_status(s, alert, get_payload().get("status"), user=current_user())
    return json_success({"alert_id": alert.id, "status": alert.status})


@bp.post("/api/keys")
@require_permission("security.encryption.manage")
@json_endpoint
def api_create_key():
    key = svc.create_encryption_key(db_session(), get_payload(), user=current_user(), master_secret=_master_secret())
    return json_success({"key_id": key.id, "algorithm": key.algorithm}, message="Encryption key created", status=201)


@bp.post("/api/keys/<int:key_id>/rotate")
@require_permission("security.encryption.manage")
@json_endpoint
def api_rotate_key(key_id: int):
    s = db_session()
    key = get_scoped(s, EncryptionKey, key_id, current_company_id())
    if key is None:
        raise NotFound("Encryption key not found")
    replacement = svc.rotate_encryption_key(s, key, user=current_user(), master_secret=_master_secret())
    return json_success({"old_key_id": key.id, "new_key_id": replacement.id}, message="Encryption key rotated")


@bp.post("/api/encrypt")
@require_permission("security.encryption.use")
@json_endpoint
def api_encrypt():
    payload = get_payload()
    log, token = svc.encrypt_data(
        db_session(), payload.get("key_id"), payload.get("data"), user=current_user(), master_secret=_master_secret()
    )
    if token is None:
        return json_error(log.error_message or "Encryption failed", 400)
    return json_success({"encrypted_data": token, "key_id": log.key_id})


@bp.post("/api/decrypt")
@require_permission("security.encryption.use")
@json_endpoint
def api_decrypt():
    payload = get_payload()
    log, plaintext = svc.decrypt_data(
        db_session(), payload.get("key_id"), payload.get("data"), user=current_user(), master_secret=_master_secret()
    )
    if plaintext is None:
        return json_error(log.error_message or "Decryption failed", 400)
    return json_success({"decrypted_data": plaintext, "key_id": log.key_id})


@bp.post("/api/compliance-controls")
@require_permission("security.compliance.manage")
@json_endpoint
def api_upsert_control():
    row = svc.upsert_compliance_control(db_session(), get_payload(), user=current_user())
    return json_success({"control_id": row.id, "status": row.status})


@bp.post("/api/privacy-requests")
@require_permission("security.privacy.manage")
@json_endpoint
def api_create_privacy_request():
    row = svc.create_data_subject_request(db_session(), get_payload(), user=current_user())
    return json_success({"request_id": row.id, "due_date": row.due_date}, message="Privacy request logged", status=201)


@bp.post("/api/incidents")
@require_permission("security.incidents.manage")
@json_endpoint
def api_create_incident():
    incident = svc.create_incident(db_session(), get_payload(), user=current_user())
    return json_success(
        {"incident_id": incident.id, "incident_number": incident.incident_number},
        message="Incident opened",
        status=201,
    )


@bp.post("/api/incidents/<int:incident_id>/resolve")
@require_permission("security.incidents.manage")
@json_endpoint
def api_resolve_incident(incident_id: int):
    s = db_session()
    incident = get_scoped(s, SecurityIncident, incident_id, current_company_id())
    if incident is None:
        raise NotFound("Incident not found")
    svc.resolve_incident(s, incident, get_payload(), user=current_user())
    return json_success({"incident_id": incident.id, "resolved_at": incident.resolved_at}, message="Incident resolved")
