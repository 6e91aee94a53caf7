"""
API marketplace service layer.

Catalogue of company APIs, third-party developers and their applications,
API keys, webhooks, and the usage log the gateway writes through
`track_api_usage`.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import requests
from sqlalchemy import case, func, select
from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

from app.erp.api import EMAIL_RE, require_fields, validate_payload
from app.erp.audit import record_event
from app.erp.querying import FilterBuilder, day_bucket, get_scoped, parse_datetime, pct

from .models import Api, ApiAppCredential, ApiApplication, ApiDeveloper, ApiKey, ApiUsage, ApiWebhook

if TYPE_CHECKING:
    from collections.abc import Mapping

    from app.erp.models import User

logger = logging.getLogger(__name__)

API_STATUSES = ("draft", "published", "deprecated")
DEVELOPER_STATUSES = ("pending", "approved", "suspended")
KEY_STATUSES = ("active", "revoked")
HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")
DEFAULT_RATE_LIMIT = 1000
SIGNATURE_HEADER = "X-Webhook-Signature"
KEY_RULES = {"rate_limit": {"type": "int", "min": 1, "default": DEFAULT_RATE_LIMIT}}


def _check_choice(value: Any, choices: tuple[str, ...], label: str) -> str:
    value = str(value or "").strip()
    if value not in choices:
        raise ValueError(f"Invalid {label}. Must be one of: {', '.join(choices)}")
    return value


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


# ---------- Reads / aggregates ----------


def dashboard_stats(s: Session, company_id: int, *, now: datetime | None = None) -> dict[str, Any]:
    now = now or datetime.utcnow()
    day_start = datetime(now.year, now.month, now.day)

    apis_by_status = dict(
        s.execute(
            select(Api.status, func.count(Api.id)).where(Api.company_id == company_id).group_by(Api.status)
        ).all()
    )
    developers = s.execute(select(func.count(ApiDeveloper.id)).where(ApiDeveloper.company_id == company_id)).scalar_one()
    applications = s.execute(
        select(func.count(ApiApplication.id)).where(ApiApplication.company_id == company_id)
    ).scalar_one()
    active_keys = s.execute(
        select(func.count(ApiKey.id)).where(ApiKey.company_id == company_id, ApiKey.status == "active")
    ).scalar_one()
    requests_today = s.execute(
        select(func.count(ApiUsage.id)).where(ApiUsage.company_id == company_id, ApiUsage.created_at >= day_start)
    ).scalar_one()
    total, errors, avg_ms = s.execute(
        select(
            func.count(ApiUsage.id),
            func.coalesce(func.sum(case((ApiUsage.status_code >= 400, 1), else_=0)), 0),
            func.avg(ApiUsage.response_time_ms),
        ).where(ApiUsage.company_id == company_id, ApiUsage.created_at >= now - timedelta(days=30))
    ).one()

    return {
        "apis_by_status": apis_by_status,
        "total_apis": sum(apis_by_status.values()),
        "developers": developers,
        "applications": applications,
        "active_keys": active_keys,
        "requests_today": requests_today,
        "avg_response_time": round(float(avg_ms), 1) if avg_ms is not None else None,
        "error_rate": pct(errors, total),
    }


def list_apis(s: Session, company_id: int, args: Mapping[str, Any]):
    fb = FilterBuilder(Api, company_id)
    fb.add(Api.status, "eq", args.get("status", "published"))
    fb.add(Api.category, "eq", args.get("category"))
    fb.add(Api.version, "eq", args.get("version"))
    fb.search([Api.name, Api.description], args.get("search"))
    return fb.apply(s.query(Api)).order_by(Api.name.asc(), Api.id.asc())


def developers_overview(s: Session, company_id: int) -> list[dict[str, Any]]:
    app_counts = dict(
        s.execute(
            select(ApiApplication.developer_id, func.count(ApiApplication.id))
            .where(ApiApplication.company_id == company_id)
            .group_by(ApiApplication.developer_id)
        ).all()
    )
    key_counts = dict(
        s.execute(
            select(ApiApplication.developer_id, func.count(ApiKey.id))
            .join(ApiKey, ApiKey.application_id == ApiApplication.id)
            .where(ApiApplication.company_id == company_id)
            .group_by(ApiApplication.developer_id)
        ).all()
    )
    devs = (
        s.query(ApiDeveloper)
        .filter(ApiDeveloper.company_id == company_id)
        .order_by(ApiDeveloper.created_at.desc(), ApiDeveloper.id.desc())
        .all()
    )
    return [
        {
            "id": d.id,
            "name": d.name,
            "email": d.email,
            "company_name": d.company_name,
            "status": d.status,
            "app_count": app_counts.get(d.id, 0),
            "key_count": key_counts.get(d.id, 0),
            "created_at": d.created_at,
        }
        for d in devs
    ]


def applications_overview(s: Session, company_id: int) -> list[dict[str, Any]]:
    key_counts = dict(
        s.execute(
            select(ApiKey.application_id, func.count(ApiKey.id))
            .where(ApiKey.company_id == company_id)
            .group_by(ApiKey.application_id)
        ).all()
    )
    request_counts = dict(
        s.execute(
            select(ApiKey.application_id, func.count(ApiUsage.id))
            .join(ApiUsage, ApiUsage.api_key_id == ApiKey.id)
            .where(ApiKey.company_id == company_id)
            .group_by(ApiKey.application_id)
        ).all()
    )
    apps = (
        s.query(ApiApplication)
        .filter(ApiApplication.company_id == company_id)
        .order_by(ApiApplication.created_at.desc(), ApiApplication.id.desc())
        .all()
    )
    return [
        {
            "id": a.id,
            "name": a.name,
            "developer": a.developer.name if a.developer else None,
            "status": a.status,
            "key_count": key_counts.get(a.id, 0),
            "request_count": request_counts.get(a.id, 0),
            "created_at": a.created_at,
        }
        for a in apps
    ]


def usage_overview(s: Session, company_id: int, *, days: int = 30, now: datetime | None = None) -> dict[str, Any]:
    since = (now or datetime.utcnow()) - timedelta(days=days)
    scope = (ApiUsage.company_id == company_id, ApiUsage.created_at >= since)
    bucket = day_bucket(s, ApiUsage.created_at)

    daily = s.execute(select(bucket, func.count(ApiUsage.id)).where(*scope).group_by(bucket).order_by(bucket)).all()
    endpoints = s.execute(
        select(ApiUsage.endpoint, func.count(ApiUsage.id), func.avg(ApiUsage.response_time_ms))
        .where(*scope)
        .group_by(ApiUsage.endpoint)
        .order_by(func.count(ApiUsage.id).desc())
        .limit(10)
    ).all()
    codes = s.execute(
        select(ApiUsage.status_code, func.count(ApiUsage.id))
        .where(*scope)
        .group_by(ApiUsage.status_code)
        .order_by(ApiUsage.status_code)
    ).all()
    per_key = s.execute(
        select(ApiKey.name, ApiKey.key, func.count(ApiUsage.id), func.max(ApiUsage.created_at))
        .join(ApiUsage, ApiUsage.api_key_id == ApiKey.id)
        .where(*scope)
        .group_by(ApiKey.id, ApiKey.name, ApiKey.key)
        .order_by(func.count(ApiUsage.id).desc())
    ).all()

    return {
        "daily": [{"day": d, "requests": n} for d, n in daily],
        "top_endpoints": [
            {"endpoint": e, "requests": n, "avg_ms": round(float(avg), 1) if avg is not None else None}
            for e, n, avg in endpoints
        ],
        "status_codes": [{"status_code": c, "requests": n} for c, n in codes],
        "per_key": [
            {"name": name, "key_prefix": key[:8], "requests": n, "last_request": last}
            for name, key, n, last in per_key
        ],
    }


def list_webhooks(s: Session, company_id: int) -> list[dict[str, Any]]:
    hooks = (
        s.query(ApiWebhook)
        .filter(ApiWebhook.company_id == company_id)
        .order_by(ApiWebhook.failure_count.desc(), ApiWebhook.id.desc())
        .all()
    )
    return [
        {
            "id": h.id,
            "application": h.application.name if h.application else None,
            "url": h.url,
            "events": ", ".join(h.events or []),
            "status": h.status,
            "failure_count": h.failure_count,
            "last_triggered_at": h.last_triggered_at,
        }
        for h in hooks
    ]


def marketplace_listing(s: Session, company_id: int) -> dict[str, Any]:
    volume = func.count(ApiUsage.id)
    ranked = s.execute(
        select(Api.id, Api.name, Api.category, Api.version, Api.description, volume.label("requests"))
        .outerjoin(ApiUsage, ApiUsage.api_id == Api.id)
        .where(Api.company_id == company_id, Api.status == "published", Api.is_public.is_(True))
        .group_by(Api.id, Api.name, Api.category, Api.version, Api.description)
        .order_by(volume.desc(), Api.name.asc())
    ).all()
    categories = s.execute(
        select(Api.category, func.count(Api.id))
        .where(Api.company_id == company_id, Api.status == "published", Api.is_public.is_(True))
        .group_by(Api.category)
        .order_by(Api.category)
    ).all()
    return {
        "apis": [dict(r._mapping) for r in ranked],
        "categories": [{"category": c, "count": n} for c, n in categories],
    }


def documentation_catalog(s: Session, company_id: int) -> list[dict[str, Any]]:
    rows = (
        s.query(Api)
        .filter(Api.company_id == company_id, Api.status == "published")
        .order_by(Api.category.asc(), Api.name.asc(), Api.version.asc())
        .all()
    )
    grouped: dict[str, list[Api]] = {}
    for r in rows:
        grouped.setdefault(r.category, []).append(r)
    return [
        {
            "category": cat,
            "apis": ", ".join(f"{a.name} {a.version}" for a in apis),
            "count": len(apis),
        }
        for cat, apis in grouped.items()
    ]


def gateway_stats(s: Session, company_id: int, *, now: datetime | None = None) -> list[dict[str, Any]]:
    since = (now or datetime.utcnow()) - timedelta(hours=24)
    rows = s.execute(
        select(
            Api.name,
            func.count(ApiUsage.id),
            func.avg(ApiUsage.response_time_ms),
            func.max(ApiUsage.response_time_ms),
            func.coalesce(func.sum(case((ApiUsage.status_code >= 400, 1), else_=0)), 0),
        )
        .join(Api, Api.id == ApiUsage.api_id)
        .where(ApiUsage.company_id == company_id, ApiUsage.created_at >= since)
        .group_by(Api.id, Api.name)
        .order_by(func.count(ApiUsage.id).desc())
    ).all()
    return [
        {
            "api": name,
            "requests": n,
            "avg_ms": round(float(avg), 1) if avg is not None else None,
            "max_ms": mx,
            "error_rate": pct(errs, n),
        }
        for name, n, avg, mx, errs in rows
    ]


# ---------- APIs ----------


def create_api(s: Session, payload: dict, *, user: User) -> Api:
    require_fields(payload, ("name",))
    api = Api(
        company_id=user.company_id,
        name=str(payload["name"]).strip(),
        description=payload.get("description"),
        category=str(payload.get("category") or "general").strip(),
        version=str(payload.get("version") or "v1").strip(),
        status=_check_choice(payload.get("status") or "draft", API_STATUSES, "status"),
        is_public=bool(payload.get("is_public")),
        base_url=payload.get("base_url"),
    )
    s.add(api)
    s.flush()
    record_event(s, actor=user, action="api_marketplace.api.create", entity_type="Api", entity_id=str(api.id))
    return api


def set_api_status(s: Session, api: Api, status: Any, *, user: User) -> Api:
    api.status = _check_choice(status, API_STATUSES, "status")
    record_event(
        s,
        actor=user,
        action="api_marketplace.api.status",
        entity_type="Api",
        entity_id=str(api.id),
        metadata={"status": api.status},
    )
    return api


# ---------- Developers + applications ----------


def register_developer(s: Session, payload: dict, *, user: User) -> ApiDeveloper:
    require_fields(payload, ("name", "email"))
    email = str(payload["email"]).strip().lower()
    if not EMAIL_RE.match(email):
        raise ValueError("Invalid email address")
    exists = (
        s.query(ApiDeveloper.id)
        .filter(ApiDeveloper.company_id == user.company_id, func.lower(ApiDeveloper.email) == email)
        .first()
    )
    if exists:
        raise ValueError("Developer with this email already exists")

    dev = ApiDeveloper(
        company_id=user.company_id,
        name=str(payload["name"]).strip(),
        email=email,
        company_name=payload.get("company_name"),
        website=payload.get("website"),
        status="pending",
    )
    s.add(dev)
    s.flush()
    record_event(
        s,
        actor=user,
        action="api_marketplace.developer.register",
        entity_type="ApiDeveloper",
        entity_id=str(dev.id),
        metadata={"email": email},
    )
    return dev


def set_developer_status(s: Session, dev: ApiDeveloper, status: Any, *, user: User) -> ApiDeveloper:
    dev.status = _check_choice(status, DEVELOPER_STATUSES, "status")
    record_event(
        s,
        actor=user,
        action="api_marketplace.developer.status",
        entity_type="ApiDeveloper",
        entity_id=str(dev.id),
        metadata={"status": dev.status},
    )
    return dev


def register_app(s: Session, payload: dict, *, user: User) -> tuple[ApiApplication, str, str]:
    """Returns (application, client_id, client_secret); the secret is only ever returned here."""
    require_fields(payload, ("developer_id", "name"))
    dev = get_scoped(s, ApiDeveloper, payload["developer_id"], user.company_id)
    if dev is None:
        raise ValueError("Developer not found")

    app_row = ApiApplication(
        company_id=user.company_id,
        developer_id=dev.id,
        name=str(payload["name"]).strip(),
        description=payload.get("description"),
        callback_url=payload.get("callback_url"),
        status="active",
    )
    s.add(app_row)
    s.flush()

    client_id = secrets.token_hex(16)
    client_secret = secrets.token_hex(32)
    s.add(
        ApiAppCredential(
            application_id=app_row.id,
            client_id=client_id,
            client_secret_hash=generate_password_hash(client_secret),
        )
    )
    s.flush()
    record_event(
        s,
        actor=user,
        action="api_marketplace.app.register",
        entity_type="ApiApplication",
        entity_id=str(app_row.id),
        metadata={"developer_id": dev.id, "client_id": client_id},
    )
    return app_row, client_id, client_secret


# ---------- Keys ----------


def generate_api_key(s: Session, payload: dict, *, user: User) -> ApiKey:
    require_fields(payload, ("application_id",))
    app_row = get_scoped(s, ApiApplication, payload["application_id"], user.company_id)
    if app_row is None:
        raise ValueError("Application not found")

    rate_limit = validate_payload(payload, KEY_RULES)["rate_limit"]

    expires_at = None
    if payload.get("expires_at"):
        expires_at = parse_datetime(payload["expires_at"])
        if expires_at is None:
            raise ValueError("expires_at must be an ISO date or datetime")

    key = ApiKey(
        company_id=user.company_id,
        application_id=app_row.id,
        key=secrets.token_hex(32),
        name=payload.get("name"),
        status="active",
        rate_limit=rate_limit,
        expires_at=expires_at,
    )
    s.add(key)
    s.flush()
    record_event(
        s,
        actor=user,
        action="api_marketplace.key.generate",
        entity_type="ApiKey",
        entity_id=str(key.id),
        metadata={"application_id": app_row.id},
    )
    return key


def revoke_api_key(s: Session, key: ApiKey, *, user: User) -> ApiKey:
    if key.status == "revoked":
        raise ValueError("API key is already revoked")
    key.status = "revoked"
    record_event(s, actor=user, action="api_marketplace.key.revoke", entity_type="ApiKey", entity_id=str(key.id))
    return key


def track_api_usage(
    s: Session, payload: dict, *, company_id: int, user: User | None = None, now: datetime | None = None
) -> ApiUsage:
    require_fields(payload, ("api_key", "endpoint"))
    now = now or datetime.utcnow()
    key = (
        s.query(ApiKey)
        .filter(ApiKey.company_id == company_id, ApiKey.key == str(payload["api_key"]).strip())
        .one_or_none()
    )
    if key is None or key.status != "active" or (key.expires_at is not None and key.expires_at <= now):
        raise ValueError("Invalid API key")

    method = str(payload.get("method") or "GET").upper()
    if method not in HTTP_METHODS:
        raise ValueError(f"Invalid method. Must be one of: {', '.join(HTTP_METHODS)}")
    try:
        status_code = int(payload["status_code"]) if payload.get("status_code") not in (None, "") else 200
        response_ms = int(payload["response_time_ms"]) if payload.get("response_time_ms") not in (None, "") else None
    except (TypeError, ValueError):
        raise ValueError("status_code and response_time_ms must be integers")
    if not 100 <= status_code <= 599:
        raise ValueError("status_code must be between 100 and 599")

    api_id = None
    if payload.get("api_id") not in (None, ""):
        api = get_scoped(s, Api, payload["api_id"], company_id)
        if api is None:
            raise ValueError("API not found")
        api_id = api.id

    usage = ApiUsage(
        company_id=company_id,
        api_key_id=key.id,
        api_id=api_id,
        endpoint=str(payload["endpoint"]).strip(),
        method=method,
        status_code=status_code,
        response_time_ms=response_ms,
        created_at=now,
    )
    key.last_used_at = now
    s.add(usage)
    s.flush()
    record_event(
        s,
        actor=user,
        action="api_marketplace.usage.track",
        entity_type="ApiUsage",
        entity_id=str(usage.id),
        metadata={"api_key_id": key.id, "endpoint": usage.endpoint, "status_code": status_code},
        company_id=company_id,
    )
    return usage


# ---------- Webhooks ----------


def create_webhook(s: Session, payload: dict, *, user: User) -> ApiWebhook:
    require_fields(payload, ("application_id", "url", "events"))
    app_row = get_scoped(s, ApiApplication, payload["application_id"], user.company_id)
    if app_row is None:
        raise ValueError("Application not found")
    events = payload["events"]
    if not isinstance(events, list) or not all(isinstance(e, str) and e.strip() for e in events):
        raise ValueError("events must be a non-empty list of event names")
    url = str(payload["url"]).strip()
    if not url.startswith(("http://", "https://")):
        raise ValueError("url must be an http(s) URL")

    hook = ApiWebhook(
        company_id=user.company_id,
        application_id=app_row.id,
        url=url,
        events=[e.strip() for e in events],
        secret=str(payload.get("secret") or secrets.token_hex(32)),
        status="active",
    )
    s.add(hook)
    s.flush()
    record_event(
        s,
        actor=user,
        action="api_marketplace.webhook.create",
        entity_type="ApiWebhook",
        entity_id=str(hook.id),
        metadata={"events": hook.events},
    )
    return hook


def test_webhook(s: Session, hook: ApiWebhook, *, user: User, timeout: int = 10) -> dict[str, Any]:
    body = json.dumps(
        {
            "event": "webhook.test",
            "webhook_id": hook.id,
            "timestamp": datetime.utcnow().isoformat(),
            "data": {"message": "Test delivery"},
        },
        sort_keys=True,
    ).encode("utf-8")
    headers = {"Content-Type": "application/json", SIGNATURE_HEADER: sign_payload(hook.secret, body)}

    status_code = None
    error = None
    try:
        resp = requests.post(hook.url, data=body, headers=headers, timeout=timeout)
        status_code = resp.status_code
        if not 200 <= resp.status_code < 300:
            error = f"HTTP {resp.status_code}"
    except requests.RequestException as e:
        error = str(e)

    hook.last_triggered_at = datetime.utcnow()
    if error:
        hook.failure_count = (hook.failure_count or 0) + 1
        logger.warning("Webhook test failed id=%s url=%s: %s", hook.id, hook.url, error)

    record_event(
        s,
        actor=user,
        action="api_marketplace.webhook.test",
        entity_type="ApiWebhook",
        entity_id=str(hook.id),
        metadata={"status_code": status_code, "ok": error is None},
    )
    return {"delivered": error is None, "status_code": status_code, "error": error, "failure_count": hook.failure_count}
