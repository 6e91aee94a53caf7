from __future__ import annotations

from flask import Blueprint, current_app, request

from app.erp.api import NotFound, get_payload, json_endpoint, json_success, model_to_dict
from app.erp.db import db_session
from app.erp.modules.api_marketplace import service as svc
from app.erp.modules.api_marketplace.models import Api, ApiDeveloper, ApiKey, ApiWebhook
from app.erp.pages import render_module_page, stat_list, table
from app.erp.querying import get_scoped, paginate
from app.erp.rbac import require_permission
from app.erp.tenancy import current_company_id, current_user

bp = Blueprint("api_marketplace", __name__)

SUBNAV = [
    ("Dashboard", "api_marketplace.index", "api_marketplace.view"),
    ("APIs", "api_marketplace.apis", "api_marketplace.apis.view"),
    ("Developer portal", "api_marketplace.developer_portal", "api_marketplace.developer.view"),
    ("Apps", "api_marketplace.apps", "api_marketplace.apps.view"),
    ("Usage", "api_marketplace.usage", "api_marketplace.usage.view"),
    ("Webhooks", "api_marketplace.webhooks", "api_marketplace.webhooks.view"),
    ("Marketplace", "api_marketplace.marketplace", "api_marketplace.marketplace.view"),
    ("Docs", "api_marketplace.documentation", "api_marketplace.docs.view"),
    ("Gateway", "api_marketplace.gateway", "api_marketplace.gateway.view"),
]

API_COLUMNS = [
    ("name", "API"),
    ("category", "Category"),
    ("version", "Version"),
    ("status", "Status"),
    ("is_public", "Public"),
    ("base_url", "Base URL"),
]


# ---------- Pages ----------


@bp.get("/")
@require_permission("api_marketplace.view")
def index():
    s = db_session()
    cid = current_company_id()
    stats = svc.dashboard_stats(s, cid)
    return render_module_page(
        "api_marketplace",
        page_title="API Marketplace",
        subnav=SUBNAV,
        stats=stat_list(
            {
                "APIs": stats["total_apis"],
                "Developers": stats["developers"],
                "Applications": stats["applications"],
                "Active keys": stats["active_keys"],
                "Requests today": stats["requests_today"],
                "Avg response (ms)": stats["avg_response_time"],
                "Error rate % (30d)": stats["error_rate"],
            }
        ),
        tables=[
            table(
                "APIs by status",
                [("status", "Status"), ("count", "APIs")],
                [{"status": k, "count": v} for k, v in sorted(stats["apis_by_status"].items())],
            )
        ],
    )


@bp.get("/apis")
@require_permission("api_marketplace.apis.view")
def apis():
    s = db_session()
    items, pagination = paginate(svc.list_apis(s, current_company_id(), request.args), request.args.get("page", 1), 50)
    return render_module_page(
        "api_marketplace",
        page_title="APIs",
        subnav=SUBNAV,
        filters={
            "status": ("Status", ("published", "all", "draft", "deprecated")),
            "category": ("Category", None),
            "version": ("Version", None),
            "search": ("Search", None),
        },
        pagination=pagination,
        tables=[table("APIs", API_COLUMNS, items)],
    )


@bp.get("/developers")
@require_permission("api_marketplace.developer.view")
def developer_portal():
    rows = svc.developers_overview(db_session(), current_company_id())
    return render_module_page(
        "api_marketplace",
        page_title="Developer portal",
        subnav=SUBNAV,
        stats=stat_list(
            {"Developers": len(rows), "Pending approval": sum(1 for r in rows if r["status"] == "pending")}
        ),
        tables=[
            table(
                "Developers",
                [("name", "Name"), ("email", "Email"), ("company_name", "Company"), ("status", "Status"), ("app_count", "Apps"), ("key_count", "Keys")],
                rows,
            )
        ],
    )


@bp.get("/apps")
@require_permission("api_marketplace.apps.view")
def apps():
    rows = svc.applications_overview(db_session(), current_company_id())
    return render_module_page(
        "api_marketplace",
        page_title="Applications",
        subnav=SUBNAV,
        tables=[
            table(
                "Applications",
                [("name", "Application"), ("developer", "Developer"), ("status", "Status"), ("key_count", "Keys"), ("request_count", "Requests")],
                rows,
            )
        ],
    )


@bp.get("/usage")
@require_permission("api_marketplace.usage.view")
def usage():
    data = svc.usage_overview(db_session(), current_company_id())
    return render_module_page(
        "api_marketplace",
        page_title="API usage",
        subnav=SUBNAV,
        stats=stat_list({"Requests (30d)": sum(d["requests"] for d in data["daily"])}),
        tables=[
            table("Requests per day", [("day", "Day"), ("requests", "Requests")], data["daily"]),
            table("Top endpoints", [("endpoint", "Endpoint"), ("requests", "Requests"), ("avg_ms", "Avg ms")], data["top_endpoints"]),
            table("Status codes", [("status_code", "Status"), ("requests", "Requests")], data["status_codes"]),
            table(
                "Per key",
                [("name", "Key"), ("key_prefix", "Prefix"), ("requests", "Requests"), ("last_request", "Last request")],
                data["per_key"],
            ),
        ],
    )


@bp.get("/webhooks")
@require_permission("api_marketplace.webhooks.view")
def webhooks():
    rows = svc.list_webhooks(db_session(), current_company_id())
    return render_module_page(
        "api_marketplace",
        page_title="Webhooks",
        subnav=SUBNAV,
        stats=stat_list({"Webhooks": len(rows), "Failing": sum(1 for r in rows if r["failure_count"])}),
        tables=[
            table(
                "Webhooks",
                [("application", "Application"), ("url", "URL"), ("events", "Events"), ("status", "Status"), ("failure_count", "Failures"), ("last_triggered_at", "Last triggered")],
                rows,
            )
        ],
    )


@bp.get("/marketplace")
@require_permission("api_marketplace.marketplace.view")
def marketplace():
    data = svc.marketplace_listing(db_session(), current_company_id())
    return render_module_page(
        "api_marketplace",
        page_title="Marketplace",
        subnav=SUBNAV,
        tables=[
            table(
                "Public APIs",
                [("name", "API"), ("category", "Category"), ("version", "Version"), ("requests", "Requests"), ("description", "Description")],
                data["apis"],
            ),
            table("Categories", [("category", "Category"), ("count", "APIs")], data["categories"]),
        ],
    )


@bp.get("/docs")
@require_permission("api_marketplace.docs.view")
def documentation():
    rows = svc.documentation_catalog(db_session(), current_company_id())
    return render_module_page(
        "api_marketplace",
        page_title="API documentation",
        subnav=SUBNAV,
        tables=[table("Published APIs", [("category", "Category"), ("apis", "APIs"), ("count", "Count")], rows)],
    )


@bp.get("/gateway")
@require_permission("api_marketplace.gateway.view")
def gateway():
    rows = svc.gateway_stats(db_session(), current_company_id())
    return render_module_page(
        "api_marketplace",
        page_title="API gateway",
        subnav=SUBNAV,
        stats=stat_list({"Requests (24h)": sum(r["requests"] for r in rows)}),
        tables=[
            table(
                "Per API (24h)",
                [("api", "API"), ("requests", "Requests"), ("avg_ms", "Avg ms"), ("max_ms", "Max ms"), ("error_rate", "Error %")],
                rows,
            )
        ],
    )


# ---------- JSON API ----------


@bp.post("/api/apis")
@require_permission("api_marketplace.apis.create")
@json_endpoint
def api_create_api():
    api = svc.create_api(db_session(), get_payload(), user=current_user())
    return json_success({"api_id": api.id}, message="API created", status=201)


@bp.post("/api/apis/<int:api_id>/status")
@require_permission("api_marketplace.apis.create")
@json_endpoint
def api_set_api_status(api_id: int):
    s = db_session()
    api = get_scoped(s, Api, api_id, current_company_id())
    if api is None:
        raise NotFound("API not found")
    svc.set_api_status(s, api, get_payload().get("status"), user=current_user())
    return json_success({"api_id": api.id, "status": api.status})


@bp.post("/api/developers")
@require_permission("api_marketplace.developer.view")
@json_endpoint
def api_register_developer():
    dev = svc.register_developer(db_session(), get_payload(), user=current_user())
    return json_success({"developer_id": dev.id, "status": dev.status}, message="Developer registered", status=201)


@bp.post("/api/developers/<int:developer_id>/status")
@require_permission("api_marketplace.developer.manage")
@json_endpoint
def api_set_developer_status(developer_id: int):
    s = db_session()
    dev = get_scoped(s, ApiDeveloper, developer_id, current_company_id())
    if dev is None:
        raise NotFound("Developer not found")
    svc.set_developer_status(s, dev, get_payload().get("status"), user=current_user())
    return json_success({"developer_id": dev.id, "status": dev.status})


@bp.post("/api/apps")
@require_permission("api_marketplace.apps.create")
@json_endpoint
def api_register_app():
    app_row, client_id, client_secret = svc.register_app(db_session(), get_payload(), user=current_user())
    return json_success(
        {"app_id": app_row.id, "client_id": client_id, "client_secret": client_secret},
        message="Application registered. Store the client secret now; it will not be shown again.",
        status=201,
    )


@bp.post("/api/keys")
@require_permission("api_marketplace.keys.create")
@json_endpoint
def api_generate_key():
    key = svc.generate_api_key(db_session(), get_payload(), user=current_user())
    return json_success(
        {"key_id": key.id, "api_key": key.key, "rate_limit": key.rate_limit, "expires_at": key.expires_at},
        message="API key generated",
        status=201,
    )


@bp.post("/api/keys/<int:key_id>/revoke")
@require_permission("api_marketplace.keys.create")
@json_endpoint
def api_revoke_key(key_id: int):
    s = db_session()
    key = get_scoped(s, ApiKey, key_id, current_company_id())
    if key is None:
        raise NotFound("API key not found")
    svc.revoke_api_key(s, key, user=current_user())
    return json_success({"key_id": key.id, "status": key.status}, message="API key revoked")


@bp.post("/api/webhooks")
@require_permission("api_marketplace.webhooks.create")
@json_endpoint
def api_create_webhook():
    hook = svc.create_webhook(db_session(), get_payload(), user=current_user())
    return json_success({"webhook_id": hook.id, "secret": hook.secret}, message="Webhook created", status=201)


@bp.post("/api/webhooks/<int:webhook_id>/test")
@require_permission("api_marketplace.webhooks.create")
@json_endpoint
def api_test_webhook(webhook_id: int):
    s = db_session()
    hook = get_scoped(s, ApiWebhook, webhook_id, current_company_id())
    if hook is None:
        raise NotFound("Webhook not found")
    result = svc.test_webhook(
        s, hook, user=current_user(), timeout=int(current_app.config.get("WEBHOOK_TIMEOUT_SECONDS") or 10)
    )
    return json_success(result)


@bp.post("/api/usage")
@require_permission("api_marketplace.usage.view")
@json_endpoint
def api_track_usage():
    usage = svc.track_api_usage(db_session(), get_payload(), company_id=current_company_id(), user=current_user())
    return json_success(model_to_dict(usage), status=201)
