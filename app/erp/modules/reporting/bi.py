"""
BI tool integration (Tableau, Power BI, Qlik, Looker).

No vendor SDKs: configuring a tool stores its settings (secrets sealed with
AES-GCM), exports are payloads shaped the way each tool ingests data, and the
optional connection check is a plain HTTP GET with `requests`.
"""
from __future__ import annotations

import logging
import secrets
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any

import requests
from sqlalchemy.orm import Session

from app.erp.audit import record_event
from app.erp.crypto import open_config, seal_config

from .models import BiImportedDataset, BiSyncJob, BiToolConfig
from .sources import get_source, run_template

if TYPE_CHECKING:
    from app.erp.models import User

logger = logging.getLogger(__name__)

SUPPORTED_TOOLS = ("tableau", "powerbi", "qlik", "looker")
SYNC_DIRECTIONS = ("to_bi", "from_bi", "bidirectional")

REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    "tableau": ("server_url", "site_id", "username", "password"),
    "powerbi": ("client_id", "client_secret", "tenant_id", "workspace_id"),
    "qlik": ("server_url", "app_id", "api_key"),
    "looker": ("base_url", "client_id", "client_secret"),
}

POWERBI_API = "https://api.powerbi.com/v1.0/myorg"
EMBED_TTL = timedelta(hours=1)


class BiError(ValueError):
    pass


def _check_tool(tool: Any) -> str:
    name = str(tool or "").strip().lower()
    if name not in SUPPORTED_TOOLS:
        raise BiError(f"Unsupported BI tool: {tool}")
    return name


def validate_tool_config(tool: str, config: dict[str, Any]) -> None:
    for field in REQUIRED_FIELDS[tool]:
        if not str(config.get(field) or "").strip():
            raise BiError(f"Missing required configuration field: {field}")


def connection_url(tool: str, config: dict[str, Any]) -> str:
    if tool == "powerbi":
        return f"{POWERBI_API}/groups/{config['workspace_id']}"
    if tool == "looker":
        return config["base_url"].rstrip("/") + "/api/4.0/versions"
    if tool == "tableau":
        return config["server_url"].rstrip("/") + "/api/3.19/serverinfo"
    return config["server_url"].rstrip("/") + "/api/about/v1/about"


def check_connection(tool: str, config: dict[str, Any], *, timeout: int = 10) -> None:
    url = connection_url(tool, config)
    try:
        resp = requests.get(url, timeout=timeout, headers={"Accept": "application/json"})
    except requests.RequestException as e:
        raise BiError(f"Connection test failed for {tool}: {e}") from e
    if resp.status_code >= 500:
        raise BiError(f"Connection test failed for {tool}: HTTP {resp.status_code}")
    logger.info("BI connection check tool=%s url=%s status=%s", tool, url, resp.status_code)


def configure_tool(
    s: Session,
    tool: Any,
    config: dict[str, Any],
    *,
    user: User,
    master_secret: str,
    check: bool = False,
    timeout: int = 10,
) -> BiToolConfig:
    tool = _check_tool(tool)
    if not isinstance(config, dict):
        raise BiError("config must be an object")
    validate_tool_config(tool, config)
    if check:
        check_connection(tool, config, timeout=timeout)

    now = datetime.utcnow()
    sealed = seal_config(master_secret, config)
    row = (
        s.query(BiToolConfig)
        .filter(BiToolConfig.company_id == user.company_id, BiToolConfig.tool_name == tool)
        .one_or_none()
    )
    if row is None:
        row = BiToolConfig(company_id=user.company_id, tool_name=tool, config=sealed, status="active", created_at=now, updated_at=now)
        s.add(row)
    else:
        row.config = sealed
        row.status = "active"
        row.updated_at = now
    s.flush()

    record_event(
        s,
        actor=user,
        action="reporting.bi_tool.configure",
        entity_type="BiToolConfig",
        entity_id=str(row.id),
        metadata={"tool": tool, "fields": sorted(config)},
    )
    return row


def get_tool_config(s: Session, company_id: int, tool: str, master_secret: str) -> dict[str, Any]:
    row = (
        s.query(BiToolConfig)
        .filter(BiToolConfig.company_id == company_id, BiToolConfig.tool_name == tool, BiToolConfig.status == "active")
        .one_or_none()
    )
    if row is None:
        raise BiError(f"BI tool {tool} not configured")
    return open_config(master_secret, row.config)


def _matches(value: Any, op: str, expected: Any) -> bool:
    if op == "equals":
        return value == expected
    if op == "contains":
        return str(expected).lower() in str(value or "").lower()
    if op == "greater_than":
        return value is not None and value > expected
    if op == "less_than":
        return value is not None and value < expected
    return True


def apply_transformations(rows: list[dict[str, Any]], transformations: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
    for t in transformations or []:
        kind = t.get("type")
        field = t.get("field")
        if kind == "filter" and field:
            rows = [r for r in rows if _matches(r.get(field), t.get("operator", "equals"), t.get("value"))]
        elif kind == "sort" and field:
            rows = sorted(
                rows,
                key=lambda r: (r.get(field) is None, str(r.get(field))),
                reverse=t.get("direction") == "desc",
            )
    return rows


def _iso(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _column_type(rows: list[dict[str, Any]], column: str) -> str:
    for r in rows:
        v = r.get(column)
        if v is None:
            continue
        if isinstance(v, bool):
            return "boolean"
        if isinstance(v, datetime):
            return "datetime"
        if isinstance(v, date):
            return "date"
        if isinstance(v, (int, float)) or type(v).__name__ == "Decimal":
            return "number"
        return "string"
    return "string"


def shape_payload(tool: str, config: dict[str, Any], source: str, columns: list[str], rows: list[dict[str, Any]]) -> dict[str, Any]:
    """Lay out rows the way each tool's ingestion API expects them."""
    plain = [{c: _iso(r.get(c)) for c in columns} for r in rows]
    types = {c: _column_type(rows, c) for c in columns}
    if tool == "tableau":
        return {
            "site_id": config.get("site_id"),
            "datasource": {"name": source, "columns": [{"name": c, "type": types[c]} for c in columns]},
            "rows": plain,
        }
    if tool == "powerbi":
        pbi_types = {"number": "Double", "datetime": "DateTime", "date": "DateTime", "boolean": "Boolean", "string": "String"}
        return {
            "workspace_id": config.get("workspace_id"),
            "name": source,
            "tables": [
                {
                    "name": source,
                    "columns": [{"name": c, "dataType": pbi_types[types[c]]} for c in columns],
                    "rows": plain,
                }
            ],
        }
    if tool == "qlik":
        return {"app_id": config.get("app_id"), "table": source, "fields": columns, "data": plain}
    return {"view": source, "fields": [f"{source}.{c}" for c in columns], "data": plain}


def export_to_tool(
    s: Session,
    tool: Any,
    data_source: str,
    *,
    user: User,
    master_secret: str,
    options: dict[str, Any] | None = None,
) -> dict[str, Any]:
    tool = _check_tool(tool)
    config = get_tool_config(s, user.company_id, tool, master_secret)
    ds = get_source(data_source)
    columns, rows = run_template(s, user.company_id, {"source": ds.name, "limit": (options or {}).get("limit") or 10000})
    rows = apply_transformations(rows, (options or {}).get("transformations"))
    payload = shape_payload(tool, config, ds.name, columns, rows)

    record_event(
        s,
        actor=user,
        action="reporting.bi_tool.export",
        entity_type="BiToolConfig",
        entity_id=tool,
        metadata={"data_source": ds.name, "records": len(rows)},
    )
    return {"tool": tool, "data_source": ds.name, "record_count": len(rows), "payload": payload}


def import_from_tool(
    s: Session,
    tool: Any,
    dataset_name: str,
    rows: Any,
    *,
    user: User,
    master_secret: str,
) -> BiImportedDataset:
    tool = _check_tool(tool)
    get_tool_config(s, user.company_id, tool, master_secret)
    if not str(dataset_name or "").strip():
        raise BiError("dataset_name is required")
    if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
        raise BiError("rows must be a list of objects")

    dataset = BiImportedDataset(
        company_id=user.company_id,
        tool_name=tool,
        dataset_name=str(dataset_name).strip(),
        rows=rows,
        row_count=len(rows),
        imported_at=datetime.utcnow(),
        imported_by_user_id=user.id,
    )
    s.add(dataset)
    s.flush()
    record_event(
        s,
        actor=user,
        action="reporting.bi_tool.import",
        entity_type="BiImportedDataset",
        entity_id=str(dataset.id),
        metadata={"tool": tool, "rows": len(rows)},
    )
    return dataset


def create_embedded_dashboard(
    s: Session,
    tool: Any,
    dashboard_config: dict[str, Any],
    *,
    company_id: int,
    master_secret: str,
) -> dict[str, Any]:
    tool = _check_tool(tool)
    config = get_tool_config(s, company_id, tool, master_secret)
    dashboard_id = str(dashboard_config.get("dashboard_id") or "").strip()
    if not dashboard_id:
        raise BiError("dashboard_id is required")

    if tool == "tableau":
        url = f"{config['server_url'].rstrip('/')}/t/{config['site_id']}/views/{dashboard_id}?:embed=yes"
    elif tool == "powerbi":
        url = f"https://app.powerbi.com/reportEmbed?reportId={dashboard_id}&groupId={config['workspace_id']}"
    elif tool == "qlik":
        url = f"{config['server_url'].rstrip('/')}/single/?appid={config['app_id']}&sheet={dashboard_id}&opt=ctxmenu"
    else:
        url = f"{config['base_url'].rstrip('/')}/embed/dashboards/{dashboard_id}"

    return {
        "embed_type": tool,
        "embed_url": url,
        "dashboard_id": dashboard_id,
        "embed_token": secrets.token_urlsafe(24),
        "expires_at": datetime.utcnow() + EMBED_TTL,
    }


def sync_with_tool(
    s: Session,
    tool: Any,
    direction: Any,
    data_source: str,
    *,
    user: User,
    master_secret: str,
    options: dict[str, Any] | None = None,
) -> BiSyncJob:
    """
    Record a sync job and run it inline.

    Failures are kept on the job (status "failed" + error_message) rather than
    raised, so the caller can persist the job and report the error.
    """
    tool = _check_tool(tool)
    direction = str(direction or "").strip()
    if direction not in SYNC_DIRECTIONS:
        raise BiError(f"Invalid sync direction: {direction}")
    options = options or {}

    job = BiSyncJob(
        company_id=user.company_id,
        tool_name=tool,
        direction=direction,
        data_source=data_source,
        status="running",
        started_at=datetime.utcnow(),
    )
    s.add(job)
    s.flush()

    try:
        processed = 0
        if direction in ("to_bi", "bidirectional"):
            processed += export_to_tool(s, tool, data_source, user=user, master_secret=master_secret, options=options)["record_count"]
        if direction in ("from_bi", "bidirectional"):
            dataset = import_from_tool(
                s,
                tool,
                options.get("dataset_name") or data_source,
                options.get("rows") or [],
                user=user,
                master_secret=master_secret,
            )
            processed += dataset.row_count
        job.status = "completed"
        job.records_processed = processed
    except ValueError as e:
        logger.warning("BI sync failed tool=%s direction=%s: %s", tool, direction, e)
        job.status = "failed"
        job.error_message = str(e)
    job.completed_at = datetime.utcnow()

    if job.status == "completed":
        cfg = (
            s.query(BiToolConfig)
            .filter(BiToolConfig.company_id == user.company_id, BiToolConfig.tool_name == tool)
            .one_or_none()
        )
        if cfg is not None:
            cfg.last_sync_at = job.completed_at

    record_event(
        s,
        actor=user,
        action="reporting.bi_tool.sync",
        entity_type="BiSyncJob",
        entity_id=str(job.id),
        metadata={"tool": tool, "direction": direction, "status": job.status, "records": job.records_processed},
    )
    return job
