"""
Whitelisted report data sources.

A report's query_template names one of these sources and a subset of its
columns; everything else (unknown sources, columns, operators) is refused
before a query is built. Rows are always company-scoped through FilterBuilder.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.erp.modules.api_marketplace.models import ApiUsage
from app.erp.modules.documentation.models import Document
from app.erp.modules.form_manager.models import Form
from app.erp.modules.manufacturing.models import WorkOrder
from app.erp.modules.procurement.models import PurchaseOrder, Vendor
from app.erp.modules.quality.models import NonConformance, QualityCheck
from app.erp.modules.testing.models import TestRun
from app.erp.querying import OPERATORS, FilterBuilder, FilterError

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 1000
MAX_LIMIT = 50000
AGGREGATES = ("count", "sum", "avg", "min", "max")


@dataclass(frozen=True)
class DataSource:
    name: str
    label: str
    model: Any
    columns: tuple[str, ...]
    date_column: str

    def column(self, name: str) -> Any:
        if name not in self.columns:
            raise FilterError(f"Unknown column '{name}' for source {self.name}")
        return getattr(self.model, name)


DATA_SOURCES: dict[str, DataSource] = {
    ds.name: ds
    for ds in (
        DataSource(
            "work_orders",
            "Work orders",
            WorkOrder,
            (
                "id", "work_order_number", "bom_id", "production_line_id", "quantity_planned",
                "quantity_produced", "quantity_scrapped", "priority", "status", "planned_start_date",
                "planned_end_date", "actual_start_date", "actual_end_date", "completed_at", "created_at",
            ),
            "created_at",
        ),
        DataSource(
            "purchase_orders",
            "Purchase orders",
            PurchaseOrder,
            (
                "id", "po_number", "vendor_id", "status", "order_date", "expected_delivery_date",
                "actual_delivery_date", "total_amount", "currency", "created_at",
            ),
            "order_date",
        ),
        DataSource(
            "vendors",
            "Vendors",
            Vendor,
            ("id", "vendor_name", "vendor_code", "email", "category", "rating", "status", "lead_time_days", "payment_terms", "created_at"),
            "created_at",
        ),
        DataSource(
            "quality_checks",
            "Quality checks",
            QualityCheck,
            ("id", "criteria_id", "check_date", "result", "actual_value", "defect_rate", "created_at"),
            "check_date",
        ),
        DataSource(
            "non_conformances",
            "Non-conformances",
            NonConformance,
            ("id", "nc_number", "category_id", "severity", "status", "priority", "source", "created_at", "closed_at"),
            "created_at",
        ),
        DataSource(
            "forms",
            "Forms",
            Form,
            ("id", "form_title", "category", "status", "total_submissions", "last_submission", "created_at", "published_at"),
            "created_at",
        ),
        DataSource(
            "documents",
            "Documents",
            Document,
            ("id", "title", "doc_type", "version", "status", "view_count", "avg_rating", "rating_count", "created_at"),
            "created_at",
        ),
        DataSource(
            "api_usage",
            "API usage",
            ApiUsage,
            ("id", "api_key_id", "api_id", "endpoint", "method", "status_code", "response_time_ms", "created_at"),
            "created_at",
        ),
        DataSource(
            "test_runs",
            "Test runs",
            TestRun,
            ("id", "test_type", "test_name", "target", "status", "execution_time", "created_at", "completed_at"),
            "created_at",
        ),
    )
}


def get_source(name: Any) -> DataSource:
    ds = DATA_SOURCES.get(str(name or ""))
    if ds is None:
        raise FilterError(f"Unknown data source: {name}")
    return ds


def validate_template(template: Any) -> dict[str, Any]:
    """
    Check a query template and return it normalised.

    {"source": "work_orders", "columns": [...], "filters": [[col, op, value], ...],
     "order_by": "-created_at", "limit": 500,
     "group_by": "status", "aggregates": [["count", "id"], ["sum", "quantity_produced"]]}
    """
    if not isinstance(template, dict):
        raise FilterError("query_template must be an object")
    ds = get_source(template.get("source"))

    columns = template.get("columns") or list(ds.columns)
    if not isinstance(columns, list) or not all(isinstance(c, str) for c in columns):
        raise FilterError("columns must be a list of column names")
    for c in columns:
        ds.column(c)

    filters = template.get("filters") or []
    if not isinstance(filters, list):
        raise FilterError("filters must be a list of [column, operator, value] triples")
    for f in filters:
        if not isinstance(f, (list, tuple)) or len(f) != 3:
            raise FilterError("Filters must be [column, operator, value] triples")
        ds.column(f[0])
        if f[1] not in OPERATORS:
            raise FilterError(f"Unsupported filter operator: {f[1]}")

    order_by = template.get("order_by")
    if order_by:
        ds.column(str(order_by).lstrip("-"))

    try:
        limit = int(template.get("limit") or DEFAULT_LIMIT)
    except (TypeError, ValueError):
        raise FilterError("limit must be an integer")
    limit = min(max(limit, 1), MAX_LIMIT)

    group_by = template.get("group_by")
    aggregates = template.get("aggregates") or []
    if group_by:
        ds.column(group_by)
    if aggregates:
        if not group_by:
            raise FilterError("aggregates require group_by")
        for agg in aggregates:
            if not isinstance(agg, (list, tuple)) or len(agg) != 2 or agg[0] not in AGGREGATES:
                raise FilterError(f"Aggregates must be [fn, column] with fn one of: {', '.join(AGGREGATES)}")
            ds.column(agg[1])

    return {
        "source": ds.name,
        "columns": columns,
        "filters": [list(f) for f in filters],
        "order_by": order_by or None,
        "limit": limit,
        "group_by": group_by or None,
        "aggregates": [list(a) for a in aggregates],
    }


def run_template(
    s: Session,
    company_id: int,
    template: dict[str, Any],
    *,
    date_from: Any = None,
    date_to: Any = None,
) -> tuple[list[str], list[dict[str, Any]]]:
    """Execute a validated template; returns (column names, row dicts)."""
    tpl = validate_template(template)
    ds = get_source(tpl["source"])

    fb = FilterBuilder(ds.model, company_id, allowed_columns=ds.columns)
    fb.extend(tpl["filters"])
    fb.date_range(ds.date_column, date_from, date_to)

    if tpl["group_by"]:
        group_col = ds.column(tpl["group_by"])
        labels = [tpl["group_by"]]
        selects = [group_col.label(tpl["group_by"])]
        for fn, col in tpl["aggregates"] or [["count", "id"]]:
            label = f"{fn}_{col}"
            labels.append(label)
            selects.append(getattr(func, fn)(ds.column(col)).label(label))
        q = s.query(*selects).filter(*fb.clauses).group_by(group_col).order_by(group_col).limit(tpl["limit"])
        return labels, [dict(zip(labels, row)) for row in q.all()]

    cols = [ds.column(c) for c in tpl["columns"]]
    q = s.query(*cols).filter(*fb.clauses)
    if tpl["order_by"]:
        ob = ds.column(tpl["order_by"].lstrip("-"))
        q = q.order_by(ob.desc() if tpl["order_by"].startswith("-") else ob.asc())
    else:
        q = q.order_by(ds.model.id.desc())
    rows = [dict(zip(tpl["columns"], r)) for r in q.limit(tpl["limit"]).all()]
    logger.debug("report source=%s company=%s rows=%d", ds.name, company_id, len(rows))
    return tpl["columns"], rows


def source_row_count(s: Session, company_id: int, source: str) -> int:
    ds = get_source(source)
    return s.query(func.count(ds.model.id)).filter(ds.model.company_id == company_id).scalar() or 0
