"""
Report optimisation analysis.

Looks at a report's data volume, its run history and the shape of its
columns, and produces suggestions plus a chart recommendation per column.
"""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.erp.audit import record_event

from .models import Report, ReportOptimization, ReportRun
from .sources import get_source, run_template, source_row_count

if TYPE_CHECKING:
    from app.erp.models import User

LARGE_DATASET_ROWS = 10000
AGGREGATION_HINT_ROWS = 1000
SLOW_QUERY_SECONDS = 5
HIGH_MEMORY_SECONDS = 10
PIE_MAX_DISTINCT = 5
SAMPLE_ROWS = 500


def report_metrics(s: Session, report: Report) -> dict[str, Any]:
    runs, avg_ms, max_ms = s.query(
        func.count(ReportRun.id),
        func.avg(ReportRun.duration_ms),
        func.max(ReportRun.duration_ms),
    ).filter(ReportRun.report_id == report.id).one()
    source = (report.query_template or {}).get("source")
    return {
        "data_volume": source_row_count(s, report.company_id, source),
        "run_count": runs or 0,
        "avg_execution_time": round(float(avg_ms or 0) / 1000, 3),
        "max_execution_time": round(float(max_ms or 0) / 1000, 3),
        "view_count": report.view_count,
    }


def optimization_suggestions(report: Report, metrics: dict[str, Any]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    template = report.query_template or {}
    volume = metrics["data_volume"]
    if volume > LARGE_DATASET_ROWS:
        out.append(
            {
                "type": "performance",
                "priority": "high",
                "title": "Large Dataset Optimization",
                "description": "Consider pagination or sampling for better performance",
            }
        )
    if volume > AGGREGATION_HINT_ROWS and not template.get("group_by"):
        out.append(
            {
                "type": "analysis",
                "priority": "medium",
                "title": "Add Data Aggregation",
                "description": "Detailed rows without aggregation; group the data for a clearer summary",
            }
        )
    if metrics["avg_execution_time"] > SLOW_QUERY_SECONDS:
        out.append(
            {
                "type": "query_optimization",
                "priority": "high",
                "title": "Slow Query Performance",
                "description": f"Average execution time is {metrics['avg_execution_time']} seconds",
            }
        )
    if metrics["avg_execution_time"] > HIGH_MEMORY_SECONDS:
        out.append(
            {
                "type": "memory_optimization",
                "priority": "high",
                "title": "High Memory Consumption",
                "description": "Stream or chunk the data while generating this report",
            }
        )
    if not report.is_responsive:
        out.append(
            {
                "type": "usability",
                "priority": "medium",
                "title": "Improve Mobile Responsiveness",
                "description": "Add responsive layout for mobile viewing",
            }
        )
    return out


def chart_for_column(name: str, values: list[Any]) -> dict[str, Any]:
    present = [v for v in values if v is not None]
    sample = present[0] if present else None
    if isinstance(sample, (datetime, date)):
        chart, reason = "line_chart", "Time-series data works best with line charts"
    elif isinstance(sample, (int, float, Decimal)) and not isinstance(sample, bool):
        chart, reason = "bar_chart", "Numeric values compare well in bar charts"
    elif isinstance(sample, str) and 0 < len(set(present)) <= PIE_MAX_DISTINCT:
        chart, reason = "pie_chart", "Low-cardinality categories work well in pie charts"
    else:
        chart, reason = "table", "High-cardinality or free-text data is best shown as a table"
    return {"field_name": name, "recommended_chart": chart, "reason": reason}


def chart_recommendations(s: Session, report: Report) -> list[dict[str, Any]]:
    template = dict(report.query_template or {})
    template["limit"] = SAMPLE_ROWS
    columns, rows = run_template(s, report.company_id, template)
    return [chart_for_column(c, [r.get(c) for r in rows]) for c in columns]


def analyze_report(s: Session, report: Report, *, user: User) -> ReportOptimization:
    get_source((report.query_template or {}).get("source"))
    metrics = report_metrics(s, report)
    suggestions = optimization_suggestions(report, metrics)
    analysis = {
        "report_id": report.id,
        "current_metrics": metrics,
        "optimization_suggestions": suggestions,
        "chart_recommendations": chart_recommendations(s, report),
        "generated_at": datetime.utcnow().isoformat(),
    }
    row = ReportOptimization(
        company_id=report.company_id,
        report_id=report.id,
        analysis=analysis,
        suggestion_count=len(suggestions),
        created_at=datetime.utcnow(),
    )
    s.add(row)
    s.flush()
    record_event(
        s,
        actor=user,
        action="reporting.report.analyze",
        entity_type="Report",
        entity_id=str(report.id),
        metadata={"suggestions": len(suggestions)},
    )
    return row
