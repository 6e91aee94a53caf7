"""
Manufacturing service layer.
Work orders, BOMs, production lines, shop-floor data, inspections and downtime.
"""
from __future__ import annotations

import secrets
from collections import defaultdict
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from app.erp.api import require_fields
from app.erp.audit import record_event
from app.erp.querying import FilterBuilder, get_scoped, month_bucket, parse_date, pct

from .models import (
    BillOfMaterials,
    BomComponent,
    DowntimeEvent,
    MfgQualityInspection,
    ProductionData,
    ProductionLine,
    ProductionPlan,
    ProductionPlanItem,
    WorkOrder,
    WorkOrderOperation,
)

if TYPE_CHECKING:
    from app.erp.models import User


WORK_ORDER_STATUSES = ("draft", "released", "in_progress", "on_hold", "completed", "cancelled")
WORK_ORDER_PRIORITIES = ("low", "normal", "high", "urgent")
LINE_STATUSES = ("active", "maintenance", "inactive")
DATA_TYPES = ("quantity", "temperature", "pressure", "speed", "other")
INSPECTION_RESULTS = ("pass", "fail", "pending")
BULK_WORK_ORDER_FIELDS = ("status", "priority", "production_line_id")

ZERO = Decimal("0")


def _number(prefix: str, hex_bytes: int = 3) -> str:
    return f"{prefix}-{datetime.utcnow():%Y%m%d}-{secrets.token_hex(hex_bytes).upper()}"


def _dec(value: Any, field: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError(f"{field} must be a number")


def stock_status(component: BomComponent) -> str:
    if component.stock_on_hand <= component.reorder_point:
        return "reorder"
    if component.stock_on_hand <= component.safety_stock:
        return "low"
    return "normal"


# ---------- Reads / aggregates ----------


def _totals(s: Session, company_id: int, *extra: Any) -> tuple[Decimal, Decimal, Decimal]:
    planned, produced, scrapped = s.execute(
        select(
            func.coalesce(func.sum(WorkOrder.quantity_planned), 0),
            func.coalesce(func.sum(WorkOrder.quantity_produced), 0),
            func.coalesce(func.sum(WorkOrder.quantity_scrapped), 0),
        ).where(WorkOrder.company_id == company_id, WorkOrder.status != "cancelled", *extra)
    ).one()
    return planned, produced, scrapped


def dashboard_stats(s: Session, company_id: int, *, today: date | None = None) -> dict[str, Any]:
    today = today or date.today()
    month_start = datetime(today.year, today.month, 1)

    by_status = dict(
        s.execute(
            select(WorkOrder.status, func.count(WorkOrder.id))
            .where(WorkOrder.company_id == company_id)
            .group_by(WorkOrder.status)
        ).all()
    )
    planned, produced, scrapped = _totals(s, company_id)

    active_lines = s.execute(
        select(func.count(ProductionLine.id)).where(
            ProductionLine.company_id == company_id, ProductionLine.status == "active"
        )
    ).scalar_one()

    downtime = s.execute(
        select(func.coalesce(func.sum(DowntimeEvent.duration_minutes), 0)).where(
            DowntimeEvent.company_id == company_id, DowntimeEvent.started_at >= month_start
        )
    ).scalar_one()

    inspected, passed = s.execute(
        select(
            func.count(MfgQualityInspection.id),
            func.coalesce(func.sum(case((MfgQualityInspection.result == "pass", 1), else_=0)), 0),
        ).where(MfgQualityInspection.company_id == company_id, MfgQualityInspection.result != "pending")
    ).one()

    return {
        "work_orders_by_status": by_status,
        "total_work_orders": sum(by_status.values()),
        "production_efficiency": pct(produced, planned),
        "scrap_rate": pct(scrapped, (produced or 0) + (scrapped or 0)),
        "active_lines": active_lines,
        "downtime_minutes_this_month": int(downtime or 0),
        "inspection_pass_rate": pct(passed, inspected),
    }


def work_order_filters(company_id: int, args: dict) -> FilterBuilder:
    fb = FilterBuilder(WorkOrder, company_id)
    fb.add(WorkOrder.status, "eq", args.get("status"))
    fb.add(WorkOrder.priority, "eq", args.get("priority"))
    line = args.get("production_line") or args.get("production_line_id")
    if line not in (None, "", "all"):
        try:
            fb.add(WorkOrder.production_line_id, "eq", int(line))
        except (TypeError, ValueError):
            pass
    fb.date_range(WorkOrder.planned_start_date, args.get("date_from"), args.get("date_to"))
    return fb


def list_work_orders(s: Session, company_id: int, args: dict):
    fb = work_order_filters(company_id, args)
    q = s.query(WorkOrder).join(BillOfMaterials, BillOfMaterials.id == WorkOrder.bom_id).filter(*fb.clauses)
    term = (args.get("search") or "").strip()
    if term:
        like = f"%{term}%"
        q = q.filter(WorkOrder.work_order_number.ilike(like) | BillOfMaterials.product_name.ilike(like))
    return q.order_by(WorkOrder.created_at.desc(), WorkOrder.id.desc())


def work_order_row(wo: WorkOrder) -> dict[str, Any]:
    return {
        "id": wo.id,
        "work_order_number": wo.work_order_number,
        "product_name": wo.bom.product_name if wo.bom else None,
        "line_name": wo.production_line.line_name if wo.production_line else None,
        "status": wo.status,
        "priority": wo.priority,
        "quantity_planned": wo.quantity_planned,
        "quantity_produced": wo.quantity_produced,
        "quantity_scrapped": wo.quantity_scrapped,
        "planned_start_date": wo.planned_start_date,
        "planned_end_date": wo.planned_end_date,
        "completion_percentage": pct(wo.quantity_produced, wo.quantity_planned),
    }


def list_boms(s: Session, company_id: int) -> list[dict[str, Any]]:
    rows = s.execute(
        select(
            BillOfMaterials.id,
            BillOfMaterials.bom_number,
            BillOfMaterials.product_name,
            BillOfMaterials.product_code,
            BillOfMaterials.version,
            BillOfMaterials.status,
            func.count(BomComponent.id).label("component_count"),
            func.coalesce(func.sum(BomComponent.quantity * BomComponent.unit_cost), 0).label("total_cost"),
        )
        .outerjoin(BomComponent, BomComponent.bom_id == BillOfMaterials.id)
        .where(BillOfMaterials.company_id == company_id)
        .group_by(
            BillOfMaterials.id,
            BillOfMaterials.bom_number,
            BillOfMaterials.product_name,
            BillOfMaterials.product_code,
            BillOfMaterials.version,
            BillOfMaterials.status,
        )
        .order_by(BillOfMaterials.product_name)
    ).mappings().all()
    return [{**dict(r), "total_cost": round(float(r["total_cost"]), 2)} for r in rows]


def list_production_lines(s: Session, company_id: int) -> list[ProductionLine]:
    return (
        s.query(ProductionLine)
        .filter(ProductionLine.company_id == company_id)
        .order_by(ProductionLine.line_name)
        .all()
    )


def planning_overview(s: Session, company_id: int, *, today: date | None = None) -> dict[str, Any]:
    today = today or date.today()
    plans = s.execute(
        select(
            ProductionPlan.id,
            ProductionPlan.plan_name,
            ProductionPlan.start_date,
            ProductionPlan.end_date,
            ProductionPlan.status,
            func.count(ProductionPlanItem.id).label("item_count"),
            func.coalesce(func.sum(ProductionPlanItem.quantity), 0).label("total_quantity"),
        )
        .outerjoin(ProductionPlanItem, ProductionPlanItem.plan_id == ProductionPlan.id)
        .where(ProductionPlan.company_id == company_id)
        .group_by(
            ProductionPlan.id,
            ProductionPlan.plan_name,
            ProductionPlan.start_date,
            ProductionPlan.end_date,
            ProductionPlan.status,
        )
        .order_by(ProductionPlan.start_date.desc())
    ).mappings().all()

    upcoming = (
        s.query(WorkOrder)
        .filter(
            WorkOrder.company_id == company_id,
            WorkOrder.status.in_(("draft", "released")),
            WorkOrder.planned_start_date >= today,
            WorkOrder.planned_start_date <= today + timedelta(days=30),
        )
        .order_by(WorkOrder.planned_start_date)
        .all()
    )
    return {"plans": [dict(p) for p in plans], "upcoming_work_orders": [work_order_row(wo) for wo in upcoming]}


def inspections_overview(s: Session, company_id: int, limit: int = 50) -> dict[str, Any]:
    rows = (
        s.query(MfgQualityInspection)
        .filter(MfgQualityInspection.company_id == company_id)
        .order_by(MfgQualityInspection.inspected_at.desc())
        .limit(limit)
        .all()
    )
    by_result = dict(
        s.execute(
            select(MfgQualityInspection.result, func.count(MfgQualityInspection.id))
            .where(MfgQualityInspection.company_id == company_id)
            .group_by(MfgQualityInspection.result)
        ).all()
    )
    decided = by_result.get("pass", 0) + by_result.get("fail", 0)
    return {
        "inspections": [
            {
                "id": i.id,
                "work_order_number": i.work_order.work_order_number if i.work_order else None,
                "inspection_type": i.inspection_type,
                "result": i.result,
                "sample_size": i.sample_size,
                "defects_found": i.defects_found,
                "inspected_at": i.inspected_at,
            }
            for i in rows
        ],
        "by_result": by_result,
        "pass_rate": pct(by_result.get("pass", 0), decided),
    }


def resource_planning(s: Session, company_id: int) -> dict[str, Any]:
    """Line load (open planned quantity vs hourly capacity) and component stock status."""
    load = s.execute(
        select(
            ProductionLine.id,
            ProductionLine.line_name,
            ProductionLine.status,
            ProductionLine.capacity_per_hour,
            func.count(WorkOrder.id).label("open_orders"),
            func.coalesce(func.sum(WorkOrder.quantity_planned - WorkOrder.quantity_produced), 0).label("open_quantity"),
        )
        .outerjoin(
            WorkOrder,
            (WorkOrder.production_line_id == ProductionLine.id)
            & WorkOrder.status.in_(("draft", "released", "in_progress", "on_hold")),
        )
        .where(ProductionLine.company_id == company_id)
        .group_by(ProductionLine.id, ProductionLine.line_name, ProductionLine.status, ProductionLine.capacity_per_hour)
        .order_by(ProductionLine.line_name)
    ).mappings().all()

    lines = []
    for r in load:
        capacity = float(r["capacity_per_hour"] or 0)
        open_qty = float(r["open_quantity"] or 0)
        lines.append(
            {
                **dict(r),
                "open_quantity": open_qty,
                "hours_of_work": round(open_qty / capacity, 1) if capacity else None,
            }
        )

    components = (
        s.query(BomComponent)
        .join(BillOfMaterials, BillOfMaterials.id == BomComponent.bom_id)
        .filter(BillOfMaterials.company_id == company_id)
        .order_by(BomComponent.component_name)
        .all()
    )
    stock = [
        {
            "component_name": c.component_name,
            "component_code": c.component_code,
            "product_name": c.bom.product_name,
            "stock_on_hand": c.stock_on_hand,
            "reorder_point": c.reorder_point,
            "safety_stock": c.safety_stock,
            "stock_status": stock_status(c),
        }
        for c in components
    ]
    return {"lines": lines, "stock": stock}


def shop_floor(s: Session, company_id: int) -> dict[str, Any]:
    in_progress = (
        s.query(WorkOrder)
        .filter(WorkOrder.company_id == company_id, WorkOrder.status == "in_progress")
        .order_by(WorkOrder.actual_start_date.asc())
        .all()
    )
    recent = (
        s.query(ProductionData)
        .filter(ProductionData.company_id == company_id)
        .order_by(ProductionData.recorded_at.desc(), ProductionData.id.desc())
        .limit(25)
        .all()
    )
    return {
        "in_progress": [work_order_row(wo) for wo in in_progress],
        "recent_data": [
            {
                "recorded_at": d.recorded_at,
                "work_order_number": d.work_order.work_order_number if d.work_order else None,
                "data_type": d.data_type,
                "quantity_produced": d.quantity_produced,
                "quantity_scrapped": d.quantity_scrapped,
                "value": d.value,
            }
            for d in recent
        ],
    }


def manufacturing_analytics(s: Session, company_id: int, *, today: date | None = None) -> dict[str, Any]:
    today = today or date.today()
    since = datetime(today.year, today.month, 1) - timedelta(days=335)

    per_line_rows = s.execute(
        select(
            ProductionLine.line_name,
            func.coalesce(func.sum(WorkOrder.quantity_planned), 0).label("planned"),
            func.coalesce(func.sum(WorkOrder.quantity_produced), 0).label("produced"),
            func.coalesce(func.sum(WorkOrder.quantity_scrapped), 0).label("scrapped"),
        )
        .join(WorkOrder, WorkOrder.production_line_id == ProductionLine.id)
        .where(ProductionLine.company_id == company_id, WorkOrder.status != "cancelled")
        .group_by(ProductionLine.line_name)
        .order_by(ProductionLine.line_name)
    ).mappings().all()

    downtime = dict(
        s.execute(
            select(ProductionLine.line_name, func.coalesce(func.sum(DowntimeEvent.duration_minutes), 0))
            .join(DowntimeEvent, DowntimeEvent.production_line_id == ProductionLine.id)
            .where(ProductionLine.company_id == company_id)
            .group_by(ProductionLine.line_name)
        ).all()
    )

    per_line = [
        {
            "line_name": r["line_name"],
            "efficiency": pct(r["produced"], r["planned"]),
            "scrap_rate": pct(r["scrapped"], (r["produced"] or 0) + (r["scrapped"] or 0)),
            "downtime_minutes": int(downtime.get(r["line_name"], 0) or 0),
        }
        for r in per_line_rows
    ]

    month = month_bucket(s, ProductionData.recorded_at)
    monthly = s.execute(
        select(
            month.label("month"),
            func.coalesce(func.sum(ProductionData.quantity_produced), 0).label("produced"),
            func.coalesce(func.sum(ProductionData.quantity_scrapped), 0).label("scrapped"),
        )
        .where(
            ProductionData.company_id == company_id,
            ProductionData.data_type == "quantity",
            ProductionData.recorded_at >= since,
        )
        .group_by(month)
        .order_by(month)
    ).mappings().all()

    completed = (
        s.query(WorkOrder)
        .filter(
            WorkOrder.company_id == company_id,
            WorkOrder.status == "completed",
            WorkOrder.planned_start_date.is_not(None),
            WorkOrder.planned_end_date.is_not(None),
            WorkOrder.actual_start_date.is_not(None),
            WorkOrder.actual_end_date.is_not(None),
        )
        .all()
    )
    planned_secs = sum(
        (datetime.combine(wo.planned_end_date, datetime.min.time()) - datetime.combine(wo.planned_start_date, datetime.min.time())).total_seconds()
        for wo in completed
    )
    actual_secs = sum((wo.actual_end_date - wo.actual_start_date).total_seconds() for wo in completed)

    planned, produced, scrapped = _totals(s, company_id)
    return {
        "production_efficiency": pct(produced, planned),
        "scrap_rate": pct(scrapped, (produced or 0) + (scrapped or 0)),
        "per_line": per_line,
        "monthly_output": [
            {"month": r["month"], "produced": float(r["produced"]), "scrapped": float(r["scrapped"])} for r in monthly
        ],
        "cycle_time_efficiency": pct(planned_secs, actual_secs),
        "completed_orders": len(completed),
    }


# ---------- Writes ----------


def create_production_line(s: Session, payload: dict, *, user: User) -> ProductionLine:
    require_fields(payload, ("line_name",))
    status = payload.get("status") or "active"
    if status not in LINE_STATUSES:
        raise ValueError(f"Invalid status. Must be one of: {', '.join(LINE_STATUSES)}")
    line = ProductionLine(
        company_id=user.company_id,
        line_name=str(payload["line_name"]).strip(),
        line_code=(payload.get("line_code") or "").strip() or None,
        description=(payload.get("description") or "").strip() or None,
        capacity_per_hour=_dec(payload["capacity_per_hour"], "capacity_per_hour")
        if payload.get("capacity_per_hour") not in (None, "")
        else None,
        status=status,
    )
    s.add(line)
    s.flush()
    record_event(
        s,
        actor=user,
        action="manufacturing.production_line.create",
        entity_type="ProductionLine",
        entity_id=str(line.id),
        metadata={"line_name": line.line_name},
    )
    return line


def create_bom(s: Session, payload: dict, *, user: User) -> BillOfMaterials:
    require_fields(payload, ("product_name",))
    components = payload.get("components") or []
    if not isinstance(components, list):
        raise ValueError("components must be a list")

    bom = BillOfMaterials(
        company_id=user.company_id,
        bom_number=_number("BOM"),
        product_name=str(payload["product_name"]).strip(),
        product_code=(payload.get("product_code") or "").strip() or None,
        version=str(payload.get("version") or "1.0"),
        status=payload.get("status") or "active",
        created_by_user_id=user.id,
    )
    for raw in components:
        if not isinstance(raw, dict) or not str(raw.get("component_name") or "").strip():
            raise ValueError("Each component needs a component_name")
        bom.components.append(
            BomComponent(
                component_name=str(raw["component_name"]).strip(),
                component_code=raw.get("component_code"),
                quantity=_dec(raw.get("quantity", 1), "quantity"),
                unit_cost=_dec(raw.get("unit_cost", 0), "unit_cost"),
                unit_of_measure=raw.get("unit_of_measure") or "ea",
                stock_on_hand=_dec(raw.get("stock_on_hand", 0), "stock_on_hand"),
                reorder_point=_dec(raw.get("reorder_point", 0), "reorder_point"),
                safety_stock=_dec(raw.get("safety_stock", 0), "safety_stock"),
            )
        )
    s.add(bom)
    s.flush()
    record_event(
        s,
        actor=user,
        action="manufacturing.bom.create",
        entity_type="BillOfMaterials",
        entity_id=str(bom.id),
        metadata={"bom_number": bom.bom_number, "components": len(bom.components)},
    )
    return bom


def create_work_order(s: Session, payload: dict, *, user: User) -> WorkOrder:
    require_fields(payload, ("bom_id", "production_line_id", "quantity_planned"))
    qty = _dec(payload["quantity_planned"], "quantity_planned")
    if qty <= 0:
        raise ValueError("quantity_planned must be greater than 0")
    bom = get_scoped(s, BillOfMaterials, payload["bom_id"], user.company_id)
    if bom is None:
        raise ValueError("BOM not found")
    line = get_scoped(s, ProductionLine, payload["production_line_id"], user.company_id)
    if line is None:
        raise ValueError("Production line not found")

    priority = payload.get("priority") or "normal"
    if priority not in WORK_ORDER_PRIORITIES:
        raise ValueError(f"Invalid priority. Must be one of: {', '.join(WORK_ORDER_PRIORITIES)}")

    wo = WorkOrder(
        company_id=user.company_id,
        work_order_number=_number("WO", 2),
        bom_id=bom.id,
        production_line_id=line.id,
        quantity_planned=qty,
        quantity_produced=ZERO,
        quantity_scrapped=ZERO,
        priority=priority,
        status="draft",
        planned_start_date=parse_date(payload.get("planned_start_date")),
        planned_end_date=parse_date(payload.get("planned_end_date")),
        notes=(payload.get("notes") or "").strip() or None,
        created_by_user_id=user.id,
    )
    operations = payload.get("operations") or []
    if not isinstance(operations, list):
        raise ValueError("operations must be a list")
    for idx, op in enumerate(operations):
        if isinstance(op, str):
            op = {"operation_name": op}
        if not isinstance(op, dict) or not str(op.get("operation_name") or "").strip():
            raise ValueError("Each operation needs an operation_name")
        wo.operations.append(
            WorkOrderOperation(
                sequence=idx + 1,
                operation_name=str(op["operation_name"]).strip(),
                workstation=op.get("workstation"),
                planned_minutes=int(op["planned_minutes"]) if op.get("planned_minutes") not in (None, "") else None,
            )
        )
    s.add(wo)
    s.flush()
    record_event(
        s,
        actor=user,
        action="manufacturing.work_order.create",
        entity_type="WorkOrder",
        entity_id=str(wo.id),
        metadata={"work_order_number": wo.work_order_number, "quantity_planned": str(qty)},
    )
    return wo


def _apply_status(wo: WorkOrder, status: str, now: datetime) -> None:
    if status not in WORK_ORDER_STATUSES:
        raise ValueError(f"Invalid status. Must be one of: {', '.join(WORK_ORDER_STATUSES)}")
    wo.status = status
    if status == "in_progress" and wo.actual_start_date is None:
        wo.actual_start_date = now
    if status in ("completed", "cancelled"):
        wo.actual_end_date = now
        wo.completed_at = now
    wo.updated_at = now


def update_work_order_status(
    s: Session,
    wo: WorkOrder,
    status: str,
    *,
    user: User,
    notes: str | None = None,
) -> WorkOrder:
    old_status = wo.status
    _apply_status(wo, status, datetime.utcnow())
    if notes:
        wo.notes = f"{wo.notes}\n{notes}" if wo.notes else notes
    record_event(
        s,
        actor=user,
        action="manufacturing.work_order.status",
        entity_type="WorkOrder",
        entity_id=str(wo.id),
        metadata={"from": old_status, "to": status},
    )
    return wo


def record_production_data(s: Session, payload: dict, *, user: User) -> ProductionData:
    require_fields(payload, ("work_order_id", "data_type"))
    data_type = payload["data_type"]
    if data_type not in DATA_TYPES:
        raise ValueError(f"Invalid data_type. Must be one of: {', '.join(DATA_TYPES)}")
    wo = get_scoped(s, WorkOrder, payload["work_order_id"], user.company_id)
    if wo is None:
        raise ValueError("Work order not found")

    produced = _dec(payload.get("quantity_produced") or 0, "quantity_produced")
    scrapped = _dec(payload.get("quantity_scrapped") or 0, "quantity_scrapped")
    if produced < 0 or scrapped < 0:
        raise ValueError("Quantities cannot be negative")

    row = ProductionData(
        company_id=user.company_id,
        work_order_id=wo.id,
        data_type=data_type,
        quantity_produced=produced,
        quantity_scrapped=scrapped,
        value=_dec(payload["value"], "value") if payload.get("value") not in (None, "") else None,
        notes=(payload.get("notes") or "").strip() or None,
        recorded_by_user_id=user.id,
    )
    s.add(row)
    if data_type == "quantity":
        wo.quantity_produced = (wo.quantity_produced or ZERO) + produced
        wo.quantity_scrapped = (wo.quantity_scrapped or ZERO) + scrapped
        wo.updated_at = datetime.utcnow()
    s.flush()
    record_event(
        s,
        actor=user,
        action="manufacturing.production_data.record",
        entity_type="WorkOrder",
        entity_id=str(wo.id),
        metadata={"data_type": data_type, "produced": str(produced), "scrapped": str(scrapped)},
    )
    return row


def create_quality_inspection(s: Session, payload: dict, *, user: User) -> MfgQualityInspection:
    require_fields(payload, ("work_order_id", "inspection_type"))
    wo = get_scoped(s, WorkOrder, payload["work_order_id"], user.company_id)
    if wo is None:
        raise ValueError("Work order not found")
    result = payload.get("result") or "pending"
    if result not in INSPECTION_RESULTS:
        raise ValueError(f"Invalid result. Must be one of: {', '.join(INSPECTION_RESULTS)}")
    inspection = MfgQualityInspection(
        company_id=user.company_id,
        work_order_id=wo.id,
        inspection_type=str(payload["inspection_type"]).strip(),
        result=result,
        sample_size=int(payload["sample_size"]) if payload.get("sample_size") not in (None, "") else None,
        defects_found=int(payload.get("defects_found") or 0),
        notes=(payload.get("notes") or "").strip() or None,
        inspector_user_id=user.id,
    )
    s.add(inspection)
    s.flush()
    record_event(
        s,
        actor=user,
        action="manufacturing.inspection.create",
        entity_type="MfgQualityInspection",
        entity_id=str(inspection.id),
        metadata={"work_order_id": wo.id, "result": result},
    )
    return inspection


def record_downtime(s: Session, payload: dict, *, user: User) -> DowntimeEvent:
    require_fields(payload, ("production_line_id", "reason", "duration_minutes"))
    try:
        minutes = int(payload["duration_minutes"])
    except (TypeError, ValueError):
        raise ValueError("duration_minutes must be an integer")
    if minutes <= 0:
        raise ValueError("duration_minutes must be greater than 0")
    line = get_scoped(s, ProductionLine, payload["production_line_id"], user.company_id)
    if line is None:
        raise ValueError("Production line not found")
    wo_id = None
    if payload.get("work_order_id") not in (None, ""):
        wo = get_scoped(s, WorkOrder, payload["work_order_id"], user.company_id)
        if wo is None:
            raise ValueError("Work order not found")
        wo_id = wo.id

    event = DowntimeEvent(
        company_id=user.company_id,
        production_line_id=line.id,
        work_order_id=wo_id,
        reason=str(payload["reason"]).strip(),
        duration_minutes=minutes,
        started_at=datetime.fromisoformat(payload["started_at"]) if payload.get("started_at") else datetime.utcnow(),
        recorded_by_user_id=user.id,
    )
    s.add(event)
    s.flush()
    record_event(
        s,
        actor=user,
        action="manufacturing.downtime.record",
        entity_type="DowntimeEvent",
        entity_id=str(event.id),
        metadata={"production_line_id": line.id, "duration_minutes": minutes},
    )
    return event


def bulk_update_work_orders(s: Session, work_order_ids: list, updates: dict, *, user: User) -> int:
    if not work_order_ids:
        raise ValueError("work_order_ids is required")
    fields = {k: v for k, v in (updates or {}).items() if k in BULK_WORK_ORDER_FIELDS}
    if not fields:
        raise ValueError(f"No updatable fields. Allowed: {', '.join(BULK_WORK_ORDER_FIELDS)}")
    if "priority" in fields and fields["priority"] not in WORK_ORDER_PRIORITIES:
        raise ValueError(f"Invalid priority. Must be one of: {', '.join(WORK_ORDER_PRIORITIES)}")
    if "production_line_id" in fields:
        line = get_scoped(s, ProductionLine, fields["production_line_id"], user.company_id)
        if line is None:
            raise ValueError("Production line not found")
        fields["production_line_id"] = line.id

    orders = (
        s.query(WorkOrder)
        .filter(WorkOrder.company_id == user.company_id, WorkOrder.id.in_([int(i) for i in work_order_ids]))
        .all()
    )
    now = datetime.utcnow()
    for wo in orders:
        if "status" in fields:
            _apply_status(wo, fields["status"], now)
        if "priority" in fields:
            wo.priority = fields["priority"]
        if "production_line_id" in fields:
            wo.production_line_id = fields["production_line_id"]
        wo.updated_at = now

    record_event(
        s,
        actor=user,
        action="manufacturing.work_order.bulk_update",
        entity_type="WorkOrder",
        metadata={"work_order_ids": [wo.id for wo in orders], "fields": fields},
    )
    return len(orders)


def create_production_plan(s: Session, payload: dict, *, user: User) -> ProductionPlan:
    require_fields(payload, ("plan_name", "start_date", "end_date"))
    start = parse_date(payload["start_date"])
    end = parse_date(payload["end_date"])
    if not start or not end:
        raise ValueError("start_date and end_date must be YYYY-MM-DD")
    if end < start:
        raise ValueError("end_date must be on or after start_date")

    plan = ProductionPlan(
        company_id=user.company_id,
        plan_name=str(payload["plan_name"]).strip(),
        start_date=start,
        end_date=end,
        status="draft",
        notes=(payload.get("notes") or "").strip() or None,
        created_by_user_id=user.id,
    )
    items = payload.get("items") or []
    if not isinstance(items, list):
        raise ValueError("items must be a list")
    for raw in items:
        bom = get_scoped(s, BillOfMaterials, (raw or {}).get("bom_id"), user.company_id)
        if bom is None:
            raise ValueError("BOM not found")
        qty = _dec(raw.get("quantity"), "quantity")
        if qty <= 0:
            raise ValueError("quantity must be greater than 0")
        plan.items.append(ProductionPlanItem(bom_id=bom.id, quantity=qty, due_date=parse_date(raw.get("due_date"))))
    s.add(plan)
    s.flush()
    record_event(
        s,
        actor=user,
        action="manufacturing.plan.create",
        entity_type="ProductionPlan",
        entity_id=str(plan.id),
        metadata={"plan_name": plan.plan_name, "items": len(plan.items)},
    )
    return plan


def line_downtime_summary(s: Session, company_id: int) -> dict[str, int]:
    out: dict[str, int] = defaultdict(int)
    for ev in s.query(DowntimeEvent).filter(DowntimeEvent.company_id == company_id).all():
        out[ev.reason] += ev.duration_minutes
    return dict(out)
