from __future__ import annotations

from flask import Blueprint, request

from app.erp.api import NotFound, get_payload, json_endpoint, json_success
from app.erp.db import db_session
from app.erp.modules.manufacturing import service as svc
from app.erp.modules.manufacturing.models import WorkOrder
from app.erp.pages import render_module_page, stat_list, table
from app.erp.querying import get_scoped, paginate
from app.erp.rbac import require_permission
from app.erp.tenancy import current_company_id, current_user

bp = Blueprint("manufacturing", __name__)

SUBNAV = [
    ("Dashboard", "manufacturing.index", "manufacturing.view"),
    ("Planning", "manufacturing.production_planning", "manufacturing.planning.view"),
    ("Bills of materials", "manufacturing.bill_of_materials", "manufacturing.bom.view"),
    ("Work orders", "manufacturing.work_orders", "manufacturing.work_orders.view"),
    ("Quality", "manufacturing.quality_control", "manufacturing.quality.view"),
    ("Resources", "manufacturing.resource_planning", "manufacturing.resources.view"),
    ("Shop floor", "manufacturing.shop_floor", "manufacturing.shop_floor.view"),
    ("Analytics", "manufacturing.analytics", "manufacturing.analytics.view"),
]

WO_COLUMNS = [
    ("work_order_number", "WO #"),
    ("product_name", "Product"),
    ("line_name", "Line"),
    ("status", "Status"),
    ("priority", "Priority"),
    ("quantity_planned", "Planned"),
    ("quantity_produced", "Produced"),
    ("completion_percentage", "Complete %"),
]


# ---------- Pages ----------


@bp.get("/")
@require_permission("manufacturing.view")
def index():
    s = db_session()
    cid = current_company_id()
    stats = svc.dashboard_stats(s, cid)
    recent = svc.list_work_orders(s, cid, {}).limit(10).all()
    return render_module_page(
        "manufacturing",
        page_title="Manufacturing",
        subnav=SUBNAV,
        stats=stat_list(
            {
                "Work orders": stats["total_work_orders"],
                "Efficiency %": stats["production_efficiency"],
                "Scrap rate %": stats["scrap_rate"],
                "Active lines": stats["active_lines"],
                "Downtime this month (min)": stats["downtime_minutes_this_month"],
                "Inspection pass %": stats["inspection_pass_rate"],
            }
        ),
        tables=[
            table(
                "Work orders by status",
                [("status", "Status"), ("count", "Orders")],
                [{"status": k, "count": v} for k, v in sorted(stats["work_orders_by_status"].items())],
            ),
            table("Recent work orders", WO_COLUMNS, [svc.work_order_row(wo) for wo in recent]),
        ],
    )


@bp.get("/planning")
@require_permission("manufacturing.planning.view")
def production_planning():
    s = db_session()
    data = svc.planning_overview(s, current_company_id())
    return render_module_page(
        "manufacturing",
        page_title="Production planning",
        subnav=SUBNAV,
        tables=[
            table(
                "Production plans",
                [
                    ("plan_name", "Plan"),
                    ("start_date", "Start"),
                    ("end_date", "End"),
                    ("status", "Status"),
                    ("item_count", "Items"),
                    ("total_quantity", "Quantity"),
                ],
                data["plans"],
            ),
            table("Starting in the next 30 days", WO_COLUMNS, data["upcoming_work_orders"]),
        ],
    )


@bp.get("/bom")
@require_permission("manufacturing.bom.view")
def bill_of_materials():
    s = db_session()
    return render_module_page(
        "manufacturing",
        page_title="Bills of materials",
        subnav=SUBNAV,
        tables=[
            table(
                "BOMs",
                [
                    ("bom_number", "BOM #"),
                    ("product_name", "Product"),
                    ("product_code", "Code"),
                    ("version", "Version"),
                    ("status", "Status"),
                    ("component_count", "Components"),
                    ("total_cost", "Cost"),
                ],
                svc.list_boms(s, current_company_id()),
            )
        ],
    )


@bp.get("/work-orders")
@require_permission("manufacturing.work_orders.view")
def work_orders():
    s = db_session()
    cid = current_company_id()
    items, pagination = paginate(svc.list_work_orders(s, cid, request.args), request.args.get("page", 1), 50)
    lines = svc.list_production_lines(s, cid)
    return render_module_page(
        "manufacturing",
        page_title="Work orders",
        subnav=SUBNAV,
        filters={
            "status": ("Status", ("",) + svc.WORK_ORDER_STATUSES),
            "production_line": ("Line", ("",) + tuple(str(line.id) for line in lines)),
            "priority": ("Priority", ("",) + svc.WORK_ORDER_PRIORITIES),
            "date_from": ("From", "date"),
            "date_to": ("To", "date"),
            "search": ("Search", None),
        },
        pagination=pagination,
        tables=[table("Work orders", WO_COLUMNS, [svc.work_order_row(wo) for wo in items])],
    )


@bp.get("/quality")
@require_permission("manufacturing.quality.view")
def quality_control():
    s = db_session()
    data = svc.inspections_overview(s, current_company_id())
    return render_module_page(
        "manufacturing",
        page_title="Quality control",
        subnav=SUBNAV,
        stats=stat_list({"Pass rate %": data["pass_rate"], **{k.title(): v for k, v in sorted(data["by_result"].items())}}),
        tables=[
            table(
                "Inspections",
                [
                    ("work_order_number", "WO #"),
                    ("inspection_type", "Type"),
                    ("result", "Result"),
                    ("sample_size", "Sample"),
                    ("defects_found", "Defects"),
                    ("inspected_at", "Inspected"),
                ],
                data["inspections"],
            )
        ],
    )


@bp.get("/resources")
@require_permission("manufacturing.resources.view")
def resource_planning():
    s = db_session()
    data = svc.resource_planning(s, current_company_id())
    return render_module_page(
        "manufacturing",
        page_title="Resource planning",
        subnav=SUBNAV,
        tables=[
            table(
                "Line load",
                [
                    ("line_name", "Line"),
                    ("status", "Status"),
                    ("capacity_per_hour", "Capacity/h"),
                    ("open_orders", "Open orders"),
                    ("open_quantity", "Open qty"),
                    ("hours_of_work", "Hours of work"),
                ],
                data["lines"],
            ),
            table(
                "Component stock",
                [
                    ("component_name", "Component"),
                    ("product_name", "Product"),
                    ("stock_on_hand", "On hand"),
                    ("reorder_point", "Reorder at"),
                    ("safety_stock", "Safety"),
                    ("stock_status", "Status"),
                ],
                data["stock"],
            ),
        ],
    )


@bp.get("/shop-floor")
@require_permission("manufacturing.shop_floor.view")
def shop_floor():
    s = db_session()
    data = svc.shop_floor(s, current_company_id())
    return render_module_page(
        "manufacturing",
        page_title="Shop floor",
        subnav=SUBNAV,
        stats=stat_list({"In progress": len(data["in_progress"])}),
        tables=[
            table("In progress", WO_COLUMNS, data["in_progress"]),
            table(
                "Recent production data",
                [
                    ("recorded_at", "Recorded"),
                    ("work_order_number", "WO #"),
                    ("data_type", "Type"),
                    ("quantity_produced", "Produced"),
                    ("quantity_scrapped", "Scrapped"),
                    ("value", "Value"),
                ],
                data["recent_data"],
            ),
        ],
    )


@bp.get("/analytics")
@require_permission("manufacturing.analytics.view")
def analytics():
    s = db_session()
    cid = current_company_id()
    data = svc.manufacturing_analytics(s, cid)
    by_reason = svc.line_downtime_summary(s, cid)
    return render_module_page(
        "manufacturing",
        page_title="Manufacturing analytics",
        subnav=SUBNAV,
        stats=stat_list(
            {
                "Efficiency %": data["production_efficiency"],
                "Scrap rate %": data["scrap_rate"],
                "Cycle time efficiency %": data["cycle_time_efficiency"],
                "Completed orders": data["completed_orders"],
            }
        ),
        tables=[
            table(
                "Per line",
                [("line_name", "Line"), ("efficiency", "Efficiency %"), ("scrap_rate", "Scrap %"), ("downtime_minutes", "Downtime (min)")],
                data["per_line"],
            ),
            table("Monthly output", [("month", "Month"), ("produced", "Produced"), ("scrapped", "Scrapped")], data["monthly_output"]),
            table(
                "Downtime by reason",
                [("reason", "Reason"), ("minutes", "Minutes")],
                [{"reason": k, "minutes": v} for k, v in sorted(by_reason.items(), key=lambda kv: -kv[1])],
            ),
        ],
    )


# ---------- JSON API ----------


@bp.post("/api/work-orders")
@require_permission("manufacturing.work_orders.create")
@json_endpoint
def api_create_work_order():
    wo = svc.create_work_order(db_session(), get_payload(), user=current_user())
    return json_success(
        {"work_order_id": wo.id, "work_order_number": wo.work_order_number},
        message="Work order created successfully",
        status=201,
    )


@bp.post("/api/work-orders/<int:work_order_id>/status")
@require_permission("manufacturing.work_orders.update")
@json_endpoint
def api_update_work_order_status(work_order_id: int):
    s = db_session()
    wo = get_scoped(s, WorkOrder, work_order_id, current_company_id())
    if wo is None:
        raise NotFound("Work order not found")
    payload = get_payload()
    svc.update_work_order_status(s, wo, payload.get("status") or "", user=current_user(), notes=payload.get("notes"))
    return json_success({"status": wo.status}, message="Work order status updated")


@bp.post("/api/work-orders/bulk-update")
@require_permission("manufacturing.work_orders.update")
@json_endpoint
def api_bulk_update_work_orders():
    payload = get_payload()
    count = svc.bulk_update_work_orders(
        db_session(), payload.get("work_order_ids") or [], payload.get("updates") or {}, user=current_user()
    )
    return json_success({"updated_count": count}, message=f"{count} work orders updated")


@bp.post("/api/production-data")
@require_permission("manufacturing.shop_floor.update")
@json_endpoint
def api_record_production_data():
    row = svc.record_production_data(db_session(), get_payload(), user=current_user())
    return json_success({"production_data_id": row.id}, message="Production data recorded", status=201)


@bp.post("/api/inspections")
@require_permission("manufacturing.quality.create")
@json_endpoint
def api_create_quality_inspection():
    inspection = svc.create_quality_inspection(db_session(), get_payload(), user=current_user())
    return json_success(
        {"inspection_id": inspection.id, "result": inspection.result},
        message="Quality inspection created",
        status=201,
    )


@bp.post("/api/production-lines")
@require_permission("manufacturing.resources.create")
@json_endpoint
def api_create_production_line():
    line = svc.create_production_line(db_session(), get_payload(), user=current_user())
    return json_success({"production_line_id": line.id}, message="Production line created", status=201)


@bp.post("/api/downtime")
@require_permission("manufacturing.shop_floor.update")
@json_endpoint
def api_record_downtime():
    event = svc.record_downtime(db_session(), get_payload(), user=current_user())
    return json_success({"downtime_id": event.id}, message="Downtime recorded", status=201)


@bp.post("/api/boms")
@require_permission("manufacturing.bom.create")
@json_endpoint
def api_create_bom():
    bom = svc.create_bom(db_session(), get_payload(), user=current_user())
    return json_success({"bom_id": bom.id, "bom_number": bom.bom_number}, message="BOM created", status=201)


@bp.post("/api/production-plans")
@require_permission("manufacturing.planning.create")
@json_endpoint
def api_create_production_plan():
    plan = svc.create_production_plan(db_session(), get_payload(), user=current_user())
    return json_success({"plan_id": plan.id, "item_count": len(plan.items)}, message="Production plan created", status=201)
