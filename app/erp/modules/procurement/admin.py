from __future__ import annotations

from flask import Blueprint, request

from app.erp.api import NotFound, get_payload, json_endpoint, json_success, model_to_dict
from app.erp.db import db_session
from app.erp.modules.procurement import service as svc
from app.erp.modules.procurement.models import PurchaseOrder, Requisition, Vendor
from app.erp.pages import render_module_page, stat_list, table
from app.erp.querying import get_scoped, paginate
from app.erp.rbac import require_permission
from app.erp.tenancy import current_company_id, current_user

bp = Blueprint("procurement", __name__)

SUBNAV = [
    ("Dashboard", "procurement.index", "procurement.view"),
    ("Vendors", "procurement.vendors", "procurement.vendors.view"),
    ("Purchase orders", "procurement.purchase_orders", "procurement.purchase_orders.view"),
    ("Requisitions", "procurement.requisitions", "procurement.requisitions.view"),
    ("Contracts", "procurement.contracts", "procurement.contracts.view"),
    ("Evaluations", "procurement.supplier_evaluation", "procurement.evaluation.view"),
    ("Spend", "procurement.spend_analysis", "procurement.spend.view"),
    ("Supplier portal", "procurement.supplier_portal", "procurement.portal.view"),
    ("Analytics", "procurement.analytics", "procurement.analytics.view"),
]

PO_COLUMNS = [
    ("po_number", "PO #"),
    ("vendor_name", "Vendor"),
    ("status", "Status"),
    ("order_date", "Ordered"),
    ("expected_delivery_date", "Expected"),
    ("total_amount", "Total"),
]


def _po_row(po: PurchaseOrder) -> dict:
    row = model_to_dict(po)
    row["vendor_name"] = po.vendor.vendor_name if po.vendor else None
    return row


# ---------- Pages ----------


@bp.get("/")
@require_permission("procurement.view")
def index():
    """Procurement dashboard: headline counts and the recent activity feed."""
    s = db_session()
    cid = current_company_id()
    stats = svc.dashboard_stats(s, cid)
    by_status = [
        {"status": k, "count": v["count"], "value": v["value"]}
        for k, v in sorted(stats["purchase_orders_by_status"].items())
    ]
    recent_pos = svc.list_purchase_orders(s, cid, {}).limit(10).all()
    return render_module_page(
        "procurement",
        page_title="Procurement",
        subnav=SUBNAV,
        stats=stat_list(
            {
                "Vendors": stats["total_vendors"],
                "Active vendors": stats["active_vendors"],
                "Purchase orders": stats["total_purchase_orders"],
                "Spend this month": stats["spend_this_month"],
                "Pending requisitions": stats["pending_requisitions"],
                "Contracts expiring (30d)": stats["expiring_contracts"],
                "On-time delivery %": stats["on_time_delivery_rate"],
            }
        ),
        tables=[
            table("Orders by status", [("status", "Status"), ("count", "Orders"), ("value", "Value")], by_status),
            table("Recent purchase orders", PO_COLUMNS, [_po_row(po) for po in recent_pos]),
            table(
                "Recent activity",
                [("created_at", "When"), ("action", "Action"), ("description", "Description")],
                svc.recent_activities(s, cid),
            ),
        ],
    )


@bp.get("/vendors")
@require_permission("procurement.vendors.view")
def vendors():
    s = db_session()
    cid = current_company_id()
    items, pagination = paginate(svc.list_vendors(s, cid, request.args), request.args.get("page", 1), 50)
    return render_module_page(
        "procurement",
        page_title="Vendors",
        subnav=SUBNAV,
        filters={
            "status": ("Status", ("",) + svc.VENDOR_STATUSES),
            "category": ("Category", ("",) + svc.VENDOR_CATEGORIES),
            "search": ("Search", None),
        },
        pagination=pagination,
        tables=[
            table(
                "Vendors",
                [
                    ("vendor_name", "Name"),
                    ("vendor_code", "Code"),
                    ("email", "Email"),
                    ("category", "Category"),
                    ("rating", "Rating"),
                    ("lead_time_days", "Lead time (d)"),
                    ("status", "Status"),
                ],
                items,
            )
        ],
    )


@bp.get("/purchase-orders")
@require_permission("procurement.purchase_orders.view")
def purchase_orders():
    s = db_session()
    cid = current_company_id()
    items, pagination = paginate(svc.list_purchase_orders(s, cid, request.args), request.args.get("page", 1), 50)
    return render_module_page(
        "procurement",
        page_title="Purchase orders",
        subnav=SUBNAV,
        filters={
            "status": ("Status", ("",) + svc.PO_STATUSES),
            "vendor_id": ("Vendor ID", None),
            "date_from": ("From", "date"),
            "date_to": ("To", "date"),
            "search": ("Search", None),
        },
        pagination=pagination,
        tables=[table("Purchase orders", PO_COLUMNS, [_po_row(po) for po in items])],
    )


@bp.get("/requisitions")
@require_permission("procurement.requisitions.view")
def requisitions():
    s = db_session()
    cid = current_company_id()
    items, pagination = paginate(svc.list_requisitions(s, cid, request.args), request.args.get("page", 1), 50)
    return render_module_page(
        "procurement",
        page_title="Requisitions",
        subnav=SUBNAV,
        filters={
            "status": ("Status", ("", "pending", "approved", "rejected")),
            "priority": ("Priority", ("", "low", "medium", "high", "urgent")),
            "search": ("Search", None),
        },
        pagination=pagination,
        tables=[
            table(
                "Requisitions",
                [
                    ("requisition_number", "Number"),
                    ("title", "Title"),
                    ("department", "Department"),
                    ("priority", "Priority"),
                    ("status", "Status"),
                    ("total_estimated_cost", "Estimated"),
                    ("required_by", "Required by"),
                ],
                items,
            )
        ],
    )


@bp.get("/contracts")
@require_permission("procurement.contracts.view")
def contracts():
    s = db_session()
    rows = svc.list_contracts(s, current_company_id(), request.args)
    return render_module_page(
        "procurement",
        page_title="Contracts",
        subnav=SUBNAV,
        filters={"status": ("Status", ("", "active", "expired", "terminated")), "search": ("Search", None)},
        stats=stat_list({"Renewal due": sum(1 for r in rows if r["renewal_due"])}),
        tables=[
            table(
                "Contracts",
                [
                    ("contract_number", "Number"),
                    ("contract_title", "Title"),
                    ("vendor_name", "Vendor"),
                    ("contract_value", "Value"),
                    ("end_date", "Ends"),
                    ("days_to_expiry", "Days left"),
                    ("status", "Status"),
                ],
                rows,
            )
        ],
    )


@bp.get("/supplier-evaluation")
@require_permission("procurement.evaluation.view")
def supplier_evaluation():
    s = db_session()
    rows = svc.supplier_evaluation_summary(s, current_company_id())
    return render_module_page(
        "procurement",
        page_title="Supplier evaluation",
        subnav=SUBNAV,
        tables=[
            table(
                "Average scores",
                [
                    ("vendor_name", "Vendor"),
                    ("evaluation_count", "Evaluations"),
                    ("avg_quality", "Quality"),
                    ("avg_delivery", "Delivery"),
                    ("avg_price", "Price"),
                    ("avg_service", "Service"),
                    ("avg_overall", "Overall"),
                    ("rating", "Rating"),
                    ("last_evaluated", "Last evaluated"),
                ],
                rows,
            )
        ],
    )


@bp.get("/spend-analysis")
@require_permission("procurement.spend.view")
def spend_analysis():
    s = db_session()
    data = svc.spend_analysis(s, current_company_id())
    return render_module_page(
        "procurement",
        page_title="Spend analysis",
        subnav=SUBNAV,
        stats=stat_list({"Total spend": data["total_spend"]}),
        tables=[
            table(
                "Top vendors",
                [("vendor_name", "Vendor"), ("order_count", "Orders"), ("total_spend", "Spend"), ("share", "Share %")],
                data["by_vendor"],
            ),
            table("By category", [("category", "Category"), ("total_spend", "Spend"), ("share", "Share %")], data["by_category"]),
            table("Last 12 months", [("month", "Month"), ("total_spend", "Spend")], data["monthly"]),
        ],
    )


@bp.get("/supplier-portal")
@require_permission("procurement.portal.view")
def supplier_portal():
    s = db_session()
    return render_module_page(
        "procurement",
        page_title="Supplier portal",
        subnav=SUBNAV,
        tables=[
            table(
                "Active suppliers",
                [("vendor_name", "Vendor"), ("email", "Email"), ("open_orders", "Open orders"), ("last_order_date", "Last order")],
                svc.supplier_portal(s, current_company_id()),
            )
        ],
    )


@bp.get("/analytics")
@require_permission("procurement.analytics.view")
def analytics():
    s = db_session()
    data = svc.procurement_analytics(s, current_company_id())
    return render_module_page(
        "procurement",
        page_title="Procurement analytics",
        subnav=SUBNAV,
        stats=stat_list(
            {
                "Avg lead time (d)": data["average_lead_time_days"],
                "Avg cycle time (d)": data["average_cycle_time_days"],
                "Delivered orders": data["delivered_orders"],
                "Late deliveries": data["late_deliveries"],
            }
        ),
        tables=[
            table(
                "Delivery performance",
                [("vendor_name", "Vendor"), ("delivered", "Delivered"), ("on_time", "On time"), ("on_time_rate", "On-time %")],
                data["delivery_performance"],
            )
        ],
    )


# ---------- JSON API ----------


def _vendor_or_404(vendor_id: int) -> Vendor:
    vendor = get_scoped(db_session(), Vendor, vendor_id, current_company_id())
    if vendor is None:
        raise NotFound("Vendor not found")
    return vendor


@bp.post("/api/vendors")
@require_permission("procurement.vendors.create")
@json_endpoint
def api_create_vendor():
    vendor = svc.create_vendor(db_session(), get_payload(), user=current_user())
    return json_success({"vendor_id": vendor.id}, message="Vendor created successfully", status=201)


@bp.route("/api/vendors/<int:vendor_id>", methods=["PUT", "PATCH", "POST"])
@require_permission("procurement.vendors.update")
@json_endpoint
def api_update_vendor(vendor_id: int):
    changes = svc.update_vendor(db_session(), _vendor_or_404(vendor_id), get_payload(), user=current_user())
    return json_success({"changes": changes}, message="Vendor updated successfully")


@bp.route("/api/vendors/<int:vendor_id>", methods=["DELETE"])
@require_permission("procurement.vendors.delete")
@json_endpoint
def api_delete_vendor(vendor_id: int):
    svc.delete_vendor(db_session(), _vendor_or_404(vendor_id), user=current_user())
    return json_success(message="Vendor deleted successfully")


@bp.post("/api/vendors/bulk-update")
@require_permission("procurement.vendors.update")
@json_endpoint
def api_bulk_update_vendors():
    payload = get_payload()
    count = svc.bulk_update_vendors(
        db_session(), payload.get("vendor_ids") or [], payload.get("updates") or {}, user=current_user()
    )
    return json_success({"updated_count": count}, message=f"{count} vendors updated")


@bp.post("/api/purchase-orders")
@require_permission("procurement.purchase_orders.create")
@json_endpoint
def api_create_purchase_order():
    po = svc.create_purchase_order(db_session(), get_payload(), user=current_user())
    return json_success(
        {"po_id": po.id, "po_number": po.po_number, "total_amount": po.total_amount},
        message="Purchase order created successfully",
        status=201,
    )


@bp.post("/api/purchase-orders/<int:po_id>/status")
@require_permission("procurement.purchase_orders.update")
@json_endpoint
def api_update_purchase_order_status(po_id: int):
    s = db_session()
    po = get_scoped(s, PurchaseOrder, po_id, current_company_id())
    if po is None:
        raise NotFound("Purchase order not found")
    payload = get_payload()
    svc.update_purchase_order_status(s, po, payload.get("status") or "", user=current_user(), notes=payload.get("notes"))
    return json_success({"status": po.status}, message="Purchase order status updated")


@bp.post("/api/requisitions")
@require_permission("procurement.requisitions.create")
@json_endpoint
def api_create_requisition():
    req = svc.create_requisition(db_session(), get_payload(), user=current_user())
    return json_success(
        {"requisition_id": req.id, "requisition_number": req.requisition_number},
        message="Requisition created successfully",
        status=201,
    )


@bp.post("/api/requisitions/<int:requisition_id>/approve")
@require_permission("procurement.requisitions.approve")
@json_endpoint
def api_approve_requisition(requisition_id: int):
    s = db_session()
    req = get_scoped(s, Requisition, requisition_id, current_company_id())
    if req is None:
        raise NotFound("Requisition not found")
    payload = get_payload()
    action = (payload.get("action") or "approve").strip().lower()
    if action not in ("approve", "reject"):
        raise ValueError("action must be approve or reject")
    svc.approve_requisition(s, req, approve=action == "approve", user=current_user(), notes=payload.get("notes"))
    return json_success({"status": req.status}, message=f"Requisition {req.status}")


@bp.post("/api/contracts")
@require_permission("procurement.contracts.create")
@json_endpoint
def api_create_contract():
    contract = svc.create_contract(db_session(), get_payload(), user=current_user())
    return json_success(
        {"contract_id": contract.id, "contract_number": contract.contract_number},
        message="Contract created successfully",
        status=201,
    )


@bp.post("/api/supplier-evaluations")
@require_permission("procurement.evaluation.create")
@json_endpoint
def api_create_supplier_evaluation():
    s = db_session()
    evaluation = svc.create_supplier_evaluation(s, get_payload(), user=current_user())
    vendor = s.get(Vendor, evaluation.vendor_id)
    return json_success(
        {"evaluation_id": evaluation.id, "overall_score": evaluation.overall_score, "vendor_rating": vendor.rating},
        message="Supplier evaluation recorded",
        status=201,
    )
