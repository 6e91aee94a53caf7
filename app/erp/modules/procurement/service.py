"""
Procurement service layer.
Vendors, purchase orders, requisitions, contracts and supplier evaluations.
"""
from __future__ import annotations

import secrets
from collections import defaultdict
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from sqlalchemy import case, func, or_, select
from sqlalchemy.orm import Session

from app.erp.api import EMAIL_RE, require_fields, validate_payload
from app.erp.audit import record_event
from app.erp.querying import FilterBuilder, get_scoped, month_bucket, parse_date, pct

from .models import (
    Contract,
    ProcurementActivity,
    PurchaseOrder,
    PurchaseOrderItem,
    Requisition,
    RequisitionItem,
    SupplierEvaluation,
    Vendor,
)

if TYPE_CHECKING:
    from app.erp.models import User


VENDOR_STATUSES = ("active", "inactive", "blocked")
VENDOR_CATEGORIES = ("raw_materials", "components", "services", "equipment", "logistics", "office", "other")
PAYMENT_TERMS = ("net_15", "net_30", "net_45", "net_60", "due_on_receipt", "prepaid")

PO_STATUSES = ("draft", "approved", "ordered", "shipped", "delivered", "cancelled")
# Orders still in flight; a vendor with any of these cannot be deactivated.
ACTIVE_PO_STATUSES = ("draft", "approved", "ordered", "shipped")

VENDOR_UPDATABLE_FIELDS = (
    "vendor_name",
    "vendor_code",
    "email",
    "phone",
    "address",
    "contact_person",
    "category",
    "status",
    "rating",
    "lead_time_days",
    "payment_terms",
)
VENDOR_BULK_FIELDS = ("category", "status", "rating", "lead_time_days", "payment_terms")
CONTRACT_RULES = {"renewal_notice_days": {"type": "int", "min": 0, "max": 365, "default": 30}}


def _number(prefix: str, hex_bytes: int = 3) -> str:
    return f"{prefix}-{datetime.utcnow():%Y%m%d}-{secrets.token_hex(hex_bytes).upper()}"


def _dec(value: Any, field: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError(f"{field} must be a number")


def _normalize_email(raw: Any) -> str:
    email = (str(raw or "")).strip().lower()
    if not EMAIL_RE.match(email):
        raise ValueError("Invalid email address")
    return email


def log_activity(
    s: Session,
    *,
    user: User,
    action: str,
    entity_type: str,
    entity_id: int | None,
    description: str,
    details: dict | None = None,
) -> ProcurementActivity:
    activity = ProcurementActivity(
        company_id=user.company_id,
        user_id=user.id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        description=description,
        details=details,
    )
    s.add(activity)
    return activity


# ---------- Reads / aggregates ----------


def dashboard_stats(s: Session, company_id: int, *, today: date | None = None) -> dict[str, Any]:
    today = today or date.today()
    month_start = today.replace(day=1)

    total_vendors, active_vendors = s.execute(
        select(
            func.count(Vendor.id),
            func.coalesce(func.sum(case((Vendor.status == "active", 1), else_=0)), 0),
        ).where(Vendor.company_id == company_id)
    ).one()

    po_by_status = {
        row.status: {"count": row.count, "value": float(row.value or 0)}
        for row in s.execute(
            select(
                PurchaseOrder.status,
                func.count(PurchaseOrder.id).label("count"),
                func.coalesce(func.sum(PurchaseOrder.total_amount), 0).label("value"),
            )
            .where(PurchaseOrder.company_id == company_id)
            .group_by(PurchaseOrder.status)
        )
    }

    spend_this_month = s.execute(
        select(func.coalesce(func.sum(PurchaseOrder.total_amount), 0)).where(
            PurchaseOrder.company_id == company_id,
            PurchaseOrder.order_date >= month_start,
            PurchaseOrder.status != "cancelled",
        )
    ).scalar_one()

    pending_requisitions = s.execute(
        select(func.count(Requisition.id)).where(
            Requisition.company_id == company_id, Requisition.status == "pending"
        )
    ).scalar_one()

    expiring_contracts = s.execute(
        select(func.count(Contract.id)).where(
            Contract.company_id == company_id,
            Contract.status == "active",
            Contract.end_date >= today,
            Contract.end_date <= today + timedelta(days=30),
        )
    ).scalar_one()

    delivered, on_time = s.execute(
        select(
            func.count(PurchaseOrder.id),
            func.coalesce(
                func.sum(
                    case(
                        (
                            or_(
                                PurchaseOrder.expected_delivery_date.is_(None),
                                PurchaseOrder.actual_delivery_date <= PurchaseOrder.expected_delivery_date,
                            ),
                            1,
                        ),
                        else_=0,
                    )
                ),
                0,
            ),
        ).where(
            PurchaseOrder.company_id == company_id,
            PurchaseOrder.status == "delivered",
            PurchaseOrder.actual_delivery_date.is_not(None),
        )
    ).one()

    return {
        "total_vendors": total_vendors,
        "active_vendors": int(active_vendors or 0),
        "purchase_orders_by_status": po_by_status,
        "total_purchase_orders": sum(v["count"] for v in po_by_status.values()),
        "spend_this_month": float(spend_this_month or 0),
        "pending_requisitions": pending_requisitions,
        "expiring_contracts": expiring_contracts,
        "on_time_delivery_rate": pct(on_time, delivered),
    }


def recent_activities(s: Session, company_id: int, limit: int = 10) -> list[ProcurementActivity]:
    return (
        s.query(ProcurementActivity)
        .filter(ProcurementActivity.company_id == company_id)
        .order_by(ProcurementActivity.created_at.desc(), ProcurementActivity.id.desc())
        .limit(limit)
        .all()
    )


def vendor_filters(company_id: int, args: dict) -> FilterBuilder:
    fb = FilterBuilder(Vendor, company_id)
    fb.add(Vendor.status, "eq", args.get("status"))
    fb.add(Vendor.category, "eq", args.get("category"))
    fb.search([Vendor.vendor_name, Vendor.email, Vendor.vendor_code], args.get("search"))
    return fb


def list_vendors(s: Session, company_id: int, args: dict):
    fb = vendor_filters(company_id, args)
    return s.query(Vendor).filter(*fb.clauses).order_by(Vendor.vendor_name.asc())


def vendor_overview(s: Session, company_id: int) -> list[dict[str, Any]]:
    """Per-vendor order counts, spend and latest evaluation average."""
    po_sub = (
        select(
            PurchaseOrder.vendor_id,
            func.count(PurchaseOrder.id).label("order_count"),
            func.coalesce(func.sum(PurchaseOrder.total_amount), 0).label("total_spend"),
        )
        .where(PurchaseOrder.company_id == company_id, PurchaseOrder.status != "cancelled")
        .group_by(PurchaseOrder.vendor_id)
        .subquery()
    )
    rows = s.execute(
        select(
            Vendor.id,
            Vendor.vendor_name,
            Vendor.category,
            Vendor.status,
            Vendor.rating,
            func.coalesce(po_sub.c.order_count, 0).label("order_count"),
            func.coalesce(po_sub.c.total_spend, 0).label("total_spend"),
        )
        .outerjoin(po_sub, po_sub.c.vendor_id == Vendor.id)
        .where(Vendor.company_id == company_id)
        .order_by(func.coalesce(po_sub.c.total_spend, 0).desc())
    ).mappings().all()
    return [dict(r) for r in rows]


def purchase_order_filters(company_id: int, args: dict) -> FilterBuilder:
    fb = FilterBuilder(PurchaseOrder, company_id)
    fb.add(PurchaseOrder.status, "eq", args.get("status"))
    vendor_id = args.get("vendor_id") or args.get("vendor")
    if vendor_id not in (None, "", "all"):
        try:
            fb.add(PurchaseOrder.vendor_id, "eq", int(vendor_id))
        except (TypeError, ValueError):
            pass
    fb.date_range(PurchaseOrder.order_date, args.get("date_from"), args.get("date_to"))
    fb.search([PurchaseOrder.po_number, PurchaseOrder.notes], args.get("search"))
    return fb


def list_purchase_orders(s: Session, company_id: int, args: dict):
    fb = purchase_order_filters(company_id, args)
    return s.query(PurchaseOrder).filter(*fb.clauses).order_by(PurchaseOrder.order_date.desc(), PurchaseOrder.id.desc())


def list_requisitions(s: Session, company_id: int, args: dict):
    fb = FilterBuilder(Requisition, company_id)
    fb.add(Requisition.status, "eq", args.get("status"))
    fb.add(Requisition.priority, "eq", args.get("priority"))
    fb.add(Requisition.department, "eq", args.get("department"))
    fb.search([Requisition.title, Requisition.requisition_number], args.get("search"))
    return s.query(Requisition).filter(*fb.clauses).order_by(Requisition.created_at.desc())


def list_contracts(s: Session, company_id: int, args: dict, *, today: date | None = None) -> list[dict[str, Any]]:
    today = today or date.today()
    fb = FilterBuilder(Contract, company_id)
    fb.add(Contract.status, "eq", args.get("status"))
    fb.search([Contract.contract_title, Contract.contract_number], args.get("search"))
    contracts = s.query(Contract).filter(*fb.clauses).order_by(Contract.end_date.asc()).all()
    out = []
    for c in contracts:
        days_to_expiry = (c.end_date - today).days
        out.append(
            {
                "id": c.id,
                "contract_number": c.contract_number,
                "contract_title": c.contract_title,
                "vendor_name": c.vendor.vendor_name if c.vendor else None,
                "contract_value": c.contract_value,
                "start_date": c.start_date,
                "end_date": c.end_date,
                "status": c.status,
                "days_to_expiry": days_to_expiry,
                "renewal_due": c.status == "active" and 0 <= days_to_expiry <= c.renewal_notice_days,
            }
        )
    return out


def supplier_evaluation_summary(s: Session, company_id: int) -> list[dict[str, Any]]:
    rows = s.execute(
        select(
            Vendor.id.label("vendor_id"),
            Vendor.vendor_name,
            Vendor.rating,
            func.count(SupplierEvaluation.id).label("evaluation_count"),
            func.avg(SupplierEvaluation.quality_score).label("avg_quality"),
            func.avg(SupplierEvaluation.delivery_score).label("avg_delivery"),
            func.avg(SupplierEvaluation.price_score).label("avg_price"),
            func.avg(SupplierEvaluation.service_score).label("avg_service"),
            func.avg(SupplierEvaluation.overall_score).label("avg_overall"),
            func.max(SupplierEvaluation.evaluation_date).label("last_evaluated"),
        )
        .join(SupplierEvaluation, SupplierEvaluation.vendor_id == Vendor.id)
        .where(Vendor.company_id == company_id)
        .group_by(Vendor.id, Vendor.vendor_name, Vendor.rating)
        .order_by(func.avg(SupplierEvaluation.overall_score).desc())
    ).mappings().all()
    return [
        {k: (round(float(v), 2) if k.startswith("avg_") and v is not None else v) for k, v in r.items()}
        for r in rows
    ]


def spend_analysis(s: Session, company_id: int, *, today: date | None = None) -> dict[str, Any]:
    today = today or date.today()
    year_ago = (today.replace(day=1) - timedelta(days=335)).replace(day=1)
    base = (PurchaseOrder.company_id == company_id, PurchaseOrder.status != "cancelled")

    total = s.execute(select(func.coalesce(func.sum(PurchaseOrder.total_amount), 0)).where(*base)).scalar_one()

    by_vendor = s.execute(
        select(
            Vendor.vendor_name,
            func.count(PurchaseOrder.id).label("order_count"),
            func.coalesce(func.sum(PurchaseOrder.total_amount), 0).label("total_spend"),
        )
        .join(Vendor, Vendor.id == PurchaseOrder.vendor_id)
        .where(*base)
        .group_by(Vendor.vendor_name)
        .order_by(func.sum(PurchaseOrder.total_amount).desc())
        .limit(10)
    ).mappings().all()

    by_category = s.execute(
        select(
            Vendor.category,
            func.coalesce(func.sum(PurchaseOrder.total_amount), 0).label("total_spend"),
        )
        .join(Vendor, Vendor.id == PurchaseOrder.vendor_id)
        .where(*base)
        .group_by(Vendor.category)
        .order_by(func.sum(PurchaseOrder.total_amount).desc())
    ).mappings().all()

    month = month_bucket(s, PurchaseOrder.order_date)
    monthly = s.execute(
        select(month.label("month"), func.coalesce(func.sum(PurchaseOrder.total_amount), 0).label("total_spend"))
        .where(*base, PurchaseOrder.order_date >= year_ago)
        .group_by(month)
        .order_by(month)
    ).mappings().all()

    total_f = float(total or 0)
    return {
        "total_spend": total_f,
        "by_vendor": [
            {**dict(r), "total_spend": float(r["total_spend"]), "share": pct(r["total_spend"], total_f)} for r in by_vendor
        ],
        "by_category": [
            {**dict(r), "total_spend": float(r["total_spend"]), "share": pct(r["total_spend"], total_f)} for r in by_category
        ],
        "monthly": [{**dict(r), "total_spend": float(r["total_spend"])} for r in monthly],
    }


def supplier_portal(s: Session, company_id: int) -> list[dict[str, Any]]:
    rows = s.execute(
        select(
            Vendor.id,
            Vendor.vendor_name,
            Vendor.email,
            Vendor.status,
            func.coalesce(
                func.sum(case((PurchaseOrder.status.in_(ACTIVE_PO_STATUSES), 1), else_=0)), 0
            ).label("open_orders"),
            func.max(PurchaseOrder.order_date).label("last_order_date"),
        )
        .outerjoin(PurchaseOrder, PurchaseOrder.vendor_id == Vendor.id)
        .where(Vendor.company_id == company_id, Vendor.status == "active")
        .group_by(Vendor.id, Vendor.vendor_name, Vendor.email, Vendor.status)
        .order_by(Vendor.vendor_name)
    ).mappings().all()
    return [dict(r) for r in rows]


def procurement_analytics(s: Session, company_id: int) -> dict[str, Any]:
    avg_lead_time = s.execute(
        select(func.avg(Vendor.lead_time_days)).where(Vendor.company_id == company_id, Vendor.status == "active")
    ).scalar_one()

    delivered = (
        s.query(PurchaseOrder)
        .filter(
            PurchaseOrder.company_id == company_id,
            PurchaseOrder.status == "delivered",
            PurchaseOrder.actual_delivery_date.is_not(None),
        )
        .all()
    )
    cycle_days = [(po.actual_delivery_date - po.order_date).days for po in delivered]
    late = [po for po in delivered if po.expected_delivery_date and po.actual_delivery_date > po.expected_delivery_date]

    per_vendor: dict[str, dict[str, int]] = defaultdict(lambda: {"delivered": 0, "on_time": 0})
    for po in delivered:
        key = po.vendor.vendor_name if po.vendor else "?"
        per_vendor[key]["delivered"] += 1
        if not po.expected_delivery_date or po.actual_delivery_date <= po.expected_delivery_date:
            per_vendor[key]["on_time"] += 1

    return {
        "average_lead_time_days": round(float(avg_lead_time), 1) if avg_lead_time is not None else None,
        "average_cycle_time_days": round(sum(cycle_days) / len(cycle_days), 1) if cycle_days else None,
        "delivered_orders": len(delivered),
        "late_deliveries": len(late),
        "delivery_performance": [
            {"vendor_name": name, **counts, "on_time_rate": pct(counts["on_time"], counts["delivered"])}
            for name, counts in sorted(per_vendor.items())
        ],
    }


# ---------- Vendors ----------


def _email_taken(s: Session, company_id: int, email: str, *, exclude_id: int | None = None) -> bool:
    q = s.query(Vendor.id).filter(Vendor.company_id == company_id, func.lower(Vendor.email) == email)
    if exclude_id is not None:
        q = q.filter(Vendor.id != exclude_id)
    return q.first() is not None


def _apply_vendor_field(vendor: Vendor, field: str, value: Any) -> Any:
    if field == "status":
        if value not in VENDOR_STATUSES:
            raise ValueError(f"Invalid status. Must be one of: {', '.join(VENDOR_STATUSES)}")
    elif field == "category":
        value = (value or "other").strip()
    elif field == "payment_terms":
        if value not in PAYMENT_TERMS:
            raise ValueError(f"Invalid payment terms. Must be one of: {', '.join(PAYMENT_TERMS)}")
    elif field == "rating":
        value = _dec(value, "rating")
        if value < 0 or value > 5:
            raise ValueError("rating must be between 0 and 5")
    elif field == "lead_time_days":
        try:
            value = int(value)
        except (TypeError, ValueError):
            raise ValueError("lead_time_days must be an integer")
        if value < 0:
            raise ValueError("lead_time_days cannot be negative")
    elif isinstance(value, str):
        value = value.strip() or None
    setattr(vendor, field, value)
    return value


def create_vendor(s: Session, payload: dict, *, user: User) -> Vendor:
    require_fields(payload, ("vendor_name", "email"))
    email = _normalize_email(payload["email"])
    if _email_taken(s, user.company_id, email):
        raise ValueError("A vendor with this email already exists")

    now = datetime.utcnow()
    vendor = Vendor(
        company_id=user.company_id,
        vendor_name=str(payload["vendor_name"]).strip(),
        email=email,
        category="other",
        rating=Decimal("3.0"),
        status="active",
        lead_time_days=7,
        payment_terms="net_30",
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id,
    )
    for field in ("vendor_code", "phone", "address", "contact_person", "category", "rating", "lead_time_days", "payment_terms", "status"):
        if payload.get(field) not in (None, ""):
            _apply_vendor_field(vendor, field, payload[field])
    s.add(vendor)
    s.flush()

    log_activity(
        s,
        user=user,
        action="vendor_created",
        entity_type="vendor",
        entity_id=vendor.id,
        description=f"Vendor {vendor.vendor_name} created",
    )
    record_event(
        s,
        actor=user,
        action="procurement.vendor.create",
        entity_type="Vendor",
        entity_id=str(vendor.id),
        metadata={"vendor_name": vendor.vendor_name, "email": vendor.email},
    )
    return vendor


def update_vendor(s: Session, vendor: Vendor, payload: dict, *, user: User) -> dict[str, Any]:
    """Update allowed fields only; returns the change set."""
    changes: dict[str, Any] = {}
    for field in VENDOR_UPDATABLE_FIELDS:
        if field not in payload:
            continue
        new_value = payload[field]
        if field == "email":
            new_value = _normalize_email(new_value)
            if new_value != vendor.email and _email_taken(s, vendor.company_id, new_value, exclude_id=vendor.id):
                raise ValueError("A vendor with this email already exists")
        if field == "vendor_name" and not str(new_value or "").strip():
            raise ValueError("vendor_name cannot be empty")
        old_value = getattr(vendor, field)
        applied = _apply_vendor_field(vendor, field, new_value)
        if old_value != applied:
            changes[field] = {"from": str(old_value) if old_value is not None else None, "to": str(applied) if applied is not None else None}

    if not changes:
        return changes

    vendor.updated_at = datetime.utcnow()
    log_activity(
        s,
        user=user,
        action="vendor_updated",
        entity_type="vendor",
        entity_id=vendor.id,
        description=f"Vendor {vendor.vendor_name} updated",
        details=changes,
    )
    record_event(
        s,
        actor=user,
        action="procurement.vendor.update",
        entity_type="Vendor",
        entity_id=str(vendor.id),
        metadata={"changes": changes},
    )
    return changes


def delete_vendor(s: Session, vendor: Vendor, *, user: User) -> None:
    """Soft delete: vendors with in-flight orders are kept active."""
    active_orders = (
        s.query(func.count(PurchaseOrder.id))
        .filter(PurchaseOrder.vendor_id == vendor.id, PurchaseOrder.status.in_(ACTIVE_PO_STATUSES))
        .scalar()
    )
    if active_orders:
        raise ValueError("Cannot delete vendor with active purchase orders")

    vendor.status = "inactive"
    vendor.updated_at = datetime.utcnow()
    log_activity(
        s,
        user=user,
        action="vendor_deleted",
        entity_type="vendor",
        entity_id=vendor.id,
        description=f"Vendor {vendor.vendor_name} deactivated",
    )
    record_event(s, actor=user, action="procurement.vendor.delete", entity_type="Vendor", entity_id=str(vendor.id))


def bulk_update_vendors(s: Session, vendor_ids: list, updates: dict, *, user: User) -> int:
    if not vendor_ids:
        raise ValueError("vendor_ids is required")
    fields = {k: v for k, v in (updates or {}).items() if k in VENDOR_BULK_FIELDS}
    if not fields:
        raise ValueError(f"No updatable fields. Allowed: {', '.join(VENDOR_BULK_FIELDS)}")

    vendors = (
        s.query(Vendor)
        .filter(Vendor.company_id == user.company_id, Vendor.id.in_([int(v) for v in vendor_ids]))
        .all()
    )
    now = datetime.utcnow()
    for vendor in vendors:
        for field, value in fields.items():
            _apply_vendor_field(vendor, field, value)
        vendor.updated_at = now

    log_activity(
        s,
        user=user,
        action="vendors_bulk_updated",
        entity_type="vendor",
        entity_id=None,
        description=f"{len(vendors)} vendors updated",
        details={"vendor_ids": [v.id for v in vendors], "fields": fields},
    )
    record_event(
        s,
        actor=user,
        action="procurement.vendor.bulk_update",
        entity_type="Vendor",
        metadata={"vendor_ids": [v.id for v in vendors], "fields": fields},
    )
    return len(vendors)


# ---------- Purchase orders ----------


def create_purchase_order(s: Session, payload: dict, *, user: User) -> PurchaseOrder:
    require_fields(payload, ("vendor_id", "order_items"))
    vendor = get_scoped(s, Vendor, payload["vendor_id"], user.company_id)
    if vendor is None:
        raise ValueError("Vendor not found")
    if vendor.status != "active":
        raise ValueError("Vendor is not active")

    items = payload["order_items"]
    if not isinstance(items, list):
        raise ValueError("order_items must be a list")

    po = PurchaseOrder(
        company_id=user.company_id,
        po_number=_number("PO"),
        vendor_id=vendor.id,
        status="draft",
        order_date=parse_date(payload.get("order_date")) or date.today(),
        expected_delivery_date=parse_date(payload.get("expected_delivery_date"))
        or date.today() + timedelta(days=vendor.lead_time_days),
        notes=(payload.get("notes") or "").strip() or None,
        created_by_user_id=user.id,
    )
    total = Decimal("0")
    for raw in items:
        if not isinstance(raw, dict) or not str(raw.get("item_name") or "").strip():
            raise ValueError("Each order item needs an item_name")
        qty = _dec(raw.get("quantity"), "quantity")
        price = _dec(raw.get("unit_price"), "unit_price")
        if qty <= 0:
            raise ValueError("quantity must be greater than 0")
        if price < 0:
            raise ValueError("unit_price cannot be negative")
        line_total = qty * price
        total += line_total
        po.items.append(
            PurchaseOrderItem(
                item_name=str(raw["item_name"]).strip(),
                description=raw.get("description"),
                quantity=qty,
                unit_price=price,
                total_price=line_total,
            )
        )
    po.total_amount = total
    s.add(po)
    s.flush()

    log_activity(
        s,
        user=user,
        action="purchase_order_created",
        entity_type="purchase_order",
        entity_id=po.id,
        description=f"Purchase order {po.po_number} created for {vendor.vendor_name}",
        details={"total_amount": str(total)},
    )
    record_event(
        s,
        actor=user,
        action="procurement.purchase_order.create",
        entity_type="PurchaseOrder",
        entity_id=str(po.id),
        metadata={"po_number": po.po_number, "vendor_id": vendor.id, "total_amount": str(total)},
    )
    return po


def update_purchase_order_status(
    s: Session,
    po: PurchaseOrder,
    status: str,
    *,
    user: User,
    notes: str | None = None,
) -> PurchaseOrder:
    if status not in PO_STATUSES:
        raise ValueError(f"Invalid status. Must be one of: {', '.join(PO_STATUSES)}")
    old_status = po.status
    po.status = status
    if status == "delivered":
        po.actual_delivery_date = date.today()
    if notes:
        po.notes = f"{po.notes}\n{notes}" if po.notes else notes
    po.updated_at = datetime.utcnow()

    log_activity(
        s,
        user=user,
        action="purchase_order_status_updated",
        entity_type="purchase_order",
        entity_id=po.id,
        description=f"Purchase order {po.po_number}: {old_status} -> {status}",
    )
    record_event(
        s,
        actor=user,
        action="procurement.purchase_order.status",
        entity_type="PurchaseOrder",
        entity_id=str(po.id),
        metadata={"from": old_status, "to": status},
    )
    return po


# ---------- Requisitions ----------


def create_requisition(s: Session, payload: dict, *, user: User) -> Requisition:
    require_fields(payload, ("title", "items"))
    items = payload["items"]
    if not isinstance(items, list):
        raise ValueError("items must be a list")

    req = Requisition(
        company_id=user.company_id,
        requisition_number=_number("REQ"),
        title=str(payload["title"]).strip(),
        department=(payload.get("department") or "").strip() or None,
        justification=(payload.get("justification") or "").strip() or None,
        priority=payload.get("priority") or "medium",
        status="pending",
        required_by=parse_date(payload.get("required_by")),
        requested_by_user_id=user.id,
    )
    total = Decimal("0")
    for raw in items:
        if not isinstance(raw, dict) or not str(raw.get("item_name") or "").strip():
            raise ValueError("Each requisition item needs an item_name")
        qty = _dec(raw.get("quantity", 1), "quantity")
        cost = _dec(raw.get("estimated_cost", 0), "estimated_cost")
        total += qty * cost
        req.items.append(RequisitionItem(item_name=str(raw["item_name"]).strip(), quantity=qty, estimated_cost=cost))
    req.total_estimated_cost = total
    s.add(req)
    s.flush()

    log_activity(
        s,
        user=user,
        action="requisition_created",
        entity_type="requisition",
        entity_id=req.id,
        description=f"Requisition {req.requisition_number} created",
    )
    record_event(
        s,
        actor=user,
        action="procurement.requisition.create",
        entity_type="Requisition",
        entity_id=str(req.id),
        metadata={"requisition_number": req.requisition_number, "total_estimated_cost": str(total)},
    )
    return req


def approve_requisition(
    s: Session,
    req: Requisition,
    *,
    approve: bool,
    user: User,
    notes: str | None = None,
) -> Requisition:
    if req.status != "pending":
        raise ValueError("Only pending requisitions can be approved or rejected")
    req.status = "approved" if approve else "rejected"
    req.approved_by_user_id = user.id
    req.approved_at = datetime.utcnow()
    req.approval_notes = (notes or "").strip() or None

    log_activity(
        s,
        user=user,
        action=f"requisition_{req.status}",
        entity_type="requisition",
        entity_id=req.id,
        description=f"Requisition {req.requisition_number} {req.status}",
    )
    record_event(
        s,
        actor=user,
        action=f"procurement.requisition.{'approve' if approve else 'reject'}",
        entity_type="Requisition",
        entity_id=str(req.id),
        reason=req.approval_notes,
    )
    return req


# ---------- Contracts + evaluations ----------


def create_contract(s: Session, payload: dict, *, user: User) -> Contract:
    require_fields(payload, ("vendor_id", "contract_title", "start_date", "end_date"))
    vendor = get_scoped(s, Vendor, payload["vendor_id"], user.company_id)
    if vendor is None:
        raise ValueError("Vendor not found")
    start = parse_date(payload["start_date"])
    end = parse_date(payload["end_date"])
    if not start or not end:
        raise ValueError("start_date and end_date must be YYYY-MM-DD")
    if end < start:
        raise ValueError("end_date must be on or after start_date")
    checked = validate_payload(payload, CONTRACT_RULES)

    contract = Contract(
        company_id=user.company_id,
        contract_number=_number("CTR"),
        vendor_id=vendor.id,
        contract_title=str(payload["contract_title"]).strip(),
        contract_value=_dec(payload["contract_value"], "contract_value") if payload.get("contract_value") not in (None, "") else None,
        start_date=start,
        end_date=end,
        status="active",
        renewal_notice_days=checked["renewal_notice_days"],
        terms=(payload.get("terms") or "").strip() or None,
        created_by_user_id=user.id,
    )
    s.add(contract)
    s.flush()

    log_activity(
        s,
        user=user,
        action="contract_created",
        entity_type="contract",
        entity_id=contract.id,
        description=f"Contract {contract.contract_number} created with {vendor.vendor_name}",
    )
    record_event(
        s,
        actor=user,
        action="procurement.contract.create",
        entity_type="Contract",
        entity_id=str(contract.id),
        metadata={"contract_number": contract.contract_number, "vendor_id": vendor.id},
    )
    return contract


def update_vendor_rating(s: Session, vendor: Vendor, *, today: date | None = None) -> Decimal:
    """Vendor rating = mean overall score of the last 365 days, one decimal."""
    today = today or date.today()
    avg = s.execute(
        select(func.avg(SupplierEvaluation.overall_score)).where(
            SupplierEvaluation.vendor_id == vendor.id,
            SupplierEvaluation.evaluation_date >= today - timedelta(days=365),
        )
    ).scalar_one()
    if avg is not None:
        vendor.rating = Decimal(str(round(float(avg), 1)))
        vendor.updated_at = datetime.utcnow()
    return vendor.rating


def create_supplier_evaluation(s: Session, payload: dict, *, user: User) -> SupplierEvaluation:
    require_fields(payload, ("vendor_id",))
    vendor = get_scoped(s, Vendor, payload["vendor_id"], user.company_id)
    if vendor is None:
        raise ValueError("Vendor not found")

    scores: dict[str, Decimal] = {}
    for field in ("quality_score", "delivery_score", "price_score", "service_score"):
        if payload.get(field) in (None, ""):
            continue
        value = _dec(payload[field], field)
        if value < 1 or value > 5:
            raise ValueError(f"{field} must be between 1 and 5")
        scores[field] = value
    if not scores:
        raise ValueError("At least one score is required")

    overall = sum(scores.values()) / len(scores)
    evaluation = SupplierEvaluation(
        company_id=user.company_id,
        vendor_id=vendor.id,
        evaluation_date=parse_date(payload.get("evaluation_date")) or date.today(),
        overall_score=overall.quantize(Decimal("0.01")),
        comments=(payload.get("comments") or "").strip() or None,
        evaluated_by_user_id=user.id,
        **scores,
    )
    s.add(evaluation)
    s.flush()
    update_vendor_rating(s, vendor)

    log_activity(
        s,
        user=user,
        action="supplier_evaluated",
        entity_type="vendor",
        entity_id=vendor.id,
        description=f"Vendor {vendor.vendor_name} evaluated ({evaluation.overall_score})",
    )
    record_event(
        s,
        actor=user,
        action="procurement.evaluation.create",
        entity_type="SupplierEvaluation",
        entity_id=str(evaluation.id),
        metadata={"vendor_id": vendor.id, "overall_score": str(evaluation.overall_score)},
    )
    return evaluation
