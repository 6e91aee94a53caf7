from app.erp.db import session_scope
from app.erp.models import AuditEvent
from app.erp.modules.procurement import service as svc
from app.erp.modules.procurement.models import Contract, ProcurementActivity, PurchaseOrder, Vendor

PAGES = (
    "/admin/procurement/",
    "/admin/procurement/vendors",
    "/admin/procurement/purchase-orders",
    "/admin/procurement/requisitions",
    "/admin/procurement/contracts",
    "/admin/procurement/supplier-evaluation",
    "/admin/procurement/spend-analysis",
    "/admin/procurement/supplier-portal",
    "/admin/procurement/analytics",
)


def _vendor(client, **overrides):
    payload = {"vendor_name": "Northwind Metals", "email": "sales@northwind.example", "category": "raw_materials"}
    payload.update(overrides)
    r = client.post("/admin/procurement/api/vendors", json=payload)
    assert r.status_code == 201, r.json
    return r.json["data"]["vendor_id"]


def _po(client, vendor_id, items=None):
    items = items or [
        {"item_name": "Steel plate", "quantity": 2, "unit_price": "10.50"},
        {"item_name": "Bolts", "quantity": 1, "unit_price": 4},
    ]
    return client.post("/admin/procurement/api/purchase-orders", json={"vendor_id": vendor_id, "order_items": items})


def test_pages_render(client):
    _vendor(client)
    for path in PAGES:
        r = client.get(path)
        assert r.status_code == 200, path


def test_pages_require_login(anon):
    r = anon.get("/admin/procurement/vendors")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]


def test_api_requires_login(anon):
    r = anon.post("/admin/procurement/api/vendors", json={"vendor_name": "x", "email": "x@example.com"})
    assert r.status_code == 401
    assert r.json["success"] is False


def test_viewer_cannot_create_vendor(viewer_client):
    assert viewer_client.get("/admin/procurement/").status_code == 200
    r = viewer_client.post("/admin/procurement/api/vendors", json={"vendor_name": "x", "email": "x@example.com"})
    assert r.status_code == 403
    assert r.json["missing_permission"] == "procurement.vendors.create"


def test_create_vendor_validates_email(client):
    r = client.post("/admin/procurement/api/vendors", json={"vendor_name": "Bad", "email": "not-an-email"})
    assert r.status_code == 400
    assert r.json["error"] == "Invalid email address"

    r = client.post("/admin/procurement/api/vendors", json={"email": "a@b.example"})
    assert r.status_code == 400
    assert "vendor_name" in r.json["error"]


def test_duplicate_vendor_email_rejected(client):
    _vendor(client)
    r = client.post("/admin/procurement/api/vendors", json={"vendor_name": "Again", "email": "SALES@northwind.example"})
    assert r.status_code == 400
    assert "already exists" in r.json["error"]


def test_create_vendor_logs_activity_and_audit(app, client):
    vendor_id = _vendor(client)
    with session_scope(app) as s:
        assert s.query(ProcurementActivity).filter_by(entity_id=vendor_id, action="vendor_created").count() == 1
        ev = s.query(AuditEvent).filter_by(action="procurement.vendor.create").one()
        assert ev.entity_id == str(vendor_id)
        assert ev.actor_user_email == "admin@example.com"


def test_update_vendor_returns_changes(client):
    vendor_id = _vendor(client)
    r = client.patch(f"/admin/procurement/api/vendors/{vendor_id}", json={"lead_time_days": 14, "status": "active"})
    assert r.status_code == 200
    assert r.json["data"]["changes"] == {"lead_time_days": {"from": "7", "to": "14"}}

    r = client.patch(f"/admin/procurement/api/vendors/{vendor_id}", json={"status": "sleeping"})
    assert r.status_code == 400
    assert r.json["error"].startswith("Invalid status")


def test_purchase_order_totals(client):
    vendor_id = _vendor(client)
    r = _po(client, vendor_id)
    assert r.status_code == 201
    data = r.json["data"]
    assert data["total_amount"] == 25.0
    assert data["po_number"].startswith("PO-")


def test_purchase_order_item_validation(client):
    vendor_id = _vendor(client)
    r = _po(client, vendor_id, items=[{"item_name": "Widget", "quantity": 0, "unit_price": 1}])
    assert r.status_code == 400
    assert r.json["error"] == "quantity must be greater than 0"


def test_purchase_order_requires_active_vendor(client):
    vendor_id = _vendor(client, status="inactive")
    r = _po(client, vendor_id)
    assert r.status_code == 400
    assert r.json["error"] == "Vendor is not active"


def test_status_update_and_delivery_date(client):
    vendor_id = _vendor(client)
    po_id = _po(client, vendor_id).json["data"]["po_id"]
    r = client.post(f"/admin/procurement/api/purchase-orders/{po_id}/status", json={"status": "delivered"})
    assert r.status_code == 200
    assert r.json["data"]["status"] == "delivered"

    r = client.post(f"/admin/procurement/api/purchase-orders/{po_id}/status", json={"status": "lost"})
    assert r.status_code == 400


def test_delivery_without_expected_date_counts_as_on_time(app, client, ids):
    vendor_id = _vendor(client)
    items = [{"item_name": "Bolts", "quantity": 1, "unit_price": 4}]
    undated = _po(client, vendor_id).json["data"]["po_id"]
    overdue = client.post(
        "/admin/procurement/api/purchase-orders",
        json={"vendor_id": vendor_id, "order_items": items, "expected_delivery_date": "2020-01-01"},
    ).json["data"]["po_id"]
    with session_scope(app) as s:
        s.get(PurchaseOrder, undated).expected_delivery_date = None
    for po_id in (undated, overdue):
        client.post(f"/admin/procurement/api/purchase-orders/{po_id}/status", json={"status": "delivered"})

    with session_scope(app) as s:
        assert svc.dashboard_stats(s, ids["acme"])["on_time_delivery_rate"] == 50.0
        data = svc.procurement_analytics(s, ids["acme"])
        assert data["late_deliveries"] == 1
        assert data["delivery_performance"][0]["on_time_rate"] == 50.0


def test_vendor_with_open_orders_cannot_be_deleted(app, client):
    vendor_id = _vendor(client)
    po_id = _po(client, vendor_id).json["data"]["po_id"]
    r = client.delete(f"/admin/procurement/api/vendors/{vendor_id}")
    assert r.status_code == 400
    assert "active purchase orders" in r.json["error"]

    client.post(f"/admin/procurement/api/purchase-orders/{po_id}/status", json={"status": "cancelled"})
    r = client.delete(f"/admin/procurement/api/vendors/{vendor_id}")
    assert r.status_code == 200
    with session_scope(app) as s:
        assert s.get(Vendor, vendor_id).status == "inactive"


def test_bulk_update_only_touches_allowed_fields(client):
    a = _vendor(client)
    b = _vendor(client, vendor_name="Second", email="second@example.com")
    r = client.post(
        "/admin/procurement/api/vendors/bulk-update",
        json={"vendor_ids": [a, b], "updates": {"payment_terms": "net_60", "vendor_name": "ignored"}},
    )
    assert r.status_code == 200
    assert r.json["data"]["updated_count"] == 2

    r = client.post("/admin/procurement/api/vendors/bulk-update", json={"vendor_ids": [a], "updates": {"email": "x@y.z"}})
    assert r.status_code == 400


def test_requisition_approval_flow(client):
    r = client.post(
        "/admin/procurement/api/requisitions",
        json={"title": "Lab supplies", "items": [{"item_name": "Gloves", "quantity": 10, "estimated_cost": "2.5"}]},
    )
    assert r.status_code == 201
    req_id = r.json["data"]["requisition_id"]

    r = client.post(f"/admin/procurement/api/requisitions/{req_id}/approve", json={"action": "maybe"})
    assert r.status_code == 400

    r = client.post(f"/admin/procurement/api/requisitions/{req_id}/approve", json={"action": "reject", "notes": "budget"})
    assert r.status_code == 200
    assert r.json["data"]["status"] == "rejected"

    r = client.post(f"/admin/procurement/api/requisitions/{req_id}/approve", json={"action": "approve"})
    assert r.status_code == 400
    assert "Only pending" in r.json["error"]


def test_contract_dates_validated(client):
    vendor_id = _vendor(client)
    r = client.post(
        "/admin/procurement/api/contracts",
        json={"vendor_id": vendor_id, "contract_title": "Supply", "start_date": "2026-05-01", "end_date": "2026-04-01"},
    )
    assert r.status_code == 400
    assert r.json["error"] == "end_date must be on or after start_date"

    r = client.post(
        "/admin/procurement/api/contracts",
        json={"vendor_id": vendor_id, "contract_title": "Supply", "start_date": "2026-01-01", "end_date": "2026-12-31"},
    )
    assert r.status_code == 201
    assert r.json["data"]["contract_number"].startswith("CTR-")


def test_contract_renewal_notice(app, client):
    vendor_id = _vendor(client)
    base = {"vendor_id": vendor_id, "contract_title": "Supply", "start_date": "2026-01-01", "end_date": "2026-12-31"}
    no_notice = client.post("/admin/procurement/api/contracts", json={**base, "renewal_notice_days": 0}).json["data"]["contract_id"]
    default = client.post("/admin/procurement/api/contracts", json=base).json["data"]["contract_id"]

    r = client.post("/admin/procurement/api/contracts", json={**base, "renewal_notice_days": -5})
    assert r.status_code == 422
    assert r.json["errors"] == {"renewal_notice_days": ["renewal_notice_days must be at least 0"]}

    with session_scope(app) as s:
        assert s.get(Contract, no_notice).renewal_notice_days == 0
        assert s.get(Contract, default).renewal_notice_days == 30


def test_evaluation_updates_vendor_rating(client):
    vendor_id = _vendor(client)
    r = client.post(
        "/admin/procurement/api/supplier-evaluations",
        json={"vendor_id": vendor_id, "quality_score": 4, "delivery_score": 5},
    )
    assert r.status_code == 201
    assert r.json["data"]["overall_score"] == 4.5
    assert r.json["data"]["vendor_rating"] == 4.5

    r = client.post("/admin/procurement/api/supplier-evaluations", json={"vendor_id": vendor_id, "price_score": 9})
    assert r.status_code == 400


def test_vendors_are_company_scoped(client, other_client):
    vendor_id = _vendor(client)
    r = other_client.patch(f"/admin/procurement/api/vendors/{vendor_id}", json={"lead_time_days": 1})
    assert r.status_code == 404
    r = _po(other_client, vendor_id)
    assert r.status_code == 400
    assert r.json["error"] == "Vendor not found"
    assert b"Northwind Metals" not in other_client.get("/admin/procurement/vendors").data
    assert b"Northwind Metals" in client.get("/admin/procurement/vendors").data


def test_vendor_search_filter(client):
    _vendor(client)
    _vendor(client, vendor_name="Contoso Logistics", email="ops@contoso.example", category="logistics")
    html = client.get("/admin/procurement/vendors?category=logistics").data
    assert b"Contoso Logistics" in html
    assert b"Northwind Metals" not in html
