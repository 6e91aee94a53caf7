from datetime import datetime

from app.erp.db import session_scope
from app.erp.modules.manufacturing import service as svc
from app.erp.modules.manufacturing.models import BomComponent, WorkOrder

PAGES = (
    "/admin/manufacturing/",
    "/admin/manufacturing/planning",
    "/admin/manufacturing/bom",
    "/admin/manufacturing/work-orders",
    "/admin/manufacturing/quality",
    "/admin/manufacturing/resources",
    "/admin/manufacturing/shop-floor",
    "/admin/manufacturing/analytics",
)


def _line(client, name="Line A"):
    r = client.post("/admin/manufacturing/api/production-lines", json={"line_name": name, "capacity_per_hour": 20})
    assert r.status_code == 201, r.json
    return r.json["data"]["production_line_id"]


def _bom(client):
    r = client.post(
        "/admin/manufacturing/api/boms",
        json={
            "product_name": "Pump housing",
            "components": [
                {"component_name": "Casting", "quantity": 1, "stock_on_hand": 5, "reorder_point": 10},
                {"component_name": "Gasket", "quantity": 2, "stock_on_hand": 50, "reorder_point": 10, "safety_stock": 20},
            ],
        },
    )
    assert r.status_code == 201, r.json
    return r.json["data"]["bom_id"]


def _work_order(client, bom_id, line_id, qty=100, **extra):
    payload = {"bom_id": bom_id, "production_line_id": line_id, "quantity_planned": qty, **extra}
    r = client.post("/admin/manufacturing/api/work-orders", json=payload)
    assert r.status_code == 201, r.json
    return r.json["data"]["work_order_id"]


def test_pages_render(client):
    line_id = _line(client)
    bom_id = _bom(client)
    wo_id = _work_order(client, bom_id, line_id, operations=["Cut", {"operation_name": "Weld", "planned_minutes": 30}])
    client.post(f"/admin/manufacturing/api/work-orders/{wo_id}/status", json={"status": "in_progress"})
    client.post("/admin/manufacturing/api/production-data", json={"work_order_id": wo_id, "data_type": "quantity", "quantity_produced": 5})
    for path in PAGES:
        r = client.get(path)
        assert r.status_code == 200, path


def test_work_order_number_and_operations(app, client):
    wo_id = _work_order(client, _bom(client), _line(client), operations=["Cut", "Weld", "Paint"])
    with session_scope(app) as s:
        wo = s.get(WorkOrder, wo_id)
        assert wo.work_order_number.startswith("WO-")
        assert [op.sequence for op in wo.operations] == [1, 2, 3]
        assert wo.status == "draft"


def test_work_order_validation(client):
    line_id = _line(client)
    bom_id = _bom(client)
    r = client.post(
        "/admin/manufacturing/api/work-orders",
        json={"bom_id": bom_id, "production_line_id": line_id, "quantity_planned": -1},
    )
    assert r.status_code == 400
    assert r.json["error"] == "quantity_planned must be greater than 0"

    r = client.post(
        "/admin/manufacturing/api/work-orders",
        json={"bom_id": bom_id, "production_line_id": line_id, "quantity_planned": 5, "priority": "whenever"},
    )
    assert r.status_code == 400
    assert r.json["error"].startswith("Invalid priority")


def test_status_transitions_stamp_dates(app, client):
    wo_id = _work_order(client, _bom(client), _line(client))
    assert client.post(f"/admin/manufacturing/api/work-orders/{wo_id}/status", json={"status": "in_progress"}).status_code == 200
    r = client.post(f"/admin/manufacturing/api/work-orders/{wo_id}/status", json={"status": "completed"})
    assert r.json["data"]["status"] == "completed"
    with session_scope(app) as s:
        wo = s.get(WorkOrder, wo_id)
        assert wo.actual_start_date is not None
        assert wo.actual_end_date is not None
        assert wo.completed_at is not None

    r = client.post(f"/admin/manufacturing/api/work-orders/{wo_id}/status", json={"status": "exploded"})
    assert r.status_code == 400


def test_production_data_rolls_up_into_efficiency(app, client, ids):
    wo_id = _work_order(client, _bom(client), _line(client), qty=100)
    r = client.post(
        "/admin/manufacturing/api/production-data",
        json={"work_order_id": wo_id, "data_type": "quantity", "quantity_produced": 40, "quantity_scrapped": 10},
    )
    assert r.status_code == 201
    # Non-quantity readings do not move the counters.
    client.post("/admin/manufacturing/api/production-data", json={"work_order_id": wo_id, "data_type": "temperature", "value": 71.5})

    with session_scope(app) as s:
        wo = s.get(WorkOrder, wo_id)
        assert float(wo.quantity_produced) == 40
        stats = svc.dashboard_stats(s, ids["acme"])
        assert stats["production_efficiency"] == 40.0
        assert stats["scrap_rate"] == 20.0
        assert stats["total_work_orders"] == 1


def test_production_data_rejects_negative(client):
    wo_id = _work_order(client, _bom(client), _line(client))
    r = client.post(
        "/admin/manufacturing/api/production-data",
        json={"work_order_id": wo_id, "data_type": "quantity", "quantity_produced": -3},
    )
    assert r.status_code == 400
    assert r.json["error"] == "Quantities cannot be negative"


def test_inspection_pass_rate(app, client, ids):
    wo_id = _work_order(client, _bom(client), _line(client))
    for result in ("pass", "pass", "fail", "pending"):
        r = client.post("/admin/manufacturing/api/inspections", json={"work_order_id": wo_id, "inspection_type": "final", "result": result})
        assert r.status_code == 201
    r = client.post("/admin/manufacturing/api/inspections", json={"work_order_id": wo_id, "inspection_type": "final", "result": "meh"})
    assert r.status_code == 400
    with session_scope(app) as s:
        assert svc.dashboard_stats(s, ids["acme"])["inspection_pass_rate"] == 66.67


def test_downtime_summary(app, client, ids):
    line_id = _line(client)
    for minutes in (30, 15):
        r = client.post("/admin/manufacturing/api/downtime", json={"production_line_id": line_id, "reason": "Changeover", "duration_minutes": minutes})
        assert r.status_code == 201
    r = client.post("/admin/manufacturing/api/downtime", json={"production_line_id": line_id, "reason": "Jam", "duration_minutes": 0})
    assert r.status_code == 400
    with session_scope(app) as s:
        assert svc.line_downtime_summary(s, ids["acme"]) == {"Changeover": 45}
        assert svc.dashboard_stats(s, ids["acme"])["downtime_minutes_this_month"] == 45


def test_stock_status_thresholds():
    assert svc.stock_status(BomComponent(stock_on_hand=5, reorder_point=10, safety_stock=0)) == "reorder"
    assert svc.stock_status(BomComponent(stock_on_hand=15, reorder_point=10, safety_stock=20)) == "low"
    assert svc.stock_status(BomComponent(stock_on_hand=50, reorder_point=10, safety_stock=20)) == "normal"


def test_bulk_update_priority(app, client):
    line_id = _line(client)
    bom_id = _bom(client)
    ids_ = [_work_order(client, bom_id, line_id) for _ in range(2)]
    r = client.post("/admin/manufacturing/api/work-orders/bulk-update", json={"work_order_ids": ids_, "updates": {"priority": "urgent"}})
    assert r.status_code == 200
    assert r.json["data"]["updated_count"] == 2
    with session_scope(app) as s:
        assert {s.get(WorkOrder, i).priority for i in ids_} == {"urgent"}


def test_production_plan(client):
    bom_id = _bom(client)
    r = client.post(
        "/admin/manufacturing/api/production-plans",
        json={"plan_name": "Q3", "start_date": "2026-07-01", "end_date": "2026-09-30", "items": [{"bom_id": bom_id, "quantity": 250}]},
    )
    assert r.status_code == 201
    assert r.json["data"]["item_count"] == 1

    r = client.post(
        "/admin/manufacturing/api/production-plans",
        json={"plan_name": "Bad", "start_date": "2026-07-01", "end_date": "2026-06-30"},
    )
    assert r.status_code == 400


def test_work_orders_are_company_scoped(client, other_client):
    wo_id = _work_order(client, _bom(client), _line(client))
    r = other_client.post(f"/admin/manufacturing/api/work-orders/{wo_id}/status", json={"status": "released"})
    assert r.status_code == 404
    r = other_client.post("/admin/manufacturing/api/production-data", json={"work_order_id": wo_id, "data_type": "quantity"})
    assert r.status_code == 400
    assert r.json["error"] == "Work order not found"


def test_analytics_cycle_time(app, client, ids):
    wo_id = _work_order(client, _bom(client), _line(client), planned_start_date="2026-01-01", planned_end_date="2026-01-03")
    with session_scope(app) as s:
        wo = s.get(WorkOrder, wo_id)
        wo.status = "completed"
        wo.actual_start_date = datetime(2026, 1, 1)
        wo.actual_end_date = datetime(2026, 1, 5)
    with session_scope(app) as s:
        data = svc.manufacturing_analytics(s, ids["acme"])
        assert data["completed_orders"] == 1
        assert data["cycle_time_efficiency"] == 50.0
