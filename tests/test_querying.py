from datetime import date, datetime

import pytest

from app.erp.db import session_scope
from app.erp.modules.procurement.models import Vendor
from app.erp.querying import FilterBuilder, FilterError, get_scoped, paginate, parse_date, parse_datetime, pct


@pytest.fixture()
def vendors(client, other_client):
    for name, category in (("Northwind", "raw_materials"), ("Contoso", "packaging"), ("Fabrikam", "packaging")):
        r = client.post(
            "/admin/procurement/api/vendors",
            json={"vendor_name": name, "email": f"{name.lower()}@example.com", "category": category},
        )
        assert r.status_code == 201
    other_client.post("/admin/procurement/api/vendors", json={"vendor_name": "Theirs", "email": "t@example.com", "category": "packaging"})


def _names(s, fb):
    return sorted(v.vendor_name for v in fb.apply(s.query(Vendor)).all())


def test_parse_date():
    assert parse_date("2026-03-10") == date(2026, 3, 10)
    assert parse_date("2026-03-10T08:15:00Z") == date(2026, 3, 10)
    assert parse_date(datetime(2026, 3, 10, 8)) == date(2026, 3, 10)
    assert parse_date("10/03/2026") is None
    assert parse_date("  ") is None
    assert parse_date(None) is None


def test_parse_datetime():
    assert parse_datetime("2026-03-10T08:15:00Z") == datetime(2026, 3, 10, 8, 15)
    assert parse_datetime("2026-03-10") == datetime(2026, 3, 10)
    assert parse_datetime(date(2026, 3, 10)) == datetime(2026, 3, 10)
    assert parse_datetime("soon") is None


def test_pct():
    assert pct(1, 3) == 33.33
    assert pct(2, 3, places=1) == 66.7
    assert pct(None, 4) == 0.0
    assert pct(5, 0) is None
    assert pct(5, None) is None


def test_filter_builder_is_company_scoped(app, ids, vendors):
    with session_scope(app) as s:
        assert _names(s, FilterBuilder(Vendor, ids["acme"])) == ["Contoso", "Fabrikam", "Northwind"]
        assert _names(s, FilterBuilder(Vendor, ids["other"])) == ["Theirs"]

        fb = FilterBuilder(Vendor, ids["acme"]).add("category", "eq", "packaging")
        assert _names(s, fb) == ["Contoso", "Fabrikam"]

        fb = FilterBuilder(Vendor, ids["acme"]).add("category", "eq", "all").add("status", "eq", "")
        assert len(_names(s, fb)) == 3

        fb = FilterBuilder(Vendor, ids["acme"]).search(["vendor_name", "email"], "wind")
        assert _names(s, fb) == ["Northwind"]

        fb = FilterBuilder(Vendor, ids["acme"]).extend([["vendor_name", "in", ["Contoso", "Theirs"]]])
        assert _names(s, fb) == ["Contoso"]

        fb = FilterBuilder(Vendor, ids["acme"]).date_range("created_at", "2000-01-01", "2999-12-31")
        assert len(_names(s, fb)) == 3
        fb = FilterBuilder(Vendor, ids["acme"]).date_range("created_at", None, "2000-01-01")
        assert _names(s, fb) == []


def test_filter_builder_rejects_bad_input(ids):
    with pytest.raises(FilterError):
        FilterBuilder(Vendor, None)
    fb = FilterBuilder(Vendor, ids["acme"], allowed_columns=("vendor_name",))
    with pytest.raises(FilterError, match="Unknown filter column: email"):
        fb.add("email", "eq", "x")
    with pytest.raises(FilterError, match="Unsupported filter operator"):
        fb.add("vendor_name", "regex", "x")
    with pytest.raises(FilterError, match="between"):
        fb.add("vendor_name", "between", "a")
    with pytest.raises(FilterError):
        FilterBuilder(Vendor, ids["acme"]).add("company_id", "eq", 2)
    with pytest.raises(FilterError):
        FilterBuilder(Vendor, ids["acme"]).extend([["vendor_name", "eq"]])


def test_get_scoped(app, ids, vendors):
    with session_scope(app) as s:
        theirs = s.query(Vendor).filter(Vendor.company_id == ids["other"]).one()
        assert get_scoped(s, Vendor, theirs.id, ids["other"]) is theirs
        assert get_scoped(s, Vendor, str(theirs.id), ids["acme"]) is None
        assert get_scoped(s, Vendor, "abc", ids["acme"]) is None
        assert get_scoped(s, Vendor, None, ids["acme"]) is None


def test_paginate(app, ids, vendors):
    with session_scope(app) as s:
        q = FilterBuilder(Vendor, ids["acme"]).apply(s.query(Vendor)).order_by(Vendor.vendor_name)
        items, meta = paginate(q, 2, 2)
        assert [v.vendor_name for v in items] == ["Northwind"]
        assert meta == {"page": 2, "limit": 2, "total": 3, "pages": 2}

        items, meta = paginate(q, "x", "y")
        assert meta["page"] == 1 and meta["limit"] == 50
        assert len(items) == 3

        _, meta = paginate(q, 1, 10_000)
        assert meta["limit"] == 200
