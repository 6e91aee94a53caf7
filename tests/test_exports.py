import io
import json
from datetime import date
from decimal import Decimal

import pytest
from openpyxl import load_workbook

from app.erp import exports
from app.erp.storage import LocalStorage, S3Storage, StorageError, build_export_key, storage_from_config

COLUMNS = ["po_number", "order_date", "total_amount", "tags"]
ROWS = [
    {"po_number": "PO-1", "order_date": date(2026, 3, 10), "total_amount": Decimal("25.00"), "tags": ["urgent"]},
    {"po_number": "PO-2", "order_date": None, "total_amount": Decimal("4.50"), "tags": None},
]


def test_csv():
    lines = exports.to_csv(COLUMNS, ROWS).decode("utf-8").splitlines()
    assert lines[0] == "po_number,order_date,total_amount,tags"
    assert lines[1] == 'PO-1,2026-03-10,25.0,"[""urgent""]"'
    assert lines[2] == "PO-2,,4.5,"


def test_json():
    body = json.loads(exports.to_json("Orders", COLUMNS, ROWS))
    assert body["title"] == "Orders"
    assert body["columns"] == COLUMNS
    assert body["rows"][0] == {"po_number": "PO-1", "order_date": "2026-03-10", "total_amount": 25.0, "tags": ["urgent"]}


def test_xlsx():
    wb = load_workbook(io.BytesIO(exports.to_xlsx("Purchase orders", COLUMNS, ROWS)))
    ws = wb.active
    assert ws.title == "Purchase orders"
    assert [c.value for c in ws[1]] == COLUMNS
    assert ws["A2"].value == "PO-1"
    assert ws["C3"].value == 4.5
    assert ws["A1"].font.bold
    assert ws.freeze_panes == "A2"


def test_pdf():
    many = [{"po_number": f"PO-{i}", "total_amount": i} for i in range(120)]
    data = exports.to_pdf("Orders", COLUMNS, many)
    assert data.startswith(b"%PDF")


def test_render_dispatch():
    assert exports.render("csv", "t", ["a"], [{"a": 1}]) == b"a\r\n1\r\n"
    assert exports.render("excel", "t", ["a"], [])[:2] == b"PK"
    with pytest.raises(ValueError, match="Unsupported export format"):
        exports.render("docx", "t", ["a"], [])


def test_local_storage(tmp_path):
    store = LocalStorage(root=tmp_path)
    key = build_export_key(3, "reports", "../../etc/passwd")
    assert key.startswith("companies/3/reports/")
    assert key.endswith("/etc_passwd")

    store.put_bytes(key, b"hello", content_type="text/plain")
    assert store.exists(key)
    with store.open(key) as fh:
        assert fh.read() == b"hello"
    assert not store.exists(key + ".missing")

    with pytest.raises(StorageError):
        store.put_bytes("../outside.txt", b"x")


def test_storage_from_config(tmp_path):
    local = storage_from_config({"STORAGE_BACKEND": "local", "STORAGE_LOCAL_ROOT": str(tmp_path)})
    assert isinstance(local, LocalStorage)
    assert local.root == tmp_path

    s3 = storage_from_config({"STORAGE_BACKEND": "S3", "S3_BUCKET": "exports", "S3_ENDPOINT": "nyc3.example.com"})
    assert isinstance(s3, S3Storage)
    assert s3.bucket == "exports"
    assert s3.region == "nyc3"
