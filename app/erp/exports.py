"""
Tabular export renderers: csv, json, xlsx (openpyxl) and pdf (reportlab).

Each renderer takes a title, an ordered list of column keys and a list of row
dicts and returns bytes ready for storage.
"""
from __future__ import annotations

import csv
import io
import json
from datetime import datetime
from typing import Any

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.units import cm
from reportlab.pdfgen import canvas

from app.erp.api import jsonable

CONTENT_TYPES = {
    "csv": "text/csv",
    "json": "application/json",
    "excel": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "pdf": "application/pdf",
    "xml": "application/xml",
}
EXTENSIONS = {"csv": "csv", "json": "json", "excel": "xlsx", "pdf": "pdf", "xml": "xml"}

HEADER_FONT = Font(name="Calibri", bold=True, size=11, color="FFFFFF")
HEADER_FILL = PatternFill(start_color="1F4E79", end_color="1F4E79", fill_type="solid")


def _cell(value: Any) -> Any:
    value = jsonable(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return value


def to_csv(columns: list[str], rows: list[dict[str, Any]]) -> bytes:
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(columns)
    for row in rows:
        writer.writerow(["" if row.get(c) is None else _cell(row.get(c)) for c in columns])
    return buf.getvalue().encode("utf-8")


def to_json(title: str, columns: list[str], rows: list[dict[str, Any]]) -> bytes:
    body = {
        "title": title,
        "generated_at": datetime.utcnow().isoformat(),
        "columns": columns,
        "rows": [{c: jsonable(r.get(c)) for c in columns} for r in rows],
    }
    return json.dumps(body, indent=2, default=str).encode("utf-8")


def to_xlsx(title: str, columns: list[str], rows: list[dict[str, Any]]) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = (title or "Export")[:31]

    for col_idx, name in enumerate(columns, start=1):
        cell = ws.cell(row=1, column=col_idx, value=name)
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.alignment = Alignment(horizontal="center", vertical="center")

    for row_idx, row in enumerate(rows, start=2):
        for col_idx, name in enumerate(columns, start=1):
            ws.cell(row=row_idx, column=col_idx, value=_cell(row.get(name)))

    for col_idx, name in enumerate(columns, start=1):
        widest = max([len(str(name))] + [len(str(_cell(r.get(name)) or "")) for r in rows[:200]])
        ws.column_dimensions[get_column_letter(col_idx)].width = min(max(widest + 2, 10), 60)
    ws.freeze_panes = "A2"

    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def to_pdf(title: str, columns: list[str], rows: list[dict[str, Any]], *, subtitle: str | None = None) -> bytes:
    buf = io.BytesIO()
    pagesize = landscape(A4) if len(columns) > 5 else A4
    c = canvas.Canvas(buf, pagesize=pagesize)
    width, height = pagesize
    left = 1.5 * cm
    col_width = (width - 2 * left) / max(len(columns), 1)
    max_chars = max(int(col_width / 5.5), 4)

    def header(y: float) -> float:
        c.setFont("Helvetica-Bold", 9)
        for i, name in enumerate(columns):
            c.drawString(left + i * col_width, y, str(name)[:max_chars])
        c.line(left, y - 0.15 * cm, width - left, y - 0.15 * cm)
        return y - 0.6 * cm

    c.setFont("Helvetica-Bold", 16)
    c.drawString(left, height - 2 * cm, title)
    c.setFont("Helvetica", 9)
    c.drawString(left, height - 2.6 * cm, subtitle or f"Generated {datetime.utcnow():%Y-%m-%d %H:%M} UTC")

    y = header(height - 3.6 * cm)
    c.setFont("Helvetica", 8)
    for row in rows:
        if y < 2 * cm:
            c.showPage()
            y = header(height - 2 * cm)
            c.setFont("Helvetica", 8)
        for i, name in enumerate(columns):
            value = _cell(row.get(name))
            c.drawString(left + i * col_width, y, ("" if value is None else str(value))[:max_chars])
        y -= 0.5 * cm

    c.showPage()
    c.save()
    return buf.getvalue()


def render(fmt: str, title: str, columns: list[str], rows: list[dict[str, Any]]) -> bytes:
    if fmt == "csv":
        return to_csv(columns, rows)
    if fmt == "json":
        return to_json(title, columns, rows)
    if fmt == "excel":
        return to_xlsx(title, columns, rows)
    if fmt == "pdf":
        return to_pdf(title, columns, rows)
    raise ValueError("Unsupported export format")
