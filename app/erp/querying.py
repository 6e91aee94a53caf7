"""
Company-scoped query building.

Every list page in the ERP takes the same handful of optional request
parameters (status, category, date_from/date_to, search ...) and turns them
into WHERE clauses. FilterBuilder collects those as (column, operator, value)
triples, drops the empty ones, and always leads with the company_id clause so
a caller cannot forget tenant scoping.
"""
from __future__ import annotations

import math
from collections.abc import Callable, Iterable, Sequence
from datetime import date, datetime
from typing import Any, TypeVar

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import InstrumentedAttribute, Query, Session

T = TypeVar("T")

# Values that mean "no filter" when they arrive from a query string.
SKIP_VALUES = (None, "", "all")

OPERATORS: dict[str, Callable[[Any, Any], Any]] = {
    "eq": lambda col, v: col == v,
    "ne": lambda col, v: col != v,
    "gt": lambda col, v: col > v,
    "gte": lambda col, v: col >= v,
    "lt": lambda col, v: col < v,
    "lte": lambda col, v: col <= v,
    "in": lambda col, v: col.in_(list(v)),
    "like": lambda col, v: col.ilike(f"%{v}%"),
    "between": lambda col, v: and_(col >= v[0], col <= v[1]),
}


class FilterError(ValueError):
    pass


def parse_date(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw[:10])
    except ValueError:
        return None


def parse_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    raw = str(value).strip()
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        d = parse_date(raw)
        return datetime(d.year, d.month, d.day) if d else None


def _is_skipped(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip() in SKIP_VALUES
    if isinstance(value, (list, tuple, set)):
        return len(value) == 0
    return value is None


class FilterBuilder:
    """
    Builds WHERE clauses for one model, always scoped to a company.

        fb = FilterBuilder(WorkOrder, company_id)
        fb.add("status", "eq", request.args.get("status"))
        fb.date_range(WorkOrder.planned_start_date, date_from, date_to)
        fb.search([WorkOrder.work_order_number, WorkOrder.notes], q)
        rows = s.query(WorkOrder).filter(*fb.clauses).all()
    """

    def __init__(self, model: Any, company_id: int, *, allowed_columns: Iterable[str] | None = None) -> None:
        if company_id is None:
            raise FilterError("company_id is required for scoped queries")
        self.model = model
        self.company_id = company_id
        self.allowed_columns = set(allowed_columns) if allowed_columns is not None else None
        self._clauses: list[Any] = [model.company_id == company_id]

    def _column(self, column: str | InstrumentedAttribute) -> Any:
        if not isinstance(column, str):
            return column
        if self.allowed_columns is not None and column not in self.allowed_columns:
            raise FilterError(f"Unknown filter column: {column}")
        if column == "company_id":
            raise FilterError("company_id cannot be filtered directly")
        attr = getattr(self.model, column, None)
        if attr is None or not hasattr(attr, "property"):
            raise FilterError(f"Unknown filter column: {column}")
        return attr

    def add(self, column: str | InstrumentedAttribute, op: str, value: Any) -> "FilterBuilder":
        if _is_skipped(value):
            return self
        fn = OPERATORS.get(op)
        if fn is None:
            raise FilterError(f"Unsupported filter operator: {op}")
        if op == "between" and (not isinstance(value, (list, tuple)) or len(value) != 2):
            raise FilterError("between expects a [low, high] pair")
        self._clauses.append(fn(self._column(column), value))
        return self

    def extend(self, triples: Iterable[Sequence[Any]]) -> "FilterBuilder":
        for triple in triples:
            if len(triple) != 3:
                raise FilterError("Filters must be [column, operator, value] triples")
            column, op, value = triple
            self.add(column, op, value)
        return self

    def date_range(
        self,
        column: str | InstrumentedAttribute,
        date_from: Any,
        date_to: Any,
    ) -> "FilterBuilder":
        df = parse_date(date_from)
        dt = parse_date(date_to)
        col = self._column(column)
        is_datetime = getattr(getattr(col, "type", None), "python_type", None) is datetime
        if df:
            self._clauses.append(col >= (datetime(df.year, df.month, df.day) if is_datetime else df))
        if dt:
            # Inclusive upper bound for datetime columns too.
            if is_datetime:
                self._clauses.append(col <= datetime(dt.year, dt.month, dt.day, 23, 59, 59, 999999))
            else:
                self._clauses.append(col <= dt)
        return self

    def search(self, columns: Sequence[str | InstrumentedAttribute], term: str | None) -> "FilterBuilder":
        term = (term or "").strip()
        if not term or not columns:
            return self
        like_pat = f"%{term}%"
        self._clauses.append(or_(*[self._column(c).ilike(like_pat) for c in columns]))
        return self

    @property
    def clauses(self) -> list[Any]:
        return list(self._clauses)

    def apply(self, query: Query) -> Query:
        return query.filter(*self._clauses)


def month_bucket(s: Session, column: Any) -> Any:
    """'YYYY-MM' label for a date/datetime column, portable across sqlite and postgres."""
    if s.get_bind().dialect.name == "postgresql":
        return func.to_char(column, "YYYY-MM")
    return func.strftime("%Y-%m", column)


def day_bucket(s: Session, column: Any) -> Any:
    """'YYYY-MM-DD' label for a date/datetime column."""
    if s.get_bind().dialect.name == "postgresql":
        return func.to_char(column, "YYYY-MM-DD")
    return func.strftime("%Y-%m-%d", column)


def hour_bucket(s: Session, column: Any) -> Any:
    if s.get_bind().dialect.name == "postgresql":
        return func.to_char(column, "YYYY-MM-DD HH24:00")
    return func.strftime("%Y-%m-%d %H:00", column)


def scoped_query(s: Session, model: type[T], company_id: int) -> Query:
    return s.query(model).filter(model.company_id == company_id)  # type: ignore[attr-defined]


def get_scoped(s: Session, model: type[T], obj_id: Any, company_id: int) -> T | None:
    """Fetch by primary key; rows of another company read as missing."""
    try:
        pk = int(obj_id)
    except (TypeError, ValueError):
        return None
    obj = s.get(model, pk)
    if obj is None or getattr(obj, "company_id", None) != company_id:
        return None
    return obj


def pct(numerator: Any, denominator: Any, places: int = 2) -> float | None:
    """numerator / NULLIF(denominator, 0) * 100, rounded."""
    if numerator is None:
        numerator = 0
    if not denominator:
        return None
    return round(float(numerator) / float(denominator) * 100, places)


def to_float(value: Any, places: int | None = None) -> float:
    if value is None:
        return 0.0
    f = float(value)
    return round(f, places) if places is not None else f


def paginate(query: Query, page: Any = 1, limit: Any = 50, *, max_limit: int = 200) -> tuple[list[Any], dict[str, int]]:
    try:
        page = max(int(page), 1)
    except (TypeError, ValueError):
        page = 1
    try:
        limit = min(max(int(limit), 1), max_limit)
    except (TypeError, ValueError):
        limit = 50
    total = query.order_by(None).count()
    items = query.offset((page - 1) * limit).limit(limit).all()
    return items, {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if total else 0,
    }
