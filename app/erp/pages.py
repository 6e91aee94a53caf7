"""
Shared rendering for module pages.

Every module dashboard and list page has the same shape: a sub-navigation
bar, a row of stat cards and one or more tables. Modules describe that shape
and `render_module_page` hands it to `admin/module_page.html` (or a module
template that extends it).
"""
from __future__ import annotations

from typing import Any

from flask import render_template, request, url_for

from app.erp.modules import MODULES, ModuleEntry

SubnavItem = tuple[str, str, str]  # (label, endpoint, permission)


def module_entry(key: str) -> ModuleEntry:
    for m in MODULES:
        if m.key == key:
            return m
    raise KeyError(key)


def table(title: str, columns: list[tuple[str, str]], rows: Any, *, empty: str = "Nothing here yet.") -> dict[str, Any]:
    return {"title": title, "columns": columns, "rows": list(rows or []), "empty": empty}


def stat_list(pairs: dict[str, Any]) -> list[tuple[str, Any]]:
    return list(pairs.items())


def build_url(endpoint: str, **overrides: Any) -> str:
    """Current query string with some keys replaced (used by pagination links)."""
    args = request.args.to_dict()
    args.update({k: v for k, v in overrides.items() if v is not None})
    return url_for(endpoint, **(request.view_args or {}), **args)


def render_module_page(
    module_key: str,
    *,
    page_title: str,
    subnav: list[SubnavItem],
    stats: list[tuple[str, Any]] | None = None,
    tables: list[dict[str, Any]] | None = None,
    filters: dict[str, Any] | None = None,
    pagination: dict[str, Any] | None = None,
    template: str = "admin/module_page.html",
    **extra: Any,
):
    return render_template(
        template,
        module=module_entry(module_key),
        page_title=page_title,
        subnav=subnav,
        stats=stats or [],
        tables=tables or [],
        filters=filters or {},
        pagination=pagination,
        build_url=build_url,
        **extra,
    )
