"""
Feature modules live under this package.

Keep module boundaries clean: each module owns its routes/templates/models,
while reusing platform primitives (auth, RBAC, audit, storage, DB session,
company-scoped querying).
"""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ModuleEntry:
    key: str
    title: str
    endpoint: str
    permission: str
    url_prefix: str
    description: str


MODULES: tuple[ModuleEntry, ...] = (
    ModuleEntry("api_marketplace", "API Marketplace", "api_marketplace.index", "api_marketplace.view",
                "/admin/api-marketplace", "Published APIs, developers, keys, webhooks and usage."),
    ModuleEntry("documentation", "Documentation", "documentation.index", "documentation.view",
                "/admin/documentation", "Manuals, API docs, videos and search."),
    ModuleEntry("form_manager", "Forms", "form_manager.index", "forms.view",
                "/admin/forms", "Form builder, templates, submissions and workflows."),
    ModuleEntry("manufacturing", "Manufacturing", "manufacturing.index", "manufacturing.view",
                "/admin/manufacturing", "Work orders, BOMs, production lines and shop floor."),
    ModuleEntry("procurement", "Procurement", "procurement.index", "procurement.view",
                "/admin/procurement", "Vendors, purchase orders, requisitions and contracts."),
    ModuleEntry("quality", "Quality Management", "quality.index", "quality.view",
                "/admin/quality", "Checks, audits, non-conformances, CAPA and SPC."),
    ModuleEntry("reporting", "Reporting", "reporting.index", "reporting.view",
                "/admin/reporting", "Reports, dashboards, schedules and BI integration."),
    ModuleEntry("security_features", "Security", "security_features.index", "security.view",
                "/admin/security", "Encryption, audit, compliance, privacy and incidents."),
    ModuleEntry("testing", "Testing", "testing.index", "testing.view",
                "/admin/testing", "Test runs, coverage, bugs and QA metrics."),
    ModuleEntry("user_experience", "User Experience", "user_experience.index", "ux.view",
                "/admin/ux", "Onboarding, notifications, dashboards and feedback."),
)
