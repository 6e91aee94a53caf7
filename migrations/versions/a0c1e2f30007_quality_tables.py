"""Add quality management tables.

Revision ID: a0c1e2f30007
Revises: a0c1e2f30006
Create Date: 2026-03-06
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a0c1e2f30007"
down_revision: Union[str, Sequence[str], None] = "a0c1e2f30006"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "quality_standards",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("standard_code", sa.String(64), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("version", sa.String(32), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="active"),
        sa.Column("compliance_score", sa.Numeric(5, 2), nullable=True),
        sa.Column("last_review_date", sa.Date(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
    )

    op.create_table(
        "quality_criteria",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("standard_id", sa.Integer(), nullable=True),
        sa.Column("criteria_name", sa.String(255), nullable=False),
        sa.Column("category", sa.String(64), nullable=True),
        sa.Column("target_value", sa.Numeric(14, 4), nullable=True),
        sa.Column("lower_limit", sa.Numeric(14, 4), nullable=True),
        sa.Column("upper_limit", sa.Numeric(14, 4), nullable=True),
        sa.Column("unit", sa.String(32), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["standard_id"], ["quality_standards.id"], ondelete="SET NULL"),
    )

    op.create_table(
        "quality_checks",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("criteria_id", sa.Integer(), nullable=False),
        sa.Column("check_date", sa.Date(), nullable=False),
        sa.Column("result", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("actual_value", sa.Numeric(14, 4), nullable=True),
        sa.Column("defect_rate", sa.Numeric(7, 4), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("inspector_user_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["criteria_id"], ["quality_criteria.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["inspector_user_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_quality_checks_company_date", "quality_checks", ["company_id", "check_date"])
    op.create_index("idx_quality_checks_criteria", "quality_checks", ["criteria_id"])

    op.create_table(
        "audit_types",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
    )

    op.create_table(
        "quality_audits",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("audit_title", sa.String(255), nullable=False),
        sa.Column("audit_type_id", sa.Integer(), nullable=False),
        sa.Column("scheduled_date", sa.Date(), nullable=False),
        sa.Column("duration_days", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(32), nullable=False, server_default="planned"),
        sa.Column("lead_auditor_user_id", sa.Integer(), nullable=True),
        sa.Column("scope", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["audit_type_id"], ["audit_types.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["lead_auditor_user_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_quality_audits_company_scheduled", "quality_audits", ["company_id", "scheduled_date"])

    op.create_table(
        "audit_findings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("audit_id", sa.Integer(), nullable=False),
        sa.Column("finding_type", sa.String(32), nullable=False, server_default="observation"),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("clause", sa.String(64), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="open"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["audit_id"], ["quality_audits.id"], ondelete="CASCADE"),
    )

    op.create_table(
        "nc_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
    )

    op.create_table(
        "non_conformances",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("nc_number", sa.String(64), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("category_id", sa.Integer(), nullable=False),
        sa.Column("severity", sa.String(16), nullable=False, server_default="minor"),
        sa.Column("status", sa.String(32), nullable=False, server_default="open"),
        sa.Column("priority", sa.String(16), nullable=False, server_default="medium"),
        sa.Column("source", sa.String(64), nullable=True),
        sa.Column("quality_check_id", sa.Integer(), nullable=True),
        sa.Column("reported_by_user_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("closed_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["category_id"], ["nc_categories.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["quality_check_id"], ["quality_checks.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["reported_by_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("nc_number"),
    )
    op.create_index("idx_non_conformances_company_status", "non_conformances", ["company_id", "status"])
    op.create_index("idx_non_conformances_created", "non_conformances", ["created_at"])

    op.create_table(
        "capas",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("capa_number", sa.String(64), nullable=False),
        sa.Column("capa_type", sa.String(16), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("nc_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="open"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("assigned_to_user_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["nc_id"], ["non_conformances.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["assigned_to_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("capa_number"),
    )
    op.create_index("idx_capas_company_status", "capas", ["company_id", "status"])

    op.create_table(
        "root_cause_analyses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("nc_id", sa.Integer(), nullable=False),
        sa.Column("method", sa.String(32), nullable=False, server_default="5_whys"),
        sa.Column("root_cause", sa.Text(), nullable=False),
        sa.Column("contributing_factors", sa.JSON(), nullable=True),
        sa.Column("analyzed_by_user_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["nc_id"], ["non_conformances.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["analyzed_by_user_id"], ["users.id"], ondelete="SET NULL"),
    )

    op.create_table(
        "containment_actions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("nc_id", sa.Integer(), nullable=False),
        sa.Column("action_description", sa.Text(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="open"),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("responsible_user_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["nc_id"], ["non_conformances.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["responsible_user_id"], ["users.id"], ondelete="SET NULL"),
    )

    op.create_table(
        "quality_activities",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("activity_type", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_quality_activities_company_created", "quality_activities", ["company_id", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_quality_activities_company_created", table_name="quality_activities")
    op.drop_table("quality_activities")
    op.drop_table("containment_actions")
    op.drop_table("root_cause_analyses")
    op.drop_index("idx_capas_company_status", table_name="capas")
    op.drop_table("capas")
    op.drop_index("idx_non_conformances_created", table_name="non_conformances")
    op.drop_index("idx_non_conformances_company_status", table_name="non_conformances")
    op.drop_table("non_conformances")
    op.drop_table("nc_categories")
    op.drop_table("audit_findings")
    op.drop_index("idx_quality_audits_company_scheduled", table_name="quality_audits")
    op.drop_table("quality_audits")
    op.drop_table("audit_types")
    op.drop_index("idx_quality_checks_criteria", table_name="quality_checks")
    op.drop_index("idx_quality_checks_company_date", table_name="quality_checks")
    op.drop_table("quality_checks")
    op.drop_table("quality_criteria")
    op.drop_table("quality_standards")
