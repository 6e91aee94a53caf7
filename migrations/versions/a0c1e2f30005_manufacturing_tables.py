"""Add manufacturing tables.

Revision ID: a0c1e2f30005
Revises: a0c1e2f30004
Create Date: 2026-03-04
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a0c1e2f30005"
down_revision: Union[str, Sequence[str], None] = "a0c1e2f30004"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "production_lines",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("line_name", sa.String(255), nullable=False),
        sa.Column("line_code", sa.String(64), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("capacity_per_hour", sa.Numeric(12, 2), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
    )
    op.create_index("idx_production_lines_company_status", "production_lines", ["company_id", "status"])

    op.create_table(
        "bills_of_materials",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("bom_number", sa.String(64), nullable=False),
        sa.Column("product_name", sa.String(255), nullable=False),
        sa.Column("product_code", sa.String(64), nullable=True),
        sa.Column("version", sa.String(16), nullable=False, server_default="1.0"),
        sa.Column("status", sa.String(32), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("bom_number"),
    )
    op.create_index("idx_boms_company_status", "bills_of_materials", ["company_id", "status"])

    op.create_table(
        "bom_components",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("bom_id", sa.Integer(), nullable=False),
        sa.Column("component_name", sa.String(255), nullable=False),
        sa.Column("component_code", sa.String(64), nullable=True),
        sa.Column("quantity", sa.Numeric(12, 3), nullable=False, server_default="1"),
        sa.Column("unit_cost", sa.Numeric(14, 4), nullable=False, server_default="0"),
        sa.Column("unit_of_measure", sa.String(16), nullable=False, server_default="ea"),
        sa.Column("stock_on_hand", sa.Numeric(14, 3), nullable=False, server_default="0"),
        sa.Column("reorder_point", sa.Numeric(14, 3), nullable=False, server_default="0"),
        sa.Column("safety_stock", sa.Numeric(14, 3), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["bom_id"], ["bills_of_materials.id"], ondelete="CASCADE"),
    )

    op.create_table(
        "work_orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("work_order_number", sa.String(64), nullable=False),
        sa.Column("bom_id", sa.Integer(), nullable=False),
        sa.Column("production_line_id", sa.Integer(), nullable=False),
        sa.Column("quantity_planned", sa.Numeric(12, 2), nullable=False),
        sa.Column("quantity_produced", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("quantity_scrapped", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("priority", sa.String(16), nullable=False, server_default="normal"),
        sa.Column("status", sa.String(32), nullable=False, server_default="draft"),
        sa.Column("planned_start_date", sa.Date(), nullable=True),
        sa.Column("planned_end_date", sa.Date(), nullable=True),
        sa.Column("actual_start_date", sa.DateTime(), nullable=True),
        sa.Column("actual_end_date", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["bom_id"], ["bills_of_materials.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["production_line_id"], ["production_lines.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("work_order_number"),
    )
    op.create_index("idx_work_orders_company_status", "work_orders", ["company_id", "status"])
    op.create_index("idx_work_orders_line", "work_orders", ["production_line_id"])
    op.create_index("idx_work_orders_planned_start", "work_orders", ["planned_start_date"])

    op.create_table(
        "work_order_operations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("work_order_id", sa.Integer(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("operation_name", sa.String(255), nullable=False),
        sa.Column("workstation", sa.String(128), nullable=True),
        sa.Column("planned_minutes", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.ForeignKeyConstraint(["work_order_id"], ["work_orders.id"], ondelete="CASCADE"),
    )

    op.create_table(
        "production_data",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("work_order_id", sa.Integer(), nullable=False),
        sa.Column("data_type", sa.String(32), nullable=False),
        sa.Column("quantity_produced", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("quantity_scrapped", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("value", sa.Numeric(14, 4), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("recorded_at", sa.DateTime(), nullable=False),
        sa.Column("recorded_by_user_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["work_order_id"], ["work_orders.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["recorded_by_user_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_production_data_wo_recorded", "production_data", ["work_order_id", "recorded_at"])

    op.create_table(
        "mfg_quality_inspections",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("work_order_id", sa.Integer(), nullable=False),
        sa.Column("inspection_type", sa.String(64), nullable=False),
        sa.Column("result", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("sample_size", sa.Integer(), nullable=True),
        sa.Column("defects_found", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("inspected_at", sa.DateTime(), nullable=False),
        sa.Column("inspector_user_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["work_order_id"], ["work_orders.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["inspector_user_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_mfg_inspections_company_result", "mfg_quality_inspections", ["company_id", "result"])

    op.create_table(
        "downtime_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("production_line_id", sa.Integer(), nullable=False),
        sa.Column("work_order_id", sa.Integer(), nullable=True),
        sa.Column("reason", sa.String(255), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("recorded_by_user_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["production_line_id"], ["production_lines.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["work_order_id"], ["work_orders.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["recorded_by_user_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_downtime_events_line_started", "downtime_events", ["production_line_id", "started_at"])

    op.create_table(
        "production_plans",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("plan_name", sa.String(255), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="draft"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
    )

    op.create_table(
        "production_plan_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("plan_id", sa.Integer(), nullable=False),
        sa.Column("bom_id", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Numeric(12, 2), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.ForeignKeyConstraint(["plan_id"], ["production_plans.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["bom_id"], ["bills_of_materials.id"], ondelete="RESTRICT"),
    )


def downgrade() -> None:
    op.drop_table("production_plan_items")
    op.drop_table("production_plans")
    op.drop_index("idx_downtime_events_line_started", table_name="downtime_events")
    op.drop_table("downtime_events")
    op.drop_index("idx_mfg_inspections_company_result", table_name="mfg_quality_inspections")
    op.drop_table("mfg_quality_inspections")
    op.drop_index("idx_production_data_wo_recorded", table_name="production_data")
    op.drop_table("production_data")
    op.drop_table("work_order_operations")
    op.drop_index("idx_work_orders_planned_start", table_name="work_orders")
    op.drop_index("idx_work_orders_line", table_name="work_orders")
    op.drop_index("idx_work_orders_company_status", table_name="work_orders")
    op.drop_table("work_orders")
    op.drop_table("bom_components")
    op.drop_index("idx_boms_company_status", table_name="bills_of_materials")
    op.drop_table("bills_of_materials")
    op.drop_index("idx_production_lines_company_status", table_name="production_lines")
    op.drop_table("production_lines")
