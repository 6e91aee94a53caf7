"""Add procurement tables.

Revision ID: a0c1e2f30006
Revises: a0c1e2f30005
Create Date: 2026-03-05
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a0c1e2f30006"
down_revision: Union[str, Sequence[str], None] = "a0c1e2f30005"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "vendors",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("vendor_name", sa.String(255), nullable=False),
        sa.Column("vendor_code", sa.String(64), nullable=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("phone", sa.String(64), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("contact_person", sa.String(255), nullable=True),
        sa.Column("category", sa.String(64), nullable=False, server_default="other"),
        sa.Column("rating", sa.Numeric(2, 1), nullable=False, server_default="3.0"),
        sa.Column("status", sa.String(32), nullable=False, server_default="active"),
        sa.Column("lead_time_days", sa.Integer(), nullable=False, server_default="7"),
        sa.Column("payment_terms", sa.String(32), nullable=False, server_default="net_30"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_vendors_company_status", "vendors", ["company_id", "status"])
    op.create_index("idx_vendors_company_email", "vendors", ["company_id", "email"])
    op.create_index("idx_vendors_category", "vendors", ["category"])

    op.create_table(
        "purchase_orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("po_number", sa.String(64), nullable=False),
        sa.Column("vendor_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="draft"),
        sa.Column("order_date", sa.Date(), nullable=False),
        sa.Column("expected_delivery_date", sa.Date(), nullable=True),
        sa.Column("actual_delivery_date", sa.Date(), nullable=True),
        sa.Column("total_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["vendor_id"], ["vendors.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("po_number"),
    )
    op.create_index("idx_purchase_orders_company_status", "purchase_orders", ["company_id", "status"])
    op.create_index("idx_purchase_orders_vendor", "purchase_orders", ["vendor_id"])
    op.create_index("idx_purchase_orders_order_date", "purchase_orders", ["order_date"])

    op.create_table(
        "purchase_order_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("purchase_order_id", sa.Integer(), nullable=False),
        sa.Column("item_name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("quantity", sa.Numeric(12, 2), nullable=False),
        sa.Column("unit_price", sa.Numeric(14, 2), nullable=False),
        sa.Column("total_price", sa.Numeric(14, 2), nullable=False),
        sa.ForeignKeyConstraint(["purchase_order_id"], ["purchase_orders.id"], ondelete="CASCADE"),
    )

    op.create_table(
        "requisitions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("requisition_number", sa.String(64), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("department", sa.String(128), nullable=True),
        sa.Column("justification", sa.Text(), nullable=True),
        sa.Column("priority", sa.String(16), nullable=False, server_default="medium"),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("required_by", sa.Date(), nullable=True),
        sa.Column("total_estimated_cost", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("requested_by_user_id", sa.Integer(), nullable=True),
        sa.Column("approved_by_user_id", sa.Integer(), nullable=True),
        sa.Column("approved_at", sa.DateTime(), nullable=True),
        sa.Column("approval_notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["requested_by_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["approved_by_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("requisition_number"),
    )
    op.create_index("idx_requisitions_company_status", "requisitions", ["company_id", "status"])

    op.create_table(
        "requisition_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("requisition_id", sa.Integer(), nullable=False),
        sa.Column("item_name", sa.String(255), nullable=False),
        sa.Column("quantity", sa.Numeric(12, 2), nullable=False, server_default="1"),
        sa.Column("estimated_cost", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["requisition_id"], ["requisitions.id"], ondelete="CASCADE"),
    )

    op.create_table(
        "contracts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("contract_number", sa.String(64), nullable=False),
        sa.Column("vendor_id", sa.Integer(), nullable=False),
        sa.Column("contract_title", sa.String(255), nullable=False),
        sa.Column("contract_value", sa.Numeric(14, 2), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="active"),
        sa.Column("renewal_notice_days", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("terms", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["vendor_id"], ["vendors.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("contract_number"),
    )
    op.create_index("idx_contracts_company_status", "contracts", ["company_id", "status"])
    op.create_index("idx_contracts_end_date", "contracts", ["end_date"])

    op.create_table(
        "supplier_evaluations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("vendor_id", sa.Integer(), nullable=False),
        sa.Column("evaluation_date", sa.Date(), nullable=False),
        sa.Column("quality_score", sa.Numeric(3, 2), nullable=True),
        sa.Column("delivery_score", sa.Numeric(3, 2), nullable=True),
        sa.Column("price_score", sa.Numeric(3, 2), nullable=True),
        sa.Column("service_score", sa.Numeric(3, 2), nullable=True),
        sa.Column("overall_score", sa.Numeric(3, 2), nullable=False),
        sa.Column("comments", sa.Text(), nullable=True),
        sa.Column("evaluated_by_user_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["vendor_id"], ["vendors.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["evaluated_by_user_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_supplier_evaluations_vendor_date", "supplier_evaluations", ["vendor_id", "evaluation_date"])

    op.create_table(
        "procurement_activities",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_procurement_activities_company_created", "procurement_activities", ["company_id", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_procurement_activities_company_created", table_name="procurement_activities")
    op.drop_table("procurement_activities")
    op.drop_index("idx_supplier_evaluations_vendor_date", table_name="supplier_evaluations")
    op.drop_table("supplier_evaluations")
    op.drop_index("idx_contracts_end_date", table_name="contracts")
    op.drop_index("idx_contracts_company_status", table_name="contracts")
    op.drop_table("contracts")
    op.drop_table("requisition_items")
    op.drop_index("idx_requisitions_company_status", table_name="requisitions")
    op.drop_table("requisitions")
    op.drop_table("purchase_order_items")
    op.drop_index("idx_purchase_orders_order_date", table_name="purchase_orders")
    op.drop_index("idx_purchase_orders_vendor", table_name="purchase_orders")
    op.drop_index("idx_purchase_orders_company_status", table_name="purchase_orders")
    op.drop_table("purchase_orders")
    op.drop_index("idx_vendors_category", table_name="vendors")
    op.drop_index("idx_vendors_company_email", table_name="vendors")
    op.drop_index("idx_vendors_company_status", table_name="vendors")
    op.drop_table("vendors")
