"""initial schema: branches / products / batches / ledger / transfers / deliveries

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable, server_default=sa.func.now())


def upgrade() -> None:
    # ---------- 主数据 ----------
    op.create_table(
        "branches",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _ts("created_at"),
    )
    op.create_table(
        "branch_manager_codes",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("branch_id", sa.Integer, sa.ForeignKey("branches.id", ondelete="CASCADE"), nullable=False),
        sa.Column("code_hash", sa.String(255), nullable=False),
        _ts("created_at"),
        sa.UniqueConstraint("branch_id", name="uq_branch_manager_codes_branch"),
    )
    op.create_table(
        "products",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("sku", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("shelf_life", sa.String(32), nullable=True),
        sa.Column("min_stock", sa.Integer, nullable=False, server_default="0"),
        sa.Column("allow_otc", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("allow_salon_use", sa.Boolean, nullable=False, server_default=sa.true()),
    )

    # ---------- 批次 + 流水 ----------
    op.create_table(
        "stock_batches",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("branch_id", sa.Integer, sa.ForeignKey("branches.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("product_id", sa.Integer, sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("batch_number", sa.String(96), nullable=False),
        sa.Column("usage_type", sa.String(16), nullable=False),
        sa.Column("original_quantity", sa.Integer, nullable=False),
        sa.Column("remaining_quantity", sa.Integer, nullable=False),
        sa.Column("unit_cost", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("expiration_date", sa.Date, nullable=True),
        sa.Column("received_date", sa.Date, nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("source_type", sa.String(16), nullable=False),
        sa.Column("source_reference", sa.String(128), nullable=False),
        sa.Column(
            "origin_batch_id",
            sa.Integer,
            sa.ForeignKey("stock_batches.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("received_by", sa.String(64), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("branch_id", "product_id", "batch_number", name="uq_stock_batches_branch_product_number"),
        sa.CheckConstraint("remaining_quantity >= 0", name="ck_stock_batches_remaining_nonneg"),
        sa.CheckConstraint("remaining_quantity <= original_quantity", name="ck_stock_batches_remaining_le_original"),
    )
    op.create_index("ix_stock_batches_branch_product", "stock_batches", ["branch_id", "product_id"])
    op.create_index("ix_stock_batches_expiration", "stock_batches", ["expiration_date"])
    op.create_index("ix_stock_batches_source_ref", "stock_batches", ["source_reference"])
    op.create_index("ix_stock_batches_origin", "stock_batches", ["origin_batch_id"])

    op.create_table(
        "batch_movements",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("batch_id", sa.Integer, sa.ForeignKey("stock_batches.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("branch_id", sa.Integer, nullable=False),
        sa.Column("product_id", sa.Integer, nullable=False),
        sa.Column("reason", sa.String(32), nullable=False),
        sa.Column("ref", sa.String(128), nullable=False),
        sa.Column("ref_line", sa.Integer, nullable=False, server_default="1"),
        sa.Column("delta", sa.Integer, nullable=False),
        sa.Column("after_qty", sa.Integer, nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        _ts("created_at"),
        sa.Column("trace_id", sa.String(64), nullable=True),
        sa.UniqueConstraint("batch_id", "reason", "ref", "ref_line", name="uq_batch_movements_batch_reason_ref_line"),
    )
    op.create_index("ix_batch_movements_branch_id", "batch_movements", ["branch_id"])
    op.create_index("ix_batch_movements_product_id", "batch_movements", ["product_id"])
    op.create_index("ix_batch_movements_dims", "batch_movements", ["branch_id", "product_id", "occurred_at"])
    op.create_index("ix_batch_movements_trace_id", "batch_movements", ["trace_id"])

    # ---------- 月度台账 ----------
    op.create_table(
        "stock_ledger_entries",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("branch_id", sa.Integer, sa.ForeignKey("branches.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("product_id", sa.Integer, sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("period_start", sa.Date, nullable=False),
        sa.Column("period_end", sa.Date, nullable=False),
        sa.Column("beginning_stock", sa.Integer, nullable=False, server_default="0"),
        sa.Column("week_one_stock", sa.Integer, nullable=True),
        sa.Column("week_two_stock", sa.Integer, nullable=True),
        sa.Column("week_three_stock", sa.Integer, nullable=True),
        sa.Column("week_four_stock", sa.Integer, nullable=True),
        sa.Column("real_time_stock", sa.Integer, nullable=True),
        sa.Column("min_stock", sa.Integer, nullable=False, server_default="0"),
        sa.Column("closed", sa.Boolean, nullable=False, server_default=sa.false()),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("branch_id", "product_id", "period_start", name="uq_stock_ledger_entries_period"),
        sa.CheckConstraint("period_end >= period_start", name="ck_stock_ledger_entries_period"),
    )
    op.create_index("ix_stock_ledger_entries_dims", "stock_ledger_entries", ["branch_id", "product_id"])

    # ---------- 调拨 / 借货 ----------
    op.create_table(
        "transfer_requests",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("transfer_no", sa.String(64), nullable=False, unique=True),
        sa.Column("transfer_type", sa.String(16), nullable=False),
        sa.Column("from_branch_id", sa.Integer, sa.ForeignKey("branches.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("to_branch_id", sa.Integer, sa.ForeignKey("branches.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="Pending"),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("created_by", sa.String(64), nullable=True),
        sa.Column("approved_by", sa.String(64), nullable=True),
        sa.Column("dispatched_by", sa.String(64), nullable=True),
        sa.Column("received_by", sa.String(64), nullable=True),
        sa.Column("declined_by", sa.String(64), nullable=True),
        sa.Column("declined_reason", sa.Text, nullable=True),
        sa.Column("cancelled_by", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trace_id", sa.String(96), nullable=True),
        sa.CheckConstraint("from_branch_id <> to_branch_id", name="ck_transfer_requests_two_party"),
    )
    op.create_index("ix_transfer_requests_from", "transfer_requests", ["from_branch_id", "status"])
    op.create_index("ix_transfer_requests_to", "transfer_requests", ["to_branch_id", "status"])
    op.create_index("ix_transfer_requests_created_at", "transfer_requests", ["created_at"])

    op.create_table(
        "transfer_items",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "transfer_id",
            sa.Integer,
            sa.ForeignKey("transfer_requests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("line_no", sa.Integer, nullable=False),
        sa.Column("product_id", sa.Integer, sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("usage_type", sa.String(16), nullable=False),
        sa.Column("requested_quantity", sa.Integer, nullable=False),
        sa.Column("approved_quantity", sa.Integer, nullable=True),
        sa.Column("unit_cost", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column(
            "selected_batch_id",
            sa.Integer,
            sa.ForeignKey("stock_batches.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("consumed_batches", sa.JSON, nullable=True),
        sa.Column("returned_quantity", sa.Integer, nullable=False, server_default="0"),
        sa.UniqueConstraint("transfer_id", "line_no", name="uq_transfer_items_line"),
        sa.CheckConstraint("requested_quantity > 0", name="ck_transfer_items_requested_pos"),
    )

    # ---------- 采购 / 到货 ----------
    op.create_table(
        "purchase_orders",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("order_no", sa.String(64), nullable=False, unique=True),
        sa.Column("branch_id", sa.Integer, sa.ForeignKey("branches.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="InTransit"),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_table(
        "purchase_order_lines",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.Integer, sa.ForeignKey("purchase_orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("product_id", sa.Integer, sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("ordered_quantity", sa.Integer, nullable=False),
        sa.Column("unit_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("usage_type", sa.String(16), nullable=False, server_default="otc"),
        sa.UniqueConstraint("order_id", "product_id", name="uq_purchase_order_lines_product"),
    )
    op.create_table(
        "delivery_receipts",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "purchase_order_id",
            sa.Integer,
            sa.ForeignKey("purchase_orders.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("branch_id", sa.Integer, sa.ForeignKey("branches.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("received_by", sa.String(64), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("trace_id", sa.String(96), nullable=True),
        sa.UniqueConstraint("purchase_order_id", name="uq_delivery_receipts_po"),
    )
    op.create_index(
        "ix_delivery_receipts_branch_received_at", "delivery_receipts", ["branch_id", "received_at"]
    )
    op.create_table(
        "delivery_receipt_lines",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "receipt_id",
            sa.Integer,
            sa.ForeignKey("delivery_receipts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("line_no", sa.Integer, nullable=False),
        sa.Column("product_id", sa.Integer, sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("usage_type", sa.String(16), nullable=False),
        sa.Column("ordered_quantity", sa.Integer, nullable=False),
        sa.Column("received_quantity", sa.Integer, nullable=False),
        sa.Column("discrepancy", sa.Integer, nullable=False),
        sa.Column("unit_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("line_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("checked", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("expiration_date", sa.Date, nullable=True),
        sa.Column("batch_id", sa.Integer, sa.ForeignKey("stock_batches.id", ondelete="SET NULL"), nullable=True),
        sa.UniqueConstraint("receipt_id", "line_no", name="uq_delivery_receipt_lines_line"),
    )
    op.create_index("ix_delivery_receipt_lines_product", "delivery_receipt_lines", ["product_id"])

    # ---------- 审计 ----------
    op.create_table(
        "activity_records",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("before_state", sa.JSON, nullable=True),
        sa.Column("after_state", sa.JSON, nullable=True),
        sa.Column("performed_by", sa.String(64), nullable=True),
        sa.Column("branch_id", sa.Integer, nullable=True),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("trace_id", sa.String(96), nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_activity_records_entity", "activity_records", ["entity_type", "entity_id"])
    op.create_index("ix_activity_records_branch_created", "activity_records", ["branch_id", "created_at"])
    op.create_index("ix_activity_records_trace_id", "activity_records", ["trace_id"])


def downgrade() -> None:
    op.drop_table("activity_records")
    op.drop_table("delivery_receipt_lines")
    op.drop_table("delivery_receipts")
    op.drop_table("purchase_order_lines")
    op.drop_table("purchase_orders")
    op.drop_table("transfer_items")
    op.drop_table("transfer_requests")
    op.drop_table("stock_ledger_entries")
    op.drop_table("batch_movements")
    op.drop_table("stock_batches")
    op.drop_table("products")
    op.drop_table("branch_manager_codes")
    op.drop_table("branches")
