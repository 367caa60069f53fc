# branchstock/models/delivery_receipt.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from branchstock.db.base import Base


class DeliveryReceipt(Base):
    """
    收货单（创建后不可变，仅作审计留存）：

    - 只包含勾选（checked）的行
    - total_amount = Σ received_quantity × unit_price（按实收计，不按订货数）
    """

    __tablename__ = "delivery_receipts"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    purchase_order_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("purchase_orders.id", ondelete="RESTRICT"), nullable=False
    )
    branch_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("branches.id", ondelete="RESTRICT"), nullable=False
    )
    notes: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    received_by: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    received_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(sa.Numeric(14, 2), nullable=False, default=Decimal("0"))
    trace_id: Mapped[Optional[str]] = mapped_column(sa.String(96), nullable=True)

    items: Mapped[List["DeliveryReceiptLine"]] = relationship(
        "DeliveryReceiptLine",
        back_populates="receipt",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="DeliveryReceiptLine.line_no",
    )

    __table_args__ = (
        # 一张采购单只能收货一次
        sa.UniqueConstraint("purchase_order_id", name="uq_delivery_receipts_po"),
        sa.Index("ix_delivery_receipts_branch_received_at", "branch_id", "received_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<DeliveryReceipt id={self.id} po={self.purchase_order_id} "
            f"branch={self.branch_id} total={self.total_amount}>"
        )


class DeliveryReceiptLine(Base):
    __tablename__ = "delivery_receipt_lines"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    receipt_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("delivery_receipts.id", ondelete="CASCADE"), nullable=False
    )
    line_no: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    product_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False
    )
    usage_type: Mapped[str] = mapped_column(sa.String(16), nullable=False)

    ordered_quantity: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    received_quantity: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    discrepancy: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(sa.Numeric(12, 2), nullable=False)
    line_amount: Mapped[Decimal] = mapped_column(sa.Numeric(14, 2), nullable=False)
    checked: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)

    expiration_date: Mapped[Optional[date]] = mapped_column(sa.Date, nullable=True)
    batch_id: Mapped[Optional[int]] = mapped_column(
        sa.Integer, sa.ForeignKey("stock_batches.id", ondelete="SET NULL"), nullable=True
    )

    receipt: Mapped["DeliveryReceipt"] = relationship("DeliveryReceipt", back_populates="items")

    __table_args__ = (
        sa.UniqueConstraint("receipt_id", "line_no", name="uq_delivery_receipt_lines_line"),
        sa.Index("ix_delivery_receipt_lines_product", "product_id"),
    )
