# branchstock/models/purchase_order.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from branchstock.db.base import Base
from branchstock.models.enums import PurchaseOrderStatus, UsageType


class PurchaseOrder(Base):
    """
    采购单镜像：本系统只在 InTransit 之后接手（收货对账），收货完成后置 Received
    """

    __tablename__ = "purchase_orders"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    order_no: Mapped[str] = mapped_column(sa.String(64), nullable=False, unique=True)
    branch_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("branches.id", ondelete="RESTRICT"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        sa.String(16), nullable=False, default=PurchaseOrderStatus.IN_TRANSIT.value
    )
    received_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    lines: Mapped[List["PurchaseOrderLine"]] = relationship(
        "PurchaseOrderLine",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<PurchaseOrder id={self.id} no={self.order_no} branch={self.branch_id} status={self.status}>"


class PurchaseOrderLine(Base):
    __tablename__ = "purchase_order_lines"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("purchase_orders.id", ondelete="CASCADE"), nullable=False
    )
    product_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False
    )
    ordered_quantity: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(sa.Numeric(12, 2), nullable=False)
    usage_type: Mapped[str] = mapped_column(sa.String(16), nullable=False, default=UsageType.OTC.value)

    order: Mapped["PurchaseOrder"] = relationship("PurchaseOrder", back_populates="lines")

    __table_args__ = (
        sa.UniqueConstraint("order_id", "product_id", name="uq_purchase_order_lines_product"),
    )
