# branchstock/models/transfer_request.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from branchstock.db.base import Base
from branchstock.models.enums import TransferStatus


class TransferRequest(Base):
    """
    门店间移动单（调拨 transfer / 借货 borrow 共用一张表）：

    - from_branch_id  发货方 / 出借方
    - to_branch_id    收货方 / 借入方
    - status          Pending → InTransit → Completed；Pending → Cancelled
    """

    __tablename__ = "transfer_requests"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    transfer_no: Mapped[str] = mapped_column(sa.String(64), nullable=False, unique=True)
    transfer_type: Mapped[str] = mapped_column(sa.String(16), nullable=False)

    from_branch_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("branches.id", ondelete="RESTRICT"), nullable=False
    )
    to_branch_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("branches.id", ondelete="RESTRICT"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        sa.String(16), nullable=False, default=TransferStatus.PENDING.value
    )

    reason: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)

    created_by: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    approved_by: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    dispatched_by: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    received_by: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    declined_by: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    declined_reason: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    approved_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    dispatched_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    received_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    trace_id: Mapped[Optional[str]] = mapped_column(sa.String(96), nullable=True)

    items: Mapped[List["TransferItem"]] = relationship(
        "TransferItem",
        back_populates="transfer",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="TransferItem.line_no",
    )

    __table_args__ = (
        sa.CheckConstraint("from_branch_id <> to_branch_id", name="ck_transfer_requests_two_party"),
        sa.Index("ix_transfer_requests_from", "from_branch_id", "status"),
        sa.Index("ix_transfer_requests_to", "to_branch_id", "status"),
        sa.Index("ix_transfer_requests_created_at", "created_at"),
    )

    @property
    def approved_items(self) -> List["TransferItem"]:
        """借货审批后实际批出的行（approved_quantity > 0）"""
        return [it for it in self.items if (it.approved_quantity or 0) > 0]

    @property
    def total_quantity(self) -> int:
        return sum(it.moved_quantity for it in self.items)

    def __repr__(self) -> str:
        return (
            f"<TransferRequest id={self.id} no={self.transfer_no} type={self.transfer_type} "
            f"{self.from_branch_id}->{self.to_branch_id} status={self.status}>"
        )


class TransferItem(Base):
    """
    移动单行：

    - requested_quantity  申请数量
    - approved_quantity   借货审批数量（仅 borrow；调拨为空）
    - selected_batch_id   调拨手选批次
    - consumed_batches    实际扣减明细
                          [{batch_id, quantity, unit_cost, origin_batch_id, expiration_date, batch_number}]
    - returned_quantity   已退回累计
    """

    __tablename__ = "transfer_items"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    transfer_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("transfer_requests.id", ondelete="CASCADE"), nullable=False
    )
    line_no: Mapped[int] = mapped_column(sa.Integer, nullable=False)

    product_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False
    )
    usage_type: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    requested_quantity: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    approved_quantity: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    unit_cost: Mapped[Decimal] = mapped_column(sa.Numeric(12, 2), nullable=False, default=Decimal("0"))
    selected_batch_id: Mapped[Optional[int]] = mapped_column(
        sa.Integer, sa.ForeignKey("stock_batches.id", ondelete="SET NULL"), nullable=True
    )

    consumed_batches: Mapped[Optional[List[dict[str, Any]]]] = mapped_column(sa.JSON, nullable=True)
    returned_quantity: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)

    transfer: Mapped["TransferRequest"] = relationship("TransferRequest", back_populates="items")

    __table_args__ = (
        sa.UniqueConstraint("transfer_id", "line_no", name="uq_transfer_items_line"),
        sa.CheckConstraint("requested_quantity > 0", name="ck_transfer_items_requested_pos"),
    )

    @property
    def moved_quantity(self) -> int:
        """已扣减离开发货方的数量（consumed_batches 合计）"""
        return sum(int(leg.get("quantity") or 0) for leg in (self.consumed_batches or []))

    def __repr__(self) -> str:
        return (
            f"<TransferItem id={self.id} product={self.product_id} req={self.requested_quantity} "
            f"approved={self.approved_quantity} moved={self.moved_quantity}>"
        )
