# branchstock/models/batch_movement.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from branchstock.db.base import Base


class BatchMovement(Base):
    """
    批次流水（只增不改）
    幂等唯一： (batch_id, reason, ref, ref_line)
    - ref 非空（收货单号 / 调拨单号 / 强制调整引用）
    - delta/after_qty 为件数级整数
    """

    __tablename__ = "batch_movements"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)

    batch_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("stock_batches.id", ondelete="RESTRICT"), nullable=False
    )
    branch_id: Mapped[int] = mapped_column(sa.Integer, nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(sa.Integer, nullable=False, index=True)

    reason: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    ref: Mapped[str] = mapped_column(sa.String(128), nullable=False)
    ref_line: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=1)

    delta: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    after_qty: Mapped[int] = mapped_column(sa.Integer, nullable=False)

    occurred_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    trace_id: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)

    __table_args__ = (
        sa.UniqueConstraint(
            "batch_id",
            "reason",
            "ref",
            "ref_line",
            name="uq_batch_movements_batch_reason_ref_line",
        ),
        sa.Index("ix_batch_movements_dims", "branch_id", "product_id", "occurred_at"),
        sa.Index("ix_batch_movements_trace_id", "trace_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<BatchMovement {self.reason} batch={self.batch_id} "
            f"delta={self.delta} after={self.after_qty} ref={self.ref}:{self.ref_line}>"
        )
