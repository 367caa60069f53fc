# branchstock/models/stock_batch.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from branchstock.db.base import Base
from branchstock.models.enums import BatchStatus


class StockBatch(Base):
    """
    门店批次（库存唯一真相）

    批次维度：
        (branch_id, product_id, batch_number)

    数量约束：
        0 <= remaining_quantity <= original_quantity

    生命周期：
        - 采购收货 / 调拨到货时创建
        - 分配扣减、退回恢复、到期清扫时修改
        - 永不物理删除；remaining=0 时 status=depleted，仍保留用于审计与退回

    并发：
        - remaining_quantity 只允许通过条件 UPDATE 修改（WHERE version=:v AND remaining>=:q）
        - version 每次数量变化 +1
    """

    __tablename__ = "stock_batches"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)

    branch_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("branches.id", ondelete="RESTRICT"), nullable=False
    )
    product_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False
    )

    batch_number: Mapped[str] = mapped_column(sa.String(96), nullable=False)
    usage_type: Mapped[str] = mapped_column(sa.String(16), nullable=False)

    original_quantity: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    remaining_quantity: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    unit_cost: Mapped[Decimal] = mapped_column(sa.Numeric(12, 2), nullable=False, default=Decimal("0"))

    # 表结构允许为空（历史数据），创建时由策略强制要求
    expiration_date: Mapped[Optional[date]] = mapped_column(sa.Date, nullable=True)
    received_date: Mapped[date] = mapped_column(sa.Date, nullable=False)

    status: Mapped[str] = mapped_column(sa.String(16), nullable=False, default=BatchStatus.ACTIVE.value)

    source_type: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    source_reference: Mapped[str] = mapped_column(sa.String(128), nullable=False)
    origin_batch_id: Mapped[Optional[int]] = mapped_column(
        sa.Integer, sa.ForeignKey("stock_batches.id", ondelete="SET NULL"), nullable=True
    )

    received_by: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    version: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
    )

    __table_args__ = (
        sa.UniqueConstraint(
            "branch_id",
            "product_id",
            "batch_number",
            name="uq_stock_batches_branch_product_number",
        ),
        sa.CheckConstraint("remaining_quantity >= 0", name="ck_stock_batches_remaining_nonneg"),
        sa.CheckConstraint(
            "remaining_quantity <= original_quantity", name="ck_stock_batches_remaining_le_original"
        ),
        sa.Index("ix_stock_batches_branch_product", "branch_id", "product_id"),
        sa.Index("ix_stock_batches_expiration", "expiration_date"),
        sa.Index("ix_stock_batches_source_ref", "source_reference"),
        sa.Index("ix_stock_batches_origin", "origin_batch_id"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == BatchStatus.ACTIVE.value

    def __repr__(self) -> str:
        return (
            f"<StockBatch id={self.id} branch={self.branch_id} product={self.product_id} "
            f"no={self.batch_number} usage={self.usage_type} "
            f"qty={self.remaining_quantity}/{self.original_quantity} "
            f"exp={self.expiration_date} status={self.status}>"
        )
