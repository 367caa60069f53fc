# branchstock/models/stock_ledger_entry.py
from __future__ import annotations

from datetime import date, datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from branchstock.db.base import Base


class StockLedgerEntry(Base):
    """
    门店库存汇总（每门店 × 商品 × 期间一行）：

    - beginning_stock      期初
    - week_*_stock         四次手工盘点（只覆盖，不影响 real_time_stock）
    - real_time_stock      实时库存 = 活跃批次 remaining 之和（对账时纠正）
    - closed               期间关闭后仅允许写第四周盘点
    """

    __tablename__ = "stock_ledger_entries"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)

    branch_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("branches.id", ondelete="RESTRICT"), nullable=False
    )
    product_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False
    )

    period_start: Mapped[date] = mapped_column(sa.Date, nullable=False)
    period_end: Mapped[date] = mapped_column(sa.Date, nullable=False)

    beginning_stock: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    week_one_stock: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    week_two_stock: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    week_three_stock: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    week_four_stock: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    real_time_stock: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)

    min_stock: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    closed: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
    )

    __table_args__ = (
        sa.UniqueConstraint(
            "branch_id", "product_id", "period_start", name="uq_stock_ledger_entries_period"
        ),
        sa.CheckConstraint("period_end >= period_start", name="ck_stock_ledger_entries_period"),
        sa.Index("ix_stock_ledger_entries_dims", "branch_id", "product_id"),
    )

    WEEK_FIELDS = ("week_one_stock", "week_two_stock", "week_three_stock", "week_four_stock")

    def __repr__(self) -> str:
        return (
            f"<StockLedgerEntry branch={self.branch_id} product={self.product_id} "
            f"{self.period_start}..{self.period_end} begin={self.beginning_stock} "
            f"rt={self.real_time_stock} closed={self.closed}>"
        )
