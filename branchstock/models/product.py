# branchstock/models/product.py
from __future__ import annotations

from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from branchstock.db.base import Base


class Product(Base):
    """
    商品主档镜像（只读）：

    - shelf_life  原样保存商品档案里的保质期字符串，例如 "24 months" / "6"
    - min_stock   低库存阈值（库存状态判定用）
    - allow_otc / allow_salon_use  可用用途
    """

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    sku: Mapped[str] = mapped_column(sa.String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    shelf_life: Mapped[Optional[str]] = mapped_column(sa.String(32), nullable=True)
    min_stock: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    allow_otc: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)
    allow_salon_use: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku} shelf_life={self.shelf_life!r}>"
