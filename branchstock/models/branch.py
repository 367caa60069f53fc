# branchstock/models/branch.py
from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from branchstock.db.base import Base


class Branch(Base):
    """
    门店目录（外部协作方的本地镜像，只读）
    """

    __tablename__ = "branches"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(sa.String(128), nullable=False)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
    )

    def __repr__(self) -> str:
        return f"<Branch id={self.id} name={self.name!r} active={self.is_active}>"


class BranchManagerCode(Base):
    """
    门店经理授权码（只存 pbkdf2 哈希），用于强制调整类操作
    """

    __tablename__ = "branch_manager_codes"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    branch_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("branches.id", ondelete="CASCADE"), nullable=False
    )
    code_hash: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
    )

    __table_args__ = (sa.UniqueConstraint("branch_id", name="uq_branch_manager_codes_branch"),)
