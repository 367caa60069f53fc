# branchstock/models/activity_record.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from branchstock.db.base import Base


class ActivityRecord(Base):
    """
    活动记录（每次状态变化一行，供审计 / 通知层读取）
    """

    __tablename__ = "activity_records"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)

    action: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)

    before_state: Mapped[Optional[Dict[str, Any]]] = mapped_column(sa.JSON, nullable=True)
    after_state: Mapped[Optional[Dict[str, Any]]] = mapped_column(sa.JSON, nullable=True)

    performed_by: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    branch_id: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    trace_id: Mapped[Optional[str]] = mapped_column(sa.String(96), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
    )

    __table_args__ = (
        sa.Index("ix_activity_records_entity", "entity_type", "entity_id"),
        sa.Index("ix_activity_records_branch_created", "branch_id", "created_at"),
        sa.Index("ix_activity_records_trace_id", "trace_id"),
    )

    def __repr__(self) -> str:
        return f"<ActivityRecord {self.action} {self.entity_type}:{self.entity_id} by={self.performed_by}>"
