# branchstock/schemas/transfer.py
from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from branchstock.models.enums import UsageType

UTC = timezone.utc


def _to_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if not isinstance(dt, datetime):
        return dt
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


# ---------------- 入参 ----------------
class TransferLineBody(BaseModel):
    product_id: int
    quantity: int = Field(..., gt=0)
    usage_type: UsageType = UsageType.OTC
    batch_id: Optional[int] = Field(default=None, description="手选批次（调拨默认必填）")


class TransferCreateIn(BaseModel):
    from_branch_id: int
    to_branch_id: int
    items: List[TransferLineBody] = Field(..., min_length=1)
    created_by: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = None


class BorrowLineBody(BaseModel):
    product_id: int
    quantity: int = Field(..., gt=0)
    usage_type: UsageType = UsageType.OTC


class BorrowCreateIn(BaseModel):
    requesting_branch_id: int
    lending_branch_id: int
    items: List[BorrowLineBody] = Field(..., min_length=1)
    created_by: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = None


class BorrowDecisionBody(BaseModel):
    item_id: int
    approved_quantity: int = Field(..., ge=0)


class BorrowApproveIn(BaseModel):
    acting_branch_id: int
    decisions: Optional[List[BorrowDecisionBody]] = Field(
        default=None, description="缺省时每行按 min(申请, 可用) 批出"
    )
    approved_by: Optional[str] = None


class BorrowDeclineIn(BaseModel):
    acting_branch_id: int
    declined_by: Optional[str] = None
    reason: Optional[str] = None


class TransferActIn(BaseModel):
    """dispatch / cancel / receive 共用"""

    acting_branch_id: int
    performed_by: Optional[str] = None
    reason: Optional[str] = None


class TransferReturnIn(BaseModel):
    acting_branch_id: int
    item_id: int
    quantity: int = Field(..., gt=0)
    reason: Optional[str] = None
    performed_by: Optional[str] = None


# ---------------- 出参 ----------------
class ConsumedLegOut(BaseModel):
    batch_id: int
    quantity: int
    unit_cost: str
    origin_batch_id: Optional[int] = None
    expiration_date: Optional[date] = None
    batch_number: str
    received_batch_id: Optional[int] = None
    returned: int = 0


class TransferItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    line_no: int
    product_id: int
    usage_type: str
    requested_quantity: int
    approved_quantity: Optional[int] = None
    unit_cost: Decimal
    selected_batch_id: Optional[int] = None
    consumed_batches: List[ConsumedLegOut] = Field(default_factory=list)
    moved_quantity: int
    returned_quantity: int

    @field_serializer("unit_cost")
    def _ser_unit_cost(self, v: Decimal) -> str:
        return str(v)


class TransferOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    transfer_no: str
    transfer_type: str
    from_branch_id: int
    to_branch_id: int
    status: str
    reason: Optional[str] = None
    notes: Optional[str] = None

    created_by: Optional[str] = None
    approved_by: Optional[str] = None
    dispatched_by: Optional[str] = None
    received_by: Optional[str] = None
    declined_by: Optional[str] = None
    declined_reason: Optional[str] = None
    cancelled_by: Optional[str] = None

    created_at: datetime
    approved_at: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    trace_id: Optional[str] = None
    items: List[TransferItemOut] = Field(default_factory=list)
    total_quantity: int

    @field_serializer("created_at", "approved_at", "dispatched_at", "received_at", "cancelled_at")
    def _ser_ts(self, v: Optional[datetime]) -> Optional[datetime]:
        return _to_utc(v)


class RestoredOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    batch_id: int
    quantity: int
    fallback_used: bool


class TransferReturnOut(BaseModel):
    transfer: TransferOut
    quantity: int
    fallback_used: bool
    restored: List[RestoredOut]

    @classmethod
    def from_result(cls, res: Any) -> "TransferReturnOut":
        return cls(
            transfer=TransferOut.model_validate(res.transfer),
            quantity=res.quantity,
            fallback_used=res.fallback_used,
            restored=[RestoredOut.model_validate(r) for r in res.restored],
        )
