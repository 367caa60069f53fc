# branchstock/schemas/ledger.py
from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

UTC = timezone.utc


def _to_utc(dt: datetime) -> datetime:
    if not isinstance(dt, datetime):
        return dt
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


class LedgerEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    branch_id: int
    product_id: int
    period_start: date
    period_end: date
    beginning_stock: int
    week_one_stock: Optional[int] = None
    week_two_stock: Optional[int] = None
    week_three_stock: Optional[int] = None
    week_four_stock: Optional[int] = None
    real_time_stock: Optional[int] = None
    min_stock: int
    closed: bool


class ReconcileIn(BaseModel):
    branch_id: int
    product_id: int
    performed_by: Optional[str] = None


class ReconcileOut(BaseModel):
    branch_id: int
    product_id: int
    real_time_stock: int


class WeeklyCountIn(BaseModel):
    branch_id: int
    product_id: int
    week_number: int
    count: int
    period_start: Optional[date] = None


class PeriodOpenIn(BaseModel):
    branch_id: int
    product_id: int
    period_start: date
    period_end: Optional[date] = None
    min_stock: Optional[int] = Field(default=None, ge=0)


class PeriodCloseIn(BaseModel):
    branch_id: int
    product_id: int
    period_start: date


class EndingStockOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    next_period_beginning: int
    deliveries_in_period: int
    calculated_ending: int


class CurrentStockOut(BaseModel):
    branch_id: int
    product_id: int
    current_stock: int
    status: str


class MovementOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    batch_id: int
    reason: str
    ref: str
    ref_line: int
    delta: int
    after_qty: int
    occurred_at: datetime
    trace_id: Optional[str] = None

    @field_serializer("occurred_at")
    def _ser_occurred_at(self, v: datetime) -> datetime:
        return _to_utc(v)


class ForceAdjustIn(BaseModel):
    batch_id: int
    new_remaining: int = Field(..., ge=0)
    manager_code: str = Field(..., min_length=1)
    performed_by: Optional[str] = None
    reason: Optional[str] = None


class StockSummaryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    branch_id: int
    total_products: int
    total_value: Decimal
    counts: Dict[str, int] = Field(default_factory=dict, description="{库存等级: 商品数}")
