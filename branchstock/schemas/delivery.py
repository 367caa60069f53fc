# branchstock/schemas/delivery.py
from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

UTC = timezone.utc


def _to_utc(dt: datetime) -> datetime:
    if not isinstance(dt, datetime):
        return dt
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


class DeliveryLineBody(BaseModel):
    product_id: int
    received_quantity: int = Field(..., ge=0)
    checked: bool = False
    expiration_date: Optional[date] = Field(default=None, description="包装上的到期日；缺省按保质期推算")


class DeliveryReceiveIn(BaseModel):
    purchase_order_id: int
    items: List[DeliveryLineBody]
    received_by: Optional[str] = None
    received_at: Optional[datetime] = None
    notes: Optional[str] = None


class DeliveryLineOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    line_no: int
    product_id: int
    usage_type: str
    ordered_quantity: int
    received_quantity: int
    discrepancy: int
    unit_price: Decimal
    line_amount: Decimal
    checked: bool
    expiration_date: Optional[date] = None
    batch_id: Optional[int] = None

    @field_serializer("unit_price")
    def _ser_unit_price(self, v: Decimal) -> str:
        return str(v)

    @field_serializer("line_amount")
    def _ser_line_amount(self, v: Decimal) -> str:
        return str(v)


class DeliveryReceiptOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    purchase_order_id: int
    branch_id: int
    notes: Optional[str] = None
    received_by: Optional[str] = None
    received_at: datetime
    total_amount: Decimal
    trace_id: Optional[str] = None
    items: List[DeliveryLineOut] = Field(default_factory=list)

    @field_serializer("total_amount")
    def _ser_total_amount(self, v: Decimal) -> str:
        return str(v)

    @field_serializer("received_at")
    def _ser_received_at(self, v: datetime) -> datetime:
        return _to_utc(v)
