# branchstock/schemas/batch.py
from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from branchstock.models.enums import SourceType, UsageType


class BatchOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    branch_id: int
    product_id: int
    batch_number: str
    usage_type: str

    original_quantity: int
    remaining_quantity: int
    unit_cost: Decimal

    expiration_date: Optional[date] = None
    received_date: date
    status: str

    source_type: str
    source_reference: str
    origin_batch_id: Optional[int] = None
    received_by: Optional[str] = None
    version: int

    @field_serializer("unit_cost")
    def _ser_unit_cost(self, v: Decimal) -> str:
        return str(v)


class BatchConsumptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    batch_id: int
    quantity: int
    unit_cost: Decimal
    origin_batch_id: Optional[int] = None
    expiration_date: Optional[date] = None
    batch_number: str

    @field_serializer("unit_cost")
    def _ser_unit_cost(self, v: Decimal) -> str:
        return str(v)


class AllocateFifoIn(BaseModel):
    branch_id: int
    product_id: int
    quantity: int = Field(..., description="需要扣减的件数（>0）")
    usage_type: UsageType = UsageType.OTC
    ref: str = Field(..., min_length=1, max_length=128, description="业务单号（销售单 / 耗用单）")


class AllocateSpecificIn(BaseModel):
    quantity: int
    usage_type: UsageType = UsageType.OTC
    ref: str = Field(..., min_length=1, max_length=128)
    branch_id: Optional[int] = None
    product_id: Optional[int] = None


class AllocationOut(BaseModel):
    ref: str
    quantity: int
    consumed: List[BatchConsumptionOut]


class ReplenishIn(BaseModel):
    branch_id: int
    product_id: int
    batch_number: str = Field(..., min_length=1, max_length=96)
    usage_type: UsageType = UsageType.OTC
    quantity: int
    unit_cost: Decimal = Decimal("0")
    # 允许缺省，由服务层给出统一的 ValidationError
    expiration_date: Optional[date] = None
    received_date: Optional[date] = None
    source_type: SourceType = SourceType.PURCHASE
    source_reference: str = Field(..., min_length=1, max_length=128)
    origin_batch_id: Optional[int] = None
    received_by: Optional[str] = None


class FallbackBatchIn(BaseModel):
    branch_id: int
    product_id: int
    usage_type: UsageType = UsageType.OTC
    unit_cost: Decimal = Decimal("0")
    expiration_date: Optional[date] = None


class ReturnToOriginIn(BaseModel):
    quantity: int
    reason: str = Field(..., min_length=1)
    ref: str = Field(..., min_length=1, max_length=64)
    fallback: Optional[FallbackBatchIn] = None
    performed_by: Optional[str] = None


class ReturnResultOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    batch_id: int
    quantity: int
    fallback_used: bool
    active: bool


class SumRemainingOut(BaseModel):
    branch_id: int
    product_id: int
    usage_type: Optional[str] = None
    remaining: int


class SweepIn(BaseModel):
    branch_id: Optional[int] = None
    today: Optional[date] = None


class SweepOut(BaseModel):
    count: int
    touched: List[List[int]] = Field(default_factory=list, description="[[branch_id, product_id], ...]")
