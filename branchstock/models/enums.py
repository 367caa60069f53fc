# branchstock/models/enums.py
from __future__ import annotations

from enum import StrEnum


class UsageType(StrEnum):
    """
    批次用途（不同用途的批次在分配时互不替代）：

    - OTC        柜台零售
    - SALON_USE  院内耗用
    """

    OTC = "otc"
    SALON_USE = "salon-use"


class BatchStatus(StrEnum):
    """
    批次状态：

    - ACTIVE    可分配
    - DEPLETED  已用尽（remaining=0，保留用于审计 / 退回）
    - EXPIRED   已过期（到期清扫标记，不再参与 FIFO）
    """

    ACTIVE = "active"
    DEPLETED = "depleted"
    EXPIRED = "expired"


class SourceType(StrEnum):
    PURCHASE = "purchase"
    TRANSFER_IN = "transfer-in"


class TransferType(StrEnum):
    """
    门店间移动（同一张表，按 transfer_type 区分）：

    - TRANSFER  发货方发起，创建即扣减发货方库存
    - BORROW    收货方发起，出借方审批时才扣减
    """

    TRANSFER = "transfer"
    BORROW = "borrow"


class TransferStatus(StrEnum):
    PENDING = "Pending"
    IN_TRANSIT = "InTransit"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class PurchaseOrderStatus(StrEnum):
    IN_TRANSIT = "InTransit"
    RECEIVED = "Received"


class MovementReason(StrEnum):
    """
    批次流水原因（落入 batch_movements.reason）：

    - RECEIPT       采购收货生成批次（正数）
    - SALE          销售 / 耗用 FIFO 扣减（负数）
    - TRANSFER_OUT  调拨 / 借出扣减发货方（负数）
    - TRANSFER_IN   调拨到货生成批次（正数）
    - RETURN_IN     退回：恢复到来源批次（正数）
    - RETURN_OUT    退回：从收货方调入批次扣回（负数）
    - CANCEL_IN     待发调拨取消：恢复发货方批次（正数）
    - FORCE_ADJUST  经理授权的强制调整（正负均可）
    """

    RECEIPT = "RECEIPT"
    SALE = "SALE"
    TRANSFER_OUT = "TRANSFER_OUT"
    TRANSFER_IN = "TRANSFER_IN"
    RETURN_IN = "RETURN_IN"
    RETURN_OUT = "RETURN_OUT"
    CANCEL_IN = "CANCEL_IN"
    FORCE_ADJUST = "FORCE_ADJUST"


class StockLevel(StrEnum):
    OUT_OF_STOCK = "Out of Stock"
    LOW_STOCK = "Low Stock"
    IN_STOCK = "In Stock"
    HIGH_STOCK = "High Stock"


__all__ = [
    "UsageType",
    "BatchStatus",
    "SourceType",
    "TransferType",
    "TransferStatus",
    "PurchaseOrderStatus",
    "MovementReason",
    "StockLevel",
]
