# branchstock/models/__init__.py
"""
统一导出 ORM 模型。
"""

from importlib import import_module


def _export(module_name: str, class_name: str) -> None:
    module = import_module(module_name)
    globals()[class_name] = getattr(module, class_name)


MODEL_SPECS = [
    # -------- 协作方镜像 --------
    ("branchstock.models.branch", "Branch"),
    ("branchstock.models.branch", "BranchManagerCode"),
    ("branchstock.models.product", "Product"),
    ("branchstock.models.purchase_order", "PurchaseOrder"),
    ("branchstock.models.purchase_order", "PurchaseOrderLine"),
    # -------- 批次 / 汇总 --------
    ("branchstock.models.stock_batch", "StockBatch"),
    ("branchstock.models.batch_movement", "BatchMovement"),
    ("branchstock.models.stock_ledger_entry", "StockLedgerEntry"),
    # -------- 门店间移动 --------
    ("branchstock.models.transfer_request", "TransferRequest"),
    ("branchstock.models.transfer_request", "TransferItem"),
    # -------- 收货 --------
    ("branchstock.models.delivery_receipt", "DeliveryReceipt"),
    ("branchstock.models.delivery_receipt", "DeliveryReceiptLine"),
    # -------- 审计 --------
    ("branchstock.models.activity_record", "ActivityRecord"),
]

for _mod, _cls in MODEL_SPECS:
    _export(_mod, _cls)

__all__ = [cls for _, cls in MODEL_SPECS]
