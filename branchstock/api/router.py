from __future__ import annotations

from fastapi import APIRouter

from branchstock.api.routers import batches, deliveries, stock_ledger, transfers

api_router = APIRouter()

# ---- 批次 / 台账 ----
api_router.include_router(batches.router)
api_router.include_router(stock_ledger.router)

# ---- 门店间移动（调拨 / 借货）----
api_router.include_router(transfers.router)

# ---- 采购到货 ----
api_router.include_router(deliveries.router)
