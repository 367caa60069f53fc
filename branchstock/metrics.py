# branchstock/metrics.py
from __future__ import annotations

import os

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    generate_latest,
    multiprocess,
)

# 业务指标（注意：需要在进程启动且 env 已设置后再 import 本模块）
BATCH_ALLOC = Counter(
    "batch_allocations_total", "Batch allocations (legs planned and applied)", ["mode"]
)
TRANSFER_TRANSITIONS = Counter(
    "transfer_transitions_total", "Transfer / borrow status transitions", ["transfer_type", "to_status"]
)
RECONCILE_DIVERGENCE = Counter(
    "stock_reconcile_divergence_total", "Ledger real_time_stock corrected by reconcile"
)
DELIVERIES = Counter("deliveries_received_total", "Purchase-order deliveries received")

router = APIRouter()


@router.get("/metrics")
def metrics() -> Response:
    """
    在单进程模式下直接导出默认 REGISTRY；
    在多进程模式下，创建临时 CollectorRegistry，并让 MultiProcessCollector 合并各分片。
    """
    if os.environ.get("PROMETHEUS_MULTIPROC_DIR"):
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        payload = generate_latest(registry)
    else:
        payload = generate_latest(REGISTRY)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
