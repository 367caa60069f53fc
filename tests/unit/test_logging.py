# tests/unit/test_logging.py
from __future__ import annotations

import json
import logging

from branchstock.core.logging import _JsonFormatter


def test_json_formatter_carries_context_fields():
    rec = logging.LogRecord("branchstock.ledger", logging.WARNING, __file__, 1, "divergence %s", (3,), None)
    rec.trace_id = "TRANSFER:TR-1-2-20250101000000-abcdef"
    rec.branch_id = 1

    out = json.loads(_JsonFormatter().format(rec))
    assert out["message"] == "divergence 3"
    assert out["level"] == "WARNING"
    assert out["trace_id"].startswith("TRANSFER:")
    assert out["branch_id"] == 1
    assert "product_id" not in out
