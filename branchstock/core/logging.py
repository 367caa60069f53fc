# branchstock/core/logging.py
import json as _json
import logging
import sys

# 服务层通过 extra= 传入的上下文字段；JSON 模式下原样带出，便于按单据 / 门店检索
CONTEXT_FIELDS = ("trace_id", "branch_id", "product_id", "batch_id")


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return _json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", json: bool = False) -> None:
    """
    根 logger 只挂一个 stdout handler：
    json=False 输出文本行；json=True 输出单行 JSON（带 trace_id 等上下文字段）
    """
    root = logging.getLogger()
    root.setLevel(level.upper())
    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    if json:
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root.addHandler(handler)

    # 批次 / 台账日志走 branchstock.*；SQL 回显只在 DEBUG 打开
    logging.getLogger("branchstock").setLevel(level.upper())
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if level.upper() == "DEBUG" else logging.WARNING
    )
