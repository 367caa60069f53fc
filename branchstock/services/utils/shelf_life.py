# branchstock/services/utils/shelf_life.py
from __future__ import annotations

import calendar
import re
from datetime import date
from typing import Optional, Union

from branchstock.api.errors import ValidationError

DEFAULT_SHELF_LIFE_MONTHS = 12

# "6" / "6 month" / "6 months" / "6months"（大小写、首尾空白不敏感）
_MONTHS_RE = re.compile(r"^(\d+)\s*(?:months?)?$", re.IGNORECASE)
# 能认出来但不支持的单位：需要修正商品档案，而不是静默按月理解
_OTHER_UNIT_RE = re.compile(r"^(\d+)\s*(days?|weeks?|years?|yrs?)$", re.IGNORECASE)


def add_months(d: date, months: int) -> date:
    """
    按“自然月”增加月份，而不是简单 30 * N 天。

    规则：
    - 2025-01-15 + 1 月 -> 2025-02-15
    - 2025-01-31 + 1 月 -> 2025-02-28（取该月最后一天）
    - 2024-08-31 + 6 月 -> 2025-02-28（跨年 + 月末截断）
    """
    if months == 0:
        return d

    total_months = d.year * 12 + (d.month - 1) + months
    year = total_months // 12
    month = total_months % 12 + 1

    # 该月最后一天
    last_day = calendar.monthrange(year, month)[1]
    day = min(d.day, last_day)

    return date(year, month, day)


def parse_shelf_life_months(
    raw: Union[str, int, None],
    *,
    default: int = DEFAULT_SHELF_LIFE_MONTHS,
) -> int:
    """
    解析商品档案里的保质期（单位固定为月）：

    - 整数 / 纯数字字符串 / "<n> month(s)" → n
    - None / 空串 / 无法识别 / n<=0 → default
    - "<n> days" / "<n> years" 等其它单位 → ValidationError（需修正商品档案）
    """
    if raw is None or isinstance(raw, bool):
        return default
    if isinstance(raw, int):
        return raw if raw > 0 else default

    s = str(raw).strip()
    if not s:
        return default

    m = _MONTHS_RE.match(s)
    if m:
        n = int(m.group(1))
        return n if n > 0 else default

    other = _OTHER_UNIT_RE.match(s)
    if other:
        raise ValidationError(
            f"保质期单位不受支持：{s!r}（仅支持按月填写，例如 '6 months'）",
            context={"shelf_life": s},
            details=[{"type": "validation", "path": "shelf_life", "reason": "unsupported_unit", "actual": s}],
        )

    return default


def compute_expiration_date(
    received_date: date,
    shelf_life: Union[str, int, None],
    *,
    explicit: Optional[date] = None,
    default_months: int = DEFAULT_SHELF_LIFE_MONTHS,
) -> date:
    """
    到期日解析：
    1) 显式给了到期日（包装上印的）→ 直接使用
    2) 否则 received_date + 保质期月数（自然月 + 月末截断）
    """
    if explicit is not None:
        return explicit
    months = parse_shelf_life_months(shelf_life, default=default_months)
    return add_months(received_date, months)
