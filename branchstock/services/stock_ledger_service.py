# branchstock/services/stock_ledger_service.py
from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from branchstock.api.errors import EntityNotFound, ManagerCodeRejected, ReconciliationDivergence, ValidationError
from branchstock.core.config import get_settings
from branchstock.metrics import RECONCILE_DIVERGENCE
from branchstock.models.batch_movement import BatchMovement
from branchstock.models.delivery_receipt import DeliveryReceipt, DeliveryReceiptLine
from branchstock.models.enums import BatchStatus, StockLevel
from branchstock.models.product import Product
from branchstock.models.stock_batch import StockBatch
from branchstock.models.stock_ledger_entry import StockLedgerEntry
from branchstock.ports import ManagerCodePort
from branchstock.services.activity_writer import ActivityWriter
from branchstock.services.batch_store import BatchStore
from branchstock.services.batch_store_write import overwrite_remaining
from branchstock.services.directory import DbManagerCodes

UTC = timezone.utc
logger = logging.getLogger("branchstock.ledger")


def month_bounds(d: date) -> tuple[date, date]:
    first = d.replace(day=1)
    last = d.replace(day=calendar.monthrange(d.year, d.month)[1])
    return first, last


def current_stock_of(entry: Optional[StockLedgerEntry]) -> int:
    """
    唯一的“当前库存”取值口径：
    real_time_stock → 第四周 → 第三周 → 第二周 → 第一周 → 期初 → 0
    """
    if entry is None:
        return 0
    for v in (
        entry.real_time_stock,
        entry.week_four_stock,
        entry.week_three_stock,
        entry.week_two_stock,
        entry.week_one_stock,
        entry.beginning_stock,
    ):
        if v is not None:
            return int(v)
    return 0


def stock_status(current: int, min_stock: int, *, high_factor: Optional[float] = None) -> StockLevel:
    factor = high_factor if high_factor is not None else get_settings().HIGH_STOCK_FACTOR
    if current <= 0:
        return StockLevel.OUT_OF_STOCK
    if current <= min_stock:
        return StockLevel.LOW_STOCK
    if current > min_stock * factor:
        return StockLevel.HIGH_STOCK
    return StockLevel.IN_STOCK


@dataclass
class EndingStock:
    next_period_beginning: int
    deliveries_in_period: int
    calculated_ending: int


@dataclass
class StockSummary:
    branch_id: int
    total_products: int
    # 活跃批次 remaining × 批次单价 之和
    total_value: Decimal
    counts: Dict[str, int] = field(default_factory=dict)


class StockLedgerService:
    """
    门店库存汇总（每期间一行）：

    - reconcile           real_time_stock 以活跃批次 remaining 之和为准；不一致即纠正并留痕
    - record_weekly_count 手工盘点，只覆盖对应周字段
    - calculate_ending_stock 期末 = 下一期期初 + 本期到货
    - force_adjust        经理授权码校验后直接改批次数量，再对账

    只写自己的汇总字段；批次数量一律经由 BatchStore。
    """

    def __init__(
        self,
        store: Optional[BatchStore] = None,
        manager_codes: Optional[ManagerCodePort] = None,
    ) -> None:
        self.store = store or BatchStore()
        self.manager_codes = manager_codes or DbManagerCodes()

    # ------------------------------------------------------------------
    # 期间
    # ------------------------------------------------------------------
    async def get_entry(
        self,
        session: AsyncSession,
        *,
        branch_id: int,
        product_id: int,
        on_date: Optional[date] = None,
        for_update: bool = False,
    ) -> Optional[StockLedgerEntry]:
        d = on_date or date.today()
        stmt = select(StockLedgerEntry).where(
            StockLedgerEntry.branch_id == int(branch_id),
            StockLedgerEntry.product_id == int(product_id),
            StockLedgerEntry.period_start <= d,
            StockLedgerEntry.period_end >= d,
        )
        if for_update:
            stmt = stmt.with_for_update()
        stmt = stmt.order_by(StockLedgerEntry.period_start.desc()).execution_options(populate_existing=True)
        return (await session.execute(stmt)).scalars().first()

    async def open_period(
        self,
        session: AsyncSession,
        *,
        branch_id: int,
        product_id: int,
        period_start: date,
        period_end: Optional[date] = None,
        min_stock: Optional[int] = None,
        beginning_stock: Optional[int] = None,
    ) -> StockLedgerEntry:
        """开新期间：关闭此前未关闭的期间；期初默认取当前活跃批次之和"""
        end = period_end or month_bounds(period_start)[1]
        if end < period_start:
            raise ValidationError(
                f"期间结束日早于开始日：{period_start}..{end}",
                details=[{"type": "validation", "path": "period_end", "reason": "before_period_start"}],
            )

        existing = (
            await session.execute(
                select(StockLedgerEntry).where(
                    StockLedgerEntry.branch_id == int(branch_id),
                    StockLedgerEntry.product_id == int(product_id),
                    StockLedgerEntry.period_start == period_start,
                )
            )
        ).scalars().first()
        if existing is not None:
            return existing

        await session.execute(
            update(StockLedgerEntry)
            .where(
                StockLedgerEntry.branch_id == int(branch_id),
                StockLedgerEntry.product_id == int(product_id),
                StockLedgerEntry.period_start < period_start,
                StockLedgerEntry.closed.is_(False),
            )
            .values(closed=True, updated_at=func.now())
            .execution_options(synchronize_session="fetch")
        )

        actual = await self.store.sum_remaining(session, branch_id=branch_id, product_id=product_id)
        if min_stock is None:
            product = await session.get(Product, int(product_id))
            min_stock = int(product.min_stock) if product is not None else 0

        entry = StockLedgerEntry(
            branch_id=int(branch_id),
            product_id=int(product_id),
            period_start=period_start,
            period_end=end,
            beginning_stock=int(beginning_stock if beginning_stock is not None else actual),
            real_time_stock=actual,
            min_stock=int(min_stock),
            closed=False,
        )
        session.add(entry)
        await session.flush()
        logger.info(
            "ledger period opened branch=%s product=%s %s..%s begin=%s",
            branch_id,
            product_id,
            period_start,
            end,
            entry.beginning_stock,
        )
        return entry

    async def close_period(
        self,
        session: AsyncSession,
        *,
        branch_id: int,
        product_id: int,
        period_start: date,
    ) -> StockLedgerEntry:
        entry = await self._require_entry(session, branch_id=branch_id, product_id=product_id, period_start=period_start)
        entry.closed = True
        await session.flush()
        return entry

    # ------------------------------------------------------------------
    # 对账
    # ------------------------------------------------------------------
    async def reconcile(
        self,
        session: AsyncSession,
        *,
        branch_id: int,
        product_id: int,
        applied_delta: Optional[int] = None,
        today: Optional[date] = None,
        performed_by: Optional[str] = None,
        trace_id: Optional[str] = None,
    ) -> int:
        """
        以批次为准重算 real_time_stock。

        applied_delta：调用方刚刚对该 (门店, 商品) 施加的数量变化。
            给出时，期望值 = 原值 + delta；不给时，期望值 = 原值。
            期望值与批次之和不一致 → 记为差异（纠正 + 活动记录 + WARNING + 计数）。
        """
        actual = await self.store.sum_remaining(session, branch_id=branch_id, product_id=product_id)
        d = today or date.today()

        entry = await self.get_entry(session, branch_id=branch_id, product_id=product_id, on_date=d, for_update=True)
        if entry is None:
            first, last = month_bounds(d)
            await self.open_period(
                session,
                branch_id=branch_id,
                product_id=product_id,
                period_start=first,
                period_end=last,
                beginning_stock=actual - int(applied_delta or 0),
            )
            return actual

        stored = entry.real_time_stock
        expected = None if stored is None else int(stored) + int(applied_delta or 0)

        if expected is not None and expected != actual:
            await self._record_divergence(
                session,
                entry=entry,
                expected=expected,
                actual=actual,
                performed_by=performed_by,
                trace_id=trace_id,
            )

        if stored != actual:
            entry.real_time_stock = actual
            await session.flush()
        return actual

    async def reconcile_many(
        self,
        session: AsyncSession,
        deltas: Dict[Tuple[int, int], int],
        *,
        performed_by: Optional[str] = None,
        trace_id: Optional[str] = None,
    ) -> Dict[Tuple[int, int], int]:
        """deltas：{(branch_id, product_id): 本次操作施加的活跃库存变化}"""
        out: Dict[Tuple[int, int], int] = {}
        for (branch_id, product_id), delta in sorted(deltas.items()):
            out[(branch_id, product_id)] = await self.reconcile(
                session,
                branch_id=branch_id,
                product_id=product_id,
                applied_delta=delta,
                performed_by=performed_by,
                trace_id=trace_id,
            )
        return out

    async def _record_divergence(
        self,
        session: AsyncSession,
        *,
        entry: StockLedgerEntry,
        expected: int,
        actual: int,
        performed_by: Optional[str],
        trace_id: Optional[str],
    ) -> ReconciliationDivergence:
        div = ReconciliationDivergence(
            branch_id=entry.branch_id, product_id=entry.product_id, expected=expected, actual=actual
        )
        logger.warning(
            "reconciliation divergence branch=%s product=%s period=%s ledger=%s batches=%s",
            entry.branch_id,
            entry.product_id,
            entry.period_start,
            div.expected,
            div.actual,
            extra={"trace_id": trace_id, "branch_id": entry.branch_id, "product_id": entry.product_id},
        )
        RECONCILE_DIVERGENCE.inc()
        await ActivityWriter.write(
            session,
            action=div.action,
            entity_type="ledger",
            entity_id=entry.id,
            before={"real_time_stock": div.expected},
            after={"real_time_stock": div.actual},
            performed_by=performed_by,
            branch_id=entry.branch_id,
            reason="ledger corrected to batch sum",
            notes=f"product_id={entry.product_id} period_start={entry.period_start.isoformat()}",
            trace_id=trace_id,
        )
        return div

    # ------------------------------------------------------------------
    # 手工盘点 / 期末
    # ------------------------------------------------------------------
    async def record_weekly_count(
        self,
        session: AsyncSession,
        *,
        branch_id: int,
        product_id: int,
        week_number: int,
        count: int,
        period_start: Optional[date] = None,
    ) -> StockLedgerEntry:
        if int(week_number) not in (1, 2, 3, 4):
            raise ValidationError(
                f"周次必须在 1..4 之间（week_number={week_number}）",
                details=[{"type": "validation", "path": "week_number", "reason": "out_of_range", "actual": str(week_number)}],
            )
        if int(count) < 0:
            raise ValidationError(
                f"盘点数量不能为负（count={count}）",
                details=[{"type": "validation", "path": "count", "reason": "negative"}],
            )

        if period_start is not None:
            entry = await self._require_entry(session, branch_id=branch_id, product_id=product_id, period_start=period_start)
        else:
            entry = await self.get_entry(session, branch_id=branch_id, product_id=product_id, for_update=True)
            if entry is None:
                first, last = month_bounds(date.today())
                entry = await self.open_period(
                    session, branch_id=branch_id, product_id=product_id, period_start=first, period_end=last
                )

        if entry.closed and int(week_number) != 4:
            raise ValidationError(
                f"期间 {entry.period_start} 已关闭，只能补录第四周盘点",
                context={"branch_id": int(branch_id), "product_id": int(product_id)},
                details=[{"type": "validation", "path": "week_number", "reason": "period_closed", "expected": "4", "actual": str(week_number)}],
            )

        setattr(entry, StockLedgerEntry.WEEK_FIELDS[int(week_number) - 1], int(count))
        await session.flush()
        return entry

    async def calculate_ending_stock(
        self,
        session: AsyncSession,
        *,
        branch_id: int,
        product_id: int,
        period_start: date,
        period_end: date,
    ) -> EndingStock:
        # 下一期间：结束日之后最早开始的期间（通常正好是 period_end + 1 天）
        next_beginning = (
            await session.execute(
                select(StockLedgerEntry.beginning_stock)
                .where(
                    StockLedgerEntry.branch_id == int(branch_id),
                    StockLedgerEntry.product_id == int(product_id),
                    StockLedgerEntry.period_start > period_end,
                )
                .order_by(StockLedgerEntry.period_start)
                .limit(1)
            )
        ).scalar_one_or_none()

        t0 = datetime.combine(period_start, time.min, tzinfo=UTC)
        t1 = datetime.combine(period_end + timedelta(days=1), time.min, tzinfo=UTC)
        deliveries = (
            await session.execute(
                select(func.coalesce(func.sum(DeliveryReceiptLine.received_quantity), 0))
                .join(DeliveryReceipt, DeliveryReceipt.id == DeliveryReceiptLine.receipt_id)
                .where(
                    DeliveryReceipt.branch_id == int(branch_id),
                    DeliveryReceiptLine.product_id == int(product_id),
                    DeliveryReceiptLine.checked.is_(True),
                    DeliveryReceipt.received_at >= t0,
                    DeliveryReceipt.received_at < t1,
                )
            )
        ).scalar_one()

        nb = int(next_beginning or 0)
        dv = int(deliveries or 0)
        return EndingStock(next_period_beginning=nb, deliveries_in_period=dv, calculated_ending=nb + dv)

    # ------------------------------------------------------------------
    # 读
    # ------------------------------------------------------------------
    async def current_stock(self, session: AsyncSession, *, branch_id: int, product_id: int) -> int:
        entry = await self.get_entry(session, branch_id=branch_id, product_id=product_id)
        return current_stock_of(entry)

    async def stock_level(self, session: AsyncSession, *, branch_id: int, product_id: int) -> StockLevel:
        entry = await self.get_entry(session, branch_id=branch_id, product_id=product_id)
        if entry is not None:
            min_stock = int(entry.min_stock)
        else:
            product = await session.get(Product, int(product_id))
            min_stock = int(product.min_stock) if product is not None else 0
        return stock_status(current_stock_of(entry), min_stock)

    async def stock_summary(
        self,
        session: AsyncSession,
        *,
        branch_id: int,
        on_date: Optional[date] = None,
    ) -> StockSummary:
        """
        门店库存概览：商品数、库存金额、各库存等级的商品数。

        商品范围 = 本期有台账的商品 ∪ 门店有过批次的商品；等级按 current_stock 与 min_stock 判定。
        """
        d = on_date or date.today()
        entries: Dict[int, StockLedgerEntry] = {}
        rows = await session.execute(
            select(StockLedgerEntry)
            .where(
                StockLedgerEntry.branch_id == int(branch_id),
                StockLedgerEntry.period_start <= d,
                StockLedgerEntry.period_end >= d,
            )
            .order_by(StockLedgerEntry.product_id, StockLedgerEntry.period_start)
        )
        for e in rows.scalars().all():
            entries[int(e.product_id)] = e

        batch_products = {
            int(pid)
            for pid in (
                await session.execute(
                    select(StockBatch.product_id).where(StockBatch.branch_id == int(branch_id)).distinct()
                )
            ).scalars()
        }
        value = (
            await session.execute(
                select(func.coalesce(func.sum(StockBatch.remaining_quantity * StockBatch.unit_cost), 0)).where(
                    StockBatch.branch_id == int(branch_id),
                    StockBatch.status == BatchStatus.ACTIVE.value,
                )
            )
        ).scalar_one()

        product_ids = sorted(set(entries) | batch_products)
        missing = [pid for pid in product_ids if pid not in entries]
        min_stock_of: Dict[int, int] = {}
        if missing:
            for p in (await session.execute(select(Product).where(Product.id.in_(missing)))).scalars():
                min_stock_of[int(p.id)] = int(p.min_stock or 0)

        counts = {level.value: 0 for level in StockLevel}
        for pid in product_ids:
            entry = entries.get(pid)
            min_stock = int(entry.min_stock) if entry is not None else min_stock_of.get(pid, 0)
            counts[stock_status(current_stock_of(entry), min_stock).value] += 1

        return StockSummary(
            branch_id=int(branch_id),
            total_products=len(product_ids),
            total_value=Decimal(str(value)).quantize(Decimal("0.01")),
            counts=counts,
        )

    async def stock_history(
        self,
        session: AsyncSession,
        *,
        branch_id: int,
        product_id: int,
        limit: int = 200,
    ) -> List[BatchMovement]:
        stmt = (
            select(BatchMovement)
            .where(BatchMovement.branch_id == int(branch_id), BatchMovement.product_id == int(product_id))
            .order_by(BatchMovement.occurred_at.desc(), BatchMovement.id.desc())
            .limit(int(limit))
        )
        return list((await session.execute(stmt)).scalars().all())

    async def period_history(self, session: AsyncSession, *, branch_id: int, product_id: int) -> List[StockLedgerEntry]:
        stmt = (
            select(StockLedgerEntry)
            .where(StockLedgerEntry.branch_id == int(branch_id), StockLedgerEntry.product_id == int(product_id))
            .order_by(StockLedgerEntry.period_start.desc())
        )
        return list((await session.execute(stmt)).scalars().all())

    # ------------------------------------------------------------------
    # 强制调整
    # ------------------------------------------------------------------
    async def force_adjust(
        self,
        session: AsyncSession,
        *,
        batch_id: int,
        new_remaining: int,
        manager_code: str,
        performed_by: Optional[str] = None,
        reason: Optional[str] = None,
        trace_id: Optional[str] = None,
    ) -> StockBatch:
        batch = await self.store.require_batch(session, batch_id)

        if not await self.manager_codes.verify_manager_code(session, batch.branch_id, manager_code):
            logger.warning("force_adjust rejected: bad manager code branch=%s batch=%s by=%s", batch.branch_id, batch_id, performed_by)
            raise ManagerCodeRejected(
                "经理授权码校验失败",
                context={"branch_id": int(batch.branch_id), "batch_id": int(batch_id)},
            )

        before = {"remaining_quantity": int(batch.remaining_quantity), "status": batch.status}
        was_active = batch.status == BatchStatus.ACTIVE.value
        await overwrite_remaining(
            session,
            batch=batch,
            new_remaining=new_remaining,
            ref=f"ADJ-{batch.id}",
            trace_id=trace_id,
        )
        batch = await self.store.require_batch(session, batch_id)

        await ActivityWriter.write(
            session,
            action="FORCE_ADJUST",
            entity_type="batch",
            entity_id=batch.id,
            before=before,
            after={"remaining_quantity": int(batch.remaining_quantity), "status": batch.status},
            performed_by=performed_by,
            branch_id=batch.branch_id,
            reason=reason,
            trace_id=trace_id,
        )

        # 只有活跃批次的变化计入 real_time_stock
        delta = (int(batch.remaining_quantity) if batch.is_active else 0) - (
            before["remaining_quantity"] if was_active else 0
        )
        await self.reconcile(
            session,
            branch_id=batch.branch_id,
            product_id=batch.product_id,
            applied_delta=delta,
            performed_by=performed_by,
            trace_id=trace_id,
        )
        return batch

    async def _require_entry(
        self,
        session: AsyncSession,
        *,
        branch_id: int,
        product_id: int,
        period_start: date,
    ) -> StockLedgerEntry:
        entry = (
            await session.execute(
                select(StockLedgerEntry)
                .where(
                    StockLedgerEntry.branch_id == int(branch_id),
                    StockLedgerEntry.product_id == int(product_id),
                    StockLedgerEntry.period_start == period_start,
                )
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalars().first()
        if entry is None:
            raise EntityNotFound(
                f"库存期间不存在：branch={branch_id} product={product_id} period_start={period_start}",
                context={"branch_id": int(branch_id), "product_id": int(product_id)},
            )
        return entry
