# branchstock/services/transfer_service.py
from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from branchstock.core.config import get_settings
from branchstock.models.transfer_request import TransferRequest
from branchstock.ports import ProductCatalogPort
from branchstock.services.batch_store import BatchStore
from branchstock.services.directory import DbBranchDirectory, DbProductCatalog
from branchstock.services.stock_ledger_service import StockLedgerService
from branchstock.services.transfer_ops_borrow import BorrowDecision, BorrowLineIn
from branchstock.services.transfer_ops_borrow import approve_borrow as _approve_borrow
from branchstock.services.transfer_ops_borrow import create_borrow as _create_borrow
from branchstock.services.transfer_ops_borrow import decline_borrow as _decline_borrow
from branchstock.services.transfer_ops_create import TransferLineIn
from branchstock.services.transfer_ops_create import cancel as _cancel
from branchstock.services.transfer_ops_create import create_transfer as _create_transfer
from branchstock.services.transfer_ops_create import dispatch as _dispatch
from branchstock.services.transfer_ops_receive import receive as _receive
from branchstock.services.transfer_ops_return import TransferReturn
from branchstock.services.transfer_ops_return import return_stock as _return_stock
from branchstock.services.transfer_query import get_with_items as _get_with_items
from branchstock.services.transfer_query import list_for_branch as _list_for_branch
from branchstock.services.transfer_query import list_in_range as _list_in_range
from branchstock.services.transfer_query import pending_borrow_requests as _pending_borrow_requests


class TransferService:
    """
    门店间移动服务（调拨 transfer / 借货 borrow）：

    状态机：
        Pending → InTransit → Completed
        Pending → Cancelled
        InTransit → Cancelled 不允许（已扣减只能走退回）

    扣减时机：
        transfer  创建即扣发货方（手选批次），发货方 dispatch 后在途
        borrow    出借方 approve 时才按 FIFO 扣减，直接在途

    不提交事务；由路由层统一 commit / rollback。
    """

    def __init__(
        self,
        store: Optional[BatchStore] = None,
        ledger: Optional[StockLedgerService] = None,
        branches: Optional[DbBranchDirectory] = None,
        catalog: Optional[ProductCatalogPort] = None,
    ) -> None:
        self.store = store or BatchStore()
        self.ledger = ledger or StockLedgerService(store=self.store)
        self.branches = branches or DbBranchDirectory()
        self.catalog = catalog or DbProductCatalog()

    async def create_transfer(
        self,
        session: AsyncSession,
        *,
        from_branch_id: int,
        to_branch_id: int,
        lines: Sequence[TransferLineIn],
        created_by: Optional[str] = None,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        trace_id: Optional[str] = None,
    ) -> TransferRequest:
        return await _create_transfer(
            session,
            store=self.store,
            ledger=self.ledger,
            branches=self.branches,
            catalog=self.catalog,
            from_branch_id=from_branch_id,
            to_branch_id=to_branch_id,
            lines=lines,
            created_by=created_by,
            reason=reason,
            notes=notes,
            require_batch_selection=get_settings().TRANSFER_REQUIRE_BATCH_SELECTION,
            trace_id=trace_id,
        )

    async def dispatch(
        self,
        session: AsyncSession,
        *,
        transfer_id: int,
        acting_branch_id: int,
        performed_by: Optional[str] = None,
    ) -> TransferRequest:
        return await _dispatch(
            session,
            transfer_id=transfer_id,
            acting_branch_id=acting_branch_id,
            performed_by=performed_by,
        )

    async def create_borrow(
        self,
        session: AsyncSession,
        *,
        requesting_branch_id: int,
        lending_branch_id: int,
        lines: Sequence[BorrowLineIn],
        created_by: Optional[str] = None,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        trace_id: Optional[str] = None,
    ) -> TransferRequest:
        return await _create_borrow(
            session,
            store=self.store,
            branches=self.branches,
            catalog=self.catalog,
            requesting_branch_id=requesting_branch_id,
            lending_branch_id=lending_branch_id,
            lines=lines,
            created_by=created_by,
            reason=reason,
            notes=notes,
            trace_id=trace_id,
        )

    async def approve_borrow(
        self,
        session: AsyncSession,
        *,
        transfer_id: int,
        acting_branch_id: int,
        decisions: Optional[Sequence[BorrowDecision]] = None,
        approved_by: Optional[str] = None,
    ) -> TransferRequest:
        return await _approve_borrow(
            session,
            store=self.store,
            ledger=self.ledger,
            transfer_id=transfer_id,
            acting_branch_id=acting_branch_id,
            decisions=decisions,
            approved_by=approved_by,
        )

    async def decline_borrow(
        self,
        session: AsyncSession,
        *,
        transfer_id: int,
        acting_branch_id: int,
        declined_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> TransferRequest:
        return await _decline_borrow(
            session,
            transfer_id=transfer_id,
            acting_branch_id=acting_branch_id,
            declined_by=declined_by,
            reason=reason,
        )

    async def cancel(
        self,
        session: AsyncSession,
        *,
        transfer_id: int,
        acting_branch_id: int,
        performed_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> TransferRequest:
        return await _cancel(
            session,
            store=self.store,
            ledger=self.ledger,
            transfer_id=transfer_id,
            acting_branch_id=acting_branch_id,
            performed_by=performed_by,
            reason=reason,
        )

    async def receive(
        self,
        session: AsyncSession,
        *,
        transfer_id: int,
        acting_branch_id: int,
        received_by: Optional[str] = None,
    ) -> TransferRequest:
        return await _receive(
            session,
            store=self.store,
            ledger=self.ledger,
            catalog=self.catalog,
            transfer_id=transfer_id,
            acting_branch_id=acting_branch_id,
            received_by=received_by,
        )

    async def return_stock(
        self,
        session: AsyncSession,
        *,
        transfer_id: int,
        acting_branch_id: int,
        item_id: int,
        quantity: int,
        reason: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> TransferReturn:
        return await _return_stock(
            session,
            store=self.store,
            ledger=self.ledger,
            catalog=self.catalog,
            transfer_id=transfer_id,
            acting_branch_id=acting_branch_id,
            item_id=item_id,
            quantity=quantity,
            reason=reason,
            performed_by=performed_by,
        )

    # ---------------- 查询 ----------------
    async def get(self, session: AsyncSession, transfer_id: int) -> TransferRequest:
        return await _get_with_items(session, transfer_id)

    async def list_for_branch(
        self,
        session: AsyncSession,
        *,
        branch_id: int,
        direction: Optional[str] = None,
        status: Optional[str] = None,
        transfer_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[TransferRequest]:
        return await _list_for_branch(
            session,
            branch_id=branch_id,
            direction=direction,
            status=status,
            transfer_type=transfer_type,
            limit=limit,
        )

    async def pending_borrow_requests(self, session: AsyncSession, *, lending_branch_id: int) -> List[TransferRequest]:
        return await _pending_borrow_requests(session, lending_branch_id=lending_branch_id)

    async def list_in_range(
        self,
        session: AsyncSession,
        *,
        branch_id: int,
        time_from: datetime,
        time_to: datetime,
    ) -> List[TransferRequest]:
        return await _list_in_range(session, branch_id=branch_id, time_from=time_from, time_to=time_to)
