"""
StockSelector -- read models over balances and the movement ledger.

Invariant checked by ``reconcile``: a balance's available quantity equals
the signed sum (qty_in - qty_out) of the ACTIVE ledger entries for its key,
given that every balance change was made through the ledger.
"""

from datetime import date

from sqlalchemy import func, select

from billing_kernel.domain.dtos import (
    BalanceKey,
    LedgerReconciliation,
    MovementRecord,
    StockBalanceInfo,
)
from billing_kernel.domain.statuses import MovementType, parse_enum
from billing_kernel.models.stock import StockBalance, StockTransaction
from billing_kernel.selectors.base import BaseSelector


class StockSelector(BaseSelector):

    def list_balances(
        self,
        client_id: int | None = None,
        warehouse_id: int | None = None,
        product_id: int | None = None,
    ) -> list[StockBalanceInfo]:
        stmt = select(StockBalance)
        if client_id is not None:
            stmt = stmt.where(StockBalance.client_id == client_id)
        if warehouse_id is not None:
            stmt = stmt.where(StockBalance.warehouse_id == warehouse_id)
        if product_id is not None:
            stmt = stmt.where(StockBalance.product_id == product_id)
        stmt = stmt.order_by(StockBalance.id)
        return [StockBalanceInfo.from_model(b) for b in self.session.execute(stmt).scalars()]

    def list_movements(
        self,
        client_id: int | None = None,
        warehouse_id: int | None = None,
        product_id: int | None = None,
        txn_type: MovementType | str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        include_tombstoned: bool = False,
    ) -> list[MovementRecord]:
        """Ledger entries, newest first.  ``date_to`` is inclusive."""
        stmt = select(StockTransaction) if include_tombstoned else StockTransaction.active()
        if client_id is not None:
            stmt = stmt.where(StockTransaction.client_id == client_id)
        if warehouse_id is not None:
            stmt = stmt.where(StockTransaction.warehouse_id == warehouse_id)
        if product_id is not None:
            stmt = stmt.where(StockTransaction.product_id == product_id)
        if txn_type is not None:
            stmt = stmt.where(StockTransaction.txn_type == parse_enum(MovementType, txn_type, "txn_type").value)
        if date_from is not None:
            stmt = stmt.where(StockTransaction.txn_date >= date_from)
        if date_to is not None:
            stmt = stmt.where(StockTransaction.txn_date <= date_to)
        stmt = stmt.order_by(StockTransaction.txn_date.desc(), StockTransaction.id.desc())
        return [MovementRecord.from_model(t) for t in self.session.execute(stmt).scalars()]

    def _ledger_qty(self, key: BalanceKey) -> int:
        total = self.session.execute(
            select(func.coalesce(func.sum(StockTransaction.qty_in - StockTransaction.qty_out), 0)).where(
                StockTransaction.active_filter(),
                StockTransaction.client_id == key.client_id,
                StockTransaction.product_id == key.product_id,
                StockTransaction.lot_id == key.lot_id,
                StockTransaction.warehouse_id == key.warehouse_id,
                func.coalesce(StockTransaction.location_id, 0) == key.location_key,
            )
        ).scalar()
        return int(total or 0)

    def reconcile(self, key: BalanceKey) -> LedgerReconciliation:
        balance = self.session.execute(
            select(StockBalance.available_qty).where(
                StockBalance.client_id == key.client_id,
                StockBalance.product_id == key.product_id,
                StockBalance.lot_id == key.lot_id,
                StockBalance.warehouse_id == key.warehouse_id,
                StockBalance.location_key == key.location_key,
            )
        ).scalar_one_or_none()
        return LedgerReconciliation(key=key, balance_qty=int(balance or 0), ledger_qty=self._ledger_qty(key))

    def reconcile_all(self, client_id: int | None = None) -> list[LedgerReconciliation]:
        """Reconciliation for every balance row (optionally one client's)."""
        return [self.reconcile(b.key) for b in self.list_balances(client_id=client_id)]
