"""
StockLedgerService -- authoritative stock balances and the movement ledger.

Responsibility:
    Owns StockBalance and StockTransaction.  Every quantity-affecting
    operation (inbound, outbound, return restock/dispose) goes through
    ``adjust_balance`` plus ``record_movement`` / ``reverse_movement``.

Architecture position:
    Kernel > Services -- imperative shell.  Called by the outbound and
    return item flows in ``billing_services`` and by tests directly.

Invariants enforced:
    - Balance rows are locked (STOCK_BALANCE) before they change, and
      created on first use with zero quantities.
    - At most one ACTIVE ledger entry per (txn_type, reference_type,
      reference_id); ``record_movement`` is find-or-create on that key.
    - The primitive enforces no lower bound.  Callers that must not go
      negative check ``available_qty`` on the returned snapshot.

Failure modes:
    - IntegrityError on a concurrent first insert is absorbed by a savepoint
      retry; any other storage error propagates and the caller rolls back.

Audit relevance:
    Movements are logged with their natural key and quantities.  Reversal
    tombstones the entry and keeps it for audit.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from billing_kernel.db.locking import LockRank, lock_one
from billing_kernel.domain.dtos import (
    BalanceKey,
    MovementContext,
    MovementRecord,
    StockBalanceInfo,
)
from billing_kernel.domain.statuses import MovementType, parse_enum
from billing_kernel.exceptions import ValidationError
from billing_kernel.logging_config import get_logger
from billing_kernel.models.stock import StockBalance, StockTransaction
from billing_kernel.services.base import BaseService, require_actor

logger = get_logger("services.stock_ledger")


class StockLedgerService(BaseService):
    """
    Contract:
        All writes flush inside the caller's transaction.  Returned values
        are frozen snapshots.

    Non-goals:
        - Does NOT decide whether a negative balance is acceptable.
        - Does NOT create billing events (BillingEventService does).
    """

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    def _balance_stmt(self, key: BalanceKey):
        return select(StockBalance).where(
            StockBalance.client_id == key.client_id,
            StockBalance.product_id == key.product_id,
            StockBalance.lot_id == key.lot_id,
            StockBalance.warehouse_id == key.warehouse_id,
            StockBalance.location_key == key.location_key,
        )

    def _lock_balance(self, key: BalanceKey, actor_id: int) -> StockBalance:
        balance = lock_one(self.session, LockRank.STOCK_BALANCE, self._balance_stmt(key))
        if balance is not None:
            return balance

        # First use of this key.  Another transaction may insert it at the
        # same moment; the savepoint keeps the rest of our work intact.
        savepoint = self.session.begin_nested()
        try:
            balance = StockBalance(
                client_id=key.client_id,
                product_id=key.product_id,
                lot_id=key.lot_id,
                warehouse_id=key.warehouse_id,
                location_id=key.location_id,
                location_key=key.location_key,
                available_qty=0,
                reserved_qty=0,
                created_by_id=actor_id,
            )
            self.session.add(balance)
            self.session.flush()
            savepoint.commit()
            logger.debug("stock_balance_created", extra={"balance_key": str(key)})
            return balance
        except IntegrityError:
            savepoint.rollback()
            logger.debug("stock_balance_create_race_retry", extra={"balance_key": str(key)})
            return lock_one(self.session, LockRank.STOCK_BALANCE, self._balance_stmt(key))

    def adjust_balance(self, key: BalanceKey, delta_qty: int, actor_id: int) -> StockBalanceInfo:
        """
        Add ``delta_qty`` (signed) to the key's available quantity.

        Postconditions:
            The balance row exists, is locked until commit, and reflects the
            delta.  The result may be negative.
        """
        actor_id = require_actor(actor_id, "adjust_balance")
        with self.operation():
            balance = self._lock_balance(key, actor_id)
            balance.available_qty += int(delta_qty)
            balance.updated_by_id = actor_id
            self.session.flush()

        logger.info(
            "stock_balance_adjusted",
            extra={
                "balance_key": str(key),
                "delta_qty": int(delta_qty),
                "available_qty": balance.available_qty,
            },
        )
        return StockBalanceInfo.from_model(balance)

    def get_balance(self, key: BalanceKey) -> StockBalanceInfo | None:
        balance = self.session.execute(self._balance_stmt(key)).scalar_one_or_none()
        return StockBalanceInfo.from_model(balance) if balance else None

    # ------------------------------------------------------------------
    # Movements
    # ------------------------------------------------------------------

    def _movement_stmt(self, txn_type: MovementType, reference_type: str, reference_id: str):
        return (
            StockTransaction.active()
            .where(
                StockTransaction.txn_type == MovementType(txn_type).value,
                StockTransaction.reference_type == reference_type,
                StockTransaction.reference_id == str(reference_id),
            )
            .limit(1)
        )

    @staticmethod
    def _apply(entry: StockTransaction, qty_in: int, qty_out: int, context: MovementContext) -> None:
        entry.client_id = context.client_id
        entry.product_id = context.product_id
        entry.lot_id = context.lot_id
        entry.warehouse_id = context.warehouse_id
        entry.location_id = context.location_id
        entry.qty_in = int(qty_in)
        entry.qty_out = int(qty_out)
        entry.txn_date = context.txn_date
        entry.note = context.note

    def record_movement(
        self,
        txn_type: MovementType,
        reference_type: str,
        reference_id: str | int,
        qty_in: int,
        qty_out: int,
        context: MovementContext,
    ) -> MovementRecord:
        """
        Find-or-create the ACTIVE entry for the natural key.

        An existing active entry is updated in place; otherwise a new entry
        is inserted.  Returns the entry snapshot (its id links billing).
        """
        actor_id = require_actor(context.actor_id, "record_movement")
        if qty_in < 0 or qty_out < 0:
            raise ValidationError(f"qty_in/qty_out must be >= 0, got {qty_in}/{qty_out}", field="qty")
        txn_type = parse_enum(MovementType, txn_type, "txn_type")
        reference_id = str(reference_id)

        with self.operation():
            stmt = self._movement_stmt(txn_type, reference_type, reference_id)
            entry = lock_one(self.session, LockRank.STOCK_TRANSACTION, stmt)
            created = entry is None

            if entry is None:
                savepoint = self.session.begin_nested()
                try:
                    entry = StockTransaction(
                        txn_type=txn_type.value,
                        reference_type=reference_type,
                        reference_id=reference_id,
                        created_by_id=actor_id,
                    )
                    self._apply(entry, qty_in, qty_out, context)
                    self.session.add(entry)
                    self.session.flush()
                    savepoint.commit()
                except IntegrityError:
                    savepoint.rollback()
                    logger.debug(
                        "stock_movement_create_race_retry",
                        extra={"txn_type": txn_type.value, "reference_id": reference_id},
                    )
                    entry = lock_one(self.session, LockRank.STOCK_TRANSACTION, stmt)
                    created = False

            if not created:
                self._apply(entry, qty_in, qty_out, context)
                entry.updated_by_id = actor_id

            balance = self.session.execute(
                self._balance_stmt(context.balance_key)
            ).scalar_one_or_none()
            entry.balance_id = balance.id if balance else None
            self.session.flush()

        logger.info(
            "stock_movement_recorded",
            extra={
                "txn_type": txn_type.value,
                "reference_type": reference_type,
                "reference_id": reference_id,
                "qty_in": int(qty_in),
                "qty_out": int(qty_out),
                "was_created": created,
                "movement_id": entry.id,
            },
        )
        return MovementRecord.from_model(entry)

    def reverse_movement(
        self,
        txn_type: MovementType,
        reference_type: str,
        reference_id: str | int,
        actor_id: int,
    ) -> MovementRecord | None:
        """
        Tombstone the ACTIVE entry for the natural key.

        The balance is NOT touched; the caller adjusts it by the negated
        delta in the same transaction.  Returns None when no active entry
        exists (reversal is idempotent).
        """
        actor_id = require_actor(actor_id, "reverse_movement")
        txn_type = parse_enum(MovementType, txn_type, "txn_type")
        reference_id = str(reference_id)

        with self.operation():
            entry = lock_one(
                self.session,
                LockRank.STOCK_TRANSACTION,
                self._movement_stmt(txn_type, reference_type, reference_id),
            )
            if entry is None:
                logger.debug(
                    "stock_movement_reverse_noop",
                    extra={"txn_type": txn_type.value, "reference_id": reference_id},
                )
                return None
            entry.tombstone(self.clock.now(), actor_id)
            self.session.flush()

        logger.info(
            "stock_movement_reversed",
            extra={
                "txn_type": txn_type.value,
                "reference_type": reference_type,
                "reference_id": reference_id,
                "movement_id": entry.id,
            },
        )
        return MovementRecord.from_model(entry)

    def lock_active_movement(
        self, txn_type: MovementType, reference_type: str, reference_id: str | int,
    ) -> MovementRecord | None:
        """The ACTIVE entry for the natural key, locked at STOCK_TRANSACTION rank."""
        entry = lock_one(
            self.session,
            LockRank.STOCK_TRANSACTION,
            self._movement_stmt(parse_enum(MovementType, txn_type, "txn_type"), reference_type, str(reference_id)),
        )
        return MovementRecord.from_model(entry) if entry else None

    def find_active_movement(
        self, txn_type: MovementType, reference_type: str, reference_id: str | int,
    ) -> MovementRecord | None:
        """Unlocked lookup of the ACTIVE entry for the natural key."""
        entry = self.session.execute(
            self._movement_stmt(MovementType(txn_type), reference_type, str(reference_id))
        ).scalar_one_or_none()
        return MovementRecord.from_model(entry) if entry else None
