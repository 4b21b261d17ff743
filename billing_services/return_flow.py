"""
ReturnItemFlow -- restock and disposal of returned goods.

Responsibility:
    Receive, edit and remove one return line.  The restocked part goes back
    into available stock through a ``return_restock`` movement.  The
    disposed part is recorded as a net-zero ``return_dispose`` movement
    (qty_in = qty_out = disposed), so it is visible in the ledger without
    changing the balance.

Invariants enforced:
    - qty_restocked + qty_disposed <= qty_received (InvalidQtySplitError).
    - Edits and removals first reverse the previous restock on its own
      balance key.  A movement whose new quantity is zero is tombstoned.
    - Locks: STOCK_BALANCE -> STOCK_TRANSACTION.
"""

from dataclasses import dataclass
from datetime import date

from billing_kernel.domain.dtos import BalanceKey, MovementContext, MovementRecord
from billing_kernel.domain.statuses import MovementType
from billing_kernel.exceptions import InvalidQtySplitError, ValidationError
from billing_kernel.logging_config import get_logger
from billing_kernel.services.base import BaseService, require_actor
from billing_kernel.services.stock_ledger import StockLedgerService
from billing_services._balances import apply_movement_deltas, movement_key

logger = get_logger("services.return_flow")

RETURN_REFERENCE_TYPE = "return_item"


@dataclass(frozen=True, slots=True)
class ReturnLine:
    """One return line item as supplied by the return order owner."""

    item_id: int
    client_id: int
    warehouse_id: int
    product_id: int
    lot_id: int
    qty_received: int
    return_date: date
    actor_id: int
    qty_restocked: int = 0
    qty_disposed: int = 0
    location_id: int | None = None
    note: str | None = None

    @property
    def balance_key(self) -> BalanceKey:
        return BalanceKey(
            client_id=self.client_id,
            product_id=self.product_id,
            lot_id=self.lot_id,
            warehouse_id=self.warehouse_id,
            location_id=self.location_id,
        )

    def context(self) -> MovementContext:
        return MovementContext(
            client_id=self.client_id,
            product_id=self.product_id,
            lot_id=self.lot_id,
            warehouse_id=self.warehouse_id,
            txn_date=self.return_date,
            actor_id=self.actor_id,
            location_id=self.location_id,
            note=self.note,
        )


@dataclass(frozen=True, slots=True)
class ReturnResult:
    restock: MovementRecord | None
    dispose: MovementRecord | None


def validate_split(line: ReturnLine) -> None:
    for name in ("qty_received", "qty_restocked", "qty_disposed"):
        value = getattr(line, name)
        if value < 0:
            raise ValidationError(f"{name} must be >= 0, got {value}", field=name)
    if line.qty_restocked + line.qty_disposed > line.qty_received:
        raise InvalidQtySplitError(line.qty_received, line.qty_restocked, line.qty_disposed)


class ReturnItemFlow(BaseService):

    def __init__(self, session, clock=None):
        super().__init__(session, clock)
        self._ledger = StockLedgerService(session, self.clock)

    def _previous_restock(self, item_id: int) -> MovementRecord | None:
        return self._ledger.find_active_movement(
            MovementType.RETURN_RESTOCK, RETURN_REFERENCE_TYPE, item_id,
        )

    def _restore_deltas(self, previous: MovementRecord | None) -> list[tuple[BalanceKey, int]]:
        if previous is None:
            return []
        return [(movement_key(previous), -previous.qty_in)]

    def _sync_movement(self, txn_type: MovementType, item_id: int, qty: int,
                       context: MovementContext, net_zero: bool) -> MovementRecord | None:
        if qty <= 0:
            self._ledger.reverse_movement(txn_type, RETURN_REFERENCE_TYPE, item_id, context.actor_id)
            return None
        return self._ledger.record_movement(
            txn_type,
            RETURN_REFERENCE_TYPE,
            item_id,
            qty_in=qty,
            qty_out=qty if net_zero else 0,
            context=context,
        )

    def _apply(self, line: ReturnLine) -> ReturnResult:
        context = line.context()
        restock = self._sync_movement(
            MovementType.RETURN_RESTOCK, line.item_id, line.qty_restocked, context, net_zero=False,
        )
        dispose = self._sync_movement(
            MovementType.RETURN_DISPOSE, line.item_id, line.qty_disposed, context, net_zero=True,
        )
        return ReturnResult(restock=restock, dispose=dispose)

    def receive(self, line: ReturnLine) -> ReturnResult:
        """First receipt of a line.  Re-receiving an existing line behaves as an edit."""
        return self.edit(line)

    def edit(self, line: ReturnLine) -> ReturnResult:
        require_actor(line.actor_id, "return_item")
        validate_split(line)
        with self.operation():
            previous = self._previous_restock(line.item_id)
            apply_movement_deltas(
                self._ledger, MovementType.RETURN_RESTOCK, RETURN_REFERENCE_TYPE, line.item_id,
                previous,
                self._restore_deltas(previous) + [(line.balance_key, line.qty_restocked)],
                line.actor_id,
            )
            result = self._apply(line)

        logger.info(
            "return_item_applied",
            extra={
                "item_id": line.item_id,
                "previous_restocked": previous.qty_in if previous else 0,
                "qty_restocked": line.qty_restocked,
                "qty_disposed": line.qty_disposed,
            },
        )
        return result

    def remove(self, item_id: int, actor_id: int) -> None:
        actor_id = require_actor(actor_id, "remove_return_item")
        with self.operation():
            previous = self._previous_restock(item_id)
            apply_movement_deltas(
                self._ledger, MovementType.RETURN_RESTOCK, RETURN_REFERENCE_TYPE, item_id,
                previous, self._restore_deltas(previous), actor_id,
            )
            for txn_type in (MovementType.RETURN_RESTOCK, MovementType.RETURN_DISPOSE):
                self._ledger.reverse_movement(txn_type, RETURN_REFERENCE_TYPE, item_id, actor_id)

        logger.info(
            "return_item_removed",
            extra={"item_id": item_id, "restored_qty": -(previous.qty_in if previous else 0)},
        )
