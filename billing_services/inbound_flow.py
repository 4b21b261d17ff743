"""
InboundItemFlow -- receipt of goods into available stock.

Receiving a line adds its quantity to the balance and records an
``inbound_receive`` movement.  Re-receiving the same line replaces the
previous receipt.  Removal takes the quantity back out and fails with
InsufficientStockError when that stock has already left.
"""

from dataclasses import dataclass
from datetime import date

from billing_kernel.domain.dtos import BalanceKey, MovementContext, MovementRecord
from billing_kernel.domain.statuses import MovementType
from billing_kernel.exceptions import MovementNotFoundError, ValidationError
from billing_kernel.logging_config import get_logger
from billing_kernel.services.base import BaseService, require_actor
from billing_kernel.services.stock_ledger import StockLedgerService
from billing_services._balances import apply_movement_deltas, movement_key

logger = get_logger("services.inbound_flow")

INBOUND_REFERENCE_TYPE = "inbound_item"


@dataclass(frozen=True, slots=True)
class InboundLine:
    item_id: int
    client_id: int
    warehouse_id: int
    product_id: int
    lot_id: int
    qty: int
    received_date: date
    actor_id: int
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


class InboundItemFlow(BaseService):

    def __init__(self, session, clock=None):
        super().__init__(session, clock)
        self._ledger = StockLedgerService(session, self.clock)

    def receive(self, line: InboundLine) -> MovementRecord:
        require_actor(line.actor_id, "receive_inbound_item")
        if line.qty <= 0:
            raise ValidationError(f"qty must be > 0, got {line.qty}", field="qty")

        with self.operation():
            previous = self._ledger.find_active_movement(
                MovementType.INBOUND_RECEIVE, INBOUND_REFERENCE_TYPE, line.item_id,
            )
            deltas = [(line.balance_key, line.qty)]
            if previous is not None:
                deltas.append((movement_key(previous), -previous.qty_in))
            apply_movement_deltas(
                self._ledger, MovementType.INBOUND_RECEIVE, INBOUND_REFERENCE_TYPE, line.item_id,
                previous, deltas, line.actor_id,
            )
            movement = self._ledger.record_movement(
                MovementType.INBOUND_RECEIVE,
                INBOUND_REFERENCE_TYPE,
                line.item_id,
                qty_in=line.qty,
                qty_out=0,
                context=MovementContext(
                    client_id=line.client_id,
                    product_id=line.product_id,
                    lot_id=line.lot_id,
                    warehouse_id=line.warehouse_id,
                    txn_date=line.received_date,
                    actor_id=line.actor_id,
                    location_id=line.location_id,
                    note=line.note,
                ),
            )

        logger.info(
            "inbound_item_received",
            extra={"item_id": line.item_id, "qty": line.qty, "movement_id": movement.id},
        )
        return movement

    def remove(self, item_id: int, actor_id: int) -> MovementRecord:
        actor_id = require_actor(actor_id, "remove_inbound_item")
        with self.operation():
            previous = self._ledger.find_active_movement(
                MovementType.INBOUND_RECEIVE, INBOUND_REFERENCE_TYPE, item_id,
            )
            if previous is None:
                raise MovementNotFoundError(
                    MovementType.INBOUND_RECEIVE.value, INBOUND_REFERENCE_TYPE, str(item_id),
                )
            apply_movement_deltas(
                self._ledger, MovementType.INBOUND_RECEIVE, INBOUND_REFERENCE_TYPE, item_id,
                previous, [(movement_key(previous), -previous.qty_in)], actor_id,
            )
            movement = self._ledger.reverse_movement(
                MovementType.INBOUND_RECEIVE, INBOUND_REFERENCE_TYPE, item_id, actor_id,
            )

        logger.info("inbound_item_removed", extra={"item_id": item_id, "movement_id": previous.id})
        return movement
