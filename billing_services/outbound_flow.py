"""
OutboundItemFlow -- stock, ledger and billing effects of outbound lines.

Responsibility:
    Ship, edit and remove one outbound line item.  Each call decrements or
    restores the balance, records or reverses the ``outbound_ship``
    movement, and keeps the movement's billing event in step.

Architecture position:
    Services -- orchestration over kernel services.  The line item itself
    (order, product, lot) is owned by the caller; this flow only receives
    its context.

Invariants enforced:
    - Locks: STOCK_BALANCE -> STOCK_TRANSACTION -> BILLING_EVENT.
    - Available stock never goes negative (InsufficientStockError).
    - An edit restores the previous quantity before applying the new one,
      so the ledger entry and the balance always agree.
    - Removal restores the balance, reverses the movement and tombstones
      its billing event.
"""

from dataclasses import dataclass
from datetime import date

from billing_kernel.domain.dtos import BalanceKey, BillingEventInfo, MovementContext, MovementRecord
from billing_kernel.domain.policy import BillingPolicy
from billing_kernel.domain.statuses import MovementType
from billing_kernel.exceptions import MovementNotFoundError, ValidationError
from billing_kernel.logging_config import get_logger
from billing_kernel.services.base import BaseService, require_actor
from billing_kernel.services.billing_event_service import BillingEventService
from billing_kernel.services.stock_ledger import StockLedgerService
from billing_services._balances import apply_movement_deltas, movement_key

logger = get_logger("services.outbound_flow")

OUTBOUND_REFERENCE_TYPE = "outbound_item"


@dataclass(frozen=True, slots=True)
class OutboundLine:
    """One outbound line item as supplied by the order owner."""

    item_id: int
    client_id: int
    warehouse_id: int
    product_id: int
    lot_id: int
    qty: int
    service_code: str
    order_date: date
    actor_id: int
    location_id: int | None = None
    box_count: int | None = None
    remark: str | None = None

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
            txn_date=self.order_date,
            actor_id=self.actor_id,
            location_id=self.location_id,
            note=self.remark,
        )


@dataclass(frozen=True, slots=True)
class OutboundResult:
    movement: MovementRecord
    event: BillingEventInfo | None


class OutboundItemFlow(BaseService):

    def __init__(self, session, clock=None, policy: BillingPolicy | None = None):
        super().__init__(session, clock)
        self._ledger = StockLedgerService(session, self.clock)
        self._events = BillingEventService(session, self.clock, policy)

    def _validate(self, line: OutboundLine) -> None:
        require_actor(line.actor_id, "outbound_item")
        if line.qty <= 0:
            raise ValidationError(f"qty must be > 0, got {line.qty}", field="qty")
        if line.box_count is not None and line.box_count < 0:
            raise ValidationError(f"box_count must be >= 0, got {line.box_count}", field="box_count")

    def _existing(self, item_id: int) -> MovementRecord:
        movement = self._ledger.find_active_movement(
            MovementType.OUTBOUND_SHIP, OUTBOUND_REFERENCE_TYPE, item_id,
        )
        if movement is None:
            raise MovementNotFoundError(
                MovementType.OUTBOUND_SHIP.value, OUTBOUND_REFERENCE_TYPE, str(item_id),
            )
        return movement

    def _record(self, line: OutboundLine) -> OutboundResult:
        movement = self._ledger.record_movement(
            MovementType.OUTBOUND_SHIP,
            OUTBOUND_REFERENCE_TYPE,
            line.item_id,
            qty_in=0,
            qty_out=line.qty,
            context=line.context(),
        )
        event = self._events.upsert_event_from_movement(
            movement.id,
            client_id=line.client_id,
            service_code=line.service_code,
            event_date=line.order_date,
            qty=line.qty,
            actor_id=line.actor_id,
            box_count=line.box_count,
            warehouse_id=line.warehouse_id,
        )
        return OutboundResult(movement=movement, event=event)

    def ship(self, line: OutboundLine) -> OutboundResult:
        """Ship a line.  Shipping an already shipped line replaces it, as ``edit`` does."""
        self._validate(line)
        with self.operation():
            previous = self._ledger.find_active_movement(
                MovementType.OUTBOUND_SHIP, OUTBOUND_REFERENCE_TYPE, line.item_id,
            )
            deltas = [(line.balance_key, -line.qty)]
            if previous is not None:
                deltas.append((movement_key(previous), previous.qty_out))
            apply_movement_deltas(
                self._ledger, MovementType.OUTBOUND_SHIP, OUTBOUND_REFERENCE_TYPE, line.item_id,
                previous, deltas, line.actor_id,
            )
            result = self._record(line)

        logger.info(
            "outbound_item_shipped",
            extra={
                "item_id": line.item_id,
                "qty": line.qty,
                "movement_id": result.movement.id,
                "billed": result.event is not None,
            },
        )
        return result

    def edit(self, line: OutboundLine) -> OutboundResult:
        """Replace the shipped quantity and context of an existing line."""
        self._validate(line)
        with self.operation():
            previous = self._existing(line.item_id)
            apply_movement_deltas(
                self._ledger, MovementType.OUTBOUND_SHIP, OUTBOUND_REFERENCE_TYPE, line.item_id,
                previous,
                [(movement_key(previous), previous.qty_out), (line.balance_key, -line.qty)],
                line.actor_id,
            )
            result = self._record(line)

        logger.info(
            "outbound_item_edited",
            extra={
                "item_id": line.item_id,
                "previous_qty": previous.qty_out,
                "qty": line.qty,
                "movement_id": result.movement.id,
            },
        )
        return result

    def remove(self, item_id: int, actor_id: int) -> MovementRecord:
        actor_id = require_actor(actor_id, "remove_outbound_item")
        with self.operation():
            previous = self._existing(item_id)
            apply_movement_deltas(
                self._ledger, MovementType.OUTBOUND_SHIP, OUTBOUND_REFERENCE_TYPE, item_id,
                previous, [(movement_key(previous), previous.qty_out)], actor_id,
            )
            reversed_movement = self._ledger.reverse_movement(
                MovementType.OUTBOUND_SHIP, OUTBOUND_REFERENCE_TYPE, item_id, actor_id,
            )
            self._events.soft_delete_event_from_movement(previous.id, actor_id)

        logger.info(
            "outbound_item_removed",
            extra={"item_id": item_id, "restored_qty": previous.qty_out, "movement_id": previous.id},
        )
        return reversed_movement
