"""
Balance delta application shared by the stock item flows.

Deltas are merged per key and applied in a stable key order, so two
flows touching the same pair of balance rows lock them in the same order.
A key whose result would be negative fails the whole unit with
InsufficientStockError.

Flows compute deltas from the line's previous movement, read before any
lock is held.  ``apply_movement_deltas`` re-reads that movement under its
row lock once the balances are locked; if it changed in between, the
deltas are stale and the unit fails with a retryable conflict.
"""

from collections.abc import Iterable

from billing_kernel.domain.dtos import BalanceKey, MovementRecord, StockBalanceInfo
from billing_kernel.domain.statuses import MovementType
from billing_kernel.exceptions import InsufficientStockError, TransactionConflictError
from billing_kernel.logging_config import get_logger
from billing_kernel.services.stock_ledger import StockLedgerService

logger = get_logger("services.balances")


def _sort_key(key: BalanceKey) -> tuple:
    return (key.client_id, key.warehouse_id, key.product_id, key.lot_id, key.location_key)


def movement_key(movement: MovementRecord) -> BalanceKey:
    return BalanceKey(
        client_id=movement.client_id,
        product_id=movement.product_id,
        lot_id=movement.lot_id,
        warehouse_id=movement.warehouse_id,
        location_id=movement.location_id,
    )


def apply_balance_deltas(
    ledger: StockLedgerService,
    deltas: Iterable[tuple[BalanceKey, int]],
    actor_id: int,
) -> dict[BalanceKey, StockBalanceInfo]:
    merged: dict[BalanceKey, int] = {}
    for key, delta in deltas:
        merged[key] = merged.get(key, 0) + int(delta)

    results: dict[BalanceKey, StockBalanceInfo] = {}
    for key in sorted(merged, key=_sort_key):
        delta = merged[key]
        if delta == 0:
            continue
        snapshot = ledger.adjust_balance(key, delta, actor_id)
        if delta < 0 and snapshot.available_qty < 0:
            raise InsufficientStockError(
                str(key),
                available_qty=snapshot.available_qty - delta,
                requested_qty=-delta,
            )
        results[key] = snapshot
    return results


def apply_movement_deltas(
    ledger: StockLedgerService,
    txn_type: MovementType,
    reference_type: str,
    reference_id: int,
    previous: MovementRecord | None,
    deltas: Iterable[tuple[BalanceKey, int]],
    actor_id: int,
) -> dict[BalanceKey, StockBalanceInfo]:
    """
    Apply ``deltas`` computed from ``previous``, then confirm ``previous``
    is still the line's active movement.

    Raises:
        TransactionConflictError: the movement was changed, created or
            reversed by a concurrent unit after ``previous`` was read.
    """
    results = apply_balance_deltas(ledger, deltas, actor_id)
    current = ledger.lock_active_movement(txn_type, reference_type, reference_id)
    if current != previous:
        logger.warning(
            "stock_movement_changed_concurrently",
            extra={
                "txn_type": txn_type.value,
                "reference_type": reference_type,
                "reference_id": str(reference_id),
            },
        )
        raise TransactionConflictError(
            txn_type.value,
            f"{reference_type} {reference_id} changed while its balances were being locked",
        )
    return results
