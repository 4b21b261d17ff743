"""
ORM-level immutability enforcement for billing records.

===============================================================================
WHY THIS EXISTS
===============================================================================

Services enforce lifecycle rules before they mutate anything.  These flush
listeners are the second line: they catch any code path (a future service,
a maintenance script, a test helper) that tries to rewrite history through
the ORM.

    session.flush()
         |
         v
    [before_update / before_delete] --> _check_*() --> BillingKernelError
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity               | When immutable                         | Error
---------------------|----------------------------------------|---------------------------
ExchangeRate         | locked, or value stored on an invoice  | ExchangeRateLockedError
StockTransaction     | once tombstoned; never hard-deleted    | ImmutabilityViolationError
BillingEvent         | never hard-deleted                     | ImmutabilityViolationError
Invoice              | financial fields once issued/paid      | ImmutabilityViolationError
InvoiceItem          | while its invoice is issued/paid       | ImmutabilityViolationError
SettlementReopenLog  | always (append-only audit trail)       | ImmutabilityViolationError

===============================================================================
DESIGN DECISIONS
===============================================================================

1. updated_at / updated_by_id may always change.  They are audit metadata.
2. "Was locked", not "is locked": setting locked False -> True is the
   locking operation itself and is allowed; anything after is not.
3. Bulk UPDATE statements bypass these listeners.  The kernel issues none
   against protected tables.

Usage:
    from billing_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # Called once at startup
"""

from decimal import Decimal

from sqlalchemy import event, func, or_, select
from sqlalchemy.orm.attributes import get_history

from billing_kernel.db.base import RecordState
from billing_kernel.domain.statuses import InvoiceStatus
from billing_kernel.exceptions import ExchangeRateLockedError, ImmutabilityViolationError
from billing_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

AUDIT_METADATA_FIELDS = frozenset({"updated_at", "updated_by_id"})

# Invoice fields that may still change after issue
INVOICE_MUTABLE_AFTER_ISSUE = frozenset({
    "status",
    "paid_at",
    "paid_by_id",
    "issued_at",
    "issued_by_id",
}) | AUDIT_METADATA_FIELDS

EXCHANGE_RATE_FROZEN_FIELDS = (
    "base_currency",
    "quote_currency",
    "rate",
    "rate_date",
    "status",
    "record_state",
)

_FINAL_INVOICE_STATUSES = (InvoiceStatus.ISSUED.value, InvoiceStatus.PAID.value)


def _previous_value(target, attr: str):
    """Value the attribute had when loaded (before pending changes)."""
    history = get_history(target, attr)
    if history.deleted:
        return history.deleted[0]
    if history.unchanged:
        return history.unchanged[0]
    return getattr(target, attr)


def _changed_fields(target, mapper) -> set[str]:
    changed = set()
    for attr in mapper.column_attrs:
        if get_history(target, attr.key).has_changes():
            changed.add(attr.key)
    return changed


def _blocked(entity_type: str, entity_id, operation: str, reason: str) -> ImmutabilityViolationError:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": entity_id,
            "operation": operation,
            "reason": reason,
        },
    )
    return ImmutabilityViolationError(entity_type, entity_id, reason)


# =============================================================================
# Exchange rates
# =============================================================================


def exchange_rate_usage_count(connection, rate_id: int, rate_value: Decimal) -> int:
    """
    Count live invoices that consumed this rate.

    An invoice consumes a rate when it references the rate row or stores
    the same rate value.
    """
    from billing_kernel.models.invoice import Invoice

    result = connection.execute(
        select(func.count(Invoice.id)).where(
            Invoice.record_state == RecordState.ACTIVE.value,
            or_(Invoice.exchange_rate_id == rate_id, Invoice.fx_rate == rate_value),
        )
    )
    return result.scalar() or 0


def _check_exchange_rate_immutability(mapper, connection, target):
    changed = _changed_fields(target, mapper) - AUDIT_METADATA_FIELDS
    frozen_changes = changed.intersection(EXCHANGE_RATE_FROZEN_FIELDS)
    if not frozen_changes:
        return

    was_locked = bool(_previous_value(target, "locked"))
    usage = exchange_rate_usage_count(connection, target.id, _previous_value(target, "rate"))
    if was_locked or usage > 0:
        logger.error(
            "immutability_violation_blocked",
            extra={
                "entity_type": "ExchangeRate",
                "entity_id": target.id,
                "operation": "UPDATE",
                "fields": sorted(frozen_changes),
                "usage_count": usage,
            },
        )
        raise ExchangeRateLockedError(target.id, locked=was_locked, usage_count=usage)


def _check_exchange_rate_delete(mapper, connection, target):
    raise _blocked("ExchangeRate", target.id, "DELETE", "Exchange rates are tombstoned, not deleted")


# =============================================================================
# Ledger and events
# =============================================================================


def _check_stock_transaction_immutability(mapper, connection, target):
    if _previous_value(target, "record_state") == RecordState.TOMBSTONED.value:
        changed = _changed_fields(target, mapper) - AUDIT_METADATA_FIELDS
        if changed:
            raise _blocked(
                "StockTransaction", target.id, "UPDATE",
                "Tombstoned ledger entries cannot be modified",
            )


def _check_stock_transaction_delete(mapper, connection, target):
    raise _blocked("StockTransaction", target.id, "DELETE", "Ledger entries are never deleted")


def _check_billing_event_delete(mapper, connection, target):
    raise _blocked("BillingEvent", target.id, "DELETE", "Billing events are tombstoned, not deleted")


# =============================================================================
# Invoices
# =============================================================================


def _check_invoice_immutability(mapper, connection, target):
    if _previous_value(target, "status") not in _FINAL_INVOICE_STATUSES:
        return
    changed = _changed_fields(target, mapper) - INVOICE_MUTABLE_AFTER_ISSUE
    if changed:
        raise _blocked(
            "Invoice", target.id, "UPDATE",
            f"Issued invoices cannot change {sorted(changed)}",
        )


def _check_invoice_delete(mapper, connection, target):
    raise _blocked("Invoice", target.id, "DELETE", "Invoices are tombstoned, not deleted")


def _invoice_status(connection, invoice_id: int) -> str | None:
    from billing_kernel.models.invoice import Invoice

    return connection.execute(
        select(Invoice.status).where(Invoice.id == invoice_id)
    ).scalar()


def _check_invoice_item_immutability(mapper, connection, target):
    if _invoice_status(connection, target.invoice_id) in _FINAL_INVOICE_STATUSES:
        raise _blocked(
            "InvoiceItem", target.id, "UPDATE",
            "Items of an issued invoice cannot be modified",
        )


def _check_invoice_item_delete(mapper, connection, target):
    raise _blocked("InvoiceItem", target.id, "DELETE", "Invoice items are tombstoned, not deleted")


# =============================================================================
# Settlement audit log
# =============================================================================


def _check_reopen_log_immutability(mapper, connection, target):
    raise _blocked("SettlementReopenLog", target.id, "UPDATE", "Settlement audit log is append-only")


def _check_reopen_log_delete(mapper, connection, target):
    raise _blocked("SettlementReopenLog", target.id, "DELETE", "Settlement audit log is append-only")


def _listeners():
    from billing_kernel.models.billing_event import BillingEvent
    from billing_kernel.models.exchange_rate import ExchangeRate
    from billing_kernel.models.invoice import Invoice, InvoiceItem
    from billing_kernel.models.settlement import SettlementReopenLog
    from billing_kernel.models.stock import StockTransaction

    return (
        (ExchangeRate, "before_update", _check_exchange_rate_immutability),
        (ExchangeRate, "before_delete", _check_exchange_rate_delete),
        (StockTransaction, "before_update", _check_stock_transaction_immutability),
        (StockTransaction, "before_delete", _check_stock_transaction_delete),
        (BillingEvent, "before_delete", _check_billing_event_delete),
        (Invoice, "before_update", _check_invoice_immutability),
        (Invoice, "before_delete", _check_invoice_delete),
        (InvoiceItem, "before_update", _check_invoice_item_immutability),
        (InvoiceItem, "before_delete", _check_invoice_item_delete),
        (SettlementReopenLog, "before_update", _check_reopen_log_immutability),
        (SettlementReopenLog, "before_delete", _check_reopen_log_delete),
    )


def register_immutability_listeners() -> None:
    """
    Register all immutability enforcement event listeners.

    Call once after the models are importable and before any flush.
    Idempotent.
    """
    for target, name, fn in _listeners():
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)


def unregister_immutability_listeners() -> None:
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that must write history directly.
    """
    for target, name, fn in _listeners():
        if event.contains(target, name, fn):
            event.remove(target, name, fn)
