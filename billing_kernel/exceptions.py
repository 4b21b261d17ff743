"""
Typed exception hierarchy for the billing kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the billing engine (API handlers, batch scripts, tests) must be
able to react to a failure without parsing its message.  Every error here:
  1. Has a TYPED class (catch by type, not message)
  2. Has a stable CODE class attribute (machine-readable, API-safe)
  3. Has a CATEGORY class attribute (how the caller should react)
  4. Carries structured DATA as attributes

Example:
    try:
        generator.generate(client_id=7, billing_month="2026-02", actor_id=1)
    except InvoiceAlreadyIssuedError as e:
        api_response(code=e.code, invoice_id=e.invoice_id)

===============================================================================
CATEGORIES
===============================================================================

    VALIDATION           malformed or missing input, rejected before any
                         transaction starts
    NOT_FOUND            referenced entity absent or tombstoned
    CONFLICT             duplicate unique key (rate date, open request)
    INVALID_STATE        operation attempted from the wrong lifecycle state
    LOCKED               mutation of a locked or consumed exchange rate
    PRECONDITION_FAILED  missing FX rate, no pending events, short stock
    RETRYABLE            deadlock / serialization failure; caller may retry
    INTERNAL             programming errors (lock order, immutability)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BillingKernelError (base)
    |
    +-- ValidationError
    |   +-- MissingActorError
    |   +-- InvalidValueError
    |   +-- InvalidBillingMonthError
    |   +-- InvalidExchangeRateError
    |   +-- InvalidQtySplitError
    |   +-- PricingPolicyMismatchError
    |
    +-- NotFoundError
    |   +-- InvoiceNotFoundError
    |   +-- ExchangeRateNotFoundError
    |   +-- EventsNotFoundError
    |   +-- BatchNotFoundError
    |   +-- RequestNotFoundError
    |   +-- ServiceNotFoundError
    |   +-- MovementNotFoundError
    |
    +-- ConflictError
    |   +-- DuplicateRateDateError
    |   +-- DuplicateServiceCodeError
    |   +-- RequestExistsError
    |
    +-- InvalidStateError
    |   +-- InvoiceAlreadyIssuedError
    |   +-- InvalidStatusError
    |   +-- AlreadyClosedError
    |   +-- BatchClosedError
    |   +-- EventsLockedError
    |
    +-- LockedError
    |   +-- ExchangeRateLockedError
    |
    +-- PreconditionFailedError
    |   +-- FxNotFoundError
    |   +-- NoPendingEventsError
    |   +-- InsufficientStockError
    |
    +-- RetryableError
    |   +-- TransactionConflictError
    |
    +-- LockOrderViolationError
    +-- ImmutabilityViolationError

===============================================================================
DESIGN DECISIONS
===============================================================================

1. The category lives on the class so a facade can map any kernel error to
   a structured failure without an isinstance ladder.
2. LockOrderViolationError and ImmutabilityViolationError signal bugs in the
   caller, not user mistakes; they are INTERNAL and never retried.

===============================================================================
"""

from enum import Enum


class ErrorCategory(str, Enum):
    """Caller-facing error classes."""

    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INVALID_STATE = "INVALID_STATE"
    LOCKED = "LOCKED"
    PRECONDITION_FAILED = "PRECONDITION_FAILED"
    RETRYABLE = "RETRYABLE"
    INTERNAL = "INTERNAL"


class BillingKernelError(Exception):
    """
    Base exception for all billing kernel errors.

    All subclasses carry a `code` and a `category` class attribute.
    """

    code: str = "BILLING_KERNEL_ERROR"
    category: ErrorCategory = ErrorCategory.INTERNAL

    @property
    def retryable(self) -> bool:
        return self.category == ErrorCategory.RETRYABLE


# Validation errors


class ValidationError(BillingKernelError):
    """Malformed or missing input."""

    code: str = "VALIDATION"
    category = ErrorCategory.VALIDATION

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class MissingActorError(ValidationError):
    """A mutating operation was called without an acting user."""

    code: str = "MISSING_ACTOR"

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"actor_id is required for {operation}", field="actor_id")


class InvalidValueError(ValidationError):
    """A field value cannot be read as its expected type or member."""

    code: str = "VALIDATION"

    def __init__(self, field: str, value: object, expected: str):
        self.value = value
        super().__init__(f"{field} must be {expected}, got {value!r}", field=field)


class InvalidBillingMonthError(ValidationError):
    """Billing month is not a valid YYYY-MM string."""

    code: str = "INVALID_BILLING_MONTH"

    def __init__(self, value: str):
        self.value = value
        super().__init__(f"Invalid billing month: {value!r} (expected YYYY-MM)", field="billing_month")


class InvalidExchangeRateError(ValidationError):
    """Exchange rate value is zero, negative, or malformed."""

    code: str = "INVALID_EXCHANGE_RATE"

    def __init__(self, rate: str, reason: str):
        self.rate = rate
        self.reason = reason
        super().__init__(f"Invalid exchange rate {rate}: {reason}", field="rate")


class InvalidQtySplitError(ValidationError):
    """Restocked plus disposed quantity exceeds the received quantity."""

    code: str = "INVALID_QTY_SPLIT"

    def __init__(self, qty_received: int, qty_restocked: int, qty_disposed: int):
        self.qty_received = qty_received
        self.qty_restocked = qty_restocked
        self.qty_disposed = qty_disposed
        super().__init__(
            f"qty_restocked ({qty_restocked}) + qty_disposed ({qty_disposed}) "
            f"must be <= qty_received ({qty_received})"
        )


class PricingPolicyMismatchError(ValidationError):
    """Amount fields do not match the event's pricing policy."""

    code: str = "PRICING_POLICY_MISMATCH"

    def __init__(self, pricing_policy: str, reason: str):
        self.pricing_policy = pricing_policy
        self.reason = reason
        super().__init__(f"{pricing_policy}: {reason}", field="pricing_policy")


# Not-found errors


class NotFoundError(BillingKernelError):
    """Referenced entity is absent or tombstoned."""

    code: str = "NOT_FOUND"
    category = ErrorCategory.NOT_FOUND


class InvoiceNotFoundError(NotFoundError):
    """Invoice id does not exist or is tombstoned."""

    code: str = "NOT_FOUND"

    def __init__(self, invoice_id: int):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice not found: {invoice_id}")


class ExchangeRateNotFoundError(NotFoundError):
    """Exchange rate id does not exist or is tombstoned."""

    code: str = "NOT_FOUND"

    def __init__(self, rate_id: int):
        self.rate_id = rate_id
        super().__init__(f"Exchange rate not found: {rate_id}")


class EventsNotFoundError(NotFoundError):
    """None of the requested billing events exist."""

    code: str = "EVENTS_NOT_FOUND"

    def __init__(self, event_ids: list[int]):
        self.event_ids = list(event_ids)
        super().__init__(f"Billing events not found: {self.event_ids}")


class BatchNotFoundError(NotFoundError):
    """Settlement batch does not exist."""

    code: str = "BATCH_NOT_FOUND"

    def __init__(self, batch_id: int):
        self.batch_id = batch_id
        super().__init__(f"Settlement batch not found: {batch_id}")


class RequestNotFoundError(NotFoundError):
    """Reopen request does not exist."""

    code: str = "REQUEST_NOT_FOUND"

    def __init__(self, request_id: int):
        self.request_id = request_id
        super().__init__(f"Reopen request not found: {request_id}")


class ServiceNotFoundError(NotFoundError):
    """Service code is not in the catalog."""

    code: str = "SERVICE_NOT_FOUND"

    def __init__(self, service_code: str):
        self.service_code = service_code
        super().__init__(f"Service not found: {service_code}")


class MovementNotFoundError(NotFoundError):
    """No active ledger entry for the given natural key."""

    code: str = "MOVEMENT_NOT_FOUND"

    def __init__(self, txn_type: str, reference_type: str, reference_id: str):
        self.txn_type = txn_type
        self.reference_type = reference_type
        self.reference_id = reference_id
        super().__init__(
            f"No active movement for ({txn_type}, {reference_type}, {reference_id})"
        )


# Conflict errors


class ConflictError(BillingKernelError):
    """Duplicate unique key."""

    code: str = "CONFLICT"
    category = ErrorCategory.CONFLICT


class DuplicateRateDateError(ConflictError):
    """An active rate already exists for the pair on that date."""

    code: str = "CONFLICT"

    def __init__(self, base_currency: str, quote_currency: str, rate_date: str):
        self.base_currency = base_currency
        self.quote_currency = quote_currency
        self.rate_date = rate_date
        super().__init__(
            f"Exchange rate for {base_currency}/{quote_currency} on {rate_date} already exists"
        )


class DuplicateServiceCodeError(ConflictError):
    """Service code already registered."""

    code: str = "CONFLICT"

    def __init__(self, service_code: str):
        self.service_code = service_code
        super().__init__(f"Service code already exists: {service_code}")


class RequestExistsError(ConflictError):
    """A reopen request is already outstanding for the batch."""

    code: str = "REQUEST_EXISTS"

    def __init__(self, batch_id: int, request_id: int):
        self.batch_id = batch_id
        self.request_id = request_id
        super().__init__(
            f"Reopen request {request_id} is already pending for batch {batch_id}"
        )


# Invalid-state errors


class InvalidStateError(BillingKernelError):
    """Operation attempted from the wrong lifecycle state."""

    code: str = "INVALID_STATE"
    category = ErrorCategory.INVALID_STATE


class InvoiceAlreadyIssuedError(InvalidStateError):
    """
    The (client, month) invoice is no longer a draft.

    Regeneration is impossible; use the duplicate action instead.
    """

    code: str = "INVOICE_ALREADY_ISSUED"

    def __init__(self, invoice_id: int, status: str):
        self.invoice_id = invoice_id
        self.status = status
        super().__init__(
            f"Invoice {invoice_id} is {status}; use duplicate to create a new draft"
        )


class InvalidStatusError(InvalidStateError):
    """Entity is not in the state the transition requires."""

    code: str = "INVALID_STATUS"

    def __init__(self, entity_type: str, entity_id: int, status: str, expected: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.status = status
        self.expected = expected
        super().__init__(
            f"{entity_type} {entity_id} is {status}; expected {expected}"
        )


class AlreadyClosedError(InvalidStateError):
    """Settlement batch is already closed."""

    code: str = "ALREADY_CLOSED"

    def __init__(self, batch_id: int):
        self.batch_id = batch_id
        super().__init__(f"Settlement batch {batch_id} is already closed")


class BatchClosedError(InvalidStateError):
    """A closed batch cannot be regenerated until it is reopened."""

    code: str = "BATCH_CLOSED"

    def __init__(self, batch_id: int):
        self.batch_id = batch_id
        super().__init__(f"Settlement batch {batch_id} is closed; request a reopen first")


class EventsLockedError(InvalidStateError):
    """Some events belong to an issued or paid invoice."""

    code: str = "EVENTS_LOCKED"

    def __init__(self, event_ids: list[int]):
        self.event_ids = list(event_ids)
        super().__init__(
            f"Billing events {self.event_ids} belong to an issued or paid invoice"
        )


# Locked errors


class LockedError(BillingKernelError):
    """Mutation attempted on a locked record."""

    code: str = "LOCKED"
    category = ErrorCategory.LOCKED


class ExchangeRateLockedError(LockedError):
    """Exchange rate is locked or consumed by an invoice."""

    code: str = "EXCHANGE_RATE_LOCKED"

    def __init__(self, rate_id: int, locked: bool, usage_count: int):
        self.rate_id = rate_id
        self.locked = locked
        self.usage_count = usage_count
        super().__init__(
            f"Exchange rate {rate_id} cannot be changed "
            f"(locked={locked}, used by {usage_count} invoice(s))"
        )


# Precondition errors


class PreconditionFailedError(BillingKernelError):
    """A prerequisite for the operation is missing."""

    code: str = "PRECONDITION_FAILED"
    category = ErrorCategory.PRECONDITION_FAILED


class FxNotFoundError(PreconditionFailedError):
    """No active exchange rate on or before the date."""

    code: str = "FX_NOT_FOUND"

    def __init__(self, base_currency: str, quote_currency: str, as_of: str):
        self.base_currency = base_currency
        self.quote_currency = quote_currency
        self.as_of = as_of
        super().__init__(
            f"No active {base_currency}/{quote_currency} rate on or before {as_of}"
        )


class NoPendingEventsError(PreconditionFailedError):
    """Nothing to invoice for the client and month."""

    code: str = "NO_PENDING_EVENTS"

    def __init__(self, client_id: int, billing_month: str):
        self.client_id = client_id
        self.billing_month = billing_month
        super().__init__(
            f"No pending billing events for client {client_id} in {billing_month}"
        )


class InsufficientStockError(PreconditionFailedError):
    """An outbound movement would drive available stock negative."""

    code: str = "INSUFFICIENT_STOCK"

    def __init__(self, balance_key: str, available_qty: int, requested_qty: int):
        self.balance_key = balance_key
        self.available_qty = available_qty
        self.requested_qty = requested_qty
        super().__init__(
            f"Insufficient stock at {balance_key}: "
            f"available {available_qty}, requested {requested_qty}"
        )


# Retryable errors


class RetryableError(BillingKernelError):
    """Transient storage failure; the caller may retry."""

    code: str = "RETRYABLE"
    category = ErrorCategory.RETRYABLE


class TransactionConflictError(RetryableError):
    """Deadlock, lock timeout, or serialization failure."""

    code: str = "TRANSACTION_CONFLICT"

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"{operation} aborted by the database: {detail}")


# Internal errors


class LockOrderViolationError(BillingKernelError):
    """
    A row lock was requested out of rank order.

    Acquiring a lower-ranked lock after a higher-ranked one inside the same
    lock scope can deadlock against a concurrent transaction that follows
    the canonical order.
    """

    code: str = "LOCK_ORDER_VIOLATION"

    def __init__(self, requested: str, held: str):
        self.requested = requested
        self.held = held
        super().__init__(f"Cannot lock {requested} while holding {held}")


class ImmutabilityViolationError(BillingKernelError):
    """Attempted to modify or delete an immutable record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: int | None, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
