"""
Statuses -- closed enumerations and transition tables for every lifecycle.

Responsibility:
    One enum per entity status plus an explicit table of permitted
    transitions.  Services never compare raw status strings; they ask
    ``can_transition`` instead.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Imported by models/
    (column enums) and services/ (guarded transitions).

Invariants enforced:
    - Every member of each status enum appears as a key of its transition
      table, so a newly added status without transitions fails the
      exhaustiveness test rather than silently becoming terminal.
    - Invoice: draft -> issued -> paid.  No backward edges.
    - Settlement batch: calculating -> reviewed -> closed -> reviewed (reopen).
    - Reopen request: requested -> approved | rejected.
"""

from collections.abc import Mapping
from enum import Enum
from types import MappingProxyType
from typing import Any, TypeVar

from billing_kernel.exceptions import InvalidValueError


class BillingEventStatus(str, Enum):
    PENDING = "PENDING"
    INVOICED = "INVOICED"


class PricingPolicy(str, Enum):
    """Which amount field of a billing event is authoritative."""

    THB_BASED = "THB_BASED"
    KRW_FIXED = "KRW_FIXED"


class BillingBasis(str, Enum):
    """Unit a price policy multiplies by."""

    QTY = "QTY"
    BOX = "BOX"
    ORDER = "ORDER"
    MANUAL = "MANUAL"


class BillingUnit(str, Enum):
    """Catalog unit of a billable service."""

    ORDER = "ORDER"
    SKU = "SKU"
    BOX = "BOX"
    CBM = "CBM"
    PALLET = "PALLET"
    EVENT = "EVENT"
    MONTH = "MONTH"

    @property
    def default_basis(self) -> BillingBasis:
        if self is BillingUnit.ORDER:
            return BillingBasis.ORDER
        if self is BillingUnit.BOX:
            return BillingBasis.BOX
        if self is BillingUnit.SKU:
            return BillingBasis.QTY
        return BillingBasis.MANUAL


class PricePolicyStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class ExchangeRateStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    SUPERSEDED = "superseded"


class ExchangeRateSource(str, Enum):
    MANUAL = "manual"
    API = "api"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    ISSUED = "issued"
    PAID = "paid"


class InvoiceSource(str, Enum):
    """Which aggregation path produced an invoice."""

    BILLING_EVENTS = "billing_events"
    SETTLEMENT_BATCH = "settlement_batch"


class SettlementBatchStatus(str, Enum):
    CALCULATING = "calculating"
    REVIEWED = "reviewed"
    CLOSED = "closed"


class ReopenRequestStatus(str, Enum):
    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"


class ReopenAction(str, Enum):
    """Action recorded in the settlement audit log."""

    CLOSE = "close"
    REOPEN_REQUESTED = "reopen_requested"
    REOPEN = "reopen"
    REOPEN_REJECTED = "reopen_rejected"


class MovementType(str, Enum):
    """Ledger entry types."""

    INBOUND_RECEIVE = "inbound_receive"
    OUTBOUND_SHIP = "outbound_ship"
    RETURN_RESTOCK = "return_restock"
    RETURN_DISPOSE = "return_dispose"
    ADJUSTMENT = "adjustment"


S = TypeVar("S", bound=Enum)


def parse_enum(enum_cls: type[S], value: Any, field: str) -> S:
    """``enum_cls(value)``, raising InvalidValueError for a non-member."""
    try:
        return enum_cls(value)
    except ValueError:
        members = ", ".join(str(m.value) for m in enum_cls)
        raise InvalidValueError(field, value, f"one of {members}") from None


def _freeze(table: dict[S, frozenset[S]]) -> Mapping[S, frozenset[S]]:
    return MappingProxyType(table)


INVOICE_TRANSITIONS: Mapping[InvoiceStatus, frozenset[InvoiceStatus]] = _freeze({
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.ISSUED}),
    InvoiceStatus.ISSUED: frozenset({InvoiceStatus.PAID}),
    InvoiceStatus.PAID: frozenset(),
})

SETTLEMENT_BATCH_TRANSITIONS: Mapping[
    SettlementBatchStatus, frozenset[SettlementBatchStatus]
] = _freeze({
    # calculating -> calculating covers regeneration of an unfinished batch
    SettlementBatchStatus.CALCULATING: frozenset({
        SettlementBatchStatus.CALCULATING,
        SettlementBatchStatus.REVIEWED,
    }),
    SettlementBatchStatus.REVIEWED: frozenset({
        SettlementBatchStatus.CALCULATING,
        SettlementBatchStatus.CLOSED,
    }),
    SettlementBatchStatus.CLOSED: frozenset({SettlementBatchStatus.REVIEWED}),
})

REOPEN_REQUEST_TRANSITIONS: Mapping[
    ReopenRequestStatus, frozenset[ReopenRequestStatus]
] = _freeze({
    ReopenRequestStatus.REQUESTED: frozenset({
        ReopenRequestStatus.APPROVED,
        ReopenRequestStatus.REJECTED,
    }),
    ReopenRequestStatus.APPROVED: frozenset(),
    ReopenRequestStatus.REJECTED: frozenset(),
})

BILLING_EVENT_TRANSITIONS: Mapping[
    BillingEventStatus, frozenset[BillingEventStatus]
] = _freeze({
    BillingEventStatus.PENDING: frozenset({BillingEventStatus.INVOICED}),
    BillingEventStatus.INVOICED: frozenset({BillingEventStatus.PENDING}),
})


def can_transition(
    table: Mapping[S, frozenset[S]], current: S | str, target: S,
) -> bool:
    """True if ``table`` permits ``current -> target``."""
    current_member = type(target)(current)
    return target in table[current_member]
