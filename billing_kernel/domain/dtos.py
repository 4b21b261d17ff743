"""
DTOs -- Immutable snapshots returned by services and selectors.

Responsibility:
    Frozen dataclasses for everything that crosses the kernel boundary:
    balance keys and movement contexts (input), and snapshots of balances,
    movements, price quotes, billing events, rates, invoices and settlement
    batches (output).

Architecture position:
    Kernel > Domain -- pure data, zero I/O.  ``from_model()`` class methods
    are boundary converters invoked only from services and selectors.

Invariants enforced:
    - Callers never receive live ORM instances, so nothing outside a
      service can mutate a row behind the service's back.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from billing_kernel.domain.statuses import (
    BillingBasis,
    BillingEventStatus,
    ExchangeRateSource,
    ExchangeRateStatus,
    InvoiceSource,
    InvoiceStatus,
    MovementType,
    PricingPolicy,
    ReopenAction,
    ReopenRequestStatus,
    SettlementBatchStatus,
)

if TYPE_CHECKING:
    from billing_kernel.models.billing_event import BillingEvent
    from billing_kernel.models.exchange_rate import ExchangeRate
    from billing_kernel.models.invoice import Invoice, InvoiceItem
    from billing_kernel.models.pricing import PricePolicy, ServiceCatalog
    from billing_kernel.models.settlement import (
        SettlementBatch,
        SettlementLine,
        SettlementReopenLog,
        SettlementReopenRequest,
    )
    from billing_kernel.models.stock import StockBalance, StockTransaction


# ---------------------------------------------------------------------------
# Stock
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BalanceKey:
    """Identity of one stock balance row."""

    client_id: int
    product_id: int
    lot_id: int
    warehouse_id: int
    location_id: int | None = None

    @property
    def location_key(self) -> int:
        return self.location_id or 0

    def __str__(self) -> str:
        return (
            f"client={self.client_id}/product={self.product_id}/lot={self.lot_id}"
            f"/warehouse={self.warehouse_id}/location={self.location_id}"
        )


@dataclass(frozen=True, slots=True)
class MovementContext:
    """Operational context supplied by the order/line-item owner."""

    client_id: int
    product_id: int
    lot_id: int
    warehouse_id: int
    txn_date: date
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


@dataclass(frozen=True, slots=True)
class StockBalanceInfo:
    id: int
    key: BalanceKey
    available_qty: int
    reserved_qty: int

    @classmethod
    def from_model(cls, model: StockBalance) -> StockBalanceInfo:
        return cls(
            id=model.id,
            key=BalanceKey(
                client_id=model.client_id,
                product_id=model.product_id,
                lot_id=model.lot_id,
                warehouse_id=model.warehouse_id,
                location_id=model.location_id,
            ),
            available_qty=model.available_qty,
            reserved_qty=model.reserved_qty,
        )


@dataclass(frozen=True, slots=True)
class MovementRecord:
    """Snapshot of one ledger entry."""

    id: int
    txn_type: MovementType
    reference_type: str
    reference_id: str
    client_id: int
    product_id: int
    lot_id: int
    warehouse_id: int
    location_id: int | None
    qty_in: int
    qty_out: int
    txn_date: date
    is_active: bool

    @property
    def signed_qty(self) -> int:
        return self.qty_in - self.qty_out

    @classmethod
    def from_model(cls, model: StockTransaction) -> MovementRecord:
        return cls(
            id=model.id,
            txn_type=MovementType(model.txn_type),
            reference_type=model.reference_type,
            reference_id=model.reference_id,
            client_id=model.client_id,
            product_id=model.product_id,
            lot_id=model.lot_id,
            warehouse_id=model.warehouse_id,
            location_id=model.location_id,
            qty_in=model.qty_in,
            qty_out=model.qty_out,
            txn_date=model.txn_date,
            is_active=model.is_active,
        )


@dataclass(frozen=True, slots=True)
class LedgerReconciliation:
    """Stored balance versus the signed sum of active ledger entries."""

    key: BalanceKey
    balance_qty: int
    ledger_qty: int

    @property
    def is_consistent(self) -> bool:
        return self.balance_qty == self.ledger_qty


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ServiceInfo:
    id: int
    service_code: str
    name: str
    billing_unit: str
    default_currency: str
    is_active: bool

    @classmethod
    def from_model(cls, model: ServiceCatalog) -> ServiceInfo:
        return cls(
            id=model.id,
            service_code=model.service_code,
            name=model.name,
            billing_unit=model.billing_unit,
            default_currency=model.default_currency,
            is_active=model.is_active,
        )


@dataclass(frozen=True, slots=True)
class PriceQuote:
    """The price policy in effect for a client, service and date."""

    policy_id: int
    client_id: int
    service_id: int
    service_code: str
    service_name: str
    billing_basis: BillingBasis
    unit_price: Decimal
    currency: str
    effective_from: date
    effective_to: date | None

    @classmethod
    def from_model(cls, model: PricePolicy) -> PriceQuote:
        return cls(
            policy_id=model.id,
            client_id=model.client_id,
            service_id=model.service_id,
            service_code=model.service.service_code,
            service_name=model.service.name,
            billing_basis=BillingBasis(model.billing_basis),
            unit_price=model.unit_price,
            currency=model.currency,
            effective_from=model.effective_from,
            effective_to=model.effective_to,
        )


# ---------------------------------------------------------------------------
# Billing events
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BillingEventInfo:
    id: int
    client_id: int
    warehouse_id: int | None
    service_code: str
    reference_type: str
    reference_id: str
    source_type: str
    stock_transaction_id: int | None
    event_date: date
    qty: Decimal
    box_count: int | None
    basis_applied: BillingBasis | None
    pricing_policy: PricingPolicy
    unit_price_thb: Decimal | None
    amount_thb: Decimal | None
    unit_price_krw: Decimal | None
    amount_krw: Decimal | None
    fx_rate_used: Decimal | None
    normalized_amount_krw: Decimal | None
    status: BillingEventStatus
    invoice_id: int | None
    is_active: bool

    @classmethod
    def from_model(cls, model: BillingEvent) -> BillingEventInfo:
        return cls(
            id=model.id,
            client_id=model.client_id,
            warehouse_id=model.warehouse_id,
            service_code=model.service_code,
            reference_type=model.reference_type,
            reference_id=model.reference_id,
            source_type=model.source_type,
            stock_transaction_id=model.stock_transaction_id,
            event_date=model.event_date,
            qty=model.qty,
            box_count=model.box_count,
            basis_applied=BillingBasis(model.basis_applied) if model.basis_applied else None,
            pricing_policy=PricingPolicy(model.pricing_policy),
            unit_price_thb=model.unit_price_thb,
            amount_thb=model.amount_thb,
            unit_price_krw=model.unit_price_krw,
            amount_krw=model.amount_krw,
            fx_rate_used=model.fx_rate_used,
            normalized_amount_krw=model.normalized_amount_krw,
            status=BillingEventStatus(model.status),
            invoice_id=model.invoice_id,
            is_active=model.is_active,
        )


EXPORT_COLUMNS: tuple[str, ...] = (
    "event_date",
    "client",
    "service_code",
    "qty",
    "amount_thb",
    "fx_rate_thbkrw",
    "amount_krw",
    "reference_type",
    "reference_id",
    "status",
)


@dataclass(frozen=True, slots=True)
class BillingEventExportRow:
    """One row of the billing-event export, in EXPORT_COLUMNS order."""

    event_date: date
    client: str
    service_code: str
    qty: Decimal
    amount_thb: Decimal | None
    fx_rate_thbkrw: Decimal | None
    amount_krw: Decimal | None
    reference_type: str
    reference_id: str
    status: BillingEventStatus

    def as_tuple(self) -> tuple:
        return tuple(getattr(self, column) for column in EXPORT_COLUMNS)


# ---------------------------------------------------------------------------
# Exchange rates
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ExchangeRateInfo:
    id: int
    base_currency: str
    quote_currency: str
    rate: Decimal
    rate_date: date
    source: ExchangeRateSource
    status: ExchangeRateStatus
    locked: bool
    is_active: bool

    @classmethod
    def from_model(cls, model: ExchangeRate) -> ExchangeRateInfo:
        return cls(
            id=model.id,
            base_currency=model.base_currency,
            quote_currency=model.quote_currency,
            rate=model.rate,
            rate_date=model.rate_date,
            source=ExchangeRateSource(model.source),
            status=ExchangeRateStatus(model.status),
            locked=bool(model.locked),
            is_active=model.is_active,
        )


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class InvoiceItemInfo:
    id: int
    service_code: str
    description: str | None
    qty: Decimal
    unit_price_krw: Decimal
    amount_krw: Decimal
    is_vat: bool
    source_currency: str | None
    source_amount: Decimal | None

    @classmethod
    def from_model(cls, model: InvoiceItem) -> InvoiceItemInfo:
        return cls(
            id=model.id,
            service_code=model.service_code,
            description=model.description,
            qty=model.qty,
            unit_price_krw=model.unit_price_krw,
            amount_krw=model.amount_krw,
            is_vat=bool(model.is_vat),
            source_currency=model.source_currency,
            source_amount=model.source_amount,
        )


@dataclass(frozen=True, slots=True)
class InvoiceInfo:
    id: int
    client_id: int
    invoice_no: str
    invoice_month: str
    source: InvoiceSource
    status: InvoiceStatus
    invoice_date: date
    due_date: date | None
    currency: str
    exchange_rate_id: int | None
    fx_rate: Decimal | None
    subtotal_krw: Decimal
    vat_krw: Decimal
    total_krw: Decimal
    settlement_batch_id: int | None
    duplicated_from_id: int | None
    items: tuple[InvoiceItemInfo, ...] = ()

    @classmethod
    def from_model(cls, model: Invoice, items: list[InvoiceItem] | None = None) -> InvoiceInfo:
        return cls(
            id=model.id,
            client_id=model.client_id,
            invoice_no=model.invoice_no,
            invoice_month=model.invoice_month,
            source=InvoiceSource(model.source),
            status=InvoiceStatus(model.status),
            invoice_date=model.invoice_date,
            due_date=model.due_date,
            currency=model.currency,
            exchange_rate_id=model.exchange_rate_id,
            fx_rate=model.fx_rate,
            subtotal_krw=model.subtotal_krw,
            vat_krw=model.vat_krw,
            total_krw=model.total_krw,
            settlement_batch_id=model.settlement_batch_id,
            duplicated_from_id=model.duplicated_from_id,
            items=tuple(InvoiceItemInfo.from_model(i) for i in (items or [])),
        )


@dataclass(frozen=True, slots=True)
class InvoiceGenerationResult:
    """Outcome of InvoiceGenerator.generate."""

    invoice: InvoiceInfo
    reused: bool
    event_count: int
    released_event_count: int = 0


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SettlementLineInfo:
    id: int
    service_code: str
    description: str
    basis: BillingBasis | None
    qty: Decimal
    unit_price: Decimal
    currency: str
    amount: Decimal
    total_amount: Decimal
    source_event_id: int

    @classmethod
    def from_model(cls, model: SettlementLine) -> SettlementLineInfo:
        return cls(
            id=model.id,
            service_code=model.service_code,
            description=model.description,
            basis=BillingBasis(model.basis) if model.basis else None,
            qty=model.qty,
            unit_price=model.unit_price,
            currency=model.currency,
            amount=model.amount,
            total_amount=model.total_amount,
            source_event_id=model.source_event_id,
        )


@dataclass(frozen=True, slots=True)
class SettlementBatchInfo:
    id: int
    client_id: int
    billing_month: str
    status: SettlementBatchStatus
    exchange_rate_id: int | None
    fx_rate: Decimal | None
    is_provisional: bool
    subtotal_krw: Decimal
    subtotal_thb: Decimal
    total_krw: Decimal
    closed_at: datetime | None
    closed_by_id: int | None
    lines: tuple[SettlementLineInfo, ...] = ()

    @classmethod
    def from_model(
        cls, model: SettlementBatch, lines: list[SettlementLine] | None = None,
    ) -> SettlementBatchInfo:
        return cls(
            id=model.id,
            client_id=model.client_id,
            billing_month=model.billing_month,
            status=SettlementBatchStatus(model.status),
            exchange_rate_id=model.exchange_rate_id,
            fx_rate=model.fx_rate,
            is_provisional=bool(model.is_provisional),
            subtotal_krw=model.subtotal_krw,
            subtotal_thb=model.subtotal_thb,
            total_krw=model.total_krw,
            closed_at=model.closed_at,
            closed_by_id=model.closed_by_id,
            lines=tuple(SettlementLineInfo.from_model(line) for line in (lines or [])),
        )


@dataclass(frozen=True, slots=True)
class ReopenRequestInfo:
    id: int
    batch_id: int
    status: ReopenRequestStatus
    reason: str | None
    requested_by_id: int
    requested_at: datetime
    approved_by_id: int | None
    approved_at: datetime | None

    @classmethod
    def from_model(cls, model: SettlementReopenRequest) -> ReopenRequestInfo:
        return cls(
            id=model.id,
            batch_id=model.batch_id,
            status=ReopenRequestStatus(model.status),
            reason=model.reason,
            requested_by_id=model.requested_by_id,
            requested_at=model.requested_at,
            approved_by_id=model.approved_by_id,
            approved_at=model.approved_at,
        )


@dataclass(frozen=True, slots=True)
class ReopenLogInfo:
    id: int
    batch_id: int
    request_id: int | None
    action: ReopenAction
    actor_id: int
    reason: str | None
    logged_at: datetime

    @classmethod
    def from_model(cls, model: SettlementReopenLog) -> ReopenLogInfo:
        return cls(
            id=model.id,
            batch_id=model.batch_id,
            request_id=model.request_id,
            action=ReopenAction(model.action),
            actor_id=model.actor_id,
            reason=model.reason,
            logged_at=model.logged_at,
        )
