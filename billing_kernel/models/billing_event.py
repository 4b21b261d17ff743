"""
Module: billing_kernel.models.billing_event
Responsibility: ORM persistence for billable usage events, either derived
    from a stock movement or entered directly.
Architecture position: Kernel > Models.

Invariants enforced:
    - Amount fields follow pricing_policy: THB_BASED events carry
      unit_price_thb/amount_thb, KRW_FIXED events carry
      unit_price_krw/amount_krw.  After invoicing, normalized_amount_krw
      holds the truncated KRW amount and fx_rate_used the rate applied;
      the source amount fields are never rewritten.
    - status INVOICED <=> invoice_id is set.
    - At most one event per stock_transaction_id (tombstoned rows included),
      which is what lets a re-shipped movement reactivate its event instead
      of creating a second one.

Audit relevance:
    Events are tombstoned, never deleted, so a reversed shipment still shows
    the billing it once produced.
"""

from datetime import date
from decimal import Decimal

from sqlalchemy import BigInteger, Date, ForeignKey, Index, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TombstoneMixin, TrackedBase
from billing_kernel.domain.statuses import BillingBasis, BillingEventStatus, PricingPolicy

# source_type values
SOURCE_OUTBOUND_SHIPPED = "outbound_shipped"
SOURCE_MANUAL = "manual"


class BillingEvent(TrackedBase, TombstoneMixin):
    """One billable usage of a service by a client."""

    __tablename__ = "billing_events"

    __table_args__ = (
        UniqueConstraint("stock_transaction_id", name="uq_billing_event_movement"),
        Index("idx_billing_event_client_date", "client_id", "event_date"),
        Index("idx_billing_event_status", "status"),
        Index("idx_billing_event_invoice", "invoice_id"),
    )

    client_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    warehouse_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    service_code: Mapped[str] = mapped_column(String(50), nullable=False)

    # Originating operational row
    reference_type: Mapped[str] = mapped_column(String(50), nullable=False)
    reference_id: Mapped[str] = mapped_column(String(64), nullable=False)
    source_type: Mapped[str] = mapped_column(String(50), nullable=False, default=SOURCE_MANUAL)
    stock_transaction_id: Mapped[int | None] = mapped_column(
        ForeignKey("stock_transactions.id"), nullable=True,
    )

    event_date: Mapped[date] = mapped_column(Date, nullable=False)
    qty: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    box_count: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    basis_applied: Mapped[BillingBasis | None] = mapped_column(String(20), nullable=True)
    price_policy_id: Mapped[int | None] = mapped_column(
        ForeignKey("price_policies.id"), nullable=True,
    )

    pricing_policy: Mapped[PricingPolicy] = mapped_column(String(20), nullable=False)
    unit_price_thb: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    amount_thb: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    unit_price_krw: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    amount_krw: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    fx_rate_used: Mapped[Decimal | None] = mapped_column(Numeric(38, 18), nullable=True)
    # KRW amount after conversion and truncation, set while INVOICED
    normalized_amount_krw: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)

    status: Mapped[BillingEventStatus] = mapped_column(
        String(20), nullable=False, default=BillingEventStatus.PENDING,
    )
    invoice_id: Mapped[int | None] = mapped_column(ForeignKey("invoices.id"), nullable=True)

    remark: Mapped[str | None] = mapped_column(String(500), nullable=True)

    @property
    def source_amount(self) -> Decimal:
        """Amount in the event's own pricing currency."""
        if self.pricing_policy == PricingPolicy.THB_BASED:
            return self.amount_thb or Decimal("0")
        return self.amount_krw or Decimal("0")

    @property
    def source_currency(self) -> str:
        return "THB" if self.pricing_policy == PricingPolicy.THB_BASED else "KRW"

    def release(self) -> None:
        """Return to PENDING with invoice linkage and FX cleared."""
        self.status = BillingEventStatus.PENDING
        self.invoice_id = None
        self.fx_rate_used = None
        self.normalized_amount_krw = None

    def __repr__(self) -> str:
        return (
            f"<BillingEvent {self.id} client={self.client_id} {self.service_code} "
            f"{self.status} [{self.record_state}]>"
        )
