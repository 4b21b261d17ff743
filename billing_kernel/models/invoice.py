"""
Module: billing_kernel.models.invoice
Responsibility: ORM persistence for invoices, their line items, and the
    per-(client, yyyymm) sequence counters that number them.
Architecture position: Kernel > Models.

Invariants enforced:
    - invoice_no is globally unique: ``{currency}-{client_id}-{yyyymm}-{seq:04d}``.
    - subtotal_krw, vat_krw and total_krw are exact multiples of 100.
    - status follows draft -> issued -> paid (domain/statuses.py).
    - Issued and paid invoices keep their financial fields frozen
      (db/immutability.py); only status/paid metadata may change.
    - InvoiceSequence is the sole source of invoice sequence numbers.
      MAX(seq)+1 allocation is forbidden.

Audit relevance:
    A regenerated draft is tombstoned, not deleted, and its number is never
    reused, so the numbering is gap-tolerant but never ambiguous.
"""

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import Base, TombstoneMixin, TrackedBase
from billing_kernel.domain.statuses import InvoiceSource, InvoiceStatus


class Invoice(TrackedBase, TombstoneMixin):
    """Client invoice for one billing month (or one settlement batch)."""

    __tablename__ = "invoices"

    __table_args__ = (
        UniqueConstraint("invoice_no", name="uq_invoice_no"),
        Index("idx_invoice_client_month", "client_id", "invoice_month", "source"),
        Index("idx_invoice_batch", "settlement_batch_id"),
    )

    client_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    invoice_no: Mapped[str] = mapped_column(String(40), nullable=False)
    invoice_month: Mapped[str] = mapped_column(String(7), nullable=False)

    source: Mapped[InvoiceSource] = mapped_column(
        String(20), nullable=False, default=InvoiceSource.BILLING_EVENTS,
    )
    settlement_batch_id: Mapped[int | None] = mapped_column(
        ForeignKey("settlement_batches.id"), nullable=True,
    )
    duplicated_from_id: Mapped[int | None] = mapped_column(
        ForeignKey("invoices.id"), nullable=True,
    )

    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="KRW")

    exchange_rate_id: Mapped[int | None] = mapped_column(
        ForeignKey("exchange_rates.id"), nullable=True,
    )
    fx_rate: Mapped[Decimal | None] = mapped_column(Numeric(38, 18), nullable=True)

    subtotal_krw: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=Decimal("0"))
    vat_krw: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=Decimal("0"))
    total_krw: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=Decimal("0"))

    status: Mapped[InvoiceStatus] = mapped_column(
        String(20), nullable=False, default=InvoiceStatus.DRAFT,
    )
    issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    issued_by_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_by_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Rows are tombstoned, never deleted; the ORM must not null item FKs
    # ahead of the delete guard on Invoice.
    items: Mapped[list["InvoiceItem"]] = relationship(
        back_populates="invoice",
        order_by="InvoiceItem.id",
        passive_deletes="all",
    )

    @property
    def is_draft(self) -> bool:
        return self.status == InvoiceStatus.DRAFT

    def __repr__(self) -> str:
        return f"<Invoice {self.invoice_no} {self.status} total={self.total_krw}>"


class InvoiceItem(TrackedBase, TombstoneMixin):
    """One invoice line: a service-code aggregate, a settlement line copy, or VAT."""

    __tablename__ = "invoice_items"

    __table_args__ = (
        Index("idx_invoice_item_invoice", "invoice_id"),
    )

    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id"), nullable=False)
    service_code: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str | None] = mapped_column(String(200), nullable=True)

    qty: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    unit_price_krw: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    amount_krw: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    is_vat: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Settlement-path lines keep the pre-conversion figures
    settlement_line_id: Mapped[int | None] = mapped_column(
        ForeignKey("settlement_lines.id"), nullable=True,
    )
    source_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    source_amount: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)

    invoice: Mapped[Invoice] = relationship(back_populates="items")

    def __repr__(self) -> str:
        return f"<InvoiceItem {self.service_code} qty={self.qty} amount={self.amount_krw}>"


class InvoiceSequence(Base):
    """
    Counter row for invoice numbers of one client and month.

    Row-level locking (SELECT ... FOR UPDATE) serializes allocation.
    """

    __tablename__ = "invoice_sequences"

    __table_args__ = (
        UniqueConstraint("client_id", "yyyymm", name="uq_invoice_sequence_key"),
    )

    client_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    yyyymm: Mapped[str] = mapped_column(String(6), nullable=False)
    last_seq: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
