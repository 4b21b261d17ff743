"""
Module: billing_kernel.models.settlement
Responsibility: ORM persistence for settlement batches, their lines, reopen
    requests and the append-only settlement audit log.
Architecture position: Kernel > Models.

Invariants enforced:
    - One batch per (client_id, billing_month).
    - At most one reopen request with status 'requested' per batch (partial
      unique index, backed by the batch row lock in the service).
    - SettlementReopenLog rows are never updated or deleted
      (db/immutability.py).

Audit relevance:
    Every close, reopen request, approval and rejection appends a log row
    naming the actor, action, reason and time.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TombstoneMixin, TrackedBase
from billing_kernel.domain.statuses import (
    BillingBasis,
    ReopenAction,
    ReopenRequestStatus,
    SettlementBatchStatus,
)


class SettlementBatch(TrackedBase):
    """Provisional monthly aggregation of a client's billing events."""

    __tablename__ = "settlement_batches"

    __table_args__ = (
        UniqueConstraint("client_id", "billing_month", name="uq_settlement_batch_month"),
    )

    client_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    billing_month: Mapped[str] = mapped_column(String(7), nullable=False)

    status: Mapped[SettlementBatchStatus] = mapped_column(
        String(20), nullable=False, default=SettlementBatchStatus.CALCULATING,
    )
    exchange_rate_id: Mapped[int | None] = mapped_column(
        ForeignKey("exchange_rates.id"), nullable=True,
    )
    fx_rate: Mapped[Decimal | None] = mapped_column(Numeric(38, 18), nullable=True)
    is_provisional: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    subtotal_krw: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=Decimal("0"))
    subtotal_thb: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=Decimal("0"))
    total_krw: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=Decimal("0"))

    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_by_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    lines: Mapped[list["SettlementLine"]] = relationship(
        back_populates="batch",
        order_by="SettlementLine.id",
    )

    @property
    def is_closed(self) -> bool:
        return self.status == SettlementBatchStatus.CLOSED

    def __repr__(self) -> str:
        return f"<SettlementBatch client={self.client_id} {self.billing_month} {self.status}>"


class SettlementLine(TrackedBase, TombstoneMixin):
    """One batch line per source billing event."""

    __tablename__ = "settlement_lines"

    __table_args__ = (
        Index("idx_settlement_line_batch", "batch_id"),
    )

    batch_id: Mapped[int] = mapped_column(ForeignKey("settlement_batches.id"), nullable=False)
    line_type: Mapped[str] = mapped_column(String(20), nullable=False, default="service")
    service_code: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)

    basis: Mapped[BillingBasis | None] = mapped_column(String(20), nullable=True)
    qty: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    extra_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    source_event_id: Mapped[int] = mapped_column(ForeignKey("billing_events.id"), nullable=False)

    batch: Mapped[SettlementBatch] = relationship(back_populates="lines")


class SettlementReopenRequest(TrackedBase):
    """Request to revert a closed batch to reviewed."""

    __tablename__ = "settlement_reopen_requests"

    __table_args__ = (
        Index(
            "uq_reopen_request_outstanding",
            "batch_id",
            unique=True,
            postgresql_where=text("status = 'requested'"),
            sqlite_where=text("status = 'requested'"),
        ),
    )

    batch_id: Mapped[int] = mapped_column(ForeignKey("settlement_batches.id"), nullable=False)
    status: Mapped[ReopenRequestStatus] = mapped_column(
        String(20), nullable=False, default=ReopenRequestStatus.REQUESTED,
    )
    reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    requested_by_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    approved_by_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    decision_note: Mapped[str | None] = mapped_column(String(1000), nullable=True)


class SettlementReopenLog(TrackedBase):
    """Append-only audit row for a settlement lifecycle action."""

    __tablename__ = "settlement_reopen_logs"

    __table_args__ = (
        Index("idx_reopen_log_batch", "batch_id"),
    )

    batch_id: Mapped[int] = mapped_column(ForeignKey("settlement_batches.id"), nullable=False)
    request_id: Mapped[int | None] = mapped_column(
        ForeignKey("settlement_reopen_requests.id"), nullable=True,
    )
    action: Mapped[ReopenAction] = mapped_column(String(30), nullable=False)
    actor_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    logged_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
