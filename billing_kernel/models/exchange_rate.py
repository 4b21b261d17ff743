"""
Module: billing_kernel.models.exchange_rate
Responsibility: ORM persistence for dated currency-pair rates.
Architecture position: Kernel > Models.

Invariants enforced:
    - One ACTIVE-record rate per (base, quote, rate_date).
    - rate > 0 (CHECK constraint, plus service-level validation).
    - Once ``locked`` is set it is never cleared, and a locked or consumed
      rate is immutable (services/exchange_rate_service.py and the flush
      listeners in db/immutability.py).

Audit relevance:
    Invoices store the rate value they applied; the rate row that produced
    it must therefore remain reproducible.
"""

from datetime import date
from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, Date, Index, Numeric, String, text
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TombstoneMixin, TrackedBase
from billing_kernel.domain.statuses import ExchangeRateSource, ExchangeRateStatus


class ExchangeRate(TrackedBase, TombstoneMixin):
    """
    Exchange rate from base_currency to quote_currency on rate_date.

    Contract:
        ``amount_in_quote = amount_in_base * rate``.
    """

    __tablename__ = "exchange_rates"

    __table_args__ = (
        Index(
            "uq_exchange_rate_pair_date",
            "base_currency", "quote_currency", "rate_date",
            unique=True,
            postgresql_where=text("record_state = 'active'"),
            sqlite_where=text("record_state = 'active'"),
        ),
        Index("idx_exchange_rate_lookup", "base_currency", "quote_currency", "status", "rate_date"),
        CheckConstraint("rate > 0", name="ck_exchange_rate_positive"),
    )

    base_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    quote_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    rate_date: Mapped[date] = mapped_column(Date, nullable=False)

    source: Mapped[ExchangeRateSource] = mapped_column(
        String(20), nullable=False, default=ExchangeRateSource.MANUAL,
    )
    status: Mapped[ExchangeRateStatus] = mapped_column(
        String(20), nullable=False, default=ExchangeRateStatus.ACTIVE,
    )
    locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return (
            f"<ExchangeRate {self.base_currency}/{self.quote_currency} "
            f"{self.rate} on {self.rate_date} locked={self.locked}>"
        )
