"""
Module: billing_kernel.models.pricing
Responsibility: ORM persistence for the billable service catalog and the
    per-client, date-scoped price policies resolved by PriceResolver.
Architecture position: Kernel > Models.

Invariants enforced:
    - service_code is unique in the catalog.
    - A policy applies on day D when effective_from <= D and
      (effective_to is NULL or D <= effective_to).  Overlapping policies are
      allowed; the resolver picks the latest effective_from, then highest id.
"""

from datetime import date
from decimal import Decimal

from sqlalchemy import BigInteger, Boolean, Date, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TombstoneMixin, TrackedBase
from billing_kernel.domain.statuses import BillingBasis, BillingUnit, PricePolicyStatus


class ServiceCatalog(TrackedBase):
    """A billable warehouse service (pick, pack, storage, return handling...)."""

    __tablename__ = "service_catalog"

    service_code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    billing_unit: Mapped[BillingUnit] = mapped_column(String(20), nullable=False)
    default_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="THB")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<ServiceCatalog {self.service_code} ({self.billing_unit})>"


class PricePolicy(TrackedBase, TombstoneMixin):
    """Contract rate for one client and one service over a date range."""

    __tablename__ = "price_policies"

    __table_args__ = (
        Index("idx_price_policy_lookup", "client_id", "service_id", "effective_from"),
    )

    client_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    service_id: Mapped[int] = mapped_column(ForeignKey("service_catalog.id"), nullable=False)

    billing_basis: Mapped[BillingBasis] = mapped_column(String(20), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date, nullable=True)

    status: Mapped[PricePolicyStatus] = mapped_column(
        String(20), nullable=False, default=PricePolicyStatus.ACTIVE,
    )

    service: Mapped[ServiceCatalog] = relationship(lazy="joined")

    def covers(self, day: date) -> bool:
        return self.effective_from <= day and (
            self.effective_to is None or day <= self.effective_to
        )

    def __repr__(self) -> str:
        return (
            f"<PricePolicy client={self.client_id} service={self.service_id} "
            f"{self.unit_price} {self.currency} from {self.effective_from}>"
        )
