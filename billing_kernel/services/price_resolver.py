"""
PriceResolver -- the contract rate in effect for a client, service and day.

Responsibility:
    Select the single applicable PricePolicy and compute billable amounts
    from it.

Architecture position:
    Kernel > Services.  Read-only; takes no locks.  Called by
    BillingEventService inside the movement's transaction.

Invariants enforced:
    - Candidate policies are ACTIVE-record, status active, for an active
      catalog service, with effective_from <= day and (effective_to is NULL
      or effective_to >= day).
    - Ties: latest effective_from wins, then the highest id (most recently
      created).
    - No applicable policy returns None.  Missing prices defer billing; they
      are never an error here.
"""

from datetime import date
from decimal import Decimal

from sqlalchemy import or_

from billing_kernel.domain.dtos import PriceQuote
from billing_kernel.domain.pricing import compute_amount, compute_basis_units
from billing_kernel.domain.statuses import BillingBasis, PricePolicyStatus
from billing_kernel.logging_config import get_logger
from billing_kernel.models.pricing import PricePolicy, ServiceCatalog
from billing_kernel.services.base import BaseService

logger = get_logger("services.price_resolver")


class PriceResolver(BaseService):
    """
    Contract:
        ``resolve_active_price`` returns a PriceQuote or None.

    Non-goals:
        Does not create or edit policies (ServiceCatalogService does).
    """

    def resolve_active_price(
        self, client_id: int, service_code: str, on_date: date,
    ) -> PriceQuote | None:
        stmt = (
            PricePolicy.active()
            .join(ServiceCatalog, PricePolicy.service_id == ServiceCatalog.id)
            .where(
                PricePolicy.client_id == client_id,
                ServiceCatalog.service_code == service_code,
                ServiceCatalog.is_active.is_(True),
                PricePolicy.status == PricePolicyStatus.ACTIVE.value,
                PricePolicy.effective_from <= on_date,
                or_(PricePolicy.effective_to.is_(None), PricePolicy.effective_to >= on_date),
            )
            .order_by(PricePolicy.effective_from.desc(), PricePolicy.id.desc())
            .limit(1)
        )
        policy = self.session.execute(stmt).unique().scalar_one_or_none()

        if policy is None:
            logger.info(
                "price_policy_not_found",
                extra={
                    "client_id": client_id,
                    "service_code": service_code,
                    "on_date": on_date,
                },
            )
            return None

        return PriceQuote.from_model(policy)

    @staticmethod
    def compute_basis_units(
        billing_basis: BillingBasis | str, qty: Decimal | int, box_count: Decimal | int | None,
    ) -> Decimal:
        return compute_basis_units(billing_basis, qty, box_count)

    @staticmethod
    def price(quote: PriceQuote, qty: Decimal | int, box_count: int | None) -> Decimal:
        """Amount for ``qty`` / ``box_count`` under ``quote`` (4 dp, half-up)."""
        units = compute_basis_units(quote.billing_basis, qty, box_count)
        return compute_amount(quote.unit_price, units)
