"""
Pricing -- basis-unit and amount calculation for price policies.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - QTY -> qty, BOX -> box_count, ORDER -> 1, anything else -> 0.
    - amount = unit_price * basis_units, rounded half-up to 4 places.
      Amounts are never truncated here; truncation happens at invoicing.
"""

from decimal import Decimal

from billing_kernel.domain.money import AMOUNT_PLACES, ZERO, round_amount
from billing_kernel.domain.statuses import BillingBasis


def compute_basis_units(
    basis: BillingBasis | str, qty: Decimal | int, box_count: Decimal | int | None,
) -> Decimal:
    """Number of billable units for ``basis``; 0 for any basis not listed below."""
    try:
        basis = BillingBasis(basis)
    except ValueError:
        return ZERO
    if basis is BillingBasis.QTY:
        return Decimal(qty)
    if basis is BillingBasis.BOX:
        return Decimal(box_count or 0)
    if basis is BillingBasis.ORDER:
        return Decimal(1)
    return ZERO


def compute_amount(unit_price: Decimal, basis_units: Decimal, places: int = AMOUNT_PLACES) -> Decimal:
    return round_amount(unit_price * basis_units, places)
