"""
Money -- Truncation and rounding rules for billing amounts.

Responsibility:
    The only sanctioned rounding functions in the kernel.  Invoice figures
    are truncated to the KRW unit (100) and intermediate amounts are rounded
    half-up to 4 decimal places.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - trunc100 is ``floor(v / 100) * 100``.  It rounds toward negative
      infinity, so ``trunc100(-50) == -100``.
    - Every persisted KRW invoice figure passes through ``truncate_to_unit``
      with the billing policy's unit; ``trunc100`` is the default-unit form.
    - Decimal only.  Floats are rejected at the boundary by ``to_decimal``.
"""

from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal, InvalidOperation

from billing_kernel.exceptions import InvalidValueError

KRW_UNIT = Decimal("100")
AMOUNT_PLACES = 4
ZERO = Decimal("0")


def to_decimal(value: Decimal | int | str | None, field: str = "value") -> Decimal | None:
    """
    Coerce an int/str/Decimal input to Decimal.  None passes through.

    Raises:
        InvalidValueError: value is a float or does not parse as a number.
    """
    if value is None:
        return None
    if isinstance(value, float):
        raise InvalidValueError(field, value, "a Decimal, int or str (not a float)")
    try:
        return value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        raise InvalidValueError(field, value, "a number") from None


def truncate_to_unit(value: Decimal, unit: Decimal = KRW_UNIT) -> Decimal:
    """floor(value / unit) * unit."""
    return (value / unit).to_integral_value(rounding=ROUND_FLOOR) * unit


def trunc100(value: Decimal) -> Decimal:
    """Truncate to the nearest lower multiple of 100."""
    return truncate_to_unit(value, KRW_UNIT)


def round_amount(value: Decimal, places: int = AMOUNT_PLACES) -> Decimal:
    """Round half-up to ``places`` decimal places (default 4)."""
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def is_unit_multiple(value: Decimal, unit: Decimal = KRW_UNIT) -> bool:
    return value % unit == 0


def display_unit_price(amount: Decimal, qty: Decimal, unit: Decimal = KRW_UNIT) -> Decimal:
    """Per-unit price shown on an invoice line: truncated amount / qty, or amount when qty <= 0."""
    if qty > 0:
        return truncate_to_unit(amount / qty, unit)
    return amount
