"""
BillingPolicy -- the numeric and naming rules the kernel bills by.

Architecture position:
    Kernel > Domain -- pure data, zero I/O.  The kernel never reads
    configuration itself; ``billing_config.bridges`` builds a BillingPolicy
    from the active configuration and hands it to the services.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal

from billing_kernel.domain.money import display_unit_price, round_amount, truncate_to_unit


@dataclass(frozen=True, slots=True)
class BillingPolicy:
    """
    Contract:
        ``invoice_currency`` is the currency invoices are issued in and the
        quote currency of the conversion pair.  ``fx_base_currency`` is the
        currency THB_BASED events are priced in.
    """

    invoice_currency: str = "KRW"
    fx_base_currency: str = "THB"
    vat_rate: Decimal = Decimal("0.07")
    vat_service_code: str = "VAT_7"
    vat_description: str = "VAT 7%"
    truncation_unit: Decimal = Decimal("100")
    amount_places: int = 4
    due_days: int | None = None
    sequence_width: int = 4

    def __post_init__(self) -> None:
        if self.vat_rate < 0:
            raise ValueError(f"vat_rate must be >= 0, got {self.vat_rate}")
        if self.truncation_unit <= 0:
            raise ValueError(f"truncation_unit must be > 0, got {self.truncation_unit}")

    def truncate(self, value: Decimal) -> Decimal:
        """Floor an invoice figure to ``truncation_unit``."""
        return truncate_to_unit(value, self.truncation_unit)

    def round_amount(self, value: Decimal) -> Decimal:
        return round_amount(value, self.amount_places)

    def unit_price(self, amount: Decimal, qty: Decimal) -> Decimal:
        return display_unit_price(amount, qty, self.truncation_unit)

    def invoice_number(self, client_id: int, yyyymm: str, seq: int) -> str:
        return f"{self.invoice_currency}-{client_id}-{yyyymm}-{seq:0{self.sequence_width}d}"

    def due_date_for(self, invoice_date: date) -> date | None:
        if self.due_days is None:
            return None
        return invoice_date + timedelta(days=self.due_days)


DEFAULT_POLICY = BillingPolicy()
