"""
BillingConfig schema.

Typed, frozen view of the YAML configuration.  The loader parses the file
into these dataclasses; ``bridges`` turns them into kernel inputs.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True)
class InvoiceSettings:
    currency: str
    vat_rate: Decimal
    vat_service_code: str
    vat_description: str
    due_days: int | None = None
    sequence_width: int = 4


@dataclass(frozen=True)
class FxSettings:
    base_currency: str
    quote_currency: str


@dataclass(frozen=True)
class RoundingSettings:
    truncation_unit: Decimal
    amount_places: int


@dataclass(frozen=True)
class DatabaseSettings:
    url: str
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10


@dataclass(frozen=True)
class BillingConfig:
    """Complete billing configuration (one YAML file)."""

    config_id: str
    version: int
    invoice: InvoiceSettings
    fx: FxSettings
    rounding: RoundingSettings
    database: DatabaseSettings
    checksum: str = ""
