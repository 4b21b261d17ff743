"""
Configuration loader (``billing_config.loader``).

Responsibility
--------------
Reads a YAML configuration file and parses it into the frozen dataclasses
of ``billing_config.schema``.  Runtime callers use
``billing_config.get_active_config()`` instead of calling this directly.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Invalid values (non-positive unit, currency pair mismatch)  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from billing_config.schema import (
    BillingConfig,
    DatabaseSettings,
    FxSettings,
    InvoiceSettings,
    RoundingSettings,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict."""
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal(value: Any, field: str) -> Decimal:
    """Parse a YAML scalar into Decimal.  Floats are parsed via str()."""
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"{field} is not a number: {value!r}") from exc


def parse_invoice(data: dict[str, Any]) -> InvoiceSettings:
    due_days = data.get("due_days")
    return InvoiceSettings(
        currency=data["currency"],
        vat_rate=parse_decimal(data["vat_rate"], "invoice.vat_rate"),
        vat_service_code=data.get("vat_service_code", "VAT_7"),
        vat_description=data.get("vat_description", "VAT 7%"),
        due_days=int(due_days) if due_days is not None else None,
        sequence_width=int(data.get("sequence_width", 4)),
    )


def parse_fx(data: dict[str, Any]) -> FxSettings:
    return FxSettings(
        base_currency=data["base_currency"],
        quote_currency=data["quote_currency"],
    )


def parse_rounding(data: dict[str, Any]) -> RoundingSettings:
    unit = parse_decimal(data["truncation_unit"], "rounding.truncation_unit")
    if unit <= 0:
        raise ValueError(f"rounding.truncation_unit must be positive, got {unit}")
    return RoundingSettings(
        truncation_unit=unit,
        amount_places=int(data.get("amount_places", 4)),
    )


def parse_database(data: dict[str, Any]) -> DatabaseSettings:
    return DatabaseSettings(
        url=data["url"],
        echo=bool(data.get("echo", False)),
        pool_size=int(data.get("pool_size", 20)),
        max_overflow=int(data.get("max_overflow", 10)),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def parse_config(data: dict[str, Any]) -> BillingConfig:
    """Parse a loaded YAML mapping into a BillingConfig."""
    invoice = parse_invoice(data["invoice"])
    fx = parse_fx(data["fx"])
    if fx.quote_currency != invoice.currency:
        raise ValueError(
            f"fx.quote_currency ({fx.quote_currency}) must equal "
            f"invoice.currency ({invoice.currency})"
        )
    return BillingConfig(
        config_id=data["config_id"],
        version=int(data["version"]),
        invoice=invoice,
        fx=fx,
        rounding=parse_rounding(data["rounding"]),
        database=parse_database(data["database"]),
        checksum=compute_checksum(data),
    )


def load_config_file(path: Path) -> BillingConfig:
    return parse_config(load_yaml_file(path))
