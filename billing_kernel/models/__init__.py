"""ORM models for the billing kernel."""

from billing_kernel.models.billing_event import BillingEvent
from billing_kernel.models.exchange_rate import ExchangeRate
from billing_kernel.models.invoice import Invoice, InvoiceItem, InvoiceSequence
from billing_kernel.models.pricing import PricePolicy, ServiceCatalog
from billing_kernel.models.settlement import (
    SettlementBatch,
    SettlementLine,
    SettlementReopenLog,
    SettlementReopenRequest,
)
from billing_kernel.models.stock import StockBalance, StockTransaction

__all__ = [
    "BillingEvent",
    "ExchangeRate",
    "Invoice",
    "InvoiceItem",
    "InvoiceSequence",
    "PricePolicy",
    "ServiceCatalog",
    "SettlementBatch",
    "SettlementLine",
    "SettlementReopenLog",
    "SettlementReopenRequest",
    "StockBalance",
    "StockTransaction",
]
