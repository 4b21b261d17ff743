"""Selectors for the billing kernel (read side)."""

from billing_kernel.selectors.billing_selector import BillingEventSelector
from billing_kernel.selectors.invoice_selector import InvoiceSelector
from billing_kernel.selectors.settlement_selector import SettlementSelector
from billing_kernel.selectors.stock_selector import StockSelector

__all__ = [
    "BillingEventSelector",
    "InvoiceSelector",
    "SettlementSelector",
    "StockSelector",
]
