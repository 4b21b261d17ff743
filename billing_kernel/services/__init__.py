"""Services for the billing kernel (write side)."""

from billing_kernel.services.billing_event_service import BillingEventService
from billing_kernel.services.exchange_rate_service import ExchangeRateService
from billing_kernel.services.invoice_generator import InvoiceGenerator
from billing_kernel.services.price_resolver import PriceResolver
from billing_kernel.services.sequence_service import InvoiceSequenceService
from billing_kernel.services.service_catalog import ServiceCatalogService
from billing_kernel.services.settlement_service import SettlementService
from billing_kernel.services.stock_ledger import StockLedgerService

__all__ = [
    "BillingEventService",
    "ExchangeRateService",
    "InvoiceGenerator",
    "InvoiceSequenceService",
    "PriceResolver",
    "ServiceCatalogService",
    "SettlementService",
    "StockLedgerService",
]
