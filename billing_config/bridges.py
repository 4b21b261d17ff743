"""
Bridges from configuration to kernel inputs.

The kernel never imports ``billing_config``; this module is the one place
that translates a BillingConfig into the kernel's BillingPolicy.
"""

from billing_config.schema import BillingConfig
from billing_kernel.domain.policy import BillingPolicy


def build_billing_policy(config: BillingConfig) -> BillingPolicy:
    return BillingPolicy(
        invoice_currency=config.invoice.currency,
        fx_base_currency=config.fx.base_currency,
        vat_rate=config.invoice.vat_rate,
        vat_service_code=config.invoice.vat_service_code,
        vat_description=config.invoice.vat_description,
        truncation_unit=config.rounding.truncation_unit,
        amount_places=config.rounding.amount_places,
        due_days=config.invoice.due_days,
        sequence_width=config.invoice.sequence_width,
    )
