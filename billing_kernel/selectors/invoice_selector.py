"""InvoiceSelector -- invoice listings and the invoice-with-items view."""

from sqlalchemy import select

from billing_kernel.domain.billing_month import BillingMonth
from billing_kernel.domain.dtos import ExchangeRateInfo, InvoiceInfo
from billing_kernel.domain.statuses import InvoiceStatus, parse_enum
from billing_kernel.models.exchange_rate import ExchangeRate
from billing_kernel.models.invoice import Invoice, InvoiceItem
from billing_kernel.selectors.base import BaseSelector


class InvoiceSelector(BaseSelector):

    def list_invoices(
        self,
        client_id: int | None = None,
        billing_month: BillingMonth | str | None = None,
        status: InvoiceStatus | str | None = None,
    ) -> list[InvoiceInfo]:
        """Live invoices, newest first, without items."""
        stmt = Invoice.active()
        if client_id is not None:
            stmt = stmt.where(Invoice.client_id == client_id)
        if billing_month is not None:
            stmt = stmt.where(Invoice.invoice_month == str(BillingMonth.parse(billing_month)))
        if status is not None:
            if not isinstance(status, InvoiceStatus):
                status = parse_enum(InvoiceStatus, status.lower(), "status")
            stmt = stmt.where(Invoice.status == status.value)
        stmt = stmt.order_by(Invoice.id.desc())
        return [InvoiceInfo.from_model(i) for i in self.session.execute(stmt).scalars()]

    def get_invoice(self, invoice_id: int) -> InvoiceInfo | None:
        """A live invoice with its live items, or None."""
        invoice = self.session.execute(
            Invoice.active().where(Invoice.id == invoice_id)
        ).scalar_one_or_none()
        if invoice is None:
            return None
        items = self.session.execute(
            InvoiceItem.active().where(InvoiceItem.invoice_id == invoice_id).order_by(InvoiceItem.id)
        ).scalars().all()
        return InvoiceInfo.from_model(invoice, list(items))

    def list_rates(self, billing_month: BillingMonth | str | None = None) -> list[ExchangeRateInfo]:
        """Live rates, newest rate_date first."""
        stmt = ExchangeRate.active()
        if billing_month is not None:
            month = BillingMonth.parse(billing_month)
            stmt = stmt.where(ExchangeRate.rate_date >= month.start, ExchangeRate.rate_date < month.next_start)
        stmt = stmt.order_by(ExchangeRate.rate_date.desc(), ExchangeRate.id.desc())
        return [ExchangeRateInfo.from_model(r) for r in self.session.execute(stmt).scalars()]

    def invoice_numbers(self, client_id: int, billing_month: BillingMonth | str) -> list[str]:
        """Every number allocated for the month, tombstoned drafts included."""
        month = str(BillingMonth.parse(billing_month))
        return list(self.session.execute(
            select(Invoice.invoice_no)
            .where(Invoice.client_id == client_id, Invoice.invoice_month == month)
            .order_by(Invoice.id)
        ).scalars())
