"""
Read-model tests for the listings not covered by the service modules.

Selectors take no locks and return frozen snapshots.
"""

from datetime import date

from billing_kernel.domain.statuses import InvoiceStatus, ReopenRequestStatus
from tests.conftest import CLIENT_ID, FEB, TEST_ACTOR_ID


class TestInvoiceListings:

    def test_list_invoices_filters(self, create_rate, create_event, generator, invoice_selector):
        create_rate()
        create_event()
        create_event(event_date=date(2026, 1, 20))
        feb = generator.generate(CLIENT_ID, FEB, TEST_ACTOR_ID).invoice
        jan = generator.generate(CLIENT_ID, "2026-01", TEST_ACTOR_ID, invoice_date=date(2026, 2, 1)).invoice
        generator.issue(feb.id, TEST_ACTOR_ID)

        assert [i.id for i in invoice_selector.list_invoices(client_id=CLIENT_ID)] == [jan.id, feb.id]
        assert [i.id for i in invoice_selector.list_invoices(billing_month=FEB)] == [feb.id]
        assert [i.id for i in invoice_selector.list_invoices(status="issued")] == [feb.id]
        assert [i.id for i in invoice_selector.list_invoices(status=InvoiceStatus.DRAFT)] == [jan.id]
        assert invoice_selector.list_invoices(client_id=CLIENT_ID + 1) == []

    def test_list_rates_by_month(self, create_rate, invoice_selector):
        create_rate(date(2026, 1, 31), "39")
        feb1 = create_rate(date(2026, 2, 1), "40")
        feb15 = create_rate(date(2026, 2, 15), "41")

        assert [r.id for r in invoice_selector.list_rates(FEB)] == [feb15.id, feb1.id]
        assert len(invoice_selector.list_rates()) == 3


class TestSettlementListings:

    def test_find_batch(self, create_rate, create_event, settlement_service, settlement_selector):
        create_rate()
        create_event()
        batch = settlement_service.generate(CLIENT_ID, FEB, TEST_ACTOR_ID)

        found = settlement_selector.find_batch(CLIENT_ID, FEB)
        assert found.id == batch.id
        assert len(found.lines) == 1
        assert settlement_selector.find_batch(CLIENT_ID, "2026-03") is None

    def test_reopen_requests_newest_first(self, create_rate, settlement_service, settlement_selector):
        create_rate()
        batch = settlement_service.generate(CLIENT_ID, FEB, TEST_ACTOR_ID)
        settlement_service.close(batch.id, TEST_ACTOR_ID)
        first = settlement_service.request_reopen(batch.id, TEST_ACTOR_ID, "first")
        settlement_service.reject_reopen(first.id, TEST_ACTOR_ID)
        second = settlement_service.request_reopen(batch.id, TEST_ACTOR_ID, "second")

        requests = settlement_selector.list_reopen_requests(batch.id)
        assert [r.id for r in requests] == [second.id, first.id]
        assert [r.status for r in requests] == [ReopenRequestStatus.REQUESTED, ReopenRequestStatus.REJECTED]
