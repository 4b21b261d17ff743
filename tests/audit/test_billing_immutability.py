"""
ORM-level immutability tests.

Services refuse illegal mutations before they happen.  These tests go
around the services and write through the ORM directly, proving the flush
listeners catch:

1. Financial edits to issued invoices and their items
2. Value changes to locked or consumed exchange rates
3. Edits to tombstoned ledger entries
4. Any change to the settlement audit log
5. Hard deletes of rates, events, ledger entries and invoices
"""

from datetime import date
from decimal import Decimal

import pytest

from billing_kernel.domain.dtos import MovementContext
from billing_kernel.domain.statuses import InvoiceStatus, MovementType
from billing_kernel.exceptions import ExchangeRateLockedError, ImmutabilityViolationError
from billing_kernel.models.billing_event import BillingEvent
from billing_kernel.models.exchange_rate import ExchangeRate
from billing_kernel.models.invoice import Invoice, InvoiceItem
from billing_kernel.models.settlement import SettlementReopenLog
from billing_kernel.models.stock import StockTransaction
from tests.conftest import CLIENT_ID, FEB, TEST_ACTOR_ID, WAREHOUSE_ID


@pytest.fixture
def issued_invoice(session, create_rate, create_event, generator):
    create_rate()
    create_event()
    invoice = generator.generate(CLIENT_ID, FEB, TEST_ACTOR_ID).invoice
    generator.issue(invoice.id, TEST_ACTOR_ID)
    return session.get(Invoice, invoice.id)


class TestInvoiceImmutability:

    def test_total_cannot_change_after_issue(self, session, issued_invoice):
        issued_invoice.total_krw = Decimal("1")
        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()
        assert "total_krw" in str(exc_info.value)

    def test_status_may_still_advance(self, session, issued_invoice, deterministic_clock):
        issued_invoice.status = InvoiceStatus.PAID.value
        issued_invoice.paid_at = deterministic_clock.now()
        issued_invoice.paid_by_id = TEST_ACTOR_ID
        session.flush()

    def test_items_frozen_after_issue(self, session, issued_invoice):
        item = session.query(InvoiceItem).filter_by(invoice_id=issued_invoice.id, is_vat=False).first()
        item.amount_krw = Decimal("100")
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_draft_is_editable(self, session, create_rate, create_event, generator):
        create_rate()
        create_event()
        draft = session.get(Invoice, generator.generate(CLIENT_ID, FEB, TEST_ACTOR_ID).invoice.id)
        draft.due_date = date(2026, 4, 30)
        session.flush()

    def test_hard_delete_blocked(self, session, issued_invoice):
        session.delete(issued_invoice)
        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()
        assert "Invoices are tombstoned" in str(exc_info.value)

    def test_hard_delete_with_items_loaded_hits_guard(self, session, create_rate, create_event, generator):
        create_rate()
        create_event()
        draft = session.get(Invoice, generator.generate(CLIENT_ID, FEB, TEST_ACTOR_ID).invoice.id)
        assert len(draft.items) == 2
        session.delete(draft)
        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()
        assert "Invoices are tombstoned" in str(exc_info.value)


class TestExchangeRateImmutability:

    def test_locked_rate_value_frozen(self, session, create_rate, rate_service):
        rate = create_rate()
        rate_service.lock_rate(rate.id, TEST_ACTOR_ID)
        row = session.get(ExchangeRate, rate.id)
        row.rate = Decimal("41")
        with pytest.raises(ExchangeRateLockedError):
            session.flush()

    def test_locked_rate_audit_metadata_allowed(self, session, create_rate, rate_service):
        rate = create_rate()
        rate_service.lock_rate(rate.id, TEST_ACTOR_ID)
        row = session.get(ExchangeRate, rate.id)
        row.updated_by_id = TEST_ACTOR_ID + 1
        session.flush()

    def test_unlocked_unused_rate_editable(self, session, create_rate):
        rate = create_rate()
        row = session.get(ExchangeRate, rate.id)
        row.rate = Decimal("41")
        session.flush()

    def test_hard_delete_blocked(self, session, create_rate):
        row = session.get(ExchangeRate, create_rate().id)
        session.delete(row)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestLedgerImmutability:

    @pytest.fixture
    def movement(self, ledger):
        context = MovementContext(
            client_id=CLIENT_ID, product_id=11, lot_id=1, warehouse_id=WAREHOUSE_ID,
            txn_date=date(2026, 2, 10), actor_id=TEST_ACTOR_ID,
        )
        return ledger.record_movement(MovementType.INBOUND_RECEIVE, "inbound_item", 1, 5, 0, context)

    def test_tombstoned_entry_frozen(self, session, ledger, movement):
        ledger.reverse_movement(MovementType.INBOUND_RECEIVE, "inbound_item", 1, TEST_ACTOR_ID)
        row = session.get(StockTransaction, movement.id)
        row.qty_in = 50
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_entry_never_deleted(self, session, movement):
        session.delete(session.get(StockTransaction, movement.id))
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_event_never_deleted(self, session, create_event):
        session.delete(session.get(BillingEvent, create_event().id))
        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestSettlementLogImmutability:

    @pytest.fixture
    def log_row(self, session, create_rate, settlement_service):
        create_rate()
        batch = settlement_service.generate(CLIENT_ID, FEB, TEST_ACTOR_ID)
        settlement_service.close(batch.id, TEST_ACTOR_ID, reason="month end")
        return session.query(SettlementReopenLog).filter_by(batch_id=batch.id).one()

    def test_update_blocked(self, session, log_row):
        log_row.reason = "rewritten"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_delete_blocked(self, session, log_row):
        session.delete(log_row)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
