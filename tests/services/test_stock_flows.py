"""
Stock item flow tests (inbound, outbound, return).

Tests cover:
- Outbound ship/edit/remove keeps balance, ledger and billing event in step
- Shipping without a price policy moves stock but bills nothing
- Over-shipping fails with INSUFFICIENT_STOCK
- Return restock/dispose split: restock adds stock, dispose is net zero
- Inbound receipts replace themselves on re-receive
- A movement changed between its read and its lock fails as a retryable conflict
- Movement logs carry the created/replaced flag
"""

import dataclasses
from datetime import date
from decimal import Decimal

import pytest

from billing_kernel.domain.dtos import BalanceKey
from billing_kernel.domain.statuses import BillingEventStatus, MovementType, PricingPolicy
from billing_kernel.exceptions import (
    InsufficientStockError,
    InvalidQtySplitError,
    MovementNotFoundError,
    TransactionConflictError,
    ValidationError,
)
from billing_services.inbound_flow import InboundItemFlow, InboundLine
from billing_services.outbound_flow import OutboundItemFlow, OutboundLine
from billing_services.return_flow import ReturnItemFlow, ReturnLine
from tests.conftest import CLIENT_ID, TEST_ACTOR_ID, WAREHOUSE_ID

KEY = BalanceKey(client_id=CLIENT_ID, product_id=100, lot_id=1, warehouse_id=WAREHOUSE_ID, location_id=5)
OTHER_LOCATION = BalanceKey(client_id=CLIENT_ID, product_id=100, lot_id=1, warehouse_id=WAREHOUSE_ID, location_id=6)


@pytest.fixture
def inbound(session, deterministic_clock):
    return InboundItemFlow(session, deterministic_clock)


@pytest.fixture
def outbound(session, deterministic_clock):
    return OutboundItemFlow(session, deterministic_clock)


@pytest.fixture
def returns(session, deterministic_clock):
    return ReturnItemFlow(session, deterministic_clock)


def _inbound_line(item_id=1, qty=100, location_id=5) -> InboundLine:
    return InboundLine(
        item_id=item_id, client_id=CLIENT_ID, warehouse_id=WAREHOUSE_ID, product_id=100, lot_id=1,
        qty=qty, received_date=date(2026, 2, 1), actor_id=TEST_ACTOR_ID, location_id=location_id,
    )


def _outbound_line(item_id=10, qty=40, location_id=5, service_code="PICK", order_date=date(2026, 2, 10),
                   box_count=None) -> OutboundLine:
    return OutboundLine(
        item_id=item_id, client_id=CLIENT_ID, warehouse_id=WAREHOUSE_ID, product_id=100, lot_id=1,
        qty=qty, service_code=service_code, order_date=order_date, actor_id=TEST_ACTOR_ID,
        location_id=location_id, box_count=box_count,
    )


def _return_line(item_id=20, received=10, restocked=6, disposed=3) -> ReturnLine:
    return ReturnLine(
        item_id=item_id, client_id=CLIENT_ID, warehouse_id=WAREHOUSE_ID, product_id=100, lot_id=1,
        qty_received=received, return_date=date(2026, 2, 15), actor_id=TEST_ACTOR_ID,
        qty_restocked=restocked, qty_disposed=disposed, location_id=5,
    )


@pytest.fixture
def priced_pick(create_service, create_price):
    create_service("PICK", "Picking")
    return create_price("PICK", unit_price="3", currency="THB")


class TestInbound:

    def test_receive_adds_stock(self, inbound, ledger, stock_selector):
        movement = inbound.receive(_inbound_line(qty=100))
        assert movement.qty_in == 100
        assert ledger.get_balance(KEY).available_qty == 100
        assert stock_selector.reconcile(KEY).is_consistent

    def test_re_receive_replaces(self, inbound, ledger, stock_selector):
        inbound.receive(_inbound_line(qty=100))
        inbound.receive(_inbound_line(qty=80))
        assert ledger.get_balance(KEY).available_qty == 80
        assert stock_selector.reconcile(KEY).is_consistent

    def test_re_receive_into_other_location_moves_stock(self, inbound, ledger):
        inbound.receive(_inbound_line(qty=100))
        inbound.receive(_inbound_line(qty=100, location_id=6))
        assert ledger.get_balance(KEY).available_qty == 0
        assert ledger.get_balance(OTHER_LOCATION).available_qty == 100

    def test_remove(self, inbound, ledger):
        inbound.receive(_inbound_line(qty=100))
        inbound.remove(1, TEST_ACTOR_ID)
        assert ledger.get_balance(KEY).available_qty == 0

    def test_remove_unknown(self, inbound):
        with pytest.raises(MovementNotFoundError):
            inbound.remove(999, TEST_ACTOR_ID)

    def test_remove_after_shipping_would_go_negative(self, inbound, outbound, priced_pick):
        inbound.receive(_inbound_line(qty=100))
        outbound.ship(_outbound_line(qty=40))
        with pytest.raises(InsufficientStockError) as exc_info:
            inbound.remove(1, TEST_ACTOR_ID)
        assert exc_info.value.code == "INSUFFICIENT_STOCK"

    def test_zero_qty_rejected(self, inbound):
        with pytest.raises(ValidationError):
            inbound.receive(_inbound_line(qty=0))


class TestOutbound:

    def test_ship_moves_stock_and_bills(self, inbound, outbound, ledger, priced_pick):
        inbound.receive(_inbound_line(qty=100))
        result = outbound.ship(_outbound_line(qty=40))

        assert ledger.get_balance(KEY).available_qty == 60
        assert result.movement.qty_out == 40
        event = result.event
        assert event.stock_transaction_id == result.movement.id
        assert event.pricing_policy is PricingPolicy.THB_BASED
        assert event.unit_price_thb == Decimal("3")
        assert event.amount_thb == Decimal("120")
        assert event.amount_krw is None
        assert event.status is BillingEventStatus.PENDING

    def test_ship_without_price_bills_nothing(self, inbound, outbound, ledger):
        inbound.receive(_inbound_line(qty=100))
        result = outbound.ship(_outbound_line(qty=40, service_code="UNPRICED"))
        assert result.event is None
        assert ledger.get_balance(KEY).available_qty == 60

    def test_over_shipping_fails(self, inbound, outbound, priced_pick):
        inbound.receive(_inbound_line(qty=10))
        with pytest.raises(InsufficientStockError) as exc_info:
            outbound.ship(_outbound_line(qty=11))
        assert exc_info.value.requested_qty == 11
        assert exc_info.value.available_qty == 10

    def test_edit_replaces_quantity_and_event(self, inbound, outbound, ledger, event_selector, priced_pick):
        inbound.receive(_inbound_line(qty=100))
        first = outbound.ship(_outbound_line(qty=40))
        edited = outbound.edit(_outbound_line(qty=50))

        assert ledger.get_balance(KEY).available_qty == 50
        assert edited.movement.id == first.movement.id
        assert edited.event.id == first.event.id
        assert edited.event.amount_thb == Decimal("150")
        assert len(event_selector.list_events(client_id=CLIENT_ID)) == 1

    def test_ship_twice_does_not_double_count(self, inbound, outbound, ledger, priced_pick):
        inbound.receive(_inbound_line(qty=100))
        outbound.ship(_outbound_line(qty=40))
        outbound.ship(_outbound_line(qty=40))
        assert ledger.get_balance(KEY).available_qty == 60

    def test_edit_unknown_line(self, outbound, priced_pick):
        with pytest.raises(MovementNotFoundError):
            outbound.edit(_outbound_line(item_id=404))

    def test_remove_restores_stock_and_tombstones_event(
        self, inbound, outbound, ledger, event_selector, stock_selector, priced_pick,
    ):
        inbound.receive(_inbound_line(qty=100))
        shipped = outbound.ship(_outbound_line(qty=40))
        outbound.remove(10, TEST_ACTOR_ID)

        assert ledger.get_balance(KEY).available_qty == 100
        assert event_selector.list_events(client_id=CLIENT_ID) == []
        assert event_selector.get_event(shipped.event.id).is_active is False
        assert stock_selector.reconcile(KEY).is_consistent

    def test_reship_after_remove_bills_again(self, inbound, outbound, ledger, priced_pick):
        inbound.receive(_inbound_line(qty=100))
        outbound.ship(_outbound_line(qty=40))
        outbound.remove(10, TEST_ACTOR_ID)
        again = outbound.ship(_outbound_line(qty=30))
        assert again.event is not None
        assert again.event.is_active
        assert ledger.get_balance(KEY).available_qty == 70

    def test_box_basis(self, inbound, outbound, create_service, create_price):
        create_service("PACK", "Packing", billing_unit="BOX")
        create_price("PACK", unit_price="25", currency="KRW")
        inbound.receive(_inbound_line(qty=100))
        result = outbound.ship(_outbound_line(qty=40, service_code="PACK", box_count=4))
        assert result.event.pricing_policy is PricingPolicy.KRW_FIXED
        assert result.event.amount_krw == Decimal("100")


class TestReturns:

    def test_restock_adds_and_dispose_is_net_zero(self, returns, ledger, stock_selector):
        result = returns.receive(_return_line(restocked=6, disposed=3))
        assert ledger.get_balance(KEY).available_qty == 6
        assert result.restock.qty_in == 6
        assert result.dispose.qty_in == 3
        assert result.dispose.qty_out == 3
        assert stock_selector.reconcile(KEY).is_consistent

    def test_edit_restores_previous_restock(self, returns, ledger, stock_selector):
        returns.receive(_return_line(restocked=6, disposed=3))
        returns.edit(_return_line(restocked=2, disposed=0))
        assert ledger.get_balance(KEY).available_qty == 2

        movements = stock_selector.list_movements(client_id=CLIENT_ID)
        assert [m.txn_type for m in movements] == [MovementType.RETURN_RESTOCK]
        assert stock_selector.reconcile(KEY).is_consistent

    def test_split_exceeding_received(self, returns):
        with pytest.raises(InvalidQtySplitError):
            returns.receive(_return_line(received=5, restocked=4, disposed=2))

    def test_negative_split(self, returns):
        with pytest.raises(ValidationError):
            returns.receive(_return_line(restocked=-1, disposed=0))

    def test_remove(self, returns, ledger, stock_selector):
        returns.receive(_return_line(restocked=6, disposed=3))
        returns.remove(20, TEST_ACTOR_ID)
        assert ledger.get_balance(KEY).available_qty == 0
        assert stock_selector.list_movements(client_id=CLIENT_ID) == []


def _stale_reads(monkeypatch, ledger, **changes):
    """Make the flow's unlocked movement read return an outdated snapshot."""
    real = ledger.find_active_movement

    def stale(*args, **kwargs):
        current = real(*args, **kwargs)
        return dataclasses.replace(current, **changes) if current is not None else None

    monkeypatch.setattr(ledger, "find_active_movement", stale)


class TestConcurrentEdits:

    def test_outbound_edit_of_changed_line_conflicts(self, inbound, outbound, ledger, monkeypatch, priced_pick):
        inbound.receive(_inbound_line(qty=100))
        outbound.ship(_outbound_line(qty=40))
        _stale_reads(monkeypatch, outbound._ledger, qty_out=30)

        with pytest.raises(TransactionConflictError) as exc_info:
            outbound.edit(_outbound_line(qty=50))

        assert exc_info.value.retryable
        assert exc_info.value.operation == MovementType.OUTBOUND_SHIP.value
        assert ledger.find_active_movement(MovementType.OUTBOUND_SHIP, "outbound_item", 10).qty_out == 40

    def test_outbound_remove_of_removed_line_conflicts(self, inbound, outbound, monkeypatch, priced_pick):
        inbound.receive(_inbound_line(qty=100))
        outbound.ship(_outbound_line(qty=40))
        _stale_reads(monkeypatch, outbound._ledger, id=-1)

        with pytest.raises(TransactionConflictError):
            outbound.remove(10, TEST_ACTOR_ID)

    def test_inbound_receipt_read_before_lock_conflicts(self, inbound, monkeypatch):
        inbound.receive(_inbound_line(qty=100))
        _stale_reads(monkeypatch, inbound._ledger, qty_in=90)

        with pytest.raises(TransactionConflictError):
            inbound.receive(_inbound_line(qty=80))

    def test_return_edit_of_changed_restock_conflicts(self, returns, monkeypatch):
        returns.receive(_return_line(restocked=6, disposed=3))
        _stale_reads(monkeypatch, returns._ledger, qty_in=4)

        with pytest.raises(TransactionConflictError):
            returns.edit(_return_line(restocked=2, disposed=0))

    def test_unchanged_line_edits_normally(self, inbound, outbound, ledger, monkeypatch, priced_pick):
        inbound.receive(_inbound_line(qty=100))
        outbound.ship(_outbound_line(qty=40))
        _stale_reads(monkeypatch, outbound._ledger)

        outbound.edit(_outbound_line(qty=45))
        assert ledger.get_balance(KEY).available_qty == 55


class TestMovementLogs:

    def test_recorded_movement_logs_created_flag(self, inbound, outbound, captured_logs, priced_pick):
        inbound.receive(_inbound_line(qty=100))
        outbound.ship(_outbound_line(qty=40))
        outbound.edit(_outbound_line(qty=45))

        recorded = [r for r in captured_logs() if r["message"] == "stock_movement_recorded"]
        assert [r["was_created"] for r in recorded] == [True, True, False]
        assert all(r["level"] == "INFO" for r in recorded)
