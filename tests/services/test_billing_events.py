"""
BillingEventService tests.

Tests cover:
- Direct entry for both pricing policies, including KRW truncation
- Currency/policy mismatches and negative inputs
- mark_pending: releases draft-linked events, refuses issued ones
- Export rows follow the fixed column order
"""

from datetime import date
from decimal import Decimal

import pytest

from billing_kernel.domain.dtos import EXPORT_COLUMNS
from billing_kernel.domain.statuses import BillingEventStatus, PricingPolicy
from billing_kernel.exceptions import (
    EventsLockedError,
    EventsNotFoundError,
    MissingActorError,
    PricingPolicyMismatchError,
    ValidationError,
)
from billing_services.export import export_to_string
from tests.conftest import CLIENT_ID, FEB, TEST_ACTOR_ID


class TestRecordEvent:

    def test_thb_amount_defaults_to_unit_price_times_qty(self, event_service):
        event = event_service.record_event(
            client_id=CLIENT_ID, service_code="PICK", reference_type="manual",
            event_date=date(2026, 2, 10), pricing_policy="THB_BASED", actor_id=TEST_ACTOR_ID,
            qty="40", unit_price_thb="3",
        )
        assert event.amount_thb == Decimal("120")
        assert event.amount_krw is None
        assert event.status is BillingEventStatus.PENDING

    def test_krw_amount_is_truncated(self, event_service):
        event = event_service.record_event(
            client_id=CLIENT_ID, service_code="STORAGE", reference_type="manual",
            event_date=date(2026, 2, 10), pricing_policy=PricingPolicy.KRW_FIXED,
            actor_id=TEST_ACTOR_ID, qty="1", amount_krw="12399",
        )
        assert event.amount_krw == Decimal("12300")

    def test_thb_event_with_krw_fields(self, event_service):
        with pytest.raises(PricingPolicyMismatchError):
            event_service.record_event(
                client_id=CLIENT_ID, service_code="PICK", reference_type="manual",
                event_date=date(2026, 2, 10), pricing_policy="THB_BASED", actor_id=TEST_ACTOR_ID,
                amount_krw="100",
            )

    def test_negative_amount(self, event_service):
        with pytest.raises(ValidationError):
            event_service.record_event(
                client_id=CLIENT_ID, service_code="PICK", reference_type="manual",
                event_date=date(2026, 2, 10), pricing_policy="KRW_FIXED", actor_id=TEST_ACTOR_ID,
                amount_krw="-100",
            )

    def test_missing_service_code(self, event_service):
        with pytest.raises(ValidationError):
            event_service.record_event(
                client_id=CLIENT_ID, service_code="", reference_type="manual",
                event_date=date(2026, 2, 10), pricing_policy="KRW_FIXED", actor_id=TEST_ACTOR_ID,
            )

    def test_actor_required(self, event_service):
        with pytest.raises(MissingActorError):
            event_service.record_event(
                client_id=CLIENT_ID, service_code="PICK", reference_type="manual",
                event_date=date(2026, 2, 10), pricing_policy="KRW_FIXED", actor_id=None,
            )


class TestMarkPending:

    def test_releases_draft_linked_events(self, create_rate, create_event, generator, event_service, event_selector):
        create_rate()
        event = create_event()
        generator.generate(CLIENT_ID, FEB, TEST_ACTOR_ID)
        assert event_selector.get_event(event.id).status is BillingEventStatus.INVOICED

        released = event_service.mark_pending([event.id], TEST_ACTOR_ID)
        assert released[0].status is BillingEventStatus.PENDING
        assert released[0].invoice_id is None
        assert released[0].fx_rate_used is None
        assert released[0].normalized_amount_krw is None

    def test_refuses_events_of_issued_invoice(self, create_rate, create_event, generator, event_service, event_selector):
        create_rate()
        event = create_event()
        result = generator.generate(CLIENT_ID, FEB, TEST_ACTOR_ID)
        generator.issue(result.invoice.id, TEST_ACTOR_ID)

        with pytest.raises(EventsLockedError) as exc_info:
            event_service.mark_pending([event.id], TEST_ACTOR_ID)
        assert exc_info.value.event_ids == [event.id]
        assert event_selector.get_event(event.id).status is BillingEventStatus.INVOICED

    def test_unknown_ids(self, event_service):
        with pytest.raises(EventsNotFoundError):
            event_service.mark_pending([999_999], TEST_ACTOR_ID)

    def test_empty_ids(self, event_service):
        with pytest.raises(ValidationError):
            event_service.mark_pending([], TEST_ACTOR_ID)


class TestExport:

    def test_rows_and_csv(self, create_rate, create_event, generator, event_selector):
        create_rate()
        create_event(amount="120")
        create_event(amount="5000", pricing_policy=PricingPolicy.KRW_FIXED, service_code="STORAGE")
        generator.generate(CLIENT_ID, FEB, TEST_ACTOR_ID)

        rows = event_selector.export_rows(client_id=CLIENT_ID, billing_month=FEB)
        by_code = {r.service_code: r for r in rows}
        assert by_code["PICK"].amount_krw == Decimal("4800")
        assert by_code["PICK"].fx_rate_thbkrw == Decimal("40")
        assert by_code["STORAGE"].amount_krw == Decimal("5000")
        assert by_code["PICK"].client == str(CLIENT_ID)

        text = export_to_string(rows)
        lines = text.strip().split("\n")
        assert lines[0] == ",".join(EXPORT_COLUMNS)
        assert len(lines) == 3
        assert all(line.endswith(",INVOICED") for line in lines[1:])

    def test_status_filter(self, create_event, event_selector):
        create_event()
        assert len(event_selector.export_rows(status="pending")) == 1
        assert event_selector.export_rows(status=BillingEventStatus.INVOICED) == []
