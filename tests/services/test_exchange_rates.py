"""
ExchangeRateService tests.

Tests cover:
- Create with validation and one active rate per pair and date
- Update/delete refused once the rate is locked or consumed by an invoice
- Lookup of the latest active rate on or before a date
"""

from datetime import date
from decimal import Decimal

import pytest

from billing_kernel.domain.statuses import ExchangeRateStatus
from billing_kernel.exceptions import (
    DuplicateRateDateError,
    ExchangeRateLockedError,
    ExchangeRateNotFoundError,
    InvalidExchangeRateError,
)
from tests.conftest import CLIENT_ID, FEB, TEST_ACTOR_ID


class TestCreate:

    def test_defaults_to_policy_pair(self, create_rate):
        rate = create_rate(date(2026, 2, 1), "40.5")
        assert (rate.base_currency, rate.quote_currency) == ("THB", "KRW")
        assert rate.rate == Decimal("40.5")
        assert rate.status is ExchangeRateStatus.ACTIVE
        assert rate.locked is False

    @pytest.mark.parametrize("value", ["0", "-1", "abc", 40.5])
    def test_invalid_rate(self, create_rate, value):
        with pytest.raises(InvalidExchangeRateError) as exc_info:
            create_rate(date(2026, 2, 1), value)
        assert exc_info.value.code == "INVALID_EXCHANGE_RATE"

    def test_duplicate_date(self, create_rate):
        create_rate(date(2026, 2, 1), "40")
        with pytest.raises(DuplicateRateDateError) as exc_info:
            create_rate(date(2026, 2, 1), "41")
        assert exc_info.value.code == "CONFLICT"

    def test_date_free_again_after_delete(self, create_rate, rate_service):
        first = create_rate(date(2026, 2, 1), "40")
        rate_service.delete_rate(first.id, TEST_ACTOR_ID)
        second = create_rate(date(2026, 2, 1), "41")
        assert second.id != first.id


class TestMutationGuards:

    def test_update_unused_rate(self, create_rate, rate_service):
        rate = create_rate(date(2026, 2, 1), "40")
        updated = rate_service.update_rate(rate.id, TEST_ACTOR_ID, rate="39.5", rate_date=date(2026, 2, 2))
        assert updated.rate == Decimal("39.5")
        assert updated.rate_date == date(2026, 2, 2)

    def test_locked_rate_is_frozen(self, create_rate, rate_service):
        rate = create_rate(date(2026, 2, 1), "40")
        rate_service.lock_rate(rate.id, TEST_ACTOR_ID)

        with pytest.raises(ExchangeRateLockedError) as exc_info:
            rate_service.update_rate(rate.id, TEST_ACTOR_ID, rate="41")
        assert exc_info.value.code == "EXCHANGE_RATE_LOCKED"
        with pytest.raises(ExchangeRateLockedError):
            rate_service.delete_rate(rate.id, TEST_ACTOR_ID)

    def test_lock_is_idempotent(self, create_rate, rate_service):
        rate = create_rate(date(2026, 2, 1), "40")
        rate_service.lock_rate(rate.id, TEST_ACTOR_ID)
        assert rate_service.lock_rate(rate.id, TEST_ACTOR_ID).locked is True

    def test_generation_locks_and_counts_usage(self, create_rate, create_event, generator, rate_service):
        rate = create_rate(date(2026, 2, 1), "40")
        create_event()
        generator.generate(CLIENT_ID, FEB, TEST_ACTOR_ID)

        assert rate_service.get_rate(rate.id).locked is True
        assert rate_service.usage_count(rate.id) == 1
        with pytest.raises(ExchangeRateLockedError) as exc_info:
            rate_service.delete_rate(rate.id, TEST_ACTOR_ID)
        assert exc_info.value.usage_count == 1

    def test_unknown_rate(self, rate_service):
        with pytest.raises(ExchangeRateNotFoundError):
            rate_service.update_rate(999_999, TEST_ACTOR_ID, rate="40")


class TestLookup:

    def test_latest_on_or_before(self, create_rate, rate_service):
        create_rate(date(2026, 1, 15), "39")
        create_rate(date(2026, 2, 1), "40")
        create_rate(date(2026, 2, 20), "41")

        assert rate_service.find_rate_on_or_before(date(2026, 2, 19)).rate == Decimal("40")
        assert rate_service.find_rate_on_or_before(date(2026, 2, 20)).rate == Decimal("41")
        assert rate_service.find_rate_on_or_before(date(2026, 1, 1)) is None

    def test_draft_rates_ignored(self, create_rate, rate_service):
        create_rate(date(2026, 2, 1), "40")
        create_rate(date(2026, 2, 10), "45", status=ExchangeRateStatus.DRAFT)
        assert rate_service.find_rate_on_or_before(date(2026, 2, 28)).rate == Decimal("40")
