"""
Service catalog and price resolution tests.

Tests cover:
- Registration, duplicate codes, deactivation
- Date-window resolution: latest effective_from wins, then highest id
- Inactive services and policies never resolve
"""

from datetime import date
from decimal import Decimal

import pytest

from billing_kernel.domain.statuses import BillingBasis
from billing_kernel.exceptions import (
    DuplicateServiceCodeError,
    InvalidValueError,
    ServiceNotFoundError,
    ValidationError,
)
from tests.conftest import CLIENT_ID, TEST_ACTOR_ID


class TestCatalog:

    def test_register(self, create_service):
        info = create_service("PICK", "Picking", billing_unit="SKU")
        assert info.service_code == "PICK"
        assert info.billing_unit == "SKU"
        assert info.is_active

    def test_duplicate_code(self, create_service):
        create_service("PICK")
        with pytest.raises(DuplicateServiceCodeError) as exc_info:
            create_service("PICK")
        assert exc_info.value.code == "CONFLICT"

    def test_unknown_billing_unit(self, create_service):
        with pytest.raises(InvalidValueError) as exc_info:
            create_service("PICK", billing_unit="GALLON")
        assert exc_info.value.field == "billing_unit"

    def test_price_for_unknown_service(self, create_price):
        with pytest.raises(ServiceNotFoundError):
            create_price("NOPE")

    def test_negative_price(self, create_service, create_price):
        create_service("PICK")
        with pytest.raises(ValidationError):
            create_price("PICK", unit_price="-1")

    def test_window_must_not_be_inverted(self, create_service, create_price):
        create_service("PICK")
        with pytest.raises(ValidationError):
            create_price("PICK", effective_from=date(2026, 2, 1), effective_to=date(2026, 1, 31))

    def test_basis_defaults_from_unit(self, create_service, create_price):
        create_service("SHIP", "Shipping fee", billing_unit="ORDER")
        quote = create_price("SHIP", unit_price="50")
        assert quote.billing_basis is BillingBasis.ORDER


class TestResolution:

    def test_latest_effective_from_wins(self, create_service, create_price, resolver):
        create_service("PICK")
        create_price("PICK", unit_price="10", effective_from=date(2026, 1, 1))
        create_price("PICK", unit_price="12", effective_from=date(2026, 2, 1))

        assert resolver.resolve_active_price(CLIENT_ID, "PICK", date(2026, 1, 31)).unit_price == Decimal("10")
        assert resolver.resolve_active_price(CLIENT_ID, "PICK", date(2026, 2, 1)).unit_price == Decimal("12")

    def test_same_start_highest_id_wins(self, create_service, create_price, resolver):
        create_service("PICK")
        create_price("PICK", unit_price="10")
        latest = create_price("PICK", unit_price="11")
        quote = resolver.resolve_active_price(CLIENT_ID, "PICK", date(2026, 2, 10))
        assert quote.policy_id == latest.policy_id

    def test_effective_to_is_inclusive(self, create_service, create_price, resolver):
        create_service("PICK")
        create_price("PICK", effective_from=date(2026, 1, 1), effective_to=date(2026, 1, 31))
        assert resolver.resolve_active_price(CLIENT_ID, "PICK", date(2026, 1, 31)) is not None
        assert resolver.resolve_active_price(CLIENT_ID, "PICK", date(2026, 2, 1)) is None

    def test_other_client_does_not_match(self, create_service, create_price, resolver):
        create_service("PICK")
        create_price("PICK", client_id=CLIENT_ID + 1)
        assert resolver.resolve_active_price(CLIENT_ID, "PICK", date(2026, 2, 10)) is None

    def test_inactive_service_does_not_resolve(self, create_service, create_price, catalog, resolver):
        create_service("PICK")
        create_price("PICK")
        catalog.set_service_active("PICK", False, TEST_ACTOR_ID)
        assert resolver.resolve_active_price(CLIENT_ID, "PICK", date(2026, 2, 10)) is None

    def test_inactive_policy_falls_back(self, create_service, create_price, catalog, resolver):
        create_service("PICK")
        older = create_price("PICK", unit_price="10", effective_from=date(2026, 1, 1))
        newer = create_price("PICK", unit_price="12", effective_from=date(2026, 2, 1))
        catalog.deactivate_price_policy(newer.policy_id, TEST_ACTOR_ID)
        quote = resolver.resolve_active_price(CLIENT_ID, "PICK", date(2026, 2, 10))
        assert quote.policy_id == older.policy_id

    def test_price(self, create_service, create_price, resolver):
        create_service("PICK")
        quote = create_price("PICK", unit_price="12.5")
        assert resolver.price(quote, 3, None) == Decimal("37.5000")
