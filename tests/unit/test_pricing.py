"""Unit tests for basis units, amounts and the billing policy."""

from datetime import date
from decimal import Decimal

import pytest

from billing_kernel.domain.policy import DEFAULT_POLICY, BillingPolicy
from billing_kernel.domain.pricing import compute_amount, compute_basis_units
from billing_kernel.domain.statuses import BillingBasis, BillingUnit


class TestBasisUnits:

    def test_qty(self):
        assert compute_basis_units(BillingBasis.QTY, 40, 3) == Decimal(40)

    def test_box(self):
        assert compute_basis_units(BillingBasis.BOX, 40, 3) == Decimal(3)

    def test_box_without_count_is_zero(self):
        assert compute_basis_units(BillingBasis.BOX, 40, None) == Decimal(0)

    def test_order_is_flat(self):
        assert compute_basis_units("ORDER", 40, 3) == Decimal(1)

    def test_manual_is_zero(self):
        assert compute_basis_units(BillingBasis.MANUAL, 40, 3) == Decimal(0)

    @pytest.mark.parametrize("basis", ["CBM", "PALLET", "", None])
    def test_unknown_basis_is_zero(self, basis):
        assert compute_basis_units(basis, 5, 2) == Decimal(0)


class TestAmount:

    def test_rounded_not_truncated(self):
        # 3 x 12.33335 = 37.00005 -> 37.0001
        assert compute_amount(Decimal("12.33335"), Decimal(3)) == Decimal("37.0001")

    def test_simple(self):
        assert compute_amount(Decimal("12"), Decimal(10)) == Decimal("120.0000")


class TestBillingUnitDefaults:

    @pytest.mark.parametrize(
        "unit, basis",
        [
            (BillingUnit.ORDER, BillingBasis.ORDER),
            (BillingUnit.BOX, BillingBasis.BOX),
            (BillingUnit.SKU, BillingBasis.QTY),
            (BillingUnit.CBM, BillingBasis.MANUAL),
            (BillingUnit.MONTH, BillingBasis.MANUAL),
        ],
    )
    def test_default_basis(self, unit, basis):
        assert unit.default_basis is basis


class TestBillingPolicy:

    def test_invoice_number_format(self):
        assert DEFAULT_POLICY.invoice_number(7, "202602", 1) == "KRW-7-202602-0001"
        assert DEFAULT_POLICY.invoice_number(7, "202602", 12345) == "KRW-7-202602-12345"

    def test_due_date(self):
        assert DEFAULT_POLICY.due_date_for(date(2026, 2, 28)) is None
        policy = BillingPolicy(due_days=30)
        assert policy.due_date_for(date(2026, 2, 1)) == date(2026, 3, 3)

    def test_rejects_negative_vat(self):
        with pytest.raises(ValueError):
            BillingPolicy(vat_rate=Decimal("-0.01"))

    def test_rejects_zero_truncation_unit(self):
        with pytest.raises(ValueError):
            BillingPolicy(truncation_unit=Decimal("0"))
