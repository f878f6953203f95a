"""Tests for the pricing calculator."""

from decimal import Decimal

import pytest

from storefront import pricing


class TestEffectiveUnitPrice:
    def test_base_price_only(self):
        assert pricing.effective_unit_price(Decimal("150000")) == Decimal("150000.00")

    def test_additional_is_added_to_base(self):
        assert pricing.effective_unit_price("150000", "25000") == Decimal("175000.00")

    def test_override_replaces_base_entirely(self):
        price = pricing.effective_unit_price("150000", "25000", Decimal("99000"))
        assert price == Decimal("99000.00")

    def test_zero_override_still_overrides(self):
        assert pricing.effective_unit_price("150000", None, Decimal("0")) == Decimal("0.00")


class TestTotals:
    def test_line_subtotal(self):
        assert pricing.line_subtotal(Decimal("33333.33"), 3) == Decimal("99999.99")

    def test_order_subtotal_has_no_float_drift(self):
        lines = [Decimal("0.10")] * 10
        assert pricing.order_subtotal(lines) == Decimal("1.00")

    def test_order_subtotal_of_nothing(self):
        assert pricing.order_subtotal([]) == Decimal("0.00")

    def test_order_total_adds_shipping(self):
        assert pricing.order_total(Decimal("130000"), "20000") == Decimal("150000.00")

    def test_negative_shipping_rejected(self):
        with pytest.raises(ValueError):
            pricing.order_total(Decimal("130000"), Decimal("-1"))

    def test_to_money_rounds_half_up(self):
        assert pricing.to_money("10.005") == Decimal("10.01")
        assert pricing.to_money(None) == Decimal("0.00")
