"""
Fare calculation tests
"""
from decimal import Decimal

import pytest

from backend.errors import ValidationError
from backend.pricing import price, price_breakdown, to_decimal


class TestPrice:
    """Totals for one-way and round-trip bookings"""

    def test_one_way_two_passengers(self):
        assert price(10000, None, 2, False, 0.16) == Decimal('23200.00')

    def test_round_trip_three_passengers(self):
        assert price(10000, 8000, 3, True, 0.16) == Decimal('62640.00')

    def test_return_fare_ignored_for_one_way(self):
        assert price(10000, 8000, 1, False, 0.16) == Decimal('11600.00')

    def test_default_tax_rate(self):
        assert price(10000, None, 1, False) == Decimal('11600.00')

    def test_zero_tax(self):
        assert price('4999.99', None, 1, False, 0) == Decimal('4999.99')

    def test_rounds_half_up_to_cents(self):
        # 0.125 * 1.16 = 0.145 exactly, which rounds up
        assert price('0.125', None, 1, False, '0.16') == Decimal('0.15')

    def test_float_fares_have_no_binary_noise(self):
        assert price(0.1, 0.2, 1, True, 0) == Decimal('0.30')


class TestPriceBreakdown:
    """Subtotal, taxes and total"""

    def test_parts_add_up(self):
        breakdown = price_breakdown(10000, 8000, 3, True, 0.16)
        assert breakdown.subtotal == Decimal('54000.00')
        assert breakdown.taxes == Decimal('8640.00')
        assert breakdown.total == breakdown.subtotal + breakdown.taxes

    @pytest.mark.parametrize('passenger_count', [0, -1, None])
    def test_rejects_bad_passenger_count(self, passenger_count):
        with pytest.raises(ValidationError, match="Passenger count"):
            price_breakdown(10000, None, passenger_count, False)

    def test_round_trip_requires_return_fare(self):
        with pytest.raises(ValidationError, match="return fare"):
            price_breakdown(10000, None, 1, True)

    def test_rejects_negative_tax(self):
        with pytest.raises(ValidationError, match="Tax rate"):
            price_breakdown(10000, None, 1, False, -0.1)

    def test_rejects_negative_fare(self):
        with pytest.raises(ValidationError, match="Fares"):
            price_breakdown(-10, None, 1, False)


def test_to_decimal_keeps_decimals():
    value = Decimal('12.34')
    assert to_decimal(value) is value
    assert to_decimal('12.34') == value
