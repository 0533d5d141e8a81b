"""
Fare calculation for one-way and round-trip bookings
Pure functions; amounts are Decimals rounded to cents
"""
import os
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from .errors import ValidationError

CENTS = Decimal('0.01')
DEFAULT_TAX_RATE = Decimal(os.getenv('TAX_RATE', '0.16'))


def to_decimal(value) -> Decimal:
    """Convert ints, floats and strings to Decimal without binary float noise"""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(frozen=True)
class PriceBreakdown:
    subtotal: Decimal
    taxes: Decimal
    total: Decimal


def price_breakdown(outbound_fare, return_fare, passenger_count: int,
                    is_round_trip: bool, tax_rate=None) -> PriceBreakdown:
    """
    Split the payable amount into fare subtotal and taxes

    Args:
        outbound_fare: Base fare of the outbound leg
        return_fare: Base fare of the return leg (ignored unless round trip)
        passenger_count: Number of passengers, at least 1
        is_round_trip: Whether the return fare applies
        tax_rate: Tax as a fraction (defaults to TAX_RATE, 0.16)

    Returns:
        PriceBreakdown with subtotal, taxes and total
    """
    if passenger_count is None or passenger_count < 1:
        raise ValidationError("Passenger count must be at least 1")
    if is_round_trip and return_fare is None:
        raise ValidationError("Round-trip pricing requires a return fare")

    rate = DEFAULT_TAX_RATE if tax_rate is None else to_decimal(tax_rate)
    if rate < 0:
        raise ValidationError("Tax rate cannot be negative")

    fare = to_decimal(outbound_fare)
    if is_round_trip:
        fare += to_decimal(return_fare)
    if fare < 0:
        raise ValidationError("Fares cannot be negative")

    subtotal = fare * passenger_count
    total = (subtotal * (1 + rate)).quantize(CENTS, rounding=ROUND_HALF_UP)
    subtotal = subtotal.quantize(CENTS, rounding=ROUND_HALF_UP)
    return PriceBreakdown(subtotal=subtotal, taxes=total - subtotal, total=total)


def price(outbound_fare, return_fare: Optional[object], passenger_count: int,
          is_round_trip: bool, tax_rate=None) -> Decimal:
    """Total payable: (outbound + return if round trip) x passengers x (1 + tax)"""
    return price_breakdown(outbound_fare, return_fare, passenger_count,
                           is_round_trip, tax_rate).total
