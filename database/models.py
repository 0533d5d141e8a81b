"""
Data models for the FlySafari booking core
Plain Python classes and enums (no ORM)
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional
import enum


class FlightStatus(enum.Enum):
    """Flight lifecycle status"""
    SCHEDULED = "scheduled"
    DEPARTED = "departed"
    ARRIVED = "arrived"
    CANCELLED = "cancelled"
    DELAYED = "delayed"


class BookingStatus(enum.Enum):
    """Booking status enumeration"""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class PaymentStatus(enum.Enum):
    """Payment status enumeration"""
    UNPAID = "unpaid"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class StatusReason(enum.Enum):
    """Reason codes recorded when a booking is cancelled or fails"""
    PAYMENT_FAILED = "PAYMENT_FAILED"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    CURRENCY_MISMATCH = "CURRENCY_MISMATCH"
    SOLD_OUT_AT_CONFIRMATION = "SOLD_OUT_AT_CONFIRMATION"
    CANCELLED_BY_CUSTOMER = "CANCELLED_BY_CUSTOMER"
    CANCELLED_BY_ADMIN = "CANCELLED_BY_ADMIN"
    FLIGHT_CANCELLED = "FLIGHT_CANCELLED"
    PAYMENT_ABANDONED = "PAYMENT_ABANDONED"


BOOKABLE_FLIGHT_STATUSES = (FlightStatus.SCHEDULED, FlightStatus.DELAYED)


@dataclass(frozen=True)
class Actor:
    """Caller identity resolved once per request by the identity provider"""
    user_id: str
    is_admin: bool = False


@dataclass
class ContactInfo:
    """Lead passenger contact and identity details"""
    passenger_name: str
    email: str
    phone_number: str
    id_passport_number: str


@dataclass
class Flight:
    """Flight model with schedule and seat inventory"""
    id: Optional[int] = None
    airline: Optional[str] = None
    flight_number: Optional[str] = None
    origin: Optional[str] = None
    destination: Optional[str] = None
    departure_time: Optional[datetime] = None
    arrival_time: Optional[datetime] = None
    duration: Optional[str] = None
    price: Optional[Decimal] = None
    baggage_allowance: Optional[str] = None
    total_seats: Optional[int] = None
    available_seats: Optional[int] = None
    status: Optional[FlightStatus] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_bookable(self) -> bool:
        return self.status in BOOKABLE_FLIGHT_STATUSES

    def __repr__(self):
        return f"<Flight(id={self.id}, number='{self.flight_number}', route='{self.origin}->{self.destination}')>"


@dataclass
class BookingDraft:
    """Validated booking request ready to be persisted"""
    user_id: str
    flight_id: int
    passenger_count: int
    contact: ContactInfo
    total_amount: Decimal
    currency: str
    return_flight_id: Optional[int] = None
    payment_method: Optional[str] = None
    special_requests: Optional[str] = None

    @property
    def is_round_trip(self) -> bool:
        return self.return_flight_id is not None


@dataclass
class Booking:
    """Booking model; status is the pair (booking_status, payment_status)"""
    id: Optional[int] = None
    booking_reference: Optional[str] = None
    user_id: Optional[str] = None
    flight_id: Optional[int] = None
    return_flight_id: Optional[int] = None
    is_round_trip: bool = False
    passenger_count: Optional[int] = None
    passenger_name: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    id_passport_number: Optional[str] = None
    total_amount: Optional[Decimal] = None
    currency: Optional[str] = None
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    transaction_id: Optional[str] = None
    special_requests: Optional[str] = None
    booking_status: Optional[BookingStatus] = None
    payment_status: Optional[PaymentStatus] = None
    status_reason: Optional[StatusReason] = None
    seats_held: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @property
    def leg_flight_ids(self) -> list:
        """Flight ids of every leg, outbound first"""
        legs = [self.flight_id]
        if self.is_round_trip and self.return_flight_id is not None:
            legs.append(self.return_flight_id)
        return legs

    @property
    def is_final(self) -> bool:
        """Confirmed or cancelled bookings accept no further payment transitions"""
        return self.booking_status in (BookingStatus.CONFIRMED, BookingStatus.CANCELLED)

    def __repr__(self):
        return (f"<Booking(id={self.id}, ref='{self.booking_reference}', "
                f"status={self.booking_status.value if self.booking_status else None}/"
                f"{self.payment_status.value if self.payment_status else None})>")


def row_to_flight(row) -> Flight:
    """Convert database row to Flight object"""
    if not row:
        return None
    return Flight(
        id=row['id'],
        airline=row['airline'],
        flight_number=row['flight_number'],
        origin=row['origin'],
        destination=row['destination'],
        departure_time=row['departure_time'],
        arrival_time=row['arrival_time'],
        duration=row.get('duration'),
        price=row['price'],
        baggage_allowance=row.get('baggage_allowance'),
        total_seats=row['total_seats'],
        available_seats=row['available_seats'],
        status=FlightStatus(row['status']) if row['status'] else None,
        created_at=row.get('created_at'),
        updated_at=row.get('updated_at')
    )


def row_to_booking(row) -> Booking:
    """Convert database row to Booking object"""
    if not row:
        return None
    return Booking(
        id=row['id'],
        booking_reference=row['booking_reference'],
        user_id=row['user_id'],
        flight_id=row['flight_id'],
        return_flight_id=row.get('return_flight_id'),
        is_round_trip=bool(row['is_round_trip']),
        passenger_count=row['passenger_count'],
        passenger_name=row['passenger_name'],
        email=row['email'],
        phone_number=row['phone_number'],
        id_passport_number=row['id_passport_number'],
        total_amount=row['total_amount'],
        currency=row['currency'],
        payment_method=row.get('payment_method'),
        payment_reference=row.get('payment_reference'),
        transaction_id=row.get('transaction_id'),
        special_requests=row.get('special_requests'),
        booking_status=BookingStatus(row['booking_status']) if row['booking_status'] else None,
        payment_status=PaymentStatus(row['payment_status']) if row['payment_status'] else None,
        status_reason=StatusReason(row['status_reason']) if row.get('status_reason') else None,
        seats_held=bool(row.get('seats_held')),
        created_at=row.get('created_at'),
        updated_at=row.get('updated_at'),
        cancelled_at=row.get('cancelled_at')
    )
