"""Database package initialization"""
from .models import (
    Actor, ContactInfo, Flight, Booking, BookingDraft,
    FlightStatus, BookingStatus, PaymentStatus, StatusReason, BOOKABLE_FLIGHT_STATUSES,
    row_to_flight, row_to_booking
)
from .database import DatabaseManager, StoreUnavailableError, get_db_manager, set_db_manager

__all__ = [
    'Actor', 'ContactInfo', 'Flight', 'Booking', 'BookingDraft',
    'FlightStatus', 'BookingStatus', 'PaymentStatus', 'StatusReason', 'BOOKABLE_FLIGHT_STATUSES',
    'row_to_flight', 'row_to_booking',
    'DatabaseManager', 'StoreUnavailableError', 'get_db_manager', 'set_db_manager'
]
