"""
Flight lookups used by the booking workflow
Creation exists for seeding and fixtures; schedule management lives elsewhere
"""
import logging
from datetime import datetime
from typing import Optional

from database import Flight, FlightStatus, row_to_flight
from database.database import cursor_for
from .errors import ValidationError
from .pricing import to_decimal

logger = logging.getLogger(__name__)

_FLIGHT_COLUMNS = """
    id, airline, flight_number, origin, destination, departure_time, arrival_time,
    duration, price, baggage_allowance, total_seats, available_seats, status,
    created_at, updated_at
"""


def _format_duration(departure_time: datetime, arrival_time: datetime) -> str:
    minutes = int((arrival_time - departure_time).total_seconds() // 60)
    return f"{minutes // 60}h {minutes % 60:02d}m"


class FlightService:
    """Service for flight reads"""

    @staticmethod
    def create_flight(airline: str, flight_number: str, origin: str, destination: str,
                      departure_time: datetime, arrival_time: datetime, price,
                      total_seats: int, baggage_allowance: str = '23kg',
                      status: FlightStatus = FlightStatus.SCHEDULED,
                      available_seats: Optional[int] = None) -> Flight:
        """
        Create a new flight

        Args:
            airline: Operating airline
            flight_number: Unique flight number
            origin: Departure city
            destination: Arrival city
            departure_time: Scheduled departure
            arrival_time: Scheduled arrival
            price: Base fare per passenger
            total_seats: Seat capacity
            baggage_allowance: Checked baggage allowance
            status: Initial lifecycle status
            available_seats: Initial availability (defaults to total_seats)

        Returns:
            Created flight object
        """
        if origin.strip().lower() == destination.strip().lower():
            raise ValidationError("Origin and destination must differ")
        if arrival_time <= departure_time:
            raise ValidationError("Arrival must be after departure")
        if total_seats < 0:
            raise ValidationError("Total seats cannot be negative")

        if available_seats is None:
            available_seats = total_seats
        if not 0 <= available_seats <= total_seats:
            raise ValidationError("Available seats must be between 0 and total seats")

        with cursor_for() as cursor:
            cursor.execute("SELECT id FROM flights WHERE flight_number = %s", (flight_number,))
            if cursor.fetchone():
                raise ValidationError(f"Flight number {flight_number} already exists")

            cursor.execute(f"""
                INSERT INTO flights (airline, flight_number, origin, destination,
                                     departure_time, arrival_time, duration, price,
                                     baggage_allowance, total_seats, available_seats, status)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING {_FLIGHT_COLUMNS}
            """, (airline, flight_number, origin, destination, departure_time, arrival_time,
                  _format_duration(departure_time, arrival_time), to_decimal(price),
                  baggage_allowance, total_seats, available_seats, status.value))
            flight = row_to_flight(cursor.fetchone())

        logger.info("Created flight %s %s->%s with %s seats", flight.flight_number,
                    flight.origin, flight.destination, flight.total_seats)
        return flight

    @staticmethod
    def get_flight(flight_id: int, conn=None) -> Optional[Flight]:
        """Get flight by ID"""
        with cursor_for(conn) as cursor:
            cursor.execute(f"SELECT {_FLIGHT_COLUMNS} FROM flights WHERE id = %s", (flight_id,))
            return row_to_flight(cursor.fetchone())

    @staticmethod
    def get_flight_by_number(flight_number: str) -> Optional[Flight]:
        """Get flight by flight number"""
        with cursor_for() as cursor:
            cursor.execute(f"SELECT {_FLIGHT_COLUMNS} FROM flights WHERE flight_number = %s",
                           (flight_number,))
            return row_to_flight(cursor.fetchone())
