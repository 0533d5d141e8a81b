"""
Seat ledger: the only writer of flights.available_seats

Both operations are a single conditional UPDATE evaluated by PostgreSQL, so
concurrent callers can never drive the counter below zero or above capacity.
"""
import logging
from typing import Optional

from database.database import cursor_for
from .errors import ValidationError

logger = logging.getLogger(__name__)


class SeatLedger:
    """Atomic per-flight seat counter"""

    @staticmethod
    def reserve(flight_id: int, seats: int, conn=None) -> bool:
        """
        Take ``seats`` from a flight only if that many are still available

        Args:
            flight_id: Flight ID
            seats: Number of seats to take
            conn: Optional connection whose transaction the update joins

        Returns:
            True if the seats were taken, False if the flight is sold out
            (or does not exist). A False result is a business outcome, not a fault.
        """
        if seats < 1:
            raise ValidationError("Seat count must be at least 1")

        with cursor_for(conn) as cursor:
            cursor.execute("""
                UPDATE flights
                SET available_seats = available_seats - %s, updated_at = NOW()
                WHERE id = %s AND available_seats >= %s
                RETURNING available_seats
            """, (seats, flight_id, seats))
            row = cursor.fetchone()

        if row is None:
            logger.info("Reserve of %s seat(s) on flight %s refused: not enough seats", seats, flight_id)
            return False

        logger.info("Reserved %s seat(s) on flight %s, %s left", seats, flight_id, row['available_seats'])
        return True

    @staticmethod
    def release(flight_id: int, seats: int, conn=None) -> bool:
        """
        Return ``seats`` to a flight, never exceeding its total capacity

        Args:
            flight_id: Flight ID
            seats: Number of seats to give back
            conn: Optional connection whose transaction the update joins

        Returns:
            True once applied; False only when the flight does not exist
        """
        if seats < 1:
            raise ValidationError("Seat count must be at least 1")

        with cursor_for(conn) as cursor:
            cursor.execute("""
                UPDATE flights
                SET available_seats = LEAST(total_seats, available_seats + %s),
                    updated_at = NOW()
                WHERE id = %s
                RETURNING available_seats, total_seats
            """, (seats, flight_id))
            row = cursor.fetchone()

        if row is None:
            logger.warning("Release of %s seat(s) ignored: flight %s not found", seats, flight_id)
            return False

        if row['available_seats'] == row['total_seats']:
            logger.debug("Flight %s back at full capacity", flight_id)
        logger.info("Released %s seat(s) on flight %s, %s available", seats, flight_id, row['available_seats'])
        return True

    @staticmethod
    def available(flight_id: int, conn=None) -> Optional[int]:
        """Current available seat count, or None if the flight does not exist"""
        with cursor_for(conn) as cursor:
            cursor.execute("SELECT available_seats FROM flights WHERE id = %s", (flight_id,))
            row = cursor.fetchone()
        return row['available_seats'] if row else None
