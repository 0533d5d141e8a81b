"""
Durable booking records keyed by a unique, human-readable reference
Status changes go through guarded compare-and-swap updates
"""
import logging
import random
from datetime import timedelta
from typing import Callable, Iterable, List, Optional

import psycopg2
from psycopg2.errors import UniqueViolation

from database import (
    Booking, BookingDraft, BookingStatus, PaymentStatus, StatusReason, row_to_booking
)
from database.database import cursor_for
from .errors import BookingError

logger = logging.getLogger(__name__)

REFERENCE_PREFIX = 'FS'
# No O and no 0 so references survive being read aloud
REFERENCE_ALPHABET = 'ABCDEFGHIJKLMNPQRSTUVWXYZ123456789'
REFERENCE_LENGTH = 6
MAX_REFERENCE_ATTEMPTS = 10

_BOOKING_COLUMNS = """
    id, booking_reference, user_id, flight_id, return_flight_id, is_round_trip,
    passenger_count, passenger_name, email, phone_number, id_passport_number,
    total_amount, currency, payment_method, payment_reference, transaction_id,
    special_requests, booking_status, payment_status, status_reason, seats_held,
    created_at, updated_at, cancelled_at
"""

_LOOKUP_COLUMNS = ('id', 'booking_reference', 'payment_reference', 'transaction_id')

_rng = random.SystemRandom()


def generate_booking_reference() -> str:
    """Generate a candidate booking reference such as ``FSK7Q2MD``"""
    return REFERENCE_PREFIX + ''.join(_rng.choices(REFERENCE_ALPHABET, k=REFERENCE_LENGTH))


def unique_booking_reference(is_taken: Callable[[str], bool],
                             max_attempts: int = MAX_REFERENCE_ATTEMPTS) -> str:
    """
    Draw references until ``is_taken`` reports a free one

    Args:
        is_taken: Callback checking a candidate against the store
        max_attempts: Give up after this many collisions

    Returns:
        A reference that ``is_taken`` did not reject
    """
    for _ in range(max_attempts):
        reference = generate_booking_reference()
        if not is_taken(reference):
            return reference
        logger.debug("Booking reference %s already taken, regenerating", reference)
    raise BookingError(f"Could not allocate a unique booking reference after {max_attempts} attempts")


class BookingStore:
    """Persistence and guarded state transitions for bookings"""

    @staticmethod
    def _reference_exists(cursor, reference: str) -> bool:
        cursor.execute("SELECT 1 FROM bookings WHERE booking_reference = %s", (reference,))
        return cursor.fetchone() is not None

    @staticmethod
    def create(draft: BookingDraft, max_attempts: int = MAX_REFERENCE_ATTEMPTS) -> Booking:
        """
        Persist a new booking in (pending, unpaid)

        The reference is checked against the store before insert; the unique
        constraint catches the race where two writers pick the same free
        reference, in which case a fresh one is drawn.

        Args:
            draft: Validated booking request
            max_attempts: Insert attempts before giving up

        Returns:
            The created booking
        """
        contact = draft.contact

        for attempt in range(1, max_attempts + 1):
            try:
                with cursor_for() as cursor:
                    reference = unique_booking_reference(
                        lambda ref: BookingStore._reference_exists(cursor, ref)
                    )
                    cursor.execute(f"""
                        INSERT INTO bookings
                        (booking_reference, user_id, flight_id, return_flight_id, is_round_trip,
                         passenger_count, passenger_name, email, phone_number, id_passport_number,
                         total_amount, currency, payment_method, special_requests,
                         booking_status, payment_status)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                        RETURNING {_BOOKING_COLUMNS}
                    """, (reference, draft.user_id, draft.flight_id, draft.return_flight_id,
                          draft.is_round_trip, draft.passenger_count, contact.passenger_name,
                          contact.email, contact.phone_number, contact.id_passport_number,
                          draft.total_amount, draft.currency, draft.payment_method,
                          draft.special_requests, BookingStatus.PENDING.value,
                          PaymentStatus.UNPAID.value))
                    booking = row_to_booking(cursor.fetchone())
            except UniqueViolation as e:
                if e.diag.constraint_name != 'bookings_reference_unique':
                    raise
                logger.warning("Booking reference collision on insert (attempt %s)", attempt)
                continue

            logger.info("Created booking %s for user %s", booking.booking_reference, booking.user_id)
            return booking

        raise BookingError(f"Could not allocate a unique booking reference after {max_attempts} attempts")

    @staticmethod
    def _get_by(column: str, value, conn=None) -> Optional[Booking]:
        if column not in _LOOKUP_COLUMNS:
            raise ValueError(f"Unsupported booking lookup column: {column}")
        with cursor_for(conn) as cursor:
            cursor.execute(
                f"SELECT {_BOOKING_COLUMNS} FROM bookings WHERE {column} = %s",
                (value,)
            )
            return row_to_booking(cursor.fetchone())

    @staticmethod
    def get(booking_id: int, conn=None) -> Optional[Booking]:
        """Get booking by ID"""
        return BookingStore._get_by('id', booking_id, conn)

    @staticmethod
    def get_by_reference(booking_reference: str, conn=None) -> Optional[Booking]:
        """Get booking by its user-facing reference"""
        return BookingStore._get_by('booking_reference', booking_reference.strip().upper(), conn)

    @staticmethod
    def get_by_payment_reference(payment_reference: str, conn=None) -> Optional[Booking]:
        """Get booking by the checkout correlation reference (tx_ref)"""
        return BookingStore._get_by('payment_reference', payment_reference, conn)

    @staticmethod
    def get_by_transaction_id(transaction_id: str, conn=None) -> Optional[Booking]:
        """Get booking by the provider's transaction id"""
        return BookingStore._get_by('transaction_id', str(transaction_id), conn)

    @staticmethod
    def transition(booking_id: int, expected_status: BookingStatus,
                   new_booking_status: BookingStatus, new_payment_status: PaymentStatus,
                   expected_payment_statuses: Optional[Iterable[PaymentStatus]] = None,
                   reason: Optional[StatusReason] = None, seats_held: Optional[bool] = None,
                   transaction_id: Optional[str] = None, conn=None) -> Optional[Booking]:
        """
        Guarded status update (compare-and-swap on the current status)

        Args:
            booking_id: Booking ID
            expected_status: booking_status the record must currently have
            new_booking_status: booking_status to write
            new_payment_status: payment_status to write
            expected_payment_statuses: Optional allowed current payment statuses
            reason: Reason code to record
            seats_held: New value of the seats_held flag, if it changes
            transaction_id: Provider transaction id to record if none is stored yet
            conn: Optional connection whose transaction the update joins

        Returns:
            The updated booking, or None if the record was not in the expected
            state (conflict: another writer got there first)
        """
        if expected_status == BookingStatus.CANCELLED:
            raise BookingError("Cancelled bookings cannot transition")

        assignments = ["booking_status = %s", "payment_status = %s", "updated_at = NOW()"]
        params: List[object] = [new_booking_status.value, new_payment_status.value]

        if reason is not None:
            assignments.append("status_reason = %s")
            params.append(reason.value)
        if seats_held is not None:
            assignments.append("seats_held = %s")
            params.append(seats_held)
        if transaction_id is not None:
            assignments.append("transaction_id = COALESCE(transaction_id, %s)")
            params.append(str(transaction_id))
        if new_booking_status == BookingStatus.CANCELLED:
            assignments.append("cancelled_at = NOW()")

        conditions = ["id = %s", "booking_status = %s"]
        params.extend([booking_id, expected_status.value])
        if expected_payment_statuses:
            conditions.append("payment_status = ANY(%s)")
            params.append([status.value for status in expected_payment_statuses])

        with cursor_for(conn) as cursor:
            cursor.execute(f"""
                UPDATE bookings
                SET {', '.join(assignments)}
                WHERE {' AND '.join(conditions)}
                RETURNING {_BOOKING_COLUMNS}
            """, params)
            booking = row_to_booking(cursor.fetchone())

        if booking is None:
            logger.info("Transition of booking %s from %s to %s/%s lost the guard",
                        booking_id, expected_status.value, new_booking_status.value,
                        new_payment_status.value)
            return None

        logger.info("Booking %s is now %s/%s%s", booking.booking_reference,
                    booking.booking_status.value, booking.payment_status.value,
                    f" ({reason.value})" if reason else "")
        return booking

    @staticmethod
    def clear_seats_held(booking_id: int, conn=None) -> bool:
        """Flip seats_held off; True only for the single caller that flipped it"""
        with cursor_for(conn) as cursor:
            cursor.execute("""
                UPDATE bookings
                SET seats_held = FALSE, updated_at = NOW()
                WHERE id = %s AND seats_held
                RETURNING id
            """, (booking_id,))
            return cursor.fetchone() is not None

    @staticmethod
    def attach_payment_reference(booking_id: int, payment_reference: str,
                                 payment_method: Optional[str] = None) -> Optional[Booking]:
        """
        Record the checkout correlation reference and mark payment pending

        Returns:
            The updated booking, or None if it is no longer (pending, unpaid)
        """
        try:
            with cursor_for() as cursor:
                cursor.execute(f"""
                    UPDATE bookings
                    SET payment_reference = %s,
                        payment_method = COALESCE(%s, payment_method),
                        payment_status = %s,
                        updated_at = NOW()
                    WHERE id = %s AND booking_status = %s AND payment_status = %s
                    RETURNING {_BOOKING_COLUMNS}
                """, (payment_reference, payment_method, PaymentStatus.PENDING.value,
                      booking_id, BookingStatus.PENDING.value, PaymentStatus.UNPAID.value))
                return row_to_booking(cursor.fetchone())
        except psycopg2.IntegrityError as e:
            raise BookingError(f"Payment reference {payment_reference} already in use") from e

    @staticmethod
    def list_bookings(user_id: Optional[str] = None, flight_id: Optional[int] = None,
                      booking_status: Optional[BookingStatus] = None,
                      limit: int = 100, offset: int = 0) -> List[Booking]:
        """
        List bookings with filters

        Args:
            user_id: Filter by owner (optional)
            flight_id: Filter by either leg's flight (optional)
            booking_status: Filter by booking status (optional)
            limit: Maximum number of bookings to return
            offset: Number of bookings to skip

        Returns:
            Bookings, newest first
        """
        where_clauses = []
        params: List[object] = []

        if user_id:
            where_clauses.append("user_id = %s")
            params.append(user_id)

        if flight_id:
            where_clauses.append("(flight_id = %s OR return_flight_id = %s)")
            params.extend([flight_id, flight_id])

        if booking_status:
            where_clauses.append("booking_status = %s")
            params.append(booking_status.value)

        where_sql = " AND ".join(where_clauses) if where_clauses else "TRUE"
        params.extend([limit, offset])

        with cursor_for() as cursor:
            cursor.execute(f"""
                SELECT {_BOOKING_COLUMNS}
                FROM bookings
                WHERE {where_sql}
                ORDER BY created_at DESC, id DESC
                LIMIT %s OFFSET %s
            """, params)
            return [row_to_booking(row) for row in cursor.fetchall()]

    @staticmethod
    def list_stale_pending(older_than: timedelta, limit: int = 500) -> List[Booking]:
        """Pending bookings created more than ``older_than`` ago by the store clock (abandoned checkouts)"""
        with cursor_for() as cursor:
            cursor.execute(f"""
                SELECT {_BOOKING_COLUMNS}
                FROM bookings
                WHERE booking_status = %s AND created_at < NOW() - %s
                ORDER BY created_at
                LIMIT %s
            """, (BookingStatus.PENDING.value, older_than, limit))
            return [row_to_booking(row) for row in cursor.fetchall()]
