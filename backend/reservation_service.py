"""
Reservation workflow: turns a flight selection into a pending booking and
handles customer/admin cancellation

Seats are not taken when a booking is created; they are reserved only when
payment is reconciled, so abandoned checkouts never hold inventory.
"""
import logging
import re
from datetime import timedelta
from typing import List, Optional, Tuple, Union

from database import (
    Actor, Booking, BookingDraft, BookingStatus, ContactInfo, Flight, StatusReason,
    get_db_manager
)
from .booking_store import BookingStore
from .errors import BookingError, BookingNotFoundError, PermissionDeniedError, ValidationError
from .flight_service import FlightService
from .payment_gateway import DEFAULT_CURRENCY, CheckoutRequest, FlutterwaveGateway, new_tx_ref
from .pricing import price
from .seat_ledger import SeatLedger

logger = logging.getLogger(__name__)

_EMAIL = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
MAX_CANCEL_ATTEMPTS = 3
ABANDONED_AFTER = timedelta(minutes=30)


def _as_actor(user: Union[Actor, str]) -> Actor:
    return user if isinstance(user, Actor) else Actor(user_id=str(user))


class ReservationService:
    """Booking creation, checkout initiation and cancellation"""

    @staticmethod
    def _authorize(actor: Actor, booking: Booking) -> None:
        if not actor.is_admin and actor.user_id != booking.user_id:
            raise PermissionDeniedError(
                f"User {actor.user_id} may not access booking {booking.booking_reference}"
            )

    @staticmethod
    def _load_bookable_flight(flight_id: int, leg: str) -> Flight:
        flight = FlightService.get_flight(flight_id)
        if not flight:
            raise ValidationError(f"{leg.capitalize()} flight {flight_id} not found")
        if not flight.is_bookable:
            raise ValidationError(
                f"Flight {flight.flight_number} is not available for booking (status: {flight.status.value})"
            )
        if flight.origin.strip().lower() == flight.destination.strip().lower():
            raise ValidationError(f"Flight {flight.flight_number} has the same origin and destination")
        return flight

    @staticmethod
    def _validate_contact(contact: Optional[ContactInfo]) -> ContactInfo:
        if contact is None:
            raise ValidationError("Passenger contact details are required")

        for field_name in ('passenger_name', 'email', 'phone_number', 'id_passport_number'):
            value = getattr(contact, field_name)
            if not value or not str(value).strip():
                raise ValidationError(f"{field_name.replace('_', ' ').capitalize()} is required")

        if not _EMAIL.match(contact.email.strip()):
            raise ValidationError(f"Invalid email address: {contact.email}")

        return ContactInfo(
            passenger_name=contact.passenger_name.strip(),
            email=contact.email.strip().lower(),
            phone_number=contact.phone_number.strip(),
            id_passport_number=contact.id_passport_number.strip(),
        )

    @staticmethod
    def initiate(user: Union[Actor, str], outbound_flight_id: int,
                 return_flight_id: Optional[int] = None, passenger_count: int = 1,
                 contact: Optional[ContactInfo] = None, payment_method: Optional[str] = None,
                 special_requests: Optional[str] = None, tax_rate=None,
                 currency: Optional[str] = None) -> Booking:
        """
        Create a pending booking for one or two legs

        Availability is checked here only as advice to the customer; nothing
        is reserved until payment is confirmed.

        Args:
            user: Acting user (Actor or bare user id)
            outbound_flight_id: Outbound flight ID
            return_flight_id: Return flight ID for round trips (optional)
            passenger_count: Number of passengers, at least 1
            contact: Lead passenger contact details
            payment_method: Preferred payment method (optional)
            special_requests: Free-text requests (optional)
            tax_rate: Override of the default tax rate
            currency: Payment currency (defaults to PAYMENT_CURRENCY)

        Returns:
            Booking in (pending, unpaid)

        Raises:
            ValidationError: If the request cannot be booked as given
        """
        actor = _as_actor(user)
        if not actor.user_id:
            raise ValidationError("A user id is required to book")

        if not isinstance(passenger_count, int) or passenger_count < 1:
            raise ValidationError("Passenger count must be at least 1")

        contact = ReservationService._validate_contact(contact)

        outbound = ReservationService._load_bookable_flight(outbound_flight_id, 'outbound')
        legs = [outbound]

        inbound = None
        if return_flight_id is not None:
            if return_flight_id == outbound_flight_id:
                raise ValidationError("Return flight must differ from the outbound flight")
            inbound = ReservationService._load_bookable_flight(return_flight_id, 'return')
            if inbound.origin.strip().lower() != outbound.destination.strip().lower():
                raise ValidationError(
                    f"Return flight must depart from {outbound.destination}, not {inbound.origin}"
                )
            if inbound.departure_time <= outbound.arrival_time:
                raise ValidationError("Return flight must depart after the outbound flight arrives")
            legs.append(inbound)

        for flight in legs:
            if passenger_count > flight.available_seats:
                raise ValidationError(
                    f"Only {flight.available_seats} seat(s) left on flight {flight.flight_number}"
                )

        total = price(outbound.price, inbound.price if inbound else None, passenger_count,
                      inbound is not None, tax_rate)

        draft = BookingDraft(
            user_id=actor.user_id,
            flight_id=outbound.id,
            return_flight_id=inbound.id if inbound else None,
            passenger_count=passenger_count,
            contact=contact,
            total_amount=total,
            currency=currency or DEFAULT_CURRENCY,
            payment_method=payment_method,
            special_requests=special_requests.strip() if special_requests else None,
        )
        return BookingStore.create(draft)

    @staticmethod
    def start_checkout(booking_id: int, actor: Actor, payment_method: str = 'card',
                       gateway=None, phone_number: Optional[str] = None) -> CheckoutRequest:
        """
        Prepare the provider checkout for a pending booking

        The correlation reference (tx_ref) is stored on the booking before the
        request is returned so a webhook can always be matched. Calling again
        reuses the stored reference.

        Returns:
            CheckoutRequest for the client to hand to the provider
        """
        gateway = gateway or FlutterwaveGateway()
        booking = ReservationService.get_booking_for(actor, booking_id)

        if booking.booking_status != BookingStatus.PENDING:
            raise ValidationError(
                f"Booking {booking.booking_reference} is {booking.booking_status.value}, not awaiting payment"
            )

        if booking.payment_reference is None:
            updated = BookingStore.attach_payment_reference(booking.id, new_tx_ref(), payment_method)
            booking = updated or BookingStore.get(booking.id)
            if booking.booking_status != BookingStatus.PENDING or booking.payment_reference is None:
                raise ValidationError(f"Booking {booking.booking_reference} is no longer awaiting payment")
            logger.info("Checkout started for booking %s (tx_ref %s)",
                        booking.booking_reference, booking.payment_reference)

        return gateway.build_checkout(booking, booking.payment_reference, payment_method, phone_number)

    @staticmethod
    def _cancel(booking: Booking, reason: StatusReason) -> Tuple[Booking, bool]:
        """Cancel with transition-then-release; returns (booking, whether this call cancelled it)"""
        db_manager = get_db_manager()

        for _ in range(MAX_CANCEL_ATTEMPTS):
            if booking.booking_status == BookingStatus.CANCELLED:
                return booking, False

            with db_manager.transaction() as conn:
                cancelled = BookingStore.transition(
                    booking.id,
                    expected_status=booking.booking_status,
                    new_booking_status=BookingStatus.CANCELLED,
                    new_payment_status=booking.payment_status,
                    expected_payment_statuses=[booking.payment_status],
                    reason=reason,
                    conn=conn,
                )
                if cancelled is not None and BookingStore.clear_seats_held(cancelled.id, conn):
                    for flight_id in sorted(cancelled.leg_flight_ids):
                        SeatLedger.release(flight_id, cancelled.passenger_count, conn)
                    cancelled.seats_held = False

            if cancelled is not None:
                return cancelled, True

            # Lost the guard to a concurrent writer; act on the fresh state
            booking = BookingStore.get(booking.id)

        raise BookingError(f"Booking {booking.booking_reference} kept changing while cancelling; retry")

    @staticmethod
    def cancel(booking_id: int, actor: Actor, reason: Optional[StatusReason] = None) -> Booking:
        """
        Cancel a booking, restoring seats if they had been reserved

        Cancelling an already cancelled booking is a no-op that returns it.

        Args:
            booking_id: Booking ID
            actor: Owner or administrator

        Returns:
            The cancelled booking
        """
        booking = ReservationService.get_booking_for(actor, booking_id)

        if reason is None:
            reason = (StatusReason.CANCELLED_BY_ADMIN
                      if actor.is_admin and actor.user_id != booking.user_id
                      else StatusReason.CANCELLED_BY_CUSTOMER)

        booking, changed = ReservationService._cancel(booking, reason)
        if not changed:
            logger.info("Booking %s already cancelled; nothing to do", booking.booking_reference)
        return booking

    @staticmethod
    def cancel_bookings_for_flight(flight_id: int, actor: Actor) -> int:
        """Cancel every active booking on either leg of a flight (admin only)"""
        if not actor.is_admin:
            raise PermissionDeniedError("Only administrators can cancel bookings for a flight")

        cancelled = 0
        for status in (BookingStatus.PENDING, BookingStatus.CONFIRMED):
            while True:
                batch = BookingStore.list_bookings(flight_id=flight_id, booking_status=status, limit=200)
                if not batch:
                    break
                progressed = False
                for booking in batch:
                    _, changed = ReservationService._cancel(booking, StatusReason.FLIGHT_CANCELLED)
                    progressed = progressed or changed
                    cancelled += int(changed)
                if not progressed:
                    break

        logger.info("Cancelled %s booking(s) for flight %s", cancelled, flight_id)
        return cancelled

    @staticmethod
    def expire_abandoned(older_than: timedelta = ABANDONED_AFTER) -> int:
        """Cancel pending bookings whose checkout was never completed"""
        expired = 0
        for booking in BookingStore.list_stale_pending(older_than):
            _, changed = ReservationService._cancel(booking, StatusReason.PAYMENT_ABANDONED)
            expired += int(changed)
        if expired:
            logger.info("Expired %s abandoned booking(s) older than %s", expired, older_than)
        return expired

    @staticmethod
    def get_booking_for(actor: Actor, booking_id: int) -> Booking:
        """Load a booking the actor is allowed to see"""
        booking = BookingStore.get(booking_id)
        if booking is None:
            raise BookingNotFoundError(f"Booking with ID {booking_id} not found")
        ReservationService._authorize(actor, booking)
        return booking

    @staticmethod
    def get_booking_by_reference_for(actor: Actor, booking_reference: str) -> Booking:
        booking = BookingStore.get_by_reference(booking_reference)
        if booking is None:
            raise BookingNotFoundError(f"Booking {booking_reference} not found")
        ReservationService._authorize(actor, booking)
        return booking

    @staticmethod
    def list_bookings_for(actor: Actor, booking_status: Optional[BookingStatus] = None,
                          limit: int = 100, offset: int = 0) -> List[Booking]:
        """Customers see their own bookings; administrators see all"""
        return BookingStore.list_bookings(
            user_id=None if actor.is_admin else actor.user_id,
            booking_status=booking_status,
            limit=limit,
            offset=offset,
        )
