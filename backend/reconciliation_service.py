"""
Payment reconciliation: applies provider outcomes to bookings

Webhooks and client-triggered verification both end in ``on_payment_event``,
whose guarded transitions make duplicate or racing events harmless. Seats are
reserved here, inside the same transaction that confirms the booking.
"""
import enum
import hmac
import json
import logging
import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping, Optional, Tuple

from database import Booking, BookingStatus, PaymentStatus, StatusReason, get_db_manager
from .booking_store import BookingStore
from .errors import (
    BookingError, PaymentGatewayError, StoreUnavailableError, ValidationError, WebhookAuthenticationError
)
from .payment_gateway import FlutterwaveGateway
from .pricing import to_decimal
from .seat_ledger import SeatLedger

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal('0.01')
SIGNATURE_HEADER = 'verif-hash'

_OPEN_PAYMENT_STATUSES = (PaymentStatus.UNPAID, PaymentStatus.PENDING)
_SUCCESS_STATUSES = ('successful', 'completed')
_FAILED_STATUSES = ('failed', 'cancelled')


class ReconciliationOutcome(enum.Enum):
    HANDLED = "handled"
    IGNORED = "ignored"


class PaymentOutcome(enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class VerificationStatus(enum.Enum):
    VERIFIED = "verified"
    REJECTED = "rejected"


@dataclass
class ReconciliationResult:
    """What a payment event did to its booking"""
    outcome: ReconciliationOutcome
    booking: Optional[Booking] = None
    reason: str = ''

    @property
    def handled(self) -> bool:
        return self.outcome == ReconciliationOutcome.HANDLED


@dataclass
class VerificationResult:
    status: VerificationStatus
    booking: Optional[Booking] = None
    reason: str = ''

    @property
    def verified(self) -> bool:
        return self.status == VerificationStatus.VERIFIED


@dataclass(frozen=True)
class PaymentEvent:
    """A webhook body reduced to the fields reconciliation needs"""
    event: str
    provider_reference: Optional[str]
    transaction_id: Optional[str]
    outcome: Optional[PaymentOutcome]
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    customer_email: Optional[str] = None


def parse_webhook(payload) -> PaymentEvent:
    """
    Parse a Flutterwave webhook body

    ``charge.completed`` with a successful status maps to SUCCESS,
    ``charge.failed`` or a failed/cancelled status to FAILURE. Any other event
    or status parses with ``outcome=None`` and is left alone by the caller.

    Raises:
        ValidationError: If the body is not a webhook payload
    """
    if not isinstance(payload, dict) or not isinstance(payload.get('data'), dict):
        raise ValidationError("Webhook payload must be an object with a 'data' object")

    event = str(payload.get('event') or '')
    data = payload['data']
    status = str(data.get('status') or '').lower()

    outcome = None
    if event == 'charge.failed' or (event == 'charge.completed' and status in _FAILED_STATUSES):
        outcome = PaymentOutcome.FAILURE
    elif event == 'charge.completed' and status in _SUCCESS_STATUSES:
        outcome = PaymentOutcome.SUCCESS

    transaction_id = data.get('id')
    if transaction_id is None:
        transaction_id = data.get('flw_ref')

    amount = data.get('amount')
    try:
        amount = to_decimal(amount) if amount is not None else None
    except ArithmeticError as e:
        raise ValidationError(f"Invalid amount in webhook: {amount!r}") from e
    if amount is not None and not amount.is_finite():
        raise ValidationError(f"Invalid amount in webhook: {amount!r}")

    currency = data.get('currency')
    if currency is not None and not isinstance(currency, str):
        raise ValidationError(f"Invalid currency in webhook: {currency!r}")

    customer = data.get('customer') or {}
    if not isinstance(customer, dict):
        raise ValidationError("Webhook 'customer' must be an object")

    return PaymentEvent(
        event=event,
        provider_reference=data.get('tx_ref'),
        transaction_id=str(transaction_id) if transaction_id is not None else None,
        outcome=outcome,
        amount=amount,
        currency=currency,
        customer_email=customer.get('email'),
    )


class PaymentReconciliationService:
    """Turns provider payment outcomes into booking and seat changes"""

    def __init__(self, gateway=None, webhook_secret: Optional[str] = None):
        """
        Args:
            gateway: Provider client used by ``verify`` (FlutterwaveGateway by default)
            webhook_secret: Expected ``verif-hash`` value (FLUTTERWAVE_SECRET_HASH)
        """
        self.gateway = gateway or FlutterwaveGateway()
        self.webhook_secret = webhook_secret or os.getenv('FLUTTERWAVE_SECRET_HASH', '')

    @staticmethod
    def _find_booking(provider_reference: Optional[str], transaction_id: Optional[str]) -> Optional[Booking]:
        booking = None
        if provider_reference:
            booking = BookingStore.get_by_payment_reference(provider_reference)
        if booking is None and transaction_id:
            booking = BookingStore.get_by_transaction_id(transaction_id)
        return booking

    @staticmethod
    def _mismatch(booking: Booking, amount, currency: Optional[str]) -> Optional[StatusReason]:
        if amount is None or abs(to_decimal(amount) - booking.total_amount) > AMOUNT_TOLERANCE:
            logger.warning("Payment amount %s does not match booking %s total %s",
                           amount, booking.booking_reference, booking.total_amount)
            return StatusReason.AMOUNT_MISMATCH
        if not currency or currency.strip().upper() != booking.currency.upper():
            logger.warning("Payment currency %s does not match booking %s currency %s",
                           currency, booking.booking_reference, booking.currency)
            return StatusReason.CURRENCY_MISMATCH
        return None

    @staticmethod
    def _ignored(booking: Booking, reason: str) -> ReconciliationResult:
        return ReconciliationResult(ReconciliationOutcome.IGNORED, BookingStore.get(booking.id), reason)

    @staticmethod
    def _fail(booking: Booking, reason: StatusReason,
              transaction_id: Optional[str]) -> ReconciliationResult:
        failed = BookingStore.transition(
            booking.id,
            expected_status=BookingStatus.PENDING,
            new_booking_status=BookingStatus.CANCELLED,
            new_payment_status=PaymentStatus.FAILED,
            expected_payment_statuses=_OPEN_PAYMENT_STATUSES,
            reason=reason,
            transaction_id=transaction_id,
        )
        if failed is None:
            return PaymentReconciliationService._ignored(booking, "booking changed concurrently")
        return ReconciliationResult(ReconciliationOutcome.HANDLED, failed, reason.value)

    @staticmethod
    def _confirm(booking: Booking, transaction_id: Optional[str]) -> ReconciliationResult:
        """Confirm and reserve every leg in one transaction, or fail the booking as sold out"""
        leg_failed = False
        with get_db_manager().transaction() as conn:
            confirmed = BookingStore.transition(
                booking.id,
                expected_status=BookingStatus.PENDING,
                new_booking_status=BookingStatus.CONFIRMED,
                new_payment_status=PaymentStatus.PAID,
                expected_payment_statuses=_OPEN_PAYMENT_STATUSES,
                seats_held=True,
                transaction_id=transaction_id,
                conn=conn,
            )
            if confirmed is not None:
                # Flight rows are locked in id order across every confirm and cancel
                reserved = []
                for flight_id in sorted(confirmed.leg_flight_ids):
                    if not SeatLedger.reserve(flight_id, confirmed.passenger_count, conn):
                        leg_failed = True
                        break
                    reserved.append(flight_id)

                if leg_failed:
                    for flight_id in reserved:
                        SeatLedger.release(flight_id, confirmed.passenger_count, conn)
                    sold_out = BookingStore.transition(
                        confirmed.id,
                        expected_status=BookingStatus.CONFIRMED,
                        new_booking_status=BookingStatus.CANCELLED,
                        new_payment_status=PaymentStatus.FAILED,
                        reason=StatusReason.SOLD_OUT_AT_CONFIRMATION,
                        seats_held=False,
                        conn=conn,
                    )
                    if sold_out is None:
                        # The confirmed row is locked by this transaction
                        raise BookingError(f"Booking {confirmed.booking_reference} could not be "
                                           f"cancelled after a sold-out leg")

        if confirmed is None:
            return PaymentReconciliationService._ignored(booking, "booking changed concurrently")

        if leg_failed:
            logger.warning("Booking %s paid but sold out at confirmation; refund required",
                           sold_out.booking_reference)
            return ReconciliationResult(ReconciliationOutcome.HANDLED, sold_out,
                                        StatusReason.SOLD_OUT_AT_CONFIRMATION.value)

        logger.info("Booking %s confirmed with transaction %s",
                    confirmed.booking_reference, confirmed.transaction_id)
        return ReconciliationResult(ReconciliationOutcome.HANDLED, confirmed, 'confirmed')

    def on_payment_event(self, provider_reference: Optional[str], outcome: PaymentOutcome,
                         amount=None, currency: Optional[str] = None,
                         transaction_id: Optional[str] = None) -> ReconciliationResult:
        """
        Apply one payment outcome to the booking it belongs to

        Args:
            provider_reference: Checkout correlation reference (tx_ref)
            outcome: SUCCESS or FAILURE as reported by the provider
            amount: Amount the provider charged
            currency: Currency the provider charged in
            transaction_id: Provider transaction id

        Returns:
            ReconciliationResult; IGNORED for unknown bookings, bookings that
            already reached a final state, and guards lost to a concurrent event
        """
        transaction_id = str(transaction_id) if transaction_id is not None else None
        booking = self._find_booking(provider_reference, transaction_id)

        if booking is None:
            logger.warning("Payment event for unknown reference %s (transaction %s) ignored",
                           provider_reference, transaction_id)
            return ReconciliationResult(ReconciliationOutcome.IGNORED, None, "unknown booking")

        if booking.is_final:
            if (booking.booking_status == BookingStatus.CANCELLED
                    and outcome == PaymentOutcome.SUCCESS
                    and booking.payment_status != PaymentStatus.PAID
                    and booking.transaction_id != transaction_id):
                logger.warning("Payment %s received for cancelled booking %s; refund required",
                               transaction_id, booking.booking_reference)
            else:
                logger.info("Duplicate payment event for booking %s (%s) ignored",
                            booking.booking_reference, booking.booking_status.value)
            return ReconciliationResult(ReconciliationOutcome.IGNORED, booking,
                                        f"booking already {booking.booking_status.value}")

        if outcome == PaymentOutcome.FAILURE:
            return self._fail(booking, StatusReason.PAYMENT_FAILED, transaction_id)

        mismatch = self._mismatch(booking, amount, currency)
        if mismatch is not None:
            return self._fail(booking, mismatch, transaction_id)

        return self._confirm(booking, transaction_id)

    def verify(self, transaction_id: str, expected_amount=None,
               expected_currency: Optional[str] = None) -> VerificationResult:
        """
        Client-triggered confirmation after checkout returns

        The provider is the source of truth: its reported amount and currency
        are what reconciliation checks against the booking. A caller-supplied
        expectation that disagrees with the provider rejects without touching
        the booking, as does a payment the provider still reports as pending.

        Raises:
            PaymentGatewayError: Provider unreachable (retry later)
        """
        transaction_id = str(transaction_id)
        transaction = self.gateway.verify_transaction(transaction_id)
        if transaction is None:
            return VerificationResult(VerificationStatus.REJECTED, None, "transaction not found")

        if expected_amount is not None and abs(to_decimal(expected_amount) - transaction.amount) > AMOUNT_TOLERANCE:
            logger.warning("Verify of %s: expected %s but provider charged %s",
                           transaction_id, expected_amount, transaction.amount)
            return VerificationResult(VerificationStatus.REJECTED, None, StatusReason.AMOUNT_MISMATCH.value)

        if expected_currency and expected_currency.strip().upper() != transaction.currency.upper():
            logger.warning("Verify of %s: expected %s but provider charged in %s",
                           transaction_id, expected_currency, transaction.currency)
            return VerificationResult(VerificationStatus.REJECTED, None, StatusReason.CURRENCY_MISMATCH.value)

        if transaction.is_successful:
            outcome = PaymentOutcome.SUCCESS
        elif transaction.is_failed:
            outcome = PaymentOutcome.FAILURE
        else:
            return VerificationResult(VerificationStatus.REJECTED, None,
                                      f"payment {transaction.status or 'pending'}")

        result = self.on_payment_event(transaction.tx_ref, outcome, transaction.amount,
                                       transaction.currency, transaction.transaction_id)
        booking = result.booking
        if (booking is not None
                and booking.booking_status == BookingStatus.CONFIRMED
                and booking.payment_status == PaymentStatus.PAID
                and booking.transaction_id == transaction.transaction_id):
            return VerificationResult(VerificationStatus.VERIFIED, booking, 'confirmed')

        return VerificationResult(VerificationStatus.REJECTED, booking, result.reason)

    def authenticate(self, headers: Mapping[str, str]) -> None:
        """
        Check the webhook shared-secret header

        Raises:
            WebhookAuthenticationError: Header missing or wrong, or no secret configured
        """
        if not self.webhook_secret:
            raise WebhookAuthenticationError("FLUTTERWAVE_SECRET_HASH is not configured")

        signature = next(
            (value for key, value in headers.items() if key.lower() == SIGNATURE_HEADER),
            None
        )
        if not signature:
            raise WebhookAuthenticationError("Missing webhook signature")
        if not hmac.compare_digest(str(signature).encode(), self.webhook_secret.encode()):
            raise WebhookAuthenticationError("Invalid webhook signature")

    def handle_webhook(self, headers: Mapping[str, str], body) -> Tuple[int, dict]:
        """
        Process a webhook delivery and return ``(status_code, payload)`` for the HTTP layer

        401 for a bad signature, 400 for a malformed body, 503 when the store or
        provider is unavailable (the provider will redeliver), 200 otherwise.
        """
        try:
            self.authenticate(headers)
        except WebhookAuthenticationError as e:
            logger.warning("Rejected webhook: %s", e)
            return 401, {'status': 'error', 'message': str(e)}

        try:
            payload = json.loads(body) if isinstance(body, (str, bytes, bytearray)) else body
            event = parse_webhook(payload)
        except ValueError as e:
            logger.warning("Malformed webhook body: %s", e)
            return 400, {'status': 'error', 'message': 'Malformed webhook payload'}

        if event.outcome is None:
            logger.info("Webhook event %s (status %s) needs no action",
                        event.event, payload['data'].get('status'))
            return 200, {'status': 'ignored', 'message': f"No action for event {event.event}"}

        try:
            result = self.on_payment_event(event.provider_reference, event.outcome, event.amount,
                                           event.currency, event.transaction_id)
        except (StoreUnavailableError, PaymentGatewayError) as e:
            logger.error("Webhook for %s not processed: %s", event.provider_reference, e)
            return 503, {'status': 'error', 'message': 'Temporarily unavailable, retry later'}

        response = {'status': result.outcome.value, 'message': result.reason}
        if result.booking is not None:
            response['booking_reference'] = result.booking.booking_reference
            response['booking_status'] = result.booking.booking_status.value
            response['payment_status'] = result.booking.payment_status.value
        return 200, response
