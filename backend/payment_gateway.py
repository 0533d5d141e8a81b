"""
Payment provider boundary: Flutterwave checkout requests and transaction verification
Includes a mock gateway for tests and sample data generation
"""
import logging
import os
import random
import re
import string
import time
from dataclasses import dataclass, asdict
from decimal import Decimal
from typing import Dict, Optional

import requests

from database import Booking
from .errors import PaymentGatewayError, ValidationError
from .pricing import to_decimal

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = 'https://api.flutterwave.com/v3'
DEFAULT_CURRENCY = os.getenv('PAYMENT_CURRENCY', 'KES')
TX_REF_PREFIX = 'FLYS'

_KENYAN_MOBILE = re.compile(r'^(?:254|\+254|0)?(7|1)[0-9]{8}$')


def format_phone_for_mpesa(phone: str) -> str:
    """Normalise a Kenyan mobile number to the 2547XXXXXXXX form M-PESA expects"""
    if not phone or not _KENYAN_MOBILE.match(phone.replace(' ', '')):
        raise ValidationError("Please enter a valid Kenyan phone number for M-PESA payment")
    digits = re.sub(r'\D', '', phone)
    if digits.startswith('0'):
        digits = '254' + digits[1:]
    if not digits.startswith('254'):
        digits = '254' + digits
    return digits


def new_tx_ref() -> str:
    """Correlation reference handed to the provider at checkout"""
    suffix = ''.join(random.choices(string.ascii_uppercase + string.digits, k=4))
    return f"{TX_REF_PREFIX}-{int(time.time() * 1000)}-{suffix}"


@dataclass
class CheckoutRequest:
    """Everything the client needs to open the provider's hosted checkout"""
    public_key: str
    tx_ref: str
    amount: Decimal
    currency: str
    payment_options: str
    customer: Dict[str, str]
    customizations: Dict[str, str]
    meta: Dict[str, object]
    mobilemoney: Optional[Dict[str, str]] = None

    def as_dict(self) -> dict:
        payload = asdict(self)
        payload['amount'] = float(self.amount)
        if self.mobilemoney is None:
            payload.pop('mobilemoney')
        return payload


@dataclass(frozen=True)
class ProviderTransaction:
    """A transaction as reported by the provider's verify endpoint"""
    transaction_id: str
    tx_ref: Optional[str]
    status: str
    amount: Decimal
    currency: str
    customer_email: Optional[str] = None

    @property
    def is_successful(self) -> bool:
        return self.status in ('successful', 'completed')

    @property
    def is_failed(self) -> bool:
        return self.status in ('failed', 'cancelled')


def build_checkout(booking: Booking, tx_ref: str, public_key: str,
                   payment_method: str = 'card', phone_number: Optional[str] = None) -> CheckoutRequest:
    """
    Build the hosted-checkout request for a booking

    Args:
        booking: Booking being paid for
        tx_ref: Correlation reference stored on the booking
        public_key: Provider public key
        payment_method: 'card' or 'mpesa'
        phone_number: M-PESA number (defaults to the booking's phone number)

    Returns:
        CheckoutRequest
    """
    if payment_method not in ('card', 'mpesa'):
        raise ValidationError(f"Unsupported payment method: {payment_method}")

    mobilemoney = None
    phone = booking.phone_number
    if payment_method == 'mpesa':
        phone = format_phone_for_mpesa(phone_number or booking.phone_number)
        mobilemoney = {'type': 'mpesa', 'phone': phone, 'country': 'KE'}

    return CheckoutRequest(
        public_key=public_key,
        tx_ref=tx_ref,
        amount=booking.total_amount,
        currency=booking.currency,
        payment_options='mobilemoney' if payment_method == 'mpesa' else 'card',
        customer={
            'email': booking.email,
            'phone_number': phone,
            'name': booking.passenger_name,
        },
        customizations={
            'title': 'FlySafari Flight Payment',
            'description': f"Payment for booking {booking.booking_reference}",
        },
        meta={'booking_id': booking.id, 'consumer_id': booking.user_id},
        mobilemoney=mobilemoney,
    )


class FlutterwaveGateway:
    """Thin client for the Flutterwave v3 API"""

    def __init__(self, secret_key: Optional[str] = None, public_key: Optional[str] = None,
                 base_url: Optional[str] = None, timeout: Optional[float] = None,
                 session: Optional[requests.Session] = None):
        self.secret_key = secret_key or os.getenv('FLUTTERWAVE_SECRET_KEY', '')
        self.public_key = public_key or os.getenv('FLUTTERWAVE_PUBLIC_KEY', '')
        self.base_url = (base_url or os.getenv('FLUTTERWAVE_BASE_URL', DEFAULT_BASE_URL)).rstrip('/')
        self.timeout = float(timeout or os.getenv('PAYMENT_HTTP_TIMEOUT', '10'))
        self.session = session or requests.Session()

    def build_checkout(self, booking: Booking, tx_ref: str, payment_method: str = 'card',
                       phone_number: Optional[str] = None) -> CheckoutRequest:
        return build_checkout(booking, tx_ref, self.public_key, payment_method, phone_number)

    def verify_transaction(self, transaction_id: str) -> Optional[ProviderTransaction]:
        """
        Ask the provider for the authoritative state of a transaction

        Args:
            transaction_id: Provider transaction id from the client callback

        Returns:
            ProviderTransaction, or None if the provider does not know the transaction

        Raises:
            PaymentGatewayError: Provider unreachable, timed out or failed (retryable)
        """
        if not self.secret_key:
            raise PaymentGatewayError("FLUTTERWAVE_SECRET_KEY is not configured")

        url = f"{self.base_url}/transactions/{transaction_id}/verify"
        try:
            response = self.session.get(
                url,
                headers={
                    'Content-Type': 'application/json',
                    'Authorization': f"Bearer {self.secret_key}",
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error("Verification request for transaction %s failed: %s", transaction_id, e)
            raise PaymentGatewayError(f"Payment provider unreachable: {e}") from e

        if response.status_code >= 500:
            logger.error("Provider returned %s verifying transaction %s",
                         response.status_code, transaction_id)
            raise PaymentGatewayError(f"Payment provider error {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise PaymentGatewayError("Payment provider returned a malformed response") from e
        if not isinstance(body, dict):
            raise PaymentGatewayError("Payment provider returned a malformed response")

        data = body.get('data')
        if body.get('status') != 'success' or not data:
            logger.warning("Transaction %s not verified by provider: %s",
                           transaction_id, body.get('message', 'Unknown error'))
            return None

        try:
            amount = to_decimal(data['amount'])
            currency = data['currency']
            customer_email = (data.get('customer') or {}).get('email')
        except (KeyError, TypeError, AttributeError, ArithmeticError) as e:
            logger.error("Malformed verification response for transaction %s: %s", transaction_id, e)
            raise PaymentGatewayError("Payment provider returned a malformed response") from e
        if not amount.is_finite() or not isinstance(currency, str):
            logger.error("Malformed verification response for transaction %s: amount %r, currency %r",
                         transaction_id, data['amount'], currency)
            raise PaymentGatewayError("Payment provider returned a malformed response")

        return ProviderTransaction(
            transaction_id=str(data.get('id', transaction_id)),
            tx_ref=data.get('tx_ref'),
            status=str(data.get('status', '')).lower(),
            amount=amount,
            currency=currency,
            customer_email=customer_email,
        )


class MockPaymentGateway:
    """
    In-memory stand-in for the provider
    Records checkouts and lets callers settle them with a chosen outcome
    """

    def __init__(self, failure_rate: float = 0.0, public_key: str = 'FLWPUBK_TEST-mock'):
        """
        Initialize mock payment gateway

        Args:
            failure_rate: Probability that ``settle`` reports a failed payment (0.0 - 1.0)
        """
        self.failure_rate = max(0.0, min(1.0, failure_rate))
        self.public_key = public_key
        self.transactions: Dict[str, ProviderTransaction] = {}
        self.verify_calls = 0

    def build_checkout(self, booking: Booking, tx_ref: str, payment_method: str = 'card',
                       phone_number: Optional[str] = None) -> CheckoutRequest:
        return build_checkout(booking, tx_ref, self.public_key, payment_method, phone_number)

    def settle(self, tx_ref: str, amount, currency: str = DEFAULT_CURRENCY,
               status: Optional[str] = None) -> ProviderTransaction:
        """Simulate the customer finishing checkout; returns the recorded transaction"""
        if status is None:
            status = 'failed' if random.random() < self.failure_rate else 'successful'
        transaction = ProviderTransaction(
            transaction_id=str(random.randint(10_000_000, 99_999_999)),
            tx_ref=tx_ref,
            status=status,
            amount=to_decimal(amount),
            currency=currency,
        )
        self.transactions[transaction.transaction_id] = transaction
        return transaction

    def verify_transaction(self, transaction_id: str) -> Optional[ProviderTransaction]:
        self.verify_calls += 1
        return self.transactions.get(str(transaction_id))

    def webhook_payload(self, transaction: ProviderTransaction, customer: Optional[dict] = None) -> dict:
        """Webhook body the provider would POST for ``transaction``"""
        event = 'charge.completed' if not transaction.is_failed else 'charge.failed'
        return {
            'event': event,
            'data': {
                'id': int(transaction.transaction_id),
                'tx_ref': transaction.tx_ref,
                'flw_ref': f"FLW-MOCK-{transaction.transaction_id}",
                'status': transaction.status,
                'amount': float(transaction.amount),
                'currency': transaction.currency,
                'customer': customer or {},
            },
        }
