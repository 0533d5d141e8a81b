"""
Payment provider client tests using a fake HTTP session (no network, no database)
"""
import re
from decimal import Decimal

import pytest
import requests

from backend.errors import PaymentGatewayError, ValidationError
from backend.payment_gateway import (
    FlutterwaveGateway, MockPaymentGateway, build_checkout, format_phone_for_mpesa, new_tx_ref
)
from database import Booking, BookingStatus, PaymentStatus


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        self._body = body
        self._text = text

    def json(self):
        if self._text is not None:
            raise ValueError("No JSON object could be decoded")
        return self._body


class FakeSession:
    """Records requests and replays a canned response or error"""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def get(self, url, headers=None, timeout=None):
        self.calls.append({'url': url, 'headers': headers, 'timeout': timeout})
        if self.error:
            raise self.error
        return self.response


@pytest.fixture
def booking():
    return Booking(
        id=7,
        booking_reference='FSK7Q2MD',
        user_id='customer-1',
        flight_id=1,
        passenger_count=2,
        passenger_name='Wanjiku Kamau',
        email='wanjiku@example.com',
        phone_number='0712 345 678',
        id_passport_number='A1234567',
        total_amount=Decimal('23200.00'),
        currency='KES',
        booking_status=BookingStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
    )


def gateway_with(session):
    return FlutterwaveGateway(secret_key='FLWSECK_TEST-x', public_key='FLWPUBK_TEST-y',
                              base_url='https://flw.test/v3/', timeout=3, session=session)


class TestVerifyTransaction:

    def test_successful_transaction(self):
        session = FakeSession(FakeResponse(body={
            'status': 'success',
            'message': 'Transaction fetched successfully',
            'data': {'id': 4242, 'tx_ref': 'FLYS-1-AAAA', 'status': 'successful',
                     'amount': 23200, 'currency': 'KES', 'customer': {'email': 'w@example.com'}},
        }))

        transaction = gateway_with(session).verify_transaction('4242')

        assert transaction.transaction_id == '4242'
        assert transaction.tx_ref == 'FLYS-1-AAAA'
        assert transaction.is_successful
        assert transaction.amount == Decimal('23200')
        assert transaction.customer_email == 'w@example.com'

        call = session.calls[0]
        assert call['url'] == 'https://flw.test/v3/transactions/4242/verify'
        assert call['headers']['Authorization'] == 'Bearer FLWSECK_TEST-x'
        assert call['timeout'] == 3

    def test_unknown_transaction_returns_none(self):
        session = FakeSession(FakeResponse(status_code=400, body={
            'status': 'error', 'message': 'No transaction was found for this id', 'data': None,
        }))
        assert gateway_with(session).verify_transaction('1') is None

    def test_server_error_is_retryable(self):
        session = FakeSession(FakeResponse(status_code=502, body={}))
        with pytest.raises(PaymentGatewayError, match="502"):
            gateway_with(session).verify_transaction('1')

    def test_timeout_is_retryable(self):
        session = FakeSession(error=requests.Timeout("read timed out"))
        with pytest.raises(PaymentGatewayError, match="unreachable"):
            gateway_with(session).verify_transaction('1')

    def test_malformed_response(self):
        session = FakeSession(FakeResponse(text='<html>'))
        with pytest.raises(PaymentGatewayError, match="malformed"):
            gateway_with(session).verify_transaction('1')

    @pytest.mark.parametrize('body', [
        ['success'],
        {'status': 'success', 'data': 'FLW-4242'},
        {'status': 'success', 'data': {'id': 1, 'status': 'successful', 'amount': None, 'currency': 'KES'}},
        {'status': 'success', 'data': {'id': 1, 'status': 'successful', 'amount': 'NaN', 'currency': 'KES'}},
        {'status': 'success', 'data': {'id': 1, 'status': 'successful', 'amount': 100, 'currency': None}},
        {'status': 'success', 'data': {'id': 1, 'status': 'successful', 'currency': 'KES'}},
        {'status': 'success', 'data': {'id': 1, 'status': 'successful', 'amount': 100, 'currency': 'KES',
                                       'customer': 'w@example.com'}},
    ])
    def test_malformed_body_is_gateway_error(self, body):
        session = FakeSession(FakeResponse(body=body))
        with pytest.raises(PaymentGatewayError, match="malformed"):
            gateway_with(session).verify_transaction('1')

    def test_missing_secret_key(self, monkeypatch):
        monkeypatch.delenv('FLUTTERWAVE_SECRET_KEY', raising=False)
        session = FakeSession(FakeResponse(body={}))
        with pytest.raises(PaymentGatewayError, match="not configured"):
            FlutterwaveGateway(session=session).verify_transaction('1')
        assert session.calls == []


class TestCheckout:

    def test_card_checkout(self, booking):
        request = build_checkout(booking, 'FLYS-1-AAAA', 'FLWPUBK_TEST-y')

        payload = request.as_dict()
        assert payload['tx_ref'] == 'FLYS-1-AAAA'
        assert payload['amount'] == 23200.0
        assert payload['currency'] == 'KES'
        assert payload['payment_options'] == 'card'
        assert payload['customer']['email'] == 'wanjiku@example.com'
        assert payload['meta'] == {'booking_id': 7, 'consumer_id': 'customer-1'}
        assert 'FSK7Q2MD' in payload['customizations']['description']
        assert 'mobilemoney' not in payload

    def test_mpesa_checkout_formats_phone(self, booking):
        request = build_checkout(booking, 'FLYS-1-AAAA', 'pk', payment_method='mpesa')

        assert request.payment_options == 'mobilemoney'
        assert request.mobilemoney == {'type': 'mpesa', 'phone': '254712345678', 'country': 'KE'}
        assert request.customer['phone_number'] == '254712345678'

    def test_mpesa_override_number(self, booking):
        request = build_checkout(booking, 'FLYS-1-AAAA', 'pk', payment_method='mpesa',
                                 phone_number='+254 110 000 111')
        assert request.mobilemoney['phone'] == '254110000111'

    def test_unsupported_method(self, booking):
        with pytest.raises(ValidationError, match="Unsupported"):
            build_checkout(booking, 'FLYS-1-AAAA', 'pk', payment_method='paypal')


class TestPhoneFormatting:

    @pytest.mark.parametrize('phone, expected', [
        ('0712345678', '254712345678'),
        ('712345678', '254712345678'),
        ('254712345678', '254712345678'),
        ('+254712345678', '254712345678'),
        ('0112 345 678', '254112345678'),
    ])
    def test_valid_numbers(self, phone, expected):
        assert format_phone_for_mpesa(phone) == expected

    @pytest.mark.parametrize('phone', ['', '0812345678', '07123', '+1 555 123 4567'])
    def test_invalid_numbers(self, phone):
        with pytest.raises(ValidationError, match="M-PESA"):
            format_phone_for_mpesa(phone)


def test_tx_ref_format():
    assert re.match(r'^FLYS-\d{13}-[A-Z0-9]{4}$', new_tx_ref())


class TestMockGateway:

    def test_settle_and_verify(self):
        gateway = MockPaymentGateway()
        transaction = gateway.settle('FLYS-1-AAAA', '23200.00', 'KES')

        assert transaction.is_successful
        assert gateway.verify_transaction(transaction.transaction_id) == transaction
        assert gateway.verify_calls == 1
        assert gateway.verify_transaction('0') is None

    def test_failure_rate(self):
        gateway = MockPaymentGateway(failure_rate=1.0)
        assert gateway.settle('FLYS-1-AAAA', 100).is_failed

    def test_webhook_payload(self):
        gateway = MockPaymentGateway()
        transaction = gateway.settle('FLYS-1-AAAA', '100.50', 'KES', status='failed')

        payload = gateway.webhook_payload(transaction, {'email': 'w@example.com'})

        assert payload['event'] == 'charge.failed'
        assert payload['data']['id'] == int(transaction.transaction_id)
        assert payload['data']['amount'] == 100.5
        assert payload['data']['customer'] == {'email': 'w@example.com'}
