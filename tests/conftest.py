"""Pytest configuration and fixtures."""
import os
import sys
from datetime import datetime, timedelta

import psycopg2
import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database.database import DatabaseManager, StoreUnavailableError, set_db_manager
from database import Actor, ContactInfo
from backend.flight_service import FlightService
from backend.payment_gateway import MockPaymentGateway
from backend.reconciliation_service import PaymentReconciliationService, PaymentOutcome
from backend.reservation_service import ReservationService

WEBHOOK_SECRET = 'test-webhook-secret'


def pytest_addoption(parser):
    """Register custom CLI options for the test suite."""
    parser.addoption(
        "--performance",
        action="store_true",
        default=False,
        help="Run the performance test suite",
    )
    parser.addoption(
        "--performance-references",
        type=int,
        default=100000,
        help="Number of bookings to create for the store-backed reference uniqueness run",
    )


def pytest_configure(config):
    """Declare custom markers to avoid pytest warnings."""
    config.addinivalue_line(
        "markers",
        "performance: marks performance tests that only run when --performance is supplied",
    )


def pytest_collection_modifyitems(config, items):
    """Skip performance tests unless the dedicated flag is present."""
    if config.getoption("--performance"):
        return

    skip_marker = pytest.mark.skip(
        reason="Performance tests only run when --performance flag is provided",
    )
    for item in items:
        if "performance" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture(scope='function')
def db_manager():
    """Create a test database manager with PostgreSQL test database."""
    # Use environment variable or default to local test database
    test_db_url = os.getenv('TEST_DATABASE_URL', 'postgresql://localhost/flysafari_booking_test')
    try:
        db = DatabaseManager(database_url=test_db_url, echo=False)
        db.drop_tables()  # Clean slate for each test
        db.create_tables()
    except (StoreUnavailableError, psycopg2.Error) as e:
        pytest.skip(f"PostgreSQL test database unavailable: {e}")
    set_db_manager(db)
    yield db
    set_db_manager(None)
    db.drop_tables()  # Cleanup after test
    db.close_all_connections()


@pytest.fixture
def customer():
    return Actor(user_id='customer-1')


@pytest.fixture
def other_customer():
    return Actor(user_id='customer-2')


@pytest.fixture
def admin():
    return Actor(user_id='admin-1', is_admin=True)


@pytest.fixture
def contact():
    return ContactInfo(
        passenger_name='Wanjiku Kamau',
        email='wanjiku@example.com',
        phone_number='0712345678',
        id_passport_number='A1234567',
    )


@pytest.fixture
def make_flight(db_manager):
    """Factory for flights departing a week from now"""
    counter = {'n': 0}

    def _make(origin='Nairobi (NBO)', destination='Mombasa (MBA)', total_seats=10,
              price=10000, departure=None, **kwargs):
        counter['n'] += 1
        departure = departure or (datetime.now() + timedelta(days=7)).replace(microsecond=0)
        return FlightService.create_flight(
            airline='Kenya Airways',
            flight_number=f"KQ{600 + counter['n']}",
            origin=origin,
            destination=destination,
            departure_time=departure,
            arrival_time=departure + timedelta(hours=1),
            price=price,
            total_seats=total_seats,
            **kwargs
        )

    return _make


@pytest.fixture
def test_flight(make_flight):
    """Create a test flight"""
    return make_flight()


@pytest.fixture
def return_flight(make_flight, test_flight):
    """Flight back from the test flight's destination three days later"""
    return make_flight(
        origin=test_flight.destination,
        destination=test_flight.origin,
        price=8000,
        departure=test_flight.arrival_time + timedelta(days=3),
    )


@pytest.fixture
def mock_gateway():
    return MockPaymentGateway()


@pytest.fixture
def reconciliation(mock_gateway):
    return PaymentReconciliationService(gateway=mock_gateway, webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def webhook_headers():
    return {'verif-hash': WEBHOOK_SECRET}


@pytest.fixture
def book(customer, contact):
    """Factory creating a pending booking"""

    def _book(flight, return_flight=None, passenger_count=1, actor=None):
        return ReservationService.initiate(
            actor or customer,
            flight.id,
            return_flight_id=return_flight.id if return_flight else None,
            passenger_count=passenger_count,
            contact=contact,
        )

    return _book


@pytest.fixture
def checkout(customer, mock_gateway):
    """Factory starting checkout for a booking and settling it at the mock provider"""

    def _checkout(booking, status='successful', amount=None, currency=None, actor=None):
        request = ReservationService.start_checkout(booking.id, actor or customer, 'card', mock_gateway)
        return mock_gateway.settle(
            request.tx_ref,
            request.amount if amount is None else amount,
            currency or request.currency,
            status=status,
        )

    return _checkout


@pytest.fixture
def pay(checkout, reconciliation):
    """Factory driving a booking through a successful payment"""

    def _pay(booking, **kwargs):
        transaction = checkout(booking, **kwargs)
        outcome = PaymentOutcome.SUCCESS if transaction.is_successful else PaymentOutcome.FAILURE
        return reconciliation.on_payment_event(
            transaction.tx_ref, outcome, transaction.amount, transaction.currency,
            transaction.transaction_id
        )

    return _pay
