"""
Flight creation and lookup tests
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from backend.errors import ValidationError
from backend.flight_service import FlightService
from database import FlightStatus


def schedule(hours=1):
    departure = (datetime.now() + timedelta(days=3)).replace(microsecond=0)
    return departure, departure + timedelta(hours=hours, minutes=15)


class TestCreateFlight:

    def test_create_and_fetch(self, db_manager):
        departure, arrival = schedule()
        flight = FlightService.create_flight('Jambojet', 'JM201', 'Nairobi (NBO)', 'Kisumu (KIS)',
                                             departure, arrival, '6500.50', 78)

        assert flight.available_seats == 78
        assert flight.price == Decimal('6500.50')
        assert flight.duration == '1h 15m'
        assert flight.status == FlightStatus.SCHEDULED
        assert FlightService.get_flight(flight.id).flight_number == 'JM201'
        assert FlightService.get_flight_by_number('JM201').id == flight.id

    def test_missing_flight(self, db_manager):
        assert FlightService.get_flight(31337) is None
        assert FlightService.get_flight_by_number('XX000') is None

    def test_duplicate_flight_number(self, db_manager, make_flight):
        existing = make_flight()
        departure, arrival = schedule()
        with pytest.raises(ValidationError, match="already exists"):
            FlightService.create_flight('Kenya Airways', existing.flight_number, 'Nairobi (NBO)',
                                        'Mombasa (MBA)', departure, arrival, 9000, 100)

    def test_same_origin_and_destination(self, db_manager):
        departure, arrival = schedule()
        with pytest.raises(ValidationError, match="differ"):
            FlightService.create_flight('Fly540', '5H100', 'Lamu (LAU)', 'lamu (lau) ',
                                        departure, arrival, 9000, 50)

    def test_arrival_before_departure(self, db_manager):
        departure, arrival = schedule()
        with pytest.raises(ValidationError, match="Arrival"):
            FlightService.create_flight('Fly540', '5H101', 'Lamu (LAU)', 'Malindi (MYD)',
                                        arrival, departure, 9000, 50)

    def test_available_seats_out_of_range(self, db_manager):
        departure, arrival = schedule()
        with pytest.raises(ValidationError, match="between"):
            FlightService.create_flight('Fly540', '5H102', 'Lamu (LAU)', 'Malindi (MYD)',
                                        departure, arrival, 9000, 50, available_seats=51)
