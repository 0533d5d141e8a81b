"""
Sample data generator: seeds flights and drives bookings through checkout,
mock payment and webhook reconciliation
"""
from datetime import datetime, timedelta
import argparse
import logging
import random
from faker import Faker
from typing import List, Optional
import sys
import os

# Add parent directory to path for imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database.database import get_db_manager
from database import Actor, ContactInfo, Flight
from backend.errors import BookingError
from backend.flight_service import FlightService
from backend.payment_gateway import MockPaymentGateway
from backend.reconciliation_service import PaymentReconciliationService
from backend.reservation_service import ReservationService

WEBHOOK_SECRET = 'sample-data-secret'


class DataGenerator:
    """Generate realistic flights and bookings for the booking core"""

    def __init__(self, seed: Optional[int] = None):
        """
        Initialize data generator

        Args:
            seed: Random seed for reproducibility
        """
        if seed:
            random.seed(seed)
            Faker.seed(seed)

        self.faker = Faker()

        self.airports = [
            ('NBO', 'Nairobi'),
            ('MBA', 'Mombasa'),
            ('KIS', 'Kisumu'),
            ('EDL', 'Eldoret'),
            ('MYD', 'Malindi'),
            ('LAU', 'Lamu'),
            ('UKA', 'Diani'),
            ('EBB', 'Entebbe'),
            ('JRO', 'Kilimanjaro'),
            ('ZNZ', 'Zanzibar'),
        ]

        self.airlines = [
            ('KQ', 'Kenya Airways'),
            ('JM', 'Jambojet'),
            ('5H', 'Fly540'),
            ('P2', 'Airkenya Express'),
            ('OJ', 'Skyward Express'),
        ]

        self.payment_methods = ['card', 'mpesa']

    def _flight_kwargs(self, origin, destination, departure: datetime):
        code, airline = random.choice(self.airlines)
        arrival = departure + timedelta(minutes=random.choice([45, 60, 75, 90, 120]))
        return {
            'airline': airline,
            'flight_number': f"{code}{random.randint(100, 9999)}",
            'origin': f"{origin[1]} ({origin[0]})",
            'destination': f"{destination[1]} ({destination[0]})",
            'departure_time': departure,
            'arrival_time': arrival,
            'price': round(random.uniform(4500, 28000), -2),
            'total_seats': random.choice([37, 50, 76, 78, 120]),
            'baggage_allowance': random.choice(['15kg', '20kg', '23kg']),
        }

    def generate_flights(self, count: int = 100, days_ahead: int = 30) -> List[Flight]:
        """
        Generate flights in outbound/return pairs so round trips can be booked

        Args:
            count: Number of flights to generate
            days_ahead: Number of days ahead to schedule flights

        Returns:
            List of created flights
        """
        flights = []

        print(f"Generating {count} flights...")

        while len(flights) < count:
            origin, destination = random.sample(self.airports, 2)
            departure = (datetime.now() + timedelta(days=random.randint(1, days_ahead)))
            departure = departure.replace(hour=random.randint(5, 21),
                                          minute=random.choice([0, 15, 30, 45]),
                                          second=0, microsecond=0)

            legs = [self._flight_kwargs(origin, destination, departure)]
            if len(flights) + 1 < count:
                return_departure = legs[0]['arrival_time'] + timedelta(days=random.randint(1, 7))
                legs.append(self._flight_kwargs(destination, origin, return_departure))

            for kwargs in legs:
                try:
                    flights.append(FlightService.create_flight(**kwargs))
                except BookingError as e:
                    print(f"  Error creating flight: {e}")

            if len(flights) % 50 == 0:
                print(f"  Created {len(flights)}/{count} flights")

        print(f"Generated {len(flights)} flights")
        return flights

    def _contact(self) -> ContactInfo:
        return ContactInfo(
            passenger_name=self.faker.name(),
            email=self.faker.unique.email(),
            phone_number=self.faker.numerify(text='07########'),
            id_passport_number=self.faker.bothify(text='??#######', letters='ABCDEFGHJKLMNPRSTUVWXYZ'),
        )

    @staticmethod
    def _return_candidates(outbound: Flight, flights: List[Flight]) -> List[Flight]:
        return [
            flight for flight in flights
            if flight.origin == outbound.destination and flight.departure_time > outbound.arrival_time
        ]

    def generate_bookings(self, flights: List[Flight], count: int = 500,
                          payment_failure_rate: float = 0.1, round_trip_rate: float = 0.3,
                          abandon_rate: float = 0.05) -> dict:
        """
        Create bookings and settle them through the mock gateway and webhook path

        Args:
            flights: Flights to book on
            count: Number of bookings to attempt
            payment_failure_rate: Rate of failed payments (0.0 - 1.0)
            round_trip_rate: Share of bookings that add a return leg
            abandon_rate: Share of checkouts left unpaid

        Returns:
            Dictionary of outcome counts
        """
        gateway = MockPaymentGateway(failure_rate=payment_failure_rate)
        reconciliation = PaymentReconciliationService(gateway=gateway, webhook_secret=WEBHOOK_SECRET)
        headers = {'verif-hash': WEBHOOK_SECRET}
        users = [Actor(user_id=self.faker.uuid4()) for _ in range(max(1, count // 3))]
        stats = {'created': 0, 'confirmed': 0, 'cancelled': 0, 'pending': 0, 'rejected': 0}

        print(f"Generating {count} bookings...")

        for i in range(count):
            actor = random.choice(users)
            outbound = random.choice(flights)
            return_flight = None
            if random.random() < round_trip_rate:
                candidates = self._return_candidates(outbound, flights)
                if candidates:
                    return_flight = random.choice(candidates)

            payment_method = random.choice(self.payment_methods)
            try:
                booking = ReservationService.initiate(
                    actor,
                    outbound.id,
                    return_flight_id=return_flight.id if return_flight else None,
                    passenger_count=random.choices([1, 2, 3, 4], weights=[60, 25, 10, 5])[0],
                    contact=self._contact(),
                    payment_method=payment_method,
                )
            except BookingError as e:
                # Usually a flight that has filled up
                stats['rejected'] += 1
                if 'seat' not in str(e):
                    print(f"  Error creating booking: {e}")
                continue
            stats['created'] += 1

            checkout = ReservationService.start_checkout(booking.id, actor, payment_method, gateway)
            if random.random() < abandon_rate:
                stats['pending'] += 1
                continue

            transaction = gateway.settle(checkout.tx_ref, checkout.amount, checkout.currency)
            status_code, response = reconciliation.handle_webhook(
                headers, gateway.webhook_payload(transaction, checkout.customer)
            )
            if status_code != 200:
                print(f"  Webhook for {booking.booking_reference} returned {status_code}: {response}")
            elif response.get('booking_status') == 'confirmed':
                stats['confirmed'] += 1
            else:
                stats['cancelled'] += 1

            if (i + 1) % 100 == 0:
                print(f"  Processed {i + 1}/{count} bookings")

        print(f"Generated {stats['created']} bookings "
              f"({stats['confirmed']} confirmed, {stats['cancelled']} cancelled, "
              f"{stats['pending']} awaiting payment)")
        return stats

    def generate_sample_dataset(self, flight_count: int = 60, booking_count: int = 300,
                                payment_failure_rate: float = 0.1) -> dict:
        """
        Generate a complete sample dataset

        Returns:
            Dictionary with all generated data
        """
        print("=" * 60)
        print("GENERATING SAMPLE DATASET")
        print("=" * 60)

        flights = self.generate_flights(count=flight_count, days_ahead=60)
        stats = self.generate_bookings(flights, count=booking_count,
                                       payment_failure_rate=payment_failure_rate)

        print("=" * 60)
        print("DATASET GENERATION COMPLETE")
        print("=" * 60)
        print(f"Flights: {len(flights)}")
        print(f"Bookings: {stats['created']}")
        print("=" * 60)

        return {'flights': flights, 'bookings': stats}


def main():
    parser = argparse.ArgumentParser(description="Populate the booking database with sample data")
    parser.add_argument('--flights', type=int, default=60, help="Number of flights to create")
    parser.add_argument('--bookings', type=int, default=300, help="Number of bookings to attempt")
    parser.add_argument('--failure-rate', type=float, default=0.1, help="Share of failed payments")
    parser.add_argument('--seed', type=int, default=None, help="Random seed for reproducible data")
    parser.add_argument('--reset', action='store_true', help="Drop and recreate all tables first")
    parser.add_argument('--verbose', action='store_true', help="Show booking core log output")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING,
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    db_manager = get_db_manager()
    if args.reset:
        db_manager.drop_tables()
    db_manager.create_tables()

    generator = DataGenerator(seed=args.seed)
    generator.generate_sample_dataset(args.flights, args.bookings, args.failure_rate)
    db_manager.close_all_connections()


if __name__ == "__main__":
    main()
