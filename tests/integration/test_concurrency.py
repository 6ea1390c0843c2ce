# File: tests/integration/test_concurrency.py
"""
Concurrency tests: racing bookings against one lot and racing shared ride
requests against the pooling region
"""

import threading
import unittest
from datetime import datetime
from decimal import Decimal

from parkandride.domain.exceptions import ErrorKind
from parkandride.application.dtos import ParkingBookingRequestDTO, RideBookingRequestDTO
from parkandride.infrastructure.factories import ParkingLotFactory

from tests.integration import IntegrationTestConfig, FixedClock, ScenarioBuilder

DAY = IntegrationTestConfig.START_OF_DAY
WORKERS = 8


def run_together(target, count=WORKERS):
    """Start count threads on target(index) released by one barrier; return results by index"""
    barrier = threading.Barrier(count)
    results = [None] * count

    def worker(index):
        barrier.wait()
        results[index] = target(index)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return results


class TestConcurrentBookings(unittest.TestCase):

    def setUp(self):
        self.services = ScenarioBuilder.create_services(FixedClock(DAY))
        self.parking = self.services.parking
        self.users = [self.parking.register_user(f"user-{i}").data for i in range(WORKERS)]

    def add_lot(self, units):
        lot, spots = ParkingLotFactory.create(
            name="Tiny", latitude=12.97, longitude=77.59, total_units=units,
            base_hourly_rate=Decimal("50"), now=DAY
        )
        self.parking.add_parking_lot(lot, spots)
        return lot

    def book_all(self, lot):
        request = ParkingBookingRequestDTO(
            lot_id=lot.id, start_time=datetime(2024, 1, 2, 9), end_time=datetime(2024, 1, 2, 11)
        )
        return run_together(lambda i: self.parking.create_booking(request, self.users[i]))

    def test_single_unit_lot_admits_one_booking(self):
        lot = self.add_lot(1)
        results = self.book_all(lot)

        successes = [r for r in results if r.success]
        self.assertEqual(len(successes), 1)
        self.assertTrue(all(r.error == ErrorKind.CONFLICT for r in results if not r.success))

        with self.parking.uow_factory() as uow:
            self.assertEqual(uow.lots.get(lot.id).available_units, 0)

    def test_capacity_never_exceeded(self):
        lot = self.add_lot(3)
        results = self.book_all(lot)

        self.assertEqual(sum(1 for r in results if r.success), 3)
        spot_ids = [r.data.spot_id for r in results if r.success]
        self.assertEqual(len(set(spot_ids)), 3)


class TestConcurrentRegistration(unittest.TestCase):

    def test_one_user_per_username(self):
        parking = ScenarioBuilder.create_services(FixedClock(DAY)).parking
        results = run_together(lambda i: parking.register_user("commuter"))

        self.assertTrue(all(r.success for r in results))
        self.assertEqual(len({r.data.id for r in results}), 1)
        with parking.uow_factory() as uow:
            stored = [user for user in uow.users.get_all() if user.username == "commuter"]
        self.assertEqual(len(stored), 1)


class TestConcurrentPooling(unittest.TestCase):

    def test_compatible_riders_end_up_in_one_group(self):
        clock = FixedClock(datetime(2024, 1, 2, 14))
        services = ScenarioBuilder.create_services(clock)
        users = [services.parking.register_user(f"rider-{i}").data for i in range(WORKERS)]

        request = RideBookingRequestDTO(
            pickup_location="Central Metro",
            dropoff_location="Tech Park",
            pickup_latitude=12.9716, pickup_longitude=77.5946,
            dropoff_latitude=12.99, dropoff_longitude=77.61,
            requested_time=datetime(2024, 1, 2, 14),
            is_shared=True,
            max_passengers=WORKERS,
        )
        results = run_together(lambda i: services.rides.create_ride_booking(request, users[i]))

        self.assertTrue(all(r.success for r in results))
        self.assertEqual(len({r.data.pooling_group_id for r in results}), 1)


if __name__ == '__main__':
    unittest.main()
