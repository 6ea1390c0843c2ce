# File: tests/integration/test_ride_service.py
"""
Integration tests for RideService: fares, pooling of shared rides,
status updates and ownership checks
"""

import unittest
from datetime import datetime
from decimal import Decimal

from parkandride.domain.models import UserRef, GeoPoint, RideClass, RideStatus
from parkandride.domain.exceptions import ErrorKind
from parkandride.application.dtos import ParkingBookingRequestDTO, RideBookingRequestDTO

from tests.integration import FixedClock, ScenarioBuilder

# Tuesday afternoon, outside peak hours
AFTERNOON = datetime(2024, 1, 2, 14, 0)

METRO = (12.9716, 77.5946)
OFFICE = (12.9900, 77.6100)
METERS_PER_DEGREE_LATITUDE = 111195.0


def north_of(point, meters):
    return (point[0] + meters / METERS_PER_DEGREE_LATITUDE, point[1])


class RideServiceTestBase(unittest.TestCase):

    def setUp(self):
        self.clock = FixedClock(AFTERNOON)
        self.services = ScenarioBuilder.create_services(self.clock)
        self.rides = self.services.rides
        self.parking = self.services.parking
        self.user = self.parking.register_user("alice").data

    def request(self, pickup=METRO, dropoff=OFFICE, **kwargs) -> RideBookingRequestDTO:
        data = {
            "pickup_location": "Central Metro",
            "dropoff_location": "Tech Park",
            "requested_time": AFTERNOON,
        }
        if pickup is not None:
            data.update(pickup_latitude=pickup[0], pickup_longitude=pickup[1])
        if dropoff is not None:
            data.update(dropoff_latitude=dropoff[0], dropoff_longitude=dropoff[1])
        data.update(kwargs)
        return RideBookingRequestDTO(**data)

    def book(self, user=None, **kwargs):
        # Distinct creation times keep pooling candidate order deterministic
        self.clock.advance(seconds=1)
        return self.rides.create_ride_booking(self.request(**kwargs), user or self.user)

    def shared(self, pickup=METRO, dropoff=OFFICE, max_passengers=3, user=None):
        return self.book(user=user, pickup=pickup, dropoff=dropoff, is_shared=True, max_passengers=max_passengers)


# ============================================================================
# BOOKING
# ============================================================================

class TestRideBooking(RideServiceTestBase):

    def test_unshared_ride_without_coordinates(self):
        result = self.book(pickup=None, dropoff=None)

        self.assertTrue(result.success)
        ride = result.data
        self.assertEqual(ride.status, RideStatus.CONFIRMED.value)
        self.assertEqual(ride.estimated_fare, Decimal("110.00"))
        self.assertIsNotNone(ride.driver)
        self.assertIsNone(ride.pooling_group_id)

    def test_fare_follows_ride_class(self):
        result = self.book(pickup=None, dropoff=None, ride_class=RideClass.SHUTTLE)
        self.assertEqual(result.data.estimated_fare, Decimal("70.00"))
        self.assertEqual(result.data.driver.vehicle_model, "Tata Winger")

    def test_unknown_user(self):
        result = self.book(user=UserRef("ghost"))
        self.assertEqual(result.error, ErrorKind.NOT_FOUND)

    def test_linked_parking_booking_must_belong_to_user(self):
        lot, spots = ScenarioBuilder.create_lot(now=AFTERNOON)
        self.parking.add_parking_lot(lot, spots)
        booking = self.parking.create_booking(
            ParkingBookingRequestDTO(
                lot_id=lot.id, start_time=datetime(2024, 1, 2, 15), end_time=datetime(2024, 1, 2, 17)
            ),
            self.user,
        ).data

        linked = self.book(parking_booking_id=booking.id)
        self.assertTrue(linked.success)
        self.assertEqual(linked.data.parking_booking_id, booking.id)

        bob = self.parking.register_user("bob").data
        stolen = self.book(user=bob, parking_booking_id=booking.id)
        self.assertEqual(stolen.error, ErrorKind.NOT_FOUND)
        self.assertEqual(self.book(parking_booking_id="missing").error, ErrorKind.NOT_FOUND)


# ============================================================================
# POOLING
# ============================================================================

class TestPooling(RideServiceTestBase):

    def test_compatible_rides_share_a_group(self):
        first = self.shared().data
        self.assertIsNotNone(first.pooling_group_id)
        self.assertIsNotNone(first.driver)

        second = self.shared(north_of(METRO, 800), north_of(OFFICE, 600)).data
        self.assertEqual(second.status, RideStatus.CONFIRMED.value)
        self.assertEqual(second.pooling_group_id, first.pooling_group_id)
        self.assertEqual(second.driver, first.driver)

    def test_distant_pickup_opens_a_new_group(self):
        first = self.shared().data
        far = self.shared(north_of(METRO, 1500), OFFICE).data
        self.assertNotEqual(far.pooling_group_id, first.pooling_group_id)

    def test_distant_dropoff_opens_a_new_group(self):
        first = self.shared().data
        far = self.shared(METRO, north_of(OFFICE, 1500)).data
        self.assertNotEqual(far.pooling_group_id, first.pooling_group_id)

    def test_full_group_is_skipped(self):
        first = self.shared(max_passengers=2).data
        second = self.shared().data
        third = self.shared().data

        self.assertEqual(second.pooling_group_id, first.pooling_group_id)
        self.assertNotEqual(third.pooling_group_id, first.pooling_group_id)

    def test_cancelled_member_frees_a_seat(self):
        first = self.shared(max_passengers=2).data
        second = self.shared().data
        self.assertTrue(self.rides.cancel_ride_booking(second.id, self.user).success)

        third = self.shared().data
        self.assertEqual(third.pooling_group_id, first.pooling_group_id)

    def test_earliest_compatible_group_wins(self):
        first = self.shared().data
        other = self.shared(north_of(METRO, 1500), OFFICE).data
        self.assertNotEqual(first.pooling_group_id, other.pooling_group_id)

        # Within range of both groups
        between = self.shared(north_of(METRO, 750), OFFICE).data
        self.assertEqual(between.pooling_group_id, first.pooling_group_id)

    def test_missing_coordinates_never_pool(self):
        first = self.shared().data
        second = self.shared(pickup=None).data
        third = self.shared(pickup=None).data

        self.assertNotEqual(second.pooling_group_id, first.pooling_group_id)
        self.assertNotEqual(third.pooling_group_id, second.pooling_group_id)

    def test_unshared_ride_never_joins(self):
        self.shared()
        ride = self.book().data
        self.assertIsNone(ride.pooling_group_id)


# ============================================================================
# STATUS UPDATES
# ============================================================================

class TestRideStatus(RideServiceTestBase):

    def setUp(self):
        super().setUp()
        self.ride = self.book(pickup=None, dropoff=None).data

    def test_forward_chain(self):
        for status in ("DRIVER_ASSIGNED", "PICKUP", "IN_PROGRESS"):
            self.clock.advance(minutes=5)
            result = self.rides.update_ride_status(self.ride.id, status, self.user)
            self.assertEqual(result.data.status, status)

        self.assertIsNotNone(result.data.actual_pickup_time)
        completed = self.rides.update_ride_status(self.ride.id, RideStatus.COMPLETED, self.user).data
        self.assertEqual(completed.status, RideStatus.COMPLETED.value)
        self.assertEqual(completed.actual_fare, Decimal("110.00"))
        self.assertEqual(completed.actual_dropoff_time, self.clock())

    def test_driver_assigned_step_is_optional(self):
        result = self.rides.update_ride_status(self.ride.id, RideStatus.PICKUP, self.user)
        self.assertTrue(result.success)

        skipped = self.rides.update_ride_status(self.ride.id, RideStatus.COMPLETED, self.user)
        self.assertEqual(skipped.error, ErrorKind.INVALID_STATE)

    def test_backward_and_unknown_statuses(self):
        self.rides.update_ride_status(self.ride.id, RideStatus.PICKUP, self.user)

        backward = self.rides.update_ride_status(self.ride.id, RideStatus.CONFIRMED, self.user)
        self.assertEqual(backward.error, ErrorKind.INVALID_STATE)

        unknown = self.rides.update_ride_status(self.ride.id, "FLYING", self.user)
        self.assertEqual(unknown.error, ErrorKind.INVALID_STATE)

        self.assertEqual(
            self.rides.get_ride_booking(self.ride.id, self.user).data.status, RideStatus.PICKUP.value
        )

    def test_cancel(self):
        cancelled = self.rides.cancel_ride_booking(self.ride.id, self.user)
        self.assertEqual(cancelled.data.status, RideStatus.CANCELLED.value)
        again = self.rides.cancel_ride_booking(self.ride.id, self.user)
        self.assertEqual(again.error, ErrorKind.INVALID_STATE)

    def test_completed_ride_cannot_be_cancelled(self):
        for status in (RideStatus.PICKUP, RideStatus.IN_PROGRESS, RideStatus.COMPLETED):
            self.assertTrue(self.rides.update_ride_status(self.ride.id, status, self.user).success)
        result = self.rides.cancel_ride_booking(self.ride.id, self.user)
        self.assertEqual(result.error, ErrorKind.INVALID_STATE)

    def test_other_users_ride_is_not_found(self):
        bob = self.parking.register_user("bob").data
        self.assertEqual(self.rides.get_ride_booking(self.ride.id, bob).error, ErrorKind.NOT_FOUND)
        self.assertEqual(self.rides.cancel_ride_booking(self.ride.id, bob).error, ErrorKind.NOT_FOUND)
        self.assertEqual(
            self.rides.update_ride_status(self.ride.id, RideStatus.PICKUP, bob).error, ErrorKind.NOT_FOUND
        )
        self.assertEqual(self.rides.get_ride_booking("missing", self.user).error, ErrorKind.NOT_FOUND)


# ============================================================================
# QUERIES
# ============================================================================

class TestRideQueries(RideServiceTestBase):

    def test_list_user_rides_newest_first(self):
        first = self.book().data
        second = self.book(is_shared=True).data

        rides = self.rides.list_user_rides(self.user).data
        self.assertEqual([ride.id for ride in rides], [second.id, first.id])

        bob = self.parking.register_user("bob").data
        self.assertEqual(self.rides.list_user_rides(bob).data, [])

    def test_quote_ride(self):
        quote = self.rides.quote_ride(None, None, RideClass.CAB, AFTERNOON).data
        self.assertEqual(quote.amount, Decimal("110.00"))
        self.assertIsNone(quote.distance_km)

        pickup, dropoff = GeoPoint(*METRO), GeoPoint(*OFFICE)
        priced = self.rides.quote_ride(pickup, dropoff, RideClass.E_RICKSHAW, AFTERNOON).data
        self.assertAlmostEqual(priced.distance_km, pickup.distance_km(dropoff), places=3)
        self.assertGreater(priced.amount, Decimal("20"))

    def test_quote_at_peak_hour(self):
        peak = self.rides.quote_ride(None, None, RideClass.CAB, datetime(2024, 1, 2, 18)).data
        self.assertEqual(peak.amount, Decimal("165.00"))


if __name__ == '__main__':
    unittest.main()
