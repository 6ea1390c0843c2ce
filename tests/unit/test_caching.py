# File: tests/unit/test_caching.py
"""
Unit tests for the cache clients, LotCache and PricingCache
"""

import unittest
from unittest.mock import Mock, MagicMock
from datetime import datetime, timedelta
from decimal import Decimal

from parkandride.domain.models import ParkingLot, GeoPoint, TimeWindow, BookingClass, RideClass
from parkandride.infrastructure.caching import (
    InMemoryCacheClient, RedisCacheClient, LotCache, PricingCache, hour_bucket
)


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


def make_lot(name: str = "Central", rate: str = "50") -> ParkingLot:
    return ParkingLot(
        name=name,
        location=GeoPoint(12.97, 77.59),
        total_units=10,
        base_hourly_rate=Decimal(rate),
        metro_station_name="Central",
        created_at=datetime(2024, 1, 1),
    )


class TestInMemoryCacheClient(unittest.TestCase):

    def setUp(self):
        self.clock = FakeMonotonic()
        self.client = InMemoryCacheClient(clock=self.clock)

    def test_get_set_and_expiry(self):
        self.client.set("k", "v", ex=10)
        self.assertEqual(self.client.get("k"), "v")

        self.clock.value += 10
        self.assertIsNone(self.client.get("k"))

    def test_no_expiry(self):
        self.client.set("k", "v")
        self.clock.value += 10 ** 6
        self.assertEqual(self.client.get("k"), "v")

    def test_delete_and_delete_prefix(self):
        self.client.set("a:1", "x")
        self.client.set("a:2", "y")
        self.client.set("b:1", "z")

        self.client.delete("a:1", "missing")
        self.assertIsNone(self.client.get("a:1"))

        self.client.delete_prefix("a:")
        self.assertIsNone(self.client.get("a:2"))
        self.assertEqual(self.client.get("b:1"), "z")


class TestRedisCacheClient(unittest.TestCase):

    def setUp(self):
        self.redis = MagicMock()
        self.client = RedisCacheClient(self.redis)

    def test_set_passes_expiry(self):
        self.client.set("k", "v", ex=30)
        self.redis.set.assert_called_once_with("k", "v", ex=30)

    def test_delete_prefix_scans_keys(self):
        self.redis.scan_iter.return_value = iter(["p:1", "p:2"])
        self.client.delete_prefix("p:")

        self.redis.scan_iter.assert_called_once_with(match="p:*")
        self.redis.delete.assert_called_once_with("p:1", "p:2")

    def test_delete_prefix_without_matches(self):
        self.redis.scan_iter.return_value = iter([])
        self.client.delete_prefix("p:")
        self.redis.delete.assert_not_called()


class TestLotCache(unittest.TestCase):

    def setUp(self):
        self.cache = LotCache(InMemoryCacheClient(), ttl_seconds=60)

    def test_second_read_is_served_from_cache(self):
        lot = make_lot()
        loader = Mock(return_value=[lot])

        first = self.cache.available_lots(loader)
        second = self.cache.available_lots(loader)

        loader.assert_called_once()
        self.assertEqual(first[0].id, second[0].id)
        self.assertEqual(second[0].base_hourly_rate, Decimal("50"))
        self.assertEqual(second[0].available_units, lot.available_units)

    def test_invalidate_drops_every_listing(self):
        loader = Mock(return_value=[make_lot()])
        self.cache.available_lots(loader)
        self.cache.lots_by_station("Central", loader)
        self.assertEqual(loader.call_count, 2)

        self.cache.invalidate("lot-1")
        self.cache.available_lots(loader)
        self.cache.lots_by_station("Central", loader)
        self.assertEqual(loader.call_count, 4)

    def test_station_listings_are_keyed_by_station(self):
        loader = Mock(return_value=[])
        self.cache.lots_by_station("Central", loader)
        self.cache.lots_by_station("North", loader)
        self.assertEqual(loader.call_count, 2)


class TestPricingCache(unittest.TestCase):

    def setUp(self):
        self.cache = PricingCache(InMemoryCacheClient(), ttl_seconds=60)
        self.lot = make_lot()

    def test_hour_bucket(self):
        self.assertEqual(hour_bucket(datetime(2024, 1, 2, 9, 45)), "2024-01-02T09:1")

    def test_compute_once_per_key(self):
        window = TimeWindow(datetime(2024, 1, 2, 9), datetime(2024, 1, 2, 11))
        key = self.cache.parking_key(self.lot, window, BookingClass.HOURLY)
        compute = Mock(return_value=Decimal("300.00"))

        self.assertEqual(self.cache.get_or_compute(key, compute), Decimal("300.00"))
        self.assertEqual(self.cache.get_or_compute(key, compute), Decimal("300.00"))
        compute.assert_called_once()

    def test_parking_key_covers_every_pricing_input(self):
        start = datetime(2024, 1, 2, 9)
        base = self.cache.parking_key(self.lot, TimeWindow(start, start + timedelta(hours=2)), BookingClass.HOURLY)

        variants = [
            self.cache.parking_key(self.lot, TimeWindow(start, start + timedelta(hours=3)), BookingClass.HOURLY),
            self.cache.parking_key(self.lot, TimeWindow(start, start + timedelta(hours=2)), BookingClass.DAILY),
            self.cache.parking_key(
                self.lot, TimeWindow(start + timedelta(hours=1), start + timedelta(hours=3)), BookingClass.HOURLY
            ),
            self.cache.parking_key(
                self.lot, TimeWindow(start + timedelta(days=4), start + timedelta(days=4, hours=2)), BookingClass.HOURLY
            ),
        ]
        for key in variants:
            self.assertNotEqual(base, key)

    def test_ride_key_handles_missing_points(self):
        at = datetime(2024, 1, 2, 14)
        with_points = self.cache.ride_key(GeoPoint(1.0, 2.0), GeoPoint(3.0, 4.0), RideClass.CAB, at)
        without = self.cache.ride_key(None, None, RideClass.CAB, at)
        self.assertNotEqual(with_points, without)
        self.assertIn("none", without)

    def test_invalidate(self):
        compute = Mock(return_value=Decimal("1.00"))
        self.cache.get_or_compute(f"{PricingCache.PREFIX}x", compute)
        self.cache.invalidate()
        self.cache.get_or_compute(f"{PricingCache.PREFIX}x", compute)
        self.assertEqual(compute.call_count, 2)


if __name__ == '__main__':
    unittest.main()
