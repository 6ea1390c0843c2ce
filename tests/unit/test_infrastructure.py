# File: tests/unit/test_infrastructure.py
"""
Unit tests for infrastructure components used by the services:
driver dispatch, the event bus and the lock providers
"""

import json
import logging
import threading
import unittest
import uuid
from datetime import datetime
from unittest.mock import Mock, MagicMock

from parkandride.domain.models import RideClass, BookingConfirmedEvent, BookingCancelledEvent
from parkandride.domain.aggregates import RideBooking
from parkandride.infrastructure.dispatch import StubDriverDispatcher
from parkandride.infrastructure.messaging import EventBus, EventHandler, LoggingEventHandler, ALL_EVENTS
from parkandride.infrastructure.locking import (
    InProcessLockProvider, RedisLockProvider, lot_lock_key, user_lock_key, POOLING_LOCK_KEY
)


def ride(ride_class=RideClass.CAB, id=None) -> RideBooking:
    return RideBooking(
        user_id="user-1",
        pickup_label="Metro",
        dropoff_label="Office",
        requested_time=datetime(2024, 1, 2, 14),
        ride_class=ride_class,
        id=id,
    )


# ============================================================================
# DISPATCH
# ============================================================================

class TestStubDriverDispatcher(unittest.TestCase):

    def setUp(self):
        self.dispatcher = StubDriverDispatcher()

    def test_deterministic_per_ride_id(self):
        ride_id = str(uuid.uuid4())
        first = self.dispatcher.assign_driver(ride(id=ride_id))
        second = self.dispatcher.assign_driver(ride(id=ride_id))
        self.assertEqual(first, second)

    def test_vehicle_model_follows_ride_class(self):
        for ride_class, model in StubDriverDispatcher.VEHICLE_MODELS.items():
            with self.subTest(ride_class=ride_class):
                self.assertEqual(self.dispatcher.assign_driver(ride(ride_class)).vehicle_model, model)

    def test_non_uuid_ids_are_supported(self):
        assignment = self.dispatcher.assign_driver(ride(id="ride-42"))
        self.assertTrue(assignment.driver_name.startswith("Driver "))
        self.assertTrue(assignment.driver_phone.startswith("+91"))


# ============================================================================
# EVENT BUS
# ============================================================================

def confirmed_event() -> BookingConfirmedEvent:
    return BookingConfirmedEvent("booking-1", "lot-1", None, "user-1", timestamp=datetime(2024, 1, 2, 8))


class TestEventBus(unittest.TestCase):

    def setUp(self):
        self.bus = EventBus()

    def make_handler(self) -> Mock:
        handler = Mock(spec=EventHandler)
        handler.can_handle.return_value = True
        return handler

    def test_publish_to_type_and_wildcard_subscribers(self):
        typed, wildcard, other = self.make_handler(), self.make_handler(), self.make_handler()
        self.bus.subscribe("booking.confirmed", typed)
        self.bus.subscribe(ALL_EVENTS, wildcard)
        self.bus.subscribe("booking.cancelled", other)

        event = confirmed_event()
        self.bus.publish(event)

        typed.handle.assert_called_once_with(event)
        wildcard.handle.assert_called_once_with(event)
        other.handle.assert_not_called()

    def test_failing_handler_does_not_stop_others(self):
        failing, healthy = self.make_handler(), self.make_handler()
        failing.handle.side_effect = RuntimeError("boom")
        self.bus.subscribe(ALL_EVENTS, failing)
        self.bus.subscribe(ALL_EVENTS, healthy)

        with self.assertLogs("EventBus", level="ERROR"):
            self.bus.publish(confirmed_event())
        healthy.handle.assert_called_once()

    def test_unsubscribe_and_can_handle(self):
        handler = self.make_handler()
        self.bus.subscribe(ALL_EVENTS, handler)
        self.bus.subscribe(ALL_EVENTS, handler)
        self.bus.publish(confirmed_event())
        self.assertEqual(handler.handle.call_count, 1)

        handler.can_handle.return_value = False
        self.bus.publish(confirmed_event())
        self.assertEqual(handler.handle.call_count, 1)

        handler.can_handle.return_value = True
        self.bus.unsubscribe(ALL_EVENTS, handler)
        self.bus.publish_all([confirmed_event(), BookingCancelledEvent("b", "l", None, "u")])
        self.assertEqual(handler.handle.call_count, 1)

    def test_logging_handler_writes_json(self):
        with self.assertLogs("parkandride.events", level="INFO") as logs:
            LoggingEventHandler(logging.getLogger("parkandride.events")).handle(confirmed_event())

        payload = json.loads(logs.records[0].getMessage())
        self.assertEqual(payload["event_type"], "booking.confirmed")
        self.assertEqual(payload["data"]["booking_id"], "booking-1")


# ============================================================================
# LOCKING
# ============================================================================

class TestInProcessLockProvider(unittest.TestCase):

    def test_key_naming(self):
        self.assertEqual(lot_lock_key("abc"), "lot:abc")
        self.assertEqual(user_lock_key("alice"), "user:alice")
        self.assertEqual(POOLING_LOCK_KEY, "pooling")

    def test_same_key_is_exclusive(self):
        provider = InProcessLockProvider()
        inside = []
        overlaps = []
        counter = {"value": 0}

        def work():
            for _ in range(200):
                with provider.lock("lot:1"):
                    inside.append(1)
                    if len(inside) > 1:
                        overlaps.append(len(inside))
                    counter["value"] += 1
                    inside.pop()

        threads = [threading.Thread(target=work) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(counter["value"], 800)
        self.assertEqual(overlaps, [])

    def test_different_keys_do_not_block(self):
        provider = InProcessLockProvider()
        with provider.lock("lot:1"):
            acquired = threading.Event()

            def other():
                with provider.lock("lot:2"):
                    acquired.set()

            thread = threading.Thread(target=other)
            thread.start()
            thread.join(timeout=2)
            self.assertTrue(acquired.is_set())


class TestRedisLockProvider(unittest.TestCase):

    def test_uses_prefixed_redis_lock(self):
        client = MagicMock()
        provider = RedisLockProvider(client, timeout=3, blocking_timeout=1)

        with provider.lock("lot:1"):
            pass

        client.lock.assert_called_once_with("parkandride:lock:lot:1", timeout=3, blocking_timeout=1)
        client.lock.return_value.__enter__.assert_called_once()
        client.lock.return_value.__exit__.assert_called_once()


if __name__ == '__main__':
    unittest.main()
