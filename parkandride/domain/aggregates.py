# File: parkandride/domain/aggregates.py
"""
Aggregate Roots for the Park-and-Ride Booking Engine
Following Domain-Driven Design (DDD) Aggregate Pattern

Aggregates:
1. ParkingBooking - Reservation of lot capacity (and optionally a spot) for a window
2. RideBooking - Last-mile ride, optionally shared in a pooling group

Key Concepts:
- Aggregate Roots enforce their lifecycle state machines
- Status is only changed through aggregate methods, never assigned by callers
- Domain events are raised for important state changes
- Timestamps are stamped explicitly at the point of state change
"""

from typing import List, Optional, Dict, Any, Tuple
from datetime import datetime, timedelta
from decimal import Decimal
import logging

from .models import (
    Entity, TimeWindow, GeoPoint, DriverAssignment,
    BookingStatus, BookingClass, RideClass, RideStatus,
    DomainEvent, BookingConfirmedEvent, BookingStartedEvent,
    BookingCompletedEvent, BookingCancelledEvent, BookingNoShowEvent,
    RideBookedEvent, RideStatusChangedEvent
)
from .exceptions import InvalidStateError


# ============================================================================
# BASE AGGREGATE ROOT
# ============================================================================

class AggregateRoot(Entity):
    """
    Base class for all aggregate roots
    Provides domain event collection and versioning
    """

    def __init__(self, id: Optional[str] = None, version: int = 1):
        super().__init__(id)
        self._version: int = version
        self._changes: List[DomainEvent] = []
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    def version(self) -> int:
        """Get current aggregate version"""
        return self._version

    def _increment_version(self) -> None:
        """Increment version after state change"""
        self._version += 1

    def _add_domain_event(self, event: DomainEvent) -> None:
        """Add a domain event to the list of changes"""
        self._changes.append(event)
        self._logger.debug(f"Added domain event: {event.__class__.__name__}")

    def clear_events(self) -> List[DomainEvent]:
        """Clear and return all domain events"""
        events = self._changes.copy()
        self._changes.clear()
        return events

    @property
    def has_changes(self) -> bool:
        """Check if aggregate has pending domain events"""
        return len(self._changes) > 0


# ============================================================================
# PARKING BOOKING AGGREGATE
# ============================================================================

class ParkingBooking(AggregateRoot):
    """
    Aggregate Root: Parking reservation

    State machine:
        CONFIRMED --start()--> ACTIVE --end()--> COMPLETED
        CONFIRMED --cancel()--> CANCELLED
        CONFIRMED --mark_no_show()--> NO_SHOW   (timeout sweep only)

    Immutable once COMPLETED, CANCELLED or NO_SHOW.
    """

    def __init__(
        self,
        user_id: str,
        lot_id: str,
        window: TimeWindow,
        total_amount: Decimal,
        booking_class: BookingClass = BookingClass.HOURLY,
        spot_id: Optional[str] = None,
        vehicle_number: Optional[str] = None,
        access_pin: Optional[str] = None,
        qr_payload: Optional[str] = None,
        status: BookingStatus = BookingStatus.CONFIRMED,
        actual_start: Optional[datetime] = None,
        actual_end: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        id: Optional[str] = None,
        version: int = 1
    ):
        super().__init__(id, version)
        self.user_id = user_id
        self.lot_id = lot_id
        self.spot_id = spot_id
        self.window = window
        self.total_amount = total_amount
        self.booking_class = booking_class
        self.vehicle_number = vehicle_number
        self.access_pin = access_pin
        self.qr_payload = qr_payload
        self.status = status
        self.actual_start = actual_start
        self.actual_end = actual_end
        self.created_at = created_at or datetime.now()
        self.updated_at = updated_at or self.created_at
        self._validate_invariants()

    @classmethod
    def confirm(
        cls,
        user_id: str,
        lot_id: str,
        window: TimeWindow,
        total_amount: Decimal,
        booking_class: BookingClass,
        access_pin: str,
        spot_id: Optional[str] = None,
        vehicle_number: Optional[str] = None,
        now: Optional[datetime] = None,
        id: Optional[str] = None
    ) -> 'ParkingBooking':
        """Factory: create a new booking in CONFIRMED state"""
        booking = cls(
            user_id=user_id,
            lot_id=lot_id,
            window=window,
            total_amount=total_amount,
            booking_class=booking_class,
            spot_id=spot_id,
            vehicle_number=vehicle_number,
            access_pin=access_pin,
            created_at=now,
            id=id,
        )
        booking._add_domain_event(BookingConfirmedEvent(
            booking.id, lot_id, spot_id, user_id, timestamp=booking.created_at
        ))
        booking._logger.info(
            f"Confirmed booking {booking.id} on lot {lot_id} for {window}"
        )
        return booking

    def _validate_invariants(self) -> None:
        """Validate booking invariants"""
        if self.total_amount < Decimal('0'):
            raise ValueError("Total amount cannot be negative")

        if self.access_pin is not None and not (len(self.access_pin) == 4 and self.access_pin.isdigit()):
            raise ValueError(f"Access PIN must be 4 digits: {self.access_pin!r}")

        if self.actual_start and self.actual_end and self.actual_end < self.actual_start:
            raise ValueError("Actual end cannot precede actual start")

    # ========================================================================
    # LIFECYCLE OPERATIONS
    # ========================================================================

    def start(self, now: Optional[datetime] = None) -> None:
        """Vehicle entered: CONFIRMED -> ACTIVE"""
        self._require(BookingStatus.CONFIRMED, "start parking")
        self.actual_start = now or datetime.now()
        self._transition(BookingStatus.ACTIVE, self.actual_start)
        self._add_domain_event(BookingStartedEvent(
            self.id, self.lot_id, self.spot_id, self.user_id, timestamp=self.actual_start
        ))

    def end(self, now: Optional[datetime] = None) -> None:
        """Vehicle left: ACTIVE -> COMPLETED"""
        self._require(BookingStatus.ACTIVE, "end parking")
        self.actual_end = now or datetime.now()
        self._transition(BookingStatus.COMPLETED, self.actual_end)
        self._add_domain_event(BookingCompletedEvent(
            self.id, self.lot_id, self.spot_id, self.user_id, timestamp=self.actual_end
        ))

    def cancel(self, now: Optional[datetime] = None) -> None:
        """CONFIRMED -> CANCELLED"""
        self._require(BookingStatus.CONFIRMED, "cancel booking")
        timestamp = now or datetime.now()
        self._transition(BookingStatus.CANCELLED, timestamp)
        self._add_domain_event(BookingCancelledEvent(
            self.id, self.lot_id, self.spot_id, self.user_id, timestamp=timestamp
        ))

    def mark_no_show(self, now: Optional[datetime] = None) -> None:
        """CONFIRMED -> NO_SHOW, reachable only from the timeout sweep"""
        self._require(BookingStatus.CONFIRMED, "mark booking as no-show")
        timestamp = now or datetime.now()
        self._transition(BookingStatus.NO_SHOW, timestamp)
        self._add_domain_event(BookingNoShowEvent(
            self.id, self.lot_id, self.spot_id, self.user_id, timestamp=timestamp
        ))

    def attach_qr_payload(self, payload: str, now: Optional[datetime] = None) -> None:
        if self.status.is_terminal:
            raise InvalidStateError(f"Cannot attach credentials to booking in status {self.status.value}")
        self.qr_payload = payload
        self.updated_at = now or datetime.now()

    def _require(self, expected: BookingStatus, action: str) -> None:
        if self.status != expected:
            raise InvalidStateError(
                f"Cannot {action} for booking in status: {self.status.value}"
            )

    def _transition(self, status: BookingStatus, timestamp: datetime) -> None:
        old_status = self.status
        self.status = status
        self.updated_at = timestamp
        self._increment_version()
        self._validate_invariants()
        self._logger.info(f"Booking {self.id}: {old_status.value} -> {status.value}")

    # ========================================================================
    # QUERY METHODS
    # ========================================================================

    @property
    def start_time(self) -> datetime:
        return self.window.start_time

    @property
    def end_time(self) -> datetime:
        return self.window.end_time

    @property
    def holds_capacity(self) -> bool:
        return self.status.holds_capacity

    def matches_pin(self, pin: str) -> bool:
        return self.access_pin is not None and self.access_pin == pin

    def is_no_show(self, now: datetime, grace: timedelta = timedelta(0)) -> bool:
        """A confirmed booking nobody started by start_time + grace"""
        return (
            self.status == BookingStatus.CONFIRMED
            and self.actual_start is None
            and self.window.start_time + grace <= now
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "lot_id": self.lot_id,
            "spot_id": self.spot_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "actual_start": self.actual_start.isoformat() if self.actual_start else None,
            "actual_end": self.actual_end.isoformat() if self.actual_end else None,
            "total_amount": str(self.total_amount),
            "status": self.status.value,
            "booking_class": self.booking_class.value,
            "vehicle_number": self.vehicle_number,
            "qr_payload": self.qr_payload,
        }

    def __str__(self) -> str:
        return f"Booking {self.id} [{self.status.value}] lot={self.lot_id} {self.window}"


# ============================================================================
# RIDE BOOKING AGGREGATE
# ============================================================================

# Forward-only ride transitions; COMPLETED and CANCELLED are terminal
RIDE_TRANSITIONS: Dict[RideStatus, Tuple[RideStatus, ...]] = {
    RideStatus.REQUESTED: (RideStatus.CONFIRMED, RideStatus.CANCELLED),
    RideStatus.CONFIRMED: (RideStatus.DRIVER_ASSIGNED, RideStatus.PICKUP, RideStatus.CANCELLED),
    RideStatus.DRIVER_ASSIGNED: (RideStatus.PICKUP, RideStatus.CANCELLED),
    RideStatus.PICKUP: (RideStatus.IN_PROGRESS, RideStatus.CANCELLED),
    RideStatus.IN_PROGRESS: (RideStatus.COMPLETED, RideStatus.CANCELLED),
    RideStatus.COMPLETED: (),
    RideStatus.CANCELLED: (),
}


class RideBooking(AggregateRoot):
    """
    Aggregate Root: Last-mile ride booking

    Shared rides carry a pooling_group_id common to every member of one trip
    group; members share the driver and vehicle of the group.
    """

    def __init__(
        self,
        user_id: str,
        pickup_label: str,
        dropoff_label: str,
        requested_time: datetime,
        ride_class: RideClass = RideClass.CAB,
        pickup: Optional[GeoPoint] = None,
        dropoff: Optional[GeoPoint] = None,
        scheduled_time: Optional[datetime] = None,
        parking_booking_id: Optional[str] = None,
        is_shared: bool = False,
        max_passengers: int = 1,
        status: RideStatus = RideStatus.REQUESTED,
        estimated_fare: Optional[Decimal] = None,
        actual_fare: Optional[Decimal] = None,
        pooling_group_id: Optional[str] = None,
        driver: Optional[DriverAssignment] = None,
        actual_pickup_time: Optional[datetime] = None,
        actual_dropoff_time: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        id: Optional[str] = None,
        version: int = 1
    ):
        super().__init__(id, version)
        self.user_id = user_id
        self.parking_booking_id = parking_booking_id
        self.pickup_label = pickup_label
        self.dropoff_label = dropoff_label
        self.pickup = pickup
        self.dropoff = dropoff
        self.requested_time = requested_time
        self.scheduled_time = scheduled_time
        self.ride_class = ride_class
        self.is_shared = is_shared
        self.max_passengers = max_passengers
        self.status = status
        self.estimated_fare = estimated_fare
        self.actual_fare = actual_fare
        self.pooling_group_id = pooling_group_id
        self.driver = driver
        self.actual_pickup_time = actual_pickup_time
        self.actual_dropoff_time = actual_dropoff_time
        self.created_at = created_at or datetime.now()
        self.updated_at = updated_at or self.created_at

        if self.max_passengers < 1:
            raise ValueError(f"Max passengers must be at least 1: {self.max_passengers}")

    # ========================================================================
    # DISPATCH / POOLING
    # ========================================================================

    def assign_driver(self, assignment: DriverAssignment, now: Optional[datetime] = None) -> None:
        """Attach dispatch result and confirm the ride"""
        self.driver = assignment
        self._confirm(now, pooled=False)
        self._logger.info(f"Ride {self.id} dispatched to {assignment.driver_name}")

    def open_pooling_group(self, group_id: str) -> None:
        """Become the first member of a new pooling group"""
        if not self.is_shared:
            raise InvalidStateError("Only shared rides can open a pooling group")
        self.pooling_group_id = group_id

    def join_pooling_group(self, representative: 'RideBooking', now: Optional[datetime] = None) -> None:
        """Adopt the group identity and vehicle of an existing shared ride"""
        if not self.is_shared:
            raise InvalidStateError("Only shared rides can join a pooling group")
        self.pooling_group_id = representative.pooling_group_id
        self.driver = representative.driver
        self._confirm(now, pooled=True)
        self._logger.info(f"Ride {self.id} joined pooling group {self.pooling_group_id}")

    def _confirm(self, now: Optional[datetime], pooled: bool) -> None:
        if self.status != RideStatus.REQUESTED:
            raise InvalidStateError(f"Cannot confirm ride in status: {self.status.value}")
        timestamp = now or datetime.now()
        self.status = RideStatus.CONFIRMED
        self.updated_at = timestamp
        self._increment_version()
        self._add_domain_event(RideBookedEvent(
            self.id, self.user_id, self.pooling_group_id, pooled, timestamp=timestamp
        ))

    # ========================================================================
    # LIFECYCLE OPERATIONS
    # ========================================================================

    def can_transition_to(self, status: RideStatus) -> bool:
        return status in RIDE_TRANSITIONS[self.status]

    def transition_to(self, status: RideStatus, now: Optional[datetime] = None) -> None:
        """Move the ride forward; stamps pickup/dropoff times on the way"""
        if not self.can_transition_to(status):
            raise InvalidStateError(
                f"Cannot move ride from {self.status.value} to {status.value}"
            )
        timestamp = now or datetime.now()
        old_status = self.status

        if status == RideStatus.PICKUP:
            self.actual_pickup_time = timestamp
        elif status == RideStatus.COMPLETED:
            self.actual_dropoff_time = timestamp
            if self.actual_fare is None:
                self.actual_fare = self.estimated_fare

        self.status = status
        self.updated_at = timestamp
        self._increment_version()
        self._add_domain_event(RideStatusChangedEvent(self.id, old_status, status, timestamp=timestamp))
        self._logger.info(f"Ride {self.id}: {old_status.value} -> {status.value}")

    def cancel(self, now: Optional[datetime] = None) -> None:
        if self.status.is_terminal:
            raise InvalidStateError(f"Cannot cancel ride in current status: {self.status.value}")
        self.transition_to(RideStatus.CANCELLED, now)

    # ========================================================================
    # QUERY METHODS
    # ========================================================================

    @property
    def is_open_for_pooling(self) -> bool:
        return self.is_shared and self.status == RideStatus.CONFIRMED and self.pooling_group_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "parking_booking_id": self.parking_booking_id,
            "pickup_label": self.pickup_label,
            "dropoff_label": self.dropoff_label,
            "ride_class": self.ride_class.value,
            "status": self.status.value,
            "estimated_fare": str(self.estimated_fare) if self.estimated_fare is not None else None,
            "is_shared": self.is_shared,
            "pooling_group_id": self.pooling_group_id,
            "driver_name": self.driver.driver_name if self.driver else None,
        }

    def __str__(self) -> str:
        return f"Ride {self.id} [{self.status.value}] {self.pickup_label} -> {self.dropoff_label}"
