# File: parkandride/domain/models.py
"""
Domain Models for the Park-and-Ride Booking Engine
Following Domain-Driven Design (DDD) principles with rich domain models

This module contains:
1. Enums: Status and classification enumerations for lots, spots, bookings and rides
2. Value Objects: Immutable objects with no identity (GeoPoint, TimeWindow)
3. Entities: Objects with identity and lifecycle (ParkingLot, ParkingSpot, UserRef)
4. Domain Events: Events representing business occurrences

The time-window overlap checker lives here as well, because every other
component (allocation, capacity checks, no-show sweeps) builds on TimeWindow.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Dict, Any, Iterable, Tuple, Union
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
import math
import re
import uuid


EARTH_RADIUS_KM = 6371.0


# ============================================================================
# ENUMS
# ============================================================================

class LotStatus(Enum):
    """Operational status of a parking lot"""
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    MAINTENANCE = "MAINTENANCE"


class SpotType(Enum):
    """Physical type of a parking spot"""
    REGULAR = "REGULAR"
    COMPACT = "COMPACT"
    DISABLED = "DISABLED"
    ELECTRIC = "ELECTRIC"


class SpotStatus(Enum):
    """Status of a physical parking spot"""
    AVAILABLE = "AVAILABLE"
    OCCUPIED = "OCCUPIED"
    RESERVED = "RESERVED"
    OUT_OF_ORDER = "OUT_OF_ORDER"


class BookingStatus(Enum):
    """Lifecycle status of a parking booking"""
    CONFIRMED = "CONFIRMED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"

    @property
    def is_terminal(self) -> bool:
        return self in (BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.NO_SHOW)

    @property
    def holds_capacity(self) -> bool:
        """Bookings in these states consume lot capacity and their spot"""
        return self in HOLDING_STATUSES


HOLDING_STATUSES = (BookingStatus.CONFIRMED, BookingStatus.ACTIVE)


class BookingClass(Enum):
    """Booking class, drives the pricing discount"""
    HOURLY = "HOURLY"
    DAILY = "DAILY"
    MONTHLY = "MONTHLY"


class RideClass(Enum):
    """Vehicle class for last-mile rides"""
    CAB = "CAB"
    SHUTTLE = "SHUTTLE"
    E_RICKSHAW = "E_RICKSHAW"
    AUTO_RICKSHAW = "AUTO_RICKSHAW"


class RideStatus(Enum):
    """Lifecycle status of a ride booking"""
    REQUESTED = "REQUESTED"
    CONFIRMED = "CONFIRMED"
    DRIVER_ASSIGNED = "DRIVER_ASSIGNED"
    PICKUP = "PICKUP"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (RideStatus.COMPLETED, RideStatus.CANCELLED)


# ============================================================================
# VALUE OBJECTS
# ============================================================================

def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two (lat, lon) pairs in kilometers"""
    lat_distance = math.radians(lat2 - lat1)
    lon_distance = math.radians(lon2 - lon1)
    a = (math.sin(lat_distance / 2) ** 2
         + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2))
         * math.sin(lon_distance / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


@dataclass(frozen=True)
class GeoPoint:
    """
    Value Object: Geographic position (WGS84 latitude/longitude)
    """
    latitude: float
    longitude: float

    def __post_init__(self):
        if not -90 <= self.latitude <= 90:
            raise ValueError(f"Latitude must be between -90 and 90: {self.latitude}")
        if not -180 <= self.longitude <= 180:
            raise ValueError(f"Longitude must be between -180 and 180: {self.longitude}")

    @classmethod
    def maybe(cls, latitude: Optional[float], longitude: Optional[float]) -> Optional['GeoPoint']:
        """Build a point only when both coordinates are present"""
        if latitude is None or longitude is None:
            return None
        return cls(latitude, longitude)

    def distance_km(self, other: 'GeoPoint') -> float:
        return haversine_km(self.latitude, self.longitude, other.latitude, other.longitude)

    def distance_meters(self, other: 'GeoPoint') -> float:
        return self.distance_km(other) * 1000

    def __str__(self) -> str:
        return f"({self.latitude:.6f}, {self.longitude:.6f})"


@dataclass(frozen=True)
class TimeWindow:
    """
    Value Object: Half-open time interval [start_time, end_time)

    A window ending exactly when another starts does not overlap it, so
    back-to-back bookings of the same spot are allowed.
    """
    start_time: datetime
    end_time: datetime

    def __post_init__(self):
        if self.end_time <= self.start_time:
            raise ValueError("End time must be after start time")

    @property
    def duration(self) -> timedelta:
        return self.end_time - self.start_time

    @property
    def duration_hours(self) -> float:
        return self.duration.total_seconds() / 3600

    @property
    def whole_hours(self) -> int:
        """Number of complete hours in the window (truncated)"""
        return int(self.duration.total_seconds() // 3600)

    def overlaps(self, other: 'TimeWindow') -> bool:
        """Check if this window overlaps another (exclusive end)"""
        return self.start_time < other.end_time and self.end_time > other.start_time

    def contains(self, instant: datetime) -> bool:
        return self.start_time <= instant < self.end_time

    def __str__(self) -> str:
        start_str = self.start_time.strftime("%Y-%m-%d %H:%M")
        end_str = self.end_time.strftime("%Y-%m-%d %H:%M")
        return f"{start_str} to {end_str} ({self.duration_hours:.1f} hours)"


def count_conflicts(existing: Iterable[TimeWindow], candidate: TimeWindow) -> int:
    """
    Count how many of the existing windows overlap the candidate window
    """
    return sum(1 for window in existing if window.overlaps(candidate))


@dataclass(frozen=True)
class DriverAssignment:
    """
    Value Object: Driver and vehicle descriptors returned by dispatch
    """
    driver_name: str
    driver_phone: str
    vehicle_number: str
    vehicle_model: str


# ============================================================================
# DOMAIN ENTITIES
# ============================================================================

class Entity:
    """
    Base class for all domain entities
    Provides common functionality for entities with identity
    """

    def __init__(self, id: Optional[str] = None):
        self._id = id or str(uuid.uuid4())

    @property
    def id(self) -> str:
        """Get entity ID"""
        return self._id

    def __eq__(self, other: object) -> bool:
        """Entities are equal if they have the same ID and type"""
        if not isinstance(other, Entity):
            return False
        return self.id == other.id and type(self) == type(other)

    def __hash__(self) -> int:
        return hash((self.id, type(self).__name__))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id})"


class UserRef(Entity):
    """
    Entity: Reference to an already-authenticated user
    Identity management lives outside the engine, only the id and name are kept.
    """

    def __init__(self, username: str, id: Optional[str] = None):
        super().__init__(id)
        if not username or not username.strip():
            raise ValueError("Username cannot be empty")
        self.username = username.strip()

    def __str__(self) -> str:
        return self.username


class ParkingLot(Entity):
    """
    Entity: Parking facility with a fixed number of capacity units

    available_units is a cached counter. It is refreshed from the number of
    capacity-holding bookings and always kept inside [0, total_units].
    """

    def __init__(
        self,
        name: str,
        location: GeoPoint,
        total_units: int,
        base_hourly_rate: Optional[Decimal] = None,
        address: str = "",
        status: LotStatus = LotStatus.ACTIVE,
        available_units: Optional[int] = None,
        metro_station_name: Optional[str] = None,
        distance_from_metro: Optional[float] = None,
        facilities: Optional[str] = None,
        created_at: Optional[datetime] = None,
        id: Optional[str] = None
    ):
        super().__init__(id)
        self.name = name
        self.address = address
        self.location = location
        self.total_units = total_units
        self.available_units = total_units if available_units is None else available_units
        self.base_hourly_rate = Decimal(str(base_hourly_rate)) if base_hourly_rate is not None else None
        self.status = status
        self.metro_station_name = metro_station_name
        self.distance_from_metro = distance_from_metro
        self.facilities = facilities
        self.created_at = created_at or datetime.now()
        self.updated_at = self.created_at
        self._validate()

    def _validate(self) -> None:
        if not self.name or not self.name.strip():
            raise ValueError("Parking lot name cannot be empty")
        if self.total_units < 0:
            raise ValueError(f"Total units cannot be negative: {self.total_units}")
        if not 0 <= self.available_units <= self.total_units:
            raise ValueError(
                f"Available units ({self.available_units}) must be within 0..{self.total_units}"
            )
        if self.base_hourly_rate is not None and self.base_hourly_rate < 0:
            raise ValueError("Base hourly rate cannot be negative")

    @property
    def is_active(self) -> bool:
        return self.status == LotStatus.ACTIVE

    @property
    def occupancy_rate(self) -> float:
        if self.total_units == 0:
            return 0.0
        return (self.total_units - self.available_units) / self.total_units

    def refresh_availability(self, holding_bookings: int, now: Optional[datetime] = None) -> int:
        """
        Recompute available units from the number of bookings holding capacity
        Returns the new counter value.
        """
        self.available_units = max(0, min(self.total_units, self.total_units - holding_bookings))
        self.updated_at = now or datetime.now()
        return self.available_units

    def change_status(self, status: LotStatus, now: Optional[datetime] = None) -> None:
        self.status = status
        self.updated_at = now or datetime.now()

    def distance_meters_to(self, point: GeoPoint) -> float:
        return self.location.distance_meters(point)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "latitude": self.location.latitude,
            "longitude": self.location.longitude,
            "total_units": self.total_units,
            "available_units": self.available_units,
            "base_hourly_rate": str(self.base_hourly_rate) if self.base_hourly_rate is not None else None,
            "status": self.status.value,
            "metro_station_name": self.metro_station_name,
            "distance_from_metro": self.distance_from_metro,
            "facilities": self.facilities,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ParkingLot':
        lot = cls(
            id=data["id"],
            name=data["name"],
            address=data.get("address", ""),
            location=GeoPoint(data["latitude"], data["longitude"]),
            total_units=data["total_units"],
            available_units=data["available_units"],
            base_hourly_rate=Decimal(data["base_hourly_rate"]) if data.get("base_hourly_rate") else None,
            status=LotStatus(data["status"]),
            metro_station_name=data.get("metro_station_name"),
            distance_from_metro=data.get("distance_from_metro"),
            facilities=data.get("facilities"),
            created_at=datetime.fromisoformat(data["created_at"]),
        )
        lot.updated_at = datetime.fromisoformat(data["updated_at"])
        return lot

    def __str__(self) -> str:
        return f"{self.name} ({self.available_units}/{self.total_units} free)"


def spot_number_key(spot_number: str) -> Tuple[Union[int, str], ...]:
    """
    Natural sort key for spot identifiers, so that "A-2" sorts before "A-10"
    """
    parts = re.split(r'(\d+)', spot_number)
    return tuple((0, int(part)) if part.isdigit() else (1, part) for part in parts if part)


class ParkingSpot(Entity):
    """
    Entity: One physically allocatable parking position within a lot

    Status mirrors the currently assigned booking: RESERVED while the booking
    is CONFIRMED, OCCUPIED while ACTIVE, AVAILABLE otherwise.
    """

    def __init__(
        self,
        lot_id: str,
        spot_number: str,
        spot_type: SpotType = SpotType.REGULAR,
        status: SpotStatus = SpotStatus.AVAILABLE,
        floor: Optional[str] = None,
        section: Optional[str] = None,
        created_at: Optional[datetime] = None,
        id: Optional[str] = None
    ):
        super().__init__(id)
        if not spot_number or not spot_number.strip():
            raise ValueError("Spot number cannot be empty")
        self.lot_id = lot_id
        self.spot_number = spot_number.strip()
        self.spot_type = spot_type
        self.status = status
        self.floor = floor
        self.section = section
        self.created_at = created_at or datetime.now()
        self.updated_at = self.created_at

    @property
    def sort_key(self) -> Tuple[Union[int, str], ...]:
        return spot_number_key(self.spot_number)

    @property
    def is_available(self) -> bool:
        return self.status == SpotStatus.AVAILABLE

    def reserve(self, now: Optional[datetime] = None) -> None:
        if self.status != SpotStatus.AVAILABLE:
            raise ValueError(f"Spot {self.spot_number} is not available ({self.status.value})")
        self._set_status(SpotStatus.RESERVED, now)

    def occupy(self, now: Optional[datetime] = None) -> None:
        self._set_status(SpotStatus.OCCUPIED, now)

    def release(self, now: Optional[datetime] = None) -> None:
        self._set_status(SpotStatus.AVAILABLE, now)

    def mark_out_of_order(self, now: Optional[datetime] = None) -> None:
        self._set_status(SpotStatus.OUT_OF_ORDER, now)

    def _set_status(self, status: SpotStatus, now: Optional[datetime]) -> None:
        self.status = status
        self.updated_at = now or datetime.now()

    def __str__(self) -> str:
        return f"Spot {self.spot_number} [{self.spot_type.value}] - {self.status.value}"


# ============================================================================
# DOMAIN EVENTS (for event-driven architecture)
# ============================================================================

class DomainEvent(ABC):
    """
    Base class for all domain events
    Events represent something that happened in the domain
    """

    event_type: str = "domain.event"

    def __init__(self, timestamp: Optional[datetime] = None):
        self.event_id = str(uuid.uuid4())
        self.timestamp = timestamp or datetime.now()
        self.version = "1.0"

    @abstractmethod
    def data(self) -> Dict[str, Any]:
        """Event payload"""
        pass

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for serialization"""
        return {
            "event_type": self.event_type,
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "version": self.version,
            "data": self.data(),
        }

    def __str__(self) -> str:
        return f"{self.__class__.__name__} at {self.timestamp}"


class BookingEvent(DomainEvent):
    """Base for parking booking events"""

    def __init__(
        self,
        booking_id: str,
        lot_id: str,
        spot_id: Optional[str],
        user_id: str,
        timestamp: Optional[datetime] = None
    ):
        super().__init__(timestamp)
        self.booking_id = booking_id
        self.lot_id = lot_id
        self.spot_id = spot_id
        self.user_id = user_id

    def data(self) -> Dict[str, Any]:
        return {
            "booking_id": self.booking_id,
            "lot_id": self.lot_id,
            "spot_id": self.spot_id,
            "user_id": self.user_id,
        }


class BookingConfirmedEvent(BookingEvent):
    """Event raised when a parking booking is created"""
    event_type = "booking.confirmed"


class BookingStartedEvent(BookingEvent):
    """Event raised when a vehicle enters for its booking"""
    event_type = "booking.started"


class BookingCompletedEvent(BookingEvent):
    """Event raised when parking ends"""
    event_type = "booking.completed"


class BookingCancelledEvent(BookingEvent):
    """Event raised when a confirmed booking is cancelled"""
    event_type = "booking.cancelled"


class BookingNoShowEvent(BookingEvent):
    """Event raised by the no-show sweep"""
    event_type = "booking.no_show"


class RideBookedEvent(DomainEvent):
    """Event raised when a ride booking is confirmed"""

    event_type = "ride.booked"

    def __init__(
        self,
        ride_id: str,
        user_id: str,
        pooling_group_id: Optional[str],
        pooled: bool,
        timestamp: Optional[datetime] = None
    ):
        super().__init__(timestamp)
        self.ride_id = ride_id
        self.user_id = user_id
        self.pooling_group_id = pooling_group_id
        self.pooled = pooled

    def data(self) -> Dict[str, Any]:
        return {
            "ride_id": self.ride_id,
            "user_id": self.user_id,
            "pooling_group_id": self.pooling_group_id,
            "pooled": self.pooled,
        }


class RideStatusChangedEvent(DomainEvent):
    """Event raised on every ride status transition"""

    event_type = "ride.status_changed"

    def __init__(
        self,
        ride_id: str,
        old_status: RideStatus,
        new_status: RideStatus,
        timestamp: Optional[datetime] = None
    ):
        super().__init__(timestamp)
        self.ride_id = ride_id
        self.old_status = old_status
        self.new_status = new_status

    def data(self) -> Dict[str, Any]:
        return {
            "ride_id": self.ride_id,
            "old_status": self.old_status.value,
            "new_status": self.new_status.value,
        }
