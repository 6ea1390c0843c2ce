# File: parkandride/infrastructure/repositories.py
"""
Repository Pattern Implementation for the Park-and-Ride Booking Engine

Repositories provide a collection-like interface for accessing domain
aggregates while abstracting the underlying data storage implementation.
Cross-entity navigation is always an explicit lookup by identifier; there
are no lazily loaded relationships.

Repository Types:
1. ParkingLotRepository - Lots, including a locking read for booking creation
2. ParkingSpotRepository - Physical spots of a lot
3. ParkingBookingRepository - Parking bookings and the overlap counting queries
4. RideBookingRepository - Ride bookings and the open pooling groups
5. UserRepository - Already-authenticated user references

Storage Implementations:
- InMemory* - Staged writes applied atomically on commit (tests, demo, CLI)
- SQLAlchemy* - Relational databases
"""

from abc import ABC, abstractmethod
from typing import (
    Type, TypeVar, Generic, Optional, List, Dict, Any, Iterable, Callable
)
from datetime import datetime
from functools import partial
import copy
import logging
import threading

from sqlalchemy import (
    create_engine, Column, Integer, String, Boolean, Float,
    DateTime, ForeignKey, Text, Numeric, UniqueConstraint, func
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from sqlalchemy.pool import StaticPool

from ..domain.models import (
    ParkingLot, ParkingSpot, UserRef, GeoPoint, TimeWindow, DriverAssignment,
    LotStatus, SpotType, SpotStatus, BookingStatus, BookingClass,
    RideClass, RideStatus, HOLDING_STATUSES
)
from ..domain.aggregates import ParkingBooking, RideBooking

# Type variables for generic repositories
T = TypeVar('T')


# ============================================================================
# REPOSITORY INTERFACES
# ============================================================================

class Repository(ABC, Generic[T]):
    """Base repository interface"""

    @abstractmethod
    def add(self, entity: T) -> T:
        """Add an entity to the repository"""
        pass

    @abstractmethod
    def get(self, id: str) -> Optional[T]:
        """Get an entity by ID"""
        pass

    @abstractmethod
    def get_all(self, skip: int = 0, limit: int = 100) -> List[T]:
        """Get all entities with pagination"""
        pass

    @abstractmethod
    def update(self, entity: T) -> T:
        """Update an entity"""
        pass

    @abstractmethod
    def exists(self, id: str) -> bool:
        """Check if an entity exists"""
        pass

    @abstractmethod
    def count(self) -> int:
        """Count all entities"""
        pass


class ParkingLotRepository(Repository[ParkingLot], ABC):

    @abstractmethod
    def get_for_update(self, id: str) -> Optional[ParkingLot]:
        """Load a lot, locking its row until the unit of work ends"""
        pass

    @abstractmethod
    def find_available(self) -> List[ParkingLot]:
        """ACTIVE lots with free units, closest to the metro first"""
        pass

    @abstractmethod
    def find_active(self) -> List[ParkingLot]:
        pass

    @abstractmethod
    def find_by_metro_station(self, station_name: str) -> List[ParkingLot]:
        """ACTIVE lots attached to the station, closest first"""
        pass


class ParkingSpotRepository(Repository[ParkingSpot], ABC):

    @abstractmethod
    def find_by_lot(self, lot_id: str) -> List[ParkingSpot]:
        """All spots of a lot in natural spot-number order"""
        pass


class ParkingBookingRepository(Repository[ParkingBooking], ABC):

    @abstractmethod
    def find_overlapping(
        self,
        lot_id: str,
        window: TimeWindow,
        statuses: Iterable[BookingStatus] = HOLDING_STATUSES
    ) -> List[ParkingBooking]:
        pass

    @abstractmethod
    def count_overlapping(
        self,
        lot_id: str,
        window: TimeWindow,
        statuses: Iterable[BookingStatus] = HOLDING_STATUSES
    ) -> int:
        pass

    @abstractmethod
    def count_holding_after(self, lot_id: str, now: datetime) -> int:
        """Capacity-holding bookings of the lot whose window ends after now"""
        pass

    @abstractmethod
    def find_by_user(self, user_id: str) -> List[ParkingBooking]:
        """Bookings of a user, newest first"""
        pass

    @abstractmethod
    def find_by_qr_payload(self, payload: str) -> Optional[ParkingBooking]:
        pass

    @abstractmethod
    def find_no_show_candidates(self, cutoff: datetime) -> List[ParkingBooking]:
        """CONFIRMED bookings never started whose start time is at or before cutoff"""
        pass


class RideBookingRepository(Repository[RideBooking], ABC):

    @abstractmethod
    def find_by_user(self, user_id: str) -> List[RideBooking]:
        """Rides of a user, newest first"""
        pass

    @abstractmethod
    def find_open_shared(self) -> List[RideBooking]:
        """Shared CONFIRMED rides with a pooling group, oldest first"""
        pass

    @abstractmethod
    def count_group_members(self, pooling_group_id: str) -> int:
        """Members of a pooling group that were not cancelled"""
        pass


class UserRepository(Repository[UserRef], ABC):

    @abstractmethod
    def find_by_username(self, username: str) -> Optional[UserRef]:
        pass


# ============================================================================
# UNIT OF WORK PATTERN
# ============================================================================

class UnitOfWork(ABC):
    """
    Unit of Work pattern for transaction management
    Commits on clean exit of the with-block, rolls back on exception.
    """

    @abstractmethod
    def __enter__(self):
        pass

    @abstractmethod
    def __exit__(self, exc_type, exc_val, exc_tb):
        pass

    @abstractmethod
    def commit(self):
        """Commit the transaction"""
        pass

    @abstractmethod
    def rollback(self):
        """Rollback the transaction"""
        pass

    @property
    @abstractmethod
    def lots(self) -> ParkingLotRepository:
        pass

    @property
    @abstractmethod
    def spots(self) -> ParkingSpotRepository:
        pass

    @property
    @abstractmethod
    def bookings(self) -> ParkingBookingRepository:
        pass

    @property
    @abstractmethod
    def rides(self) -> RideBookingRepository:
        pass

    @property
    @abstractmethod
    def users(self) -> UserRepository:
        pass


def _sort_lots_by_metro_distance(lots: Iterable[ParkingLot]) -> List[ParkingLot]:
    # Lots without a metro distance go last
    return sorted(
        lots,
        key=lambda lot: (lot.distance_from_metro is None, lot.distance_from_metro or 0.0, lot.name)
    )


def _newest_first(items: Iterable[T]) -> List[T]:
    return sorted(items, key=lambda item: (item.created_at, item.id), reverse=True)


# ============================================================================
# IN-MEMORY STORAGE
# ============================================================================

class InMemoryDatabase:
    """
    Process-local storage shared by in-memory units of work
    Rows are stored as private copies; readers always receive copies too.
    """

    TABLES = ("lots", "spots", "bookings", "rides", "users")

    def __init__(self):
        self._tables: Dict[str, Dict[str, Any]] = {name: {} for name in self.TABLES}
        self._lock = threading.RLock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def rows(self, table: str) -> Dict[str, Any]:
        with self._lock:
            return dict(self._tables[table])

    def row(self, table: str, id: str) -> Optional[Any]:
        with self._lock:
            return self._tables[table].get(id)

    def apply(self, changes: Dict[str, Dict[str, Any]]) -> None:
        """Apply staged rows of every table at once"""
        with self._lock:
            for table, rows in changes.items():
                self._tables[table].update(rows)
        self._logger.debug(f"Applied {sum(len(rows) for rows in changes.values())} staged rows")

    def clear(self):
        """Clear all data (for testing)"""
        with self._lock:
            for rows in self._tables.values():
                rows.clear()


def _detached_copy(entity: T) -> T:
    clone = copy.deepcopy(entity)
    if hasattr(clone, 'clear_events'):
        clone.clear_events()
    return clone


class InMemoryRepository(Repository[T]):
    """In-memory repository reading through the unit of work's staged rows"""

    def __init__(self, database: InMemoryDatabase, table: str, staged: Dict[str, T]):
        self._database = database
        self._table = table
        self._staged = staged
        self._logger = logging.getLogger(self.__class__.__name__)

    def _rows(self) -> List[T]:
        merged = self._database.rows(self._table)
        merged.update(self._staged)
        return [_detached_copy(entity) for entity in merged.values()]

    def _lookup(self, id: str) -> Optional[T]:
        if id in self._staged:
            return self._staged[id]
        return self._database.row(self._table, id)

    def add(self, entity: T) -> T:
        if self._lookup(entity.id) is not None:
            raise ValueError(f"Entity {entity.id} already exists")

        self._staged[entity.id] = _detached_copy(entity)
        self._logger.debug(f"Added entity {entity.id}")
        return entity

    def get(self, id: str) -> Optional[T]:
        entity = self._lookup(id)
        return _detached_copy(entity) if entity is not None else None

    def get_all(self, skip: int = 0, limit: int = 100) -> List[T]:
        items = sorted(self._rows(), key=lambda item: item.id)
        return items[skip:skip + limit]

    def update(self, entity: T) -> T:
        if self._lookup(entity.id) is None:
            raise KeyError(f"Entity {entity.id} not found")

        self._staged[entity.id] = _detached_copy(entity)
        self._logger.debug(f"Updated entity {entity.id}")
        return entity

    def exists(self, id: str) -> bool:
        return self._lookup(id) is not None

    def count(self) -> int:
        return len(self._rows())


class InMemoryParkingLotRepository(InMemoryRepository[ParkingLot], ParkingLotRepository):

    def get_for_update(self, id: str) -> Optional[ParkingLot]:
        # Writers of one lot are serialized by the service's lot lock
        return self.get(id)

    def find_active(self) -> List[ParkingLot]:
        return _sort_lots_by_metro_distance(lot for lot in self._rows() if lot.is_active)

    def find_available(self) -> List[ParkingLot]:
        return [lot for lot in self.find_active() if lot.available_units > 0]

    def find_by_metro_station(self, station_name: str) -> List[ParkingLot]:
        return [lot for lot in self.find_active() if lot.metro_station_name == station_name]


class InMemoryParkingSpotRepository(InMemoryRepository[ParkingSpot], ParkingSpotRepository):

    def find_by_lot(self, lot_id: str) -> List[ParkingSpot]:
        return sorted(
            (spot for spot in self._rows() if spot.lot_id == lot_id),
            key=lambda spot: spot.sort_key
        )


class InMemoryParkingBookingRepository(InMemoryRepository[ParkingBooking], ParkingBookingRepository):

    def find_overlapping(
        self,
        lot_id: str,
        window: TimeWindow,
        statuses: Iterable[BookingStatus] = HOLDING_STATUSES
    ) -> List[ParkingBooking]:
        wanted = set(statuses)
        return [
            booking for booking in self._rows()
            if booking.lot_id == lot_id
            and booking.status in wanted
            and booking.window.overlaps(window)
        ]

    def count_overlapping(
        self,
        lot_id: str,
        window: TimeWindow,
        statuses: Iterable[BookingStatus] = HOLDING_STATUSES
    ) -> int:
        return len(self.find_overlapping(lot_id, window, statuses))

    def count_holding_after(self, lot_id: str, now: datetime) -> int:
        return sum(
            1 for booking in self._rows()
            if booking.lot_id == lot_id and booking.holds_capacity and booking.end_time > now
        )

    def find_by_user(self, user_id: str) -> List[ParkingBooking]:
        return _newest_first(booking for booking in self._rows() if booking.user_id == user_id)

    def find_by_qr_payload(self, payload: str) -> Optional[ParkingBooking]:
        for booking in self._rows():
            if booking.qr_payload is not None and booking.qr_payload == payload:
                return booking
        return None

    def find_no_show_candidates(self, cutoff: datetime) -> List[ParkingBooking]:
        return sorted(
            (
                booking for booking in self._rows()
                if booking.status == BookingStatus.CONFIRMED
                and booking.actual_start is None
                and booking.start_time <= cutoff
            ),
            key=lambda booking: (booking.start_time, booking.id)
        )


class InMemoryRideBookingRepository(InMemoryRepository[RideBooking], RideBookingRepository):

    def find_by_user(self, user_id: str) -> List[RideBooking]:
        return _newest_first(ride for ride in self._rows() if ride.user_id == user_id)

    def find_open_shared(self) -> List[RideBooking]:
        return sorted(
            (ride for ride in self._rows() if ride.is_open_for_pooling),
            key=lambda ride: (ride.created_at, ride.id)
        )

    def count_group_members(self, pooling_group_id: str) -> int:
        return sum(
            1 for ride in self._rows()
            if ride.pooling_group_id == pooling_group_id and ride.status != RideStatus.CANCELLED
        )


class InMemoryUserRepository(InMemoryRepository[UserRef], UserRepository):

    def find_by_username(self, username: str) -> Optional[UserRef]:
        for user in self._rows():
            if user.username == username:
                return user
        return None


class InMemoryUnitOfWork(UnitOfWork):
    """
    Unit of Work over InMemoryDatabase
    Writes are staged per table and become visible to others only on commit.
    """

    def __init__(self, database: InMemoryDatabase):
        self.database = database
        self._staged: Dict[str, Dict[str, Any]] = {}
        self._logger = logging.getLogger(self.__class__.__name__)

    def __enter__(self):
        self._staged = {table: {} for table in InMemoryDatabase.TABLES}
        self._lots = InMemoryParkingLotRepository(self.database, "lots", self._staged["lots"])
        self._spots = InMemoryParkingSpotRepository(self.database, "spots", self._staged["spots"])
        self._bookings = InMemoryParkingBookingRepository(self.database, "bookings", self._staged["bookings"])
        self._rides = InMemoryRideBookingRepository(self.database, "rides", self._staged["rides"])
        self._users = InMemoryUserRepository(self.database, "users", self._staged["users"])
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self._logger.error(f"Exception in unit of work: {exc_val}")
            self.rollback()
        else:
            self.commit()

    def commit(self):
        """Commit the transaction"""
        self.database.apply(self._staged)
        for rows in self._staged.values():
            rows.clear()
        self._logger.debug("Transaction committed")

    def rollback(self):
        """Rollback the transaction"""
        for rows in self._staged.values():
            rows.clear()
        self._logger.debug("Transaction rolled back")

    @property
    def lots(self) -> InMemoryParkingLotRepository:
        return self._lots

    @property
    def spots(self) -> InMemoryParkingSpotRepository:
        return self._spots

    @property
    def bookings(self) -> InMemoryParkingBookingRepository:
        return self._bookings

    @property
    def rides(self) -> InMemoryRideBookingRepository:
        return self._rides

    @property
    def users(self) -> InMemoryUserRepository:
        return self._users


# ============================================================================
# SQLALCHEMY ORM MODELS
# ============================================================================

Base = declarative_base()


class UserModel(Base):
    """SQLAlchemy model for UserRef"""
    __tablename__ = 'users'

    id = Column(String(36), primary_key=True)
    username = Column(String(100), nullable=False, unique=True, index=True)


class ParkingLotModel(Base):
    """SQLAlchemy model for ParkingLot"""
    __tablename__ = 'parking_lots'

    id = Column(String(36), primary_key=True)
    name = Column(String(100), nullable=False)
    address = Column(String(200))

    # Location
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    metro_station_name = Column(String(100), index=True)
    distance_from_metro = Column(Float)

    # Capacity
    total_units = Column(Integer, nullable=False)
    available_units = Column(Integer, nullable=False)

    # Pricing
    base_hourly_rate = Column(Numeric(10, 2))

    facilities = Column(Text)
    status = Column(String(20), nullable=False, default=LotStatus.ACTIVE.value)

    # Timestamps
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class ParkingSpotModel(Base):
    """SQLAlchemy model for ParkingSpot"""
    __tablename__ = 'parking_spots'

    id = Column(String(36), primary_key=True)
    lot_id = Column(String(36), ForeignKey('parking_lots.id'), nullable=False, index=True)
    spot_number = Column(String(20), nullable=False)
    spot_type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False)
    floor = Column(String(20))
    section = Column(String(20))

    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint('lot_id', 'spot_number', name='uq_spot_lot_number'),
    )


class ParkingBookingModel(Base):
    """SQLAlchemy model for ParkingBooking"""
    __tablename__ = 'parking_bookings'

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), ForeignKey('users.id'), nullable=False, index=True)
    lot_id = Column(String(36), ForeignKey('parking_lots.id'), nullable=False, index=True)
    spot_id = Column(String(36), ForeignKey('parking_spots.id'))

    # Requested window [start_time, end_time)
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=False, index=True)
    actual_start = Column(DateTime)
    actual_end = Column(DateTime)

    total_amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String(20), nullable=False, index=True)
    booking_class = Column(String(20), nullable=False)
    vehicle_number = Column(String(20))
    access_pin = Column(String(4))
    qr_payload = Column(String(200), index=True)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class RideBookingModel(Base):
    """SQLAlchemy model for RideBooking"""
    __tablename__ = 'ride_bookings'

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), ForeignKey('users.id'), nullable=False, index=True)
    parking_booking_id = Column(String(36), ForeignKey('parking_bookings.id'))

    pickup_label = Column(String(200), nullable=False)
    dropoff_label = Column(String(200), nullable=False)
    pickup_latitude = Column(Float)
    pickup_longitude = Column(Float)
    dropoff_latitude = Column(Float)
    dropoff_longitude = Column(Float)

    requested_time = Column(DateTime, nullable=False)
    scheduled_time = Column(DateTime)
    actual_pickup_time = Column(DateTime)
    actual_dropoff_time = Column(DateTime)

    ride_class = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, index=True)
    estimated_fare = Column(Numeric(10, 2))
    actual_fare = Column(Numeric(10, 2))

    # Pooling
    is_shared = Column(Boolean, nullable=False, default=False)
    max_passengers = Column(Integer, nullable=False, default=1)
    pooling_group_id = Column(String(36), index=True)

    # Dispatch
    driver_name = Column(String(100))
    driver_phone = Column(String(20))
    vehicle_number = Column(String(20))
    vehicle_model = Column(String(50))

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


# ============================================================================
# DOMAIN <-> ORM MAPPERS
# ============================================================================

class Mapper:
    """Maps between domain models and ORM models"""

    @staticmethod
    def user_to_orm(user: UserRef) -> UserModel:
        return UserModel(id=user.id, username=user.username)

    @staticmethod
    def user_to_domain(model: UserModel) -> UserRef:
        return UserRef(username=model.username, id=model.id)

    @staticmethod
    def lot_to_orm(lot: ParkingLot) -> ParkingLotModel:
        """Map ParkingLot domain model to ORM model"""
        return ParkingLotModel(
            id=lot.id,
            name=lot.name,
            address=lot.address,
            latitude=lot.location.latitude,
            longitude=lot.location.longitude,
            metro_station_name=lot.metro_station_name,
            distance_from_metro=lot.distance_from_metro,
            total_units=lot.total_units,
            available_units=lot.available_units,
            base_hourly_rate=lot.base_hourly_rate,
            facilities=lot.facilities,
            status=lot.status.value,
            created_at=lot.created_at,
            updated_at=lot.updated_at,
        )

    @staticmethod
    def lot_to_domain(model: ParkingLotModel) -> ParkingLot:
        """Map ORM model to ParkingLot domain model"""
        lot = ParkingLot(
            id=model.id,
            name=model.name,
            address=model.address or "",
            location=GeoPoint(model.latitude, model.longitude),
            total_units=model.total_units,
            available_units=model.available_units,
            base_hourly_rate=model.base_hourly_rate,
            status=LotStatus(model.status),
            metro_station_name=model.metro_station_name,
            distance_from_metro=model.distance_from_metro,
            facilities=model.facilities,
            created_at=model.created_at,
        )
        lot.updated_at = model.updated_at
        return lot

    @staticmethod
    def spot_to_orm(spot: ParkingSpot) -> ParkingSpotModel:
        return ParkingSpotModel(
            id=spot.id,
            lot_id=spot.lot_id,
            spot_number=spot.spot_number,
            spot_type=spot.spot_type.value,
            status=spot.status.value,
            floor=spot.floor,
            section=spot.section,
            created_at=spot.created_at,
            updated_at=spot.updated_at,
        )

    @staticmethod
    def spot_to_domain(model: ParkingSpotModel) -> ParkingSpot:
        spot = ParkingSpot(
            id=model.id,
            lot_id=model.lot_id,
            spot_number=model.spot_number,
            spot_type=SpotType(model.spot_type),
            status=SpotStatus(model.status),
            floor=model.floor,
            section=model.section,
            created_at=model.created_at,
        )
        spot.updated_at = model.updated_at
        return spot

    @staticmethod
    def booking_to_orm(booking: ParkingBooking) -> ParkingBookingModel:
        """Map ParkingBooking aggregate to ORM model"""
        return ParkingBookingModel(
            id=booking.id,
            user_id=booking.user_id,
            lot_id=booking.lot_id,
            spot_id=booking.spot_id,
            start_time=booking.start_time,
            end_time=booking.end_time,
            actual_start=booking.actual_start,
            actual_end=booking.actual_end,
            total_amount=booking.total_amount,
            status=booking.status.value,
            booking_class=booking.booking_class.value,
            vehicle_number=booking.vehicle_number,
            access_pin=booking.access_pin,
            qr_payload=booking.qr_payload,
            version=booking.version,
            created_at=booking.created_at,
            updated_at=booking.updated_at,
        )

    @staticmethod
    def booking_to_domain(model: ParkingBookingModel) -> ParkingBooking:
        return ParkingBooking(
            id=model.id,
            user_id=model.user_id,
            lot_id=model.lot_id,
            spot_id=model.spot_id,
            window=TimeWindow(model.start_time, model.end_time),
            actual_start=model.actual_start,
            actual_end=model.actual_end,
            total_amount=model.total_amount,
            status=BookingStatus(model.status),
            booking_class=BookingClass(model.booking_class),
            vehicle_number=model.vehicle_number,
            access_pin=model.access_pin,
            qr_payload=model.qr_payload,
            version=model.version,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    @staticmethod
    def ride_to_orm(ride: RideBooking) -> RideBookingModel:
        """Map RideBooking aggregate to ORM model"""
        driver = ride.driver
        return RideBookingModel(
            id=ride.id,
            user_id=ride.user_id,
            parking_booking_id=ride.parking_booking_id,
            pickup_label=ride.pickup_label,
            dropoff_label=ride.dropoff_label,
            pickup_latitude=ride.pickup.latitude if ride.pickup else None,
            pickup_longitude=ride.pickup.longitude if ride.pickup else None,
            dropoff_latitude=ride.dropoff.latitude if ride.dropoff else None,
            dropoff_longitude=ride.dropoff.longitude if ride.dropoff else None,
            requested_time=ride.requested_time,
            scheduled_time=ride.scheduled_time,
            actual_pickup_time=ride.actual_pickup_time,
            actual_dropoff_time=ride.actual_dropoff_time,
            ride_class=ride.ride_class.value,
            status=ride.status.value,
            estimated_fare=ride.estimated_fare,
            actual_fare=ride.actual_fare,
            is_shared=ride.is_shared,
            max_passengers=ride.max_passengers,
            pooling_group_id=ride.pooling_group_id,
            driver_name=driver.driver_name if driver else None,
            driver_phone=driver.driver_phone if driver else None,
            vehicle_number=driver.vehicle_number if driver else None,
            vehicle_model=driver.vehicle_model if driver else None,
            version=ride.version,
            created_at=ride.created_at,
            updated_at=ride.updated_at,
        )

    @staticmethod
    def ride_to_domain(model: RideBookingModel) -> RideBooking:
        driver = None
        if model.driver_name:
            driver = DriverAssignment(
                driver_name=model.driver_name,
                driver_phone=model.driver_phone,
                vehicle_number=model.vehicle_number,
                vehicle_model=model.vehicle_model,
            )

        return RideBooking(
            id=model.id,
            user_id=model.user_id,
            parking_booking_id=model.parking_booking_id,
            pickup_label=model.pickup_label,
            dropoff_label=model.dropoff_label,
            pickup=GeoPoint.maybe(model.pickup_latitude, model.pickup_longitude),
            dropoff=GeoPoint.maybe(model.dropoff_latitude, model.dropoff_longitude),
            requested_time=model.requested_time,
            scheduled_time=model.scheduled_time,
            actual_pickup_time=model.actual_pickup_time,
            actual_dropoff_time=model.actual_dropoff_time,
            ride_class=RideClass(model.ride_class),
            status=RideStatus(model.status),
            estimated_fare=model.estimated_fare,
            actual_fare=model.actual_fare,
            is_shared=model.is_shared,
            max_passengers=model.max_passengers,
            pooling_group_id=model.pooling_group_id,
            driver=driver,
            version=model.version,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )


# ============================================================================
# SQLALCHEMY REPOSITORIES
# ============================================================================

class SQLAlchemyRepository(Repository[T], ABC):
    """Base SQLAlchemy repository"""

    def __init__(self, session: Session):
        self.session = session
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    @abstractmethod
    def model_class(self) -> Type[Base]:
        """Return SQLAlchemy model class"""
        pass

    @abstractmethod
    def to_domain(self, model: Base) -> T:
        """Convert ORM model to domain model"""
        pass

    @abstractmethod
    def to_orm(self, entity: T) -> Base:
        """Convert domain model to ORM model"""
        pass

    def add(self, entity: T) -> T:
        try:
            model = self.to_orm(entity)
            self.session.add(model)
            self.session.flush()
            self._logger.debug(f"Added entity: {model.id}")
            return entity
        except IntegrityError as e:
            self._logger.error(f"Integrity error adding entity: {e}")
            raise
        except SQLAlchemyError as e:
            self._logger.error(f"Database error adding entity: {e}")
            raise

    def get(self, id: str) -> Optional[T]:
        try:
            model = self.session.get(self.model_class, id)
            if model:
                return self.to_domain(model)
            return None
        except SQLAlchemyError as e:
            self._logger.error(f"Database error getting entity {id}: {e}")
            raise

    def get_all(self, skip: int = 0, limit: int = 100) -> List[T]:
        try:
            query = self.session.query(self.model_class).order_by(self.model_class.id)
            models = query.offset(skip).limit(limit).all()
            return [self.to_domain(model) for model in models]
        except SQLAlchemyError as e:
            self._logger.error(f"Database error getting all entities: {e}")
            raise

    def update(self, entity: T) -> T:
        try:
            model = self.session.get(self.model_class, entity.id)
            if not model:
                raise KeyError(f"Entity {entity.id} not found")

            updated_model = self.to_orm(entity)

            # Copy every mapped column, None included
            for column in self.model_class.__table__.columns:
                if column.name != 'id':
                    setattr(model, column.name, getattr(updated_model, column.name))

            self.session.flush()
            self._logger.debug(f"Updated entity: {entity.id}")
            return entity
        except SQLAlchemyError as e:
            self._logger.error(f"Database error updating entity: {e}")
            raise

    def exists(self, id: str) -> bool:
        try:
            count = self.session.query(self.model_class).filter(
                self.model_class.id == id
            ).count()
            return count > 0
        except SQLAlchemyError as e:
            self._logger.error(f"Database error checking existence of {id}: {e}")
            raise

    def count(self) -> int:
        try:
            return self.session.query(self.model_class).count()
        except SQLAlchemyError as e:
            self._logger.error(f"Database error counting entities: {e}")
            raise


class SQLAlchemyParkingLotRepository(SQLAlchemyRepository[ParkingLot], ParkingLotRepository):

    @property
    def model_class(self) -> Type[Base]:
        return ParkingLotModel

    def to_domain(self, model: ParkingLotModel) -> ParkingLot:
        return Mapper.lot_to_domain(model)

    def to_orm(self, entity: ParkingLot) -> ParkingLotModel:
        return Mapper.lot_to_orm(entity)

    def get_for_update(self, id: str) -> Optional[ParkingLot]:
        try:
            model = (
                self.session.query(ParkingLotModel)
                .filter(ParkingLotModel.id == id)
                .with_for_update()
                .one_or_none()
            )
            return self.to_domain(model) if model else None
        except SQLAlchemyError as e:
            self._logger.error(f"Database error locking lot {id}: {e}")
            raise

    def _active_query(self):
        return (
            self.session.query(ParkingLotModel)
            .filter(ParkingLotModel.status == LotStatus.ACTIVE.value)
            .order_by(
                ParkingLotModel.distance_from_metro.is_(None),
                ParkingLotModel.distance_from_metro.asc(),
                ParkingLotModel.name.asc()
            )
        )

    def find_active(self) -> List[ParkingLot]:
        try:
            return [self.to_domain(model) for model in self._active_query().all()]
        except SQLAlchemyError as e:
            self._logger.error(f"Database error finding active lots: {e}")
            raise

    def find_available(self) -> List[ParkingLot]:
        try:
            models = self._active_query().filter(ParkingLotModel.available_units > 0).all()
            return [self.to_domain(model) for model in models]
        except SQLAlchemyError as e:
            self._logger.error(f"Database error finding available lots: {e}")
            raise

    def find_by_metro_station(self, station_name: str) -> List[ParkingLot]:
        try:
            models = self._active_query().filter(
                ParkingLotModel.metro_station_name == station_name
            ).all()
            return [self.to_domain(model) for model in models]
        except SQLAlchemyError as e:
            self._logger.error(f"Database error finding lots for station {station_name}: {e}")
            raise


class SQLAlchemyParkingSpotRepository(SQLAlchemyRepository[ParkingSpot], ParkingSpotRepository):

    @property
    def model_class(self) -> Type[Base]:
        return ParkingSpotModel

    def to_domain(self, model: ParkingSpotModel) -> ParkingSpot:
        return Mapper.spot_to_domain(model)

    def to_orm(self, entity: ParkingSpot) -> ParkingSpotModel:
        return Mapper.spot_to_orm(entity)

    def find_by_lot(self, lot_id: str) -> List[ParkingSpot]:
        try:
            models = self.session.query(ParkingSpotModel).filter(
                ParkingSpotModel.lot_id == lot_id
            ).all()
            # Natural ordering is not expressible portably in SQL
            return sorted((self.to_domain(model) for model in models), key=lambda spot: spot.sort_key)
        except SQLAlchemyError as e:
            self._logger.error(f"Database error finding spots of lot {lot_id}: {e}")
            raise


class SQLAlchemyParkingBookingRepository(SQLAlchemyRepository[ParkingBooking], ParkingBookingRepository):

    @property
    def model_class(self) -> Type[Base]:
        return ParkingBookingModel

    def to_domain(self, model: ParkingBookingModel) -> ParkingBooking:
        return Mapper.booking_to_domain(model)

    def to_orm(self, entity: ParkingBooking) -> ParkingBookingModel:
        return Mapper.booking_to_orm(entity)

    def _overlapping_query(self, lot_id: str, window: TimeWindow, statuses: Iterable[BookingStatus]):
        # Half-open windows: touching at an endpoint is not an overlap
        return self.session.query(ParkingBookingModel).filter(
            ParkingBookingModel.lot_id == lot_id,
            ParkingBookingModel.status.in_([status.value for status in statuses]),
            ParkingBookingModel.start_time < window.end_time,
            ParkingBookingModel.end_time > window.start_time,
        )

    def find_overlapping(
        self,
        lot_id: str,
        window: TimeWindow,
        statuses: Iterable[BookingStatus] = HOLDING_STATUSES
    ) -> List[ParkingBooking]:
        try:
            models = self._overlapping_query(lot_id, window, statuses).all()
            return [self.to_domain(model) for model in models]
        except SQLAlchemyError as e:
            self._logger.error(f"Database error finding overlapping bookings: {e}")
            raise

    def count_overlapping(
        self,
        lot_id: str,
        window: TimeWindow,
        statuses: Iterable[BookingStatus] = HOLDING_STATUSES
    ) -> int:
        try:
            return self._overlapping_query(lot_id, window, statuses).count()
        except SQLAlchemyError as e:
            self._logger.error(f"Database error counting overlapping bookings: {e}")
            raise

    def count_holding_after(self, lot_id: str, now: datetime) -> int:
        try:
            return self.session.query(func.count(ParkingBookingModel.id)).filter(
                ParkingBookingModel.lot_id == lot_id,
                ParkingBookingModel.status.in_([status.value for status in HOLDING_STATUSES]),
                ParkingBookingModel.end_time > now,
            ).scalar() or 0
        except SQLAlchemyError as e:
            self._logger.error(f"Database error counting holding bookings: {e}")
            raise

    def find_by_user(self, user_id: str) -> List[ParkingBooking]:
        try:
            models = (
                self.session.query(ParkingBookingModel)
                .filter(ParkingBookingModel.user_id == user_id)
                .order_by(ParkingBookingModel.created_at.desc(), ParkingBookingModel.id.desc())
                .all()
            )
            return [self.to_domain(model) for model in models]
        except SQLAlchemyError as e:
            self._logger.error(f"Database error finding bookings of user {user_id}: {e}")
            raise

    def find_by_qr_payload(self, payload: str) -> Optional[ParkingBooking]:
        try:
            model = self.session.query(ParkingBookingModel).filter(
                ParkingBookingModel.qr_payload == payload
            ).first()
            return self.to_domain(model) if model else None
        except SQLAlchemyError as e:
            self._logger.error(f"Database error finding booking by QR payload: {e}")
            raise

    def find_no_show_candidates(self, cutoff: datetime) -> List[ParkingBooking]:
        try:
            models = (
                self.session.query(ParkingBookingModel)
                .filter(
                    ParkingBookingModel.status == BookingStatus.CONFIRMED.value,
                    ParkingBookingModel.actual_start.is_(None),
                    ParkingBookingModel.start_time <= cutoff,
                )
                .order_by(ParkingBookingModel.start_time, ParkingBookingModel.id)
                .all()
            )
            return [self.to_domain(model) for model in models]
        except SQLAlchemyError as e:
            self._logger.error(f"Database error finding no-show candidates: {e}")
            raise


class SQLAlchemyRideBookingRepository(SQLAlchemyRepository[RideBooking], RideBookingRepository):

    @property
    def model_class(self) -> Type[Base]:
        return RideBookingModel

    def to_domain(self, model: RideBookingModel) -> RideBooking:
        return Mapper.ride_to_domain(model)

    def to_orm(self, entity: RideBooking) -> RideBookingModel:
        return Mapper.ride_to_orm(entity)

    def find_by_user(self, user_id: str) -> List[RideBooking]:
        try:
            models = (
                self.session.query(RideBookingModel)
                .filter(RideBookingModel.user_id == user_id)
                .order_by(RideBookingModel.created_at.desc(), RideBookingModel.id.desc())
                .all()
            )
            return [self.to_domain(model) for model in models]
        except SQLAlchemyError as e:
            self._logger.error(f"Database error finding rides of user {user_id}: {e}")
            raise

    def find_open_shared(self) -> List[RideBooking]:
        try:
            models = (
                self.session.query(RideBookingModel)
                .filter(
                    RideBookingModel.is_shared.is_(True),
                    RideBookingModel.status == RideStatus.CONFIRMED.value,
                    RideBookingModel.pooling_group_id.isnot(None),
                )
                .order_by(RideBookingModel.created_at, RideBookingModel.id)
                .all()
            )
            return [self.to_domain(model) for model in models]
        except SQLAlchemyError as e:
            self._logger.error(f"Database error finding open shared rides: {e}")
            raise

    def count_group_members(self, pooling_group_id: str) -> int:
        try:
            return self.session.query(func.count(RideBookingModel.id)).filter(
                RideBookingModel.pooling_group_id == pooling_group_id,
                RideBookingModel.status != RideStatus.CANCELLED.value,
            ).scalar() or 0
        except SQLAlchemyError as e:
            self._logger.error(f"Database error counting pooling group {pooling_group_id}: {e}")
            raise


class SQLAlchemyUserRepository(SQLAlchemyRepository[UserRef], UserRepository):

    @property
    def model_class(self) -> Type[Base]:
        return UserModel

    def to_domain(self, model: UserModel) -> UserRef:
        return Mapper.user_to_domain(model)

    def to_orm(self, entity: UserRef) -> UserModel:
        return Mapper.user_to_orm(entity)

    def find_by_username(self, username: str) -> Optional[UserRef]:
        try:
            model = self.session.query(UserModel).filter(UserModel.username == username).first()
            return self.to_domain(model) if model else None
        except SQLAlchemyError as e:
            self._logger.error(f"Database error finding user {username}: {e}")
            raise


# ============================================================================
# SQLALCHEMY UNIT OF WORK
# ============================================================================

class SQLAlchemyUnitOfWork(UnitOfWork):
    """SQLAlchemy implementation of Unit of Work"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory
        self.session: Optional[Session] = None
        self._logger = logging.getLogger(self.__class__.__name__)

    def __enter__(self):
        self.session = self.session_factory()

        self._lots = SQLAlchemyParkingLotRepository(self.session)
        self._spots = SQLAlchemyParkingSpotRepository(self.session)
        self._bookings = SQLAlchemyParkingBookingRepository(self.session)
        self._rides = SQLAlchemyRideBookingRepository(self.session)
        self._users = SQLAlchemyUserRepository(self.session)

        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is not None:
                self._logger.error(f"Exception in unit of work: {exc_val}")
                self.rollback()
            else:
                self.commit()
        finally:
            self.session.close()

    def commit(self):
        """Commit the transaction"""
        try:
            self.session.commit()
            self._logger.debug("Transaction committed")
        except SQLAlchemyError as e:
            self._logger.error(f"Error committing transaction: {e}")
            self.session.rollback()
            raise

    def rollback(self):
        """Rollback the transaction"""
        self.session.rollback()
        self._logger.debug("Transaction rolled back")

    @property
    def lots(self) -> SQLAlchemyParkingLotRepository:
        return self._lots

    @property
    def spots(self) -> SQLAlchemyParkingSpotRepository:
        return self._spots

    @property
    def bookings(self) -> SQLAlchemyParkingBookingRepository:
        return self._bookings

    @property
    def rides(self) -> SQLAlchemyRideBookingRepository:
        return self._rides

    @property
    def users(self) -> SQLAlchemyUserRepository:
        return self._users


# ============================================================================
# REPOSITORY FACTORY
# ============================================================================

UnitOfWorkFactory = Callable[[], UnitOfWork]


class RepositoryFactory:
    """Factory for creating units of work"""

    @staticmethod
    def create_engine(database_url: str) -> Engine:
        """Create an engine; in-memory SQLite shares one connection across threads"""
        if database_url.startswith("sqlite"):
            options: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                options["poolclass"] = StaticPool
            return create_engine(database_url, echo=False, **options)
        return create_engine(database_url, echo=False, pool_pre_ping=True)

    @staticmethod
    def create_sqlalchemy_uow_factory(database_url: str) -> UnitOfWorkFactory:
        """Create SQLAlchemy Unit of Work factory"""
        engine = RepositoryFactory.create_engine(database_url)
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

        # Create tables if they don't exist
        Base.metadata.create_all(bind=engine)

        return partial(SQLAlchemyUnitOfWork, SessionLocal)

    @staticmethod
    def create_in_memory_uow_factory(database: Optional[InMemoryDatabase] = None) -> UnitOfWorkFactory:
        """Create in-memory Unit of Work factory for tests and demos"""
        return partial(InMemoryUnitOfWork, database or InMemoryDatabase())
