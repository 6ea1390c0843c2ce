# File: parkandride/application/dtos.py
"""
Data Transfer Objects (DTOs) for the Park-and-Ride Booking Engine

This module defines DTOs for data transfer between layers:
1. Input DTOs - Booking requests, validated before any engine code runs
2. Output DTOs - Read-only views of lots, bookings and rides
3. OperationResult - Envelope carrying either data or a typed error kind

DTO Principles:
- Validation at creation
- No business logic, only data
- Built from domain objects with from_domain()
"""

from typing import Dict, List, Optional, Any, Generic, TypeVar
from datetime import datetime
from decimal import Decimal
import json

from pydantic import BaseModel, Field, ConfigDict, model_validator

from ..domain.models import (
    ParkingLot, BookingStatus, BookingClass, RideClass, RideStatus
)
from ..domain.aggregates import ParkingBooking, RideBooking
from ..domain.exceptions import ErrorKind, ParkAndRideError

# Type variable for DTO generics
T = TypeVar('T')


# ============================================================================
# BASE DTO CLASSES
# ============================================================================

class BaseDTO(BaseModel):
    """Base DTO with common functionality"""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        use_enum_values=True,
    )

    def to_dict(self, exclude_none: bool = False, **kwargs) -> Dict[str, Any]:
        """Convert DTO to dictionary"""
        data = self.model_dump(mode="json", **kwargs)
        if exclude_none:
            data = {k: v for k, v in data.items() if v is not None}
        return data

    def to_json(self, **kwargs) -> str:
        """Convert DTO to JSON string"""
        return self.model_dump_json(**kwargs)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BaseDTO':
        """Create DTO from dictionary"""
        return cls(**data)

    @classmethod
    def from_json(cls, json_str: str) -> 'BaseDTO':
        """Create DTO from JSON string"""
        return cls(**json.loads(json_str))


# ============================================================================
# INPUT DTOs
# ============================================================================

class ParkingBookingRequestDTO(BaseDTO):
    """Request to reserve capacity in a lot for [start_time, end_time)"""
    lot_id: str = Field(..., min_length=1)
    start_time: datetime
    end_time: datetime
    booking_class: BookingClass = BookingClass.HOURLY
    vehicle_number: Optional[str] = Field(default=None, max_length=20)

    @model_validator(mode="after")
    def validate_window(self) -> 'ParkingBookingRequestDTO':
        if self.end_time <= self.start_time:
            raise ValueError("End time must be after start time")
        return self


class RideBookingRequestDTO(BaseDTO):
    """Request for a last-mile ride, optionally shared"""
    pickup_location: str = Field(..., min_length=1, max_length=200)
    dropoff_location: str = Field(..., min_length=1, max_length=200)
    pickup_latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    pickup_longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    dropoff_latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    dropoff_longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    requested_time: datetime
    scheduled_time: Optional[datetime] = None
    ride_class: RideClass = RideClass.CAB
    is_shared: bool = False
    max_passengers: int = Field(default=1, ge=1, le=12)
    parking_booking_id: Optional[str] = None


# ============================================================================
# OUTPUT DTOs
# ============================================================================

class ParkingLotDTO(BaseDTO):
    id: str
    name: str
    address: str
    latitude: float
    longitude: float
    total_units: int
    available_units: int
    base_hourly_rate: Optional[Decimal] = None
    status: str
    metro_station_name: Optional[str] = None
    distance_from_metro: Optional[float] = None
    facilities: Optional[str] = None

    @classmethod
    def from_domain(cls, lot: ParkingLot) -> 'ParkingLotDTO':
        return cls(
            id=lot.id,
            name=lot.name,
            address=lot.address,
            latitude=lot.location.latitude,
            longitude=lot.location.longitude,
            total_units=lot.total_units,
            available_units=lot.available_units,
            base_hourly_rate=lot.base_hourly_rate,
            status=lot.status.value,
            metro_station_name=lot.metro_station_name,
            distance_from_metro=lot.distance_from_metro,
            facilities=lot.facilities,
        )


class BookingDTO(BaseDTO):
    id: str
    user_id: str
    lot_id: str
    spot_id: Optional[str] = None
    start_time: datetime
    end_time: datetime
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    total_amount: Decimal
    status: BookingStatus
    booking_class: BookingClass
    vehicle_number: Optional[str] = None
    access_pin: Optional[str] = None
    qr_payload: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, booking: ParkingBooking) -> 'BookingDTO':
        return cls(
            id=booking.id,
            user_id=booking.user_id,
            lot_id=booking.lot_id,
            spot_id=booking.spot_id,
            start_time=booking.start_time,
            end_time=booking.end_time,
            actual_start=booking.actual_start,
            actual_end=booking.actual_end,
            total_amount=booking.total_amount,
            status=booking.status,
            booking_class=booking.booking_class,
            vehicle_number=booking.vehicle_number,
            access_pin=booking.access_pin,
            qr_payload=booking.qr_payload,
            created_at=booking.created_at,
            updated_at=booking.updated_at,
        )


class DriverDTO(BaseDTO):
    driver_name: str
    driver_phone: str
    vehicle_number: str
    vehicle_model: str


class RideBookingDTO(BaseDTO):
    id: str
    user_id: str
    parking_booking_id: Optional[str] = None
    pickup_location: str
    dropoff_location: str
    pickup_latitude: Optional[float] = None
    pickup_longitude: Optional[float] = None
    dropoff_latitude: Optional[float] = None
    dropoff_longitude: Optional[float] = None
    requested_time: datetime
    scheduled_time: Optional[datetime] = None
    actual_pickup_time: Optional[datetime] = None
    actual_dropoff_time: Optional[datetime] = None
    ride_class: RideClass
    status: RideStatus
    estimated_fare: Optional[Decimal] = None
    actual_fare: Optional[Decimal] = None
    is_shared: bool
    max_passengers: int
    pooling_group_id: Optional[str] = None
    driver: Optional[DriverDTO] = None
    created_at: datetime

    @classmethod
    def from_domain(cls, ride: RideBooking) -> 'RideBookingDTO':
        driver = None
        if ride.driver is not None:
            driver = DriverDTO(
                driver_name=ride.driver.driver_name,
                driver_phone=ride.driver.driver_phone,
                vehicle_number=ride.driver.vehicle_number,
                vehicle_model=ride.driver.vehicle_model,
            )
        return cls(
            id=ride.id,
            user_id=ride.user_id,
            parking_booking_id=ride.parking_booking_id,
            pickup_location=ride.pickup_label,
            dropoff_location=ride.dropoff_label,
            pickup_latitude=ride.pickup.latitude if ride.pickup else None,
            pickup_longitude=ride.pickup.longitude if ride.pickup else None,
            dropoff_latitude=ride.dropoff.latitude if ride.dropoff else None,
            dropoff_longitude=ride.dropoff.longitude if ride.dropoff else None,
            requested_time=ride.requested_time,
            scheduled_time=ride.scheduled_time,
            actual_pickup_time=ride.actual_pickup_time,
            actual_dropoff_time=ride.actual_dropoff_time,
            ride_class=ride.ride_class,
            status=ride.status,
            estimated_fare=ride.estimated_fare,
            actual_fare=ride.actual_fare,
            is_shared=ride.is_shared,
            max_passengers=ride.max_passengers,
            pooling_group_id=ride.pooling_group_id,
            driver=driver,
            created_at=ride.created_at,
        )


class PriceQuoteDTO(BaseDTO):
    amount: Decimal
    hours: Optional[int] = None
    distance_km: Optional[float] = None


# ============================================================================
# RESULT ENVELOPE
# ============================================================================

class OperationResult(BaseDTO, Generic[T]):
    """
    Outcome of a public service operation
    Exactly one of data (success) or error (failure) is meaningful.
    """
    success: bool
    data: Optional[T] = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None, message: Optional[str] = None) -> 'OperationResult':
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(cls, error: ParkAndRideError) -> 'OperationResult':
        return cls(success=False, error=error.kind, message=error.message)

    @property
    def failed(self) -> bool:
        return not self.success


class SweepResultDTO(BaseDTO):
    swept_at: datetime
    bookings: List[BookingDTO] = Field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.bookings)
