# File: parkandride/domain/strategies.py
"""
Strategy Pattern Implementation for the Park-and-Ride Booking Engine

This module implements the Strategy Pattern to encapsulate the algorithms of
the engine. Each strategy is a pure computation over domain objects; loading
and saving the inputs is the application layer's job.

Key Strategies:
1. Pricing Strategies - Demand-sensitive parking prices and ride fares
2. Spot Allocation Strategies - Choosing a physical spot for a booking window
3. Pooling Strategies - Grouping compatible shared ride requests

Benefits:
- New strategies can be added without modifying the services
- Each strategy is independently testable with explicit inputs
  ("current time" included, never read from the wall clock here)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Iterable, FrozenSet
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
import logging

from .models import (
    ParkingLot, ParkingSpot, GeoPoint, TimeWindow,
    BookingClass, RideClass
)
from .aggregates import ParkingBooking, RideBooking


CENTS = Decimal('0.01')


def round_money(amount: Decimal) -> Decimal:
    """Round to 2 decimal places, half-up"""
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def to_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


# ============================================================================
# PRICING POLICY (configuration value object)
# ============================================================================

@dataclass(frozen=True)
class RideTariff:
    """Value Object: base fare plus per-kilometer rate for one ride class"""
    base_fare: Decimal
    per_km_rate: Decimal


DEFAULT_RIDE_TARIFFS: Dict[RideClass, RideTariff] = {
    RideClass.CAB: RideTariff(Decimal('50'), Decimal('12')),
    RideClass.SHUTTLE: RideTariff(Decimal('30'), Decimal('8')),
    RideClass.E_RICKSHAW: RideTariff(Decimal('20'), Decimal('6')),
    RideClass.AUTO_RICKSHAW: RideTariff(Decimal('25'), Decimal('10')),
}


@dataclass(frozen=True)
class PricingPolicy:
    """
    Value Object: Tunable inputs of the pricing engine

    Peak hours and the surge band are hour-of-day sets; the surge band only
    applies Monday to Friday.
    """
    base_rate: Decimal = Decimal('50.0')
    peak_multiplier: Decimal = Decimal('1.5')
    surge_multiplier: Decimal = Decimal('2.0')
    daily_discount: Decimal = Decimal('0.9')
    monthly_discount: Decimal = Decimal('0.8')
    peak_hours: FrozenSet[int] = frozenset({7, 8, 9, 10, 17, 18, 19, 20})
    surge_start_hour: int = 8
    surge_end_hour: int = 18
    default_ride_distance_km: float = 5.0
    ride_tariffs: Dict[RideClass, RideTariff] = field(
        default_factory=lambda: dict(DEFAULT_RIDE_TARIFFS)
    )

    def __post_init__(self):
        for name in ("base_rate", "peak_multiplier", "surge_multiplier",
                     "daily_discount", "monthly_discount"):
            value = to_decimal(getattr(self, name))
            if value < 0:
                raise ValueError(f"{name} cannot be negative: {value}")
            object.__setattr__(self, name, value)

        object.__setattr__(self, "peak_hours", frozenset(self.peak_hours))
        if any(hour < 0 or hour > 23 for hour in self.peak_hours):
            raise ValueError(f"Peak hours must be within 0..23: {sorted(self.peak_hours)}")

        if not 0 <= self.surge_start_hour <= self.surge_end_hour <= 23:
            raise ValueError("Surge band must satisfy 0 <= start <= end <= 23")

    def class_discount(self, booking_class: BookingClass) -> Decimal:
        if booking_class == BookingClass.DAILY:
            return self.daily_discount
        if booking_class == BookingClass.MONTHLY:
            return self.monthly_discount
        return Decimal('1')

    def tariff(self, ride_class: RideClass) -> RideTariff:
        return self.ride_tariffs[ride_class]


# ============================================================================
# STRATEGY INTERFACES
# ============================================================================

class PricingStrategy(ABC):
    """
    Abstract base class for pricing strategies
    Defines the interface for parking price and ride fare calculation
    """

    def __init__(self, policy: Optional[PricingPolicy] = None):
        self.policy = policy or PricingPolicy()
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def calculate_parking_price(
        self,
        lot: ParkingLot,
        window: TimeWindow,
        booking_class: BookingClass
    ) -> Decimal:
        """
        Calculate the price of holding capacity in the lot for the window
        Returns: Amount rounded to 2 decimals
        """
        pass

    @abstractmethod
    def calculate_ride_fare(
        self,
        pickup: Optional[GeoPoint],
        dropoff: Optional[GeoPoint],
        ride_class: RideClass,
        requested_time: datetime
    ) -> Decimal:
        """
        Calculate the estimated fare of a ride
        Returns: Amount rounded to 2 decimals
        """
        pass

    def get_strategy_name(self) -> str:
        return self.__class__.__name__.replace("Strategy", "")

    def __str__(self) -> str:
        return f"{self.get_strategy_name()} Strategy"


class SpotAllocationStrategy(ABC):
    """
    Abstract base class for spot allocation strategies
    """

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def allocate(
        self,
        spots: Iterable[ParkingSpot],
        holding_bookings: Iterable[ParkingBooking],
        window: TimeWindow
    ) -> Optional[ParkingSpot]:
        """
        Pick a spot for the window among the lot's spots
        Returns: ParkingSpot if one is free for the window, None otherwise
        """
        pass


@dataclass(frozen=True)
class PoolingCandidate:
    """An open pooling group, represented by its earliest member"""
    representative: RideBooking
    member_count: int

    @property
    def has_seat(self) -> bool:
        return self.member_count < self.representative.max_passengers


class PoolingStrategy(ABC):
    """
    Abstract base class for ride pooling strategies
    """

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def find_group(
        self,
        ride: RideBooking,
        candidates: Iterable[PoolingCandidate]
    ) -> Optional[PoolingCandidate]:
        """
        Choose the open group the ride should join
        Returns: The matching candidate, or None when a new group is needed
        """
        pass


# ============================================================================
# PRICING STRATEGIES
# ============================================================================

class DynamicPricingStrategy(PricingStrategy):
    """
    Demand-sensitive pricing
    - Whole hours with a one hour minimum
    - Peak multiplier by start hour
    - Surge multiplier on weekday office hours (parking only)
    - Class discount for DAILY and MONTHLY bookings
    Multipliers compose multiplicatively.
    """

    def is_peak_hour(self, instant: datetime) -> bool:
        return instant.hour in self.policy.peak_hours

    def is_high_demand_period(self, instant: datetime) -> bool:
        # Monday=0 .. Friday=4
        return (
            instant.weekday() < 5
            and self.policy.surge_start_hour <= instant.hour <= self.policy.surge_end_hour
        )

    def billable_hours(self, window: TimeWindow) -> int:
        return max(1, window.whole_hours)

    def calculate_parking_price(
        self,
        lot: ParkingLot,
        window: TimeWindow,
        booking_class: BookingClass
    ) -> Decimal:
        hourly_rate = lot.base_hourly_rate if lot.base_hourly_rate is not None else self.policy.base_rate
        hours = self.billable_hours(window)
        amount = to_decimal(hourly_rate) * hours

        if self.is_peak_hour(window.start_time):
            amount *= self.policy.peak_multiplier

        if self.is_high_demand_period(window.start_time):
            amount *= self.policy.surge_multiplier

        amount *= self.policy.class_discount(booking_class)

        price = round_money(amount)
        self.logger.debug(
            f"Parking price for lot {lot.id}: {hours}h x {hourly_rate} "
            f"({booking_class.value}) = {price}"
        )
        return price

    def ride_distance_km(self, pickup: Optional[GeoPoint], dropoff: Optional[GeoPoint]) -> float:
        if pickup is None or dropoff is None:
            return self.policy.default_ride_distance_km
        return pickup.distance_km(dropoff)

    def fare_for_distance(self, distance_km: float, ride_class: RideClass, requested_time: datetime) -> Decimal:
        tariff = self.policy.tariff(ride_class)
        fare = tariff.base_fare + to_decimal(distance_km) * tariff.per_km_rate

        if self.is_peak_hour(requested_time):
            fare *= self.policy.peak_multiplier

        return round_money(fare)

    def calculate_ride_fare(
        self,
        pickup: Optional[GeoPoint],
        dropoff: Optional[GeoPoint],
        ride_class: RideClass,
        requested_time: datetime
    ) -> Decimal:
        distance = self.ride_distance_km(pickup, dropoff)
        fare = self.fare_for_distance(distance, ride_class, requested_time)
        self.logger.debug(f"Ride fare {ride_class.value} over {distance:.3f} km = {fare}")
        return fare


# ============================================================================
# SPOT ALLOCATION STRATEGIES
# ============================================================================

class FirstFitSpotAllocator(SpotAllocationStrategy):
    """
    Strategy: First-fit allocation
    - Only AVAILABLE spots are considered
    - A spot held by a CONFIRMED/ACTIVE booking overlapping the window is skipped
    - Lowest spot number wins (natural ordering), filling low numbers first
    """

    def allocate(
        self,
        spots: Iterable[ParkingSpot],
        holding_bookings: Iterable[ParkingBooking],
        window: TimeWindow
    ) -> Optional[ParkingSpot]:
        busy_spot_ids = {
            booking.spot_id
            for booking in holding_bookings
            if booking.spot_id is not None
            and booking.holds_capacity
            and booking.window.overlaps(window)
        }

        candidates = sorted(
            (spot for spot in spots if spot.is_available and spot.id not in busy_spot_ids),
            key=lambda spot: spot.sort_key
        )

        if not candidates:
            self.logger.debug(f"No free spot for {window}")
            return None

        chosen = candidates[0]
        self.logger.debug(f"Allocated spot {chosen.spot_number} for {window}")
        return chosen


# ============================================================================
# POOLING STRATEGIES
# ============================================================================

class ProximityPoolingMatcher(PoolingStrategy):
    """
    Strategy: Join the first open group whose representative picks up and
    drops off within the pooling radius (meters) of the request.
    A missing coordinate on either side never matches.
    """

    def __init__(self, radius_meters: float = 1000.0):
        super().__init__()
        if radius_meters < 0:
            raise ValueError("Pooling radius cannot be negative")
        self.radius_meters = radius_meters

    @staticmethod
    def _distance_meters(a: Optional[GeoPoint], b: Optional[GeoPoint]) -> float:
        if a is None or b is None:
            return float('inf')
        return a.distance_meters(b)

    def is_within_pooling_distance(self, ride: RideBooking, other: RideBooking) -> bool:
        pickup_distance = self._distance_meters(ride.pickup, other.pickup)
        dropoff_distance = self._distance_meters(ride.dropoff, other.dropoff)
        return pickup_distance <= self.radius_meters and dropoff_distance <= self.radius_meters

    def find_group(
        self,
        ride: RideBooking,
        candidates: Iterable[PoolingCandidate]
    ) -> Optional[PoolingCandidate]:
        for candidate in candidates:
            if not candidate.has_seat:
                continue
            if candidate.representative.id == ride.id:
                continue
            if self.is_within_pooling_distance(ride, candidate.representative):
                self.logger.debug(
                    f"Ride {ride.id} matches group {candidate.representative.pooling_group_id}"
                )
                return candidate
        return None


def build_pooling_candidates(open_rides: Iterable[RideBooking], member_counts: Dict[str, int]) -> List[PoolingCandidate]:
    """
    Reduce open shared rides to one candidate per group, keeping the earliest
    member as representative, in creation order.
    """
    representatives: Dict[str, RideBooking] = {}
    for ride in sorted(open_rides, key=lambda r: (r.created_at, r.id)):
        if ride.pooling_group_id and ride.pooling_group_id not in representatives:
            representatives[ride.pooling_group_id] = ride

    return [
        PoolingCandidate(representative, member_counts.get(group_id, 1))
        for group_id, representative in representatives.items()
    ]
