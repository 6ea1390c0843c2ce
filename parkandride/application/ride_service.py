# File: parkandride/application/ride_service.py
"""
Ride Application Service

Last-mile ride use cases: booking (with pooling of shared rides), lookups,
cancellation and forward-only status updates.

Shared requests run "scan open groups, then join or create" inside a single
pooling exclusion region, so two compatible riders can never both open a
new group.
"""

from typing import List, Optional, Callable, Union
from datetime import datetime
from decimal import Decimal
import uuid

from ..domain.models import UserRef, GeoPoint, RideClass, RideStatus
from ..domain.aggregates import RideBooking
from ..domain.strategies import (
    PricingStrategy, DynamicPricingStrategy,
    PoolingStrategy, ProximityPoolingMatcher, build_pooling_candidates
)
from ..domain.exceptions import ResourceNotFoundError, InvalidStateError
from ..infrastructure.repositories import UnitOfWork, UnitOfWorkFactory
from ..infrastructure.locking import LockProvider, POOLING_LOCK_KEY
from ..infrastructure.caching import PricingCache
from ..infrastructure.dispatch import DriverDispatcher, StubDriverDispatcher
from ..infrastructure.messaging import EventBus
from .base_service import ApplicationService
from .dtos import RideBookingRequestDTO, RideBookingDTO, PriceQuoteDTO, OperationResult


class RideService(ApplicationService):
    """Application service for ride bookings"""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        lock_provider: Optional[LockProvider] = None,
        pricing_strategy: Optional[PricingStrategy] = None,
        pooling_strategy: Optional[PoolingStrategy] = None,
        dispatcher: Optional[DriverDispatcher] = None,
        pricing_cache: Optional[PricingCache] = None,
        event_bus: Optional[EventBus] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        super().__init__(uow_factory, lock_provider, event_bus, clock)
        self.pricing_strategy = pricing_strategy or DynamicPricingStrategy()
        self.pooling_strategy = pooling_strategy or ProximityPoolingMatcher()
        self.dispatcher = dispatcher or StubDriverDispatcher()
        self.pricing_cache = pricing_cache

        self.logger.info("RideService initialized")

    # ========================================================================
    # COMMANDS
    # ========================================================================

    def create_ride_booking(self, request: RideBookingRequestDTO, user: UserRef) -> OperationResult:
        """
        Book a ride

        Use Case: Last-mile ride
        1. Check the linked parking booking, if any, belongs to the user
        2. Estimate the fare
        3. Shared: join the first compatible open group, else open a new one
           and dispatch a driver. Not shared: dispatch a driver.

        Returns: OperationResult with RideBookingDTO
        """
        ride_class = RideClass(request.ride_class)
        pickup = GeoPoint.maybe(request.pickup_latitude, request.pickup_longitude)
        dropoff = GeoPoint.maybe(request.dropoff_latitude, request.dropoff_longitude)

        def operation() -> RideBookingDTO:
            now = self.clock()
            ride = RideBooking(
                user_id=user.id,
                pickup_label=request.pickup_location,
                dropoff_label=request.dropoff_location,
                pickup=pickup,
                dropoff=dropoff,
                requested_time=request.requested_time,
                scheduled_time=request.scheduled_time,
                ride_class=ride_class,
                parking_booking_id=request.parking_booking_id,
                is_shared=request.is_shared,
                max_passengers=request.max_passengers,
                estimated_fare=self._fare(pickup, dropoff, ride_class, request.requested_time),
                created_at=now,
            )

            if ride.is_shared:
                with self.lock_provider.lock(POOLING_LOCK_KEY):
                    events = self._book(ride, user, now, self._pool)
            else:
                events = self._book(ride, user, now, self._dispatch)

            self._publish(events)
            return RideBookingDTO.from_domain(ride)

        return self._execute("create_ride_booking", operation)

    def cancel_ride_booking(self, ride_id: str, user: UserRef) -> OperationResult:
        return self._execute(
            "cancel_ride_booking",
            lambda: self._change_ride(ride_id, user, lambda ride, now: ride.cancel(now))
        )

    def update_ride_status(
        self,
        ride_id: str,
        new_status: Union[RideStatus, str],
        user: UserRef
    ) -> OperationResult:
        """Move a ride forward; illegal transitions fail with INVALID_STATE"""
        def operation() -> RideBookingDTO:
            try:
                status = RideStatus(new_status)
            except ValueError:
                raise InvalidStateError(f"Unknown ride status: {new_status}") from None
            return self._change_ride(ride_id, user, lambda ride, now: ride.transition_to(status, now))

        return self._execute("update_ride_status", operation)

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_ride_booking(self, ride_id: str, user: UserRef) -> OperationResult:
        def operation() -> RideBookingDTO:
            with self.uow_factory() as uow:
                ride = self._load_owned_ride(uow, ride_id, user)
            return RideBookingDTO.from_domain(ride)

        return self._execute("get_ride_booking", operation)

    def list_user_rides(self, user: UserRef) -> OperationResult:
        def operation() -> List[RideBookingDTO]:
            with self.uow_factory() as uow:
                self._require_user(uow, user)
                rides = uow.rides.find_by_user(user.id)
            return [RideBookingDTO.from_domain(ride) for ride in rides]

        return self._execute("list_user_rides", operation)

    def quote_ride(
        self,
        pickup: Optional[GeoPoint],
        dropoff: Optional[GeoPoint],
        ride_class: RideClass,
        requested_time: datetime
    ) -> OperationResult:
        def operation() -> PriceQuoteDTO:
            amount = self._fare(pickup, dropoff, ride_class, requested_time)
            distance = None
            if pickup is not None and dropoff is not None:
                distance = round(pickup.distance_km(dropoff), 3)
            return PriceQuoteDTO(amount=amount, distance_km=distance)

        return self._execute("quote_ride", operation)

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _book(
        self,
        ride: RideBooking,
        user: UserRef,
        now: datetime,
        confirm: Callable[[UnitOfWork, RideBooking, datetime], None]
    ) -> list:
        with self.uow_factory() as uow:
            self._require_user(uow, user)
            if ride.parking_booking_id is not None:
                booking = uow.bookings.get(ride.parking_booking_id)
                if booking is None or booking.user_id != user.id:
                    raise ResourceNotFoundError(
                        f"Parking booking not found: {ride.parking_booking_id}"
                    )
            confirm(uow, ride, now)
            uow.rides.add(ride)
            return ride.clear_events()

    def _dispatch(self, uow: UnitOfWork, ride: RideBooking, now: datetime) -> None:
        ride.assign_driver(self.dispatcher.assign_driver(ride), now)

    def _pool(self, uow: UnitOfWork, ride: RideBooking, now: datetime) -> None:
        open_rides = uow.rides.find_open_shared()
        group_ids = {r.pooling_group_id for r in open_rides}
        member_counts = {group_id: uow.rides.count_group_members(group_id) for group_id in group_ids}

        match = self.pooling_strategy.find_group(
            ride, build_pooling_candidates(open_rides, member_counts)
        )
        if match is not None:
            ride.join_pooling_group(match.representative, now)
            return

        ride.open_pooling_group(str(uuid.uuid4()))
        self._dispatch(uow, ride, now)
        self.logger.info(f"Ride {ride.id} opened pooling group {ride.pooling_group_id}")

    def _change_ride(
        self,
        ride_id: str,
        user: UserRef,
        change: Callable[[RideBooking, datetime], None]
    ) -> RideBookingDTO:
        now = self.clock()
        with self.lock_provider.lock(f"ride:{ride_id}"):
            with self.uow_factory() as uow:
                ride = self._load_owned_ride(uow, ride_id, user)
                change(ride, now)
                uow.rides.update(ride)
                events = ride.clear_events()
        self._publish(events)
        return RideBookingDTO.from_domain(ride)

    def _load_owned_ride(self, uow: UnitOfWork, ride_id: str, user: UserRef) -> RideBooking:
        ride = uow.rides.get(ride_id)
        if ride is None or ride.user_id != user.id:
            raise ResourceNotFoundError(f"Ride booking not found: {ride_id}")
        return ride

    def _fare(
        self,
        pickup: Optional[GeoPoint],
        dropoff: Optional[GeoPoint],
        ride_class: RideClass,
        requested_time: datetime
    ) -> Decimal:
        def compute() -> Decimal:
            return self.pricing_strategy.calculate_ride_fare(pickup, dropoff, ride_class, requested_time)

        if self.pricing_cache is None:
            return compute()
        return self.pricing_cache.get_or_compute(
            self.pricing_cache.ride_key(pickup, dropoff, ride_class, requested_time), compute
        )
