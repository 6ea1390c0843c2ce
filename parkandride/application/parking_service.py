# File: parkandride/application/parking_service.py
"""
Parking Application Service

This module implements the parking use cases of the booking engine. It
orchestrates the domain logic: the overlap checker, the pricing engine, the
spot allocator, the booking lifecycle and the credential issuer.

Responsibilities:
1. Create bookings without overselling a lot (capacity check, spot
   allocation and availability update run inside the lot's exclusion region)
2. Drive the booking lifecycle: start, end, cancel, no-show sweep
3. Validate access credentials (QR payload or booking id + PIN)
4. Serve lot listings through the lot cache

Key Principles:
- Dependency Injection for testability (storage, locks, caches, clock)
- "Now" comes from the injected clock, never from the wall clock directly
- Domain failures are returned as OperationResult errors
"""

from typing import Dict, List, Optional, Any, Callable, Iterable
from datetime import datetime, timedelta
from decimal import Decimal
from itertools import groupby
import logging

from pydantic import ValidationError

from ..domain.models import (
    ParkingLot, ParkingSpot, UserRef, GeoPoint, TimeWindow,
    LotStatus, BookingClass
)
from ..domain.aggregates import ParkingBooking
from ..domain.strategies import (
    PricingStrategy, DynamicPricingStrategy,
    SpotAllocationStrategy, FirstFitSpotAllocator
)
from ..domain.credentials import AccessCredentialIssuer
from ..domain.exceptions import (
    ResourceNotFoundError, BookingConflictError, InvalidStateError,
    InvalidCredentialError, CredentialIssueError
)
from ..infrastructure.repositories import UnitOfWork, UnitOfWorkFactory
from ..infrastructure.locking import LockProvider, lot_lock_key, user_lock_key
from ..infrastructure.caching import LotCache, PricingCache
from ..infrastructure.messaging import EventBus
from .base_service import ApplicationService
from .dtos import (
    ParkingBookingRequestDTO, BookingDTO, ParkingLotDTO, PriceQuoteDTO,
    SweepResultDTO, OperationResult
)


class ParkingService(ApplicationService):
    """
    Main application service for parking bookings

    Every mutating operation follows the same shape:
    lock(lot) -> unit of work -> domain transition -> refresh lot
    availability -> commit -> invalidate lot cache -> publish events.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        lock_provider: Optional[LockProvider] = None,
        pricing_strategy: Optional[PricingStrategy] = None,
        spot_allocator: Optional[SpotAllocationStrategy] = None,
        credential_issuer: Optional[AccessCredentialIssuer] = None,
        lot_cache: Optional[LotCache] = None,
        pricing_cache: Optional[PricingCache] = None,
        event_bus: Optional[EventBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
        no_show_grace: timedelta = timedelta(minutes=15)
    ):
        super().__init__(uow_factory, lock_provider, event_bus, clock)
        self.pricing_strategy = pricing_strategy or DynamicPricingStrategy()
        self.spot_allocator = spot_allocator or FirstFitSpotAllocator()
        self.credential_issuer = credential_issuer or AccessCredentialIssuer()
        self.lot_cache = lot_cache
        self.pricing_cache = pricing_cache
        self.no_show_grace = no_show_grace

        self.logger.info("ParkingService initialized")

    # ========================================================================
    # USERS AND LOTS
    # ========================================================================

    def register_user(self, username: str) -> OperationResult:
        """Record an already-authenticated user; returns the existing one if present"""
        def operation() -> UserRef:
            with self.lock_provider.lock(user_lock_key(username)):
                with self.uow_factory() as uow:
                    existing = uow.users.find_by_username(username)
                    if existing is not None:
                        return existing
                    user = UserRef(username)
                    uow.users.add(user)
            self.logger.info(f"Registered user {username}")
            return user

        return self._execute("register_user", operation)

    def find_user(self, username: str) -> OperationResult:
        def operation() -> UserRef:
            with self.uow_factory() as uow:
                user = uow.users.find_by_username(username)
            if user is None:
                raise ResourceNotFoundError(f"User not found: {username}")
            return user

        return self._execute("find_user", operation)

    def add_parking_lot(self, lot: ParkingLot, spots: Iterable[ParkingSpot] = ()) -> OperationResult:
        def operation() -> ParkingLotDTO:
            with self.uow_factory() as uow:
                uow.lots.add(lot)
                for spot in spots:
                    if spot.lot_id != lot.id:
                        raise InvalidStateError(f"Spot {spot.spot_number} belongs to another lot")
                    uow.spots.add(spot)
            self._invalidate_lots(lot.id)
            self.logger.info(f"Added parking lot {lot.name} with {lot.total_units} units")
            return ParkingLotDTO.from_domain(lot)

        return self._execute("add_parking_lot", operation)

    def update_lot_status(self, lot_id: str, status: LotStatus) -> OperationResult:
        def operation() -> ParkingLotDTO:
            with self.lock_provider.lock(lot_lock_key(lot_id)):
                with self.uow_factory() as uow:
                    lot = self._load_lot(uow, lot_id, for_update=True)
                    lot.change_status(status, self.clock())
                    uow.lots.update(lot)
            self._invalidate_lots(lot_id)
            self.logger.info(f"Lot {lot_id} is now {status.value}")
            return ParkingLotDTO.from_domain(lot)

        return self._execute("update_lot_status", operation)

    def list_available_lots(self) -> OperationResult:
        def load() -> List[ParkingLot]:
            with self.uow_factory() as uow:
                return uow.lots.find_available()

        def operation() -> List[ParkingLotDTO]:
            lots = self.lot_cache.available_lots(load) if self.lot_cache else load()
            return [ParkingLotDTO.from_domain(lot) for lot in lots]

        return self._execute("list_available_lots", operation)

    def list_lots_by_metro_station(self, station_name: str) -> OperationResult:
        def load() -> List[ParkingLot]:
            with self.uow_factory() as uow:
                return uow.lots.find_by_metro_station(station_name)

        def operation() -> List[ParkingLotDTO]:
            lots = self.lot_cache.lots_by_station(station_name, load) if self.lot_cache else load()
            return [ParkingLotDTO.from_domain(lot) for lot in lots]

        return self._execute("list_lots_by_metro_station", operation)

    def find_nearby_lots(self, latitude: float, longitude: float, radius_meters: float) -> OperationResult:
        """ACTIVE lots within radius_meters of the point, nearest first"""
        point = GeoPoint(latitude, longitude)

        def operation() -> List[ParkingLotDTO]:
            with self.uow_factory() as uow:
                lots = uow.lots.find_active()
            distances = [(lot.distance_meters_to(point), lot) for lot in lots]
            nearby = sorted(
                ((distance, lot) for distance, lot in distances if distance <= radius_meters),
                key=lambda pair: (pair[0], pair[1].name)
            )
            return [ParkingLotDTO.from_domain(lot) for _, lot in nearby]

        return self._execute("find_nearby_lots", operation)

    def quote_parking(
        self,
        lot_id: str,
        start_time: datetime,
        end_time: datetime,
        booking_class: BookingClass = BookingClass.HOURLY
    ) -> OperationResult:
        def operation() -> PriceQuoteDTO:
            window = TimeWindow(start_time, end_time)
            with self.uow_factory() as uow:
                lot = self._load_lot(uow, lot_id)
            amount = self._price(lot, window, booking_class)
            return PriceQuoteDTO(amount=amount, hours=max(1, window.whole_hours))

        return self._execute("quote_parking", operation)

    # ========================================================================
    # BOOKING LIFECYCLE
    # ========================================================================

    def create_booking(self, request: ParkingBookingRequestDTO, user: UserRef) -> OperationResult:
        """
        Create a parking booking

        Use Case: Reserve capacity
        1. Reject windows starting before now; check lot exists and is ACTIVE
        2. Reject with CONFLICT when overlapping holding bookings fill the lot
        3. Price the window
        4. Allocate a spot if one is free (best effort)
        5. Issue PIN and QR payload (QR failure is not fatal)
        6. Refresh lot availability

        Returns: OperationResult with BookingDTO
        """
        booking_class = BookingClass(request.booking_class)
        window = TimeWindow(request.start_time, request.end_time)

        def operation() -> BookingDTO:
            now = self.clock()
            if window.start_time < now:
                raise InvalidStateError(f"Booking window {window} starts in the past")
            with self.lock_provider.lock(lot_lock_key(request.lot_id)):
                with self.uow_factory() as uow:
                    self._require_user(uow, user)
                    lot = self._load_lot(uow, request.lot_id, for_update=True)
                    if not lot.is_active:
                        raise InvalidStateError(
                            f"Parking lot {lot.name} is not accepting bookings ({lot.status.value})"
                        )

                    holding = uow.bookings.count_overlapping(lot.id, window)
                    if holding >= lot.total_units:
                        raise BookingConflictError(
                            f"No capacity left in {lot.name} for {window}"
                        )

                    amount = self._price(lot, window, booking_class)
                    spot = self.spot_allocator.allocate(
                        uow.spots.find_by_lot(lot.id),
                        uow.bookings.find_overlapping(lot.id, window),
                        window
                    )

                    pin = self.credential_issuer.issue_pin()
                    booking = ParkingBooking.confirm(
                        user_id=user.id,
                        lot_id=lot.id,
                        window=window,
                        total_amount=amount,
                        booking_class=booking_class,
                        access_pin=pin,
                        spot_id=spot.id if spot else None,
                        vehicle_number=request.vehicle_number,
                        now=now,
                    )
                    self._attach_qr_payload(booking, pin, now)

                    if spot is not None:
                        spot.reserve(now)
                        uow.spots.update(spot)

                    uow.bookings.add(booking)
                    self._refresh_availability(uow, lot, now)
                    events = booking.clear_events()

            self._invalidate_lots(lot.id)
            self._publish(events)
            self.logger.info(
                f"Booking {booking.id} created for {user.username} in {lot.name} "
                f"(spot {spot.spot_number if spot else 'unassigned'}, amount {amount})"
            )
            return BookingDTO.from_domain(booking)

        return self._execute("create_booking", operation)

    def start_parking(self, booking_id: str, user: UserRef) -> OperationResult:
        """CONFIRMED -> ACTIVE; the assigned spot becomes OCCUPIED"""
        def transition(booking: ParkingBooking, spot: Optional[ParkingSpot], now: datetime) -> None:
            booking.start(now)
            if spot is not None:
                spot.occupy(now)

        return self._execute(
            "start_parking",
            lambda: self._transition_booking(booking_id, user, transition)
        )

    def end_parking(self, booking_id: str, user: UserRef) -> OperationResult:
        """ACTIVE -> COMPLETED; the assigned spot becomes AVAILABLE"""
        def transition(booking: ParkingBooking, spot: Optional[ParkingSpot], now: datetime) -> None:
            booking.end(now)
            if spot is not None:
                spot.release(now)

        return self._execute(
            "end_parking",
            lambda: self._transition_booking(booking_id, user, transition)
        )

    def cancel_booking(self, booking_id: str, user: UserRef) -> OperationResult:
        """CONFIRMED -> CANCELLED; the assigned spot becomes AVAILABLE"""
        def transition(booking: ParkingBooking, spot: Optional[ParkingSpot], now: datetime) -> None:
            booking.cancel(now)
            if spot is not None:
                spot.release(now)

        return self._execute(
            "cancel_booking",
            lambda: self._transition_booking(booking_id, user, transition)
        )

    def sweep_no_shows(self, now: Optional[datetime] = None) -> OperationResult:
        """
        Mark CONFIRMED bookings nobody started by start_time + grace as NO_SHOW
        Returns: OperationResult with SweepResultDTO
        """
        def operation() -> SweepResultDTO:
            swept_at = now or self.clock()
            with self.uow_factory() as uow:
                candidates = uow.bookings.find_no_show_candidates(swept_at - self.no_show_grace)

            swept: List[BookingDTO] = []
            by_lot = groupby(sorted(candidates, key=lambda b: b.lot_id), key=lambda b: b.lot_id)
            for lot_id, lot_bookings in by_lot:
                swept.extend(self._sweep_lot(lot_id, [b.id for b in lot_bookings], swept_at))

            if swept:
                self.logger.info(f"No-show sweep marked {len(swept)} bookings")
            return SweepResultDTO(swept_at=swept_at, bookings=swept)

        return self._execute("sweep_no_shows", operation)

    # ========================================================================
    # QUERIES AND ACCESS VALIDATION
    # ========================================================================

    def get_booking(self, booking_id: str, user: UserRef) -> OperationResult:
        def operation() -> BookingDTO:
            with self.uow_factory() as uow:
                booking = self._load_owned_booking(uow, booking_id, user)
            return BookingDTO.from_domain(booking)

        return self._execute("get_booking", operation)

    def list_user_bookings(self, user: UserRef) -> OperationResult:
        def operation() -> List[BookingDTO]:
            with self.uow_factory() as uow:
                self._require_user(uow, user)
                bookings = uow.bookings.find_by_user(user.id)
            return [BookingDTO.from_domain(booking) for booking in bookings]

        return self._execute("list_user_bookings", operation)

    def validate_qr_access(self, qr_payload: str) -> OperationResult:
        """Look up the booking a QR payload was issued for; no state change"""
        def operation() -> BookingDTO:
            parsed = self.credential_issuer.parse_qr_payload(qr_payload)
            if parsed is None:
                raise InvalidCredentialError("Malformed QR payload")
            booking_id, pin = parsed

            with self.uow_factory() as uow:
                booking = uow.bookings.get(booking_id)
            if booking is None:
                raise ResourceNotFoundError(f"Booking not found: {booking_id}")
            if booking.qr_payload != qr_payload or not booking.matches_pin(pin):
                raise InvalidCredentialError("QR payload does not match the booking")
            return BookingDTO.from_domain(booking)

        return self._execute("validate_qr_access", operation)

    def validate_pin_access(self, booking_id: str, pin: str) -> OperationResult:
        """Look up a booking by id and PIN; no state change"""
        def operation() -> BookingDTO:
            with self.uow_factory() as uow:
                booking = uow.bookings.get(booking_id)
            if booking is None:
                raise ResourceNotFoundError(f"Booking not found: {booking_id}")
            if not booking.matches_pin(pin):
                raise InvalidCredentialError("Invalid access PIN")
            return BookingDTO.from_domain(booking)

        return self._execute("validate_pin_access", operation)

    def validate_access(
        self,
        qr_payload: Optional[str] = None,
        booking_id: Optional[str] = None,
        pin: Optional[str] = None
    ) -> OperationResult:
        if qr_payload is not None:
            return self.validate_qr_access(qr_payload)
        if booking_id is not None and pin is not None:
            return self.validate_pin_access(booking_id, pin)
        return OperationResult.fail(
            InvalidCredentialError("Either a QR payload or a booking id and PIN is required")
        )

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _load_lot(self, uow: UnitOfWork, lot_id: str, for_update: bool = False) -> ParkingLot:
        lot = uow.lots.get_for_update(lot_id) if for_update else uow.lots.get(lot_id)
        if lot is None:
            raise ResourceNotFoundError(f"Parking lot not found: {lot_id}")
        return lot

    def _load_owned_booking(self, uow: UnitOfWork, booking_id: str, user: UserRef) -> ParkingBooking:
        booking = uow.bookings.get(booking_id)
        # Someone else's booking is reported exactly like a missing one
        if booking is None or booking.user_id != user.id:
            raise ResourceNotFoundError(f"Booking not found: {booking_id}")
        return booking

    def _transition_booking(
        self,
        booking_id: str,
        user: UserRef,
        transition: Callable[[ParkingBooking, Optional[ParkingSpot], datetime], None]
    ) -> BookingDTO:
        with self.uow_factory() as uow:
            lot_id = self._load_owned_booking(uow, booking_id, user).lot_id

        now = self.clock()
        with self.lock_provider.lock(lot_lock_key(lot_id)):
            with self.uow_factory() as uow:
                booking = self._load_owned_booking(uow, booking_id, user)
                lot = self._load_lot(uow, lot_id, for_update=True)
                spot = uow.spots.get(booking.spot_id) if booking.spot_id else None

                transition(booking, spot, now)

                uow.bookings.update(booking)
                if spot is not None:
                    uow.spots.update(spot)
                self._refresh_availability(uow, lot, now)
                events = booking.clear_events()

        self._invalidate_lots(lot_id)
        self._publish(events)
        return BookingDTO.from_domain(booking)

    def _sweep_lot(self, lot_id: str, booking_ids: List[str], now: datetime) -> List[BookingDTO]:
        swept: List[ParkingBooking] = []
        events = []
        with self.lock_provider.lock(lot_lock_key(lot_id)):
            with self.uow_factory() as uow:
                lot = uow.lots.get_for_update(lot_id)
                for booking_id in booking_ids:
                    booking = uow.bookings.get(booking_id)
                    # Re-check under the lock; the booking may have started meanwhile
                    if booking is None or not booking.is_no_show(now, self.no_show_grace):
                        continue
                    booking.mark_no_show(now)
                    uow.bookings.update(booking)
                    if booking.spot_id:
                        spot = uow.spots.get(booking.spot_id)
                        if spot is not None:
                            spot.release(now)
                            uow.spots.update(spot)
                    events.extend(booking.clear_events())
                    swept.append(booking)
                if lot is not None:
                    self._refresh_availability(uow, lot, now)

        self._invalidate_lots(lot_id)
        self._publish(events)
        return [BookingDTO.from_domain(booking) for booking in swept]

    def _refresh_availability(self, uow: UnitOfWork, lot: ParkingLot, now: datetime) -> None:
        holding = uow.bookings.count_holding_after(lot.id, now)
        available = lot.refresh_availability(holding, now)
        uow.lots.update(lot)
        self.logger.debug(f"Lot {lot.id}: {available}/{lot.total_units} units available")

    def _attach_qr_payload(self, booking: ParkingBooking, pin: str, now: datetime) -> None:
        try:
            booking.attach_qr_payload(self.credential_issuer.issue_qr_payload(booking.id, pin), now)
        except CredentialIssueError as e:
            self.logger.warning(
                f"QR payload generation failed for booking {booking.id}, PIN access only: {e}"
            )

    def _price(self, lot: ParkingLot, window: TimeWindow, booking_class: BookingClass) -> Decimal:
        def compute() -> Decimal:
            return self.pricing_strategy.calculate_parking_price(lot, window, booking_class)

        if self.pricing_cache is None:
            return compute()
        return self.pricing_cache.get_or_compute(
            self.pricing_cache.parking_key(lot, window, booking_class), compute
        )

    def _invalidate_lots(self, lot_id: str) -> None:
        if self.lot_cache is not None:
            self.lot_cache.invalidate(lot_id)


# ============================================================================
# COMMAND HANDLER
# ============================================================================

class BookingCommandHandler:
    """
    Handler for parking booking commands

    Implements command pattern over ParkingService. Commands are plain
    dictionaries: {"type": ..., "user": {"id": ..., "username": ...}, "data": {...}}
    """

    def __init__(self, service: ParkingService):
        self.service = service
        self.logger = logging.getLogger(self.__class__.__name__)

    def handle(self, command: Dict[str, Any]) -> Dict[str, Any]:
        """Handle a booking command; a malformed command comes back as an INVALID_STATE failure"""
        command_type = command.get("type")
        try:
            result = self._dispatch(command_type, command)
        except (ValidationError, KeyError) as e:
            self.logger.info(f"Rejected malformed {command_type} command: {e}")
            result = OperationResult.fail(InvalidStateError(f"Malformed {command_type} command: {e}"))

        if result is None:
            return {
                "success": False,
                "error": None,
                "message": f"Unknown command type: {command_type}"
            }

        self.logger.debug(f"Handled {command_type}: success={result.success}")
        return result.to_dict()

    def _dispatch(self, command_type: Optional[str], command: Dict[str, Any]) -> Optional[OperationResult]:
        data = command.get("data") or {}
        user_data = command.get("user")
        user = UserRef(user_data["username"], id=user_data["id"]) if user_data else None

        if command_type == "create_booking":
            result = self.service.create_booking(ParkingBookingRequestDTO(**data), user)
        elif command_type == "start_parking":
            result = self.service.start_parking(data["booking_id"], user)
        elif command_type == "end_parking":
            result = self.service.end_parking(data["booking_id"], user)
        elif command_type == "cancel_booking":
            result = self.service.cancel_booking(data["booking_id"], user)
        elif command_type == "validate_access":
            result = self.service.validate_access(
                qr_payload=data.get("qr_payload"),
                booking_id=data.get("booking_id"),
                pin=data.get("pin"),
            )
        else:
            return None
        return result
