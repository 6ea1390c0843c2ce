# File: parkandride/infrastructure/factories.py
"""
Factory Pattern Implementation for the Park-and-Ride Booking Engine

1. Domain Object Factories - Lots together with their numbered spots
2. Service Factories - Fully wired services for the in-memory and the
   SQLAlchemy (+ optional Redis) deployments

Key Benefits:
- Centralized object creation logic
- Enables dependency injection
- Facilitates testing with in-memory wiring and a fixed clock
"""

from dataclasses import dataclass
from typing import Optional, List, Tuple, Callable
from datetime import datetime
from decimal import Decimal
import logging

import redis

from ..config import Settings, get_settings
from ..domain.models import ParkingLot, ParkingSpot, GeoPoint, SpotType
from ..domain.strategies import DynamicPricingStrategy, FirstFitSpotAllocator, ProximityPoolingMatcher
from ..domain.credentials import AccessCredentialIssuer
from ..application.parking_service import ParkingService
from ..application.ride_service import RideService
from .repositories import RepositoryFactory, InMemoryDatabase, UnitOfWorkFactory
from .caching import CacheClient, InMemoryCacheClient, RedisCacheClient, LotCache, PricingCache
from .locking import LockProvider, InProcessLockProvider, RedisLockProvider
from .dispatch import DriverDispatcher, StubDriverDispatcher
from .messaging import EventBus, LoggingEventHandler, ALL_EVENTS


# ============================================================================
# DOMAIN OBJECT FACTORIES
# ============================================================================

class ParkingLotFactory:
    """Factory for parking lots and their spots"""

    @staticmethod
    def create(
        name: str,
        latitude: float,
        longitude: float,
        total_units: int,
        base_hourly_rate: Optional[Decimal] = None,
        spot_count: Optional[int] = None,
        spot_prefix: str = "A-",
        metro_station_name: Optional[str] = None,
        distance_from_metro: Optional[float] = None,
        address: str = "",
        facilities: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Tuple[ParkingLot, List[ParkingSpot]]:
        """
        Create a lot with spots numbered <prefix>1..<prefix>N
        spot_count defaults to total_units; fewer spots than units is allowed.
        """
        lot = ParkingLot(
            name=name,
            address=address,
            location=GeoPoint(latitude, longitude),
            total_units=total_units,
            base_hourly_rate=base_hourly_rate,
            metro_station_name=metro_station_name,
            distance_from_metro=distance_from_metro,
            facilities=facilities,
            created_at=now,
        )
        count = total_units if spot_count is None else spot_count
        spots = [
            ParkingSpot(lot.id, f"{spot_prefix}{number}", SpotType.REGULAR, created_at=now)
            for number in range(1, count + 1)
        ]
        return lot, spots


# ============================================================================
# SERVICE FACTORIES
# ============================================================================

@dataclass
class ParkAndRideServices:
    """Wired services sharing one storage, lock provider, cache and event bus"""
    parking: ParkingService
    rides: RideService
    event_bus: EventBus
    settings: Settings


class ServiceFactory:
    """Factory for creating application services"""

    logger = logging.getLogger("ServiceFactory")

    @staticmethod
    def create(
        uow_factory: UnitOfWorkFactory,
        settings: Settings,
        cache_client: CacheClient,
        lock_provider: LockProvider,
        dispatcher: Optional[DriverDispatcher] = None,
        credential_issuer: Optional[AccessCredentialIssuer] = None,
        clock: Optional[Callable[[], datetime]] = None
    ) -> ParkAndRideServices:
        event_bus = EventBus()
        event_bus.subscribe(ALL_EVENTS, LoggingEventHandler(logging.getLogger("parkandride.events")))

        pricing = DynamicPricingStrategy(settings.pricing_policy())
        pricing_cache = PricingCache(cache_client, settings.pricing_cache_ttl_seconds)

        parking = ParkingService(
            uow_factory=uow_factory,
            lock_provider=lock_provider,
            pricing_strategy=pricing,
            spot_allocator=FirstFitSpotAllocator(),
            credential_issuer=credential_issuer or AccessCredentialIssuer(),
            lot_cache=LotCache(cache_client, settings.lot_cache_ttl_seconds),
            pricing_cache=pricing_cache,
            event_bus=event_bus,
            clock=clock,
            no_show_grace=settings.no_show_grace,
        )
        rides = RideService(
            uow_factory=uow_factory,
            lock_provider=lock_provider,
            pricing_strategy=pricing,
            pooling_strategy=ProximityPoolingMatcher(settings.pooling_radius_meters),
            dispatcher=dispatcher or StubDriverDispatcher(),
            pricing_cache=pricing_cache,
            event_bus=event_bus,
            clock=clock,
        )
        return ParkAndRideServices(parking=parking, rides=rides, event_bus=event_bus, settings=settings)

    @staticmethod
    def create_in_memory(
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        database: Optional[InMemoryDatabase] = None,
        **kwargs
    ) -> ParkAndRideServices:
        """Single-process wiring: in-memory storage, cache and locks"""
        settings = settings or get_settings()
        return ServiceFactory.create(
            uow_factory=RepositoryFactory.create_in_memory_uow_factory(database),
            settings=settings,
            cache_client=InMemoryCacheClient(),
            lock_provider=InProcessLockProvider(),
            clock=clock,
            **kwargs
        )

    @staticmethod
    def create_sqlalchemy(
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        **kwargs
    ) -> ParkAndRideServices:
        """
        Relational storage at settings.database_url; with settings.redis_url
        set, cache and locks move to Redis so several processes can share them
        """
        settings = settings or get_settings()
        uow_factory = RepositoryFactory.create_sqlalchemy_uow_factory(settings.database_url)

        if settings.redis_url:
            client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
            cache_client: CacheClient = RedisCacheClient(client)
            lock_provider: LockProvider = RedisLockProvider(client)
            ServiceFactory.logger.info("Using Redis for caching and locking")
        else:
            cache_client = InMemoryCacheClient()
            lock_provider = InProcessLockProvider()

        return ServiceFactory.create(
            uow_factory=uow_factory,
            settings=settings,
            cache_client=cache_client,
            lock_provider=lock_provider,
            clock=clock,
            **kwargs
        )
