"""
Integration Tests Package for the Park-and-Ride Booking Engine

This package contains integration tests that verify the services, storage,
caches and locks work together correctly.

Integration tests focus on:
1. End-to-end booking and ride scenarios
2. Error kinds reported across the service boundary
3. Concurrent operations against one lot or one pooling region
4. Relational storage through SQLAlchemy

Test Categories:
- Parking service (capacity, lifecycle, access validation, no-show sweep)
- Ride service (dispatch, pooling, status updates)
- SQLAlchemy repositories
- Concurrency
- Command line
"""

from datetime import datetime, timedelta
from decimal import Decimal

from parkandride.config import Settings
from parkandride.infrastructure.factories import ServiceFactory, ParkingLotFactory

__version__ = "1.0.0"
__description__ = "Integration tests for the Park-and-Ride Booking Engine"


class IntegrationTestConfig:
    """Configuration for integration tests"""

    # Tuesday, inside the weekday surge band and a peak hour at 09:00
    START_OF_DAY = datetime(2024, 1, 2, 8, 0)

    SAMPLE_LOT_DATA = {
        "name": "Central Metro Park+Ride",
        "latitude": 12.9716,
        "longitude": 77.5946,
        "total_units": 2,
        "base_hourly_rate": Decimal("50"),
        "metro_station_name": "Central",
        "distance_from_metro": 150.0,
    }

    @staticmethod
    def settings(**overrides) -> Settings:
        # Never pick up a developer's .env file
        return Settings(_env_file=None, **overrides)


class FixedClock:
    """Injectable clock that only moves when told to"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return self.now


class ScenarioBuilder:
    """Generate wired services and seed data for integration tests"""

    @staticmethod
    def create_services(clock: FixedClock, **kwargs):
        return ServiceFactory.create_in_memory(IntegrationTestConfig.settings(), clock=clock, **kwargs)

    @staticmethod
    def create_lot(overrides=None, now=None):
        data = dict(IntegrationTestConfig.SAMPLE_LOT_DATA)
        if overrides:
            data.update(overrides)
        return ParkingLotFactory.create(now=now, **data)
