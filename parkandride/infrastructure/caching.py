# File: parkandride/infrastructure/caching.py
"""
Explicit cache component for lot listings and price quotes

Cache clients expose get / set(ex=seconds) / delete / delete_prefix and
store JSON strings. Lot listings are invalidated whenever a lot changes;
price quotes are keyed by every pricing input, including the hour bucket
and weekday of the priced instant, so a cached quote never crosses a peak
or surge boundary.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict, Callable, Tuple
import json
import logging
import threading
import time

import redis

from ..domain.models import ParkingLot, GeoPoint, TimeWindow, BookingClass, RideClass


# ============================================================================
# CACHE CLIENTS
# ============================================================================

class CacheClient(ABC):

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        pass

    @abstractmethod
    def delete(self, *keys: str) -> None:
        pass

    @abstractmethod
    def delete_prefix(self, prefix: str) -> None:
        pass


class InMemoryCacheClient(CacheClient):
    """Thread-safe dictionary cache with per-key expiry"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        expires_at = self._clock() + ex if ex else None
        with self._lock:
            self._entries[key] = (value, expires_at)

    def delete(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._entries.pop(key, None)

    def delete_prefix(self, prefix: str) -> None:
        with self._lock:
            for key in [key for key in self._entries if key.startswith(prefix)]:
                del self._entries[key]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class RedisCacheClient(CacheClient):
    """Cache client backed by redis-py"""

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> 'RedisCacheClient':
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        self.client.set(key, value, ex=ex)

    def delete(self, *keys: str) -> None:
        if keys:
            self.client.delete(*keys)

    def delete_prefix(self, prefix: str) -> None:
        keys = list(self.client.scan_iter(match=f"{prefix}*"))
        if keys:
            self.client.delete(*keys)


# ============================================================================
# LOT CACHE
# ============================================================================

class LotCache:
    """Cached lot listings (available lots, lots by metro station)"""

    PREFIX = "parkandride:lots:"

    def __init__(self, client: CacheClient, ttl_seconds: int = 300):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self._logger = logging.getLogger(self.__class__.__name__)

    def _available_key(self) -> str:
        return f"{self.PREFIX}available"

    def _station_key(self, station_name: str) -> str:
        return f"{self.PREFIX}station:{station_name}"

    def _get_or_load(self, key: str, loader: Callable[[], List[ParkingLot]]) -> List[ParkingLot]:
        cached = self.client.get(key)
        if cached is not None:
            self._logger.debug(f"Cache hit for {key}")
            return [ParkingLot.from_dict(item) for item in json.loads(cached)]

        self._logger.debug(f"Cache miss for {key}")
        lots = loader()
        self.client.set(key, json.dumps([lot.to_dict() for lot in lots]), ex=self.ttl_seconds)
        return lots

    def available_lots(self, loader: Callable[[], List[ParkingLot]]) -> List[ParkingLot]:
        return self._get_or_load(self._available_key(), loader)

    def lots_by_station(self, station_name: str, loader: Callable[[], List[ParkingLot]]) -> List[ParkingLot]:
        return self._get_or_load(self._station_key(station_name), loader)

    def invalidate(self, lot_id: Optional[str] = None) -> None:
        """Drop every listing; any lot mutation can change any listing"""
        self.client.delete_prefix(self.PREFIX)
        self._logger.debug(f"Invalidated lot listings (lot {lot_id})")


# ============================================================================
# PRICING CACHE
# ============================================================================

def hour_bucket(instant: datetime) -> str:
    """Time bucket of a priced instant: YYYY-MM-DDTHH plus weekday"""
    return f"{instant.strftime('%Y-%m-%dT%H')}:{instant.weekday()}"


def _point_key(point: Optional[GeoPoint]) -> str:
    if point is None:
        return "none"
    return f"{point.latitude:.6f},{point.longitude:.6f}"


class PricingCache:
    """Cached parking quotes and ride fares"""

    PREFIX = "parkandride:pricing:"

    def __init__(self, client: CacheClient, ttl_seconds: int = 300):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self._logger = logging.getLogger(self.__class__.__name__)

    def parking_key(self, lot: ParkingLot, window: TimeWindow, booking_class: BookingClass) -> str:
        rate = lot.base_hourly_rate if lot.base_hourly_rate is not None else "default"
        return (
            f"{self.PREFIX}parking:{lot.id}:{rate}:{booking_class.value}:"
            f"{window.whole_hours}:{hour_bucket(window.start_time)}"
        )

    def ride_key(
        self,
        pickup: Optional[GeoPoint],
        dropoff: Optional[GeoPoint],
        ride_class: RideClass,
        requested_time: datetime
    ) -> str:
        return (
            f"{self.PREFIX}ride:{ride_class.value}:{_point_key(pickup)}:"
            f"{_point_key(dropoff)}:{hour_bucket(requested_time)}"
        )

    def get_or_compute(self, key: str, compute: Callable[[], Decimal]) -> Decimal:
        cached = self.client.get(key)
        if cached is not None:
            self._logger.debug(f"Cache hit for {key}")
            return Decimal(cached)

        self._logger.debug(f"Cache miss for {key}")
        amount = compute()
        self.client.set(key, str(amount), ex=self.ttl_seconds)
        return amount

    def invalidate(self) -> None:
        self.client.delete_prefix(self.PREFIX)
