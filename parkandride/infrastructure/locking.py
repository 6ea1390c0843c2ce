# File: parkandride/infrastructure/locking.py
"""
Mutual exclusion regions

Booking creation, start, end and cancel for one lot run inside the lot's
region; registering a username runs inside that username's region; the
pooling scan-then-join-or-create runs inside the pooling region.
InProcessLockProvider serves a single process, RedisLockProvider
serves several processes sharing one Redis.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Iterator
import logging
import threading

import redis

POOLING_LOCK_KEY = "pooling"


def lot_lock_key(lot_id: str) -> str:
    return f"lot:{lot_id}"


def user_lock_key(username: str) -> str:
    return f"user:{username}"


class LockProvider(ABC):

    @abstractmethod
    def lock(self, key: str):
        """Context manager holding the exclusive region named by key"""
        pass


class InProcessLockProvider(LockProvider):
    """Registry of one threading.Lock per key"""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def _lock_for(self, key: str) -> threading.Lock:
        with self._registry_lock:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        region = self._lock_for(key)
        with region:
            self._logger.debug(f"Acquired {key}")
            yield
        self._logger.debug(f"Released {key}")


class RedisLockProvider(LockProvider):
    """Distributed locks built on redis-py's Lock"""

    def __init__(
        self,
        client: redis.Redis,
        timeout: float = 10.0,
        blocking_timeout: float = 5.0,
        prefix: str = "parkandride:lock:"
    ):
        self.client = client
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout
        self.prefix = prefix
        self._logger = logging.getLogger(self.__class__.__name__)

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        # Raises redis.exceptions.LockError when not acquired within blocking_timeout
        with self.client.lock(
            f"{self.prefix}{key}",
            timeout=self.timeout,
            blocking_timeout=self.blocking_timeout
        ):
            self._logger.debug(f"Acquired {key}")
            yield
        self._logger.debug(f"Released {key}")
