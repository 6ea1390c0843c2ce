# File: parkandride/application/base_service.py
"""
Common plumbing of the application services

- Converts typed domain errors into an OperationResult
- Resolves the caller's user reference
- Publishes recorded domain events once a unit of work has committed
"""

from typing import Callable, Iterable, Optional, TypeVar
from datetime import datetime
import logging

from ..domain.models import UserRef, DomainEvent
from ..domain.exceptions import ParkAndRideError, ResourceNotFoundError
from ..infrastructure.repositories import UnitOfWork, UnitOfWorkFactory
from ..infrastructure.locking import LockProvider, InProcessLockProvider
from ..infrastructure.messaging import EventBus
from .dtos import OperationResult

R = TypeVar('R')


class ApplicationService:
    """Base class for use-case services"""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        lock_provider: Optional[LockProvider] = None,
        event_bus: Optional[EventBus] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.uow_factory = uow_factory
        self.lock_provider = lock_provider or InProcessLockProvider()
        self.event_bus = event_bus
        self.clock = clock or datetime.now
        self.logger = logging.getLogger(self.__class__.__name__)

    def _execute(self, action: str, operation: Callable[[], R]) -> OperationResult:
        """
        Run a use case, reporting domain failures as an OperationResult

        Anything that is not a ParkAndRideError propagates unchanged; the unit
        of work it happened in has already been rolled back.
        """
        try:
            return OperationResult.ok(operation())
        except ParkAndRideError as e:
            self.logger.info(f"{action} failed ({e.kind.value}): {e.message}")
            return OperationResult.fail(e)

    def _require_user(self, uow: UnitOfWork, user: UserRef) -> UserRef:
        stored = uow.users.get(user.id)
        if stored is None:
            raise ResourceNotFoundError(f"User not found: {user.username}")
        return stored

    def _publish(self, events: Iterable[DomainEvent]) -> None:
        if self.event_bus is None:
            return
        self.event_bus.publish_all(events)
