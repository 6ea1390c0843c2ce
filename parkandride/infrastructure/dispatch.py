# File: parkandride/infrastructure/dispatch.py
"""
Driver dispatch collaborator

Real dispatch is an external system. StubDriverDispatcher derives a
deterministic driver and vehicle from the ride id so that rides are
reproducible in tests and demos.
"""

from abc import ABC, abstractmethod
from typing import Dict
import logging
import uuid
import zlib

from ..domain.models import DriverAssignment, RideClass
from ..domain.aggregates import RideBooking


class DriverDispatcher(ABC):
    """Assigns a driver and vehicle to a ride"""

    @abstractmethod
    def assign_driver(self, ride: RideBooking) -> DriverAssignment:
        pass


class StubDriverDispatcher(DriverDispatcher):

    VEHICLE_MODELS: Dict[RideClass, str] = {
        RideClass.CAB: "Maruti Swift",
        RideClass.SHUTTLE: "Tata Winger",
        RideClass.E_RICKSHAW: "Mahindra Treo",
        RideClass.AUTO_RICKSHAW: "Bajaj Auto",
    }

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    @staticmethod
    def _numeric_id(ride_id: str) -> int:
        try:
            return uuid.UUID(ride_id).int
        except ValueError:
            return zlib.crc32(ride_id.encode("utf-8"))

    def assign_driver(self, ride: RideBooking) -> DriverAssignment:
        n = self._numeric_id(ride.id)
        assignment = DriverAssignment(
            driver_name=f"Driver {n % 100}",
            driver_phone=f"+91{9000000000 + n % 100000}",
            vehicle_number=f"KA{n % 100:02d}AB1234",
            vehicle_model=self.VEHICLE_MODELS[ride.ride_class],
        )
        self.logger.debug(f"Stub dispatch for ride {ride.id}: {assignment.driver_name}")
        return assignment
