# File: parkandride/main.py
"""
Main application entry point for the Park-and-Ride Booking Engine

Commands:
    quote-parking  Price a parking window for a given hourly rate
    quote-ride     Estimate a ride fare between two coordinates
    demo           Run a booking and a ride end to end on in-memory storage
"""

from typing import Optional, Sequence
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
import argparse
import json
import logging
import sys

from .config import Settings, get_settings, setup_logging
from .domain.models import ParkingLot, GeoPoint, TimeWindow, BookingClass, RideClass
from .domain.strategies import DynamicPricingStrategy
from .application.dtos import ParkingBookingRequestDTO, RideBookingRequestDTO
from .infrastructure.factories import ServiceFactory, ParkingLotFactory


def parse_point(value: str) -> GeoPoint:
    """Parse "LAT,LON" into a GeoPoint"""
    try:
        latitude, longitude = (float(part) for part in value.split(","))
        return GeoPoint(latitude, longitude)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected LAT,LON within range, got {value!r}") from None


def parse_decimal(value: str) -> Decimal:
    try:
        amount = Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"Not a number: {value!r}") from None
    if amount < 0:
        raise argparse.ArgumentTypeError("Rate cannot be negative")
    return amount


def parse_datetime(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Not an ISO timestamp: {value!r}") from None


class ParkAndRideApplication:
    """Main application controller that sets up all components"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.logger = logging.getLogger(self.__class__.__name__)
        self.pricing = DynamicPricingStrategy(self.settings.pricing_policy())

    def quote_parking(
        self,
        rate: Decimal,
        start: datetime,
        end: datetime,
        booking_class: BookingClass = BookingClass.HOURLY
    ) -> Decimal:
        lot = ParkingLot(name="Quote", location=GeoPoint(0.0, 0.0), total_units=1, base_hourly_rate=rate)
        return self.pricing.calculate_parking_price(lot, TimeWindow(start, end), booking_class)

    def quote_ride(self, ride_class: RideClass, pickup: GeoPoint, dropoff: GeoPoint, when: datetime) -> Decimal:
        return self.pricing.calculate_ride_fare(pickup, dropoff, ride_class, when)

    def run_demo(self) -> dict:
        """Seed an in-memory lot, then book, start and end parking and book a ride"""
        services = ServiceFactory.create_in_memory(self.settings)
        parking, rides = services.parking, services.rides

        user = parking.register_user("demo-commuter").data
        lot, spots = ParkingLotFactory.create(
            name="Central Metro Park+Ride",
            latitude=12.9716,
            longitude=77.5946,
            total_units=3,
            base_hourly_rate=Decimal("50"),
            metro_station_name="Central",
            distance_from_metro=150.0,
        )
        parking.add_parking_lot(lot, spots)

        start = datetime.now().replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
        booking = parking.create_booking(
            ParkingBookingRequestDTO(lot_id=lot.id, start_time=start, end_time=start + timedelta(hours=2)),
            user
        )
        if not booking.success:
            return {"booking": booking.to_dict()}

        started = parking.start_parking(booking.data.id, user)
        ride = rides.create_ride_booking(
            RideBookingRequestDTO(
                pickup_location="Central Metro Park+Ride",
                dropoff_location="Tech Park Gate 2",
                pickup_latitude=12.9716,
                pickup_longitude=77.5946,
                dropoff_latitude=12.9352,
                dropoff_longitude=77.6245,
                requested_time=datetime.now(),
                is_shared=True,
                max_passengers=3,
                parking_booking_id=booking.data.id,
            ),
            user
        )
        ended = parking.end_parking(booking.data.id, user)

        return {
            "booking": booking.to_dict(),
            "started": started.to_dict(),
            "ride": ride.to_dict(),
            "ended": ended.to_dict(),
            "available_lots": parking.list_available_lots().to_dict(),
        }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="parkandride", description="Park-and-ride booking engine")
    commands = parser.add_subparsers(dest="command", required=True)

    quote_parking = commands.add_parser("quote-parking", help="Price a parking window")
    quote_parking.add_argument("--rate", type=parse_decimal, required=True, help="Hourly base rate")
    quote_parking.add_argument("--start", type=parse_datetime, required=True)
    quote_parking.add_argument("--end", type=parse_datetime, required=True)
    quote_parking.add_argument(
        "--booking-class",
        choices=[c.value for c in BookingClass],
        default=BookingClass.HOURLY.value
    )

    quote_ride = commands.add_parser("quote-ride", help="Estimate a ride fare")
    quote_ride.add_argument("--ride-class", choices=[c.value for c in RideClass], default=RideClass.CAB.value)
    quote_ride.add_argument("--pickup", type=parse_point, required=True, help="LAT,LON")
    quote_ride.add_argument("--dropoff", type=parse_point, required=True, help="LAT,LON")
    quote_ride.add_argument("--time", type=parse_datetime, required=True)

    commands.add_parser("demo", help="Run an end-to-end demo on in-memory storage")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logger = setup_logging(settings)

    app = ParkAndRideApplication(settings)
    if args.command == "quote-parking":
        if args.end <= args.start:
            print("error: --end must be after --start", file=sys.stderr)
            return 2
        amount = app.quote_parking(args.rate, args.start, args.end, BookingClass(args.booking_class))
        print(amount)
    elif args.command == "quote-ride":
        print(app.quote_ride(RideClass(args.ride_class), args.pickup, args.dropoff, args.time))
    elif args.command == "demo":
        logger.info("Running demo")
        print(json.dumps(app.run_demo(), indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
