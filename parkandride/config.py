# File: parkandride/config.py
"""
Configuration and logging setup for the Park-and-Ride engine

Settings are read from environment variables prefixed with PARKANDRIDE_
(and an optional .env file), e.g. PARKANDRIDE_PEAK_MULTIPLIER=1.75.
"""

from functools import lru_cache
from typing import Optional, FrozenSet
from decimal import Decimal
from datetime import timedelta
import logging
import os
import sys

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .domain.strategies import PricingPolicy


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PARKANDRIDE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Pricing
    base_rate: float = Field(50.0, ge=0)
    peak_multiplier: float = Field(1.5, ge=0)
    surge_multiplier: float = Field(2.0, ge=0)
    daily_discount: float = Field(0.9, ge=0)
    monthly_discount: float = Field(0.8, ge=0)
    # comma separated hours of day
    peak_hours: str = "7,8,9,10,17,18,19,20"
    surge_start_hour: int = Field(8, ge=0, le=23)
    surge_end_hour: int = Field(18, ge=0, le=23)
    default_ride_distance_km: float = Field(5.0, ge=0)

    # Pooling / lifecycle
    pooling_radius_meters: float = Field(1000.0, ge=0)
    no_show_grace_minutes: int = Field(15, ge=0)

    # Caching
    lot_cache_ttl_seconds: int = Field(300, ge=1)
    pricing_cache_ttl_seconds: int = Field(300, ge=1)

    # Storage
    database_url: str = "sqlite:///parkandride.db"
    redis_url: Optional[str] = None

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"

    @field_validator("peak_hours")
    @classmethod
    def validate_peak_hours(cls, value: str) -> str:
        hours = [part.strip() for part in value.split(",") if part.strip()]
        for hour in hours:
            if not hour.isdigit() or not 0 <= int(hour) <= 23:
                raise ValueError(f"Invalid peak hour: {hour!r}")
        return ",".join(hours)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"):
            raise ValueError(f"Unknown log level: {value}")
        return level

    @model_validator(mode="after")
    def validate_surge_band(self) -> "Settings":
        if self.surge_start_hour > self.surge_end_hour:
            raise ValueError("surge_start_hour must not be after surge_end_hour")
        return self

    @property
    def peak_hour_set(self) -> FrozenSet[int]:
        return frozenset(int(hour) for hour in self.peak_hours.split(",") if hour)

    @property
    def no_show_grace(self) -> timedelta:
        return timedelta(minutes=self.no_show_grace_minutes)

    def pricing_policy(self) -> PricingPolicy:
        return PricingPolicy(
            base_rate=Decimal(str(self.base_rate)),
            peak_multiplier=Decimal(str(self.peak_multiplier)),
            surge_multiplier=Decimal(str(self.surge_multiplier)),
            daily_discount=Decimal(str(self.daily_discount)),
            monthly_discount=Decimal(str(self.monthly_discount)),
            peak_hours=self.peak_hour_set,
            surge_start_hour=self.surge_start_hour,
            surge_end_hour=self.surge_end_hour,
            default_ride_distance_km=self.default_ride_distance_km,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()


def setup_logging(settings: Optional[Settings] = None) -> logging.Logger:
    """Setup application logging configuration"""
    settings = settings or get_settings()
    log_dir = settings.log_dir
    if not os.path.exists(log_dir):
        os.makedirs(log_dir)

    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(os.path.join(log_dir, 'parkandride.log')),
            logging.StreamHandler(sys.stdout)
        ]
    )
    return logging.getLogger("parkandride")
