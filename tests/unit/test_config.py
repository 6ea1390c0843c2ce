# File: tests/unit/test_config.py
"""
Unit tests for Settings and logging setup
"""

import logging
import os
import tempfile
import unittest
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from pydantic import ValidationError

from parkandride.config import Settings, setup_logging


class TestSettings(unittest.TestCase):

    def settings(self, **overrides) -> Settings:
        return Settings(_env_file=None, **overrides)

    def test_defaults(self):
        settings = self.settings()
        self.assertEqual(settings.base_rate, 50.0)
        self.assertEqual(settings.peak_hour_set, frozenset({7, 8, 9, 10, 17, 18, 19, 20}))
        self.assertEqual(settings.no_show_grace, timedelta(minutes=15))
        self.assertEqual(settings.pooling_radius_meters, 1000.0)
        self.assertIsNone(settings.redis_url)

    def test_environment_overrides(self):
        env = {
            "PARKANDRIDE_PEAK_MULTIPLIER": "1.75",
            "PARKANDRIDE_PEAK_HOURS": "6, 7,8",
            "PARKANDRIDE_LOG_LEVEL": "debug",
        }
        with patch.dict(os.environ, env):
            settings = self.settings()

        self.assertEqual(settings.peak_multiplier, 1.75)
        self.assertEqual(settings.peak_hour_set, frozenset({6, 7, 8}))
        self.assertEqual(settings.log_level, "DEBUG")

    def test_invalid_values(self):
        for overrides in ({"peak_hours": "7,25"}, {"peak_hours": "seven"}, {"log_level": "LOUD"},
                          {"surge_start_hour": 19, "surge_end_hour": 8}, {"base_rate": -1}):
            with self.subTest(overrides=overrides):
                with self.assertRaises(ValidationError):
                    self.settings(**overrides)

    def test_pricing_policy(self):
        policy = self.settings(monthly_discount=0.75, peak_hours="12").pricing_policy()
        self.assertEqual(policy.monthly_discount, Decimal("0.75"))
        self.assertEqual(policy.peak_hours, frozenset({12}))
        self.assertEqual(policy.surge_start_hour, 8)


class TestSetupLogging(unittest.TestCase):

    def test_creates_log_directory_and_handlers(self):
        with tempfile.TemporaryDirectory() as tmp:
            log_dir = os.path.join(tmp, "logs")
            with patch("parkandride.config.logging.basicConfig") as basic_config:
                logger = setup_logging(Settings(_env_file=None, log_dir=log_dir, log_level="WARNING"))

            self.assertTrue(os.path.isdir(log_dir))
            self.assertEqual(logger.name, "parkandride")

            kwargs = basic_config.call_args.kwargs
            self.assertEqual(kwargs["level"], logging.WARNING)
            handlers = kwargs["handlers"]
            self.assertIsInstance(handlers[0], logging.FileHandler)
            for handler in handlers:
                handler.close()


if __name__ == '__main__':
    unittest.main()
