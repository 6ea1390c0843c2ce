# File: tests/integration/test_main_app.py
"""
Tests for the command line entry point
"""

import contextlib
import io
import unittest
from datetime import datetime
from decimal import Decimal
from unittest.mock import patch

from parkandride.main import ParkAndRideApplication, main
from parkandride.domain.models import GeoPoint, BookingClass, RideClass

from tests.integration import IntegrationTestConfig


class TestApplication(unittest.TestCase):

    def setUp(self):
        self.app = ParkAndRideApplication(IntegrationTestConfig.settings())

    def test_quote_parking(self):
        amount = self.app.quote_parking(
            Decimal("50"), datetime(2024, 1, 2, 9), datetime(2024, 1, 2, 11), BookingClass.DAILY
        )
        self.assertEqual(amount, Decimal("270.00"))

    def test_quote_ride(self):
        fare = self.app.quote_ride(RideClass.CAB, GeoPoint(0.0, 0.0), GeoPoint(0.0899322, 0.0), datetime(2024, 1, 2, 14))
        self.assertEqual(fare, Decimal("170.00"))

    def test_demo(self):
        summary = self.app.run_demo()
        self.assertTrue(summary["booking"]["success"])
        self.assertEqual(summary["ended"]["data"]["status"], "COMPLETED")
        self.assertTrue(summary["ride"]["success"])
        self.assertIsNotNone(summary["ride"]["data"]["pooling_group_id"])


class TestCommandLine(unittest.TestCase):

    def run_main(self, *argv):
        out, err = io.StringIO(), io.StringIO()
        with patch("parkandride.main.get_settings", return_value=IntegrationTestConfig.settings()), \
                patch("parkandride.main.setup_logging"), \
                contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            code = main(list(argv))
        return code, out.getvalue(), err.getvalue()

    def test_quote_parking(self):
        code, out, _ = self.run_main(
            "quote-parking", "--rate", "50", "--start", "2024-01-02T09:00", "--end", "2024-01-02T11:00"
        )
        self.assertEqual(code, 0)
        self.assertEqual(out.strip(), "300.00")

    def test_quote_ride(self):
        code, out, _ = self.run_main(
            "quote-ride", "--pickup", "0,0", "--dropoff", "0.0899322,0", "--time", "2024-01-02T14:00"
        )
        self.assertEqual(code, 0)
        self.assertEqual(out.strip(), "170.00")

    def test_end_before_start(self):
        code, _, err = self.run_main(
            "quote-parking", "--rate", "50", "--start", "2024-01-02T11:00", "--end", "2024-01-02T09:00"
        )
        self.assertEqual(code, 2)
        self.assertIn("--end", err)

    def test_bad_arguments_exit(self):
        for argv in (
            ("quote-ride", "--pickup", "north", "--dropoff", "0,0", "--time", "2024-01-02T14:00"),
            ("quote-parking", "--rate", "-5", "--start", "2024-01-02T09:00", "--end", "2024-01-02T11:00"),
            ("quote-parking", "--rate", "50", "--start", "tuesday", "--end", "2024-01-02T11:00"),
        ):
            with self.subTest(argv=argv):
                with self.assertRaises(SystemExit):
                    self.run_main(*argv)

    def test_demo(self):
        code, out, _ = self.run_main("demo")
        self.assertEqual(code, 0)
        self.assertIn('"success": true', out)


if __name__ == '__main__':
    unittest.main()
