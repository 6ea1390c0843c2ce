# File: tests/unit/test_credentials.py
"""
Unit tests for AccessCredentialIssuer
"""

import unittest
from unittest.mock import Mock

from parkandride.domain.credentials import AccessCredentialIssuer
from parkandride.domain.exceptions import CredentialIssueError


class TestAccessCredentialIssuer(unittest.TestCase):

    def setUp(self):
        self.issuer = AccessCredentialIssuer()

    def test_pin_is_four_digits(self):
        for _ in range(50):
            pin = self.issuer.issue_pin()
            self.assertEqual(len(pin), 4)
            self.assertTrue(pin.isdigit())

    def test_pin_is_zero_padded(self):
        random_source = Mock()
        random_source.randrange.return_value = 7
        issuer = AccessCredentialIssuer(random_source)

        self.assertEqual(issuer.issue_pin(), "0007")
        random_source.randrange.assert_called_once_with(10000)

    def test_qr_payload_format(self):
        payload = self.issuer.issue_qr_payload("b-123", "0420")
        self.assertEqual(payload, "BOOKING:b-123:PIN:0420")

    def test_parse_issued_payload(self):
        payload = self.issuer.issue_qr_payload("b-123", "9876")
        self.assertEqual(AccessCredentialIssuer.parse_qr_payload(payload), ("b-123", "9876"))

    def test_parse_rejects_malformed_payloads(self):
        for payload in ("", "garbage", "BOOKING:b-1:PIN:12", "BOOKING::PIN:1234",
                        "TICKET:b-1:PIN:1234", "BOOKING:b-1:PIN:12345", "BOOKING:b-1:PIN:abcd"):
            with self.subTest(payload=payload):
                self.assertIsNone(AccessCredentialIssuer.parse_qr_payload(payload))

    def test_unencodable_booking_id(self):
        with self.assertRaises(CredentialIssueError):
            self.issuer.issue_qr_payload("", "1234")
        with self.assertRaises(CredentialIssueError):
            self.issuer.issue_qr_payload("a:b", "1234")

    def test_invalid_pin(self):
        with self.assertRaises(CredentialIssueError):
            self.issuer.issue_qr_payload("b-1", "12")
        with self.assertRaises(CredentialIssueError):
            self.issuer.issue_qr_payload("b-1", "12a4")


if __name__ == '__main__':
    unittest.main()
