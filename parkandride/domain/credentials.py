# File: parkandride/domain/credentials.py
"""
Access Credential Issuer

Produces the PIN and the QR payload handed out for a confirmed parking
booking. Rendering the payload to an image is left to the caller.

Payload format: "BOOKING:<booking_id>:PIN:<pin>"
"""

from typing import Optional, Tuple
import logging
import re
import secrets

from .exceptions import CredentialIssueError


QR_PAYLOAD_PREFIX = "BOOKING"
QR_PIN_MARKER = "PIN"
PIN_LENGTH = 4

_QR_PATTERN = re.compile(r'^BOOKING:(?P<booking_id>[^:]+):PIN:(?P<pin>\d{4})$')


class AccessCredentialIssuer:
    """
    Issues PINs drawn uniformly from 0000-9999 and QR payloads binding a
    booking id to its PIN. PIN collisions across bookings are allowed.
    """

    def __init__(self, random_source: Optional[secrets.SystemRandom] = None):
        self._random = random_source or secrets.SystemRandom()
        self.logger = logging.getLogger(self.__class__.__name__)

    def issue_pin(self) -> str:
        return f"{self._random.randrange(10 ** PIN_LENGTH):0{PIN_LENGTH}d}"

    def issue_qr_payload(self, booking_id: str, pin: str) -> str:
        if not booking_id or ":" in booking_id:
            raise CredentialIssueError(f"Booking id cannot be encoded: {booking_id!r}")
        if not (len(pin) == PIN_LENGTH and pin.isdigit()):
            raise CredentialIssueError("PIN must be a 4-digit string")

        payload = f"{QR_PAYLOAD_PREFIX}:{booking_id}:{QR_PIN_MARKER}:{pin}"
        self.logger.debug(f"Issued QR payload for booking {booking_id}")
        return payload

    @staticmethod
    def parse_qr_payload(payload: str) -> Optional[Tuple[str, str]]:
        """
        Split a payload into (booking_id, pin)
        Returns None when the payload is not in the issued format.
        """
        if not payload:
            return None
        match = _QR_PATTERN.match(payload.strip())
        if match is None:
            return None
        return match.group("booking_id"), match.group("pin")
