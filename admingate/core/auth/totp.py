"""
Time-Based One-Time Codes
=========================

RFC 6238 TOTP verification and generation on top of the
`cryptography` TOTP primitive.

Parameters:
- HMAC-SHA1 (authenticator app compatibility)
- 6 digits
- 30 second time step
- +/- 1 step accepted for clock drift

Security Notes:
- Secrets are base32 strings; malformed secrets verify False
- Codes are compared in constant time by the primitive
"""

from __future__ import annotations

import base64
import binascii
import logging
import secrets
import time
from typing import Final, Optional

from cryptography.hazmat.primitives.hashes import SHA1
from cryptography.hazmat.primitives.twofactor import InvalidToken
from cryptography.hazmat.primitives.twofactor.totp import TOTP


TOTP_SECRET_BYTES: Final[int] = 20  # 160 bits, RFC 4226 recommendation
DEFAULT_DIGITS: Final[int] = 6
DEFAULT_TIME_STEP: Final[int] = 30
DEFAULT_WINDOW: Final[int] = 1

_log = logging.getLogger("admingate.totp")


def generate_totp_secret() -> str:
    """Generate a random base32 TOTP secret (no padding)."""
    return base64.b32encode(secrets.token_bytes(TOTP_SECRET_BYTES)).decode("ascii").rstrip("=")


def _decode_secret(secret: str) -> Optional[bytes]:
    cleaned = secret.strip().replace(" ", "").upper().rstrip("=")
    if not cleaned:
        return None
    padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
    try:
        return base64.b32decode(padded)
    except (binascii.Error, ValueError):
        return None


class TotpVerifier:
    """
    TOTP code generator/verifier.

    Usage:
        verifier = TotpVerifier()
        ok = verifier.verify(secret, "123456")
    """

    __slots__ = ("_digits", "_time_step", "_window", "_clock")

    def __init__(
        self,
        digits: int = DEFAULT_DIGITS,
        time_step: int = DEFAULT_TIME_STEP,
        window: int = DEFAULT_WINDOW,
        clock=time.time,
    ) -> None:
        self._digits = digits
        self._time_step = time_step
        self._window = window
        self._clock = clock

    def _totp(self, key: bytes) -> TOTP:
        return TOTP(
            key,
            self._digits,
            SHA1(),
            self._time_step,
            enforce_key_length=False,
        )

    def generate(self, secret: str, at: Optional[float] = None) -> str:
        """Generate the code for the time window containing `at`."""
        key = _decode_secret(secret)
        if key is None:
            raise ValueError("Invalid TOTP secret")
        moment = int(self._clock() if at is None else at)
        return self._totp(key).generate(moment).decode("ascii")

    def verify(self, secret: str, code: str) -> bool:
        """
        Verify a code against the secret within the drift window.

        Returns:
            True if the code matches the current window or an adjacent one
        """
        if not secret or not code:
            return False
        if len(code) != self._digits or not code.isdigit():
            return False

        key = _decode_secret(secret)
        if key is None:
            _log.warning("TOTP secret could not be decoded")
            return False

        totp = self._totp(key)
        now = int(self._clock())
        token = code.encode("ascii")
        for offset in range(-self._window, self._window + 1):
            try:
                totp.verify(token, now + offset * self._time_step)
                return True
            except InvalidToken:
                continue
        return False

    def provisioning_uri(self, secret: str, account_name: str, issuer: str) -> str:
        """Build the otpauth:// URI for authenticator enrollment."""
        key = _decode_secret(secret)
        if key is None:
            raise ValueError("Invalid TOTP secret")
        return self._totp(key).get_provisioning_uri(account_name, issuer)
