"""
Two-Factor Challenge
====================

Collects and verifies an admin's second factor, and enrolls admins
into two-factor authentication.

The challenge only reports success or cancellation upward; it never
decides authorization.

Modes:
- code: 6-digit time-windowed code (authenticator app, or a code
  sent by email), with a 30 second countdown that resends on expiry
- backup: 6-digit single-use backup code

Security Notes:
- Failure messages are generic (no oracle on secret or code state)
- Malformed input is rejected before any policy call and not tracked
- Backup codes are single use: the matched hash is removed before the
  session is marked verified
- Cancel fully logs out; no half-authenticated session survives
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Final, List, Optional

from admingate.core.auth.backup_codes import generate_backup_codes
from admingate.core.auth.directory import AdminDirectory
from admingate.core.auth.identity import AdminIdentity, TwoFactorMethod
from admingate.core.auth.session_control import SessionError, SessionManager
from admingate.core.auth.totp import TotpVerifier, generate_totp_secret
from admingate.core.config import ChallengeConfig
from admingate.security.audit import SecurityEventType, SecuritySeverity
from admingate.security.policy import SecurityPolicy


INVALID_CODE_SHAPE: Final[str] = "Please enter a valid 6-digit code"
INVALID_BACKUP_SHAPE: Final[str] = "Please enter a valid 6-digit backup code"
# Same text for rejected time-based and backup codes
CODE_REJECTED: Final[str] = "The verification code is incorrect or expired"
NOT_CONFIGURED: Final[str] = "2FA not configured for this account"
SEND_FAILED: Final[str] = "Failed to send verification code"

# Receives (email, code)
CodeSender = Callable[[str, str], None]


class ChallengeError(Exception):
    """Inline, non-blocking challenge failure with a user-safe message."""
    pass


class ChallengeMode(Enum):
    CODE = "code"
    BACKUP = "backup"


class Countdown:
    """
    Repeating visible countdown.

    Each tick() decrements the remaining seconds; reaching zero
    resets to the full period and fires on_expire. start() drives
    tick() from a daemon thread; tests call tick() directly.
    """

    __slots__ = ("_seconds", "_remaining", "_on_expire", "_tick_interval",
                 "_thread", "_stop", "_lock")

    def __init__(
        self,
        seconds: int,
        on_expire: Callable[[], Any],
        tick_interval: float = 1.0,
    ) -> None:
        if seconds < 1:
            raise ValueError("seconds must be at least 1")
        self._seconds = seconds
        self._remaining = seconds
        self._on_expire = on_expire
        self._tick_interval = tick_interval
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._lock = threading.Lock()

    @property
    def remaining(self) -> int:
        return self._remaining

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def tick(self) -> int:
        with self._lock:
            self._remaining -= 1
            expired = self._remaining <= 0
            if expired:
                self._remaining = self._seconds
            remaining = self._remaining

        if expired:
            self._on_expire()
        return remaining

    def reset(self) -> None:
        with self._lock:
            self._remaining = self._seconds

    def start(self) -> None:
        if self.is_running:
            return
        self.reset()
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            args=(self._stop,),
            daemon=True,
            name="TwoFactor-Countdown",
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self._tick_interval * 2)

    def _run(self, stop: threading.Event) -> None:
        while not stop.wait(self._tick_interval):
            self.tick()


class TwoFactorChallenge:
    """
    Second-factor challenge for one admin.

    Usage:
        challenge = TwoFactorChallenge(admin, policy, sessions, directory,
                                       origin="203.0.113.7",
                                       session_token=partial_token)
        challenge.start()
        try:
            token = challenge.verify_code("123456")
        except ChallengeError as e:
            show_inline(str(e))
    """

    def __init__(
        self,
        admin: AdminIdentity,
        policy: SecurityPolicy,
        sessions: SessionManager,
        directory: AdminDirectory,
        origin: str,
        session_token: Optional[str] = None,
        config: Optional[ChallengeConfig] = None,
        code_sender: Optional[CodeSender] = None,
        on_success: Optional[Callable[[str], Any]] = None,
        on_cancel: Optional[Callable[[], Any]] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        self._config = config or ChallengeConfig()
        self._admin = admin
        self._policy = policy
        self._sessions = sessions
        self._directory = directory
        self._origin = origin
        self._session_token = session_token
        self._code_sender = code_sender
        self._on_success = on_success
        self._on_cancel = on_cancel
        self._user_agent = user_agent
        self._verifier = TotpVerifier(
            digits=self._config.code_digits,
            time_step=self._config.time_step_seconds,
            window=self._config.valid_window,
        )
        self._countdown = Countdown(self._config.countdown_seconds, self._on_countdown_expired)
        self._mode = ChallengeMode.CODE
        self._lock = threading.RLock()
        self._completed = False
        self._cancelled = False
        self.last_error: Optional[str] = None
        self._log = logging.getLogger("admingate.two_factor")

    @property
    def admin(self) -> AdminIdentity:
        return self._admin

    @property
    def method(self) -> TwoFactorMethod:
        return self._admin.two_factor_method

    @property
    def mode(self) -> ChallengeMode:
        return self._mode

    @property
    def countdown(self) -> Countdown:
        return self._countdown

    @property
    def session_token(self) -> Optional[str]:
        return self._session_token

    @property
    def is_complete(self) -> bool:
        return self._completed

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def is_open(self) -> bool:
        return not (self._completed or self._cancelled)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, run_countdown: bool = True, send_code: bool = True) -> None:
        """Open the challenge: send an email code if needed, start the countdown."""
        if send_code and self.method is TwoFactorMethod.EMAIL:
            self._send_code()
        if run_countdown and self._mode is ChallengeMode.CODE:
            self._countdown.start()

    def switch_mode(self, mode: ChallengeMode) -> None:
        self._mode = mode
        self.last_error = None
        if mode is ChallengeMode.CODE:
            self._countdown.start()
        else:
            self._countdown.stop()

    def resend(self) -> None:
        """
        Issue a fresh code: re-send by email, or reset the timer.

        Raises:
            ChallengeError: If the email sender failed
        """
        if not self.is_open:
            return
        self._countdown.reset()
        if self.method is TwoFactorMethod.EMAIL:
            self._send_code()
        self._log.debug("Two-factor code reissued for %s", self._admin.email)

    def _on_countdown_expired(self) -> None:
        try:
            self.resend()
        except ChallengeError:
            pass  # surfaced through last_error

    def _send_code(self) -> None:
        if self._code_sender is None:
            self._log.warning("Email two-factor requested but no code sender is configured")
            self.last_error = SEND_FAILED
            raise ChallengeError(SEND_FAILED)

        secret = self._current_secret()
        code = self._verifier.generate(secret)
        try:
            self._code_sender(self._admin.email, code)
        except Exception as e:
            self._log.error("Failed to send two-factor code to %s: %s", self._admin.email, e)
            self.last_error = SEND_FAILED
            raise ChallengeError(SEND_FAILED) from e

    def close(self) -> None:
        """Stop timers without logging out."""
        self._countdown.stop()

    def cancel(self) -> None:
        """Abandon the challenge and fully log out."""
        with self._lock:
            self._cancelled = True
            self._countdown.stop()
            self._sessions.logout()
        self._log.info("Two-factor challenge cancelled for %s", self._admin.email)
        if self._on_cancel is not None:
            self._on_cancel()

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_code(self, code: str) -> str:
        """
        Verify a time-windowed code.

        Returns:
            The verified session token

        Raises:
            ChallengeError: Malformed, wrong or expired code, or 2FA not configured
        """
        code = (code or "").strip()
        if not self._is_code_shaped(code):
            return self._fail(INVALID_CODE_SHAPE)

        with self._lock:
            self._ensure_open()
            secret = self._current_secret()

            if not self._policy.verify_second_factor(secret, code):
                self._policy.track_login_attempt(self._admin.email, self._origin, False)
                return self._fail(CODE_REJECTED)

            self._policy.track_login_attempt(self._admin.email, self._origin, True)
            token = self._mark_verified(used_backup_code=False)
            self._policy.log_security_event(
                self._admin.id,
                self._admin.email,
                SecurityEventType.TWO_FACTOR_VERIFICATION_SUCCESS,
                SecuritySeverity.LOW,
                {"method": self.method.value, "ip": self._origin},
            )
            return self._succeed(token)

    def verify_backup_code(self, code: str) -> str:
        """
        Verify and consume a single-use backup code.

        Returns:
            The verified session token

        Raises:
            ChallengeError: Malformed, unknown or already-used code
        """
        code = (code or "").strip()
        if not self._is_code_shaped(code):
            return self._fail(INVALID_BACKUP_SHAPE)

        with self._lock:
            self._ensure_open()
            remaining = self._directory.consume_backup_code(self._admin.id, code)
            if remaining is None:
                self._policy.track_login_attempt(self._admin.email, self._origin, False)
                return self._fail(CODE_REJECTED)

            self._policy.track_login_attempt(self._admin.email, self._origin, True)
            token = self._mark_verified(used_backup_code=True)
            self._policy.log_security_event(
                self._admin.id,
                self._admin.email,
                SecurityEventType.BACKUP_CODE_USED,
                SecuritySeverity.MEDIUM,
                {"remaining_codes": remaining, "ip": self._origin},
            )
            return self._succeed(token)

    def _is_code_shaped(self, code: str) -> bool:
        return len(code) == self._config.code_digits and code.isdigit()

    def _ensure_open(self) -> None:
        if not self.is_open:
            raise ChallengeError("This verification request is no longer active")

    def _current_secret(self) -> str:
        admin = self._directory.get_admin(self._admin.id)
        if admin is None or not admin.two_factor_secret:
            self.last_error = NOT_CONFIGURED
            raise ChallengeError(NOT_CONFIGURED)
        return admin.two_factor_secret

    def _mark_verified(self, used_backup_code: bool) -> str:
        """Mark the existing session verified, or create one already verified."""
        token = self._session_token
        try:
            if token and self._sessions.mark_two_factor_verified(token, used_backup_code):
                return token

            token = self._sessions.create_session(
                self._admin.id,
                self._admin.email,
                self._origin,
                two_factor_verified=True,
                user_agent=self._user_agent,
            )
            if used_backup_code:
                self._sessions.mark_two_factor_verified(token, used_backup_code=True)
        except SessionError as e:
            self._log.error("Could not record two-factor verification: %s", e)
            return self._fail("Failed to verify 2FA code")

        self._session_token = token
        return token

    def _fail(self, message: str) -> Any:
        self.last_error = message
        raise ChallengeError(message)

    def _succeed(self, token: str) -> str:
        self._completed = True
        self.last_error = None
        self._countdown.stop()
        self._log.info("Two-factor verified for %s", self._admin.email)
        if self._on_success is not None:
            self._on_success(token)
        return token


@dataclass(frozen=True)
class EnrollmentStart:
    """Material shown once to the admin when enrollment begins."""
    secret: str
    provisioning_uri: str
    method: TwoFactorMethod

    def __repr__(self) -> str:
        return f"EnrollmentStart(method={self.method.value}, secret=[REDACTED])"


class TwoFactorEnrollment:
    """
    Enable and disable two-factor authentication for an admin.

    Usage:
        enrollment = TwoFactorEnrollment(directory, policy)
        start = enrollment.begin(admin, TwoFactorMethod.AUTHENTICATOR)
        # admin scans start.provisioning_uri
        codes = enrollment.confirm(admin.id, start.secret, "123456")
    """

    def __init__(
        self,
        directory: AdminDirectory,
        policy: SecurityPolicy,
        config: Optional[ChallengeConfig] = None,
        code_sender: Optional[CodeSender] = None,
    ) -> None:
        self._directory = directory
        self._policy = policy
        self._config = config or ChallengeConfig()
        self._code_sender = code_sender
        self._verifier = TotpVerifier(
            digits=self._config.code_digits,
            time_step=self._config.time_step_seconds,
            window=self._config.valid_window,
        )
        self._log = logging.getLogger("admingate.two_factor")

    def begin(
        self,
        admin: AdminIdentity,
        method: TwoFactorMethod = TwoFactorMethod.AUTHENTICATOR,
    ) -> EnrollmentStart:
        """Generate a fresh secret; nothing is stored until confirm()."""
        secret = generate_totp_secret()
        uri = self._verifier.provisioning_uri(secret, admin.email, self._config.issuer)

        if method is TwoFactorMethod.EMAIL:
            if self._code_sender is None:
                raise ChallengeError(SEND_FAILED)
            try:
                self._code_sender(admin.email, self._verifier.generate(secret))
            except Exception as e:
                self._log.error("Failed to send enrollment code to %s: %s", admin.email, e)
                raise ChallengeError(SEND_FAILED) from e

        return EnrollmentStart(secret=secret, provisioning_uri=uri, method=method)

    def confirm(
        self,
        admin_id: str,
        secret: str,
        code: str,
        method: TwoFactorMethod = TwoFactorMethod.AUTHENTICATOR,
    ) -> List[str]:
        """
        Verify the first code and enable two-factor authentication.

        Returns:
            Plaintext backup codes (shown once; only hashes are stored)

        Raises:
            ChallengeError: Malformed or wrong code
            LookupError: Unknown admin
        """
        code = (code or "").strip()
        if len(code) != self._config.code_digits or not code.isdigit():
            raise ChallengeError(INVALID_CODE_SHAPE)

        admin = self._directory.get_admin(admin_id)
        if admin is None:
            raise LookupError(f"Admin with ID '{admin_id}' not found")

        if not self._verifier.verify(secret, code):
            raise ChallengeError(CODE_REJECTED)

        backup_codes = generate_backup_codes(self._config.backup_code_count, self._config.code_digits)
        self._directory.set_two_factor(admin_id, True, method, secret, backup_codes)
        self._policy.log_security_event(
            admin.id,
            admin.email,
            SecurityEventType.TWO_FACTOR_ENABLED,
            SecuritySeverity.MEDIUM,
            {"method": method.value, "backup_codes_generated": len(backup_codes)},
        )
        return backup_codes

    def disable(self, admin_id: str) -> None:
        """Clear all two-factor fields."""
        admin = self._directory.get_admin(admin_id)
        if admin is None:
            raise LookupError(f"Admin with ID '{admin_id}' not found")

        self._directory.set_two_factor(admin_id, False, TwoFactorMethod.AUTHENTICATOR, None, ())
        self._policy.log_security_event(
            admin.id,
            admin.email,
            SecurityEventType.TWO_FACTOR_DISABLED,
            SecuritySeverity.HIGH,
            {"previous_method": admin.two_factor_method.value},
        )
