"""
Session Control
================

Admin session lifecycle with a two-tier cache.

The durable store is authoritative; a local mirror of token and
expiry is the fast path. SessionManager is the only writer of session
rows and the only trusted reader of session validity.

Security Features:
- 256-bit tokens from a CSPRNG
- Only token hashes are stored (tokens never hit the store)
- Sliding 2 hour expiry, extended on every successful validation
- Two-factor verification read from the durable copy only
- Background monitor forces logout on revocation/expiry

Availability Notes:
- A store that cannot be reached during *validation* degrades to
  trusting the mirror's expiry (logged, never surfaced)
- Session *creation* never degrades: store failures are errors
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Any, Callable, Final, Optional

from admingate.core.auth.local_mirror import LocalMirror
from admingate.core.config import SessionConfig
from admingate.db.store import (
    SecurityStore,
    SessionRejectedError,
    StoreError,
    TWO_FACTOR_REQUIRED_CODE,
)


SESSION_TOKEN_BYTES: Final[int] = 32  # 256 bits


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Session:
    """
    Durable admin session row.

    The raw token is never part of this object; only its hash.
    """
    id: str
    admin_id: str
    token_hash: str
    created_at: datetime
    expires_at: datetime
    last_activity: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    two_factor_verified: bool = False
    used_backup_code: bool = False
    is_revoked: bool = False

    def __repr__(self) -> str:
        """Safe representation without token material."""
        return (
            f"Session(id={self.id!r}, admin_id={self.admin_id!r}, "
            f"expires_at={self.expires_at.isoformat()}, "
            f"two_factor_verified={self.two_factor_verified})"
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) > self.expires_at

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return not self.is_revoked and not self.is_expired(now)


class SessionValidity(Enum):
    """Outcome of a session validation."""
    VALID = "valid"
    INVALID = "invalid"
    DEGRADED = "degraded"  # store unreachable, mirror trusted

    @property
    def is_usable(self) -> bool:
        return self is not SessionValidity.INVALID


class SessionError(Exception):
    """Base exception for session errors."""
    pass


class SessionCreationError(SessionError):
    """Raised when a session row could not be created."""
    pass


class TwoFactorRequired(SessionError):
    """
    The store refused an unverified session for a 2FA-enabled admin.

    Control-flow signal rather than a failure: the caller proceeds to
    the two-factor challenge without a token.
    """
    pass


class StorageDegraded(SessionError):
    """Durable lookup failed during validation; only ever logged."""
    pass


def hash_token(token: str) -> str:
    """SHA-256 of a session token, the durable lookup key."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class SessionManager:
    """
    Admin session manager over a security store and a local mirror.

    Usage:
        manager = SessionManager(store, LocalMirror(storage))

        token = manager.create_session(admin.id, admin.email, origin_ip)

        if not manager.is_session_valid():
            ...  # back to the gate

        manager.start_session_monitoring()
        manager.logout()
    """

    __slots__ = (
        "_store", "_mirror", "_config", "_reload_callback", "_clock",
        "_monitor_thread", "_monitor_stop", "_monitor_lock", "_log",
    )

    def __init__(
        self,
        store: SecurityStore,
        mirror: Optional[LocalMirror] = None,
        config: Optional[SessionConfig] = None,
        reload_callback: Optional[Callable[[], Any]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """
        Args:
            store: Durable security store
            mirror: Local token/expiry mirror (in-memory if omitted)
            config: Session settings
            reload_callback: Invoked after the monitor forces a logout,
                re-entering the gate from its first step
            clock: Source of "now" (timezone-aware)
        """
        self._store = store
        self._mirror = mirror if mirror is not None else LocalMirror()
        self._config = config or SessionConfig()
        self._reload_callback = reload_callback
        self._clock = clock
        self._monitor_thread: Optional[threading.Thread] = None
        self._monitor_stop = threading.Event()
        self._monitor_lock = threading.Lock()
        self._log = logging.getLogger("admingate.session")

    @property
    def mirror(self) -> LocalMirror:
        return self._mirror

    @property
    def current_token(self) -> Optional[str]:
        return self._mirror.token

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self._config.ttl_seconds)

    def set_reload_callback(self, callback: Optional[Callable[[], Any]]) -> None:
        self._reload_callback = callback

    @staticmethod
    def _generate_token() -> str:
        """Generate a cryptographically secure session token."""
        return secrets.token_hex(SESSION_TOKEN_BYTES)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_session(
        self,
        admin_id: str,
        label: str,
        origin_ip: Optional[str],
        two_factor_verified: bool = False,
        user_agent: Optional[str] = None,
    ) -> str:
        """
        Create a session and mirror its token locally.

        Args:
            admin_id: Admin record id
            label: Human label for logs (email)
            origin_ip: Resolved caller origin
            two_factor_verified: Create the session already verified

        Returns:
            Session token (the only copy; the store keeps its hash)

        Raises:
            TwoFactorRequired: The store refused an unverified session
            SessionCreationError: Any other store failure
        """
        token = self._generate_token()
        now = self._clock()
        expires_at = now + self.ttl

        try:
            self._store.insert_session(
                token_hash=hash_token(token),
                admin_id=admin_id,
                ip_address=origin_ip,
                user_agent=user_agent,
                created_at=now,
                expires_at=expires_at,
                two_factor_verified=two_factor_verified,
            )
        except SessionRejectedError as e:
            if e.code == TWO_FACTOR_REQUIRED_CODE:
                self._log.info("Session for %s deferred until two-factor verification", label)
                raise TwoFactorRequired("Two-factor authentication required") from e
            self._log.error("Session creation rejected for %s: %s", label, e)
            raise SessionCreationError(str(e)) from e
        except StoreError as e:
            self._log.error("Session creation failed for %s: %s", label, e)
            raise SessionCreationError("Failed to create admin session") from e

        self._mirror.store(token, expires_at)
        self._log.info(
            "Admin session created for %s (verified=%s)", label, two_factor_verified
        )
        return token

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_session(self) -> SessionValidity:
        """
        Validate the mirrored session.

        Missing or expired mirror is INVALID without a store call.
        A durable lookup that finds no live row is INVALID. A lookup
        that fails is DEGRADED: the mirror's expiry is trusted.
        """
        now = self._clock()
        if not self._mirror.is_fresh(now):
            return SessionValidity.INVALID

        token = self._mirror.token
        token_hash = hash_token(token)

        try:
            row = self._store.get_session(token_hash)
        except StoreError as e:
            self._log.warning("%s", StorageDegraded(
                f"Session lookup failed, trusting local mirror until "
                f"{self._mirror.expires_at.isoformat()}: {e}"
            ))
            return SessionValidity.DEGRADED

        if row is None:
            self._log.info("Session not found or revoked")
            return SessionValidity.INVALID

        new_expiry = now + self.ttl
        try:
            self._store.extend_session(token_hash, new_expiry, now)
            self._mirror.update_expiry(new_expiry)
        except StoreError as e:
            self._log.warning("Failed to extend session activity: %s", e)

        return SessionValidity.VALID

    def is_session_valid(self) -> bool:
        """True for VALID and DEGRADED sessions."""
        return self.validate_session().is_usable

    def get_session(self, token: str) -> Optional[Session]:
        """
        Durable session lookup.

        Raises:
            StoreError: If the store is unreachable
        """
        row = self._store.get_session(hash_token(token), include_revoked=True)
        return self._row_to_session(row) if row else None

    # ------------------------------------------------------------------
    # Two-factor flag
    # ------------------------------------------------------------------

    def mark_two_factor_verified(self, token: str, used_backup_code: bool = False) -> bool:
        """
        Set two_factor_verified on the durable session row.

        Returns:
            True if a live row was updated
        """
        try:
            updated = self._store.mark_two_factor_verified(
                hash_token(token), used_backup_code, self._clock()
            )
        except StoreError as e:
            self._log.error("Failed to mark session two-factor verified: %s", e)
            raise SessionError("Failed to update admin session") from e
        return updated > 0

    def is_two_factor_verified(self, token: Optional[str]) -> bool:
        """Read the verification flag from the durable copy only."""
        if not token:
            return False
        try:
            row = self._store.get_session(hash_token(token))
        except StoreError as e:
            self._log.warning("Two-factor status lookup failed, treating as unverified: %s", e)
            return False
        return bool(row and row["two_factor_verified"])

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def start_session_monitoring(self) -> None:
        """Start the periodic validity check. Idempotent."""
        with self._monitor_lock:
            if self._monitor_thread is not None and self._monitor_thread.is_alive():
                return

            self._monitor_stop.clear()
            self._monitor_thread = threading.Thread(
                target=self._monitor_loop,
                args=(self._monitor_stop,),
                daemon=True,
                name="AdminSession-Monitor",
            )
            self._monitor_thread.start()
        self._log.debug("Session monitoring started")

    def stop_session_monitoring(self) -> None:
        """Stop the periodic validity check. Idempotent."""
        with self._monitor_lock:
            thread = self._monitor_thread
            self._monitor_thread = None
            self._monitor_stop.set()
            # A fresh event so a later start never sees the old stop flag
            self._monitor_stop = threading.Event()

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)

    @property
    def is_monitoring(self) -> bool:
        thread = self._monitor_thread
        return thread is not None and thread.is_alive()

    def _monitor_loop(self, stop: threading.Event) -> None:
        interval = self._config.monitor_interval_seconds
        while not stop.wait(interval):
            try:
                if not self.check_once():
                    break
            except Exception as e:
                self._log.error(f"Session monitor error: {e}")

    def check_once(self) -> bool:
        """
        One monitor tick.

        Returns:
            True if the session is still usable; otherwise the session
            has been logged out and the reload callback invoked
        """
        if self.is_session_valid():
            return True

        self._log.warning("Session expired or invalid, logging out")
        self.logout()
        if self._reload_callback is not None:
            self._reload_callback()
        return False

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def logout(self) -> None:
        """Revoke the durable session (best effort), clear the mirror, stop monitoring."""
        token = self._mirror.token
        if token:
            try:
                self._store.revoke_session(hash_token(token))
            except StoreError as e:
                self._log.warning("Failed to revoke session during logout: %s", e)

        self._mirror.clear()
        self.stop_session_monitoring()

    def revoke_all_sessions(self, admin_id: str) -> int:
        """Revoke every live session of an admin (logout everywhere)."""
        count = self._store.revoke_admin_sessions(admin_id)
        self._log.info("Revoked %d session(s) for admin %s", count, admin_id)
        return count

    def cleanup_expired_sessions(self) -> int:
        """
        Revoke expired sessions and delete rows past retention.

        Returns:
            Number of rows deleted
        """
        now = self._clock()
        cutoff = now - timedelta(days=self._config.retention_days)
        return self._store.cleanup_sessions(now, cutoff)

    def _row_to_session(self, row: dict[str, Any]) -> Session:
        """Convert a store row to a Session object."""
        return Session(
            id=row["id"],
            admin_id=row["admin_id"],
            token_hash=row["token_hash"],
            created_at=datetime.fromisoformat(row["created_at"]),
            expires_at=datetime.fromisoformat(row["expires_at"]),
            last_activity=datetime.fromisoformat(row["last_activity"]),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            two_factor_verified=bool(row["two_factor_verified"]),
            used_backup_code=bool(row["used_backup_code"]),
            is_revoked=bool(row["is_revoked"]),
        )
