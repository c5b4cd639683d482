"""
Security Policy
===============

The policy interface the gate consults, and the default
store-backed implementation.

Policy decisions:
- Account lockout: 5 failed attempts within 15 minutes locks the
  identity label for 15 minutes
- Origin allow-list: off unless enabled; loopback and private
  ranges always pass
- Second factor: RFC 6238 TOTP, +/- 1 time step

Security Notes:
- log_security_event never raises; a failed write is logged
- High/critical events are dispatched to alert handlers
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Any, Callable, Dict, List, Optional

from admingate.core.auth.totp import TotpVerifier
from admingate.core.config import ChallengeConfig, PolicyConfig
from admingate.db.store import SecurityStore, StoreError
from admingate.security.audit import (
    SecurityEvent,
    SecurityEventType,
    SecuritySeverity,
    TamperAwareAuditLog,
)


class PolicyError(Exception):
    """Raised when a policy check cannot be answered (store unreachable)."""
    pass


@dataclass(frozen=True)
class OriginCheck:
    """Result of an origin allow-list check."""
    allowed: bool
    reason: Optional[str] = None


AlertHandler = Callable[[SecurityEvent], None]


class SecurityPolicy(ABC):
    """
    Decisions the gate delegates.

    Implementations raise PolicyError when a check cannot be answered.
    log_security_event must never raise.
    """

    @abstractmethod
    def is_account_locked(self, label: str) -> bool:
        ...

    @abstractmethod
    def is_origin_allowed(self, origin: str) -> OriginCheck:
        ...

    @abstractmethod
    def track_login_attempt(self, label: str, origin: str, success: bool) -> bool:
        """Record an attempt. Returns False if this attempt caused a lockout."""
        ...

    @abstractmethod
    def log_security_event(
        self,
        actor_id: Optional[str],
        actor_label: Optional[str],
        event_type: SecurityEventType | str,
        severity: SecuritySeverity,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...

    @abstractmethod
    def verify_second_factor(self, secret: str, code: str) -> bool:
        ...


_ALWAYS_ALLOWED_ORIGINS = frozenset({"127.0.0.1", "::1"})
_ALWAYS_ALLOWED_PREFIXES = ("192.168.", "10.")


class StoreSecurityPolicy(SecurityPolicy):
    """
    Default policy over the security store.

    Usage:
        policy = StoreSecurityPolicy(store, config.policy)
        policy.add_alert_handler(page_on_call)

        if policy.is_account_locked(email):
            ...
    """

    __slots__ = ("_store", "_config", "_verifier", "_audit_log", "_alert_handlers", "_log")

    def __init__(
        self,
        store: SecurityStore,
        config: Optional[PolicyConfig] = None,
        challenge: Optional[ChallengeConfig] = None,
        audit_log: Optional[TamperAwareAuditLog] = None,
        verifier: Optional[TotpVerifier] = None,
    ) -> None:
        challenge = challenge or ChallengeConfig()
        self._store = store
        self._config = config or PolicyConfig()
        self._verifier = verifier or TotpVerifier(
            digits=challenge.code_digits,
            time_step=challenge.time_step_seconds,
            window=challenge.valid_window,
        )
        self._audit_log = audit_log
        self._alert_handlers: List[AlertHandler] = []
        self._log = logging.getLogger("admingate.policy")

    def add_alert_handler(self, handler: AlertHandler) -> None:
        """Register a handler for high/critical events."""
        self._alert_handlers.append(handler)

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    def track_login_attempt(self, label: str, origin: str, success: bool) -> bool:
        now = datetime.now(timezone.utc)
        try:
            self._store.insert_login_attempt(label, origin, success, now)
            if success:
                return True

            window_start = now - timedelta(minutes=self._config.lockout_minutes)
            failures = self._store.count_failed_attempts(label, window_start)
            if failures < self._config.max_failed_attempts:
                return True

            self._store.insert_lockout(
                label, now, self._config.lockout_minutes, "Too many failed attempts"
            )
        except StoreError as e:
            self._log.error("Error tracking login attempt: %s", e)
            return True

        self._log.warning("Account %s locked after %d failed attempts", label, failures)
        self.log_security_event(
            "system",
            label,
            SecurityEventType.ACCOUNT_LOCKOUT,
            SecuritySeverity.HIGH,
            {"ip_address": origin, "attempts": failures,
             "lock_duration_minutes": self._config.lockout_minutes},
        )
        return False

    def is_account_locked(self, label: str) -> bool:
        try:
            lockout = self._store.latest_lockout(label)
        except StoreError as e:
            raise PolicyError(f"Account lock check failed: {e}") from e

        if not lockout:
            return False

        locked_at = datetime.fromisoformat(lockout["locked_at"])
        unlock_at = locked_at + timedelta(minutes=int(lockout["lock_minutes"]))
        return unlock_at > datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # Origin
    # ------------------------------------------------------------------

    def is_origin_allowed(self, origin: str) -> OriginCheck:
        if not self._config.enable_ip_allowlist:
            return OriginCheck(allowed=True)

        if origin in _ALWAYS_ALLOWED_ORIGINS or origin.startswith(_ALWAYS_ALLOWED_PREFIXES):
            return OriginCheck(allowed=True)

        if origin in self._config.allowed_ips:
            return OriginCheck(allowed=True)

        self.log_security_event(
            "system",
            "unknown",
            SecurityEventType.IP_UNAUTHORIZED,
            SecuritySeverity.HIGH,
            {"ip": origin, "whitelist": list(self._config.allowed_ips)},
        )
        return OriginCheck(allowed=False, reason="IP not in whitelist")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def log_security_event(
        self,
        actor_id: Optional[str],
        actor_label: Optional[str],
        event_type: SecurityEventType | str,
        severity: SecuritySeverity,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        name = event_type.value if isinstance(event_type, SecurityEventType) else event_type
        event = SecurityEvent(
            actor_id=actor_id,
            actor_label=actor_label,
            event_type=name,
            severity=severity,
            context=dict(context or {}),
        )

        try:
            self._store.insert_security_event(
                event.event_id,
                event.actor_id,
                event.actor_label,
                event.event_type,
                event.severity.value,
                event.context,
                event.timestamp,
            )
        except StoreError as e:
            self._log.warning("Error logging security event %s (non-critical): %s", name, e)

        if self._audit_log is not None:
            try:
                self._audit_log.append(event)
            except OSError as e:
                self._log.warning("Error appending to audit file: %s", e)

        if severity.is_alert:
            self._dispatch_alert(event)

    def _dispatch_alert(self, event: SecurityEvent) -> None:
        self._log.warning(
            f"SECURITY ALERT [{event.severity.value}] {event.event_type} "
            f"(actor={event.actor_label})"
        )
        for handler in self._alert_handlers:
            try:
                handler(event)
            except Exception as e:
                self._log.error(f"Alert handler error: {e}")

    # ------------------------------------------------------------------
    # Second factor
    # ------------------------------------------------------------------

    def verify_second_factor(self, secret: str, code: str) -> bool:
        return self._verifier.verify(secret, code)
