"""
Tamper-Aware Security Event Log
===============================

Security event types and an append-only, hash-chained event file.

Every entry carries the SHA-256 of its own content and the hash of
the entry before it. Editing, deleting or reordering any line breaks
the chain and is reported by verify_integrity().
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Final, List, Optional


GENESIS_HASH: Final[str] = "genesis"


class SecuritySeverity(Enum):
    """Security event severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def is_alert(self) -> bool:
        """High and critical events are dispatched to alert handlers."""
        return self in (SecuritySeverity.HIGH, SecuritySeverity.CRITICAL)


class SecurityEventType(Enum):
    """Types of security events written by the gate."""
    # Gate
    AUTH_FAILED = "auth_failed"
    IP_BLOCKED = "ip_blocked"
    ADMIN_ACCESS_GRANTED = "admin_access_granted"
    SUSPICIOUS_REQUEST = "suspicious_request"

    # Policy
    ACCOUNT_LOCKOUT = "account_lockout"
    IP_UNAUTHORIZED = "ip_unauthorized"

    # Two-factor
    TWO_FACTOR_VERIFICATION_SUCCESS = "2fa_verification_success"
    BACKUP_CODE_USED = "backup_code_used"
    TWO_FACTOR_ENABLED = "2fa_enabled"
    TWO_FACTOR_DISABLED = "2fa_disabled"


@dataclass
class SecurityEvent:
    """An append-only security event."""
    actor_id: Optional[str]
    actor_label: Optional[str]
    event_type: str
    severity: SecuritySeverity
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    # Chain fields
    previous_hash: str = field(default="")
    event_hash: str = field(default="")

    def _hashed_fields(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "actor_id": self.actor_id,
            "actor_label": self.actor_label,
            "event_type": self.event_type,
            "severity": self.severity.value,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "previous_hash": self.previous_hash,
        }

    def compute_hash(self, previous_hash: str) -> str:
        """Compute event hash for chain integrity."""
        self.previous_hash = previous_hash
        self.event_hash = _digest(self._hashed_fields())
        return self.event_hash

    def to_dict(self) -> Dict[str, Any]:
        data = self._hashed_fields()
        data["event_hash"] = self.event_hash
        return data


def _digest(data: Dict[str, Any]) -> str:
    return hashlib.sha256(
        json.dumps(data, sort_keys=True, default=str).encode()
    ).hexdigest()


class TamperAwareAuditLog:
    """
    Append-only security event file with tamper detection.

    Features:
    - Chained hashes for integrity
    - Append-only (no deletion)
    - JSON Lines format
    """

    def __init__(self, log_path: Path | str) -> None:
        self._log_path = Path(log_path)
        self._lock = threading.Lock()
        self._last_hash = GENESIS_HASH
        self._event_count = 0
        self._log = logging.getLogger("admingate.audit")

        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._load_chain()

    @property
    def path(self) -> Path:
        return self._log_path

    @property
    def event_count(self) -> int:
        return self._event_count

    def _load_chain(self) -> None:
        """Resume the chain from the last entry on disk."""
        if not self._log_path.exists():
            return

        with open(self._log_path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    self._log.warning("Corrupt line in %s; chain will fail verification", self._log_path)
                    continue
                self._last_hash = entry.get("event_hash", self._last_hash)
                self._event_count += 1

    def append(self, event: SecurityEvent) -> str:
        """
        Append an event to the chain.

        Returns:
            The event's hash
        """
        with self._lock:
            event.compute_hash(self._last_hash)

            with open(self._log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(event.to_dict(), default=str) + "\n")
                f.flush()
                os.fsync(f.fileno())

            self._last_hash = event.event_hash
            self._event_count += 1

        return event.event_hash

    def verify_integrity(self) -> tuple[bool, int]:
        """
        Verify log chain integrity.

        Returns:
            Tuple of (is_valid, number of entries verified)
        """
        if not self._log_path.exists():
            return True, 0

        previous_hash = GENESIS_HASH
        count = 0

        with open(self._log_path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    return False, count

                stored_hash = entry.pop("event_hash", "")
                if entry.get("previous_hash") != previous_hash:
                    return False, count
                if _digest(entry) != stored_hash:
                    return False, count

                previous_hash = stored_hash
                count += 1

        return True, count

    def get_events(
        self,
        event_type: Optional[str] = None,
        severity: Optional[SecuritySeverity] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Get filtered events (read-only)."""
        events: List[Dict[str, Any]] = []
        if not self._log_path.exists():
            return events

        with open(self._log_path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue

                if event_type and entry["event_type"] != event_type:
                    continue
                if severity and entry["severity"] != severity.value:
                    continue

                events.append(entry)
                if len(events) >= limit:
                    break

        return events
