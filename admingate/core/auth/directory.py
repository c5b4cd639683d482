"""
Admin Directory
===============

Lookup and narrow mutation of administrator records.

The gate only reads identities, stamps last login and consumes
backup codes; provisioning exists for seeding and enrollment.

Security Features:
- Inactive admins are invisible to lookups
- Backup codes are single use (matched hash is removed with a
  conditional write, so concurrent submissions cannot both succeed)
- Backup codes stored as Argon2id hashes
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone, timedelta
from typing import Any, Iterable, Optional

from admingate.core.auth.backup_codes import BackupCodeHasher
from admingate.core.auth.identity import (
    AdminIdentity,
    AdminRole,
    Capability,
    TwoFactorMethod,
)
from admingate.db.store import SecurityStore


# Compare-and-swap retries when another request rewrote the code list
BACKUP_CODE_WRITE_ATTEMPTS = 3


class AdminDirectory:
    """
    Administrator directory over the security store.

    Usage:
        directory = AdminDirectory(store)
        admin = directory.find_active_admin(identity.user_id)
        if admin is None:
            ...  # not an admin, or deactivated
    """

    __slots__ = ("_store", "_hasher", "_log")

    def __init__(self, store: SecurityStore, hasher: Optional[BackupCodeHasher] = None) -> None:
        self._store = store
        self._hasher = hasher or BackupCodeHasher()
        self._log = logging.getLogger("admingate.directory")

    @property
    def hasher(self) -> BackupCodeHasher:
        return self._hasher

    def find_active_admin(self, user_id: str) -> Optional[AdminIdentity]:
        """Find the active admin record linked to an upstream user."""
        row = self._store.find_admin_by_user_id(user_id, active_only=True)
        return self._row_to_admin(row) if row else None

    def get_admin(self, admin_id: str) -> Optional[AdminIdentity]:
        row = self._store.get_admin(admin_id)
        return self._row_to_admin(row) if row else None

    def stamp_last_login(
        self,
        admin: AdminIdentity,
        min_interval_seconds: int = 3600,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Stamp last_login_at if the previous stamp is older than the interval.

        Returns:
            True if the stamp was written
        """
        now = now or datetime.now(timezone.utc)
        if admin.last_login_at is not None:
            if now - admin.last_login_at < timedelta(seconds=min_interval_seconds):
                return False

        self._store.update_last_login(admin.id, now)
        admin.last_login_at = now
        return True

    def consume_backup_code(self, admin_id: str, code: str) -> Optional[int]:
        """
        Consume a backup code.

        Returns:
            Number of codes remaining after removal, or None if the code
            did not match any remaining code
        """
        for _ in range(BACKUP_CODE_WRITE_ATTEMPTS):
            row = self._store.get_admin(admin_id)
            if not row:
                return None

            stored: list[str] = list(row["backup_codes"])
            index = self._hasher.match(code, stored)
            if index is None:
                return None

            remaining = stored[:index] + stored[index + 1:]
            written = self._store.replace_backup_codes(
                admin_id, remaining, datetime.now(timezone.utc), expected=stored,
            )
            if written:
                self._log.info("Backup code consumed for admin %s (%d remaining)", admin_id, len(remaining))
                return len(remaining)

            # Codes changed between read and write; re-read and match again
            self._log.debug("Backup code list changed concurrently for admin %s", admin_id)

        self._log.warning("Backup code consumption for admin %s gave up under contention", admin_id)
        return None

    def set_two_factor(
        self,
        admin_id: str,
        enabled: bool,
        method: TwoFactorMethod,
        secret: Optional[str],
        backup_codes: Iterable[str] = (),
    ) -> None:
        """Replace the admin's second-factor settings; plaintext codes are hashed here."""
        hashes = [self._hasher.hash(code) for code in backup_codes]
        updated = self._store.update_two_factor(
            admin_id,
            enabled,
            method.value,
            secret,
            hashes,
            datetime.now(timezone.utc),
        )
        if updated == 0:
            raise LookupError(f"Admin with ID '{admin_id}' not found")

    def provision_admin(
        self,
        user_id: str,
        email: str,
        role: AdminRole = AdminRole.MODERATOR,
        capabilities: Iterable[Capability | str] = (),
        is_active: bool = True,
        two_factor_enabled: bool = False,
        two_factor_method: TwoFactorMethod = TwoFactorMethod.AUTHENTICATOR,
        two_factor_secret: Optional[str] = None,
        backup_codes: Iterable[str] = (),
        last_login_at: Optional[datetime] = None,
    ) -> AdminIdentity:
        """
        Create an admin record.

        Backup codes are given in plaintext and stored hashed.
        """
        if not email or "@" not in email:
            raise ValueError("A valid email is required")

        caps = Capability.parse_many(capabilities)
        admin_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        hashes = [self._hasher.hash(code) for code in backup_codes]

        self._store.insert_admin({
            "id": admin_id,
            "user_id": user_id,
            "email": email,
            "role": role.value,
            "capabilities": sorted(cap.value for cap in caps),
            "is_active": is_active,
            "two_factor_enabled": two_factor_enabled,
            "two_factor_method": two_factor_method.value,
            "two_factor_secret": two_factor_secret,
            "backup_codes": hashes,
            "last_login_at": last_login_at.isoformat() if last_login_at else None,
            "created_at": now.isoformat(),
            "updated_at": now.isoformat(),
        })

        return AdminIdentity(
            id=admin_id,
            user_id=user_id,
            email=email,
            role=role,
            capabilities=caps,
            is_active=is_active,
            two_factor_enabled=two_factor_enabled,
            two_factor_method=two_factor_method,
            two_factor_secret=two_factor_secret,
            backup_code_hashes=hashes,
            last_login_at=last_login_at,
            created_at=now,
            updated_at=now,
        )

    def _row_to_admin(self, row: dict[str, Any]) -> AdminIdentity:
        """Convert a store row to an AdminIdentity."""
        last_login = None
        if row.get("last_login_at"):
            last_login = datetime.fromisoformat(row["last_login_at"])

        known = {cap.value for cap in Capability}
        capabilities = frozenset(
            Capability(name) for name in row["capabilities"] if name in known
        )

        return AdminIdentity(
            id=row["id"],
            user_id=row["user_id"],
            email=row["email"],
            role=AdminRole.from_string(row["role"]),
            capabilities=capabilities,
            is_active=bool(row["is_active"]),
            two_factor_enabled=bool(row["two_factor_enabled"]),
            two_factor_method=TwoFactorMethod(row.get("two_factor_method") or "authenticator"),
            two_factor_secret=row.get("two_factor_secret"),
            backup_code_hashes=list(row["backup_codes"]),
            last_login_at=last_login,
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
