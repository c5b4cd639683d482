"""
Admin Identity Model
====================

Roles, capability tags and the administrator record the gate
authorizes against.

Security Notes:
- two_factor_secret and backup code hashes are never exposed in repr
- Capabilities form a closed set; unknown flags are rejected on load
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import FrozenSet, Iterable, Optional


class AdminRole(Enum):
    """Administrative roles, ranked by privilege."""
    MODERATOR = "moderator"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    def satisfies(self, minimum: AdminRole) -> bool:
        """Check if this role is at least as privileged as `minimum`."""
        return self.rank >= minimum.rank

    @classmethod
    def from_string(cls, value: str) -> AdminRole:
        """Convert a stored role name to AdminRole."""
        return cls(value.strip().lower())


_ROLE_RANK = {
    AdminRole.SUPER_ADMIN: 3,
    AdminRole.ADMIN: 2,
    AdminRole.MODERATOR: 1,
}


class Capability(Enum):
    """Named capability flags gating one administrative action each."""
    CAN_MANAGE_ADMINS = "can_manage_admins"
    CAN_MANAGE_CATEGORIES = "can_manage_categories"
    CAN_MANAGE_CONTENT = "can_manage_content"
    CAN_MANAGE_PRODUCTS = "can_manage_products"
    CAN_MANAGE_REPORTS = "can_manage_reports"
    CAN_MANAGE_SETTINGS = "can_manage_settings"
    CAN_MANAGE_USERS = "can_manage_users"
    CAN_VIEW_ANALYTICS = "can_view_analytics"

    @classmethod
    def parse_many(cls, values: Iterable[str | Capability]) -> FrozenSet[Capability]:
        """Parse capability names; raises ValueError on unknown names."""
        return frozenset(v if isinstance(v, Capability) else cls(v) for v in values)


class TwoFactorMethod(Enum):
    """Second-factor delivery methods."""
    AUTHENTICATOR = "authenticator"
    EMAIL = "email"


@dataclass(frozen=True)
class AuthIdentity:
    """The upstream authenticated user, before any admin lookup."""
    user_id: str
    email: str


@dataclass
class AdminIdentity:
    """
    Administrator directory record.

    Provisioned externally. The gate only stamps last_login_at and
    consumes backup codes.
    """
    id: str
    user_id: str
    email: str
    role: AdminRole
    capabilities: FrozenSet[Capability] = frozenset()
    is_active: bool = True
    two_factor_enabled: bool = False
    two_factor_method: TwoFactorMethod = TwoFactorMethod.AUTHENTICATOR
    two_factor_secret: Optional[str] = None
    backup_code_hashes: list[str] = field(default_factory=list)
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __repr__(self) -> str:
        """Safe representation without second-factor material."""
        return (
            f"AdminIdentity(id={self.id!r}, email={self.email!r}, "
            f"role={self.role.value}, is_active={self.is_active}, "
            f"two_factor_enabled={self.two_factor_enabled})"
        )

    def has_capability(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def missing_capabilities(self, required: Iterable[Capability]) -> list[Capability]:
        """Required capabilities this admin lacks, in request order."""
        return [cap for cap in required if cap not in self.capabilities]

    @property
    def remaining_backup_codes(self) -> int:
        return len(self.backup_code_hashes)


class AuthError(Exception):
    """Raised when no authenticated identity is available."""
    pass


class CredentialsExpired(AuthError):
    """Raised when the upstream credentials have expired."""
    pass


class DirectoryError(Exception):
    """Raised when no active admin record exists for an identity."""
    pass


class AuthorizationError(Exception):
    """Raised when role or capabilities are insufficient."""
    pass


class IdentityProvider(ABC):
    """Source of the upstream authenticated identity."""

    @abstractmethod
    def get_current_identity(self) -> AuthIdentity:
        """
        Return the current identity.

        Raises:
            AuthError: No authenticated identity
            CredentialsExpired: The upstream credentials expired
        """
        ...
