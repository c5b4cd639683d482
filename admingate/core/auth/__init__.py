"""
AdminGate Authentication Module
===============================

Provides:
- Admin directory lookup with role and capability checks
- Durable admin sessions with a client-local mirror
- TOTP / email second-factor challenges
- Argon2id-hashed single-use backup codes

The challenge flow (admingate.core.auth.two_factor) depends on the
security policy and is imported from its module directly.

Security Properties:
- Session tokens stored only as SHA-256 hashes
- Two-factor flag read only from the durable store
- Constant-time code comparison
"""

from admingate.core.auth.identity import (
    AdminIdentity,
    AdminRole,
    AuthIdentity,
    Capability,
    IdentityProvider,
    TwoFactorMethod,
)
from admingate.core.auth.directory import AdminDirectory
from admingate.core.auth.local_mirror import LocalMirror, JsonFileStorage
from admingate.core.auth.session_control import (
    SessionManager,
    Session,
    SessionValidity,
)

__all__ = [
    "AdminIdentity",
    "AdminRole",
    "AuthIdentity",
    "Capability",
    "IdentityProvider",
    "TwoFactorMethod",
    "AdminDirectory",
    "LocalMirror",
    "JsonFileStorage",
    "SessionManager",
    "Session",
    "SessionValidity",
]
