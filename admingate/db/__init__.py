"""
Database module - durable storage for the admin gate.

Security Considerations:
- Session tokens are stored only as SHA-256 hashes
- Backup codes are stored only as Argon2id hashes
- No plaintext secrets in log output
"""

from admingate.db.store import (
    SecurityStore,
    SQLiteStore,
    StoreError,
    SessionRejectedError,
    TWO_FACTOR_REQUIRED_CODE,
)

__all__ = [
    "SecurityStore",
    "SQLiteStore",
    "StoreError",
    "SessionRejectedError",
    "TWO_FACTOR_REQUIRED_CODE",
]
