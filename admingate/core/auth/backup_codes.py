"""
Backup Code Hashing
===================

Single-use second-factor recovery codes, stored as Argon2id hashes.

Security Properties:
- Codes are generated from a CSPRNG
- Only Argon2id hashes are persisted
- Constant-time verification (argon2-cffi)
- Single use is enforced by removing the matched hash

Parameters:
- memory_cost: 65536 KiB (64 MB)
- time_cost: 2 iterations
- parallelism: 2 threads
"""

from __future__ import annotations

import secrets
from typing import Final, Iterable, Optional

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError


BACKUP_CODE_MEMORY_COST: Final[int] = 65536  # 64 MB in KiB
BACKUP_CODE_TIME_COST: Final[int] = 2
BACKUP_CODE_PARALLELISM: Final[int] = 2
BACKUP_CODE_DIGITS: Final[int] = 6


class BackupCodeHasher:
    """
    Argon2id hasher for backup codes.

    Usage:
        hasher = BackupCodeHasher()
        hashes = [hasher.hash(code) for code in generate_backup_codes(10)]

        index = hasher.match("123456", hashes)
        if index is not None:
            del hashes[index]  # single use
    """

    __slots__ = ("_hasher",)

    def __init__(
        self,
        memory_cost: int = BACKUP_CODE_MEMORY_COST,
        time_cost: int = BACKUP_CODE_TIME_COST,
        parallelism: int = BACKUP_CODE_PARALLELISM,
    ) -> None:
        if memory_cost < 8192:
            raise ValueError("memory_cost must be at least 8192 KiB")
        if time_cost < 1:
            raise ValueError("time_cost must be at least 1")
        if parallelism < 1:
            raise ValueError("parallelism must be at least 1")

        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
        )

    def hash(self, code: str) -> str:
        """Hash a backup code for storage."""
        if not code:
            raise ValueError("Backup code cannot be empty")
        return self._hasher.hash(code)

    def verify(self, code: str, encoded: str) -> bool:
        """Verify a backup code against one stored hash."""
        if not code or not encoded:
            return False
        try:
            return self._hasher.verify(encoded, code)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            return False

    def match(self, code: str, encoded_hashes: Iterable[str]) -> Optional[int]:
        """
        Find the stored hash matching `code`.

        Every hash is checked so timing does not reveal the position.

        Returns:
            Index of the matching hash, or None
        """
        found: Optional[int] = None
        for index, encoded in enumerate(encoded_hashes):
            if self.verify(code, encoded) and found is None:
                found = index
        return found


def generate_backup_codes(count: int, digits: int = BACKUP_CODE_DIGITS) -> list[str]:
    """
    Generate distinct numeric backup codes.

    Args:
        count: Number of codes
        digits: Digits per code

    Returns:
        List of zero-padded numeric codes
    """
    if count < 1:
        raise ValueError("count must be at least 1")
    if 10 ** digits < count * 10:
        raise ValueError("Too many codes for the code length")

    codes: list[str] = []
    while len(codes) < count:
        code = f"{secrets.randbelow(10 ** digits):0{digits}d}"
        if code not in codes:
            codes.append(code)
    return codes
