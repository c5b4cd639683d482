"""
Local Session Mirror
====================

Client-local cache of the session token and expiry.

The mirror is a fast path only: it lets SessionManager answer "is
there any session at all" without a store round-trip. It is never
authoritative for security flags; the two-factor verification flag
is deliberately not one of its keys.

Backing storage is any MutableMapping:
- JsonFileStorage for process-local use
- flask.session over HTTP
- a plain dict in tests
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import MutableMapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Final, Iterator, Optional


TOKEN_KEY: Final[str] = "admin_session_token"
EXPIRY_KEY: Final[str] = "admin_session_expiry"
VERIFIED_AT_KEY: Final[str] = "admin_verified_at"

MIRROR_KEYS: Final[tuple[str, ...]] = (TOKEN_KEY, EXPIRY_KEY, VERIFIED_AT_KEY)

_log = logging.getLogger("admingate.session")


class JsonFileStorage(MutableMapping):
    """
    MutableMapping persisted to a JSON file.

    Every mutation rewrites the file (owner read/write only). A missing
    or unreadable file reads as empty.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._data: dict[str, Any] = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, Any]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            _log.warning("Local mirror unreadable, starting empty: %s", e)
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            _log.warning("Local mirror corrupt, starting empty")
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._data), encoding="utf-8")
        try:
            os.chmod(tmp, 0o600)
        except OSError:
            pass  # Windows
        os.replace(tmp, self._path)

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value
            self._save()

    def __delitem__(self, key: str) -> None:
        with self._lock:
            del self._data[key]
            self._save()

    def __iter__(self) -> Iterator[str]:
        return iter(dict(self._data))

    def __len__(self) -> int:
        return len(self._data)


class LocalMirror:
    """
    Token/expiry mirror over a mutable mapping.

    Usage:
        mirror = LocalMirror(JsonFileStorage(config.paths.local_mirror_path))
        mirror.store(token, expires_at)
        if mirror.is_fresh():
            ...
    """

    __slots__ = ("_storage",)

    def __init__(self, storage: Optional[MutableMapping] = None) -> None:
        self._storage = storage if storage is not None else {}

    @property
    def token(self) -> Optional[str]:
        return self._storage.get(TOKEN_KEY)

    @property
    def expires_at(self) -> Optional[datetime]:
        raw = self._storage.get(EXPIRY_KEY)
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw)
        except (TypeError, ValueError):
            return None

    @property
    def verified_at(self) -> Optional[datetime]:
        raw = self._storage.get(VERIFIED_AT_KEY)
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw)
        except (TypeError, ValueError):
            return None

    def store(self, token: str, expires_at: datetime) -> None:
        self._storage[TOKEN_KEY] = token
        self._storage[EXPIRY_KEY] = expires_at.isoformat()

    def update_expiry(self, expires_at: datetime) -> None:
        self._storage[EXPIRY_KEY] = expires_at.isoformat()

    def stamp_verified(self, when: Optional[datetime] = None) -> None:
        """Record when the gate last passed (progress display only)."""
        self._storage[VERIFIED_AT_KEY] = (when or datetime.now(timezone.utc)).isoformat()

    def is_fresh(self, now: Optional[datetime] = None) -> bool:
        """True if a token is mirrored and its expiry is in the future."""
        if not self.token:
            return False
        expires_at = self.expires_at
        if expires_at is None:
            return False
        return (now or datetime.now(timezone.utc)) < expires_at

    def clear(self) -> None:
        for key in MIRROR_KEYS:
            self._storage.pop(key, None)

    def __repr__(self) -> str:
        return f"LocalMirror(has_token={self.token is not None}, expires_at={self.expires_at})"
