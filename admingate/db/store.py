"""
Security Store
==============

Durable storage for admin records, sessions, security events and
login attempts.

The gate treats the store as opaque: SessionManager, AdminDirectory
and the default security policy are its only callers. Rows are
returned as plain dicts; the owning component converts them.

Security Notes:
- Session rows are keyed by SHA-256 of the token, never the token
- All queries are parameterized
- Every driver failure surfaces as StoreError
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import closing, contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Final, Iterator, Optional, Sequence


class StoreError(Exception):
    """Raised when the durable store is unreachable or a query fails."""
    pass


class SessionRejectedError(StoreError):
    """Raised when the store refuses to create a session row."""

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


# Raise code used by the store when an unverified session is refused
TWO_FACTOR_REQUIRED_CODE: Final[str] = "P0001"


class SecurityStore:
    """
    SQL-backed security store.

    Subclasses provide the connection and placeholder style; the
    schema and queries are shared.
    """

    placeholder: str = "?"

    _SCHEMA: Final[tuple[str, ...]] = (
        """
        CREATE TABLE IF NOT EXISTS admin_users (
            id TEXT PRIMARY KEY,
            user_id TEXT UNIQUE NOT NULL,
            email TEXT NOT NULL,
            role TEXT NOT NULL DEFAULT 'moderator',
            capabilities TEXT NOT NULL DEFAULT '[]',
            is_active INTEGER NOT NULL DEFAULT 1,
            two_factor_enabled INTEGER NOT NULL DEFAULT 0,
            two_factor_method TEXT NOT NULL DEFAULT 'authenticator',
            two_factor_secret TEXT,
            backup_codes TEXT NOT NULL DEFAULT '[]',
            last_login_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS admin_sessions (
            id TEXT PRIMARY KEY,
            admin_id TEXT NOT NULL,
            token_hash TEXT UNIQUE NOT NULL,
            ip_address TEXT,
            user_agent TEXT,
            created_at TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            last_activity TEXT NOT NULL,
            two_factor_verified INTEGER NOT NULL DEFAULT 0,
            used_backup_code INTEGER NOT NULL DEFAULT 0,
            is_revoked INTEGER NOT NULL DEFAULT 0
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_admin_sessions_admin ON admin_sessions(admin_id)",
        "CREATE INDEX IF NOT EXISTS idx_admin_sessions_expires ON admin_sessions(expires_at)",
        """
        CREATE TABLE IF NOT EXISTS security_events (
            id TEXT PRIMARY KEY,
            actor_id TEXT,
            actor_label TEXT,
            event_type TEXT NOT NULL,
            severity TEXT NOT NULL,
            context TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_security_events_type ON security_events(event_type)",
        """
        CREATE TABLE IF NOT EXISTS login_attempts (
            id TEXT PRIMARY KEY,
            identity_label TEXT NOT NULL,
            origin_ip TEXT,
            success INTEGER NOT NULL,
            created_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_login_attempts_label ON login_attempts(identity_label, created_at)",
        """
        CREATE TABLE IF NOT EXISTS account_lockouts (
            id TEXT PRIMARY KEY,
            identity_label TEXT NOT NULL,
            reason TEXT,
            locked_at TEXT NOT NULL,
            lock_minutes INTEGER NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_account_lockouts_label ON account_lockouts(identity_label, locked_at)",
    )

    def __init__(self, enforce_two_factor_sessions: bool = False) -> None:
        """
        Args:
            enforce_two_factor_sessions: Refuse unverified sessions for
                admins with two-factor enabled
        """
        self._enforce_two_factor_sessions = enforce_two_factor_sessions

    # ------------------------------------------------------------------
    # Driver plumbing
    # ------------------------------------------------------------------

    def _connect(self) -> Any:
        raise NotImplementedError

    def _translate_error(self, error: Exception) -> StoreError:
        return StoreError(f"Security store query failed: {error}")

    def _driver_errors(self) -> tuple[type[Exception], ...]:
        raise NotImplementedError

    def _sql(self, query: str) -> str:
        if self.placeholder == "?":
            return query
        return query.replace("?", self.placeholder)

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        """Yield a cursor inside a committed transaction."""
        try:
            with closing(self._connect()) as conn:
                cur = conn.cursor()
                try:
                    yield cur
                    conn.commit()
                except BaseException:
                    conn.rollback()
                    raise
                finally:
                    cur.close()
        except StoreError:
            raise
        except self._driver_errors() as e:
            raise self._translate_error(e) from e

    def _execute(self, query: str, params: Sequence[Any] = ()) -> int:
        with self._cursor() as cur:
            cur.execute(self._sql(query), tuple(params))
            return cur.rowcount

    def _fetchone(self, query: str, params: Sequence[Any] = ()) -> Optional[dict[str, Any]]:
        with self._cursor() as cur:
            cur.execute(self._sql(query), tuple(params))
            row = cur.fetchone()
            return self._row_to_dict(cur, row) if row is not None else None

    def _fetchall(self, query: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        with self._cursor() as cur:
            cur.execute(self._sql(query), tuple(params))
            return [self._row_to_dict(cur, row) for row in cur.fetchall()]

    @staticmethod
    def _row_to_dict(cur: Any, row: Any) -> dict[str, Any]:
        if isinstance(row, dict):
            return dict(row)
        columns = [col[0] for col in cur.description]
        return dict(zip(columns, row))

    def initialize(self) -> None:
        """Create tables and indexes if they don't exist."""
        with self._cursor() as cur:
            for statement in self._SCHEMA:
                cur.execute(statement)

    # ------------------------------------------------------------------
    # Admin directory
    # ------------------------------------------------------------------

    def insert_admin(self, record: dict[str, Any]) -> None:
        self._execute("""
            INSERT INTO admin_users (
                id, user_id, email, role, capabilities, is_active,
                two_factor_enabled, two_factor_method, two_factor_secret,
                backup_codes, last_login_at, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            record["id"],
            record["user_id"],
            record["email"],
            record["role"],
            json.dumps(record.get("capabilities", [])),
            int(record.get("is_active", True)),
            int(record.get("two_factor_enabled", False)),
            record.get("two_factor_method", "authenticator"),
            record.get("two_factor_secret"),
            json.dumps(record.get("backup_codes", [])),
            record.get("last_login_at"),
            record["created_at"],
            record["updated_at"],
        ))

    def get_admin(self, admin_id: str) -> Optional[dict[str, Any]]:
        row = self._fetchone("SELECT * FROM admin_users WHERE id = ?", (admin_id,))
        return self._decode_admin(row) if row else None

    def find_admin_by_user_id(self, user_id: str, active_only: bool = True) -> Optional[dict[str, Any]]:
        if active_only:
            row = self._fetchone(
                "SELECT * FROM admin_users WHERE user_id = ? AND is_active = 1",
                (user_id,),
            )
        else:
            row = self._fetchone("SELECT * FROM admin_users WHERE user_id = ?", (user_id,))
        return self._decode_admin(row) if row else None

    def update_last_login(self, admin_id: str, when: datetime) -> None:
        stamp = when.isoformat()
        self._execute(
            "UPDATE admin_users SET last_login_at = ?, updated_at = ? WHERE id = ?",
            (stamp, stamp, admin_id),
        )

    def replace_backup_codes(
        self,
        admin_id: str,
        code_hashes: list[str],
        when: datetime,
        expected: Optional[list[str]] = None,
    ) -> int:
        """
        Overwrite the stored hashes.

        With `expected`, the write only applies if the stored list still
        equals it; 0 rows means another writer got there first.
        """
        if expected is None:
            return self._execute(
                "UPDATE admin_users SET backup_codes = ?, updated_at = ? WHERE id = ?",
                (json.dumps(code_hashes), when.isoformat(), admin_id),
            )
        return self._execute(
            "UPDATE admin_users SET backup_codes = ?, updated_at = ? WHERE id = ? AND backup_codes = ?",
            (json.dumps(code_hashes), when.isoformat(), admin_id, json.dumps(expected)),
        )

    def update_two_factor(
        self,
        admin_id: str,
        enabled: bool,
        method: str,
        secret: Optional[str],
        code_hashes: list[str],
        when: datetime,
    ) -> int:
        return self._execute("""
            UPDATE admin_users
            SET two_factor_enabled = ?, two_factor_method = ?, two_factor_secret = ?,
                backup_codes = ?, updated_at = ?
            WHERE id = ?
        """, (int(enabled), method, secret, json.dumps(code_hashes), when.isoformat(), admin_id))

    @staticmethod
    def _decode_admin(row: dict[str, Any]) -> dict[str, Any]:
        row["capabilities"] = json.loads(row.get("capabilities") or "[]")
        row["backup_codes"] = json.loads(row.get("backup_codes") or "[]")
        row["is_active"] = bool(row["is_active"])
        row["two_factor_enabled"] = bool(row["two_factor_enabled"])
        return row

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def insert_session(
        self,
        token_hash: str,
        admin_id: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        created_at: datetime,
        expires_at: datetime,
        two_factor_verified: bool,
    ) -> str:
        """Insert a session row; returns the row id."""
        if self._enforce_two_factor_sessions and not two_factor_verified:
            admin = self.get_admin(admin_id)
            if admin and admin["two_factor_enabled"]:
                raise SessionRejectedError(
                    "Two-factor authentication required",
                    code=TWO_FACTOR_REQUIRED_CODE,
                )

        session_id = str(uuid.uuid4())
        self._execute("""
            INSERT INTO admin_sessions (
                id, admin_id, token_hash, ip_address, user_agent,
                created_at, expires_at, last_activity, two_factor_verified
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            session_id,
            admin_id,
            token_hash,
            ip_address,
            user_agent,
            created_at.isoformat(),
            expires_at.isoformat(),
            created_at.isoformat(),
            int(two_factor_verified),
        ))
        return session_id

    def get_session(self, token_hash: str, include_revoked: bool = False) -> Optional[dict[str, Any]]:
        if include_revoked:
            return self._fetchone("SELECT * FROM admin_sessions WHERE token_hash = ?", (token_hash,))
        return self._fetchone(
            "SELECT * FROM admin_sessions WHERE token_hash = ? AND is_revoked = 0",
            (token_hash,),
        )

    def extend_session(self, token_hash: str, expires_at: datetime, last_activity: datetime) -> int:
        return self._execute(
            "UPDATE admin_sessions SET expires_at = ?, last_activity = ? WHERE token_hash = ?",
            (expires_at.isoformat(), last_activity.isoformat(), token_hash),
        )

    def mark_two_factor_verified(self, token_hash: str, used_backup_code: bool, when: datetime) -> int:
        return self._execute("""
            UPDATE admin_sessions
            SET two_factor_verified = 1, used_backup_code = ?, last_activity = ?
            WHERE token_hash = ? AND is_revoked = 0
        """, (int(used_backup_code), when.isoformat(), token_hash))

    def revoke_session(self, token_hash: str) -> int:
        return self._execute(
            "UPDATE admin_sessions SET is_revoked = 1 WHERE token_hash = ?",
            (token_hash,),
        )

    def revoke_admin_sessions(self, admin_id: str) -> int:
        return self._execute(
            "UPDATE admin_sessions SET is_revoked = 1 WHERE admin_id = ? AND is_revoked = 0",
            (admin_id,),
        )

    def cleanup_sessions(self, now: datetime, delete_before: datetime) -> int:
        """Revoke expired sessions and delete rows past retention."""
        with self._cursor() as cur:
            cur.execute(self._sql(
                "UPDATE admin_sessions SET is_revoked = 1 WHERE is_revoked = 0 AND expires_at < ?"
            ), (now.isoformat(),))
            cur.execute(self._sql(
                "DELETE FROM admin_sessions WHERE expires_at < ?"
            ), (delete_before.isoformat(),))
            return cur.rowcount

    # ------------------------------------------------------------------
    # Security events
    # ------------------------------------------------------------------

    def insert_security_event(
        self,
        event_id: str,
        actor_id: Optional[str],
        actor_label: Optional[str],
        event_type: str,
        severity: str,
        context: dict[str, Any],
        created_at: datetime,
    ) -> None:
        self._execute("""
            INSERT INTO security_events (
                id, actor_id, actor_label, event_type, severity, context, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            event_id,
            actor_id,
            actor_label,
            event_type,
            severity,
            json.dumps(context, default=str),
            created_at.isoformat(),
        ))

    def list_security_events(
        self,
        event_type: Optional[str] = None,
        severity: Optional[str] = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        clauses = []
        params: list[Any] = []
        if event_type:
            clauses.append("event_type = ?")
            params.append(event_type)
        if severity:
            clauses.append("severity = ?")
            params.append(severity)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        rows = self._fetchall(
            f"SELECT * FROM security_events {where} ORDER BY created_at ASC LIMIT ?",
            params,
        )
        for row in rows:
            row["context"] = json.loads(row.get("context") or "{}")
        return rows

    # ------------------------------------------------------------------
    # Login attempts and lockouts
    # ------------------------------------------------------------------

    def insert_login_attempt(
        self,
        identity_label: str,
        origin_ip: Optional[str],
        success: bool,
        created_at: datetime,
    ) -> None:
        self._execute("""
            INSERT INTO login_attempts (id, identity_label, origin_ip, success, created_at)
            VALUES (?, ?, ?, ?, ?)
        """, (str(uuid.uuid4()), identity_label, origin_ip, int(success), created_at.isoformat()))

    def count_failed_attempts(self, identity_label: str, since: datetime) -> int:
        row = self._fetchone("""
            SELECT COUNT(*) AS failures FROM login_attempts
            WHERE identity_label = ? AND success = 0 AND created_at >= ?
        """, (identity_label, since.isoformat()))
        return int(row["failures"]) if row else 0

    def insert_lockout(self, identity_label: str, locked_at: datetime, lock_minutes: int, reason: str) -> None:
        self._execute("""
            INSERT INTO account_lockouts (id, identity_label, reason, locked_at, lock_minutes)
            VALUES (?, ?, ?, ?, ?)
        """, (str(uuid.uuid4()), identity_label, reason, locked_at.isoformat(), lock_minutes))

    def latest_lockout(self, identity_label: str) -> Optional[dict[str, Any]]:
        return self._fetchone("""
            SELECT * FROM account_lockouts
            WHERE identity_label = ?
            ORDER BY locked_at DESC
            LIMIT 1
        """, (identity_label,))


class SQLiteStore(SecurityStore):
    """
    SQLite security store.

    Usage:
        store = SQLiteStore(config.paths.database_path)
        admin = store.find_admin_by_user_id(user_id)
    """

    placeholder = "?"

    def __init__(self, db_path: Path | str, enforce_two_factor_sessions: bool = False) -> None:
        super().__init__(enforce_two_factor_sessions)
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self.initialize()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _driver_errors(self) -> tuple[type[Exception], ...]:
        return (sqlite3.Error,)

    @staticmethod
    def _row_to_dict(cur: Any, row: Any) -> dict[str, Any]:
        return dict(row)
