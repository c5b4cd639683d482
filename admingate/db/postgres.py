"""
PostgreSQL security store, for deployments where the durable store is
a managed Postgres (DATABASE_URL).
"""

from __future__ import annotations

from typing import Any

import psycopg2
import psycopg2.extras

from admingate.db.store import (
    SecurityStore,
    SessionRejectedError,
    StoreError,
    TWO_FACTOR_REQUIRED_CODE,
)


class PostgresStore(SecurityStore):
    """
    Security store backed by PostgreSQL via psycopg2.

    A database-side trigger may refuse unverified sessions with raise
    code P0001; that surfaces as SessionRejectedError.
    """

    placeholder = "%s"

    def __init__(
        self,
        database_url: str,
        sslmode: str = "require",
        enforce_two_factor_sessions: bool = False,
    ) -> None:
        if not database_url:
            raise ValueError("DATABASE_URL is not set")
        super().__init__(enforce_two_factor_sessions)
        self._database_url = database_url
        self._sslmode = sslmode
        self.initialize()

    def _connect(self) -> Any:
        return psycopg2.connect(
            self._database_url,
            sslmode=self._sslmode,
            cursor_factory=psycopg2.extras.RealDictCursor,
        )

    def _driver_errors(self) -> tuple[type[Exception], ...]:
        return (psycopg2.Error,)

    def _translate_error(self, error: Exception) -> StoreError:
        if getattr(error, "pgcode", None) == TWO_FACTOR_REQUIRED_CODE:
            return SessionRejectedError(
                "Two-factor authentication required",
                code=TWO_FACTOR_REQUIRED_CODE,
            )
        return super()._translate_error(error)

    def __repr__(self) -> str:
        return "PostgresStore(url=[REDACTED])"
