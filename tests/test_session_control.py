"""
Tests for SessionManager: durable sessions behind a local mirror.
"""

import logging
import threading
from datetime import timedelta
from unittest.mock import Mock

import pytest

from admingate.core.auth.identity import AdminRole
from admingate.core.auth.local_mirror import (
    EXPIRY_KEY,
    TOKEN_KEY,
    JsonFileStorage,
    LocalMirror,
)
from admingate.core.auth.session_control import (
    SessionCreationError,
    SessionManager,
    SessionValidity,
    TwoFactorRequired,
    hash_token,
)
from admingate.core.config import SessionConfig
from admingate.db.store import SQLiteStore, StoreError

from conftest import utcnow


def _raise_store_error(*args, **kwargs):
    raise StoreError("connection refused")


class TestCreateSession:

    def test_token_is_high_entropy_and_mirrored(self, store, make_admin):
        admin, _ = make_admin()
        storage = {}
        manager = SessionManager(store, LocalMirror(storage))

        token = manager.create_session(admin.id, admin.email, "127.0.0.1")

        assert len(token) == 64
        int(token, 16)
        assert storage[TOKEN_KEY] == token
        assert EXPIRY_KEY in storage

    def test_store_keeps_only_the_hash(self, store, sessions, make_admin):
        admin, _ = make_admin()
        token = sessions.create_session(admin.id, admin.email, "127.0.0.1", user_agent="pytest")

        row = store.get_session(hash_token(token))
        assert row is not None
        assert row["token_hash"] != token
        assert row["user_agent"] == "pytest"
        assert row["two_factor_verified"] == 0

    def test_expiry_is_two_hours_out(self, sessions, make_admin):
        admin, _ = make_admin()
        before = utcnow()
        sessions.create_session(admin.id, admin.email, "127.0.0.1")

        delta = sessions.mirror.expires_at - before
        assert timedelta(hours=2) - timedelta(seconds=5) < delta <= timedelta(hours=2, seconds=5)

    def test_tokens_are_unique(self, sessions, make_admin):
        admin, _ = make_admin()
        tokens = {sessions.create_session(admin.id, admin.email, "127.0.0.1") for _ in range(5)}
        assert len(tokens) == 5

    def test_enforcing_store_signals_two_factor_required(self, tmp_path, directory, make_admin, totp_secret):
        enforcing = SQLiteStore(tmp_path / "admingate.db", enforce_two_factor_sessions=True)
        admin, _ = make_admin(two_factor_enabled=True, two_factor_secret=totp_secret)
        mirror = LocalMirror({})
        manager = SessionManager(enforcing, mirror)

        with pytest.raises(TwoFactorRequired):
            manager.create_session(admin.id, admin.email, "127.0.0.1")
        assert mirror.token is None

        token = manager.create_session(admin.id, admin.email, "127.0.0.1", two_factor_verified=True)
        assert mirror.token == token

    def test_generic_store_failure_is_creation_error(self, store, sessions, make_admin, monkeypatch):
        admin, _ = make_admin()
        monkeypatch.setattr(store, "insert_session", _raise_store_error)

        with pytest.raises(SessionCreationError):
            sessions.create_session(admin.id, admin.email, "127.0.0.1")
        assert sessions.mirror.token is None


class TestValidateSession:

    def test_round_trip_then_logout(self, store, sessions, make_admin):
        admin, _ = make_admin()
        token = sessions.create_session(admin.id, admin.email, "127.0.0.1")

        assert sessions.is_session_valid() is True

        sessions.logout()
        assert sessions.is_session_valid() is False
        assert sessions.mirror.token is None
        assert store.get_session(hash_token(token)) is None
        assert store.get_session(hash_token(token), include_revoked=True)["is_revoked"] == 1

    def test_missing_mirror_skips_the_store(self):
        fake_store = Mock()
        manager = SessionManager(fake_store, LocalMirror({}))

        assert manager.validate_session() is SessionValidity.INVALID
        fake_store.get_session.assert_not_called()

    def test_expired_mirror_is_invalid_without_lookup(self):
        fake_store = Mock()
        mirror = LocalMirror({})
        mirror.store("a" * 64, utcnow() - timedelta(seconds=1))
        manager = SessionManager(fake_store, mirror)

        assert manager.is_session_valid() is False
        fake_store.get_session.assert_not_called()

    def test_validation_extends_expiry(self, sessions, make_admin, store):
        admin, _ = make_admin()
        token = sessions.create_session(admin.id, admin.email, "127.0.0.1")
        first_expiry = sessions.mirror.expires_at

        assert sessions.validate_session() is SessionValidity.VALID
        assert sessions.mirror.expires_at >= first_expiry
        assert store.get_session(hash_token(token))["expires_at"] == sessions.mirror.expires_at.isoformat()

    def test_repeated_checks_within_ttl_stay_valid(self, sessions, make_admin):
        admin, _ = make_admin()
        sessions.create_session(admin.id, admin.email, "127.0.0.1")

        assert sessions.is_session_valid() is True
        assert sessions.is_session_valid() is True

    def test_unreachable_store_trusts_mirror(self, store, make_admin, monkeypatch, caplog):
        admin, _ = make_admin()
        mirror = LocalMirror({})
        manager = SessionManager(store, mirror)
        manager.create_session(admin.id, admin.email, "127.0.0.1")
        mirror.update_expiry(utcnow() + timedelta(minutes=10))
        monkeypatch.setattr(store, "get_session", _raise_store_error)

        with caplog.at_level(logging.WARNING, logger="admingate.session"):
            validity = manager.validate_session()
            usable = manager.is_session_valid()

        assert validity is SessionValidity.DEGRADED
        assert usable is True
        assert any("trusting local mirror" in r.getMessage() for r in caplog.records)

    def test_extension_failure_is_not_surfaced(self, store, sessions, make_admin, monkeypatch):
        admin, _ = make_admin()
        sessions.create_session(admin.id, admin.email, "127.0.0.1")
        monkeypatch.setattr(store, "extend_session", _raise_store_error)

        assert sessions.validate_session() is SessionValidity.VALID

    def test_revoked_row_is_invalid(self, store, sessions, make_admin):
        admin, _ = make_admin()
        token = sessions.create_session(admin.id, admin.email, "127.0.0.1")
        store.revoke_session(hash_token(token))

        assert sessions.validate_session() is SessionValidity.INVALID


class TestTwoFactorFlag:

    def test_flag_lives_only_in_the_store(self, store, make_admin):
        admin, _ = make_admin()
        storage = {}
        manager = SessionManager(store, LocalMirror(storage))
        token = manager.create_session(admin.id, admin.email, "127.0.0.1")

        assert manager.is_two_factor_verified(token) is False
        assert manager.mark_two_factor_verified(token) is True
        assert manager.is_two_factor_verified(token) is True
        assert not any("verified" in key and key != "admin_verified_at" for key in storage)

    def test_mark_unknown_token_returns_false(self, sessions):
        assert sessions.mark_two_factor_verified("f" * 64) is False

    def test_lookup_failure_reads_as_unverified(self, store, sessions, make_admin, monkeypatch):
        admin, _ = make_admin()
        token = sessions.create_session(admin.id, admin.email, "127.0.0.1", two_factor_verified=True)
        monkeypatch.setattr(store, "get_session", _raise_store_error)

        assert sessions.is_two_factor_verified(token) is False

    def test_get_session_includes_backup_flag(self, sessions, make_admin):
        admin, _ = make_admin()
        token = sessions.create_session(admin.id, admin.email, "127.0.0.1")
        sessions.mark_two_factor_verified(token, used_backup_code=True)

        session = sessions.get_session(token)
        assert session.two_factor_verified is True
        assert session.used_backup_code is True
        assert session.admin_id == admin.id


class TestMonitoring:

    def test_check_once_logs_out_and_reloads(self, store, sessions, make_admin):
        admin, _ = make_admin()
        reloads = []
        sessions.set_reload_callback(lambda: reloads.append(True))
        token = sessions.create_session(admin.id, admin.email, "127.0.0.1")

        assert sessions.check_once() is True
        store.revoke_session(hash_token(token))

        assert sessions.check_once() is False
        assert reloads == [True]
        assert sessions.mirror.token is None

    def test_monitor_thread_forces_logout(self, store, make_admin):
        admin, _ = make_admin()
        reloaded = threading.Event()
        manager = SessionManager(
            store,
            LocalMirror({}),
            SessionConfig(monitor_interval_seconds=0.02),
            reload_callback=reloaded.set,
        )
        token = manager.create_session(admin.id, admin.email, "127.0.0.1")

        manager.start_session_monitoring()
        manager.start_session_monitoring()
        assert manager.is_monitoring

        store.revoke_session(hash_token(token))
        assert reloaded.wait(timeout=2.0)
        assert manager.mirror.token is None
        manager.stop_session_monitoring()
        assert not manager.is_monitoring

    def test_stop_is_idempotent(self, sessions):
        sessions.stop_session_monitoring()
        sessions.start_session_monitoring()
        sessions.stop_session_monitoring()
        sessions.stop_session_monitoring()
        assert not sessions.is_monitoring


class TestHousekeeping:

    def test_revoke_all_sessions(self, store, sessions, make_admin):
        admin, _ = make_admin(role=AdminRole.SUPER_ADMIN)
        tokens = [sessions.create_session(admin.id, admin.email, "127.0.0.1") for _ in range(3)]

        assert sessions.revoke_all_sessions(admin.id) == 3
        assert all(store.get_session(hash_token(t)) is None for t in tokens)

    def test_cleanup_deletes_rows_past_retention(self, store, make_admin, expired_by):
        admin, _ = make_admin()
        old = SessionManager(store, LocalMirror({}), clock=expired_by(timedelta(days=-40)))
        old_token = old.create_session(admin.id, admin.email, "127.0.0.1")
        fresh = SessionManager(store, LocalMirror({}))
        fresh_token = fresh.create_session(admin.id, admin.email, "127.0.0.1")

        assert fresh.cleanup_expired_sessions() == 1
        assert store.get_session(hash_token(old_token), include_revoked=True) is None
        assert store.get_session(hash_token(fresh_token)) is not None


class TestLocalMirrorStorage:

    def test_json_file_storage_persists(self, tmp_path):
        path = tmp_path / "mirror" / "session_mirror.json"
        mirror = LocalMirror(JsonFileStorage(path))
        expires = utcnow() + timedelta(hours=1)
        mirror.store("b" * 64, expires)

        reloaded = LocalMirror(JsonFileStorage(path))
        assert reloaded.token == "b" * 64
        assert reloaded.expires_at == expires
        assert reloaded.is_fresh()

        reloaded.clear()
        assert LocalMirror(JsonFileStorage(path)).token is None

    def test_corrupt_file_reads_empty(self, tmp_path):
        path = tmp_path / "session_mirror.json"
        path.write_text("{not json", encoding="utf-8")

        assert len(JsonFileStorage(path)) == 0
        assert LocalMirror(JsonFileStorage(path)).is_fresh() is False
