"""
Tests for StoreSecurityPolicy: lockout, origin allow-list, events.
"""

from datetime import timedelta

import pytest

from admingate.core.config import PolicyConfig
from admingate.db.store import StoreError
from admingate.security.audit import SecurityEventType, SecuritySeverity, TamperAwareAuditLog
from admingate.security.policy import PolicyError, StoreSecurityPolicy

from conftest import utcnow


def _unreachable(*args, **kwargs):
    raise StoreError("connection refused")


class TestLockout:

    def test_lockout_after_max_failures(self, store):
        policy = StoreSecurityPolicy(store, PolicyConfig(max_failed_attempts=3))

        results = [policy.track_login_attempt("a@example.com", "127.0.0.1", False) for _ in range(3)]

        assert results == [True, True, False]
        assert policy.is_account_locked("a@example.com") is True
        assert policy.is_account_locked("b@example.com") is False

        events = store.list_security_events(event_type="account_lockout")
        assert len(events) == 1
        assert events[0]["severity"] == "high"
        assert events[0]["context"]["attempts"] == 3

    def test_successes_do_not_count(self, store):
        policy = StoreSecurityPolicy(store, PolicyConfig(max_failed_attempts=2))

        policy.track_login_attempt("a@example.com", "127.0.0.1", True)
        policy.track_login_attempt("a@example.com", "127.0.0.1", True)
        assert policy.track_login_attempt("a@example.com", "127.0.0.1", False) is True
        assert policy.is_account_locked("a@example.com") is False

    def test_old_failures_fall_out_of_window(self, store):
        policy = StoreSecurityPolicy(store, PolicyConfig(max_failed_attempts=2, lockout_minutes=15))
        store.insert_login_attempt("a@example.com", "127.0.0.1", False, utcnow() - timedelta(minutes=20))

        assert policy.track_login_attempt("a@example.com", "127.0.0.1", False) is True

    def test_tracking_store_failure_is_logged_not_raised(self, store, monkeypatch):
        policy = StoreSecurityPolicy(store)
        monkeypatch.setattr(store, "insert_login_attempt", _unreachable)

        assert policy.track_login_attempt("a@example.com", "127.0.0.1", False) is True

    def test_lock_check_failure_raises_policy_error(self, store, monkeypatch):
        policy = StoreSecurityPolicy(store)
        monkeypatch.setattr(store, "latest_lockout", _unreachable)

        with pytest.raises(PolicyError):
            policy.is_account_locked("a@example.com")


class TestOriginAllowList:

    def test_disabled_allows_everything(self, store):
        policy = StoreSecurityPolicy(store)
        assert policy.is_origin_allowed("198.51.100.7").allowed is True

    @pytest.mark.parametrize("origin", ["127.0.0.1", "::1", "192.168.1.20", "10.0.0.5", "203.0.113.4"])
    def test_always_and_explicitly_allowed(self, store, origin):
        policy = StoreSecurityPolicy(store, PolicyConfig(enable_ip_allowlist=True, allowed_ips=("203.0.113.4",)))
        assert policy.is_origin_allowed(origin).allowed is True

    def test_rejection_reason_and_event(self, store):
        policy = StoreSecurityPolicy(store, PolicyConfig(enable_ip_allowlist=True))

        check = policy.is_origin_allowed("unknown")

        assert check.allowed is False
        assert check.reason == "IP not in whitelist"
        assert store.list_security_events(event_type="ip_unauthorized")[0]["severity"] == "high"


class TestEvents:

    def test_events_reach_store_and_audit_file(self, store, tmp_path):
        audit = TamperAwareAuditLog(tmp_path / "security_events.jsonl")
        policy = StoreSecurityPolicy(store, audit_log=audit)

        policy.log_security_event("a1", "a@example.com", SecurityEventType.ADMIN_ACCESS_GRANTED,
                                  SecuritySeverity.LOW, {"path": "/admin"})
        policy.log_security_event("a1", "a@example.com", "custom_event", SecuritySeverity.MEDIUM)

        rows = store.list_security_events()
        assert [r["event_type"] for r in rows] == ["admin_access_granted", "custom_event"]
        assert rows[0]["context"] == {"path": "/admin"}
        assert audit.event_count == 2
        assert audit.verify_integrity() == (True, 2)

    def test_store_failure_never_raises(self, store, monkeypatch):
        policy = StoreSecurityPolicy(store)
        monkeypatch.setattr(store, "insert_security_event", _unreachable)

        policy.log_security_event(None, None, SecurityEventType.AUTH_FAILED, SecuritySeverity.HIGH)

    def test_alerts_only_for_high_and_critical(self, store):
        policy = StoreSecurityPolicy(store)
        alerts = []
        policy.add_alert_handler(alerts.append)

        policy.log_security_event(None, "x", SecurityEventType.SUSPICIOUS_REQUEST, SecuritySeverity.MEDIUM)
        policy.log_security_event(None, "x", SecurityEventType.IP_BLOCKED, SecuritySeverity.CRITICAL)

        assert [a.event_type for a in alerts] == ["ip_blocked"]

    def test_failing_alert_handler_is_contained(self, store):
        policy = StoreSecurityPolicy(store)
        delivered = []

        def broken(event):
            raise RuntimeError("pager offline")

        policy.add_alert_handler(broken)
        policy.add_alert_handler(delivered.append)
        policy.log_security_event(None, "x", SecurityEventType.AUTH_FAILED, SecuritySeverity.HIGH)

        assert len(delivered) == 1


class TestSecondFactor:

    def test_verifies_current_code(self, store, verifier, totp_secret):
        policy = StoreSecurityPolicy(store)
        assert policy.verify_second_factor(totp_secret, verifier.generate(totp_secret)) is True

    def test_malformed_secret_is_false(self, store):
        policy = StoreSecurityPolicy(store)
        assert policy.verify_second_factor("not base32!", "123456") is False
