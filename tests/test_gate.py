"""
Tests for the SecurityGate pipeline, its state machine and rendering.
"""

from datetime import timedelta

import pytest

from admingate.core.auth.identity import (
    AdminRole,
    AuthIdentity,
    Capability,
    CredentialsExpired,
    IdentityProvider,
)
from admingate.core.auth.local_mirror import LocalMirror
from admingate.core.auth.session_control import SessionManager
from admingate.core.auth.two_factor import ChallengeError, CODE_REJECTED
from admingate.core.config import PolicyConfig
from admingate.db.store import SQLiteStore, StoreError
from admingate.security.gate import (
    AUTH_FAILED_MESSAGE,
    LOCKED_MESSAGE,
    NOT_ADMIN_MESSAGE,
    SESSION_EXPIRED_MESSAGE,
    SESSION_FAILED_MESSAGE,
    CheckStatus,
    GateContext,
    GateState,
    RenderKind,
    RunPhase,
    SecurityGateError,
    render,
)

from conftest import RecordingPolicy, StaticIdentityProvider, utcnow


def _context(route="/admin", **kwargs):
    return GateContext(route, **kwargs)


class TestDirectoryAndAuthorization:

    def test_unknown_user_fails_before_session(self, make_gate, policy, sessions):
        gate = make_gate(AuthIdentity(user_id="nobody", email="nobody@example.com"))

        outcome = gate.evaluate(_context())

        assert outcome.state is GateState.FAILED
        assert outcome.reasons == [NOT_ADMIN_MESSAGE]
        assert outcome.checks["permissions"].status is CheckStatus.FAILED
        assert "session" not in outcome.checks
        assert sessions.current_token is None
        assert policy.attempts == [("nobody@example.com", "127.0.0.1", False)]

    def test_inactive_admin_fails_before_session(self, make_gate, make_admin, sessions):
        _, identity = make_admin(is_active=False)
        gate = make_gate(identity)

        outcome = gate.evaluate(_context())

        assert outcome.state is GateState.FAILED
        assert "session" not in outcome.checks
        assert sessions.current_token is None

    def test_moderator_below_admin_route(self, make_gate, make_admin):
        _, identity = make_admin(role=AdminRole.MODERATOR)
        gate = make_gate(identity)

        outcome = gate.evaluate(_context(min_role=AdminRole.ADMIN))

        assert outcome.state is GateState.FAILED
        assert outcome.checks["role"].status is CheckStatus.FAILED
        reason = outcome.reasons[0]
        assert "admin" in reason and "moderator" in reason

    def test_super_admin_passes_role_check(self, make_gate, make_admin):
        _, identity = make_admin(role=AdminRole.SUPER_ADMIN)
        gate = make_gate(identity)

        outcome = gate.evaluate(_context(min_role=AdminRole.ADMIN))

        assert outcome.checks["role"].status is CheckStatus.SUCCESS
        assert outcome.state is GateState.VERIFIED

    def test_missing_capabilities_are_listed(self, make_gate, make_admin):
        _, identity = make_admin(capabilities=(Capability.CAN_VIEW_ANALYTICS,))
        gate = make_gate(identity)

        outcome = gate.evaluate(_context(
            required_permissions=(Capability.CAN_MANAGE_USERS, Capability.CAN_VIEW_ANALYTICS, "can_manage_settings"),
        ))

        assert outcome.state is GateState.FAILED
        assert outcome.reasons == ["Missing permissions: can_manage_users, can_manage_settings"]
        assert outcome.checks["specific_permissions"].diagnostics["missing"] == [
            "can_manage_users", "can_manage_settings",
        ]

    def test_route_without_permissions_records_not_required(self, make_gate, make_admin):
        _, identity = make_admin()

        outcome = make_gate(identity).evaluate(_context())

        assert outcome.state is GateState.VERIFIED
        assert outcome.checks["specific_permissions"].status is CheckStatus.NOT_REQUIRED


class TestAuthentication:

    def test_missing_identity_logs_high_event(self, make_gate, policy):
        gate = make_gate(None)

        outcome = gate.evaluate(_context())

        assert outcome.state is GateState.FAILED
        assert outcome.reasons == [AUTH_FAILED_MESSAGE]
        event = policy.events_of("auth_failed")[0]
        assert event[1] == "high"
        assert event[2]["path"] == "/admin"

    def test_expired_credentials(self, make_gate):
        provider = StaticIdentityProvider(error=CredentialsExpired("token expired"))
        gate = make_gate(identity_provider=provider)

        outcome = gate.evaluate(_context())

        assert outcome.reasons == [SESSION_EXPIRED_MESSAGE]

    def test_provider_must_implement_current_identity(self):
        class Incomplete(IdentityProvider):
            pass

        with pytest.raises(TypeError):
            Incomplete()


class TestAccountLock:

    def test_locked_account(self, make_gate, make_admin, store, policy, timers):
        admin, identity = make_admin(role=AdminRole.ADMIN)
        store.insert_lockout(admin.email, utcnow(), 15, "Too many failed attempts")
        gate = make_gate(identity)

        outcome = gate.evaluate(_context())

        assert outcome.state is GateState.LOCKED
        assert outcome.reasons == [LOCKED_MESSAGE]
        assert [c.check_id for c in outcome.failed_checks()] == ["account_lock"]
        assert policy.events_of("admin_access_granted") == []
        assert outcome.can_retry is False
        assert gate.pending_redirect == ("/auth/login", 5.0)
        assert timers.last.started

        with pytest.raises(SecurityGateError):
            gate.retry()

    def test_expired_lockout_no_longer_applies(self, make_gate, make_admin, store):
        admin, identity = make_admin()
        store.insert_lockout(admin.email, utcnow() - timedelta(minutes=16), 15, "old")
        gate = make_gate(identity)

        assert gate.evaluate(_context()).state is GateState.VERIFIED

    def test_lock_lookup_failure_fails_open(self, make_gate, make_admin, store, monkeypatch):
        _, identity = make_admin()

        def unreachable(*args, **kwargs):
            raise StoreError("timeout")

        monkeypatch.setattr(store, "latest_lockout", unreachable)
        gate = make_gate(identity)

        outcome = gate.evaluate(_context())

        assert outcome.state is GateState.VERIFIED
        assert outcome.checks["account_lock"].diagnostics["degraded"] is True

    def test_repeated_failures_lock_the_label(self, make_gate, policy):
        identity = AuthIdentity(user_id="ghost", email="ghost@example.com")
        for _ in range(5):
            gate = make_gate(identity)
            gate.evaluate(_context())

        locked = make_gate(identity).evaluate(_context())
        assert locked.state is GateState.LOCKED
        assert len(policy.events_of("account_lockout")) == 1


class TestOrigin:

    def test_unlisted_origin_is_blocked(self, store, make_gate, make_admin):
        _, identity = make_admin()
        strict = RecordingPolicy(store, config=PolicyConfig(enable_ip_allowlist=True, allowed_ips=("203.0.113.4",)))
        gate = make_gate(identity, origin="198.51.100.7", policy=strict)

        outcome = gate.evaluate(_context())

        assert outcome.state is GateState.FAILED
        assert outcome.reasons == ["IP address not authorized: IP not in whitelist"]
        assert strict.events_of("ip_blocked")[0][1] == "critical"
        assert strict.events_of("ip_unauthorized")[0][1] == "high"

    def test_listed_and_private_origins_pass(self, store, make_gate, make_admin):
        _, identity = make_admin()
        strict = RecordingPolicy(store, config=PolicyConfig(enable_ip_allowlist=True, allowed_ips=("203.0.113.4",)))

        for origin in ("203.0.113.4", "10.1.2.3", "192.168.0.10", "::1"):
            gate = make_gate(identity, origin=origin, policy=strict)
            assert gate.evaluate(_context()).checks["ip"].status is CheckStatus.SUCCESS


class TestSessionEstablishment:

    def test_verified_run_creates_then_reuses_session(self, make_gate, make_admin, sessions, policy):
        _, identity = make_admin()

        first = make_gate(identity).evaluate(_context())
        token = sessions.current_token
        second = make_gate(identity).evaluate(_context())

        assert first.state is GateState.VERIFIED
        assert second.session_token == token == first.session_token
        assert len(policy.events_of("admin_access_granted")) == 2

    def test_creation_failure_is_terminal(self, make_gate, make_admin, store, monkeypatch):
        _, identity = make_admin()

        def refuse(*args, **kwargs):
            raise StoreError("disk full")

        monkeypatch.setattr(store, "insert_session", refuse)
        outcome = make_gate(identity).evaluate(_context())

        assert outcome.state is GateState.FAILED
        assert outcome.reasons == [SESSION_FAILED_MESSAGE]

    def test_finalize_stamps_login_and_mirror(self, make_gate, make_admin, directory, sessions, policy):
        admin, identity = make_admin()

        outcome = make_gate(identity).evaluate(_context(required_permissions=()))

        assert outcome.progress == 100
        assert directory.get_admin(admin.id).last_login_at is not None
        assert sessions.mirror.verified_at is not None
        granted = policy.events_of("admin_access_granted")[0]
        assert granted[1] == "low"
        assert granted[2]["role"] == "admin"

    def test_monitoring_starts_and_teardown_stops_it(self, make_gate, make_admin, sessions):
        _, identity = make_admin()
        gate = make_gate(identity, monitor_sessions=True)

        gate.evaluate(_context())
        assert sessions.is_monitoring

        gate.teardown()
        assert not sessions.is_monitoring


class TestTwoFactorGate:

    def test_happy_path(self, make_gate, two_factor_admin, sessions, verifier, totp_secret):
        _, identity = two_factor_admin
        gate = make_gate(identity)

        outcome = gate.evaluate(_context())
        assert outcome.state is GateState.TWO_FACTOR_REQUIRED
        assert outcome.checks["2fa"].status is CheckStatus.REQUIRED
        assert gate.challenge is not None
        assert gate.run_phase is RunPhase.IDLE

        done = gate.complete_two_factor(verifier.generate(totp_secret))

        assert done.state is GateState.VERIFIED
        assert done.checks["2fa"].status is CheckStatus.SUCCESS
        assert sessions.is_two_factor_verified(sessions.current_token) is True
        assert gate.challenge is None

    def test_verified_session_skips_challenge(self, make_gate, two_factor_admin, verifier, totp_secret):
        _, identity = two_factor_admin
        first = make_gate(identity)
        first.evaluate(_context())
        first.complete_two_factor(verifier.generate(totp_secret))

        again = make_gate(identity).evaluate(_context())

        assert again.state is GateState.VERIFIED
        assert again.checks["2fa"].diagnostics["verified"] is True

    def test_route_without_two_factor(self, make_gate, two_factor_admin):
        _, identity = two_factor_admin

        outcome = make_gate(identity).evaluate(_context(require_two_factor=False))

        assert outcome.state is GateState.VERIFIED
        assert outcome.checks["2fa"].status is CheckStatus.NOT_REQUIRED

    def test_wrong_code_stays_inline(self, make_gate, two_factor_admin, verifier, totp_secret):
        _, identity = two_factor_admin
        gate = make_gate(identity)
        gate.evaluate(_context())
        right = verifier.generate(totp_secret)

        with pytest.raises(ChallengeError, match=CODE_REJECTED):
            gate.complete_two_factor(f"{(int(right) + 500000) % 1000000:06d}")

        assert gate.state is GateState.TWO_FACTOR_REQUIRED
        assert gate.complete_two_factor(right).state is GateState.VERIFIED

    def test_backup_code_completes_challenge(self, make_gate, two_factor_admin, sessions):
        _, identity = two_factor_admin
        gate = make_gate(identity)
        gate.evaluate(_context())

        outcome = gate.complete_two_factor("333333", backup=True)

        assert outcome.state is GateState.VERIFIED
        assert sessions.get_session(sessions.current_token).used_backup_code is True

    def test_store_deferred_session(self, tmp_path, make_gate, two_factor_admin, verifier, totp_secret):
        _, identity = two_factor_admin
        enforcing = SQLiteStore(tmp_path / "admingate.db", enforce_two_factor_sessions=True)
        deferred_sessions = SessionManager(enforcing, LocalMirror({}))
        gate = make_gate(identity, sessions=deferred_sessions)

        outcome = gate.evaluate(_context())

        assert outcome.state is GateState.TWO_FACTOR_REQUIRED
        assert outcome.session_token is None
        assert outcome.checks["session"].diagnostics["deferred"] is True
        assert render(outcome).payload["has_session"] is False

        done = gate.complete_two_factor(verifier.generate(totp_secret))
        assert done.state is GateState.VERIFIED
        assert deferred_sessions.is_two_factor_verified(done.session_token)

    def test_cancel_logs_out_and_redirects_home(self, make_gate, two_factor_admin, sessions):
        _, identity = two_factor_admin
        redirects = []
        gate = make_gate(identity, on_redirect=redirects.append)
        gate.evaluate(_context())

        gate.cancel_two_factor()

        assert redirects == ["/"]
        assert sessions.current_token is None
        assert gate.state is GateState.CHECKING
        with pytest.raises(SecurityGateError):
            gate.complete_two_factor("123456")

    def test_complete_without_challenge(self, make_gate, make_admin):
        _, identity = make_admin()
        gate = make_gate(identity)
        gate.evaluate(_context())

        with pytest.raises(SecurityGateError):
            gate.complete_two_factor("123456")


class TestThreatScan:

    def test_suspicious_query_is_advisory(self, make_gate, make_admin, policy):
        _, identity = make_admin()
        gate = make_gate(identity)

        outcome = gate.evaluate(_context(query={"q": "drop table users"}))

        assert outcome.state is GateState.VERIFIED
        events = policy.events_of("suspicious_request")
        assert len(events) == 1
        assert events[0][1] == "medium"
        assert events[0][2]["patterns"] == ["drop"]
        assert outcome.checks["threat"].status is CheckStatus.SCANNED

    def test_clean_query_logs_nothing(self, make_gate, make_admin, policy):
        _, identity = make_admin()

        make_gate(identity).evaluate(_context(query={"page": "2"}))

        assert policy.events_of("suspicious_request") == []


class TestStateMachine:

    def test_failure_arms_redirect_and_retry_reruns(self, make_gate, make_admin, directory, timers):
        identity = AuthIdentity(user_id="late", email="late@example.com")
        redirects = []
        gate = make_gate(identity, on_redirect=redirects.append)

        failed = gate.evaluate(_context())
        assert failed.can_retry is True
        assert gate.pending_redirect == ("/", 3.0)
        first_timer = timers.last

        directory.provision_admin("late", "late@example.com", role=AdminRole.ADMIN)
        retried = gate.retry()

        assert retried.state is GateState.VERIFIED
        assert first_timer.cancelled
        first_timer.fire()
        assert redirects == []

    def test_redirect_fires_once(self, make_gate, timers):
        redirects = []
        gate = make_gate(None, on_redirect=redirects.append)
        gate.evaluate(_context())

        timers.last.fire()
        timers.last.fire()

        assert redirects == ["/"]
        assert gate.pending_redirect is None

    def test_settled_failure_blocks_reevaluation(self, make_gate):
        provider = StaticIdentityProvider(None)
        gate = make_gate(identity_provider=provider)
        gate.evaluate(_context())

        assert gate.run_phase is RunPhase.SETTLED
        with pytest.raises(SecurityGateError):
            gate.evaluate(_context())

        rendered = gate.protect(_context())
        assert rendered.kind is RenderKind.DENIAL
        assert provider.calls == 1

    def test_concurrent_run_is_rejected(self, make_gate, make_admin):
        _, identity = make_admin()
        seen = []

        class ReentrantProvider(StaticIdentityProvider):
            def get_current_identity(self):
                try:
                    gate.evaluate(_context())
                except SecurityGateError as e:
                    seen.append(str(e))
                return super().get_current_identity()

        gate = make_gate(identity_provider=ReentrantProvider(identity))
        outcome = gate.evaluate(_context())

        assert outcome.state is GateState.VERIFIED
        assert seen == ["A security evaluation is already in progress"]

    def test_teardown_discards_in_flight_result(self, make_gate, make_admin, policy):
        _, identity = make_admin()

        class TearingProvider(StaticIdentityProvider):
            def get_current_identity(self):
                gate.teardown()
                return super().get_current_identity()

        gate = make_gate(identity_provider=TearingProvider(identity))
        outcome = gate.evaluate(_context())

        assert outcome.discarded is True
        assert gate.outcome is None
        assert gate.run_phase is RunPhase.IDLE
        assert policy.events_of("admin_access_granted") == []

    def test_progress_is_reported_in_order(self, make_gate, make_admin):
        _, identity = make_admin()
        seen = []
        gate = make_gate(identity, on_progress=lambda pct, check: seen.append((pct, check)))

        gate.evaluate(_context(required_permissions=(), min_role="moderator"))

        percents = [pct for pct, _ in seen]
        assert percents == sorted(percents)
        assert [check for _, check in seen][:4] == ["start", "auth", "account_lock", "ip"]
        assert gate.progress == 100

    def test_logout_clears_session_and_redirects(self, make_gate, make_admin, sessions):
        _, identity = make_admin()
        redirects = []
        gate = make_gate(identity, on_redirect=redirects.append)
        gate.evaluate(_context())

        gate.logout()

        assert redirects == ["/auth/login"]
        assert sessions.current_token is None
        assert gate.state is GateState.CHECKING


class TestRender:

    def test_verified_renders_children(self, make_gate, make_admin):
        _, identity = make_admin(capabilities=(Capability.CAN_MANAGE_USERS,))
        rendered = make_gate(identity).protect(_context())

        assert rendered.kind is RenderKind.CHILDREN
        assert rendered.payload["capabilities"] == ["can_manage_users"]

    def test_challenge_render(self, make_gate, two_factor_admin):
        _, identity = two_factor_admin
        rendered = make_gate(identity).protect(_context())

        assert rendered.kind is RenderKind.CHALLENGE
        assert rendered.payload["method"] == "authenticator"
        assert rendered.payload["has_session"] is True

    def test_denial_render(self, make_gate):
        rendered = make_gate(None).protect(_context())

        assert rendered.kind is RenderKind.DENIAL
        assert rendered.payload["state"] == "failed"
        assert rendered.payload["checks"] == {"auth": "failed"}
        assert rendered.payload["redirect_to"] == "/"
