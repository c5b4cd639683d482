"""
Test Configuration and Fixtures
===============================
Shared fixtures for the admin gate test suite: a temporary SQLite
store, a fast Argon2 hasher, fake identity/origin sources and a
manual timer factory.
"""

from datetime import datetime, timezone, timedelta

import pytest

from admingate.core.auth.backup_codes import BackupCodeHasher
from admingate.core.auth.directory import AdminDirectory
from admingate.core.auth.identity import (
    AdminRole,
    AuthError,
    AuthIdentity,
    Capability,
    IdentityProvider,
    TwoFactorMethod,
)
from admingate.core.auth.local_mirror import LocalMirror
from admingate.core.auth.session_control import SessionManager
from admingate.core.auth.totp import TotpVerifier, generate_totp_secret
from admingate.core.config import GateConfig, SessionConfig
from admingate.db.store import SQLiteStore
from admingate.security.gate import SecurityGate
from admingate.security.origin import FixedOriginResolver
from admingate.security.policy import StoreSecurityPolicy


class StaticIdentityProvider(IdentityProvider):
    """Returns a fixed identity, or raises a fixed error."""

    def __init__(self, identity=None, error=None):
        self.identity = identity
        self.error = error
        self.calls = 0

    def get_current_identity(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        if self.identity is None:
            raise AuthError("No authenticated user found")
        return self.identity


class ManualTimer:
    """threading.Timer stand-in fired explicitly by tests."""

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.function(*self.args, **self.kwargs)


class ManualTimerFactory:
    def __init__(self):
        self.timers = []

    def __call__(self, interval, function, args=None, kwargs=None):
        timer = ManualTimer(interval, function, args, kwargs)
        self.timers.append(timer)
        return timer

    @property
    def last(self):
        return self.timers[-1] if self.timers else None


class RecordingPolicy(StoreSecurityPolicy):
    """Store-backed policy that also keeps every logged event in memory."""

    def __init__(self, store, **kwargs):
        super().__init__(store, **kwargs)
        self.events = []
        self.attempts = []

    def log_security_event(self, actor_id, actor_label, event_type, severity, context=None):
        name = event_type.value if hasattr(event_type, "value") else event_type
        self.events.append((name, severity.value, dict(context or {})))
        super().log_security_event(actor_id, actor_label, event_type, severity, context)

    def track_login_attempt(self, label, origin, success):
        self.attempts.append((label, origin, success))
        return super().track_login_attempt(label, origin, success)

    def events_of(self, event_type):
        return [e for e in self.events if e[0] == event_type]


def utcnow():
    return datetime.now(timezone.utc)


@pytest.fixture
def store(tmp_path):
    return SQLiteStore(tmp_path / "admingate.db")


@pytest.fixture
def hasher():
    """Argon2id at the minimum cost so tests stay fast."""
    return BackupCodeHasher(memory_cost=8192, time_cost=1, parallelism=1)


@pytest.fixture
def directory(store, hasher):
    return AdminDirectory(store, hasher)


@pytest.fixture
def policy(store):
    return RecordingPolicy(store)


@pytest.fixture
def mirror():
    return LocalMirror({})


@pytest.fixture
def sessions(store, mirror):
    return SessionManager(store, mirror, SessionConfig(monitor_interval_seconds=0.05))


@pytest.fixture
def timers():
    return ManualTimerFactory()


@pytest.fixture
def verifier():
    return TotpVerifier()


@pytest.fixture
def totp_secret():
    return generate_totp_secret()


@pytest.fixture
def make_admin(directory):
    """Provision an admin and return (admin, identity)."""
    counter = {"n": 0}

    def _make(role=AdminRole.ADMIN, capabilities=(), **kwargs):
        counter["n"] += 1
        user_id = kwargs.pop("user_id", f"user-{counter['n']}")
        email = kwargs.pop("email", f"admin{counter['n']}@example.com")
        admin = directory.provision_admin(user_id, email, role=role, capabilities=capabilities, **kwargs)
        return admin, AuthIdentity(user_id=user_id, email=email)

    return _make


@pytest.fixture
def two_factor_admin(make_admin, totp_secret):
    return make_admin(
        role=AdminRole.ADMIN,
        capabilities=(Capability.CAN_MANAGE_USERS,),
        two_factor_enabled=True,
        two_factor_method=TwoFactorMethod.AUTHENTICATOR,
        two_factor_secret=totp_secret,
        backup_codes=("111111", "222222", "333333"),
    )


@pytest.fixture
def make_gate(policy, sessions, directory, timers):
    """Build a SecurityGate around an identity with test-friendly defaults."""
    created = []

    def _make(identity=None, origin="127.0.0.1", **kwargs):
        provider = kwargs.pop("identity_provider", None) or StaticIdentityProvider(identity)
        kwargs.setdefault("config", GateConfig(last_login_stamp_seconds=0))
        kwargs.setdefault("timer_factory", timers)
        kwargs.setdefault("monitor_sessions", False)
        kwargs.setdefault("run_countdown", False)
        gate = SecurityGate(
            provider,
            kwargs.pop("policy", policy),
            kwargs.pop("sessions", sessions),
            directory,
            FixedOriginResolver(origin),
            **kwargs,
        )
        created.append(gate)
        return gate

    yield _make

    for gate in created:
        gate.teardown()


@pytest.fixture
def expired_by():
    """Return a clock shifted forward by the given timedelta."""
    def _shift(delta: timedelta):
        return lambda: utcnow() + delta
    return _shift
