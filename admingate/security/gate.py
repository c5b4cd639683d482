"""
Admin Security Gate
===================

Multi-step verification pipeline deciding whether a privileged
request may proceed.

Pipeline (each step records a CheckResult and may halt the run):
    1. auth                  upstream identity present
    2. account_lock          identity label not locked out
    3. ip                    caller origin allowed
    4. permissions           active admin record exists
    5. role                  role rank >= route minimum
    6. specific_permissions  every required capability granted
    7. session               valid session reused or created
    8. 2fa                   durable two-factor flag set
    9. threat                advisory query scan (never blocks)
   10. finalize              stamp login, log grant, start monitor

States:
    checking -> verified | failed | locked | 2fa_required
    2fa_required -> verified        (challenge success)
    failed -> checking              (retry)

Security Notes:
- The two-factor flag is read from the durable session only
- Terminal failures are logged before they surface
- Only `failed` offers retry; `locked` waits for its redirect
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Final, Iterable, List, Mapping, Optional
from urllib.parse import urlencode

from admingate.core.auth.directory import AdminDirectory
from admingate.core.auth.identity import (
    AdminIdentity,
    AdminRole,
    AuthError,
    AuthIdentity,
    AuthorizationError,
    Capability,
    CredentialsExpired,
    DirectoryError,
    IdentityProvider,
    TwoFactorMethod,
)
from admingate.core.auth.session_control import (
    SessionCreationError,
    SessionManager,
    TwoFactorRequired,
)
from admingate.core.auth.two_factor import ChallengeError, CodeSender, TwoFactorChallenge
from admingate.core.config import ChallengeConfig, GateConfig
from admingate.db.store import StoreError
from admingate.security.audit import SecurityEventType, SecuritySeverity
from admingate.security.origin import OriginResolver
from admingate.security.policy import PolicyError, SecurityPolicy
from admingate.security.threat_scan import scan_query


AUTH_FAILED_MESSAGE: Final[str] = "Authentication failed - Please log in again"
SESSION_EXPIRED_MESSAGE: Final[str] = "Session expired. Please log in again."
LOCKED_MESSAGE: Final[str] = "Account is temporarily locked due to security violations"
NOT_ADMIN_MESSAGE: Final[str] = "You don't have admin privileges"
STORE_UNAVAILABLE_MESSAGE: Final[str] = "Security store unavailable"
SESSION_FAILED_MESSAGE: Final[str] = "Failed to create admin session"


class SecurityGateError(Exception):
    """Raised on an invalid gate transition."""
    pass


class GateState(Enum):
    CHECKING = "checking"
    VERIFIED = "verified"
    FAILED = "failed"
    LOCKED = "locked"
    TWO_FACTOR_REQUIRED = "2fa_required"


class CheckStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    REQUIRED = "required"
    NOT_REQUIRED = "not_required"
    SCANNED = "scanned"


@dataclass(frozen=True)
class CheckResult:
    """Outcome of one pipeline step, for one run only."""
    check_id: str
    status: CheckStatus
    diagnostics: Dict[str, Any] = field(default_factory=dict)


class RunPhase(Enum):
    IDLE = "idle"
    RUNNING = "running"
    SETTLED = "settled"


class RunToken:
    """
    Re-entrancy guard for one gate instance.

    idle -> running -> idle     (verified, 2fa_required)
    idle -> running -> settled  (failed, locked; cleared by retry/teardown)

    Every begin() opens a new generation; reset() invalidates the
    generation of any run still in flight.
    """

    __slots__ = ("_lock", "_phase", "_generation")

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._phase = RunPhase.IDLE
        self._generation = 0

    @property
    def phase(self) -> RunPhase:
        return self._phase

    def begin(self) -> int:
        with self._lock:
            if self._phase is RunPhase.RUNNING:
                raise SecurityGateError("A security evaluation is already in progress")
            if self._phase is RunPhase.SETTLED:
                raise SecurityGateError("Security evaluation has settled; retry or tear down first")
            self._phase = RunPhase.RUNNING
            self._generation += 1
            return self._generation

    def finish(self, generation: int, hold: bool) -> bool:
        """Settle a run. Returns False if the run was invalidated."""
        with self._lock:
            if generation != self._generation:
                return False
            self._phase = RunPhase.SETTLED if hold else RunPhase.IDLE
            return True

    def settle(self) -> None:
        """Hold an idle guard settled (a failure outside a run)."""
        with self._lock:
            self._phase = RunPhase.SETTLED

    def is_current(self, generation: int) -> bool:
        return generation == self._generation

    def reset(self) -> None:
        with self._lock:
            self._generation += 1
            self._phase = RunPhase.IDLE


@dataclass(frozen=True)
class GateContext:
    """Route metadata supplied by the caller of protect()/evaluate()."""
    route: str
    query: Any = ()
    min_role: AdminRole = AdminRole.MODERATOR
    required_permissions: Any = ()
    require_two_factor: bool = True
    user_agent: Optional[str] = None

    def __post_init__(self) -> None:
        query = self.query
        if isinstance(query, Mapping):
            query = query.items()
        object.__setattr__(self, "query", tuple((str(k), str(v)) for k, v in query))
        object.__setattr__(
            self,
            "required_permissions",
            tuple(p if isinstance(p, Capability) else Capability(p) for p in self.required_permissions),
        )
        if isinstance(self.min_role, str):
            object.__setattr__(self, "min_role", AdminRole.from_string(self.min_role))

    @property
    def query_string(self) -> str:
        return urlencode(self.query)


@dataclass
class GateOutcome:
    """Result of one evaluation."""
    state: GateState
    context: GateContext
    reasons: List[str] = field(default_factory=list)
    checks: Dict[str, CheckResult] = field(default_factory=dict)
    admin: Optional[AdminIdentity] = None
    session_token: Optional[str] = field(default=None, repr=False)
    two_factor_method: Optional[TwoFactorMethod] = None
    redirect_to: Optional[str] = None
    redirect_after: Optional[float] = None
    can_retry: bool = False
    progress: int = 0
    debug: List[str] = field(default_factory=list)
    challenge_error: Optional[str] = None
    discarded: bool = False

    def failed_checks(self) -> List[CheckResult]:
        return [c for c in self.checks.values() if c.status is CheckStatus.FAILED]


class _Run:
    """Mutable state of one pipeline run."""

    def __init__(self, context: GateContext, generation: int, show_debug: bool) -> None:
        self.context = context
        self.generation = generation
        self.show_debug = show_debug
        self.identity: Optional[AuthIdentity] = None
        self.admin: Optional[AdminIdentity] = None
        self.origin: str = "unknown"
        self.session_token: Optional[str] = None
        self.checks: Dict[str, CheckResult] = {}
        self.reasons: List[str] = []
        self.debug: List[str] = []
        self.progress = 0
        self.challenge_error: Optional[str] = None

    def record(self, check_id: str, status: CheckStatus, **diagnostics: Any) -> None:
        self.checks[check_id] = CheckResult(check_id, status, diagnostics)

    def note(self, message: str) -> None:
        if self.show_debug:
            self.debug.append(f"[{datetime.now().strftime('%H:%M:%S')}] {message}")

    def halt(self, state: GateState, reason: str) -> GateState:
        self.reasons.append(reason)
        self.note(f"Halted ({state.value}): {reason}")
        return state


def authorize_role(admin: AdminIdentity, minimum: AdminRole) -> None:
    """Raises AuthorizationError if the admin's role ranks below `minimum`."""
    if not admin.role.satisfies(minimum):
        raise AuthorizationError(
            f"Requires {minimum.value} role or higher. Your role: {admin.role.value}"
        )


def authorize_capabilities(admin: AdminIdentity, required: Iterable[Capability]) -> None:
    """Raises AuthorizationError listing every missing capability."""
    missing = admin.missing_capabilities(required)
    if missing:
        raise AuthorizationError(
            f"Missing permissions: {', '.join(cap.value for cap in missing)}"
        )


def _describe_unexpected(error: Exception) -> str:
    if isinstance(error, StoreError):
        return STORE_UNAVAILABLE_MESSAGE
    if isinstance(error, CredentialsExpired):
        return SESSION_EXPIRED_MESSAGE
    return str(error) or "Security system error"


Step = Callable[[_Run], Optional[GateState]]


class SecurityGate:
    """
    Admin access orchestrator.

    One instance guards one protected view (or one request). All
    collaborators are injected.

    Usage:
        gate = SecurityGate(identity_provider, policy, sessions,
                            directory, origin_resolver,
                            on_redirect=navigate)

        outcome = gate.evaluate(GateContext("/admin/users",
                                            min_role=AdminRole.ADMIN))
        if outcome.state is GateState.TWO_FACTOR_REQUIRED:
            outcome = gate.complete_two_factor("123456")
    """

    def __init__(
        self,
        identity_provider: IdentityProvider,
        policy: SecurityPolicy,
        sessions: SessionManager,
        directory: AdminDirectory,
        origin_resolver: OriginResolver,
        config: Optional[GateConfig] = None,
        challenge_config: Optional[ChallengeConfig] = None,
        code_sender: Optional[CodeSender] = None,
        on_progress: Optional[Callable[[int, str], Any]] = None,
        on_redirect: Optional[Callable[[str], Any]] = None,
        timer_factory: Callable[..., Any] = threading.Timer,
        monitor_sessions: bool = True,
        run_countdown: bool = True,
        send_challenge_code: bool = True,
    ) -> None:
        self._identity_provider = identity_provider
        self._policy = policy
        self._sessions = sessions
        self._directory = directory
        self._origin_resolver = origin_resolver
        self._config = config or GateConfig()
        self._challenge_config = challenge_config or ChallengeConfig()
        self._code_sender = code_sender
        self._on_progress = on_progress
        self._on_redirect = on_redirect
        self._timer_factory = timer_factory
        self._monitor_sessions = monitor_sessions
        self._run_countdown = run_countdown
        self._send_challenge_code = send_challenge_code

        self._run_token = RunToken()
        self._lock = threading.RLock()
        self._state = GateState.CHECKING
        self._outcome: Optional[GateOutcome] = None
        self._challenge: Optional[TwoFactorChallenge] = None
        self._pending_run: Optional[_Run] = None
        self._redirect_timer: Optional[Any] = None
        self._pending_redirect: Optional[tuple[str, float]] = None
        self._redirect_seq = 0
        self._redirect_generation = 0
        self._progress = 100 if sessions.mirror.verified_at else 0
        self._log = logging.getLogger("admingate.gate")

        self._steps: tuple[Step, ...] = (
            self._check_authentication,
            self._check_account_lock,
            self._check_origin,
            self._check_directory,
            self._check_role,
            self._check_capabilities,
            self._establish_session,
            self._check_two_factor,
            self._scan_threats,
        )

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    @property
    def state(self) -> GateState:
        return self._state

    @property
    def outcome(self) -> Optional[GateOutcome]:
        return self._outcome

    @property
    def progress(self) -> int:
        return self._progress

    @property
    def run_phase(self) -> RunPhase:
        return self._run_token.phase

    @property
    def challenge(self) -> Optional[TwoFactorChallenge]:
        return self._challenge

    @property
    def pending_redirect(self) -> Optional[tuple[str, float]]:
        """(target, delay) of the armed redirect timer, if any."""
        return self._pending_redirect

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, context: GateContext) -> GateOutcome:
        """
        Run the pipeline.

        Raises:
            SecurityGateError: A run is in flight, or a failed/locked
                run has not been retried or torn down
        """
        generation = self._run_token.begin()
        self._cancel_redirect()
        self._close_challenge()

        run = _Run(context, generation, self._config.show_debug)
        with self._lock:
            self._state = GateState.CHECKING
            self._outcome = None
        self._set_progress(run, 0, "start")
        run.note("Starting security checks...")
        run.note(f"Path: {context.route}")
        run.note(f"Required role: {context.min_role.value}")
        run.note(f"Required permissions: {', '.join(p.value for p in context.required_permissions)}")

        try:
            state = self._run_chain(run)
        except Exception as e:
            reason = _describe_unexpected(e)
            self._log.error("Security check error on %s: %s", context.route, e)
            state = run.halt(GateState.FAILED, reason)

        outcome = self._build_outcome(run, state)
        hold = state in (GateState.FAILED, GateState.LOCKED)
        if not self._run_token.finish(generation, hold):
            self._log.info("Discarding result of a torn-down evaluation on %s", context.route)
            if self._pending_run is run:
                self._close_challenge()
            return replace(outcome, discarded=True)

        self._apply(outcome)
        return outcome

    def _run_chain(self, run: _Run) -> GateState:
        for step in self._steps:
            if not self._run_token.is_current(run.generation):
                return GateState.CHECKING
            halted = step(run)
            if halted is not None:
                return halted
        return self._finalize(run)

    def _set_progress(self, run: _Run, percent: int, check_id: str) -> None:
        run.progress = percent
        if self._run_token.is_current(run.generation):
            self._progress = percent
            if self._on_progress is not None:
                self._on_progress(percent, check_id)

    # Step 1
    def _check_authentication(self, run: _Run) -> Optional[GateState]:
        self._set_progress(run, 15, "auth")
        run.note("Step 1: Authentication check")
        try:
            identity = self._identity_provider.get_current_identity()
            if identity is None:
                raise AuthError("No authenticated user found")
        except AuthError as e:
            message = str(e) or "No authenticated user found"
            run.record("auth", CheckStatus.FAILED, error=message)
            self._policy.log_security_event(
                "system",
                "unknown",
                SecurityEventType.AUTH_FAILED,
                SecuritySeverity.HIGH,
                {"path": run.context.route, "error": message},
            )
            reason = SESSION_EXPIRED_MESSAGE if isinstance(e, CredentialsExpired) else AUTH_FAILED_MESSAGE
            return run.halt(GateState.FAILED, reason)

        run.identity = identity
        run.record("auth", CheckStatus.SUCCESS, email=identity.email, user_id=identity.user_id)
        run.note(f"User authenticated: {identity.email}")
        return None

    # Step 2
    def _check_account_lock(self, run: _Run) -> Optional[GateState]:
        self._set_progress(run, 30, "account_lock")
        run.note("Step 2: Account lock check")
        email = run.identity.email
        try:
            locked = self._policy.is_account_locked(email)
        except PolicyError as e:
            self._log.warning("Account lock check unavailable for %s, continuing: %s", email, e)
            run.record("account_lock", CheckStatus.SUCCESS, locked=False, degraded=True)
            return None

        if locked:
            run.record("account_lock", CheckStatus.FAILED, locked=True)
            return run.halt(GateState.LOCKED, LOCKED_MESSAGE)

        run.record("account_lock", CheckStatus.SUCCESS, locked=False)
        return None

    # Step 3
    def _check_origin(self, run: _Run) -> Optional[GateState]:
        self._set_progress(run, 45, "ip")
        run.note("Step 3: IP security check")
        run.origin = self._origin_resolver.resolve()
        run.note(f"Detected IP: {run.origin}")

        try:
            check = self._policy.is_origin_allowed(run.origin)
        except PolicyError as e:
            run.record("ip", CheckStatus.FAILED, ip=run.origin, error=str(e))
            return run.halt(GateState.FAILED, "IP security check unavailable")

        if not check.allowed:
            run.record("ip", CheckStatus.FAILED, ip=run.origin, reason=check.reason)
            self._policy.log_security_event(
                "system",
                run.identity.email,
                SecurityEventType.IP_BLOCKED,
                SecuritySeverity.CRITICAL,
                {"ip": run.origin, "path": run.context.route, "reason": check.reason},
            )
            return run.halt(GateState.FAILED, f"IP address not authorized: {check.reason}")

        run.record("ip", CheckStatus.SUCCESS, ip=run.origin, allowed=True)
        return None

    # Step 4
    def _check_directory(self, run: _Run) -> Optional[GateState]:
        self._set_progress(run, 60, "permissions")
        run.note("Step 4: Admin permissions check")
        try:
            run.admin = self._lookup_admin(run.identity)
        except DirectoryError as e:
            run.record("permissions", CheckStatus.FAILED, error=str(e))
            self._policy.track_login_attempt(run.identity.email, run.origin, False)
            return run.halt(GateState.FAILED, NOT_ADMIN_MESSAGE)

        run.record(
            "permissions",
            CheckStatus.SUCCESS,
            role=run.admin.role.value,
            is_active=run.admin.is_active,
        )
        run.note(f"Admin found: {run.admin.email} (Role: {run.admin.role.value})")
        return None

    def _lookup_admin(self, identity: AuthIdentity) -> AdminIdentity:
        admin = self._directory.find_active_admin(identity.user_id)
        if admin is None or not admin.is_active:
            raise DirectoryError("No admin record found")
        return admin

    # Step 5
    def _check_role(self, run: _Run) -> Optional[GateState]:
        self._set_progress(run, 70, "role")
        run.note("Step 5: Role hierarchy check")
        minimum = run.context.min_role
        try:
            authorize_role(run.admin, minimum)
        except AuthorizationError as e:
            run.record("role", CheckStatus.FAILED, current=run.admin.role.value, required=minimum.value)
            return run.halt(GateState.FAILED, str(e))

        run.record("role", CheckStatus.SUCCESS, current=run.admin.role.value, required=minimum.value)
        return None

    # Step 6
    def _check_capabilities(self, run: _Run) -> Optional[GateState]:
        self._set_progress(run, 75, "specific_permissions")
        required = run.context.required_permissions
        if not required:
            run.record("specific_permissions", CheckStatus.NOT_REQUIRED)
            return None

        run.note("Step 6: Specific permissions check")
        try:
            authorize_capabilities(run.admin, required)
        except AuthorizationError as e:
            missing = [cap.value for cap in run.admin.missing_capabilities(required)]
            run.record("specific_permissions", CheckStatus.FAILED, missing=missing)
            return run.halt(GateState.FAILED, str(e))

        run.record(
            "specific_permissions",
            CheckStatus.SUCCESS,
            granted=[cap.value for cap in required],
        )
        return None

    # Step 7
    def _establish_session(self, run: _Run) -> Optional[GateState]:
        self._set_progress(run, 85, "session")
        run.note("Step 7: Session management")
        admin = run.admin
        mirror = self._sessions.mirror
        deferred = False

        try:
            if mirror.is_fresh() and self._sessions.is_session_valid():
                run.session_token = self._sessions.current_token
                run.note("Existing session valid")
            else:
                run.session_token = self._sessions.create_session(
                    admin.id,
                    admin.email,
                    run.origin,
                    user_agent=run.context.user_agent,
                )
                run.note("New session created")
        except TwoFactorRequired:
            run.session_token = None
            deferred = True
            run.note("Session creation deferred: 2FA required by store")
        except SessionCreationError as e:
            run.record("session", CheckStatus.FAILED, error=str(e))
            return run.halt(GateState.FAILED, SESSION_FAILED_MESSAGE)

        expires_at = mirror.expires_at if run.session_token else None
        run.record(
            "session",
            CheckStatus.SUCCESS,
            has_session=run.session_token is not None,
            deferred=deferred,
            expires=expires_at.isoformat() if expires_at else None,
        )
        return None

    # Step 8
    def _check_two_factor(self, run: _Run) -> Optional[GateState]:
        self._set_progress(run, 95, "2fa")
        run.note("Step 8: 2FA check")
        admin = run.admin

        if not (run.context.require_two_factor and admin.two_factor_enabled):
            run.record("2fa", CheckStatus.NOT_REQUIRED)
            return None

        if run.session_token and self._sessions.is_two_factor_verified(run.session_token):
            run.record("2fa", CheckStatus.SUCCESS, method=admin.two_factor_method.value, verified=True)
            return None

        run.record("2fa", CheckStatus.REQUIRED, method=admin.two_factor_method.value)
        run.note(
            "2FA verification required (session exists)" if run.session_token
            else "2FA verification required (pre-session check)"
        )
        self._log.info("Two-factor verification required for %s", admin.email)
        self._open_challenge(run)
        return GateState.TWO_FACTOR_REQUIRED

    def _open_challenge(self, run: _Run) -> None:
        challenge = TwoFactorChallenge(
            run.admin,
            self._policy,
            self._sessions,
            self._directory,
            origin=run.origin,
            session_token=run.session_token,
            config=self._challenge_config,
            code_sender=self._code_sender,
            user_agent=run.context.user_agent,
        )
        try:
            challenge.start(
                run_countdown=self._run_countdown,
                send_code=self._send_challenge_code,
            )
        except ChallengeError as e:
            run.challenge_error = str(e)

        with self._lock:
            self._challenge = challenge
            self._pending_run = run

    # Step 9
    def _scan_threats(self, run: _Run) -> Optional[GateState]:
        self._set_progress(run, 100, "threat")
        run.note("Step 9: Threat detection scan")
        matches = scan_query(run.context.query)
        if matches:
            run.note(f"Suspicious patterns detected: {', '.join(matches)}")
            self._policy.log_security_event(
                run.admin.id,
                run.admin.email,
                SecurityEventType.SUSPICIOUS_REQUEST,
                SecuritySeverity.MEDIUM,
                {
                    "patterns": matches,
                    "params": run.context.query_string,
                    "clientIP": run.origin,
                    "path": run.context.route,
                },
            )
        run.record("threat", CheckStatus.SCANNED, suspicious_patterns=len(matches))
        return None

    # Step 10
    def _finalize(self, run: _Run) -> GateState:
        admin = run.admin
        run.note("All security checks passed")

        try:
            if self._directory.stamp_last_login(admin, self._config.last_login_stamp_seconds):
                run.note("Last login timestamp updated")
        except StoreError as e:
            self._log.warning("Failed to stamp last login for %s: %s", admin.email, e)

        self._policy.log_security_event(
            admin.id,
            admin.email,
            SecurityEventType.ADMIN_ACCESS_GRANTED,
            SecuritySeverity.LOW,
            {
                "path": run.context.route,
                "role": admin.role.value,
                "permissions": [cap.value for cap in run.context.required_permissions],
                "clientIP": run.origin,
                "checks_passed": len(run.checks),
            },
        )

        if self._monitor_sessions:
            self._sessions.start_session_monitoring()
        self._sessions.mirror.stamp_verified()
        return GateState.VERIFIED

    # ------------------------------------------------------------------
    # Outcome
    # ------------------------------------------------------------------

    def _build_outcome(self, run: _Run, state: GateState) -> GateOutcome:
        redirect_to = redirect_after = None
        if state is GateState.FAILED:
            redirect_to = self._config.failed_redirect
            redirect_after = self._config.failed_redirect_seconds
        elif state is GateState.LOCKED:
            redirect_to = self._config.locked_redirect
            redirect_after = self._config.locked_redirect_seconds

        return GateOutcome(
            state=state,
            context=run.context,
            reasons=list(run.reasons),
            checks=dict(run.checks),
            admin=run.admin,
            session_token=run.session_token,
            two_factor_method=run.admin.two_factor_method if run.admin else None,
            redirect_to=redirect_to,
            redirect_after=redirect_after,
            can_retry=state is GateState.FAILED,
            progress=run.progress,
            debug=list(run.debug),
            challenge_error=run.challenge_error,
        )

    def _apply(self, outcome: GateOutcome) -> None:
        with self._lock:
            self._state = outcome.state
            self._outcome = outcome

        if outcome.state in (GateState.FAILED, GateState.LOCKED):
            self._log.warning(
                "Admin access %s on %s: %s",
                outcome.state.value,
                outcome.context.route,
                "; ".join(outcome.reasons),
                extra={"route": outcome.context.route, "state": outcome.state.value},
            )
            self._arm_redirect(outcome.redirect_to, outcome.redirect_after)
        elif outcome.state is GateState.VERIFIED:
            self._log.info(
                "Admin access granted on %s",
                outcome.context.route,
                extra={
                    "route": outcome.context.route,
                    "state": outcome.state.value,
                    "admin_id": outcome.admin.id if outcome.admin else None,
                },
            )

    # ------------------------------------------------------------------
    # Redirect timers
    # ------------------------------------------------------------------

    def _arm_redirect(self, target: str, delay: float) -> None:
        self._cancel_redirect()
        self._redirect_seq += 1
        generation = self._redirect_seq
        timer = self._timer_factory(delay, self._fire_redirect, args=(target, generation))
        timer.daemon = True
        with self._lock:
            self._redirect_timer = timer
            self._redirect_generation = generation
            self._pending_redirect = (target, delay)
        timer.start()

    def _fire_redirect(self, target: str, generation: int) -> None:
        with self._lock:
            if self._redirect_timer is None or self._redirect_generation != generation:
                return
            self._redirect_timer = None
            self._pending_redirect = None
        self._redirect(target)

    def _cancel_redirect(self) -> None:
        with self._lock:
            timer = self._redirect_timer
            self._redirect_timer = None
            self._pending_redirect = None
        if timer is not None:
            timer.cancel()

    def _redirect(self, target: str) -> None:
        self._log.debug("Redirecting to %s", target)
        if self._on_redirect is not None:
            self._on_redirect(target)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def retry(self) -> GateOutcome:
        """
        Re-run the pipeline from step 1 after a failure.

        Raises:
            SecurityGateError: Current state is not `failed`
        """
        with self._lock:
            outcome = self._outcome
            state = self._state
        if state is GateState.LOCKED:
            raise SecurityGateError("A locked account cannot retry")
        if state is not GateState.FAILED or outcome is None:
            raise SecurityGateError("Retry is only available after a failed check")

        self._cancel_redirect()
        self._run_token.reset()
        return self.evaluate(outcome.context)

    def complete_two_factor(self, code: str, backup: bool = False) -> GateOutcome:
        """
        Submit a second factor to the pending challenge.

        On success the pipeline resumes at finalize.

        Raises:
            SecurityGateError: No challenge is pending
            ChallengeError: Wrong, expired or malformed code (inline)
        """
        with self._lock:
            challenge = self._challenge
            run = self._pending_run
            if challenge is None or run is None or self._state is not GateState.TWO_FACTOR_REQUIRED:
                raise SecurityGateError("No two-factor challenge is pending")

        if backup:
            token = challenge.verify_backup_code(code)
        else:
            token = challenge.verify_code(code)

        run.session_token = token
        run.record("2fa", CheckStatus.SUCCESS, method=run.admin.two_factor_method.value, verified=True)
        run.note("2FA verification successful")

        with self._lock:
            self._challenge = None
            self._pending_run = None

        try:
            state = self._finalize(run)
        except Exception as e:
            self._log.error("Failed to finalize after two-factor verification: %s", e)
            state = run.halt(GateState.FAILED, _describe_unexpected(e))

        outcome = self._build_outcome(run, state)
        if state is GateState.FAILED:
            self._run_token.settle()
        self._apply(outcome)
        return outcome

    def resend_two_factor(self) -> None:
        """Re-issue the pending challenge's code."""
        challenge = self._require_challenge()
        challenge.resend()

    def cancel_two_factor(self) -> None:
        """Abandon the pending challenge: full logout, redirect home."""
        challenge = self._require_challenge()
        challenge.cancel()
        with self._lock:
            self._challenge = None
            self._pending_run = None
            self._state = GateState.CHECKING
            self._outcome = None
        self._run_token.reset()
        self._redirect(self._config.failed_redirect)

    def _require_challenge(self) -> TwoFactorChallenge:
        with self._lock:
            challenge = self._challenge
        if challenge is None:
            raise SecurityGateError("No two-factor challenge is pending")
        return challenge

    def logout(self) -> None:
        """Revoke the session, stop monitoring and leave the admin area."""
        self._close_challenge()
        self._cancel_redirect()
        self._sessions.logout()
        with self._lock:
            self._state = GateState.CHECKING
            self._outcome = None
        self._run_token.reset()
        self._redirect(self._config.logout_redirect)

    def teardown(self) -> None:
        """Clear every timer, reset the guard and discard in-flight results."""
        self._cancel_redirect()
        self._close_challenge()
        self._sessions.stop_session_monitoring()
        self._run_token.reset()

    def _close_challenge(self) -> None:
        with self._lock:
            challenge = self._challenge
            self._challenge = None
            self._pending_run = None
        if challenge is not None:
            challenge.close()

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def protect(self, context: GateContext) -> Rendered:
        """
        Evaluate (if needed) and decide what the protected view renders.

        A settled failure is rendered again without re-running.
        """
        phase = self._run_token.phase
        if phase is RunPhase.RUNNING:
            return Rendered(RenderKind.LOADING, {"progress": self._progress})
        if phase is RunPhase.SETTLED and self._outcome is not None:
            return render(self._outcome)

        try:
            outcome = self.evaluate(context)
        except SecurityGateError:
            return Rendered(RenderKind.LOADING, {"progress": self._progress})
        return render(outcome)


class RenderKind(Enum):
    LOADING = "loading"
    CHALLENGE = "challenge"
    DENIAL = "denial"
    CHILDREN = "children"


@dataclass(frozen=True)
class Rendered:
    """What a protected view shows for an outcome."""
    kind: RenderKind
    payload: Dict[str, Any] = field(default_factory=dict)


def render(outcome: GateOutcome) -> Rendered:
    """Map an outcome to loading / challenge / denial / children."""
    if outcome.state is GateState.VERIFIED:
        admin = outcome.admin
        return Rendered(RenderKind.CHILDREN, {
            "admin_id": admin.id if admin else None,
            "email": admin.email if admin else None,
            "role": admin.role.value if admin else None,
            "capabilities": sorted(cap.value for cap in admin.capabilities) if admin else [],
            "debug": outcome.debug,
        })

    if outcome.state is GateState.TWO_FACTOR_REQUIRED:
        return Rendered(RenderKind.CHALLENGE, {
            "state": outcome.state.value,
            "method": outcome.two_factor_method.value if outcome.two_factor_method else None,
            "has_session": outcome.session_token is not None,
            "error": outcome.challenge_error,
            "debug": outcome.debug,
        })

    if outcome.state in (GateState.FAILED, GateState.LOCKED):
        return Rendered(RenderKind.DENIAL, {
            "state": outcome.state.value,
            "reasons": list(outcome.reasons),
            "redirect_to": outcome.redirect_to,
            "redirect_after": outcome.redirect_after,
            "can_retry": outcome.can_retry,
            "checks": {cid: c.status.value for cid, c in outcome.checks.items()},
            "debug": outcome.debug,
        })

    return Rendered(RenderKind.LOADING, {"progress": outcome.progress})
