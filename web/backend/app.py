"""
AdminGate Web API
=================
Flask backend exposing the admin security gate.

The upstream identity is established by an authenticating proxy and
arrives in X-Authenticated-User-Id / X-Authenticated-Email headers.
The session mirror lives in Flask's signed cookie session.
"""

import os
import secrets
from datetime import datetime, timezone
from functools import wraps

from flask import Flask, request, jsonify, g, session
from werkzeug.middleware.proxy_fix import ProxyFix

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
from admingate.core.auth.two_factor import ChallengeError, TwoFactorEnrollment
from admingate.core.config import AdminGateConfig
from admingate.core.logging import configure_root_logger
from admingate.db.store import SQLiteStore, StoreError
from admingate.security.audit import TamperAwareAuditLog
from admingate.security.gate import (
    GateContext,
    GateState,
    RenderKind,
    SecurityGate,
    SecurityGateError,
    render,
)
from admingate.security.origin import CallableOriginResolver
from admingate.security.policy import StoreSecurityPolicy


USER_ID_HEADER = "X-Authenticated-User-Id"
EMAIL_HEADER = "X-Authenticated-Email"

DENIAL_STATUS = {
    GateState.FAILED.value: 403,
    GateState.LOCKED.value: 423,
}


class HeaderIdentityProvider(IdentityProvider):
    """Identity asserted by the authenticating proxy."""

    def get_current_identity(self):
        user_id = request.headers.get(USER_ID_HEADER, "").strip()
        email = request.headers.get(EMAIL_HEADER, "").strip()
        if not user_id or not email:
            raise AuthError("No authenticated user found")
        return AuthIdentity(user_id=user_id, email=email)


def _client_origin():
    return request.remote_addr


def _default_store(config):
    database_url = os.environ.get("DATABASE_URL")
    enforce = config.session.enforce_two_factor_on_create
    if database_url:
        from admingate.db.postgres import PostgresStore
        return PostgresStore(database_url, enforce_two_factor_sessions=enforce)
    config.ensure_directories()
    return SQLiteStore(config.paths.database_path, enforce_two_factor_sessions=enforce)


def create_app(config=None, store=None, identity_provider=None, policy=None,
               origin_resolver=None, code_sender=None, directory=None):
    """
    Build the Flask application.

    Every collaborator may be injected; defaults come from the
    environment (DATABASE_URL, SECRET_KEY, PROXY_HOPS, ADMINGATE_* overrides).
    """
    config = config or AdminGateConfig.load()

    configure_root_logger(
        log_dir=config.paths.log_dir,
        level=config.logging.level,
        enable_console=config.logging.enable_console,
        enable_file=config.logging.enable_file,
        json_format=config.logging.json_file,
        max_file_size=config.logging.max_file_size_bytes,
        backup_count=config.logging.backup_count,
    )

    store = store or _default_store(config)
    if policy is None:
        audit_log = None
        if config.logging.audit_file:
            audit_log = TamperAwareAuditLog(config.paths.audit_log_path)
        policy = StoreSecurityPolicy(store, config.policy, config.challenge, audit_log=audit_log)
    identity_provider = identity_provider or HeaderIdentityProvider()
    origin_resolver = origin_resolver or CallableOriginResolver(_client_origin)
    directory = directory or AdminDirectory(store)
    enrollment = TwoFactorEnrollment(directory, policy, config.challenge, code_sender=code_sender)

    app = Flask(__name__)
    proxy_hops = int(os.environ.get("PROXY_HOPS", 1))
    if proxy_hops > 0:
        # X-Forwarded-For from the authenticating proxy becomes remote_addr
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=proxy_hops, x_proto=proxy_hops)
    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', secrets.token_hex(32))
    app.config['SESSION_COOKIE_HTTPONLY'] = True
    app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
    app.extensions['admingate'] = {
        "config": config,
        "store": store,
        "policy": policy,
        "directory": directory,
    }

    # ============================================================
    # CORS
    # ============================================================

    @app.after_request
    def add_cors_headers(response):
        response.headers['Access-Control-Allow-Origin'] = '*'
        response.headers['Access-Control-Allow-Methods'] = 'GET, POST, OPTIONS'
        response.headers['Access-Control-Allow-Headers'] = (
            f'Content-Type, Authorization, {USER_ID_HEADER}, {EMAIL_HEADER}'
        )
        response.headers['Access-Control-Max-Age'] = '3600'
        return response

    @app.route('/api/<path:path>', methods=['OPTIONS'])
    def handle_options(path):
        return app.make_response('')

    @app.errorhandler(StoreError)
    def store_unavailable(error):
        app.logger.error("Security store error: %s", error)
        return jsonify({"error": "Security store unavailable"}), 503

    # ============================================================
    # GATE PLUMBING
    # ============================================================

    def build_gate(send_challenge_code=True):
        sessions = SessionManager(store, LocalMirror(session), config.session)
        gate = SecurityGate(
            identity_provider,
            policy,
            sessions,
            directory,
            origin_resolver,
            config=config.gate,
            challenge_config=config.challenge,
            code_sender=code_sender,
            monitor_sessions=False,
            run_countdown=False,
            send_challenge_code=send_challenge_code,
        )
        g.admin_gate = gate
        return gate

    @app.teardown_request
    def teardown_gate(exception):
        gate = g.pop('admin_gate', None)
        if gate is not None:
            gate.teardown()

    def request_context(min_role=AdminRole.MODERATOR, permissions=(), require_two_factor=True):
        return GateContext(
            route=request.path,
            query=list(request.args.items(multi=True)),
            min_role=min_role,
            required_permissions=permissions,
            require_two_factor=require_two_factor,
            user_agent=request.headers.get("User-Agent"),
        )

    def rendered_response(rendered):
        payload = dict(rendered.payload)
        if not config.gate.show_debug:
            payload.pop("debug", None)

        if rendered.kind is RenderKind.CHALLENGE:
            return jsonify({"status": "2fa_required", **payload}), 401
        if rendered.kind is RenderKind.DENIAL:
            return jsonify({"status": payload["state"], **payload}), DENIAL_STATUS[payload["state"]]
        if rendered.kind is RenderKind.LOADING:
            return jsonify({"status": "checking", **payload}), 202
        return jsonify({"status": "verified", **payload}), 200

    def protect_route(min_role=AdminRole.MODERATOR, permissions=(), require_two_factor=True):
        """View decorator running the security gate before the view."""
        def decorator(f):
            @wraps(f)
            def wrapper(*args, **kwargs):
                gate = build_gate()
                rendered = gate.protect(request_context(min_role, permissions, require_two_factor))
                if rendered.kind is not RenderKind.CHILDREN:
                    return rendered_response(rendered)
                g.admin = gate.outcome.admin
                return f(*args, **kwargs)
            return wrapper
        return decorator

    def pending_challenge_gate():
        """Evaluate the 2FA endpoint itself; returns (gate, outcome)."""
        gate = build_gate(send_challenge_code=False)
        outcome = gate.evaluate(request_context())
        return gate, outcome

    def json_body():
        return request.get_json(silent=True) or {}

    # ============================================================
    # HEALTH CHECK
    # ============================================================

    @app.route("/api/health")
    def health():
        return jsonify({
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat()
        })

    # ============================================================
    # PROTECTED ADMIN ROUTES
    # ============================================================

    @app.route("/api/admin/dashboard")
    @protect_route(min_role=AdminRole.MODERATOR)
    def dashboard():
        return jsonify({
            "status": "verified",
            "admin_id": g.admin.id,
            "email": g.admin.email,
            "role": g.admin.role.value,
        })

    @app.route("/api/admin/users")
    @protect_route(min_role=AdminRole.ADMIN, permissions=(Capability.CAN_MANAGE_USERS,))
    def manage_users():
        return jsonify({"status": "verified", "section": "users", "role": g.admin.role.value})

    @app.route("/api/admin/settings")
    @protect_route(min_role=AdminRole.SUPER_ADMIN, permissions=(Capability.CAN_MANAGE_SETTINGS,))
    def manage_settings():
        return jsonify({"status": "verified", "section": "settings", "role": g.admin.role.value})

    # ============================================================
    # TWO-FACTOR CHALLENGE
    # ============================================================

    def submit_second_factor(backup):
        code = str(json_body().get("code", ""))
        gate, outcome = pending_challenge_gate()

        if outcome.state is GateState.VERIFIED:
            return jsonify({"status": "verified"})
        if outcome.state is not GateState.TWO_FACTOR_REQUIRED:
            return rendered_response(render(outcome))

        try:
            outcome = gate.complete_two_factor(code, backup=backup)
        except ChallengeError as e:
            return jsonify({"status": "2fa_required", "error": str(e)}), 400

        if outcome.state is not GateState.VERIFIED:
            return rendered_response(render(outcome))
        return jsonify({"status": "verified"})

    @app.route("/api/admin/2fa/verify", methods=["POST"])
    def verify_two_factor():
        return submit_second_factor(backup=False)

    @app.route("/api/admin/2fa/backup", methods=["POST"])
    def verify_backup_code():
        return submit_second_factor(backup=True)

    @app.route("/api/admin/2fa/resend", methods=["POST"])
    def resend_two_factor():
        gate, outcome = pending_challenge_gate()
        if outcome.state is not GateState.TWO_FACTOR_REQUIRED:
            return jsonify({"error": "No two-factor challenge is pending"}), 409
        try:
            gate.resend_two_factor()
        except ChallengeError as e:
            return jsonify({"status": "2fa_required", "error": str(e)}), 502
        return jsonify({"status": "2fa_required", "message": "Verification code re-issued"})

    @app.route("/api/admin/2fa/cancel", methods=["POST"])
    def cancel_two_factor():
        gate, outcome = pending_challenge_gate()
        if outcome.state is not GateState.TWO_FACTOR_REQUIRED:
            return jsonify({"error": "No two-factor challenge is pending"}), 409
        try:
            gate.cancel_two_factor()
        except SecurityGateError as e:
            return jsonify({"error": str(e)}), 409
        return jsonify({"status": "cancelled", "redirect_to": config.gate.failed_redirect})

    @app.route("/api/admin/logout", methods=["POST"])
    def logout():
        build_gate().logout()
        return jsonify({
            "message": "Logged out successfully",
            "redirect_to": config.gate.logout_redirect,
        })

    # ============================================================
    # TWO-FACTOR ENROLLMENT
    # ============================================================

    # Admins who already have a second factor must pass it before replacing it
    @app.route("/api/admin/2fa/enroll", methods=["POST"])
    @protect_route()
    def enroll_two_factor():
        method_name = json_body().get("method", TwoFactorMethod.AUTHENTICATOR.value)
        try:
            method = TwoFactorMethod(method_name)
        except ValueError:
            return jsonify({"error": f"Unknown two-factor method: {method_name}"}), 400

        try:
            start = enrollment.begin(g.admin, method)
        except ChallengeError as e:
            return jsonify({"error": str(e)}), 502

        return jsonify({
            "secret": start.secret,
            "provisioning_uri": start.provisioning_uri,
            "method": start.method.value,
        })

    @app.route("/api/admin/2fa/confirm", methods=["POST"])
    @protect_route()
    def confirm_two_factor():
        data = json_body()
        secret = data.get("secret", "")
        code = str(data.get("code", ""))
        try:
            method = TwoFactorMethod(data.get("method", TwoFactorMethod.AUTHENTICATOR.value))
        except ValueError:
            return jsonify({"error": "Unknown two-factor method"}), 400

        if not secret:
            return jsonify({"error": "Secret is required"}), 400

        try:
            backup_codes = enrollment.confirm(g.admin.id, secret, code, method)
        except ChallengeError as e:
            return jsonify({"error": str(e)}), 400

        return jsonify({
            "message": "Two-factor authentication enabled",
            "backup_codes": backup_codes,
        })

    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port)
