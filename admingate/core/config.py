"""
Gate Configuration Module
=========================

Provides immutable, environment-aware configuration with security-first defaults.

Security Features:
- Immutable configuration after initialization
- Environment variable override support
- No secrets in default values
- Type-safe configuration access
- OS-aware path handling
"""

from __future__ import annotations

import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final, Any, Optional
import hashlib


# Keys that must never be read from the environment
_SENSITIVE_KEYS: Final[frozenset[str]] = frozenset({
    "password", "secret", "key", "token", "api_key",
    "private", "credential", "salt"
})

_VALID_LOG_LEVELS: Final[frozenset[str]] = frozenset({
    "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"
})


def _is_sensitive_key(key: str) -> bool:
    """Check if a configuration key might contain sensitive data."""
    key_lower = key.lower()
    return any(sensitive in key_lower for sensitive in _SENSITIVE_KEYS)


def _get_default_data_dir() -> Path:
    """Get OS-appropriate default data directory."""
    system = platform.system().lower()

    if system == "windows":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
    elif system == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:  # Linux and others
        base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))

    return base / "AdminGate"


def _get_default_config_dir() -> Path:
    """Get OS-appropriate default config directory."""
    system = platform.system().lower()

    if system == "windows":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
    elif system == "darwin":
        base = Path.home() / "Library" / "Preferences"
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))

    return base / "AdminGate"


def _get_default_log_dir() -> Path:
    """Get OS-appropriate default log directory."""
    system = platform.system().lower()

    if system == "windows":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
        return base / "AdminGate" / "Logs"
    elif system == "darwin":
        return Path.home() / "Library" / "Logs" / "AdminGate"
    else:
        return Path(os.environ.get("XDG_STATE_HOME", Path.home() / ".local" / "state")) / "AdminGate" / "logs"


@dataclass(frozen=True, slots=True)
class PathConfig:
    """Immutable path configuration with OS-aware defaults."""

    data_dir: Path = field(default_factory=_get_default_data_dir)
    config_dir: Path = field(default_factory=_get_default_config_dir)
    log_dir: Path = field(default_factory=_get_default_log_dir)

    def __post_init__(self) -> None:
        """Validate paths after initialization."""
        for field_name in ["data_dir", "config_dir", "log_dir"]:
            path = getattr(self, field_name)
            if not path.is_absolute():
                raise ValueError(f"{field_name} must be an absolute path: {path}")

    @property
    def database_path(self) -> Path:
        """Default SQLite store location."""
        return self.data_dir / "admingate.db"

    @property
    def local_mirror_path(self) -> Path:
        """Default location of the process-local session mirror."""
        return self.data_dir / "session_mirror.json"

    @property
    def audit_log_path(self) -> Path:
        """Default location of the chained security event log."""
        return self.log_dir / "security_events.jsonl"


@dataclass(frozen=True, slots=True)
class SessionConfig:
    """Admin session lifetime and monitoring settings."""

    ttl_seconds: int = 7200  # 2 hours
    monitor_interval_seconds: float = 60.0
    retention_days: int = 30
    enforce_two_factor_on_create: bool = False

    def __post_init__(self) -> None:
        if self.ttl_seconds < 60:
            raise ValueError("Session TTL must be at least 60 seconds")
        if self.monitor_interval_seconds <= 0:
            raise ValueError("Monitor interval must be positive")
        if self.retention_days < 1:
            raise ValueError("Retention must be at least one day")


@dataclass(frozen=True, slots=True)
class PolicyConfig:
    """Lockout and origin allow-list settings."""

    max_failed_attempts: int = 5
    lockout_minutes: int = 15
    enable_ip_allowlist: bool = False
    allowed_ips: tuple[str, ...] = ()
    origin_lookup_url: str = "https://api.ipify.org?format=json"
    origin_timeout_seconds: float = 5.0

    def __post_init__(self) -> None:
        if self.max_failed_attempts < 1:
            raise ValueError("max_failed_attempts must be at least 1")
        if self.lockout_minutes < 1:
            raise ValueError("lockout_minutes must be at least 1")
        if self.origin_timeout_seconds <= 0:
            raise ValueError("origin_timeout_seconds must be positive")


@dataclass(frozen=True, slots=True)
class ChallengeConfig:
    """Second-factor challenge settings."""

    code_digits: int = 6
    time_step_seconds: int = 30
    valid_window: int = 1
    countdown_seconds: int = 30
    backup_code_count: int = 10
    issuer: str = "AdminPanel"

    def __post_init__(self) -> None:
        if self.code_digits not in (6, 8):
            raise ValueError("code_digits must be 6 or 8")
        if self.valid_window < 0:
            raise ValueError("valid_window cannot be negative")
        if self.countdown_seconds < 1:
            raise ValueError("countdown_seconds must be at least 1")
        if self.backup_code_count < 1:
            raise ValueError("backup_code_count must be at least 1")


@dataclass(frozen=True, slots=True)
class GateConfig:
    """Redirect and bookkeeping behaviour of the security gate."""

    failed_redirect: str = "/"
    failed_redirect_seconds: float = 3.0
    locked_redirect: str = "/auth/login"
    locked_redirect_seconds: float = 5.0
    logout_redirect: str = "/auth/login"
    last_login_stamp_seconds: int = 3600
    show_debug: bool = False

    def __post_init__(self) -> None:
        if self.failed_redirect_seconds >= self.locked_redirect_seconds:
            raise ValueError("Failed redirect delay must be shorter than the locked delay")


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Immutable logging configuration."""

    level: str = "INFO"
    max_file_size_bytes: int = 10 * 1024 * 1024  # 10 MB
    backup_count: int = 5
    enable_console: bool = True
    enable_file: bool = False
    json_file: bool = False
    audit_file: bool = False

    def __post_init__(self) -> None:
        if self.level.upper() not in _VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log level: {self.level}")


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


# (section, key) -> converter for every env-overridable value
_ENV_CONVERTERS: Final[dict[tuple[str, str], Any]] = {
    ("paths", "data_dir"): Path,
    ("paths", "config_dir"): Path,
    ("paths", "log_dir"): Path,
    ("session", "ttl_seconds"): int,
    ("session", "monitor_interval_seconds"): float,
    ("session", "retention_days"): int,
    ("session", "enforce_two_factor_on_create"): _as_bool,
    ("policy", "max_failed_attempts"): int,
    ("policy", "lockout_minutes"): int,
    ("policy", "enable_ip_allowlist"): _as_bool,
    ("policy", "allowed_ips"): lambda v: tuple(ip.strip() for ip in v.split(",") if ip.strip()),
    ("policy", "origin_lookup_url"): str,
    ("policy", "origin_timeout_seconds"): float,
    ("challenge", "countdown_seconds"): int,
    ("challenge", "backup_code_count"): int,
    ("challenge", "issuer"): str,
    ("gate", "failed_redirect"): str,
    ("gate", "locked_redirect"): str,
    ("gate", "logout_redirect"): str,
    ("gate", "show_debug"): _as_bool,
    ("logging", "level"): str,
    ("logging", "enable_console"): _as_bool,
    ("logging", "enable_file"): _as_bool,
    ("logging", "json_file"): _as_bool,
    ("logging", "audit_file"): _as_bool,
}


class AdminGateConfig:
    """
    Centralized, immutable configuration loader with environment override support.

    Usage:
        config = AdminGateConfig.load()
        ttl = config.session.ttl_seconds
        allowed = config.policy.allowed_ips
    """

    __slots__ = (
        "_paths", "_session", "_policy", "_challenge", "_gate",
        "_logging", "_frozen", "_config_hash",
    )

    _instance: Optional[AdminGateConfig] = None

    def __init__(
        self,
        paths: Optional[PathConfig] = None,
        session: Optional[SessionConfig] = None,
        policy: Optional[PolicyConfig] = None,
        challenge: Optional[ChallengeConfig] = None,
        gate: Optional[GateConfig] = None,
        logging: Optional[LoggingConfig] = None,
    ) -> None:
        """Initialize configuration. Use AdminGateConfig.load() for standard initialization."""
        object.__setattr__(self, "_frozen", False)
        object.__setattr__(self, "_paths", paths or PathConfig())
        object.__setattr__(self, "_session", session or SessionConfig())
        object.__setattr__(self, "_policy", policy or PolicyConfig())
        object.__setattr__(self, "_challenge", challenge or ChallengeConfig())
        object.__setattr__(self, "_gate", gate or GateConfig())
        object.__setattr__(self, "_logging", logging or LoggingConfig())
        object.__setattr__(self, "_config_hash", self._compute_hash())
        object.__setattr__(self, "_frozen", True)

    def _compute_hash(self) -> str:
        """Compute a hash of the configuration for integrity checking."""
        config_str = (
            f"{self._paths}|{self._session}|{self._policy}|"
            f"{self._challenge}|{self._gate}|{self._logging}"
        )
        return hashlib.sha256(config_str.encode()).hexdigest()[:16]

    @property
    def paths(self) -> PathConfig:
        return self._paths

    @property
    def session(self) -> SessionConfig:
        return self._session

    @property
    def policy(self) -> PolicyConfig:
        return self._policy

    @property
    def challenge(self) -> ChallengeConfig:
        return self._challenge

    @property
    def gate(self) -> GateConfig:
        return self._gate

    @property
    def logging(self) -> LoggingConfig:
        return self._logging

    @property
    def config_hash(self) -> str:
        """Get configuration integrity hash."""
        return self._config_hash

    @classmethod
    def load(cls, env_prefix: str = "ADMINGATE") -> AdminGateConfig:
        """
        Load configuration with environment variable overrides.

        Environment variables are prefixed with ADMINGATE_ and use
        double underscores between section and key.

        Examples:
            ADMINGATE_SESSION__TTL_SECONDS=3600
            ADMINGATE_POLICY__ENABLE_IP_ALLOWLIST=true
            ADMINGATE_POLICY__ALLOWED_IPS=203.0.113.4,203.0.113.9
            ADMINGATE_LOGGING__LEVEL=DEBUG

        Args:
            env_prefix: Prefix for environment variables (default: ADMINGATE)

        Returns:
            Configured AdminGateConfig instance
        """
        env_overrides = cls._parse_env_overrides(env_prefix)

        sections: dict[str, dict[str, Any]] = {}
        for dotted, raw in env_overrides.items():
            section, _, key = dotted.partition(".")
            converter = _ENV_CONVERTERS.get((section, key))
            if converter is None:
                continue
            sections.setdefault(section, {})[key] = converter(raw)

        def build(section: str, config_type: type) -> Any:
            kwargs = sections.get(section)
            return config_type(**kwargs) if kwargs else None

        return cls(
            paths=build("paths", PathConfig),
            session=build("session", SessionConfig),
            policy=build("policy", PolicyConfig),
            challenge=build("challenge", ChallengeConfig),
            gate=build("gate", GateConfig),
            logging=build("logging", LoggingConfig),
        )

    @staticmethod
    def _parse_env_overrides(prefix: str) -> dict[str, str]:
        """Parse environment variables with the given prefix."""
        overrides: dict[str, str] = {}
        prefix_upper = f"{prefix.upper()}_"

        for key, value in os.environ.items():
            if key.startswith(prefix_upper):
                # ADMINGATE_SECTION__KEY -> section.key
                config_key = key[len(prefix_upper):].lower().replace("__", ".")

                # SECURITY: Skip sensitive keys from environment
                if _is_sensitive_key(config_key):
                    continue

                overrides[config_key] = value

        return overrides

    @classmethod
    def get_instance(cls) -> AdminGateConfig:
        """Get or create the process-wide configuration instance."""
        if cls._instance is None:
            cls._instance = cls.load()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the process-wide instance. Use only for testing."""
        cls._instance = None

    def ensure_directories(self) -> None:
        """Create all required directories with secure permissions."""
        import stat

        for directory in (self._paths.data_dir, self._paths.config_dir, self._paths.log_dir):
            directory.mkdir(parents=True, exist_ok=True)

            if platform.system().lower() != "windows":
                directory.chmod(stat.S_IRWXU)  # 700 - owner only

    def __repr__(self) -> str:
        return f"AdminGateConfig(hash={self._config_hash})"

    def __setattr__(self, name: str, value: Any) -> None:
        """Prevent modification after initialization."""
        if hasattr(self, "_frozen") and self._frozen:
            raise AttributeError("AdminGateConfig is immutable after initialization")
        super().__setattr__(name, value)
