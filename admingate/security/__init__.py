"""
Security module - Policy, origin and audit components.

The gate pipeline sits on top of admingate.core.auth and is imported
from admingate.security.gate directly.

Security Considerations:
- Fail closed on origin and identity errors
- Fail open only on lockout-lookup errors (availability over lockout)
- All security events are chained in a tamper-aware log
"""

from admingate.security.audit import (
    TamperAwareAuditLog,
    SecurityEvent,
    SecurityEventType,
    SecuritySeverity,
)
from admingate.security.policy import (
    SecurityPolicy,
    StoreSecurityPolicy,
    PolicyError,
)
from admingate.security.origin import (
    OriginResolver,
    HttpOriginResolver,
    FixedOriginResolver,
    CallableOriginResolver,
)
from admingate.security.threat_scan import SUSPICIOUS_PATTERNS, scan_query

__all__ = [
    # Audit
    "TamperAwareAuditLog",
    "SecurityEvent",
    "SecurityEventType",
    "SecuritySeverity",
    # Policy
    "SecurityPolicy",
    "StoreSecurityPolicy",
    "PolicyError",
    # Origin
    "OriginResolver",
    "HttpOriginResolver",
    "FixedOriginResolver",
    "CallableOriginResolver",
    # Threat scan
    "SUSPICIOUS_PATTERNS",
    "scan_query",
]
