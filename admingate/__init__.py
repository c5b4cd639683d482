"""
AdminGate - Admin Access Security Gate
======================================

Guards administrative routes behind a sequential security pipeline:
authentication, account lockout, origin allow-list, admin directory
lookup, role and capability checks, durable session establishment and
a second-factor challenge.

Security Notice:
- No secrets are logged
- Fail-closed design pattern
- Session tokens and backup codes are stored only as hashes
"""

from admingate.core.config import AdminGateConfig
from admingate.core.logging import get_secure_logger

__version__ = "0.1.0"
__author__ = "AdminGate Team"

__all__ = ["AdminGateConfig", "get_secure_logger", "__version__"]
