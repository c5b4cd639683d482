"""
Core module - Contains configuration, logging, and authentication components.
"""

from admingate.core.config import AdminGateConfig
from admingate.core.logging import get_secure_logger, SecureLogFilter

__all__ = ["AdminGateConfig", "get_secure_logger", "SecureLogFilter"]
