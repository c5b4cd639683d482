"""
Caller origin resolution.

Best effort: any failure resolves to "unknown" rather than raising.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Callable, Final, Optional

import requests


UNKNOWN_ORIGIN: Final[str] = "unknown"

_log = logging.getLogger("admingate.origin")


class OriginResolver(ABC):
    """Resolves the caller's network origin."""

    @abstractmethod
    def resolve(self) -> str:
        ...


class HttpOriginResolver(OriginResolver):
    """
    Public-IP lookup over HTTP.

    Usage:
        resolver = HttpOriginResolver(config.policy.origin_lookup_url)
        origin = resolver.resolve()  # "203.0.113.7" or "unknown"
    """

    def __init__(
        self,
        url: str = "https://api.ipify.org?format=json",
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()

    def resolve(self) -> str:
        try:
            response = self._session.get(self.url, timeout=self.timeout)
            response.raise_for_status()
            ip = response.json().get("ip")
        except (requests.RequestException, ValueError) as e:
            _log.warning("Could not resolve caller origin: %s", e)
            return UNKNOWN_ORIGIN

        if not ip or not isinstance(ip, str):
            return UNKNOWN_ORIGIN
        return ip


class FixedOriginResolver(OriginResolver):
    """Resolves to a value known up front."""

    def __init__(self, origin: str = UNKNOWN_ORIGIN) -> None:
        self.origin = origin or UNKNOWN_ORIGIN

    def resolve(self) -> str:
        return self.origin


class CallableOriginResolver(OriginResolver):
    """Resolves through a callable (e.g. the current request's remote address)."""

    def __init__(self, func: Callable[[], Optional[str]]) -> None:
        self._func = func

    def resolve(self) -> str:
        try:
            origin = self._func()
        except RuntimeError as e:
            _log.warning("Origin callable failed: %s", e)
            return UNKNOWN_ORIGIN
        return origin or UNKNOWN_ORIGIN
