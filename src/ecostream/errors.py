"""Exception types raised by :mod:`ecostream`.

Every failure surfaced by the HTTP client, the credential exchange and the
telemetry connection derives from :class:`EcoflowError`, so callers never
need to import ``aiohttp`` or ``aiomqtt`` to catch them.
"""

from __future__ import annotations


class EcoflowError(Exception):
    """Base class for all errors raised by this package."""


class TransportError(EcoflowError, ConnectionError):
    """Raised on network failures, timeouts and non-2xx HTTP statuses."""


class ConnectError(TransportError):
    """Raised when the initial broker connection cannot be established."""


class AuthError(EcoflowError):
    """Raised when login or the broker credential exchange is rejected."""


class RemoteError(EcoflowError):
    """Raised when the vendor returns a non-success application code.

    The vendor's ``message`` text is preserved verbatim.
    """

    def __init__(self, code: str, message: str, *, operation: str = "request") -> None:
        super().__init__(f"{operation} failed, error code: {code}, error message: {message}")
        self.code = code
        self.message = message


class InvalidResponse(EcoflowError, ValueError):
    """Raised when a response is not JSON or lacks an expected field."""


class DecodeError(EcoflowError):
    """Raised when a binary telemetry frame cannot be parsed."""


class UnsupportedMethod(EcoflowError, ValueError):
    """Raised for HTTP verbs other than GET, POST and PUT."""
