"""
Error taxonomy for cloudmark.

Transport failures carry the HTTP status code when there is one so that
callers can report it without parsing messages.
"""
from typing import Optional


class CloudmarkError(Exception):
    """Base class for all cloudmark errors."""


class ConfigError(CloudmarkError):
    """WebDAV is not configured, or the configured URL is unusable."""


class DavError(CloudmarkError):
    """A WebDAV request failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class AuthError(DavError):
    """The server rejected the credentials (401/403)."""


class NetworkError(DavError):
    """The server could not be reached at all."""


class ProtocolError(DavError):
    """The server answered with an unexpected status."""


class ParseError(CloudmarkError):
    """A snapshot filename carries no decodable timestamp."""


def error_for_status(status: int, message: str) -> DavError:
    """Map an HTTP status to the matching error class."""
    if status in (401, 403):
        return AuthError(message, status)
    return ProtocolError(message, status)
