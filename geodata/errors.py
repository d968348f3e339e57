"""
Error types raised by the geodata layer.
"""

from typing import Optional


class GeodataError(Exception):
    """Base class for geodata provider failures."""


class ProviderUnavailable(GeodataError):
    """
    The geodata provider could not be reached or returned an unusable response.

    Callers with fail-open enabled degrade to a permissive result instead of
    surfacing this error.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationFailure(GeodataError):
    """The provider rejected our credentials (HTTP 401/403). Never retried."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
