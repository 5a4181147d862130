"""Exception types raised by goveectl."""

from __future__ import annotations


class GoveeError(Exception):
    """Base class for every error raised by goveectl itself."""


class VendorError(GoveeError):
    """Raised when the Govee API answers with a non-200 envelope ``code``."""

    def __init__(self, code: object, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"API error: {message} (code: {code})")


class TransportError(GoveeError):
    """Raised when the Govee API answers with an HTTP error status.

    The message carries the vendor's ``message`` when the error body has
    one, and :attr:`status` is the HTTP status code.
    """

    def __init__(self, status: int, message: str) -> None:
        self.status = status
        self.message = message
        super().__init__(f"API error: {message} (code: {status})")


class AuthError(GoveeError):
    """Raised when the secondary login is missing credentials or is rejected."""


class ConfigError(GoveeError):
    """Raised when required configuration (e.g. certificate material) is absent."""

