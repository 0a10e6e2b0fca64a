"""Error taxonomy shared by the identity core and the HTTP layer."""

from __future__ import annotations

from typing import Optional


class LibraryError(Exception):
    """Base class for failures reported by the core operations.

    Each subclass carries the HTTP status the boundary should answer with and a
    short machine readable ``code``.
    """

    status_code = 500
    code = "internal_error"
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(LibraryError):
    status_code = 400
    code = "validation_failed"
    default_message = "Validation failed"


class Conflict(LibraryError):
    status_code = 409
    code = "conflict"
    default_message = "User already exists"


class InvalidCredentials(LibraryError):
    status_code = 401
    code = "invalid_credentials"
    default_message = "Invalid credentials"


class Unauthenticated(LibraryError):
    status_code = 401
    code = "authentication_required"
    default_message = "You must be logged in to access this resource"


class Forbidden(LibraryError):
    status_code = 403
    code = "access_denied"
    default_message = "Admin privileges required"


class IdentityConflict(LibraryError):
    status_code = 409
    code = "identity_conflict"
    default_message = "This account is already linked to a different external identity"


class NotFound(LibraryError):
    status_code = 404
    code = "not_found"
    default_message = "Resource not found"


class StoreUnavailable(LibraryError):
    status_code = 500
    code = "store_unavailable"
    default_message = "Internal server error"


class ProviderError(LibraryError):
    """The OAuth provider rejected the grant or returned an unusable identity."""

    status_code = 502
    code = "oauth_failed"
    default_message = "OAuth authentication failed"


class DuplicateKey(LibraryError):
    """Raised by the document store when a unique index rejects a write.

    ``key`` names the document field whose index was violated, when known.
    Callers are expected to translate it into a domain error.
    """

    status_code = 409
    code = "duplicate_key"
    default_message = "Duplicate key"

    def __init__(self, message: Optional[str] = None, *, key: Optional[str] = None) -> None:
        super().__init__(message)
        self.key = key


class ConfigurationError(RuntimeError):
    """Raised when the service settings are missing or malformed."""


__all__ = [
    "ConfigurationError",
    "Conflict",
    "DuplicateKey",
    "Forbidden",
    "IdentityConflict",
    "InvalidCredentials",
    "LibraryError",
    "NotFound",
    "ProviderError",
    "StoreUnavailable",
    "Unauthenticated",
    "ValidationError",
]
