from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Closed set of failure kinds returned by the auth core."""

    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_CREDENTIALS = "invalid_credentials"
    TOKEN_REVOKED = "token_revoked"
    TOKEN_VERIFICATION_FAILED = "token_verification_failed"
    CONFIGURATION_ERROR = "configuration_error"
    BACKEND_UNAVAILABLE = "backend_unavailable"
    INTERNAL_ERROR = "internal_error"

    @property
    def status_code(self) -> int:
        return _KIND_TO_STATUS[self]

    @property
    def error_code(self) -> str:
        return _STATUS_TO_CODE[self.status_code]

    @property
    def is_internal(self) -> bool:
        return self.status_code >= 500


_KIND_TO_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INVALID_CREDENTIALS: 401,
    ErrorKind.TOKEN_REVOKED: 401,
    ErrorKind.TOKEN_VERIFICATION_FAILED: 401,
    ErrorKind.CONFIGURATION_ERROR: 500,
    ErrorKind.BACKEND_UNAVAILABLE: 500,
    ErrorKind.INTERNAL_ERROR: 500,
}

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    404: "not_found",
    409: "conflict",
    500: "server_error",
}


class VerificationReason(str, Enum):
    """Why a bearer token failed verification.

    Only ``EXPIRED`` leads to rotation; every other reason is treated as
    possible tampering by the refresh workflow.
    """

    ALGORITHM_UNSUPPORTED = "algorithm_unsupported"
    MALFORMED = "malformed"
    NOT_YET_VALID = "not_yet_valid"
    EXPIRED = "expired"
    ISSUED_IN_FUTURE = "issued_in_future"
    HEADER_INVALID = "header_invalid"
    SIGNATURE_MISMATCH = "signature_mismatch"
    UNKNOWN = "unknown"


class ConfigurationError(Exception):
    """A required setting (such as a token signing secret) is missing.

    Fatal: never retried and never replaced by a fallback value.
    """

    def __init__(self, setting: str, message: Optional[str] = None) -> None:
        self.setting = setting
        self.message = message or f"{setting} is not configured"
        super().__init__(self.message)


class CredentialCheckError(Exception):
    """The password hashing library failed for a reason other than a mismatch."""


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        trigger_logout: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.trigger_logout = trigger_logout


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ErrorKind",
    "VerificationReason",
    "ConfigurationError",
    "CredentialCheckError",
    "ServiceError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
