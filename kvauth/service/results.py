from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar, Union

from kvauth.service.errors import (
    AuthenticationError,
    ConflictError,
    ErrorKind,
    NotFoundError,
    ServerError,
    ServiceError,
    VerificationReason,
)

T = TypeVar("T")
E = TypeVar("E")

# Client-facing text for kinds that must not leak internal detail
_GENERIC_MESSAGES = {
    ErrorKind.CONFIGURATION_ERROR: "internal server error",
    ErrorKind.BACKEND_UNAVAILABLE: "internal server error",
    ErrorKind.INTERNAL_ERROR: "internal server error",
}


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def is_ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E

    @property
    def is_ok(self) -> bool:
        return False


Result = Union[Ok[T], Err[E]]


@dataclass(frozen=True)
class AuthFailure:
    """Expected failure of an auth operation.

    ``trigger_logout`` tells the boundary layer to clear client-held
    credentials; it is never inferred from ``kind``.
    """

    kind: ErrorKind
    message: str
    reason: Optional[VerificationReason] = None
    trigger_logout: bool = False

    @classmethod
    def of(
        cls,
        kind: ErrorKind,
        message: str,
        *,
        reason: Optional[VerificationReason] = None,
        trigger_logout: bool = False,
    ) -> "AuthFailure":
        return cls(
            kind=kind,
            message=_GENERIC_MESSAGES.get(kind, message),
            reason=reason,
            trigger_logout=trigger_logout,
        )

    def with_logout(self) -> "AuthFailure":
        return AuthFailure(
            kind=self.kind,
            message=self.message,
            reason=self.reason,
            trigger_logout=True,
        )

    def to_service_error(self) -> ServiceError:
        detail: dict = {}
        if not self.kind.is_internal:
            detail["kind"] = self.kind.value
            if self.reason is not None:
                detail["reason"] = self.reason.value
        status = self.kind.status_code
        if status == 404:
            exc_cls: type[ServiceError] = NotFoundError
        elif status == 409:
            exc_cls = ConflictError
        elif status == 401:
            exc_cls = AuthenticationError
        elif status >= 500:
            exc_cls = ServerError
        else:
            exc_cls = ServiceError
        return exc_cls(self.message, detail=detail, trigger_logout=self.trigger_logout)


__all__ = ["Ok", "Err", "Result", "AuthFailure"]
