from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from multisession.claims import ValidationFlag


class ServiceError(Exception):
    """Base class for session-engine exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code so adapters can render errors without inspecting types:
    - unauthorized (401)
    - validation_error (400)
    - device_limit_exceeded (429)
    - unsupported (501)
    - backend_unavailable (503)
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
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """Token is unknown, expired, revoked, or its record cannot be decoded."""

    def __init__(self, message: str = "token is invalid", **kwargs) -> None:
        super().__init__(message, **kwargs)


class EmptyTokenError(AuthenticationError):
    """Caller passed a zero-length token before any lookup."""

    def __init__(self, message: str = "token is empty", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ClaimsValidationError(ServiceError):
    """Claims failed structural validation (400).

    ``flags`` has one bit set per failed check so callers can see every
    offending field, not only the first.
    """
    status_code = 400
    error_code = "validation_error"

    def __init__(self, message: str, flags: "ValidationFlag", **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {}
        detail.setdefault("flags", int(flags))
        detail.setdefault("failed", [f.name.lower() for f in type(flags) if f & flags])
        super().__init__(message, detail=detail, **kwargs)
        self.flags = flags

    def has(self, flag: "ValidationFlag") -> bool:
        return bool(self.flags & flag)


class OverDeviceLimitError(ServiceError):
    """Active sessions for the user already meet the device limit (429)."""
    status_code = 429
    error_code = "device_limit_exceeded"

    def __init__(self, count: int, limit: int, **kwargs) -> None:
        super().__init__(
            "maximum number of concurrent devices reached",
            detail={"count": count, "limit": limit},
            **kwargs,
        )
        self.count = count
        self.limit = limit


class UnsupportedOperationError(ServiceError):
    """Backend does not implement this operation (501)."""
    status_code = 501
    error_code = "unsupported"


class BackendUnavailableError(ServiceError):
    """Session store is unreachable or failed a command (503)."""
    status_code = 503
    error_code = "backend_unavailable"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "InvalidTokenError",
    "EmptyTokenError",
    "ClaimsValidationError",
    "OverDeviceLimitError",
    "UnsupportedOperationError",
    "BackendUnavailableError",
]
