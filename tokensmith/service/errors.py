from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to transport responses.

    Every failure carries a stable HTTP ``status_code``, a machine-checkable
    ``error_code`` and a human-readable ``message``:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - upstream_timeout (504)
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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenSignature(AuthenticationError):
    """Token signature, key id or claims could not be verified (401)."""
    pass


class TokenExpired(AuthenticationError):
    """Token is past its expiry (401)."""
    pass


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class UpstreamTimeoutError(ServiceError):
    """Downstream call exceeded its deadline (504)."""
    status_code = 504
    error_code = "upstream_timeout"


# Stable codes a client may see in an error envelope
ERROR_CODES = frozenset({
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
    "upstream_timeout",
})

_ERRORS_BY_STATUS = {
    400: ValidationError,
    401: AuthenticationError,
    404: NotFoundError,
    409: ConflictError,
    429: RateLimitedError,
    500: ServerError,
    504: UpstreamTimeoutError,
}


def error_for_status(
    status_code: int,
    message: str,
    *,
    error_code: Optional[str] = None,
    detail: Optional[dict] = None,
) -> ServiceError:
    """Rebuild the matching ServiceError subclass for a status received over a channel."""
    if error_code not in ERROR_CODES:
        error_code = None
    cls = _ERRORS_BY_STATUS.get(status_code, ServiceError)
    if cls is ServiceError:
        return ServiceError(
            message,
            status_code=status_code,
            error_code=error_code or ("server_error" if status_code >= 500 else "validation_error"),
            detail=detail,
        )
    return cls(message, error_code=error_code, detail=detail)


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "InvalidTokenSignature",
    "TokenExpired",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "UpstreamTimeoutError",
    "ERROR_CODES",
    "error_for_status",
]
