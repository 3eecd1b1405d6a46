from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP ``status_code`` and a stable
    ``error_code`` used in the error envelope:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - locked (423)
    - rate_limited (429)
    - server_error (500)
    - service_unavailable (503)

    Messages are returned to clients verbatim and must never carry secret
    material (tokens, keys, hashes).
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class AccountLockedError(ServiceError):
    """Account is temporarily locked after repeated failures (423)."""
    status_code = 423
    error_code = "locked"

    def __init__(self, message: str = "account temporarily locked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429). Retriable after ``retry_after`` seconds."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "rate limit exceeded",
        *,
        retry_after: int = 0,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(int(retry_after), 0)
        self.detail.setdefault("retry_after", self.retry_after)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ServiceUnavailableError(ServiceError):
    """A required backend is unreachable (503)."""
    status_code = 503
    error_code = "service_unavailable"


# Access-token verification failures. The reason is kept for logs; clients
# only ever see "invalid token".


class TokenError(AuthenticationError):
    reason = "invalid"

    def __init__(self, reason: Optional[str] = None) -> None:
        super().__init__("invalid token")
        if reason is not None:
            self.reason = reason


class MalformedTokenError(TokenError):
    reason = "malformed"


class SignatureInvalidError(TokenError):
    reason = "signature_invalid"


class TokenExpiredError(TokenError):
    reason = "expired"


class UnsupportedTokenError(TokenError):
    reason = "unsupported"


# Refresh-token failures, collapsed to "invalid token" externally.


class RefreshTokenError(TokenError):
    pass


class RefreshTokenNotFoundError(RefreshTokenError):
    reason = "not_found"


class RefreshTokenRevokedError(RefreshTokenError):
    reason = "revoked"


class RefreshTokenExpiredError(RefreshTokenError):
    reason = "expired"


# Password reset tokens and email verification codes.


class SecondaryCredentialError(ValidationError):
    reason = "invalid"

    def __init__(self, message: str = "invalid or expired code") -> None:
        super().__init__(message)


class CredentialNotFoundError(SecondaryCredentialError):
    reason = "not_found"


class CredentialExpiredError(SecondaryCredentialError):
    reason = "expired"


class CredentialUsedError(SecondaryCredentialError):
    reason = "used"


class TooManyAttemptsError(SecondaryCredentialError):
    reason = "too_many_attempts"


# Startup failures; these abort the process and are never mapped to HTTP.


class KeyConfigurationError(RuntimeError):
    """Signing key material is missing, partial, or unusable."""


class KeySelfTestError(RuntimeError):
    """The signing key pair failed its startup sign/verify round trip."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "AccountLockedError",
    "RateLimitedError",
    "ServerError",
    "ServiceUnavailableError",
    "TokenError",
    "MalformedTokenError",
    "SignatureInvalidError",
    "TokenExpiredError",
    "UnsupportedTokenError",
    "RefreshTokenError",
    "RefreshTokenNotFoundError",
    "RefreshTokenRevokedError",
    "RefreshTokenExpiredError",
    "SecondaryCredentialError",
    "CredentialNotFoundError",
    "CredentialExpiredError",
    "CredentialUsedError",
    "TooManyAttemptsError",
    "KeyConfigurationError",
    "KeySelfTestError",
]
