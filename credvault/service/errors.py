from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """A failure the API renders as an error envelope.

    ``status_code`` and ``error_code`` pick the HTTP status and the stable
    envelope code. Credential failures also set ``kind``, which is copied into
    ``detail["kind"]`` so clients can react to, say, refresh token reuse
    differently from plain expiry.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    kind: Optional[str] = None
    default_message: str = "request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = dict(detail or {})
        if self.kind:
            self.detail.setdefault("kind", self.kind)


# HTTP families


class ValidationError(ServiceError):
    status_code = 400
    error_code = "validation_error"
    default_message = "invalid request"


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"
    default_message = "authentication required"


class SessionExpiredError(AuthenticationError):
    default_message = "session expired"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"
    default_message = "forbidden"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"
    default_message = "conflict"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"
    default_message = "internal server error"


class ServiceUnavailableError(ServerError):
    status_code = 503
    error_code = "unavailable"
    default_message = "service unavailable"


# Credential lifecycle kinds


class InvalidCredentials(AuthenticationError):
    """Unknown account and wrong password look the same to the caller."""

    kind = "invalid_credentials"
    default_message = "invalid credentials"


class AccountInactive(ForbiddenError):
    kind = "account_inactive"
    default_message = "account is inactive"


class TokenInvalid(AuthenticationError):
    # bad signature, malformed, wrong issuer/audience/type
    kind = "token_invalid"
    default_message = "invalid token"


class TokenExpired(SessionExpiredError):
    kind = "token_expired"
    default_message = "token expired"


class RefreshReuseDetected(AuthenticationError):
    """A rotated or revoked refresh token came back."""

    kind = "refresh_reuse_detected"
    default_message = "refresh token reuse detected"


class RefreshTokenExpired(SessionExpiredError):
    kind = "refresh_token_expired"
    default_message = "refresh token expired"


class TemporaryTokenInvalidOrExpired(ValidationError):
    kind = "temporary_token_invalid"
    default_message = "link is invalid or has expired"


class IdentityProviderConflict(ConflictError):
    kind = "identity_provider_conflict"
    default_message = "email is registered with a different login method"


class DuplicateEmailOrUsername(ConflictError):
    kind = "duplicate_account"
    default_message = "email or username already registered"


class InsufficientRole(ForbiddenError):
    kind = "insufficient_role"
    default_message = "admin role required"


class NotFound(ServiceError):
    status_code = 404
    error_code = "not_found"
    kind = "not_found"
    default_message = "not found"


class TransientStoreFailure(ServiceUnavailableError):
    """Nothing was committed; the caller may retry."""

    kind = "transient_store_failure"
    default_message = "storage temporarily unavailable"


class CorruptCredential(ServerError):
    kind = "corrupt_credential"
    default_message = "stored credential is unreadable"
