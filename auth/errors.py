"""
auth/errors.py -- Error taxonomy for the authentication core.

Every failure the core reports is an AuthCoreError subclass carrying:
  message     -- human-readable text, safe to show the caller
  code        -- stable machine-readable identifier (snake_case)
  details     -- extra structured context (never secrets or raw tokens)
  status_code -- the HTTP status the transport layer should answer with

The transport layer maps these to responses; the core never builds HTTP
responses itself. The 401 family (InvalidTokenError, InvalidRefreshTokenError,
TokenRevokedError, ...) stays distinguishable here so logs can tell
"expired" from "revoked" from "bad signature", even though clients all see 401.

InfrastructureError is deliberately separate from the 401 family: a database
or cache outage must surface as 5xx, never as "invalid credentials".

Layer rule: stdlib only.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Optional


class AuthCoreError(Exception):
    """Base exception for all authcore errors."""

    status_code: int = 500
    default_code: str = "auth_error"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


# ---------------------------------------------------------------------------
# 400 -- input shape and policy
# ---------------------------------------------------------------------------


class ValidationError(AuthCoreError):
    """Bad input shape or policy violation. The reason is always safe to show."""

    status_code = 400
    default_code = "validation_error"


class InvalidEmailError(ValidationError):
    default_code = "invalid_email"


class InvalidUsernameError(ValidationError):
    default_code = "invalid_username"


class PasswordPolicyError(ValidationError):
    """Password fails the strength policy.

    violations lists every unmet requirement so a UI can show them all at once
    rather than one per round trip.
    """

    default_code = "weak_password"

    def __init__(self, violations: list[str]):
        self.violations = list(violations)
        super().__init__(
            "Password does not meet the strength requirements: " + ", ".join(self.violations),
            details={"violations": self.violations},
        )


class RotationDisabledError(ValidationError):
    default_code = "rotation_disabled"

    def __init__(self, message: str = "Refresh token rotation is not enabled."):
        super().__init__(message)


# ---------------------------------------------------------------------------
# 409 -- uniqueness
# ---------------------------------------------------------------------------


class ConflictError(AuthCoreError):
    status_code = 409
    default_code = "conflict"


class DuplicateEmailError(ConflictError):
    default_code = "duplicate_email"

    def __init__(self, message: str = "Email already registered."):
        super().__init__(message)


class DuplicateUsernameError(ConflictError):
    default_code = "duplicate_username"

    def __init__(self, message: str = "Username already taken."):
        super().__init__(message)


class DuplicateRefreshTokenError(ConflictError):
    default_code = "duplicate_refresh_token"

    def __init__(self, message: str = "Refresh token already stored."):
        super().__init__(message)


# ---------------------------------------------------------------------------
# 401 / 403 -- authentication
# ---------------------------------------------------------------------------


class AuthenticationError(AuthCoreError):
    status_code = 401
    default_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Generic login failure. Never says whether the identifier exists."""

    default_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials."):
        super().__init__(message)


class InvalidCurrentPasswordError(AuthenticationError):
    default_code = "invalid_current_password"

    def __init__(self, message: str = "Invalid current password."):
        super().__init__(message)


class AccountInactiveError(AuthenticationError):
    status_code = 403
    default_code = "account_inactive"

    def __init__(self, message: str = "Account is inactive."):
        super().__init__(message)


class InvalidTokenError(AuthenticationError):
    """Token failed verification.

    reason is one of: malformed, bad_algorithm, bad_signature, invalid_claims,
    expired, not_yet_valid, wrong_type. It is kept out of the client-facing
    message and out of to_dict() on purpose -- it exists for logs.
    """

    default_code = "invalid_token"

    def __init__(self, reason: str, message: str = "Invalid authentication token."):
        super().__init__(message)
        self.reason = reason


class TokenExpiredError(InvalidTokenError):
    default_code = "token_expired"

    def __init__(self, message: str = "Authentication token has expired."):
        super().__init__("expired", message)


class InvalidRefreshTokenError(AuthenticationError):
    default_code = "invalid_refresh_token"

    def __init__(self, reason: str, message: str = "Invalid refresh token."):
        super().__init__(message)
        self.reason = reason


class TokenRevokedError(AuthenticationError):
    default_code = "token_revoked"

    def __init__(self, message: str = "Token has been revoked."):
        super().__init__(message)


class UserNotFoundError(AuthenticationError):
    """The user a credential refers to no longer exists (or was soft-deleted)."""

    default_code = "user_not_found"

    def __init__(self, user_id: int | str):
        super().__init__("User not found.", details={"user_id": user_id})


class TooManyAttemptsError(AuthCoreError):
    status_code = 429
    default_code = "too_many_attempts"

    def __init__(self, retry_after_seconds: int):
        minutes = max(1, retry_after_seconds // 60)
        super().__init__(
            f"Too many failed login attempts, please try again in {minutes} minutes.",
            details={"retry_after_seconds": retry_after_seconds},
        )


# ---------------------------------------------------------------------------
# 404 -- lookups
# ---------------------------------------------------------------------------


class NotFoundError(AuthCoreError):
    status_code = 404
    default_code = "not_found"


class RefreshTokenNotFoundError(NotFoundError):
    default_code = "refresh_token_not_found"

    def __init__(self, message: str = "Refresh token not found."):
        super().__init__(message)


# ---------------------------------------------------------------------------
# 5xx -- internal and infrastructure
# ---------------------------------------------------------------------------


class HashingError(AuthCoreError):
    status_code = 500
    default_code = "hashing_error"


class InfrastructureError(AuthCoreError):
    """A backing store (database, cache) failed or timed out.

    Always raised with `from exc` so the driver error stays attached.
    """

    status_code = 503
    default_code = "infrastructure_error"

    def __init__(self, component: str, message: str):
        super().__init__(f"{component} unavailable: {message}", details={"component": component})
        self.component = component


@contextmanager
def infrastructure_guard(component: str, *error_types: type[BaseException]) -> Iterator[None]:
    """Re-raise driver errors of the given types as InfrastructureError.

    AuthCoreError subclasses raised inside the block pass through untouched,
    so stores can translate IntegrityError into ConflictError first.
    """
    try:
        yield
    except AuthCoreError:
        raise
    except error_types as exc:
        raise InfrastructureError(component, str(exc) or exc.__class__.__name__) from exc
