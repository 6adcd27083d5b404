"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Every error carries a stable machine-readable `code` plus the HTTP status
an outer layer should map it to. Expected business outcomes (skips,
reschedules, last-admin blocks) are typed results, never exceptions.
"""

from typing import ClassVar
from uuid import UUID


class IdentityError(Exception):
    """Base exception for all identity errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500


# ============================================================================
# Credentials
# ============================================================================


class InvalidCredentialsError(IdentityError):
    """Wrong password, unknown email, or deleted user. Deliberately indistinct."""

    code = "AUTH_INVALID_CREDENTIALS"
    status_code = 401

    def __init__(self) -> None:
        super().__init__("Invalid email or password")


class UserSuspendedError(IdentityError):
    """Raised when a suspended user tries to authenticate."""

    code = "AUTH_USER_SUSPENDED"
    status_code = 403

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__(f"User {user_id} is suspended")


class UnauthorizedError(IdentityError):
    """Caller's identity no longer maps to a usable account."""

    code = "AUTH_UNAUTHORIZED"
    status_code = 401

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class EmailAlreadyExistsError(IdentityError):
    """Raised when registering an email that already has an account."""

    code = "AUTH_EMAIL_ALREADY_EXISTS"
    status_code = 409

    def __init__(self, email: str) -> None:
        self.email = email
        super().__init__("Email already exists")


class ExternalIdentityAlreadyExistsError(IdentityError):
    """Repository sentinel: (provider, subject) was inserted concurrently."""

    code = "AUTH_OIDC_IDENTITY_ALREADY_EXISTS"
    status_code = 409

    def __init__(self, provider: str, subject: str) -> None:
        self.provider = provider
        self.subject = subject
        super().__init__(f"External identity already exists for provider {provider}")


class PasswordPolicyError(IdentityError):
    """New password does not satisfy the password policy."""

    code = "AUTH_PASSWORD_POLICY"
    status_code = 400

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Password rejected: {reason}")


class PasswordNotSetError(IdentityError):
    """User has no password credential (OIDC-only account)."""

    code = "AUTH_PASSWORD_NOT_SET"
    status_code = 409

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__(f"User {user_id} has no password set")


class CurrentPasswordInvalidError(IdentityError):
    """Current password did not verify during a password change."""

    code = "AUTH_CURRENT_PASSWORD_INVALID"
    status_code = 400

    def __init__(self) -> None:
        super().__init__("Current password is invalid")


class LoginRateLimitedError(IdentityError):
    """Too many failed logins for this email/ip pair."""

    code = "AUTH_RATE_LIMITED"
    status_code = 429

    def __init__(self, retry_after_seconds: int) -> None:
        self.retry_after_seconds = retry_after_seconds
        super().__init__(f"Too many login attempts. Retry after {retry_after_seconds}s")


# ============================================================================
# Refresh & Sessions
# ============================================================================


class RefreshTokenInvalidError(IdentityError):
    """Unknown refresh token, or token of a deleted user."""

    code = "AUTH_REFRESH_TOKEN_INVALID"
    status_code = 401

    def __init__(self) -> None:
        super().__init__("Refresh token is invalid")


class RefreshTokenExpiredError(IdentityError):
    code = "AUTH_REFRESH_TOKEN_EXPIRED"
    status_code = 401

    def __init__(self, session_id: UUID) -> None:
        self.session_id = session_id
        super().__init__("Refresh token has expired")


class RefreshTokenReusedError(IdentityError):
    """Raised only after the owning session has been revoked."""

    code = "AUTH_REFRESH_TOKEN_REUSED"
    status_code = 401

    def __init__(self, session_id: UUID) -> None:
        self.session_id = session_id
        super().__init__(f"Refresh token reuse detected; session {session_id} revoked")


class SessionRevokedError(IdentityError):
    code = "AUTH_SESSION_REVOKED"
    status_code = 401

    def __init__(self, session_id: UUID) -> None:
        self.session_id = session_id
        super().__init__(f"Session {session_id} has been revoked")


class SessionNotFoundError(IdentityError):
    code = "AUTH_SESSION_NOT_FOUND"
    status_code = 404

    def __init__(self, session_id: UUID) -> None:
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


# ============================================================================
# OIDC
# ============================================================================


class OidcNotConfiguredError(IdentityError):
    code = "AUTH_OIDC_NOT_CONFIGURED"
    status_code = 500

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"OIDC provider {provider} is not configured")


class OidcTokenInvalidError(IdentityError):
    code = "AUTH_OIDC_TOKEN_INVALID"
    status_code = 401

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"OIDC ID token is invalid: {reason}")


class OidcEmailNotVerifiedError(IdentityError):
    code = "AUTH_OIDC_EMAIL_NOT_VERIFIED"
    status_code = 400

    def __init__(self) -> None:
        super().__init__("Identity provider has not verified this email")


class ExternalIdentityConflictError(IdentityError):
    """
    OIDC linking conflict.

    reason is one of: link_required, identity_linked_to_other_user,
    provider_already_linked.
    """

    status_code = 409

    _CODES: ClassVar[dict[str, str]] = {
        "link_required": "AUTH_OIDC_LINK_REQUIRED",
        "identity_linked_to_other_user": "AUTH_OIDC_IDENTITY_ALREADY_LINKED",
        "provider_already_linked": "AUTH_OIDC_PROVIDER_ALREADY_LINKED",
    }

    def __init__(self, reason: str) -> None:
        if reason not in self._CODES:
            raise ValueError(f"Unknown external identity conflict: {reason}")
        self.reason = reason
        self.code = self._CODES[reason]
        super().__init__(f"External identity conflict: {reason}")


# ============================================================================
# Account Recovery
# ============================================================================


class PasswordResetTokenInvalidError(IdentityError):
    code = "AUTH_RESET_TOKEN_INVALID"
    status_code = 400

    def __init__(self) -> None:
        super().__init__("Password reset token is invalid")


class PasswordResetTokenExpiredError(IdentityError):
    code = "AUTH_RESET_TOKEN_EXPIRED"
    status_code = 400

    def __init__(self) -> None:
        super().__init__("Password reset token has expired")


class EmailVerificationTokenInvalidError(IdentityError):
    code = "AUTH_EMAIL_VERIFICATION_TOKEN_INVALID"
    status_code = 400

    def __init__(self) -> None:
        super().__init__("Email verification token is invalid")


class EmailVerificationTokenExpiredError(IdentityError):
    code = "AUTH_EMAIL_VERIFICATION_TOKEN_EXPIRED"
    status_code = 400

    def __init__(self) -> None:
        super().__init__("Email verification token has expired")


# ============================================================================
# Users & Infrastructure
# ============================================================================


class UserNotFoundError(IdentityError):
    code = "USERS_NOT_FOUND"
    status_code = 404

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__(f"User {user_id} not found")


class TransientConflictError(IdentityError):
    """Serialization/deadlock conflicts persisted past the retry bound."""

    code = "INTERNAL_TRANSIENT_CONFLICT"
    status_code = 500

    def __init__(self, operation: str, attempts: int) -> None:
        self.operation = operation
        self.attempts = attempts
        super().__init__(f"{operation} failed after {attempts} conflicting attempts")


class InvariantViolationError(IdentityError):
    """Stored state contradicts an invariant the code relies on."""

    code = "INTERNAL_INVARIANT"
    status_code = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Invariant violated: {message}")
