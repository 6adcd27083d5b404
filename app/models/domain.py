"""
Domain Models - Internal identity models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.

Outcome families are closed sets. Payload-less families are Literal tags,
families that carry data are frozen dataclass variants joined in a union.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from app.models.api import OidcProvider, UserRole, UserStatus

MAX_DEVICE_FIELD_LENGTH = 255


# ============================================================================
# Users & Sessions
# ============================================================================


@dataclass(frozen=True)
class DeviceMeta:
    """Client device metadata captured at login and refresh."""

    device_id: str | None = None
    device_name: str | None = None
    ip: str | None = None
    user_agent: str | None = None

    def __post_init__(self) -> None:
        """Validate device metadata fields."""
        if self.device_id is not None and not self.device_id.strip():
            raise ValueError("device_id cannot be blank")
        for name in ("device_id", "device_name"):
            value = getattr(self, name)
            if value is not None and len(value) > MAX_DEVICE_FIELD_LENGTH:
                raise ValueError(f"{name} exceeds {MAX_DEVICE_FIELD_LENGTH} characters")


def build_active_session_key(user_id: UUID, device_id: str | None) -> str | None:
    """Unique key binding a live session to a (user, device) pair."""
    if device_id is None:
        return None
    return f"{user_id}:{device_id}"


def normalize_email(email: str) -> str:
    """Case-normalize an email address for storage and lookup."""
    return email.strip().lower()


def tombstone_email(user_id: UUID) -> str:
    """Non-deliverable placeholder email for a deleted account."""
    return f"deleted+{user_id}@example.invalid"


@dataclass(frozen=True)
class AuthUserRecord:
    """User state relevant to authentication decisions."""

    id: UUID
    email: str
    email_verified_at: datetime | None
    role: UserRole
    status: UserStatus

    @property
    def email_verified(self) -> bool:
        return self.email_verified_at is not None


@dataclass(frozen=True)
class LoginRecord:
    """User plus stored password hash, as needed by password login."""

    user: AuthUserRecord
    password_hash: str = field(repr=False)


@dataclass(frozen=True)
class NewSession:
    """Intent to create a session row."""

    user_id: UUID
    expires_at: datetime
    now: datetime
    device: DeviceMeta
    active_key: str | None

    def __post_init__(self) -> None:
        """Validate session intent."""
        if self.expires_at <= self.now:
            raise ValueError("Session must expire after it is created")


@dataclass(frozen=True)
class SessionRecord:
    """Persisted session state."""

    id: UUID
    user_id: UUID
    expires_at: datetime
    revoked_at: datetime | None
    device_id: str | None = None


@dataclass(frozen=True)
class RefreshTokenRecord:
    """Persisted refresh token state (never the raw token)."""

    id: UUID
    session_id: UUID
    expires_at: datetime
    revoked_at: datetime | None
    replaced_by_id: UUID | None

    @property
    def already_used(self) -> bool:
        """True once the token is revoked or has been rotated."""
        return self.revoked_at is not None or self.replaced_by_id is not None


@dataclass(frozen=True)
class RefreshTokenWithSession:
    """Refresh token joined with its session and owning user."""

    token: RefreshTokenRecord
    session: SessionRecord
    user: AuthUserRecord


@dataclass(frozen=True)
class AccessTokenClaims:
    """Claims signed into an access token."""

    user_id: UUID
    session_id: UUID
    email_verified: bool
    roles: tuple[UserRole, ...]
    ttl_seconds: int

    def __post_init__(self) -> None:
        """Validate claims."""
        if self.ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive: {self.ttl_seconds}")
        if not self.roles:
            raise ValueError("Access token must carry at least one role")


@dataclass(frozen=True)
class AdminActor:
    """Who is performing an administrative mutation, for the audit trail."""

    user_id: UUID
    session_id: UUID
    trace_id: str


# ============================================================================
# OIDC
# ============================================================================


@dataclass(frozen=True)
class VerifiedOidcIdentity:
    """Identity asserted by a verified OIDC ID token."""

    provider: OidcProvider
    subject: str
    email: str
    email_verified: bool
    display_name: str | None = None
    given_name: str | None = None
    family_name: str | None = None

    def __post_init__(self) -> None:
        """Reject malformed identity assertions."""
        if not self.subject:
            raise ValueError("OIDC subject cannot be empty")
        if "@" not in self.email:
            raise ValueError("OIDC email is malformed")


@dataclass(frozen=True)
class OidcNotConfigured:
    """Provider has no client configured."""


@dataclass(frozen=True)
class OidcInvalid:
    """Token failed verification."""

    reason: str


@dataclass(frozen=True)
class OidcVerified:
    identity: VerifiedOidcIdentity


OidcVerificationResult = OidcNotConfigured | OidcInvalid | OidcVerified


# ============================================================================
# Refresh Rotation Outcomes
# ============================================================================


@dataclass(frozen=True)
class RotationOk:
    """Old token replaced by the new chain head."""

    session_id: UUID
    refresh_token_id: UUID


@dataclass(frozen=True)
class RotationNotFound:
    pass


@dataclass(frozen=True)
class RotationExpired:
    session_id: UUID


@dataclass(frozen=True)
class RotationSessionRevoked:
    session_id: UUID


@dataclass(frozen=True)
class RotationReused:
    """Token was already used; the whole session has been revoked."""

    session_id: UUID


RefreshRotationResult = (
    RotationOk | RotationNotFound | RotationExpired | RotationSessionRevoked | RotationReused
)


# ============================================================================
# Repository Outcome Tags
# ============================================================================

LinkExternalIdentityResult = Literal[
    "ok",
    "already_linked",
    "user_not_found",
    "identity_linked_to_other_user",
    "provider_already_linked",
]

ChangePasswordResult = Literal[
    "ok",
    "not_found",
    "password_not_set",
    "current_password_mismatch",
]

ResetPasswordResult = Literal["ok", "token_invalid", "token_expired"]

VerifyEmailResult = Literal["ok", "already_verified", "token_invalid", "token_expired"]

UpsertPushTokenResult = Literal["ok", "session_not_found"]

CancelDeletionResult = Literal["canceled", "not_scheduled", "not_found"]


@dataclass(frozen=True)
class UserMutationResult:
    """Outcome of an admin role/status change."""

    kind: Literal["ok", "not_found", "blocked_last_admin", "user_deleted"]
    user: AuthUserRecord | None = None

    def __post_init__(self) -> None:
        """Validate that successful outcomes carry the updated user."""
        if self.kind == "ok" and self.user is None:
            raise ValueError("ok outcome requires the updated user")


@dataclass(frozen=True)
class DeletionRequestResult:
    """Outcome of requesting account deletion."""

    kind: Literal["requested", "already_requested", "not_found", "blocked_last_admin"]
    scheduled_for: datetime | None = None


@dataclass(frozen=True)
class PasswordResetIssued:
    """Freshly issued password reset token, to be delivered out of band."""

    user_id: UUID
    email: str
    token: str = field(repr=False)
    expires_at: datetime


@dataclass(frozen=True)
class EmailVerificationIssued:
    """Freshly issued email verification token, to be delivered out of band."""

    user_id: UUID
    email: str
    token: str = field(repr=False)
    expires_at: datetime


# ============================================================================
# Account Deletion Finalize Outcomes
# ============================================================================

SkipReason = Literal["user_not_found", "already_deleted", "not_scheduled"]


@dataclass(frozen=True)
class FinalizeSkipped:
    reason: SkipReason


@dataclass(frozen=True)
class FinalizeNotDue:
    scheduled_for: datetime


@dataclass(frozen=True)
class FinalizeBlockedLastAdmin:
    pass


@dataclass(frozen=True)
class AccountFinalized:
    deleted_at: datetime


FinalizeDeletionResult = FinalizeSkipped | FinalizeNotDue | FinalizeBlockedLastAdmin | AccountFinalized


# ============================================================================
# Job Outcomes
# ============================================================================


@dataclass(frozen=True)
class FinalizeJobResult:
    """Result payload reported back to the job queue."""

    user_id: UUID
    outcome: Literal["finalized", "skipped", "rescheduled"]
    reason: str | None = None
    deleted_at: datetime | None = None
    rescheduled_until: datetime | None = None

    def to_payload(self) -> dict[str, Any]:
        """Serialize for the queue's result store."""
        payload: dict[str, Any] = {
            "ok": True,
            "user_id": str(self.user_id),
            "outcome": self.outcome,
        }
        if self.reason is not None:
            payload["reason"] = self.reason
        if self.deleted_at is not None:
            payload["deleted_at"] = self.deleted_at.isoformat()
        if self.rescheduled_until is not None:
            payload["rescheduled_until"] = self.rescheduled_until.isoformat()
        return payload


@dataclass(frozen=True)
class JobCompleted:
    result: FinalizeJobResult


@dataclass(frozen=True)
class JobRescheduled:
    """Business-level deferral: run again at `at`, not a failure."""

    at: datetime
    result: FinalizeJobResult


@dataclass(frozen=True)
class JobFailed:
    """Infrastructure failure; the queue should retry with backoff."""

    error: Exception


JobOutcome = JobCompleted | JobRescheduled | JobFailed
