"""
Identity Repository port.

Every operation runs inside a single transaction and reports expected
business conditions as a closed set of outcome tags instead of raising.
The only exceptions are infrastructure failures and the two creation
sentinels (EmailAlreadyExistsError, ExternalIdentityAlreadyExistsError).
"""

from datetime import datetime
from typing import Protocol
from uuid import UUID

from app.models.api import AuthMethod, OidcProvider, PushPlatform, UserRole, UserStatus
from app.models.domain import (
    AdminActor,
    AuthUserRecord,
    CancelDeletionResult,
    ChangePasswordResult,
    DeletionRequestResult,
    DeviceMeta,
    FinalizeDeletionResult,
    LinkExternalIdentityResult,
    LoginRecord,
    NewSession,
    RefreshRotationResult,
    RefreshTokenWithSession,
    ResetPasswordResult,
    SessionRecord,
    UpsertPushTokenResult,
    UserMutationResult,
    VerifiedOidcIdentity,
    VerifyEmailResult,
)


class IdentityRepository(Protocol):
    # ========================================================================
    # Users & Credentials
    # ========================================================================

    async def create_user_with_password(
        self, email: str, password_hash: str, now: datetime
    ) -> AuthUserRecord:
        """Raises EmailAlreadyExistsError on a duplicate email."""
        ...

    async def find_user_for_login(self, email: str) -> LoginRecord | None:
        """User plus password hash; None when unknown or no password is set."""
        ...

    async def find_user_by_id(self, user_id: UUID) -> AuthUserRecord | None: ...

    async def find_user_by_email(self, email: str) -> AuthUserRecord | None: ...

    async def get_auth_methods(self, user_id: UUID) -> list[AuthMethod]: ...

    async def find_password_hash(self, user_id: UUID) -> str | None: ...

    async def find_user_by_external_identity(
        self, provider: OidcProvider, subject: str
    ) -> AuthUserRecord | None: ...

    async def create_user_with_external_identity(
        self, identity: VerifiedOidcIdentity, now: datetime
    ) -> AuthUserRecord:
        """
        Create user, profile and identity atomically, email pre-verified.

        Raises EmailAlreadyExistsError or ExternalIdentityAlreadyExistsError
        when a concurrent writer got there first.
        """
        ...

    async def link_external_identity_to_user(
        self, user_id: UUID, identity: VerifiedOidcIdentity, now: datetime
    ) -> LinkExternalIdentityResult: ...

    async def change_password_and_revoke_other_sessions(
        self,
        user_id: UUID,
        session_id: UUID,
        expected_password_hash: str,
        new_password_hash: str,
        now: datetime,
    ) -> ChangePasswordResult:
        """Compare-and-swap on the expected hash; revokes all other live sessions."""
        ...

    async def issue_password_reset_token(
        self, user_id: UUID, token_hash: str, expires_at: datetime, now: datetime
    ) -> None:
        """Store a new reset token and revoke the user's outstanding ones."""
        ...

    async def reset_password_by_token_hash(
        self, token_hash: str, new_password_hash: str, now: datetime
    ) -> ResetPasswordResult:
        """Consume the token, set the password and revoke every session of the user."""
        ...

    async def issue_email_verification_token(
        self, user_id: UUID, token_hash: str, expires_at: datetime, now: datetime
    ) -> None: ...

    async def verify_email_by_token_hash(
        self, token_hash: str, now: datetime
    ) -> VerifyEmailResult: ...

    # ========================================================================
    # Sessions & Refresh Tokens
    # ========================================================================

    async def revoke_active_session_for_device(
        self, user_id: UUID, active_key: str, now: datetime
    ) -> bool:
        """Revoke the live session bound to active_key, if it belongs to user_id."""
        ...

    async def create_session(
        self, new_session: NewSession, refresh_token_hash: str
    ) -> SessionRecord:
        """Create a session and its refresh chain head in one transaction."""
        ...

    async def find_refresh_token_with_session(
        self, token_hash: str
    ) -> RefreshTokenWithSession | None: ...

    async def rotate_refresh_token(
        self,
        token_hash: str,
        new_token_hash: str,
        now: datetime,
        device: DeviceMeta | None = None,
    ) -> RefreshRotationResult:
        """
        Replace the chain head, conditioned on it still being unused.

        A token found already used, or a lost race on the conditional
        update, revokes the session and returns RotationReused.
        """
        ...

    async def revoke_session_and_tokens(self, session_id: UUID, now: datetime) -> None: ...

    async def revoke_session_by_refresh_token_hash(self, token_hash: str, now: datetime) -> bool:
        """False when the token is unknown or its session is already revoked."""
        ...

    async def revoke_session_by_id(self, user_id: UUID, session_id: UUID, now: datetime) -> bool:
        """False only when the session does not exist or is not the user's."""
        ...

    async def upsert_session_push_token(
        self,
        user_id: UUID,
        session_id: UUID,
        platform: PushPlatform,
        token: str,
        now: datetime,
    ) -> UpsertPushTokenResult: ...

    async def revoke_session_push_token(
        self, user_id: UUID, session_id: UUID, now: datetime
    ) -> bool: ...

    # ========================================================================
    # Account Lifecycle
    # ========================================================================

    async def set_user_role(
        self, actor: AdminActor, target_user_id: UUID, role: UserRole, now: datetime
    ) -> UserMutationResult: ...

    async def set_user_status(
        self,
        actor: AdminActor,
        target_user_id: UUID,
        status: UserStatus,
        reason: str | None,
        now: datetime,
    ) -> UserMutationResult: ...

    async def request_account_deletion(
        self,
        user_id: UUID,
        session_id: UUID,
        trace_id: str,
        now: datetime,
        scheduled_for: datetime,
    ) -> DeletionRequestResult: ...

    async def cancel_account_deletion(
        self, user_id: UUID, session_id: UUID, trace_id: str, now: datetime
    ) -> CancelDeletionResult: ...

    async def finalize_account_deletion(
        self, user_id: UUID, now: datetime, fallback_trace_id: str
    ) -> FinalizeDeletionResult:
        """
        Re-check and finalize a due deletion in one serializable transaction.

        Raises InvariantViolationError when a scheduled deletion has no
        requesting session recorded.
        """
        ...
