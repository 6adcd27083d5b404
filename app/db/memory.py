"""
In-Memory Identity Repository.

Single-process implementation of IdentityRepository for tests and local
tooling. Each operation mutates state without awaiting in between, so on
one event loop every operation is atomic, the same guarantee the SQL
implementation gets from a serializable transaction.
"""

from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID, uuid4

from app.exceptions import (
    EmailAlreadyExistsError,
    ExternalIdentityAlreadyExistsError,
    InvariantViolationError,
)
from app.models.api import (
    AccountDeletionAction,
    AuthMethod,
    OidcProvider,
    PushPlatform,
    UserRole,
    UserStatus,
)
from app.models.domain import (
    AccountFinalized,
    AdminActor,
    AuthUserRecord,
    CancelDeletionResult,
    ChangePasswordResult,
    DeletionRequestResult,
    DeviceMeta,
    FinalizeBlockedLastAdmin,
    FinalizeDeletionResult,
    FinalizeNotDue,
    FinalizeSkipped,
    LinkExternalIdentityResult,
    LoginRecord,
    NewSession,
    RefreshRotationResult,
    RefreshTokenRecord,
    RefreshTokenWithSession,
    ResetPasswordResult,
    RotationExpired,
    RotationNotFound,
    RotationOk,
    RotationReused,
    RotationSessionRevoked,
    SessionRecord,
    UpsertPushTokenResult,
    UserMutationResult,
    VerifiedOidcIdentity,
    VerifyEmailResult,
    normalize_email,
    tombstone_email,
)

# ============================================================================
# Mutable Rows
# ============================================================================


@dataclass
class UserRow:
    id: UUID
    email: str
    role: UserRole
    status: UserStatus
    created_at: datetime
    email_verified_at: datetime | None = None
    suspended_at: datetime | None = None
    suspended_reason: str | None = None
    deletion_requested_at: datetime | None = None
    deletion_scheduled_for: datetime | None = None
    deletion_requested_session_id: UUID | None = None
    deletion_requested_trace_id: str | None = None
    deleted_at: datetime | None = None
    display_name: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    password_hash: str | None = field(default=None, repr=False)


@dataclass
class ExternalIdentityRow:
    user_id: UUID
    provider: OidcProvider
    subject: str
    email: str


@dataclass
class SessionRow:
    id: UUID
    user_id: UUID
    expires_at: datetime
    created_at: datetime
    device: DeviceMeta
    active_key: str | None = None
    last_seen_at: datetime | None = None
    revoked_at: datetime | None = None
    push_platform: PushPlatform | None = None
    push_token: str | None = None
    push_token_revoked_at: datetime | None = None


@dataclass
class RefreshTokenRow:
    id: UUID
    session_id: UUID
    token_hash: str
    expires_at: datetime
    revoked_at: datetime | None = None
    replaced_by_id: UUID | None = None


@dataclass
class OneTimeTokenRow:
    """Email verification or password reset token."""

    id: UUID
    user_id: UUID
    token_hash: str
    expires_at: datetime
    used_at: datetime | None = None
    revoked_at: datetime | None = None

    @property
    def outstanding(self) -> bool:
        return self.used_at is None and self.revoked_at is None


@dataclass(frozen=True)
class AuditEntry:
    """Append-only audit record (role, status or deletion)."""

    kind: str
    actor_user_id: UUID
    actor_session_id: UUID
    target_user_id: UUID
    old_value: str | None
    new_value: str
    trace_id: str
    created_at: datetime
    reason: str | None = None


class InMemoryIdentityRepository:
    """
    IdentityRepository backed by dictionaries.

    Usage:
        repo = InMemoryIdentityRepository()
        user = await repo.create_user_with_password("a@example.com", hash, now)
    """

    def __init__(self) -> None:
        self.users: dict[UUID, UserRow] = {}
        self.external_identities: list[ExternalIdentityRow] = []
        self.sessions: dict[UUID, SessionRow] = {}
        self.refresh_tokens: dict[UUID, RefreshTokenRow] = {}
        self.password_reset_tokens: dict[UUID, OneTimeTokenRow] = {}
        self.email_verification_tokens: dict[UUID, OneTimeTokenRow] = {}
        self.audit_log: list[AuditEntry] = []

    # ========================================================================
    # Users & Credentials
    # ========================================================================

    async def create_user_with_password(
        self, email: str, password_hash: str, now: datetime
    ) -> AuthUserRecord:
        row = self._insert_user(normalize_email(email), now)
        row.password_hash = password_hash
        return _to_auth_user(row)

    async def find_user_for_login(self, email: str) -> LoginRecord | None:
        row = self._user_by_email(normalize_email(email))
        if row is None or row.password_hash is None:
            return None
        return LoginRecord(user=_to_auth_user(row), password_hash=row.password_hash)

    async def find_user_by_id(self, user_id: UUID) -> AuthUserRecord | None:
        row = self.users.get(user_id)
        return _to_auth_user(row) if row is not None else None

    async def find_user_by_email(self, email: str) -> AuthUserRecord | None:
        row = self._user_by_email(normalize_email(email))
        return _to_auth_user(row) if row is not None else None

    async def get_auth_methods(self, user_id: UUID) -> list[AuthMethod]:
        row = self.users.get(user_id)
        if row is None:
            return []
        methods: list[AuthMethod] = []
        if row.password_hash is not None:
            methods.append(AuthMethod.PASSWORD)
        providers = {i.provider.value for i in self.external_identities if i.user_id == user_id}
        methods.extend(AuthMethod(p) for p in sorted(providers))
        return methods

    async def find_password_hash(self, user_id: UUID) -> str | None:
        row = self.users.get(user_id)
        return row.password_hash if row is not None else None

    async def find_user_by_external_identity(
        self, provider: OidcProvider, subject: str
    ) -> AuthUserRecord | None:
        identity = self._identity(provider, subject)
        if identity is None:
            return None
        return _to_auth_user(self.users[identity.user_id])

    async def create_user_with_external_identity(
        self, identity: VerifiedOidcIdentity, now: datetime
    ) -> AuthUserRecord:
        if self._identity(identity.provider, identity.subject) is not None:
            raise ExternalIdentityAlreadyExistsError(identity.provider.value, identity.subject)
        email = normalize_email(identity.email)
        row = self._insert_user(email, now)
        row.email_verified_at = now
        row.display_name = identity.display_name
        row.given_name = identity.given_name
        row.family_name = identity.family_name
        self.external_identities.append(
            ExternalIdentityRow(row.id, identity.provider, identity.subject, email)
        )
        return _to_auth_user(row)

    async def link_external_identity_to_user(
        self, user_id: UUID, identity: VerifiedOidcIdentity, now: datetime
    ) -> LinkExternalIdentityResult:
        row = self.users.get(user_id)
        if row is None or row.status == UserStatus.DELETED:
            return "user_not_found"

        existing = self._identity(identity.provider, identity.subject)
        if existing is not None:
            return "already_linked" if existing.user_id == user_id else "identity_linked_to_other_user"
        if any(
            i.user_id == user_id and i.provider == identity.provider
            for i in self.external_identities
        ):
            return "provider_already_linked"

        email = normalize_email(identity.email)
        self.external_identities.append(
            ExternalIdentityRow(user_id, identity.provider, identity.subject, email)
        )
        if row.email == email and row.email_verified_at is None:
            row.email_verified_at = now
        return "ok"

    async def change_password_and_revoke_other_sessions(
        self,
        user_id: UUID,
        session_id: UUID,
        expected_password_hash: str,
        new_password_hash: str,
        now: datetime,
    ) -> ChangePasswordResult:
        row = self.users.get(user_id)
        if row is None or row.status == UserStatus.DELETED:
            return "not_found"
        if row.password_hash is None:
            return "password_not_set"
        if row.password_hash != expected_password_hash:
            return "current_password_mismatch"
        row.password_hash = new_password_hash
        self._revoke_user_sessions(user_id, now, keep_session_id=session_id)
        return "ok"

    async def issue_password_reset_token(
        self, user_id: UUID, token_hash: str, expires_at: datetime, now: datetime
    ) -> None:
        self._issue_one_time_token(self.password_reset_tokens, user_id, token_hash, expires_at, now)

    async def reset_password_by_token_hash(
        self, token_hash: str, new_password_hash: str, now: datetime
    ) -> ResetPasswordResult:
        token = _find_token(self.password_reset_tokens, token_hash)
        if token is None or not token.outstanding:
            return "token_invalid"
        if token.expires_at <= now:
            return "token_expired"
        row = self.users.get(token.user_id)
        if row is None or row.status == UserStatus.DELETED:
            return "token_invalid"

        token.used_at = now
        row.password_hash = new_password_hash
        self._revoke_user_sessions(row.id, now)
        for other in self.password_reset_tokens.values():
            if other.user_id == row.id and other.outstanding:
                other.revoked_at = now
        return "ok"

    async def issue_email_verification_token(
        self, user_id: UUID, token_hash: str, expires_at: datetime, now: datetime
    ) -> None:
        self._issue_one_time_token(
            self.email_verification_tokens, user_id, token_hash, expires_at, now
        )

    async def verify_email_by_token_hash(self, token_hash: str, now: datetime) -> VerifyEmailResult:
        token = _find_token(self.email_verification_tokens, token_hash)
        if token is None or not token.outstanding:
            return "token_invalid"
        row = self.users.get(token.user_id)
        if row is None or row.status == UserStatus.DELETED:
            return "token_invalid"
        if row.email_verified_at is not None:
            token.used_at = now
            return "already_verified"
        if token.expires_at <= now:
            return "token_expired"

        token.used_at = now
        row.email_verified_at = now
        for other in self.email_verification_tokens.values():
            if other.user_id == row.id and other.outstanding:
                other.revoked_at = now
        return "ok"

    # ========================================================================
    # Sessions & Refresh Tokens
    # ========================================================================

    async def revoke_active_session_for_device(
        self, user_id: UUID, active_key: str, now: datetime
    ) -> bool:
        holder = self._session_by_active_key(active_key)
        if holder is None or holder.user_id != user_id or holder.revoked_at is not None:
            return False
        self._revoke_session(holder.id, now)
        return True

    async def create_session(
        self, new_session: NewSession, refresh_token_hash: str
    ) -> SessionRecord:
        now = new_session.now
        if new_session.active_key is not None:
            holder = self._session_by_active_key(new_session.active_key)
            if holder is not None:
                self._revoke_session(holder.id, now)

        row = SessionRow(
            id=uuid4(),
            user_id=new_session.user_id,
            expires_at=new_session.expires_at,
            created_at=now,
            device=new_session.device,
            active_key=new_session.active_key,
            last_seen_at=now,
        )
        self.sessions[row.id] = row
        token = RefreshTokenRow(
            id=uuid4(),
            session_id=row.id,
            token_hash=refresh_token_hash,
            expires_at=new_session.expires_at,
        )
        self.refresh_tokens[token.id] = token
        return _to_session_record(row)

    async def find_refresh_token_with_session(
        self, token_hash: str
    ) -> RefreshTokenWithSession | None:
        token = self._refresh_token_by_hash(token_hash)
        if token is None:
            return None
        session = self.sessions[token.session_id]
        return RefreshTokenWithSession(
            token=RefreshTokenRecord(
                id=token.id,
                session_id=token.session_id,
                expires_at=token.expires_at,
                revoked_at=token.revoked_at,
                replaced_by_id=token.replaced_by_id,
            ),
            session=_to_session_record(session),
            user=_to_auth_user(self.users[session.user_id]),
        )

    async def rotate_refresh_token(
        self,
        token_hash: str,
        new_token_hash: str,
        now: datetime,
        device: DeviceMeta | None = None,
    ) -> RefreshRotationResult:
        token = self._refresh_token_by_hash(token_hash)
        if token is None:
            return RotationNotFound()
        session = self.sessions[token.session_id]

        if session.revoked_at is not None:
            return RotationSessionRevoked(session.id)
        if token.expires_at <= now or session.expires_at <= now:
            return RotationExpired(session.id)
        if token.revoked_at is not None or token.replaced_by_id is not None:
            self._revoke_session(session.id, now)
            return RotationReused(session.id)

        successor = RefreshTokenRow(
            id=uuid4(),
            session_id=session.id,
            token_hash=new_token_hash,
            expires_at=token.expires_at,
        )
        self.refresh_tokens[successor.id] = successor
        token.revoked_at = now
        token.replaced_by_id = successor.id
        session.last_seen_at = now
        if device is not None:
            session.device = DeviceMeta(
                device_id=session.device.device_id,
                device_name=session.device.device_name,
                ip=device.ip or session.device.ip,
                user_agent=device.user_agent or session.device.user_agent,
            )
        return RotationOk(session_id=session.id, refresh_token_id=successor.id)

    async def revoke_session_and_tokens(self, session_id: UUID, now: datetime) -> None:
        self._revoke_session(session_id, now)

    async def revoke_session_by_refresh_token_hash(self, token_hash: str, now: datetime) -> bool:
        token = self._refresh_token_by_hash(token_hash)
        if token is None:
            return False
        session = self.sessions[token.session_id]
        if session.revoked_at is not None:
            return False
        self._revoke_session(session.id, now)
        return True

    async def revoke_session_by_id(self, user_id: UUID, session_id: UUID, now: datetime) -> bool:
        session = self.sessions.get(session_id)
        if session is None or session.user_id != user_id:
            return False
        self._revoke_session(session_id, now)
        return True

    async def upsert_session_push_token(
        self,
        user_id: UUID,
        session_id: UUID,
        platform: PushPlatform,
        token: str,
        now: datetime,
    ) -> UpsertPushTokenResult:
        session = self.sessions.get(session_id)
        if (
            session is None
            or session.user_id != user_id
            or session.revoked_at is not None
            or session.expires_at <= now
        ):
            return "session_not_found"

        for other in self.sessions.values():
            if other.id != session_id and other.push_token == token:
                _clear_push_token(other, now)
        session.push_platform = platform
        session.push_token = token
        session.push_token_revoked_at = None
        return "ok"

    async def revoke_session_push_token(
        self, user_id: UUID, session_id: UUID, now: datetime
    ) -> bool:
        session = self.sessions.get(session_id)
        if session is None or session.user_id != user_id or session.push_token is None:
            return False
        _clear_push_token(session, now)
        return True

    # ========================================================================
    # Account Lifecycle
    # ========================================================================

    async def set_user_role(
        self, actor: AdminActor, target_user_id: UUID, role: UserRole, now: datetime
    ) -> UserMutationResult:
        row = self.users.get(target_user_id)
        if row is None:
            return UserMutationResult(kind="not_found")
        if row.status == UserStatus.DELETED:
            return UserMutationResult(kind="user_deleted")
        if row.role == role:
            return UserMutationResult(kind="ok", user=_to_auth_user(row))
        if role == UserRole.USER and self._is_last_active_admin(row):
            return UserMutationResult(kind="blocked_last_admin")

        old_role = row.role
        row.role = role
        self.audit_log.append(
            AuditEntry(
                kind="role",
                actor_user_id=actor.user_id,
                actor_session_id=actor.session_id,
                target_user_id=target_user_id,
                old_value=old_role.value,
                new_value=role.value,
                trace_id=actor.trace_id,
                created_at=now,
            )
        )
        return UserMutationResult(kind="ok", user=_to_auth_user(row))

    async def set_user_status(
        self,
        actor: AdminActor,
        target_user_id: UUID,
        status: UserStatus,
        reason: str | None,
        now: datetime,
    ) -> UserMutationResult:
        if status == UserStatus.DELETED:
            raise ValueError("DELETED is only reachable through account deletion finalize")

        row = self.users.get(target_user_id)
        if row is None:
            return UserMutationResult(kind="not_found")
        if row.status == UserStatus.DELETED:
            return UserMutationResult(kind="user_deleted")
        if row.status == status:
            return UserMutationResult(kind="ok", user=_to_auth_user(row))
        if status == UserStatus.SUSPENDED and self._is_last_active_admin(row):
            return UserMutationResult(kind="blocked_last_admin")

        old_status = row.status
        row.status = status
        if status == UserStatus.SUSPENDED:
            row.suspended_at = now
            row.suspended_reason = reason
            self._revoke_user_sessions(target_user_id, now)
        else:
            row.suspended_at = None
            row.suspended_reason = None
        self.audit_log.append(
            AuditEntry(
                kind="status",
                actor_user_id=actor.user_id,
                actor_session_id=actor.session_id,
                target_user_id=target_user_id,
                old_value=old_status.value,
                new_value=status.value,
                trace_id=actor.trace_id,
                created_at=now,
                reason=reason,
            )
        )
        return UserMutationResult(kind="ok", user=_to_auth_user(row))

    async def request_account_deletion(
        self,
        user_id: UUID,
        session_id: UUID,
        trace_id: str,
        now: datetime,
        scheduled_for: datetime,
    ) -> DeletionRequestResult:
        row = self.users.get(user_id)
        if row is None or row.status == UserStatus.DELETED:
            return DeletionRequestResult(kind="not_found")
        if row.deletion_scheduled_for is not None:
            return DeletionRequestResult(
                kind="already_requested", scheduled_for=row.deletion_scheduled_for
            )
        if self._is_last_active_admin(row):
            return DeletionRequestResult(kind="blocked_last_admin")

        row.deletion_requested_at = now
        row.deletion_scheduled_for = scheduled_for
        row.deletion_requested_session_id = session_id
        row.deletion_requested_trace_id = trace_id
        self._audit_deletion(row.id, session_id, AccountDeletionAction.REQUESTED, trace_id, now)
        return DeletionRequestResult(kind="requested", scheduled_for=scheduled_for)

    async def cancel_account_deletion(
        self, user_id: UUID, session_id: UUID, trace_id: str, now: datetime
    ) -> CancelDeletionResult:
        row = self.users.get(user_id)
        if row is None or row.status == UserStatus.DELETED:
            return "not_found"
        if row.deletion_scheduled_for is None:
            return "not_scheduled"
        _clear_deletion_request(row)
        self._audit_deletion(row.id, session_id, AccountDeletionAction.CANCELED, trace_id, now)
        return "canceled"

    async def finalize_account_deletion(
        self, user_id: UUID, now: datetime, fallback_trace_id: str
    ) -> FinalizeDeletionResult:
        row = self.users.get(user_id)
        if row is None:
            return FinalizeSkipped("user_not_found")
        if row.status == UserStatus.DELETED or row.deleted_at is not None:
            return FinalizeSkipped("already_deleted")
        if row.deletion_scheduled_for is None:
            return FinalizeSkipped("not_scheduled")
        if row.deletion_scheduled_for > now:
            return FinalizeNotDue(row.deletion_scheduled_for)

        actor_session_id = row.deletion_requested_session_id
        if actor_session_id is None:
            raise InvariantViolationError(
                f"user {user_id} scheduled for deletion without a requesting session"
            )
        trace_id = row.deletion_requested_trace_id or fallback_trace_id

        if self._is_last_active_admin(row):
            self._audit_deletion(
                user_id,
                actor_session_id,
                AccountDeletionAction.FINALIZE_BLOCKED_LAST_ADMIN,
                trace_id,
                now,
            )
            return FinalizeBlockedLastAdmin()

        old_status = row.status
        row.email = tombstone_email(user_id)
        row.email_verified_at = None
        row.role = UserRole.USER
        row.status = UserStatus.DELETED
        row.deleted_at = now
        row.suspended_at = None
        row.suspended_reason = None
        row.display_name = None
        row.given_name = None
        row.family_name = None
        row.password_hash = None
        _clear_deletion_request(row)

        self.external_identities = [i for i in self.external_identities if i.user_id != user_id]
        for tokens in (self.password_reset_tokens, self.email_verification_tokens):
            for token_id in [t.id for t in tokens.values() if t.user_id == user_id]:
                del tokens[token_id]
        session_ids = {s.id for s in self.sessions.values() if s.user_id == user_id}
        for token_id in [t.id for t in self.refresh_tokens.values() if t.session_id in session_ids]:
            del self.refresh_tokens[token_id]
        for session_id in session_ids:
            del self.sessions[session_id]

        self.audit_log.append(
            AuditEntry(
                kind="status",
                actor_user_id=user_id,
                actor_session_id=actor_session_id,
                target_user_id=user_id,
                old_value=old_status.value,
                new_value=UserStatus.DELETED.value,
                trace_id=trace_id,
                created_at=now,
                reason="account_deletion_finalized",
            )
        )
        self._audit_deletion(
            user_id, actor_session_id, AccountDeletionAction.FINALIZED, trace_id, now
        )
        return AccountFinalized(deleted_at=now)

    # ========================================================================
    # Private Helpers
    # ========================================================================

    def _insert_user(self, email: str, now: datetime) -> UserRow:
        if self._user_by_email(email) is not None:
            raise EmailAlreadyExistsError(email)
        row = UserRow(
            id=uuid4(),
            email=email,
            role=UserRole.USER,
            status=UserStatus.ACTIVE,
            created_at=now,
        )
        self.users[row.id] = row
        return row

    def _user_by_email(self, email: str) -> UserRow | None:
        return next((u for u in self.users.values() if u.email == email), None)

    def _identity(self, provider: OidcProvider, subject: str) -> ExternalIdentityRow | None:
        return next(
            (
                i
                for i in self.external_identities
                if i.provider == provider and i.subject == subject
            ),
            None,
        )

    def _session_by_active_key(self, active_key: str) -> SessionRow | None:
        return next((s for s in self.sessions.values() if s.active_key == active_key), None)

    def _refresh_token_by_hash(self, token_hash: str) -> RefreshTokenRow | None:
        return next((t for t in self.refresh_tokens.values() if t.token_hash == token_hash), None)

    def _is_last_active_admin(self, row: UserRow) -> bool:
        if row.role != UserRole.ADMIN or row.status != UserStatus.ACTIVE:
            return False
        active_admins = [
            u
            for u in self.users.values()
            if u.role == UserRole.ADMIN and u.status == UserStatus.ACTIVE
        ]
        return len(active_admins) <= 1

    def _revoke_session(self, session_id: UUID, now: datetime) -> None:
        session = self.sessions.get(session_id)
        if session is None:
            return
        if session.revoked_at is None:
            session.revoked_at = now
        session.active_key = None
        if session.push_token is not None:
            _clear_push_token(session, now)
        for token in self.refresh_tokens.values():
            if token.session_id == session_id and token.revoked_at is None:
                token.revoked_at = now

    def _revoke_user_sessions(
        self, user_id: UUID, now: datetime, keep_session_id: UUID | None = None
    ) -> None:
        for session in list(self.sessions.values()):
            if (
                session.user_id == user_id
                and session.revoked_at is None
                and session.id != keep_session_id
            ):
                self._revoke_session(session.id, now)

    def _issue_one_time_token(
        self,
        tokens: dict[UUID, OneTimeTokenRow],
        user_id: UUID,
        token_hash: str,
        expires_at: datetime,
        now: datetime,
    ) -> None:
        for token in tokens.values():
            if token.user_id == user_id and token.outstanding:
                token.revoked_at = now
        row = OneTimeTokenRow(
            id=uuid4(), user_id=user_id, token_hash=token_hash, expires_at=expires_at
        )
        tokens[row.id] = row

    def _audit_deletion(
        self,
        user_id: UUID,
        session_id: UUID,
        action: AccountDeletionAction,
        trace_id: str,
        now: datetime,
    ) -> None:
        self.audit_log.append(
            AuditEntry(
                kind="deletion",
                actor_user_id=user_id,
                actor_session_id=session_id,
                target_user_id=user_id,
                old_value=None,
                new_value=action.value,
                trace_id=trace_id,
                created_at=now,
            )
        )


def _to_auth_user(row: UserRow) -> AuthUserRecord:
    return AuthUserRecord(
        id=row.id,
        email=row.email,
        email_verified_at=row.email_verified_at,
        role=row.role,
        status=row.status,
    )


def _to_session_record(row: SessionRow) -> SessionRecord:
    return SessionRecord(
        id=row.id,
        user_id=row.user_id,
        expires_at=row.expires_at,
        revoked_at=row.revoked_at,
        device_id=row.device.device_id,
    )


def _find_token(tokens: dict[UUID, OneTimeTokenRow], token_hash: str) -> OneTimeTokenRow | None:
    return next((t for t in tokens.values() if t.token_hash == token_hash), None)


def _clear_push_token(session: SessionRow, now: datetime) -> None:
    session.push_platform = None
    session.push_token = None
    session.push_token_revoked_at = now


def _clear_deletion_request(row: UserRow) -> None:
    row.deletion_requested_at = None
    row.deletion_scheduled_for = None
    row.deletion_requested_session_id = None
    row.deletion_requested_trace_id = None
