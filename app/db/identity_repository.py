"""
SQLAlchemy Identity Repository - PostgreSQL implementation of IdentityRepository.

Every mutation runs through ConsistencyGuard (SERIALIZABLE + bounded retry).
Lost races are detected with conditional updates and row counts; only the
admin invariant takes explicit row locks over a set of rows.
"""

from collections.abc import Sequence
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import case, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from app.db.consistency import (
    ConsistencyGuard,
    blocks_last_admin,
    is_unique_violation,
    lock_active_admin_ids,
)
from app.db.models import (
    UQ_EXTERNAL_IDENTITIES_PROVIDER_SUBJECT,
    UQ_EXTERNAL_IDENTITIES_USER_PROVIDER,
    UQ_SESSIONS_ACTIVE_KEY,
    UQ_SESSIONS_PUSH_TOKEN,
    UQ_USERS_EMAIL,
    AuthSession,
    EmailVerificationToken,
    ExternalIdentity,
    PasswordCredential,
    PasswordResetToken,
    RefreshToken,
    User,
    UserAccountDeletionAudit,
    UserProfile,
    UserRoleChangeAudit,
    UserStatusChangeAudit,
)
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

logger = get_logger(__name__)


class _ChainHeadLost(Exception):
    """Conditional update on the old chain head matched no row."""

    def __init__(self, session_id: UUID) -> None:
        self.session_id = session_id
        super().__init__(f"Refresh chain head of session {session_id} already replaced")


def _to_auth_user(user: User) -> AuthUserRecord:
    return AuthUserRecord(
        id=user.id,
        email=user.email,
        email_verified_at=user.email_verified_at,
        role=UserRole(user.role),
        status=UserStatus(user.status),
    )


def _to_session_record(session_row: AuthSession) -> SessionRecord:
    return SessionRecord(
        id=session_row.id,
        user_id=session_row.user_id,
        expires_at=session_row.expires_at,
        revoked_at=session_row.revoked_at,
        device_id=session_row.device_id,
    )


def _rowcount(result: object) -> int:
    count = getattr(result, "rowcount", None)
    return count if count else 0


class SqlAlchemyIdentityRepository:
    """
    Identity persistence over async SQLAlchemy.

    Usage:
        guard = ConsistencyGuard(get_session_factory(), max_attempts=3)
        repo = SqlAlchemyIdentityRepository(get_session_factory(), guard)
        user = await repo.find_user_by_id(user_id)
    """

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession], guard: ConsistencyGuard
    ) -> None:
        self._session_factory = session_factory
        self._guard = guard

    # ========================================================================
    # Users & Credentials
    # ========================================================================

    async def create_user_with_password(
        self, email: str, password_hash: str, now: datetime
    ) -> AuthUserRecord:
        email = normalize_email(email)

        async def work(session: AsyncSession) -> AuthUserRecord:
            user = User(
                id=uuid4(),
                email=email,
                role=UserRole.USER.value,
                status=UserStatus.ACTIVE.value,
                created_at=now,
                updated_at=now,
            )
            session.add(user)
            await session.flush()
            session.add(
                PasswordCredential(
                    user_id=user.id,
                    password_hash=password_hash,
                    created_at=now,
                    updated_at=now,
                )
            )
            session.add(UserProfile(user_id=user.id, updated_at=now))
            await session.flush()
            return _to_auth_user(user)

        try:
            return await self._guard.run("create_user_with_password", work)
        except IntegrityError as e:
            if is_unique_violation(e, UQ_USERS_EMAIL):
                raise EmailAlreadyExistsError(email) from e
            raise

    async def find_user_for_login(self, email: str) -> LoginRecord | None:
        stmt = (
            select(User, PasswordCredential.password_hash)
            .join(PasswordCredential, PasswordCredential.user_id == User.id)
            .where(User.email == normalize_email(email))
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).first()
        if row is None:
            return None
        user, password_hash = row
        return LoginRecord(user=_to_auth_user(user), password_hash=password_hash)

    async def find_user_by_id(self, user_id: UUID) -> AuthUserRecord | None:
        async with self._session_factory() as session:
            user = await session.get(User, user_id)
        return _to_auth_user(user) if user is not None else None

    async def find_user_by_email(self, email: str) -> AuthUserRecord | None:
        stmt = select(User).where(User.email == normalize_email(email))
        async with self._session_factory() as session:
            user = (await session.execute(stmt)).scalar_one_or_none()
        return _to_auth_user(user) if user is not None else None

    async def get_auth_methods(self, user_id: UUID) -> list[AuthMethod]:
        async with self._session_factory() as session:
            has_password = await session.get(PasswordCredential, user_id) is not None
            providers = (
                await session.execute(
                    select(ExternalIdentity.provider).where(ExternalIdentity.user_id == user_id)
                )
            ).scalars().all()

        methods: list[AuthMethod] = []
        if has_password:
            methods.append(AuthMethod.PASSWORD)
        for provider in sorted(set(providers)):
            methods.append(AuthMethod(provider))
        return methods

    async def find_password_hash(self, user_id: UUID) -> str | None:
        async with self._session_factory() as session:
            credential = await session.get(PasswordCredential, user_id)
        return credential.password_hash if credential is not None else None

    async def find_user_by_external_identity(
        self, provider: OidcProvider, subject: str
    ) -> AuthUserRecord | None:
        stmt = (
            select(User)
            .join(ExternalIdentity, ExternalIdentity.user_id == User.id)
            .where(
                ExternalIdentity.provider == provider.value,
                ExternalIdentity.subject == subject,
            )
        )
        async with self._session_factory() as session:
            user = (await session.execute(stmt)).scalar_one_or_none()
        return _to_auth_user(user) if user is not None else None

    async def create_user_with_external_identity(
        self, identity: VerifiedOidcIdentity, now: datetime
    ) -> AuthUserRecord:
        email = normalize_email(identity.email)

        async def work(session: AsyncSession) -> AuthUserRecord:
            user = User(
                id=uuid4(),
                email=email,
                email_verified_at=now,
                role=UserRole.USER.value,
                status=UserStatus.ACTIVE.value,
                created_at=now,
                updated_at=now,
            )
            session.add(user)
            await session.flush()
            session.add(
                UserProfile(
                    user_id=user.id,
                    display_name=identity.display_name,
                    given_name=identity.given_name,
                    family_name=identity.family_name,
                    updated_at=now,
                )
            )
            session.add(
                ExternalIdentity(
                    id=uuid4(),
                    user_id=user.id,
                    provider=identity.provider.value,
                    subject=identity.subject,
                    email=email,
                    created_at=now,
                )
            )
            await session.flush()
            return _to_auth_user(user)

        try:
            return await self._guard.run("create_user_with_external_identity", work)
        except IntegrityError as e:
            if is_unique_violation(e, UQ_EXTERNAL_IDENTITIES_PROVIDER_SUBJECT):
                raise ExternalIdentityAlreadyExistsError(
                    identity.provider.value, identity.subject
                ) from e
            if is_unique_violation(e, UQ_USERS_EMAIL):
                raise EmailAlreadyExistsError(email) from e
            raise

    async def link_external_identity_to_user(
        self, user_id: UUID, identity: VerifiedOidcIdentity, now: datetime
    ) -> LinkExternalIdentityResult:
        email = normalize_email(identity.email)

        async def work(session: AsyncSession) -> LinkExternalIdentityResult:
            user = (
                await session.execute(select(User).where(User.id == user_id).with_for_update())
            ).scalar_one_or_none()
            if user is None or user.status == UserStatus.DELETED.value:
                return "user_not_found"

            conflict = await self._classify_link_conflict(session, user_id, identity)
            if conflict is not None:
                return conflict

            session.add(
                ExternalIdentity(
                    id=uuid4(),
                    user_id=user_id,
                    provider=identity.provider.value,
                    subject=identity.subject,
                    email=email,
                    created_at=now,
                )
            )
            if user.email == email and user.email_verified_at is None:
                user.email_verified_at = now
                user.updated_at = now
            await session.flush()
            return "ok"

        try:
            return await self._guard.run("link_external_identity", work)
        except IntegrityError as e:
            if not (
                is_unique_violation(e, UQ_EXTERNAL_IDENTITIES_PROVIDER_SUBJECT)
                or is_unique_violation(e, UQ_EXTERNAL_IDENTITIES_USER_PROVIDER)
            ):
                raise
            # Lost an insert race; classify against the winner
            async with self._session_factory() as session:
                conflict = await self._classify_link_conflict(session, user_id, identity)
            if conflict is None:
                raise
            logger.info(
                "external_identity_link_race",
                user_id=str(user_id),
                provider=identity.provider.value,
                outcome=conflict,
            )
            return conflict

    async def _classify_link_conflict(
        self, session: AsyncSession, user_id: UUID, identity: VerifiedOidcIdentity
    ) -> LinkExternalIdentityResult | None:
        existing = (
            await session.execute(
                select(ExternalIdentity).where(
                    ExternalIdentity.provider == identity.provider.value,
                    ExternalIdentity.subject == identity.subject,
                )
            )
        ).scalar_one_or_none()
        if existing is not None:
            if existing.user_id == user_id:
                return "already_linked"
            return "identity_linked_to_other_user"

        provider_link = (
            await session.execute(
                select(ExternalIdentity.id).where(
                    ExternalIdentity.user_id == user_id,
                    ExternalIdentity.provider == identity.provider.value,
                )
            )
        ).scalar_one_or_none()
        if provider_link is not None:
            return "provider_already_linked"
        return None

    async def change_password_and_revoke_other_sessions(
        self,
        user_id: UUID,
        session_id: UUID,
        expected_password_hash: str,
        new_password_hash: str,
        now: datetime,
    ) -> ChangePasswordResult:
        async def work(session: AsyncSession) -> ChangePasswordResult:
            user = await session.get(User, user_id)
            if user is None or user.status == UserStatus.DELETED.value:
                return "not_found"

            credential = (
                await session.execute(
                    select(PasswordCredential)
                    .where(PasswordCredential.user_id == user_id)
                    .with_for_update()
                )
            ).scalar_one_or_none()
            if credential is None:
                return "password_not_set"
            if credential.password_hash != expected_password_hash:
                return "current_password_mismatch"

            credential.password_hash = new_password_hash
            credential.updated_at = now
            revoked = await self._revoke_user_sessions(
                session, user_id, now, keep_session_id=session_id
            )
            logger.info(
                "password_changed",
                user_id=str(user_id),
                other_sessions_revoked=len(revoked),
            )
            return "ok"

        return await self._guard.run("change_password", work)

    async def issue_password_reset_token(
        self, user_id: UUID, token_hash: str, expires_at: datetime, now: datetime
    ) -> None:
        async def work(session: AsyncSession) -> None:
            await session.execute(
                update(PasswordResetToken)
                .where(
                    PasswordResetToken.user_id == user_id,
                    PasswordResetToken.used_at.is_(None),
                    PasswordResetToken.revoked_at.is_(None),
                )
                .values(revoked_at=now)
                .execution_options(synchronize_session=False)
            )
            session.add(
                PasswordResetToken(
                    id=uuid4(),
                    user_id=user_id,
                    token_hash=token_hash,
                    expires_at=expires_at,
                    created_at=now,
                )
            )
            await session.flush()

        await self._guard.run("issue_password_reset_token", work)

    async def reset_password_by_token_hash(
        self, token_hash: str, new_password_hash: str, now: datetime
    ) -> ResetPasswordResult:
        async def work(session: AsyncSession) -> ResetPasswordResult:
            token = (
                await session.execute(
                    select(PasswordResetToken)
                    .where(PasswordResetToken.token_hash == token_hash)
                    .with_for_update()
                )
            ).scalar_one_or_none()
            if token is None or token.used_at is not None or token.revoked_at is not None:
                return "token_invalid"
            if token.expires_at <= now:
                return "token_expired"

            user = await session.get(User, token.user_id)
            if user is None or user.status == UserStatus.DELETED.value:
                return "token_invalid"

            consumed = await session.execute(
                update(PasswordResetToken)
                .where(
                    PasswordResetToken.id == token.id,
                    PasswordResetToken.used_at.is_(None),
                    PasswordResetToken.revoked_at.is_(None),
                )
                .values(used_at=now)
                .execution_options(synchronize_session=False)
            )
            if _rowcount(consumed) != 1:
                return "token_invalid"

            credential = await session.get(PasswordCredential, user.id)
            if credential is None:
                session.add(
                    PasswordCredential(
                        user_id=user.id,
                        password_hash=new_password_hash,
                        created_at=now,
                        updated_at=now,
                    )
                )
            else:
                credential.password_hash = new_password_hash
                credential.updated_at = now

            revoked = await self._revoke_user_sessions(session, user.id, now)
            await session.execute(
                update(PasswordResetToken)
                .where(
                    PasswordResetToken.user_id == user.id,
                    PasswordResetToken.id != token.id,
                    PasswordResetToken.used_at.is_(None),
                    PasswordResetToken.revoked_at.is_(None),
                )
                .values(revoked_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.flush()
            logger.info(
                "password_reset_completed",
                user_id=str(user.id),
                sessions_revoked=len(revoked),
            )
            return "ok"

        return await self._guard.run("reset_password", work)

    async def issue_email_verification_token(
        self, user_id: UUID, token_hash: str, expires_at: datetime, now: datetime
    ) -> None:
        async def work(session: AsyncSession) -> None:
            await session.execute(
                update(EmailVerificationToken)
                .where(
                    EmailVerificationToken.user_id == user_id,
                    EmailVerificationToken.used_at.is_(None),
                    EmailVerificationToken.revoked_at.is_(None),
                )
                .values(revoked_at=now)
                .execution_options(synchronize_session=False)
            )
            session.add(
                EmailVerificationToken(
                    id=uuid4(),
                    user_id=user_id,
                    token_hash=token_hash,
                    expires_at=expires_at,
                    created_at=now,
                )
            )
            await session.flush()

        await self._guard.run("issue_email_verification_token", work)

    async def verify_email_by_token_hash(self, token_hash: str, now: datetime) -> VerifyEmailResult:
        async def work(session: AsyncSession) -> VerifyEmailResult:
            token = (
                await session.execute(
                    select(EmailVerificationToken)
                    .where(EmailVerificationToken.token_hash == token_hash)
                    .with_for_update()
                )
            ).scalar_one_or_none()
            if token is None or token.used_at is not None or token.revoked_at is not None:
                return "token_invalid"

            user = await session.get(User, token.user_id)
            if user is None or user.status == UserStatus.DELETED.value:
                return "token_invalid"

            if user.email_verified_at is not None:
                token.used_at = now
                return "already_verified"
            if token.expires_at <= now:
                return "token_expired"

            consumed = await session.execute(
                update(EmailVerificationToken)
                .where(
                    EmailVerificationToken.id == token.id,
                    EmailVerificationToken.used_at.is_(None),
                    EmailVerificationToken.revoked_at.is_(None),
                )
                .values(used_at=now)
                .execution_options(synchronize_session=False)
            )
            if _rowcount(consumed) != 1:
                return "token_invalid"

            user.email_verified_at = now
            user.updated_at = now
            await session.execute(
                update(EmailVerificationToken)
                .where(
                    EmailVerificationToken.user_id == user.id,
                    EmailVerificationToken.id != token.id,
                    EmailVerificationToken.used_at.is_(None),
                    EmailVerificationToken.revoked_at.is_(None),
                )
                .values(revoked_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.flush()
            return "ok"

        return await self._guard.run("verify_email", work)

    # ========================================================================
    # Sessions & Refresh Tokens
    # ========================================================================

    async def revoke_active_session_for_device(
        self, user_id: UUID, active_key: str, now: datetime
    ) -> bool:
        async def work(session: AsyncSession) -> bool:
            holder = (
                await session.execute(
                    select(AuthSession).where(AuthSession.active_key == active_key).with_for_update()
                )
            ).scalar_one_or_none()
            if holder is None or holder.user_id != user_id or holder.revoked_at is not None:
                return False
            await self._revoke_sessions(session, [holder.id], now)
            return True

        return await self._guard.run("revoke_active_session_for_device", work)

    async def create_session(
        self, new_session: NewSession, refresh_token_hash: str
    ) -> SessionRecord:
        now = new_session.now
        device = new_session.device

        async def work(session: AsyncSession) -> SessionRecord:
            if new_session.active_key is not None:
                # A concurrent login on the same device may have bound the key
                holder_id = (
                    await session.execute(
                        select(AuthSession.id)
                        .where(AuthSession.active_key == new_session.active_key)
                        .with_for_update()
                    )
                ).scalar_one_or_none()
                if holder_id is not None:
                    await self._revoke_sessions(session, [holder_id], now)

            session_row = AuthSession(
                id=uuid4(),
                user_id=new_session.user_id,
                device_id=device.device_id,
                device_name=device.device_name,
                ip=device.ip,
                user_agent=device.user_agent,
                last_seen_at=now,
                active_key=new_session.active_key,
                expires_at=new_session.expires_at,
                created_at=now,
            )
            session.add(session_row)
            await session.flush()
            session.add(
                RefreshToken(
                    id=uuid4(),
                    session_id=session_row.id,
                    token_hash=refresh_token_hash,
                    expires_at=new_session.expires_at,
                    created_at=now,
                )
            )
            await session.flush()
            return _to_session_record(session_row)

        return await self._guard.run(
            "create_session",
            work,
            retry_on=lambda e: is_unique_violation(e, UQ_SESSIONS_ACTIVE_KEY),
        )

    async def find_refresh_token_with_session(
        self, token_hash: str
    ) -> RefreshTokenWithSession | None:
        stmt = (
            select(RefreshToken, AuthSession, User)
            .join(AuthSession, AuthSession.id == RefreshToken.session_id)
            .join(User, User.id == AuthSession.user_id)
            .where(RefreshToken.token_hash == token_hash)
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).first()
        if row is None:
            return None
        token, session_row, user = row
        return RefreshTokenWithSession(
            token=RefreshTokenRecord(
                id=token.id,
                session_id=token.session_id,
                expires_at=token.expires_at,
                revoked_at=token.revoked_at,
                replaced_by_id=token.replaced_by_id,
            ),
            session=_to_session_record(session_row),
            user=_to_auth_user(user),
        )

    async def rotate_refresh_token(
        self,
        token_hash: str,
        new_token_hash: str,
        now: datetime,
        device: DeviceMeta | None = None,
    ) -> RefreshRotationResult:
        async def work(session: AsyncSession) -> RefreshRotationResult:
            row = (
                await session.execute(
                    select(RefreshToken, AuthSession)
                    .join(AuthSession, AuthSession.id == RefreshToken.session_id)
                    .where(RefreshToken.token_hash == token_hash)
                )
            ).first()
            if row is None:
                return RotationNotFound()
            token, session_row = row

            if session_row.revoked_at is not None:
                return RotationSessionRevoked(session_row.id)
            if token.expires_at <= now or session_row.expires_at <= now:
                return RotationExpired(session_row.id)
            if token.revoked_at is not None or token.replaced_by_id is not None:
                await self._revoke_sessions(session, [session_row.id], now)
                return RotationReused(session_row.id)

            next_id = uuid4()
            session.add(
                RefreshToken(
                    id=next_id,
                    session_id=session_row.id,
                    token_hash=new_token_hash,
                    expires_at=token.expires_at,
                    created_at=now,
                )
            )
            await session.flush()

            replaced = await session.execute(
                update(RefreshToken)
                .where(
                    RefreshToken.id == token.id,
                    RefreshToken.revoked_at.is_(None),
                    RefreshToken.replaced_by_id.is_(None),
                )
                .values(revoked_at=now, replaced_by_id=next_id)
                .execution_options(synchronize_session=False)
            )
            if _rowcount(replaced) != 1:
                raise _ChainHeadLost(session_row.id)

            session_row.last_seen_at = now
            if device is not None:
                if device.ip is not None:
                    session_row.ip = device.ip
                if device.user_agent is not None:
                    session_row.user_agent = device.user_agent
            await session.flush()
            return RotationOk(session_id=session_row.id, refresh_token_id=next_id)

        try:
            return await self._guard.run("rotate_refresh_token", work)
        except _ChainHeadLost as e:
            await self.revoke_session_and_tokens(e.session_id, now)
            return RotationReused(e.session_id)

    async def revoke_session_and_tokens(self, session_id: UUID, now: datetime) -> None:
        async def work(session: AsyncSession) -> None:
            await self._revoke_sessions(session, [session_id], now)

        await self._guard.run("revoke_session", work)

    async def revoke_session_by_refresh_token_hash(self, token_hash: str, now: datetime) -> bool:
        async def work(session: AsyncSession) -> bool:
            row = (
                await session.execute(
                    select(AuthSession.id, AuthSession.revoked_at)
                    .join(RefreshToken, RefreshToken.session_id == AuthSession.id)
                    .where(RefreshToken.token_hash == token_hash)
                )
            ).first()
            if row is None:
                return False
            session_id, revoked_at = row
            if revoked_at is not None:
                return False
            await self._revoke_sessions(session, [session_id], now)
            return True

        return await self._guard.run("revoke_session_by_refresh_token", work)

    async def revoke_session_by_id(self, user_id: UUID, session_id: UUID, now: datetime) -> bool:
        async def work(session: AsyncSession) -> bool:
            session_row = await session.get(AuthSession, session_id)
            if session_row is None or session_row.user_id != user_id:
                return False
            await self._revoke_sessions(session, [session_id], now)
            return True

        return await self._guard.run("revoke_session_by_id", work)

    async def upsert_session_push_token(
        self,
        user_id: UUID,
        session_id: UUID,
        platform: PushPlatform,
        token: str,
        now: datetime,
    ) -> UpsertPushTokenResult:
        async def work(session: AsyncSession) -> UpsertPushTokenResult:
            owned = await session.execute(
                update(AuthSession)
                .where(
                    AuthSession.id == session_id,
                    AuthSession.user_id == user_id,
                    AuthSession.revoked_at.is_(None),
                    AuthSession.expires_at > now,
                )
                .values(push_token_updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if _rowcount(owned) == 0:
                return "session_not_found"

            # A device token belongs to exactly one session
            await session.execute(
                update(AuthSession)
                .where(AuthSession.push_token == token, AuthSession.id != session_id)
                .values(push_platform=None, push_token=None, push_token_revoked_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.execute(
                update(AuthSession)
                .where(AuthSession.id == session_id)
                .values(
                    push_platform=platform.value,
                    push_token=token,
                    push_token_updated_at=now,
                    push_token_revoked_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            return "ok"

        return await self._guard.run(
            "upsert_session_push_token",
            work,
            retry_on=lambda e: is_unique_violation(e, UQ_SESSIONS_PUSH_TOKEN),
        )

    async def revoke_session_push_token(
        self, user_id: UUID, session_id: UUID, now: datetime
    ) -> bool:
        async def work(session: AsyncSession) -> bool:
            result = await session.execute(
                update(AuthSession)
                .where(
                    AuthSession.id == session_id,
                    AuthSession.user_id == user_id,
                    AuthSession.push_token.is_not(None),
                )
                .values(push_platform=None, push_token=None, push_token_revoked_at=now)
                .execution_options(synchronize_session=False)
            )
            return _rowcount(result) > 0

        return await self._guard.run("revoke_session_push_token", work)

    # ========================================================================
    # Account Lifecycle
    # ========================================================================

    async def set_user_role(
        self, actor: AdminActor, target_user_id: UUID, role: UserRole, now: datetime
    ) -> UserMutationResult:
        async def work(session: AsyncSession) -> UserMutationResult:
            # Admin rows are locked before the target so concurrent demotions queue
            admin_ids = await lock_active_admin_ids(session) if role == UserRole.USER else []
            user = await self._lock_user(session, target_user_id)
            if user is None:
                return UserMutationResult(kind="not_found")
            if user.status == UserStatus.DELETED.value:
                return UserMutationResult(kind="user_deleted")
            if user.role == role.value:
                return UserMutationResult(kind="ok", user=_to_auth_user(user))
            if role == UserRole.USER and blocks_last_admin(admin_ids, target_user_id):
                return UserMutationResult(kind="blocked_last_admin")

            old_role = user.role
            user.role = role.value
            user.updated_at = now
            session.add(
                UserRoleChangeAudit(
                    id=uuid4(),
                    actor_user_id=actor.user_id,
                    actor_session_id=actor.session_id,
                    target_user_id=target_user_id,
                    old_role=old_role,
                    new_role=role.value,
                    trace_id=actor.trace_id,
                    created_at=now,
                )
            )
            await session.flush()
            return UserMutationResult(kind="ok", user=_to_auth_user(user))

        return await self._guard.run("set_user_role", work)

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

        async def work(session: AsyncSession) -> UserMutationResult:
            admin_ids = (
                await lock_active_admin_ids(session) if status == UserStatus.SUSPENDED else []
            )
            user = await self._lock_user(session, target_user_id)
            if user is None:
                return UserMutationResult(kind="not_found")
            if user.status == UserStatus.DELETED.value:
                return UserMutationResult(kind="user_deleted")
            if user.status == status.value:
                return UserMutationResult(kind="ok", user=_to_auth_user(user))
            if status == UserStatus.SUSPENDED and blocks_last_admin(admin_ids, target_user_id):
                return UserMutationResult(kind="blocked_last_admin")

            old_status = user.status
            user.status = status.value
            user.updated_at = now
            if status == UserStatus.SUSPENDED:
                user.suspended_at = now
                user.suspended_reason = reason
                await self._revoke_user_sessions(session, target_user_id, now)
            else:
                user.suspended_at = None
                user.suspended_reason = None

            session.add(
                UserStatusChangeAudit(
                    id=uuid4(),
                    actor_user_id=actor.user_id,
                    actor_session_id=actor.session_id,
                    target_user_id=target_user_id,
                    old_status=old_status,
                    new_status=status.value,
                    reason=reason,
                    trace_id=actor.trace_id,
                    created_at=now,
                )
            )
            await session.flush()
            return UserMutationResult(kind="ok", user=_to_auth_user(user))

        return await self._guard.run("set_user_status", work)

    async def request_account_deletion(
        self,
        user_id: UUID,
        session_id: UUID,
        trace_id: str,
        now: datetime,
        scheduled_for: datetime,
    ) -> DeletionRequestResult:
        async def work(session: AsyncSession) -> DeletionRequestResult:
            user = await self._lock_user(session, user_id)
            if user is None or user.status == UserStatus.DELETED.value:
                return DeletionRequestResult(kind="not_found")
            if user.deletion_scheduled_for is not None:
                return DeletionRequestResult(
                    kind="already_requested", scheduled_for=user.deletion_scheduled_for
                )
            if (
                user.role == UserRole.ADMIN.value
                and user.status == UserStatus.ACTIVE.value
                and blocks_last_admin(await lock_active_admin_ids(session), user_id)
            ):
                return DeletionRequestResult(kind="blocked_last_admin")

            user.deletion_requested_at = now
            user.deletion_scheduled_for = scheduled_for
            user.deletion_requested_session_id = session_id
            user.deletion_requested_trace_id = trace_id
            user.updated_at = now
            session.add(
                self._deletion_audit(
                    user_id, session_id, AccountDeletionAction.REQUESTED, trace_id, now
                )
            )
            await session.flush()
            return DeletionRequestResult(kind="requested", scheduled_for=scheduled_for)

        return await self._guard.run("request_account_deletion", work)

    async def cancel_account_deletion(
        self, user_id: UUID, session_id: UUID, trace_id: str, now: datetime
    ) -> CancelDeletionResult:
        async def work(session: AsyncSession) -> CancelDeletionResult:
            user = await self._lock_user(session, user_id)
            if user is None or user.status == UserStatus.DELETED.value:
                return "not_found"
            if user.deletion_scheduled_for is None:
                return "not_scheduled"

            self._clear_deletion_request(user)
            user.updated_at = now
            session.add(
                self._deletion_audit(
                    user_id, session_id, AccountDeletionAction.CANCELED, trace_id, now
                )
            )
            await session.flush()
            return "canceled"

        return await self._guard.run("cancel_account_deletion", work)

    async def finalize_account_deletion(
        self, user_id: UUID, now: datetime, fallback_trace_id: str
    ) -> FinalizeDeletionResult:
        async def work(session: AsyncSession) -> FinalizeDeletionResult:
            user = await self._lock_user(session, user_id)
            if user is None:
                return FinalizeSkipped("user_not_found")
            if user.status == UserStatus.DELETED.value or user.deleted_at is not None:
                return FinalizeSkipped("already_deleted")
            if user.deletion_scheduled_for is None:
                return FinalizeSkipped("not_scheduled")
            if user.deletion_scheduled_for > now:
                return FinalizeNotDue(user.deletion_scheduled_for)

            actor_session_id = user.deletion_requested_session_id
            if actor_session_id is None:
                raise InvariantViolationError(
                    f"user {user_id} scheduled for deletion without a requesting session"
                )
            trace_id = user.deletion_requested_trace_id or fallback_trace_id

            if (
                user.role == UserRole.ADMIN.value
                and user.status == UserStatus.ACTIVE.value
                and blocks_last_admin(await lock_active_admin_ids(session), user_id)
            ):
                session.add(
                    self._deletion_audit(
                        user_id,
                        actor_session_id,
                        AccountDeletionAction.FINALIZE_BLOCKED_LAST_ADMIN,
                        trace_id,
                        now,
                    )
                )
                await session.flush()
                return FinalizeBlockedLastAdmin()

            old_status = user.status
            user.email = tombstone_email(user_id)
            user.email_verified_at = None
            user.role = UserRole.USER.value
            user.status = UserStatus.DELETED.value
            user.deleted_at = now
            user.suspended_at = None
            user.suspended_reason = None
            self._clear_deletion_request(user)
            user.updated_at = now

            await session.execute(
                update(UserProfile)
                .where(UserProfile.user_id == user_id)
                .values(display_name=None, given_name=None, family_name=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            for model in (
                PasswordCredential,
                ExternalIdentity,
                EmailVerificationToken,
                PasswordResetToken,
            ):
                await session.execute(
                    delete(model)
                    .where(model.user_id == user_id)
                    .execution_options(synchronize_session=False)
                )

            session_ids = select(AuthSession.id).where(AuthSession.user_id == user_id)
            await session.execute(
                delete(RefreshToken)
                .where(RefreshToken.session_id.in_(session_ids))
                .execution_options(synchronize_session=False)
            )
            await session.execute(
                delete(AuthSession)
                .where(AuthSession.user_id == user_id)
                .execution_options(synchronize_session=False)
            )

            session.add(
                UserStatusChangeAudit(
                    id=uuid4(),
                    actor_user_id=user_id,
                    actor_session_id=actor_session_id,
                    target_user_id=user_id,
                    old_status=old_status,
                    new_status=UserStatus.DELETED.value,
                    reason="account_deletion_finalized",
                    trace_id=trace_id,
                    created_at=now,
                )
            )
            session.add(
                self._deletion_audit(
                    user_id, actor_session_id, AccountDeletionAction.FINALIZED, trace_id, now
                )
            )
            await session.flush()
            return AccountFinalized(deleted_at=now)

        return await self._guard.run("finalize_account_deletion", work)

    # ========================================================================
    # Private Helpers
    # ========================================================================

    async def _lock_user(self, session: AsyncSession, user_id: UUID) -> User | None:
        stmt = select(User).where(User.id == user_id).with_for_update()
        return (await session.execute(stmt)).scalar_one_or_none()

    async def _revoke_user_sessions(
        self,
        session: AsyncSession,
        user_id: UUID,
        now: datetime,
        keep_session_id: UUID | None = None,
    ) -> list[UUID]:
        stmt = select(AuthSession.id).where(
            AuthSession.user_id == user_id, AuthSession.revoked_at.is_(None)
        )
        if keep_session_id is not None:
            stmt = stmt.where(AuthSession.id != keep_session_id)
        session_ids = list((await session.execute(stmt)).scalars().all())
        if session_ids:
            await self._revoke_sessions(session, session_ids, now)
        return session_ids

    async def _revoke_sessions(
        self, session: AsyncSession, session_ids: Sequence[UUID], now: datetime
    ) -> None:
        """
        Revoke sessions and every refresh token they own.

        Idempotent: an already-revoked session keeps its original revoked_at,
        but its device binding and push token are cleared regardless.
        """
        await session.execute(
            update(AuthSession)
            .where(AuthSession.id.in_(session_ids))
            .values(
                active_key=None,
                push_platform=None,
                push_token=None,
                push_token_revoked_at=case(
                    (AuthSession.push_token.is_not(None), now),
                    else_=AuthSession.push_token_revoked_at,
                ),
                revoked_at=case(
                    (AuthSession.revoked_at.is_(None), now),
                    else_=AuthSession.revoked_at,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        await session.execute(
            update(RefreshToken)
            .where(RefreshToken.session_id.in_(session_ids), RefreshToken.revoked_at.is_(None))
            .values(revoked_at=now)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    def _clear_deletion_request(user: User) -> None:
        user.deletion_requested_at = None
        user.deletion_scheduled_for = None
        user.deletion_requested_session_id = None
        user.deletion_requested_trace_id = None

    @staticmethod
    def _deletion_audit(
        user_id: UUID,
        session_id: UUID,
        action: AccountDeletionAction,
        trace_id: str,
        now: datetime,
    ) -> UserAccountDeletionAudit:
        return UserAccountDeletionAudit(
            id=uuid4(),
            actor_user_id=user_id,
            actor_session_id=session_id,
            target_user_id=user_id,
            action=action.value,
            trace_id=trace_id,
            created_at=now,
        )
