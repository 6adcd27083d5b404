"""
Session Lifecycle Manager - sessions, token pairs, rotation and revocation.

Session state machine: CREATED -> (rotations)* -> REVOKED. REVOKED is terminal.

SECURITY: Refresh tokens are single-use. Presenting a token that was already
rotated (or revoked) is treated as theft and kills the whole session.
"""

from datetime import timedelta
from typing import assert_never
from uuid import UUID

from structlog import get_logger

from app.clock import Clock
from app.db.repository import IdentityRepository
from app.exceptions import (
    RefreshTokenExpiredError,
    RefreshTokenInvalidError,
    RefreshTokenReusedError,
    SessionNotFoundError,
    SessionRevokedError,
    UserSuspendedError,
)
from app.models.api import AuthMethod, AuthResult, AuthUserView, PublicJwks, PushPlatform, UserStatus
from app.models.domain import (
    AccessTokenClaims,
    AuthUserRecord,
    DeviceMeta,
    NewSession,
    RotationExpired,
    RotationNotFound,
    RotationOk,
    RotationReused,
    RotationSessionRevoked,
    build_active_session_key,
)
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.access_tokens import AccessTokenIssuer
from app.services.tokens import generate_opaque_token, hash_prefix, hash_token

logger = get_logger(__name__)


def to_user_view(user: AuthUserRecord, auth_methods: list[AuthMethod]) -> AuthUserView:
    return AuthUserView(
        id=user.id,
        email=user.email,
        email_verified=user.email_verified,
        auth_methods=auth_methods,
    )


class SessionLifecycleManager:
    """
    Creates sessions and rotates their refresh tokens.

    Usage:
        manager = SessionLifecycleManager(repo, issuer, SystemClock(), 900, 2592000)
        result = await manager.issue_tokens_for_new_session(user, methods, device)
        rotated = await manager.refresh(result.refresh_token, device)
    """

    def __init__(
        self,
        repository: IdentityRepository,
        access_tokens: AccessTokenIssuer,
        clock: Clock,
        access_token_ttl_seconds: int,
        refresh_token_ttl_seconds: int,
    ) -> None:
        self._repo = repository
        self._access_tokens = access_tokens
        self._clock = clock
        self.access_token_ttl_seconds = access_token_ttl_seconds
        self.refresh_token_ttl = timedelta(seconds=refresh_token_ttl_seconds)

    async def issue_tokens_for_new_session(
        self,
        user: AuthUserRecord,
        auth_methods: list[AuthMethod],
        device: DeviceMeta,
    ) -> AuthResult:
        """
        Create a session with a fresh refresh chain and sign an access token.

        A live session already bound to the same (user, device) is revoked
        first: one live session per device.
        """
        now = self._clock.now()
        active_key = build_active_session_key(user.id, device.device_id)
        if active_key is not None:
            replaced = await self._repo.revoke_active_session_for_device(user.id, active_key, now)
            if replaced:
                metrics.record_session_revoked("device_replaced")
                logger.info("device_session_replaced", user_id=str(user.id))

        refresh_token = generate_opaque_token()
        session = await self._repo.create_session(
            NewSession(
                user_id=user.id,
                expires_at=now + self.refresh_token_ttl,
                now=now,
                device=device,
                active_key=active_key,
            ),
            hash_token(refresh_token),
        )
        access_token = self._sign_access_token(user, session.id)

        logger.info(
            "session_created",
            user_id=str(user.id),
            session_id=str(session.id),
            device_bound=active_key is not None,
        )
        return AuthResult(
            user=to_user_view(user, auth_methods),
            access_token=access_token,
            refresh_token=refresh_token,
        )

    async def refresh(self, raw_refresh_token: str, device: DeviceMeta | None = None) -> AuthResult:
        """
        Exchange a refresh token for a new token pair.

        Raises:
            RefreshTokenInvalidError: unknown token, or owner deleted
            UserSuspendedError: owner suspended
            SessionRevokedError: session already revoked
            RefreshTokenExpiredError: token or session past expiry
            RefreshTokenReusedError: token already used; session now revoked
        """
        with trace_operation("refresh_session") as span:
            now = self._clock.now()
            token_hash = hash_token(raw_refresh_token)

            found = await self._repo.find_refresh_token_with_session(token_hash)
            if found is None:
                metrics.record_refresh("invalid")
                raise RefreshTokenInvalidError()

            user = found.user
            session_id = found.session.id
            span.set_attribute("session_id", str(session_id))

            if user.status == UserStatus.DELETED:
                metrics.record_refresh("invalid")
                raise RefreshTokenInvalidError()
            if user.status == UserStatus.SUSPENDED:
                metrics.record_refresh("suspended")
                raise UserSuspendedError(user.id)
            if found.session.revoked_at is not None:
                metrics.record_refresh("session_revoked")
                raise SessionRevokedError(session_id)
            if found.token.expires_at <= now or found.session.expires_at <= now:
                metrics.record_refresh("expired")
                raise RefreshTokenExpiredError(session_id)
            if found.token.already_used:
                await self._repo.revoke_session_and_tokens(session_id, now)
                self._reuse_detected(session_id, token_hash)
                raise RefreshTokenReusedError(session_id)

            # Sign before rotating: a signing failure must not burn the caller's token
            access_token = self._sign_access_token(user, session_id)

            next_refresh_token = generate_opaque_token()
            result = await self._repo.rotate_refresh_token(
                token_hash, hash_token(next_refresh_token), now, device
            )

            if isinstance(result, RotationOk):
                pass
            elif isinstance(result, RotationNotFound):
                metrics.record_refresh("invalid")
                raise RefreshTokenInvalidError()
            elif isinstance(result, RotationExpired):
                metrics.record_refresh("expired")
                raise RefreshTokenExpiredError(result.session_id)
            elif isinstance(result, RotationSessionRevoked):
                metrics.record_refresh("session_revoked")
                raise SessionRevokedError(result.session_id)
            elif isinstance(result, RotationReused):
                self._reuse_detected(result.session_id, token_hash)
                raise RefreshTokenReusedError(result.session_id)
            else:
                assert_never(result)

            metrics.record_refresh("ok")
            auth_methods = await self._repo.get_auth_methods(user.id)
            return AuthResult(
                user=to_user_view(user, auth_methods),
                access_token=access_token,
                refresh_token=next_refresh_token,
            )

    async def logout(self, raw_refresh_token: str) -> None:
        """
        Revoke the session owning the refresh token.

        Raises:
            RefreshTokenInvalidError: token unknown or session already revoked
        """
        revoked = await self._repo.revoke_session_by_refresh_token_hash(
            hash_token(raw_refresh_token), self._clock.now()
        )
        if not revoked:
            raise RefreshTokenInvalidError()
        metrics.record_session_revoked("logout")

    async def revoke_session_by_id(self, user_id: UUID, session_id: UUID) -> None:
        """Idempotent; raises SessionNotFoundError only for foreign or unknown sessions."""
        if not await self._repo.revoke_session_by_id(user_id, session_id, self._clock.now()):
            raise SessionNotFoundError(session_id)
        metrics.record_session_revoked("user_revoked")
        logger.info("session_revoked", user_id=str(user_id), session_id=str(session_id))

    async def revoke_device_session(self, user_id: UUID, device_id: str) -> bool:
        """Revoke the live session bound to device_id. False when there was none."""
        active_key = build_active_session_key(user_id, device_id)
        if active_key is None:
            return False
        revoked = await self._repo.revoke_active_session_for_device(
            user_id, active_key, self._clock.now()
        )
        if revoked:
            metrics.record_session_revoked("device_revoked")
        return revoked

    async def register_push_token(
        self, user_id: UUID, session_id: UUID, platform: PushPlatform, token: str
    ) -> None:
        """Attach a push token to a live session, detaching it from any other session."""
        if not token.strip():
            raise ValueError("push token cannot be blank")

        result = await self._repo.upsert_session_push_token(
            user_id, session_id, platform, token, self._clock.now()
        )
        if result == "session_not_found":
            raise SessionNotFoundError(session_id)
        elif result == "ok":
            logger.info(
                "push_token_registered",
                user_id=str(user_id),
                session_id=str(session_id),
                platform=platform.value,
            )
        else:
            assert_never(result)

    async def revoke_push_token(self, user_id: UUID, session_id: UUID) -> bool:
        return await self._repo.revoke_session_push_token(user_id, session_id, self._clock.now())

    def get_public_jwks(self) -> PublicJwks:
        return self._access_tokens.get_public_jwks()

    def _sign_access_token(self, user: AuthUserRecord, session_id: UUID) -> str:
        return self._access_tokens.sign_access_token(
            AccessTokenClaims(
                user_id=user.id,
                session_id=session_id,
                email_verified=user.email_verified,
                roles=(user.role,),
                ttl_seconds=self.access_token_ttl_seconds,
            )
        )

    def _reuse_detected(self, session_id: UUID, token_hash: str) -> None:
        metrics.record_refresh("reused")
        metrics.record_session_revoked("refresh_token_reuse")
        logger.warning(
            "refresh_token_reuse_detected",
            session_id=str(session_id),
            token_hash_prefix=hash_prefix(token_hash),
        )
