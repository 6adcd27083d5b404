"""
Credential Authenticator - password and OIDC sign-in.

SECURITY: Login failures never reveal whether an account exists. Unknown
emails are verified against a dummy hash, and DELETED users fail exactly
like a wrong password.
"""

from typing import assert_never
from uuid import UUID

from structlog import get_logger

from app.clock import Clock
from app.db.repository import IdentityRepository
from app.exceptions import (
    CurrentPasswordInvalidError,
    EmailAlreadyExistsError,
    ExternalIdentityAlreadyExistsError,
    ExternalIdentityConflictError,
    InvalidCredentialsError,
    LoginRateLimitedError,
    OidcEmailNotVerifiedError,
    OidcNotConfiguredError,
    OidcTokenInvalidError,
    PasswordNotSetError,
    PasswordPolicyError,
    UnauthorizedError,
    UserNotFoundError,
    UserSuspendedError,
)
from app.models.api import AuthMethod, AuthResult, OidcProvider, UserStatus
from app.models.domain import (
    AuthUserRecord,
    DeviceMeta,
    OidcInvalid,
    OidcNotConfigured,
    OidcVerified,
    VerifiedOidcIdentity,
    normalize_email,
)
from app.observability.metrics import metrics
from app.services.oidc import OidcIdTokenVerifier
from app.services.password_hasher import PasswordHashing
from app.services.rate_limit import LoginRateLimiter
from app.services.sessions import SessionLifecycleManager

logger = get_logger(__name__)

# Argon2 accepts arbitrary lengths; cap to bound hashing cost per request
MAX_PASSWORD_LENGTH = 1024


def check_password_policy(password: str, min_length: int) -> None:
    """Raises PasswordPolicyError when the password is unacceptable."""
    if len(password) < min_length:
        raise PasswordPolicyError(f"password must be at least {min_length} characters")
    if len(password) > MAX_PASSWORD_LENGTH:
        raise PasswordPolicyError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")


class CredentialAuthenticator:
    """
    Verifies credentials, resolves or creates the user, then opens a session.

    Usage:
        auth = CredentialAuthenticator(repo, sessions, hasher, verifier, limiter, clock)
        result = await auth.login_with_password("a@example.com", "secret", device)
    """

    def __init__(
        self,
        repository: IdentityRepository,
        sessions: SessionLifecycleManager,
        password_hasher: PasswordHashing,
        oidc_verifier: OidcIdTokenVerifier,
        rate_limiter: LoginRateLimiter,
        clock: Clock,
        password_min_length: int = 8,
    ) -> None:
        self._repo = repository
        self._sessions = sessions
        self._hasher = password_hasher
        self._oidc = oidc_verifier
        self._rate_limiter = rate_limiter
        self._clock = clock
        self.password_min_length = password_min_length

    # ========================================================================
    # Password
    # ========================================================================

    async def register_with_password(
        self, email: str, password: str, device: DeviceMeta
    ) -> AuthResult:
        """
        Create a password account and open its first session.

        Raises:
            PasswordPolicyError: password rejected
            EmailAlreadyExistsError: email already registered
        """
        email = normalize_email(email)
        check_password_policy(password, self.password_min_length)

        password_hash = await self._hasher.hash(password)
        try:
            user = await self._repo.create_user_with_password(
                email, password_hash, self._clock.now()
            )
        except EmailAlreadyExistsError:
            metrics.record_login("password", "email_taken")
            raise

        metrics.record_login("password", "registered")
        logger.info("user_registered", user_id=str(user.id), method="password")
        return await self._sessions.issue_tokens_for_new_session(
            user, [AuthMethod.PASSWORD], device
        )

    async def login_with_password(
        self, email: str, password: str, device: DeviceMeta
    ) -> AuthResult:
        """
        Raises:
            LoginRateLimitedError: too many recent failures for (email, ip)
            InvalidCredentialsError: unknown email, wrong password or deleted user
            UserSuspendedError: correct password, suspended account
        """
        email = normalize_email(email)
        try:
            await self._rate_limiter.assert_allowed(email, device.ip)
        except LoginRateLimitedError:
            metrics.record_login("password", "rate_limited")
            raise

        record = await self._repo.find_user_for_login(email)
        verified = await self._hasher.verify(
            record.password_hash if record is not None else None, password
        )
        if record is None or not verified or record.user.status == UserStatus.DELETED:
            await self._rate_limiter.record_failure(email, device.ip)
            metrics.record_login("password", "invalid_credentials")
            raise InvalidCredentialsError()

        user = record.user
        if user.status == UserStatus.SUSPENDED:
            metrics.record_login("password", "suspended")
            raise UserSuspendedError(user.id)

        await self._rate_limiter.record_success(email, device.ip)
        metrics.record_login("password", "ok")
        auth_methods = await self._repo.get_auth_methods(user.id)
        return await self._sessions.issue_tokens_for_new_session(user, auth_methods, device)

    async def change_password(
        self, user_id: UUID, session_id: UUID, current_password: str, new_password: str
    ) -> None:
        """
        Change the password and revoke every other live session of the user.

        The calling session stays signed in.
        """
        check_password_policy(new_password, self.password_min_length)
        if new_password == current_password:
            raise PasswordPolicyError("new password must differ from the current one")

        user = await self._repo.find_user_by_id(user_id)
        if user is None or user.status == UserStatus.DELETED:
            raise UnauthorizedError()

        stored_hash = await self._repo.find_password_hash(user_id)
        if stored_hash is None:
            raise PasswordNotSetError(user_id)
        if not await self._hasher.verify(stored_hash, current_password):
            raise CurrentPasswordInvalidError()

        new_hash = await self._hasher.hash(new_password)
        result = await self._repo.change_password_and_revoke_other_sessions(
            user_id, session_id, stored_hash, new_hash, self._clock.now()
        )
        if result == "ok":
            metrics.record_session_revoked("password_changed")
            logger.info("password_change_completed", user_id=str(user_id))
        elif result == "not_found":
            raise UserNotFoundError(user_id)
        elif result == "password_not_set":
            raise PasswordNotSetError(user_id)
        elif result == "current_password_mismatch":
            # Password changed concurrently since we verified it
            raise CurrentPasswordInvalidError()
        else:
            assert_never(result)

    # ========================================================================
    # OIDC
    # ========================================================================

    async def exchange_oidc(
        self, provider: OidcProvider, raw_id_token: str, device: DeviceMeta
    ) -> AuthResult:
        """
        Sign in (or sign up) with a provider ID token.

        An unknown identity whose email already belongs to an account is NOT
        merged: the caller gets a link_required conflict and must sign in
        and connect the provider explicitly.
        """
        method = provider.value.lower()
        identity = await self._verify_oidc(provider, raw_id_token)

        user = await self._repo.find_user_by_external_identity(provider, identity.subject)
        if user is None:
            user = await self._create_oidc_user(identity)

        if user.status == UserStatus.DELETED:
            metrics.record_login(method, "invalid_credentials")
            raise InvalidCredentialsError()
        if user.status == UserStatus.SUSPENDED:
            metrics.record_login(method, "suspended")
            raise UserSuspendedError(user.id)

        metrics.record_login(method, "ok")
        auth_methods = await self._repo.get_auth_methods(user.id)
        return await self._sessions.issue_tokens_for_new_session(user, auth_methods, device)

    async def connect_oidc(self, user_id: UUID, provider: OidcProvider, raw_id_token: str) -> None:
        """Link a provider identity to an existing, signed-in user."""
        user = await self._repo.find_user_by_id(user_id)
        if user is None or user.status == UserStatus.DELETED:
            raise UnauthorizedError()

        identity = await self._verify_oidc(provider, raw_id_token)
        result = await self._repo.link_external_identity_to_user(
            user_id, identity, self._clock.now()
        )

        if result == "ok" or result == "already_linked":
            logger.info(
                "external_identity_connected",
                user_id=str(user_id),
                provider=provider.value,
                outcome=result,
            )
        elif result == "user_not_found":
            raise UnauthorizedError()
        elif result == "identity_linked_to_other_user" or result == "provider_already_linked":
            raise ExternalIdentityConflictError(result)
        else:
            assert_never(result)

    async def _create_oidc_user(self, identity: VerifiedOidcIdentity) -> AuthUserRecord:
        if await self._repo.find_user_by_email(identity.email) is not None:
            metrics.record_login(identity.provider.value.lower(), "link_required")
            raise ExternalIdentityConflictError("link_required")

        try:
            user = await self._repo.create_user_with_external_identity(
                identity, self._clock.now()
            )
        except (ExternalIdentityAlreadyExistsError, EmailAlreadyExistsError) as e:
            # Concurrent first sign-in with the same identity: the winner's row stands
            winner = await self._repo.find_user_by_external_identity(
                identity.provider, identity.subject
            )
            if winner is not None:
                logger.info("oidc_signup_race_resolved", user_id=str(winner.id))
                return winner
            if isinstance(e, EmailAlreadyExistsError):
                raise ExternalIdentityConflictError("link_required") from e
            raise

        logger.info("user_registered", user_id=str(user.id), method=identity.provider.value)
        return user

    async def _verify_oidc(self, provider: OidcProvider, raw_id_token: str) -> VerifiedOidcIdentity:
        result = await self._oidc.verify_id_token(provider, raw_id_token)
        if isinstance(result, OidcNotConfigured):
            raise OidcNotConfiguredError(provider.value)
        elif isinstance(result, OidcInvalid):
            metrics.record_login(provider.value.lower(), "invalid_token")
            raise OidcTokenInvalidError(result.reason)
        elif isinstance(result, OidcVerified):
            identity = result.identity
        else:
            assert_never(result)

        if not identity.email_verified:
            metrics.record_login(provider.value.lower(), "email_not_verified")
            raise OidcEmailNotVerifiedError()
        return identity
