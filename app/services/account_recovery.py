"""
Account Recovery - password reset and email verification tokens.

Tokens are returned raw exactly once for out-of-band delivery; only their
keyed hash is stored. Issuing a new token revokes the user's outstanding
ones of the same kind.
"""

from datetime import timedelta
from typing import assert_never
from uuid import UUID

from structlog import get_logger

from app.clock import Clock
from app.db.repository import IdentityRepository
from app.exceptions import (
    EmailVerificationTokenExpiredError,
    EmailVerificationTokenInvalidError,
    PasswordResetTokenExpiredError,
    PasswordResetTokenInvalidError,
    UserNotFoundError,
)
from app.models.api import UserStatus
from app.models.domain import (
    EmailVerificationIssued,
    PasswordResetIssued,
    VerifyEmailResult,
    normalize_email,
)
from app.observability.metrics import metrics
from app.services.auth import check_password_policy
from app.services.password_hasher import PasswordHashing
from app.services.tokens import generate_opaque_token, hash_token

logger = get_logger(__name__)


class AccountRecoveryService:
    """
    Usage:
        recovery = AccountRecoveryService(repo, hasher, clock, 3600, 86400)
        issued = await recovery.request_password_reset("a@example.com")
        if issued is not None:
            deliver(issued.email, issued.token)
    """

    def __init__(
        self,
        repository: IdentityRepository,
        password_hasher: PasswordHashing,
        clock: Clock,
        password_reset_ttl_seconds: int,
        email_verification_ttl_seconds: int,
        password_min_length: int = 8,
    ) -> None:
        self._repo = repository
        self._hasher = password_hasher
        self._clock = clock
        self.password_reset_ttl = timedelta(seconds=password_reset_ttl_seconds)
        self.email_verification_ttl = timedelta(seconds=email_verification_ttl_seconds)
        self.password_min_length = password_min_length

    async def request_password_reset(self, email: str) -> PasswordResetIssued | None:
        """None for unknown or deleted accounts; callers must not reveal which."""
        user = await self._repo.find_user_by_email(normalize_email(email))
        if user is None or user.status == UserStatus.DELETED:
            logger.info("password_reset_requested_unknown_email")
            return None

        now = self._clock.now()
        token = generate_opaque_token()
        expires_at = now + self.password_reset_ttl
        await self._repo.issue_password_reset_token(user.id, hash_token(token), expires_at, now)
        logger.info("password_reset_token_issued", user_id=str(user.id))
        return PasswordResetIssued(
            user_id=user.id, email=user.email, token=token, expires_at=expires_at
        )

    async def confirm_password_reset(self, token: str, new_password: str) -> None:
        """
        Set a new password and sign the user out everywhere.

        Raises:
            PasswordPolicyError: password rejected
            PasswordResetTokenInvalidError: unknown, used or revoked token
            PasswordResetTokenExpiredError: token past expiry
        """
        check_password_policy(new_password, self.password_min_length)
        new_hash = await self._hasher.hash(new_password)

        result = await self._repo.reset_password_by_token_hash(
            hash_token(token), new_hash, self._clock.now()
        )
        if result == "ok":
            metrics.record_session_revoked("password_reset")
        elif result == "token_invalid":
            raise PasswordResetTokenInvalidError()
        elif result == "token_expired":
            raise PasswordResetTokenExpiredError()
        else:
            assert_never(result)

    async def request_email_verification(self, user_id: UUID) -> EmailVerificationIssued | None:
        """None when the email is already verified."""
        user = await self._repo.find_user_by_id(user_id)
        if user is None or user.status == UserStatus.DELETED:
            raise UserNotFoundError(user_id)
        if user.email_verified:
            return None

        now = self._clock.now()
        token = generate_opaque_token()
        expires_at = now + self.email_verification_ttl
        await self._repo.issue_email_verification_token(user.id, hash_token(token), expires_at, now)
        logger.info("email_verification_token_issued", user_id=str(user.id))
        return EmailVerificationIssued(
            user_id=user.id, email=user.email, token=token, expires_at=expires_at
        )

    async def verify_email(self, token: str) -> VerifyEmailResult:
        """
        Returns "ok" or "already_verified".

        Raises:
            EmailVerificationTokenInvalidError / EmailVerificationTokenExpiredError
        """
        result = await self._repo.verify_email_by_token_hash(hash_token(token), self._clock.now())
        if result == "ok" or result == "already_verified":
            return result
        elif result == "token_invalid":
            raise EmailVerificationTokenInvalidError()
        elif result == "token_expired":
            raise EmailVerificationTokenExpiredError()
        else:
            assert_never(result)
