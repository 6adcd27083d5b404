"""
Service wiring.

Plain constructor injection: every service receives its ports explicitly.
build_identity_services() wires the production adapters; tests call
wire_identity_services() with in-memory and stub adapters instead.
"""

from dataclasses import dataclass
from datetime import timedelta

import redis.asyncio as redis
from structlog import get_logger

from app.clock import Clock, SystemClock
from app.config import Settings
from app.db.consistency import ConsistencyGuard
from app.db.identity_repository import SqlAlchemyIdentityRepository
from app.db.memory import InMemoryIdentityRepository
from app.db.repository import IdentityRepository
from app.db.session import close_engine, get_session_factory
from app.services.access_tokens import AccessTokenIssuer, JwtAccessTokenIssuer
from app.services.account_deletion import (
    AccountDeletionFinalizer,
    AccountDeletionScheduler,
    AccountDeletionService,
)
from app.services.account_recovery import AccountRecoveryService
from app.services.admin_users import AdminUsersService
from app.services.auth import CredentialAuthenticator
from app.services.oidc import GoogleOidcIdTokenVerifier, OidcIdTokenVerifier
from app.services.password_hasher import Argon2PasswordHasher, PasswordHashing
from app.services.rate_limit import LoginRateLimiter, RedisLoginRateLimiter
from app.services.sessions import SessionLifecycleManager
from app.tasks.queue import ArqAccountDeletionScheduler, close_queue

logger = get_logger(__name__)


@dataclass
class IdentityServices:
    repository: IdentityRepository
    sessions: SessionLifecycleManager
    authenticator: CredentialAuthenticator
    recovery: AccountRecoveryService
    admin_users: AdminUsersService
    account_deletion: AccountDeletionService
    deletion_finalizer: AccountDeletionFinalizer
    clock: Clock
    redis_client: redis.Redis | None = None  # type: ignore[type-arg]

    async def close(self) -> None:
        """Release connections held by production adapters."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
        await close_queue()
        await close_engine()


def wire_identity_services(
    settings: Settings,
    repository: IdentityRepository,
    access_tokens: AccessTokenIssuer,
    oidc_verifier: OidcIdTokenVerifier,
    rate_limiter: LoginRateLimiter,
    scheduler: AccountDeletionScheduler,
    password_hasher: PasswordHashing,
    clock: Clock,
) -> IdentityServices:
    sessions = SessionLifecycleManager(
        repository,
        access_tokens,
        clock,
        access_token_ttl_seconds=settings.access_token_ttl_seconds,
        refresh_token_ttl_seconds=settings.refresh_token_ttl_seconds,
    )
    return IdentityServices(
        repository=repository,
        sessions=sessions,
        authenticator=CredentialAuthenticator(
            repository,
            sessions,
            password_hasher,
            oidc_verifier,
            rate_limiter,
            clock,
            password_min_length=settings.password_min_length,
        ),
        recovery=AccountRecoveryService(
            repository,
            password_hasher,
            clock,
            password_reset_ttl_seconds=settings.password_reset_token_ttl_seconds,
            email_verification_ttl_seconds=settings.email_verification_token_ttl_seconds,
            password_min_length=settings.password_min_length,
        ),
        admin_users=AdminUsersService(repository, clock),
        account_deletion=AccountDeletionService(
            repository,
            scheduler,
            clock,
            grace_period_days=settings.account_deletion_grace_period_days,
        ),
        deletion_finalizer=AccountDeletionFinalizer(
            repository,
            clock,
            blocked_last_admin_retry=timedelta(hours=settings.blocked_last_admin_retry_hours),
        ),
        clock=clock,
    )


def build_repository(settings: Settings) -> IdentityRepository:
    if settings.use_memory_store:
        logger.warning("identity_store_in_memory")
        return InMemoryIdentityRepository()

    session_factory = get_session_factory()
    logger.info("identity_store_postgres")
    return SqlAlchemyIdentityRepository(
        session_factory,
        ConsistencyGuard(session_factory, max_attempts=settings.tx_max_attempts),
    )


def build_identity_services(settings: Settings) -> IdentityServices:
    """
    Wire Redis, argon2, RS256 and Google adapters over the configured store.

    USE_MEMORY_STORE=true keeps identity state in process (local development);
    otherwise it lives in PostgreSQL.
    """
    clock = SystemClock()
    repository = build_repository(settings)
    redis_client = redis.from_url(settings.redis_url)

    services = wire_identity_services(
        settings,
        repository,
        access_tokens=JwtAccessTokenIssuer(
            private_key_pem=settings.jwt_private_key_pem,
            key_id=settings.jwt_key_id,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            algorithm=settings.jwt_algorithm,
            clock=clock,
        ),
        oidc_verifier=GoogleOidcIdTokenVerifier(settings.valid_google_client_ids),
        rate_limiter=RedisLoginRateLimiter(
            redis_client,
            max_failures=settings.login_rate_limit_max_failures,
            window_seconds=settings.login_rate_limit_window_seconds,
        ),
        scheduler=ArqAccountDeletionScheduler(),
        password_hasher=Argon2PasswordHasher(),
        clock=clock,
    )
    services.redis_client = redis_client
    return services
