"""
API Models - Enumerations and Pydantic views handed to callers.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field


class UserRole(str, Enum):
    """User role enumeration."""

    USER = "USER"
    ADMIN = "ADMIN"


class UserStatus(str, Enum):
    """User status enumeration. DELETED is terminal."""

    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    DELETED = "DELETED"


class AuthMethod(str, Enum):
    """Ways a user can prove their identity."""

    PASSWORD = "PASSWORD"
    GOOGLE = "GOOGLE"


class OidcProvider(str, Enum):
    """Supported OpenID Connect identity providers."""

    GOOGLE = "GOOGLE"


class PushPlatform(str, Enum):
    """Push notification platform of a session's device."""

    ANDROID = "ANDROID"
    IOS = "IOS"
    WEB = "WEB"


class AccountDeletionAction(str, Enum):
    """Actions recorded in the account deletion audit trail."""

    REQUESTED = "REQUESTED"
    CANCELED = "CANCELED"
    FINALIZED = "FINALIZED"
    FINALIZE_BLOCKED_LAST_ADMIN = "FINALIZE_BLOCKED_LAST_ADMIN"


# ============================================================================
# Auth Result Models
# ============================================================================


class AuthUserView(BaseModel):
    """User as presented to the client after authentication."""

    id: UUID
    email: str
    email_verified: bool
    auth_methods: list[AuthMethod] = Field(default_factory=list)


class AuthResult(BaseModel):
    """Result of login/register/OIDC exchange/refresh."""

    user: AuthUserView
    access_token: str
    refresh_token: str = Field(..., repr=False)


class PublicJwk(BaseModel):
    """Single public JSON Web Key."""

    kty: str
    kid: str
    alg: str
    use: str = "sig"
    n: str | None = None
    e: str | None = None
    crv: str | None = None
    x: str | None = None


class PublicJwks(BaseModel):
    """JWKS document used by resource servers to verify access tokens."""

    keys: list[PublicJwk]
