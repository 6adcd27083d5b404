"""
Access Token Issuer - short-lived signed JWTs for resource servers.

Resource servers verify access tokens offline against the published JWKS;
the session id claim lets them reject tokens of revoked sessions.
"""

import base64
from typing import Any, Protocol

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from app.clock import Clock, SystemClock
from app.config import ConfigurationError
from app.models.api import PublicJwk, PublicJwks
from app.models.domain import AccessTokenClaims


class AccessTokenIssuer(Protocol):
    def sign_access_token(self, claims: AccessTokenClaims) -> str: ...

    def get_public_jwks(self) -> PublicJwks: ...


def _b64url_uint(value: int) -> str:
    """Base64url encoding of an unsigned big-endian integer, as JWK requires."""
    raw = value.to_bytes((value.bit_length() + 7) // 8 or 1, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


class JwtAccessTokenIssuer:
    """
    RS256 access token signer.

    Usage:
        issuer = JwtAccessTokenIssuer(
            private_key_pem=settings.jwt_private_key_pem,
            key_id=settings.jwt_key_id,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
        )
        token = issuer.sign_access_token(claims)
    """

    def __init__(
        self,
        private_key_pem: str,
        key_id: str,
        issuer: str,
        audience: str,
        algorithm: str = "RS256",
        clock: Clock | None = None,
    ) -> None:
        if not private_key_pem:
            raise ConfigurationError("JWT_PRIVATE_KEY_PEM is required to sign access tokens")

        private_key = serialization.load_pem_private_key(
            private_key_pem.encode("utf-8"), password=None
        )
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise ConfigurationError(f"{algorithm} signing requires an RSA private key")

        self._private_key = private_key
        self.key_id = key_id
        self.issuer = issuer
        self.audience = audience
        self.algorithm = algorithm
        self._clock = clock or SystemClock()

    def sign_access_token(self, claims: AccessTokenClaims) -> str:
        issued_at = int(self._clock.now().timestamp())
        payload: dict[str, Any] = {
            "sub": str(claims.user_id),
            "sid": str(claims.session_id),
            "email_verified": claims.email_verified,
            "roles": [role.value for role in claims.roles],
            "iat": issued_at,
            "exp": issued_at + claims.ttl_seconds,
            "iss": self.issuer,
            "aud": self.audience,
        }
        return jwt.encode(
            payload,
            self._private_key,
            algorithm=self.algorithm,
            headers={"kid": self.key_id},
        )

    def get_public_jwks(self) -> PublicJwks:
        numbers = self._private_key.public_key().public_numbers()
        return PublicJwks(
            keys=[
                PublicJwk(
                    kty="RSA",
                    kid=self.key_id,
                    alg=self.algorithm,
                    n=_b64url_uint(numbers.n),
                    e=_b64url_uint(numbers.e),
                )
            ]
        )
