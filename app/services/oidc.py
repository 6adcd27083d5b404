"""
OIDC ID token verification.

Google ID tokens are verified with google-auth against Google's published
certificates: signature, expiry, issuer and audience (any configured web,
Android or iOS client id).
"""

import asyncio
from typing import Any, Protocol

from google.auth import exceptions as google_exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token
from structlog import get_logger

from app.models.api import OidcProvider
from app.models.domain import (
    OidcInvalid,
    OidcNotConfigured,
    OidcVerificationResult,
    OidcVerified,
    VerifiedOidcIdentity,
)

logger = get_logger(__name__)


class OidcIdTokenVerifier(Protocol):
    async def verify_id_token(
        self, provider: OidcProvider, raw_id_token: str
    ) -> OidcVerificationResult: ...


def _optional_str(claims: dict[str, Any], key: str) -> str | None:
    value = claims.get(key)
    return value if isinstance(value, str) and value else None


class GoogleOidcIdTokenVerifier:
    """
    Google Sign-In ID token verifier.

    Usage:
        verifier = GoogleOidcIdTokenVerifier(settings.valid_google_client_ids)
        result = await verifier.verify_id_token(OidcProvider.GOOGLE, raw)
    """

    def __init__(self, client_ids: list[str]) -> None:
        self.client_ids = client_ids
        self._request = google_requests.Request()  # type: ignore[no-untyped-call]

    async def verify_id_token(
        self, provider: OidcProvider, raw_id_token: str
    ) -> OidcVerificationResult:
        if provider != OidcProvider.GOOGLE or not self.client_ids:
            return OidcNotConfigured()

        try:
            claims: dict[str, Any] = await asyncio.to_thread(
                id_token.verify_oauth2_token,
                raw_id_token,
                self._request,
                self.client_ids,
            )
        except google_exceptions.TransportError:
            # Certificate fetch failed; not the caller's fault
            raise
        except (ValueError, google_exceptions.GoogleAuthError) as e:
            logger.info("oidc_id_token_rejected", provider=provider.value, error=str(e))
            return OidcInvalid(reason=str(e))

        subject = _optional_str(claims, "sub")
        email = _optional_str(claims, "email")
        if subject is None or email is None or "@" not in email:
            return OidcInvalid(reason="missing subject or email claim")

        return OidcVerified(
            identity=VerifiedOidcIdentity(
                provider=provider,
                subject=subject,
                email=email,
                email_verified=claims.get("email_verified") is True,
                display_name=_optional_str(claims, "name"),
                given_name=_optional_str(claims, "given_name"),
                family_name=_optional_str(claims, "family_name"),
            )
        )
