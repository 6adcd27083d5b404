"""
Tests for OIDC sign-in, account linking and the Google ID token verifier.
"""

from unittest.mock import patch

import pytest
from google.auth import exceptions as google_exceptions

from app.exceptions import (
    ExternalIdentityAlreadyExistsError,
    ExternalIdentityConflictError,
    InvalidCredentialsError,
    OidcEmailNotVerifiedError,
    OidcNotConfiguredError,
    OidcTokenInvalidError,
    UnauthorizedError,
    UserSuspendedError,
)
from app.models.api import AuthMethod, OidcProvider, UserStatus
from app.models.domain import OidcInvalid, OidcNotConfigured, OidcVerified
from app.services.oidc import GoogleOidcIdTokenVerifier


@pytest.fixture
def auth(services):
    return services.authenticator


# ============================================================================
# exchange_oidc
# ============================================================================


class TestExchangeOidc:
    """Tests for OIDC sign-in."""

    @pytest.mark.asyncio
    async def test_first_sign_in_creates_verified_user(self, auth, repo, oidc_verifier, google_identity, device):
        oidc_verifier.register("tok", google_identity(email="New@Example.com"))

        result = await auth.exchange_oidc(OidcProvider.GOOGLE, "tok", device)

        assert result.user.email == "new@example.com"
        assert result.user.email_verified is True
        assert result.user.auth_methods == [AuthMethod.GOOGLE]
        assert repo.users[result.user.id].display_name == "Test User"

    @pytest.mark.asyncio
    async def test_second_sign_in_reuses_user(self, auth, repo, oidc_verifier, google_identity, device):
        oidc_verifier.register("tok", google_identity(subject="sub-1"))

        first = await auth.exchange_oidc(OidcProvider.GOOGLE, "tok", device)
        second = await auth.exchange_oidc(OidcProvider.GOOGLE, "tok", device)

        assert first.user.id == second.user.id
        assert len(repo.users) == 1

    @pytest.mark.asyncio
    async def test_existing_email_requires_link(self, auth, make_user, oidc_verifier, google_identity, device):
        """Accounts are never merged implicitly by email."""
        await make_user(email="taken@example.com")
        oidc_verifier.register("tok", google_identity(email="taken@example.com"))

        with pytest.raises(ExternalIdentityConflictError) as exc_info:
            await auth.exchange_oidc(OidcProvider.GOOGLE, "tok", device)
        assert exc_info.value.reason == "link_required"
        assert exc_info.value.code == "AUTH_OIDC_LINK_REQUIRED"

    @pytest.mark.asyncio
    async def test_unverified_email_rejected(self, auth, oidc_verifier, google_identity, device):
        oidc_verifier.register("tok", google_identity(email_verified=False))
        with pytest.raises(OidcEmailNotVerifiedError):
            await auth.exchange_oidc(OidcProvider.GOOGLE, "tok", device)

    @pytest.mark.asyncio
    async def test_invalid_token(self, auth, device):
        with pytest.raises(OidcTokenInvalidError):
            await auth.exchange_oidc(OidcProvider.GOOGLE, "garbage", device)

    @pytest.mark.asyncio
    async def test_not_configured(self, auth, oidc_verifier, device):
        oidc_verifier.configured = False
        with pytest.raises(OidcNotConfiguredError):
            await auth.exchange_oidc(OidcProvider.GOOGLE, "tok", device)

    @pytest.mark.asyncio
    async def test_suspended_user(self, auth, repo, oidc_verifier, google_identity, clock, device):
        identity = google_identity()
        user = await repo.create_user_with_external_identity(identity, clock.now())
        repo.users[user.id].status = UserStatus.SUSPENDED
        oidc_verifier.register("tok", identity)

        with pytest.raises(UserSuspendedError):
            await auth.exchange_oidc(OidcProvider.GOOGLE, "tok", device)

    @pytest.mark.asyncio
    async def test_deleted_user(self, auth, repo, oidc_verifier, google_identity, clock, device):
        identity = google_identity()
        user = await repo.create_user_with_external_identity(identity, clock.now())
        repo.users[user.id].status = UserStatus.DELETED
        oidc_verifier.register("tok", identity)

        with pytest.raises(InvalidCredentialsError):
            await auth.exchange_oidc(OidcProvider.GOOGLE, "tok", device)

    @pytest.mark.asyncio
    async def test_signup_race_resolves_to_winner(self, auth, repo, oidc_verifier, google_identity, clock, device):
        """A concurrent first sign-in that lost the insert signs into the winner's account."""
        identity = google_identity()
        oidc_verifier.register("tok", identity)
        winner = None
        original_create = repo.create_user_with_external_identity

        async def racing_create(identity_arg, now):
            nonlocal winner
            winner = await original_create(identity_arg, now)
            raise ExternalIdentityAlreadyExistsError(identity_arg.provider.value, identity_arg.subject)

        with patch.object(repo, "create_user_with_external_identity", side_effect=racing_create):
            result = await auth.exchange_oidc(OidcProvider.GOOGLE, "tok", device)

        assert winner is not None
        assert result.user.id == winner.id


# ============================================================================
# connect_oidc
# ============================================================================


class TestConnectOidc:
    """Tests for linking a provider to an existing account."""

    @pytest.mark.asyncio
    async def test_link_adds_auth_method(self, auth, repo, make_user, oidc_verifier, google_identity):
        user = await make_user(email="me@example.com")
        oidc_verifier.register("tok", google_identity(email="me@example.com"))

        await auth.connect_oidc(user.id, OidcProvider.GOOGLE, "tok")

        assert await repo.get_auth_methods(user.id) == [AuthMethod.PASSWORD, AuthMethod.GOOGLE]
        # Provider vouched for the same email
        assert repo.users[user.id].email_verified_at is not None

    @pytest.mark.asyncio
    async def test_link_different_email_leaves_unverified(self, auth, repo, make_user, oidc_verifier, google_identity):
        user = await make_user(email="me@example.com")
        oidc_verifier.register("tok", google_identity(email="other@example.com"))

        await auth.connect_oidc(user.id, OidcProvider.GOOGLE, "tok")

        assert repo.users[user.id].email_verified_at is None

    @pytest.mark.asyncio
    async def test_link_twice_is_idempotent(self, auth, repo, make_user, oidc_verifier, google_identity):
        user = await make_user()
        oidc_verifier.register("tok", google_identity())

        await auth.connect_oidc(user.id, OidcProvider.GOOGLE, "tok")
        await auth.connect_oidc(user.id, OidcProvider.GOOGLE, "tok")

        assert len(repo.external_identities) == 1

    @pytest.mark.asyncio
    async def test_identity_owned_by_other_user(self, auth, make_user, oidc_verifier, google_identity):
        first = await make_user()
        second = await make_user()
        oidc_verifier.register("tok", google_identity())
        await auth.connect_oidc(first.id, OidcProvider.GOOGLE, "tok")

        with pytest.raises(ExternalIdentityConflictError) as exc_info:
            await auth.connect_oidc(second.id, OidcProvider.GOOGLE, "tok")
        assert exc_info.value.reason == "identity_linked_to_other_user"

    @pytest.mark.asyncio
    async def test_provider_already_linked(self, auth, make_user, oidc_verifier, google_identity):
        """One identity per provider per user."""
        user = await make_user()
        oidc_verifier.register("tok-1", google_identity(subject="sub-1"))
        oidc_verifier.register("tok-2", google_identity(subject="sub-2"))
        await auth.connect_oidc(user.id, OidcProvider.GOOGLE, "tok-1")

        with pytest.raises(ExternalIdentityConflictError) as exc_info:
            await auth.connect_oidc(user.id, OidcProvider.GOOGLE, "tok-2")
        assert exc_info.value.reason == "provider_already_linked"

    @pytest.mark.asyncio
    async def test_deleted_user_unauthorized(self, auth, make_user, oidc_verifier, google_identity):
        user = await make_user(status=UserStatus.DELETED)
        oidc_verifier.register("tok", google_identity())
        with pytest.raises(UnauthorizedError):
            await auth.connect_oidc(user.id, OidcProvider.GOOGLE, "tok")


# ============================================================================
# GoogleOidcIdTokenVerifier
# ============================================================================


class TestGoogleOidcIdTokenVerifier:
    """Tests for the google-auth backed verifier."""

    CLAIMS = {
        "sub": "1234567890",
        "email": "g@example.com",
        "email_verified": True,
        "name": "G User",
        "given_name": "G",
        "family_name": "User",
    }

    @pytest.mark.asyncio
    async def test_verified_identity(self):
        verifier = GoogleOidcIdTokenVerifier(["client-a", "client-b"])
        with patch("app.services.oidc.id_token.verify_oauth2_token", return_value=dict(self.CLAIMS)) as mock_verify:
            result = await verifier.verify_id_token(OidcProvider.GOOGLE, "raw")

        assert isinstance(result, OidcVerified)
        assert result.identity.subject == "1234567890"
        assert result.identity.email_verified is True
        assert result.identity.display_name == "G User"
        # Audience checked against every configured client id
        assert mock_verify.call_args.args[2] == ["client-a", "client-b"]

    @pytest.mark.asyncio
    async def test_email_verified_must_be_true(self):
        claims = dict(self.CLAIMS, email_verified="true")
        verifier = GoogleOidcIdTokenVerifier(["client-a"])
        with patch("app.services.oidc.id_token.verify_oauth2_token", return_value=claims):
            result = await verifier.verify_id_token(OidcProvider.GOOGLE, "raw")
        assert isinstance(result, OidcVerified)
        assert result.identity.email_verified is False

    @pytest.mark.asyncio
    async def test_invalid_signature(self):
        verifier = GoogleOidcIdTokenVerifier(["client-a"])
        with patch(
            "app.services.oidc.id_token.verify_oauth2_token",
            side_effect=ValueError("Token expired"),
        ):
            result = await verifier.verify_id_token(OidcProvider.GOOGLE, "raw")
        assert isinstance(result, OidcInvalid)
        assert "expired" in result.reason

    @pytest.mark.asyncio
    async def test_missing_email_claim(self):
        claims = {"sub": "1234567890"}
        verifier = GoogleOidcIdTokenVerifier(["client-a"])
        with patch("app.services.oidc.id_token.verify_oauth2_token", return_value=claims):
            result = await verifier.verify_id_token(OidcProvider.GOOGLE, "raw")
        assert isinstance(result, OidcInvalid)

    @pytest.mark.asyncio
    async def test_no_client_ids(self):
        verifier = GoogleOidcIdTokenVerifier([])
        result = await verifier.verify_id_token(OidcProvider.GOOGLE, "raw")
        assert isinstance(result, OidcNotConfigured)

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self):
        """Certificate fetch failures are infrastructure errors, not bad tokens."""
        verifier = GoogleOidcIdTokenVerifier(["client-a"])
        with patch(
            "app.services.oidc.id_token.verify_oauth2_token",
            side_effect=google_exceptions.TransportError("certs unreachable"),
        ):
            with pytest.raises(google_exceptions.TransportError):
                await verifier.verify_id_token(OidcProvider.GOOGLE, "raw")
