"""
Tests for Argon2PasswordHasher.
"""

import pytest


class TestArgon2PasswordHasher:
    """Tests for hashing and constant-shape verification."""

    @pytest.mark.asyncio
    async def test_hash_and_verify(self, password_hasher):
        stored = await password_hasher.hash("correct horse battery")
        assert stored.startswith("$argon2id$")
        assert await password_hasher.verify(stored, "correct horse battery") is True

    @pytest.mark.asyncio
    async def test_wrong_password(self, password_hasher):
        stored = await password_hasher.hash("correct horse battery")
        assert await password_hasher.verify(stored, "wrong horse battery") is False

    @pytest.mark.asyncio
    async def test_hashes_are_salted(self, password_hasher):
        assert await password_hasher.hash("same") != await password_hasher.hash("same")

    @pytest.mark.asyncio
    async def test_missing_hash_never_verifies(self, password_hasher):
        """Unknown accounts run against the dummy hash and always fail."""
        assert await password_hasher.verify(None, "anything") is False
        assert await password_hasher.verify(None, "") is False

    @pytest.mark.asyncio
    async def test_malformed_hash_is_false(self, password_hasher):
        assert await password_hasher.verify("not-an-argon2-hash", "anything") is False
