"""
Tests for Settings validation.
"""

import pytest

from app.config import ConfigurationError, Settings

SECRET = "s" * 32


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url="postgresql+asyncpg://u:p@localhost/db",
        token_hash_secret=SECRET,
        GOOGLE_CLIENT_ID="",
        GOOGLE_CLIENT_IDS="",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


class TestValidation:
    """FAIL FAST on critical configuration."""

    def test_valid(self):
        assert make_settings().tx_max_attempts == 3

    def test_missing_database_url(self):
        with pytest.raises(ConfigurationError, match="DATABASE_URL"):
            make_settings(database_url="")

    def test_non_postgres_url(self):
        with pytest.raises(ConfigurationError, match="PostgreSQL"):
            make_settings(database_url="sqlite:///x.db")

    def test_short_token_secret(self):
        with pytest.raises(ConfigurationError, match="TOKEN_HASH_SECRET"):
            make_settings(token_hash_secret="short")

    def test_non_positive_ttl(self):
        with pytest.raises(ConfigurationError, match="ACCESS_TOKEN_TTL_SECONDS"):
            make_settings(access_token_ttl_seconds=0)

    def test_zero_attempts(self):
        with pytest.raises(ConfigurationError, match="TX_MAX_ATTEMPTS"):
            make_settings(tx_max_attempts=0)


class TestGoogleClientIds:
    def test_combines_and_dedupes(self):
        s = make_settings(GOOGLE_CLIENT_ID="web", GOOGLE_CLIENT_IDS="android, web ,ios,")
        assert s.valid_google_client_ids == ["web", "android", "ios"]

    def test_empty(self):
        assert make_settings().valid_google_client_ids == []


class TestMemoryStore:
    def test_database_url_not_required(self):
        s = make_settings(use_memory_store=True, database_url="")
        assert s.use_memory_store is True

    def test_defaults_to_postgres(self):
        assert make_settings().use_memory_store is False
