# tests/test_config.py — Environment-driven settings
from datetime import timedelta

import pytest

from config import Settings

STRONG_ACCESS = "a" * 40
STRONG_REFRESH = "r" * 40


@pytest.fixture
def env(monkeypatch):
    monkeypatch.setenv("JWT_ACCESS_SECRET", STRONG_ACCESS)
    monkeypatch.setenv("JWT_REFRESH_SECRET", STRONG_REFRESH)
    for name in ("JWT_ACCESS_EXPIRES_MINUTES", "JWT_REFRESH_EXPIRES_DAYS", "REORDER_COMPACT_SOURCE",
                 "ENVIRONMENT", "CORS_ORIGINS", "BCRYPT_ROUNDS", "REFRESH_TOKEN_BCRYPT_ROUNDS"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestSettings:
    def test_defaults(self, env):
        settings = Settings.from_env()
        assert settings.access_token_ttl == timedelta(minutes=15)
        assert settings.refresh_token_ttl == timedelta(days=7)
        assert settings.bcrypt_rounds == 12
        assert settings.refresh_token_bcrypt_rounds == 10
        assert settings.reorder_compact_source is False
        assert settings.is_production is False

    def test_equal_secrets_rejected(self, env):
        env.setenv("JWT_REFRESH_SECRET", STRONG_ACCESS)
        with pytest.raises(ValueError):
            Settings.from_env()

    def test_short_secret_replaced(self, env):
        env.setenv("JWT_ACCESS_SECRET", "short")
        settings = Settings.from_env()
        assert settings.jwt_access_secret != "short"
        assert len(settings.jwt_access_secret) >= 32

    def test_overrides(self, env):
        env.setenv("REORDER_COMPACT_SOURCE", "true")
        env.setenv("ENVIRONMENT", "production")
        env.setenv("CORS_ORIGINS", "https://a.example, https://b.example,")
        settings = Settings.from_env()
        assert settings.reorder_compact_source is True
        assert settings.is_production is True
        assert settings.cors_origins == ("https://a.example", "https://b.example")
