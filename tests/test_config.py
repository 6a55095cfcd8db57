import pytest
from pydantic import ValidationError

from credcore.config import ApiKeyCacheBackend, Settings, get_settings, reset_settings_cache


class TestSettingsFromEnv:
    def test_token_ttls_in_seconds(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "15")
        monkeypatch.setenv("REFRESH_TOKEN_TTL_MINUTES", "120")
        settings = Settings.from_env()
        assert settings.access_token_ttl_seconds == 900
        assert settings.refresh_token_ttl_seconds == 7200

    def test_defaults(self, monkeypatch):
        for name in (
            "ACCESS_TOKEN_TTL_MINUTES",
            "REFRESH_TOKEN_TTL_MINUTES",
            "API_KEY_CACHE_BACKEND",
            "CLOCK_SKEW_LEEWAY_SECONDS",
        ):
            monkeypatch.delenv(name, raising=False)
        settings = Settings.from_env()
        assert settings.access_token_ttl_seconds == 3600
        assert settings.refresh_token_ttl_seconds == 7 * 24 * 3600
        assert settings.api_key_cache_backend is ApiKeyCacheBackend.MEMORY
        assert settings.clock_skew_leeway_seconds == 0

    def test_cache_backend_parsed(self, monkeypatch):
        monkeypatch.setenv("API_KEY_CACHE_BACKEND", "redis")
        monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")
        settings = Settings.from_env()
        assert settings.api_key_cache_backend is ApiKeyCacheBackend.REDIS
        assert settings.redis_url == "redis://cache:6379/0"

    def test_non_positive_ttl_rejected(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "0")
        with pytest.raises(ValidationError):
            Settings.from_env()

    def test_unknown_cache_backend_rejected(self, monkeypatch):
        monkeypatch.setenv("API_KEY_CACHE_BACKEND", "memcached")
        with pytest.raises(ValidationError):
            Settings.from_env()


class TestJwtSecret:
    def test_explicit_secret_used(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "explicit-secret")
        assert Settings.from_env().jwt_secret == "explicit-secret"

    def test_generated_secret_persisted(self, monkeypatch, tmp_path):
        monkeypatch.delenv("JWT_SECRET", raising=False)
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        first = Settings.from_env().jwt_secret
        second = Settings.from_env().jwt_secret

        assert first == second
        assert len(first) >= 32
        assert (tmp_path / ".jwt_secret").read_text().strip() == first


def test_settings_cached_until_reset(monkeypatch):
    monkeypatch.setenv("JWT_ISSUER", "issuer-one")
    first = get_settings()
    monkeypatch.setenv("JWT_ISSUER", "issuer-two")
    assert get_settings() is first
    reset_settings_cache()
    assert get_settings().jwt_issuer == "issuer-two"
