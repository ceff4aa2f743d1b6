import pytest
from pydantic import ValidationError

from identitycore.config import Settings, get_settings, reset_settings_cache


class TestSettings:
    """Tests for settings parsing and validation."""

    def test_from_env_reads_named_variables(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "from-env-secret")
        monkeypatch.setenv("PASSWORD_RESET_RATE_LIMIT", "9")
        monkeypatch.setenv("USE_MEMORY_STORE", "true")

        settings = Settings.from_env()

        assert settings.jwt_secret == "from-env-secret"
        assert settings.password_reset_rate_limit == 9
        assert settings.use_memory_store is True

    def test_backoff_parses_comma_list(self, monkeypatch):
        monkeypatch.setenv("NOTIFIER_RETRY_BACKOFF_SECONDS", "0.5, 2,,10")

        assert Settings.from_env().notifier_retry_backoff_seconds == [0.5, 2.0, 10.0]

    def test_blank_redis_url_disables_redis(self):
        assert Settings(redis_url="  ").redis_url is None
        assert Settings(redis_url=" redis://cache:6379/1 ").redis_url == "redis://cache:6379/1"

    def test_password_min_length_floor(self):
        with pytest.raises(ValidationError):
            Settings(password_min_length=4)

        assert Settings(password_min_length=12).password_min_length == 12

    def test_missing_jwt_secret_is_generated(self):
        first = Settings(jwt_secret=None)
        second = Settings(jwt_secret="")

        assert len(first.jwt_secret) >= 64
        assert first.jwt_secret != second.jwt_secret

    def test_defaults(self):
        settings = Settings(jwt_secret="s")

        assert settings.access_token_ttl_minutes == 15
        assert settings.password_reset_token_ttl_minutes == 30
        assert settings.password_reset_rate_limit == 5
        assert settings.invitation_ttl_hours == 48
        assert settings.default_role_name == "user"

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        monkeypatch.setenv("DEFAULT_ROLE_NAME", "member")
        cached = get_settings()

        monkeypatch.setenv("DEFAULT_ROLE_NAME", "viewer")
        assert get_settings() is cached

        reset_settings_cache()
        assert get_settings().default_role_name == "viewer"
