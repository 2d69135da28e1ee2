"""Settings loading from the environment."""

import os
import stat

import pytest
from pydantic import ValidationError

from authcore.config import Settings, get_settings, reset_settings_cache


class TestSettings:
    def test_env_names_map_to_fields(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_EXPIRES_IN", "15")
        monkeypatch.setenv("LOGIN_CODE_EXPIRY_MINUTES", "5")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.test, https://b.test")

        settings = Settings.from_env()

        assert settings.access_token_ttl_minutes == 15
        assert settings.login_code_ttl_minutes == 5
        assert settings.cors_allow_origins == ["https://a.test", "https://b.test"]

    def test_defaults(self):
        settings = Settings.from_env()

        assert settings.refresh_token_ttl_minutes == 24 * 60
        assert settings.device_token_ttl_days == 30
        assert settings.phone_code_ttl_minutes == 10

    def test_blank_redis_url_disables_cache(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "  ")

        assert Settings.from_env().redis_url is None

    def test_non_positive_ttl_rejected(self, monkeypatch):
        monkeypatch.setenv("DEVICE_TOKEN_EXPIRY_DAYS", "0")

        with pytest.raises(ValidationError):
            Settings.from_env()

    def test_missing_secrets_are_generated_and_persisted(self, monkeypatch, tmp_path):
        """Without env secrets, distinct secrets are created once and reused."""
        monkeypatch.delenv("ACCESS_TOKEN_SECRET", raising=False)
        monkeypatch.delenv("REFRESH_TOKEN_SECRET", raising=False)
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        first = Settings.from_env()
        second = Settings.from_env()

        assert first.access_token_secret == second.access_token_secret
        assert first.access_token_secret != first.refresh_token_secret
        secret_file = tmp_path / ".access_token_secret"
        assert secret_file.exists()
        assert stat.S_IMODE(os.stat(secret_file).st_mode) == 0o600

    def test_settings_cache(self, monkeypatch):
        reset_settings_cache()
        cached = get_settings()
        monkeypatch.setenv("LOGIN_CODE_EXPIRY_MINUTES", "7")

        assert get_settings() is cached
        reset_settings_cache()
        assert get_settings().login_code_ttl_minutes == 7
        reset_settings_cache()

    def test_notification_dev_mode_defaults_off(self, monkeypatch):
        monkeypatch.setenv("TEST_MODE", "false")

        assert Settings.from_env().notification_dev_mode is False
        monkeypatch.setenv("NOTIFICATION_DEV_MODE", "true")
        assert Settings.from_env().notification_dev_mode is True
        monkeypatch.setenv("TEST_MODE", "true")

    def test_runtime_senders_refuse_without_dev_mode(self, monkeypatch):
        from authcore.service.runtime import Runtime

        monkeypatch.setenv("TEST_MODE", "false")
        monkeypatch.delenv("NOTIFICATION_DEV_MODE", raising=False)
        reset_settings_cache()
        try:
            runtime = Runtime()
            assert runtime.email.dev_mode is False
            assert runtime.sms.dev_mode is False
        finally:
            monkeypatch.setenv("TEST_MODE", "true")
            reset_settings_cache()
