from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authcore.logging import get_logger

logger = get_logger(__name__)

DEFAULT_FS_ROOT = "/srv/authcore"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _persisted_secret(filename: str, env_name: str) -> str:
    """Read a signing secret from SHARED_FS_ROOT, generating it on first use.

    Secrets are written atomically with 0600 permissions so issued tokens
    remain valid across restarts.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", DEFAULT_FS_ROOT))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning(
            "secret_dir_setup",
            error=str(exc),
            path=str(fs_root),
            message="Could not set directory permissions",
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path: str | None = None
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp"
        )
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path is not None and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist signing secret; set {env_name} or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authcore", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Redis URL for shared rate limiting; in-process buckets are used when unset",
    )
    shared_fs_root: str = env_field(DEFAULT_FS_ROOT, "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime resets, dev-mode senders)",
    )
    notification_dev_mode: bool = env_field(
        False,
        "NOTIFICATION_DEV_MODE",
        description="Log emails and SMS (bodies included) instead of failing when no provider is configured",
    )

    # Token signing
    access_token_secret: str = env_field(None, "ACCESS_TOKEN_SECRET", validate_default=True)
    refresh_token_secret: str = env_field(None, "REFRESH_TOKEN_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    jwt_audience: str = env_field("authcore-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(30, "ACCESS_TOKEN_EXPIRES_IN")
    refresh_token_ttl_minutes: int = env_field(24 * 60, "REFRESH_TOKEN_EXPIRES_IN")

    # Verification artefact lifetimes
    verification_uid_ttl_minutes: int = env_field(
        24 * 60,
        "VERIFICATION_UID_TTL_MINUTES",
        description="Lifetime of email verification and password reset links",
    )
    login_code_ttl_minutes: int = env_field(10, "LOGIN_CODE_EXPIRY_MINUTES")
    phone_code_ttl_minutes: int = env_field(10, "PHONE_CODE_EXPIRY_MINUTES")
    device_token_ttl_days: int = env_field(30, "DEVICE_TOKEN_EXPIRY_DAYS")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("AuthCore", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    support_email_address: str | None = env_field(
        None, "SUPPORT_EMAIL_ADDRESS", description="Inbox that receives contact-form requests"
    )
    support_phone_number: str | None = env_field(None, "SUPPORT_PHONE_NUMBER")

    # SMS delivery
    sms_gateway_url: str | None = env_field(
        None, "SMS_GATEWAY_URL", description="HTTP endpoint accepting {to, from, body} JSON"
    )
    sms_api_key: str | None = env_field(None, "SMS_API_KEY")
    sms_from_number: str | None = env_field(None, "SMS_FROM_NUMBER")
    sms_timeout_seconds: float = env_field(10.0, "SMS_TIMEOUT_SECONDS")

    # HTTP surface
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"], "CORS_ALLOW_ORIGINS"
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    verification_rate_limit_per_minute: int = env_field(
        10, "VERIFICATION_RATE_LIMIT_PER_MINUTE"
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("access_token_secret", mode="before")
    @classmethod
    def _ensure_access_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _persisted_secret(".access_token_secret", "ACCESS_TOKEN_SECRET")

    @field_validator("refresh_token_secret", mode="before")
    @classmethod
    def _ensure_refresh_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _persisted_secret(".refresh_token_secret", "REFRESH_TOKEN_SECRET")

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "verification_uid_ttl_minutes",
        "login_code_ttl_minutes",
        "phone_code_ttl_minutes",
        "device_token_ttl_days",
    )
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token and code lifetimes must be positive")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("redis_url", "sms_gateway_url", "smtp_host", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
