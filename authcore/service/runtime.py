from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from authcore.config import get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.auth import AuthService
from authcore.service.devices import DeviceTrustStore
from authcore.service.email import EmailService
from authcore.service.hashing import CredentialHasher
from authcore.service.notifications import NotificationService
from authcore.service.roles import RoleService
from authcore.service.sessions import SessionStore
from authcore.service.sms import SmsService
from authcore.service.support import SupportRequestService
from authcore.service.tokens import TokenSigner
from authcore.service.users import UserDirectory
from authcore.service.verification import (
    LoginCodeStore,
    PhoneCodeStore,
    VerificationStore,
)
from authcore.storage.memory import MemoryStore
from authcore.storage.postgres import PostgresStore
from authcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Composition point: builds every store and service from settings."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if self.settings.use_memory_store else "postgres",
        )

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            cache = RedisCache(self.settings.redis_url)
            try:
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="Rate limits fall back to in-process buckets",
                )
        self._local_rate_limits: dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = threading.Lock()

        self._notification_dev_mode = (
            self.settings.test_mode or self.settings.notification_dev_mode
        )
        if self._notification_dev_mode:
            logger.warning("notification_dev_mode_enabled")
        self.hasher = CredentialHasher()
        self.signer = TokenSigner(
            access_secret=self.settings.access_token_secret,
            refresh_secret=self.settings.refresh_token_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            access_ttl=timedelta(minutes=self.settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=self.settings.refresh_token_ttl_minutes),
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            dev_mode=self._notification_dev_mode,
        )
        self.sms = SmsService(
            gateway_url=self.settings.sms_gateway_url,
            api_key=self.settings.sms_api_key,
            from_number=self.settings.sms_from_number,
            timeout=self.settings.sms_timeout_seconds,
            dev_mode=self._notification_dev_mode,
        )
        self.users = UserDirectory(self.store)
        self.sessions = SessionStore(
            self.store,
            self.hasher,
            refresh_ttl=timedelta(minutes=self.settings.refresh_token_ttl_minutes),
        )
        self.auth = AuthService(
            users=self.users,
            hasher=self.hasher,
            signer=self.signer,
            verification=VerificationStore(
                self.store,
                self.hasher,
                ttl=timedelta(minutes=self.settings.verification_uid_ttl_minutes),
            ),
            login_codes=LoginCodeStore(
                self.store, ttl=timedelta(minutes=self.settings.login_code_ttl_minutes)
            ),
            phone_codes=PhoneCodeStore(
                self.store, ttl=timedelta(minutes=self.settings.phone_code_ttl_minutes)
            ),
            sessions=self.sessions,
            devices=DeviceTrustStore(
                self.store, default_days=self.settings.device_token_ttl_days
            ),
            email=self.email,
            sms=self.sms,
        )
        self.notifications = NotificationService(self.store, self.users, self.email)
        self.support = SupportRequestService(
            self.store,
            self.email,
            support_address=self.settings.support_email_address,
            support_phone=self.settings.support_phone_number,
        )
        self.roles = RoleService(self.store)
        logger.info(
            "runtime_init_completed",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            sms_configured=self.sms.is_configured,
        )

    async def close(self) -> None:
        if self.cache:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh read of the environment.

    Only permitted under TEST_MODE so production state is never discarded.
    """
    global runtime
    reset_settings_cache()
    if not get_settings().test_mode:
        raise RuntimeError("reset_runtime_for_tests requires TEST_MODE=true")
    with _runtime_lock:
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit backed by Redis, or by process memory without it.

    Returns a bool, or ``(allowed, remaining, reset_seconds)`` when
    ``return_remaining`` is set.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) + 1 if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
