from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from authcore.logging import get_logger
from authcore.service.errors import ResponseCode
from authcore.service.results import Result
from authcore.storage.common import AuthStore
from authcore.storage.errors import ConstraintViolation, RecordNotFound
from authcore.storage.models import DeviceToken

logger = get_logger(__name__)

DEFAULT_DEVICE_TOKEN_DAYS = 30


@dataclass(frozen=True)
class DeviceCheck:
    valid: bool
    user_id: Optional[str] = None


def digest_device_token(token: str) -> str:
    # Tokens are high-entropy, so an unsalted digest is enough to keep them out of the store
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class DeviceTrustStore:
    """Remembered devices that may skip the login-code step until they expire."""

    def __init__(
        self,
        store: AuthStore,
        *,
        default_days: int = DEFAULT_DEVICE_TOKEN_DAYS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.default_days = default_days
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def store_device_token(
        self, device_token: str, user_id: str, expires_in_days: Optional[int] = None
    ) -> Result[DeviceToken]:
        days = expires_in_days if expires_in_days is not None else self.default_days
        if not device_token or days <= 0:
            return Result.failure(ResponseCode.INVALID_INPUT, user_id=user_id)
        try:
            record = self.store.replace_device_token(
                user_id,
                digest_device_token(device_token),
                self._clock() + timedelta(days=days),
            )
        except RecordNotFound:
            return Result.failure(ResponseCode.USER_NOT_FOUND, user_id=user_id)
        except ConstraintViolation:
            return Result.failure(ResponseCode.CONFLICT, user_id=user_id)
        logger.info("device_token_stored", user_id=user_id, expires_at=record.expires_at.isoformat())
        return Result.success(record)

    def verify_device_token(self, device_token: str) -> DeviceCheck:
        if not device_token:
            return DeviceCheck(valid=False)
        record = self.store.get_device_token(digest_device_token(device_token))
        if not record:
            return DeviceCheck(valid=False)
        if record.expires_at <= self._clock():
            self.store.delete_device_token(record.id)
            logger.info("device_token_expired", user_id=record.user_id)
            return DeviceCheck(valid=False)
        return DeviceCheck(valid=True, user_id=record.user_id)
