from __future__ import annotations

import uuid
from typing import Any, Optional

from authcore.logging import get_logger, hash_identifier
from authcore.service.errors import ResponseCode
from authcore.service.results import Result
from authcore.storage.common import AuthStore
from authcore.storage.errors import ConstraintViolation, RecordNotFound
from authcore.storage.models import AuthType, User, UserStatus

logger = get_logger(__name__)


class UserDirectory:
    """User lookup and mutation on top of the auth store."""

    def __init__(self, store: AuthStore) -> None:
        self.store = store

    def create_user(
        self,
        auth_type: AuthType,
        email: str,
        password_hash: Optional[str] = None,
        *,
        email_verified: bool = False,
    ) -> Result[User]:
        try:
            user = self.store.create_user(
                email, auth_type, password_hash, email_verified=email_verified
            )
        except ConstraintViolation:
            return Result.failure(
                ResponseCode.USER_ALREADY_REGISTERED, email_hash=hash_identifier(email)
            )
        logger.info("user_created", user_id=user.id, auth_type=user.auth_type.value)
        return Result.success(user)

    def get_user(self, user_id: str) -> Optional[User]:
        user = self.store.get_user(user_id)
        if user and user.is_deleted:
            return None
        return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self.store.get_user_by_email(email)

    def get_user_by_email_and_auth_type(
        self, email: str, auth_type: AuthType
    ) -> Optional[User]:
        return self.store.get_user_by_email_and_auth_type(email, auth_type)

    def update_user(self, user_id: str, **fields: Any) -> Result[User]:
        try:
            return Result.success(self.store.update_user(user_id, **fields))
        except RecordNotFound:
            return Result.failure(ResponseCode.USER_NOT_FOUND, user_id=user_id)
        except ConstraintViolation:
            return Result.failure(ResponseCode.CONFLICT, user_id=user_id)

    def update_password(self, user_id: str, password_hash: str) -> Result[User]:
        try:
            return Result.success(self.store.update_password(user_id, password_hash))
        except RecordNotFound:
            return Result.failure(ResponseCode.USER_NOT_FOUND, user_id=user_id)

    def update_notifications(self, user_id: str, enabled: bool) -> Result[User]:
        return self.update_user(user_id, notifications=bool(enabled))

    def soft_delete(self, user_id: str) -> Result[User]:
        """Release the email address and mark the account deleted."""
        return self.update_user(
            user_id,
            email=f"deleted-{uuid.uuid4()}",
            status=UserStatus.DELETED,
            notifications=False,
        )
