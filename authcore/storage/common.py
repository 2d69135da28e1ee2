"""Contract and helpers shared between the memory and postgres backends.

Every compound method on ``AuthStore`` is atomic: the memory backend runs it
under one lock, the postgres backend inside one transaction that locks the
owning user row. The "at most one active per key" rules rely on that.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional, Protocol

from authcore.storage.models import (
    AuthType,
    DeviceToken,
    LoginCode,
    Notification,
    NotificationType,
    PhoneVerificationCode,
    RoleType,
    SessionStatus,
    SupportRequest,
    SupportRequestStatus,
    User,
    UserSession,
    VerificationEntry,
    VerificationType,
)

# Columns callers may change through ``update_user``
USER_MUTABLE_FIELDS = frozenset(
    {
        "email",
        "email_verified",
        "phone_number",
        "phone_verified",
        "notifications",
        "status",
    }
)


class AuthStore(Protocol):
    # users
    def create_user(
        self,
        email: str,
        auth_type: AuthType,
        password_hash: Optional[str] = None,
        *,
        email_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_email_and_auth_type(
        self, email: str, auth_type: AuthType
    ) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> User: ...

    def update_password(self, user_id: str, password_hash: str) -> User: ...

    # sessions
    def replace_active_session(
        self,
        user_id: str,
        refresh_token_hash: str,
        expires_at: datetime,
        session_id: Optional[str] = None,
    ) -> UserSession: ...

    def get_active_session(self, user_id: str) -> Optional[UserSession]: ...

    def rotate_session(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        expires_at: datetime,
    ) -> Optional[UserSession]: ...

    def transition_session(
        self, session_id: str, status: SessionStatus
    ) -> Optional[UserSession]: ...

    def list_user_sessions(self, user_id: str) -> List[UserSession]: ...

    # verification entries
    def replace_verification_entry(
        self,
        user_id: str,
        type: VerificationType,
        uid: str,
        hash: str,
        *,
        created_at: Optional[datetime] = None,
    ) -> VerificationEntry: ...

    def get_verification_entry(
        self, uid: str, type: VerificationType
    ) -> Optional[VerificationEntry]: ...

    def delete_verification_entry(self, user_id: str, type: VerificationType) -> bool: ...

    def consume_verification_entry(self, entry_id: str) -> bool: ...

    def list_verification_entries(self, user_id: str) -> List[VerificationEntry]: ...

    # login codes
    def replace_login_code(
        self, email: str, code: str, expires_at: datetime
    ) -> LoginCode: ...

    def get_login_code(self, email: str, code: str) -> Optional[LoginCode]: ...

    def consume_login_code(self, code_id: str) -> bool: ...

    def list_login_codes(self, email: str) -> List[LoginCode]: ...

    # phone codes
    def replace_phone_code(
        self, user_id: str, phone_number: str, code: str, expires_at: datetime
    ) -> PhoneVerificationCode: ...

    def get_phone_code(self, user_id: str) -> Optional[PhoneVerificationCode]: ...

    def consume_phone_code(self, code_id: str) -> bool: ...

    # device tokens
    def replace_device_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> DeviceToken: ...

    def get_device_token(self, token_hash: str) -> Optional[DeviceToken]: ...

    def delete_device_token(self, token_id: str) -> bool: ...

    # notifications
    def create_notification(
        self,
        sender_id: str,
        receiver_id: str,
        message: str,
        notification_type: NotificationType,
    ) -> Notification: ...

    def list_notifications(
        self, receiver_id: str, *, unread_only: bool = False, offset: int = 0, limit: int = 20
    ) -> List[Notification]: ...

    def set_notification_read(
        self, notification_id: str, receiver_id: str, read: bool
    ) -> Optional[Notification]: ...

    def delete_notification(self, notification_id: str, receiver_id: str) -> bool: ...

    # support requests
    def create_support_request(
        self, email: str, first_name: str, last_name: str, subject: str, message: str
    ) -> SupportRequest: ...

    def get_support_request(self, request_id: int) -> Optional[SupportRequest]: ...

    def set_support_request_status(
        self, request_id: int, status: SupportRequestStatus
    ) -> Optional[SupportRequest]: ...

    # roles
    def add_user_role(self, user_id: str, role: RoleType) -> None: ...

    def list_user_roles(self, user_id: str) -> List[RoleType]: ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


def generate_uuid() -> str:
    """Generate a new UUID string for record identifiers."""
    return str(uuid.uuid4())


def check_user_fields(fields: dict) -> None:
    unknown = set(fields) - USER_MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"unsupported user fields: {sorted(unknown)}")


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract a value from a row that may be a dict or a mapping-like object."""
    if row is None:
        return default
    if isinstance(row, dict):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, IndexError, TypeError):
        return default
