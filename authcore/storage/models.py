from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AuthType(str, Enum):
    """How an account proves identity at login."""

    PASSWORD = "password"
    GOOGLE = "google"
    FACEBOOK = "facebook"
    LINKEDIN = "linkedin"
    APPLE = "apple"

    @property
    def requires_password(self) -> bool:
        return self is AuthType.PASSWORD


class UserStatus(str, Enum):
    ACTIVE = "Active"
    DELETED = "Deleted"


class SessionStatus(str, Enum):
    ACTIVE = "Active"
    EXPIRED = "Expired"
    LOGGED_OUT = "LoggedOut"


class VerificationType(str, Enum):
    EMAIL_VERIFICATION = "EmailVerification"
    RESET_PASSWORD = "ResetPassword"
    SET_NEW_PASSWORD = "SetNewPassword"


@dataclass
class User:
    id: str
    email: str
    auth_type: AuthType = AuthType.PASSWORD
    password_hash: Optional[str] = None
    email_verified: bool = False
    phone_number: Optional[str] = None
    phone_verified: bool = False
    notifications: bool = True
    status: UserStatus = UserStatus.ACTIVE
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @property
    def is_deleted(self) -> bool:
        return self.status is UserStatus.DELETED


@dataclass
class UserSession:
    """Refresh-token session. Rows are never removed, only moved to a terminal status."""

    id: str
    user_id: str
    refresh_token_hash: str
    expires_at: datetime
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @property
    def is_active(self) -> bool:
        return self.status is SessionStatus.ACTIVE


@dataclass
class VerificationEntry:
    id: str
    user_id: str
    uid: str
    hash: str
    type: VerificationType
    created_at: datetime = field(default_factory=_now)


@dataclass
class LoginCode:
    id: str
    email: str
    code: str
    expires_at: datetime
    created_at: datetime = field(default_factory=_now)


@dataclass
class PhoneVerificationCode:
    id: str
    user_id: str
    phone_number: str
    code: str
    expires_at: datetime
    created_at: datetime = field(default_factory=_now)


@dataclass
class DeviceToken:
    """Remembered-device record. ``token_hash`` is a SHA-256 digest of the opaque token."""

    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=_now)


class NotificationType(str, Enum):
    ADDED_TO_FAVORITES = "Added to favorites"
    COLLABORATION_REQUEST = "Collaboration request"


class SupportRequestStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class RoleType(str, Enum):
    ADMIN = "admin"
    USER = "user"


@dataclass
class Notification:
    id: str
    sender_id: str
    receiver_id: str
    message: str
    notification_type: NotificationType
    read: bool = False
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class SupportRequest:
    """Contact-form submission; ``id`` is a sequential number quoted back to the requester."""

    id: int
    email: str
    first_name: str
    last_name: str
    subject: str
    message: str
    status: SupportRequestStatus = SupportRequestStatus.OPEN
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
