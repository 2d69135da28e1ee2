from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from authcore.service.auth import AuthTokens
from authcore.service.errors import ResponseCode
from authcore.storage.models import (
    AuthType,
    Notification,
    NotificationType,
    RoleType,
    SupportRequest,
    SupportRequestStatus,
    User,
)

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then apply NFKC."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body: numeric code, its stable name and a safe message."""

    code: int = Field(..., description="Numeric response code")
    name: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: int) -> int:
        try:
            code = ResponseCode(value)
        except ValueError as exc:
            raise ValueError(f"Unknown response code {value}") from exc
        if code == ResponseCode.OK:
            raise ValueError("error bodies cannot carry the OK code")
        return value


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    code: int = ResponseCode.OK
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class CamelModel(BaseModel):
    """Accepts camelCase or snake_case on input; emits camelCase when dumped by alias."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError(f"password must be at most {PASSWORD_MAX_LENGTH} characters")
    return value


class EmailRequest(CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class CredentialsRequest(EmailRequest):
    """Register and login body; a password is required only for password accounts."""

    auth_type: AuthType = AuthType.PASSWORD
    password: Optional[str] = None

    @model_validator(mode="after")
    def _check_password(self):
        if self.auth_type.requires_password:
            if not self.password:
                raise ValueError("password is required for password accounts")
            _validate_password_strength(self.password)
        return self


class UidPasswordRequest(CamelModel):
    uid: str = Field(..., max_length=512, description="Link token in the form uid/hashUid")
    password: str

    @field_validator("password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class VerifyEmailRequest(CamelModel):
    uid: str = Field(..., max_length=512, description="Link token in the form uid/hashUid")


class ChangePasswordRequest(CamelModel):
    current_password: str = Field(..., max_length=PASSWORD_MAX_LENGTH)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class VerifyLoginCodeRequest(EmailRequest):
    login_code: str = Field(..., pattern=r"^\d{4}$")
    dont_ask_on_this_device: bool = False


class TrustedDeviceRequest(EmailRequest):
    device_token: Optional[str] = Field(default=None, max_length=256)


class SendPhoneCodeRequest(CamelModel):
    phone_number: str = Field(..., max_length=32)

    @field_validator("phone_number")
    @classmethod
    def _validate_phone(cls, value: str) -> str:
        digits = re.sub(r"\D", "", value)
        if not 10 <= len(digits) <= 15:
            raise ValueError("phone number must contain 10 to 15 digits")
        return value.strip()


class VerifyPhoneRequest(CamelModel):
    code: str = Field(..., pattern=r"^\d{6}$")


class RefreshRequest(CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class NotificationsRequest(CamelModel):
    enabled: bool


class ReadStatusRequest(CamelModel):
    read: bool


class SupportRequestCreate(EmailRequest):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    subject: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1, max_length=5000)

    @field_validator("first_name", "last_name", "subject", "message")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        cleaned = _normalize_unicode(value).strip()
        if not cleaned:
            raise ValueError("must not be blank")
        return cleaned


class SupportStatusRequest(CamelModel):
    status: SupportRequestStatus


class UserResponse(CamelModel):
    id: str
    email: str
    auth_type: AuthType
    email_verified: bool
    phone_number: Optional[str] = None
    phone_verified: bool
    notifications: bool
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            auth_type=user.auth_type,
            email_verified=user.email_verified,
            phone_number=user.phone_number,
            phone_verified=user.phone_verified,
            notifications=user.notifications,
            created_at=user.created_at,
        )


class TokenResponse(CamelModel):
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    device_token: Optional[str] = None

    @classmethod
    def from_tokens(
        cls, tokens: AuthTokens, *, include_tokens: bool, device_token: Optional[str] = None
    ) -> "TokenResponse":
        return cls(
            access_token=tokens.access_token if include_tokens else None,
            refresh_token=tokens.refresh_token if include_tokens else None,
            access_token_expires_at=tokens.access_token_expires_at,
            refresh_token_expires_at=tokens.refresh_token_expires_at,
            device_token=device_token,
        )


class AuthResponse(CamelModel):
    user: UserResponse
    tokens: TokenResponse


class NotificationResponse(CamelModel):
    id: str
    sender_id: str
    message: str
    type: NotificationType
    read: bool
    created_at: datetime

    @classmethod
    def from_notification(cls, notification: Notification) -> "NotificationResponse":
        return cls(
            id=notification.id,
            sender_id=notification.sender_id,
            message=notification.message,
            type=notification.notification_type,
            read=notification.read,
            created_at=notification.created_at,
        )


class NotificationPage(CamelModel):
    notifications: list[NotificationResponse]


class SupportRequestResponse(CamelModel):
    id: int
    subject: str
    status: SupportRequestStatus
    created_at: datetime

    @classmethod
    def from_request(cls, request: SupportRequest) -> "SupportRequestResponse":
        return cls(
            id=request.id,
            subject=request.subject,
            status=request.status,
            created_at=request.created_at,
        )


class RolesResponse(CamelModel):
    roles: list[RoleType]
