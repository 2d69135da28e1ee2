from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional, Protocol

from authcore.logging import get_logger, hash_identifier
from authcore.service.devices import DeviceTrustStore
from authcore.service.email import EmailTemplate
from authcore.service.errors import ResponseCode
from authcore.service.hashing import CredentialHasher
from authcore.service.results import Result
from authcore.service.sessions import SessionStore
from authcore.service.sms import format_phone_number
from authcore.service.tokens import TokenPurpose, TokenSigner
from authcore.service.users import UserDirectory
from authcore.service.verification import (
    LoginCodeStore,
    PhoneCodeStore,
    VerificationPair,
    VerificationStore,
)
from authcore.storage.common import generate_uuid
from authcore.storage.models import AuthType, SessionStatus, User, VerificationType

logger = get_logger(__name__)


class EmailSender(Protocol):
    async def send(
        self,
        template: EmailTemplate,
        to: str,
        subject: str,
        data: Mapping[str, object],
    ) -> Result[None]: ...

    def link(self, path: str) -> str: ...


class SmsSender(Protocol):
    async def send(self, to: str, message: str) -> Result[None]: ...


@dataclass(frozen=True)
class AuthTokens:
    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime

    def as_dict(self) -> dict:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "accessTokenExpiresAt": self.access_token_expires_at.isoformat(),
            "refreshTokenExpiresAt": self.refresh_token_expires_at.isoformat(),
        }


_PASSWORD_EMAILS = {
    VerificationType.RESET_PASSWORD: (
        EmailTemplate.RESET_PASSWORD,
        "Reset your password",
        "reset-password",
    ),
    VerificationType.SET_NEW_PASSWORD: (
        EmailTemplate.SET_NEW_PASSWORD,
        "Set your password",
        "set-password",
    ),
}


class AuthService:
    """Login, registration, token and verification protocols.

    Holds no mutable state of its own: every call composes the stores, the
    user directory and the notification senders it was built with. Expected
    failures come back as ``Result`` codes; a multi-step flow stops at the
    first failing step.
    """

    def __init__(
        self,
        *,
        users: UserDirectory,
        hasher: CredentialHasher,
        signer: TokenSigner,
        verification: VerificationStore,
        login_codes: LoginCodeStore,
        phone_codes: PhoneCodeStore,
        sessions: SessionStore,
        devices: DeviceTrustStore,
        email: EmailSender,
        sms: SmsSender,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.users = users
        self.hasher = hasher
        self.signer = signer
        self.verification = verification
        self.login_codes = login_codes
        self.phone_codes = phone_codes
        self.sessions = sessions
        self.devices = devices
        self.email = email
        self.sms = sms
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    # registration and login

    async def register(
        self, auth_type: AuthType, email: str, password: Optional[str] = None
    ) -> Result[User]:
        auth_type = AuthType(auth_type)
        if self.users.get_user_by_email(email):
            return Result.failure(
                ResponseCode.USER_ALREADY_REGISTERED, email_hash=hash_identifier(email)
            )
        password_hash = None
        if auth_type.requires_password:
            if not password:
                return Result.failure(ResponseCode.INVALID_INPUT, reason="password_required")
            password_hash = self.hasher.hash(password)
        created = self.users.create_user(auth_type, email, password_hash)
        if not created.ok:
            return created
        user = created.value
        sent = await self._send_verification_email(user)
        if not sent.ok:
            return Result.failure(sent.code, user_id=user.id, step="verification_email")
        self.logger.info("user_registered", user_id=user.id, auth_type=auth_type.value)
        return created

    async def login(
        self, auth_type: AuthType, email: str, password: Optional[str] = None
    ) -> Result[User]:
        auth_type = AuthType(auth_type)
        user = self.users.get_user_by_email_and_auth_type(email, auth_type)
        if not user:
            return Result.failure(
                ResponseCode.USER_NOT_FOUND, email_hash=hash_identifier(email)
            )
        if auth_type.requires_password:
            return self.authenticate_password(user, password)
        # Other auth types were already authenticated by their identity provider
        return Result.success(user)

    def authenticate_password(self, user: User, password: Optional[str]) -> Result[User]:
        if not password or not self.hasher.verify(password, user.password_hash):
            self.logger.info("login_wrong_password", user_id=user.id)
            return Result.failure(ResponseCode.WRONG_PASSWORD, user_id=user.id)
        return Result.success(user)

    async def authenticate_device(self, email: str, device_token: str) -> Result[User]:
        """Login path for a remembered device that skips the login code."""
        user = self.users.get_user_by_email(email)
        if not user:
            return Result.failure(
                ResponseCode.USER_NOT_FOUND, email_hash=hash_identifier(email)
            )
        check = self.devices.verify_device_token(device_token)
        if not check.valid or check.user_id != user.id:
            return Result.failure(ResponseCode.INVALID_TOKEN, user_id=user.id)
        return Result.success(user)

    # tokens and sessions

    async def sign_token(self, user: User) -> Result[AuthTokens]:
        # Both tokens name the session they belong to
        session_id = generate_uuid()
        access = self.signer.issue(user.id, TokenPurpose.ACCESS, session_id=session_id)
        refresh = self.signer.issue(user.id, TokenPurpose.REFRESH, session_id=session_id)
        stored = self.sessions.store_user_session(user.id, refresh.token, session_id)
        if not stored.ok:
            return Result.failure(stored.code, **stored.context)
        return Result.success(
            AuthTokens(
                access_token=access.token,
                refresh_token=refresh.token,
                access_token_expires_at=access.expires_at,
                refresh_token_expires_at=stored.value.expires_at,
            )
        )

    async def refresh_token(self, refresh_token: str) -> Result[AuthTokens]:
        decoded = self.signer.verify(refresh_token, TokenPurpose.REFRESH)
        if not decoded:
            return Result.failure(ResponseCode.SESSION_EXPIRED, reason="undecodable")
        if decoded.is_expired(self._now()):
            return Result.failure(
                ResponseCode.SESSION_EXPIRED, user_id=decoded.subject, reason="token_expired"
            )
        rotated_token = self.signer.issue(
            decoded.subject, TokenPurpose.REFRESH, session_id=decoded.session_id
        )
        rotated = self.sessions.update_user_session(
            decoded.subject, refresh_token, rotated_token.token
        )
        if not rotated.ok:
            return Result.failure(rotated.code, **rotated.context)
        access = self.signer.issue(
            decoded.subject, TokenPurpose.ACCESS, session_id=rotated.value.id
        )
        return Result.success(
            AuthTokens(
                access_token=access.token,
                refresh_token=rotated_token.token,
                access_token_expires_at=access.expires_at,
                refresh_token_expires_at=rotated.value.expires_at,
            )
        )

    async def logout(self, user_id: str) -> Result[None]:
        ended = self.sessions.expire_user_session(user_id, SessionStatus.LOGGED_OUT)
        if not ended.ok:
            return Result.failure(ended.code, **ended.context)
        return Result.success()

    async def authenticate_access_token(self, token: str) -> Result[User]:
        """Resolve a bearer access token to its user.

        The token is honoured only while the session it was issued for is the
        user's Active session; a later login, logout or password reset retires it.
        """
        decoded = self.signer.verify(token, TokenPurpose.ACCESS)
        if not decoded:
            return Result.failure(ResponseCode.INVALID_TOKEN)
        if decoded.is_expired(self._now()):
            return Result.failure(ResponseCode.SESSION_EXPIRED, user_id=decoded.subject)
        user = self.users.get_user(decoded.subject)
        if not user:
            return Result.failure(ResponseCode.UNAUTHORIZED, user_id=decoded.subject)
        active = self.sessions.get_active_session(user.id)
        if not active or active.id != decoded.session_id:
            return Result.failure(
                ResponseCode.SESSION_EXPIRED, user_id=user.id, session_id=decoded.session_id
            )
        return Result.success(user)

    # passwords

    async def send_forgot_password_email(self, email: str) -> Result[None]:
        return await self._send_password_email(email, VerificationType.RESET_PASSWORD)

    async def send_set_password_email(self, email: str) -> Result[None]:
        return await self._send_password_email(email, VerificationType.SET_NEW_PASSWORD)

    async def reset_password(self, uid: str, hash_uid: str, password: str) -> Result[User]:
        return self._consume_verification_and_set_password(
            uid, hash_uid, password, VerificationType.RESET_PASSWORD
        )

    async def set_new_password(self, uid: str, hash_uid: str, password: str) -> Result[User]:
        return self._consume_verification_and_set_password(
            uid, hash_uid, password, VerificationType.SET_NEW_PASSWORD
        )

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> Result[User]:
        user = self.users.get_user(user_id)
        if not user:
            return Result.failure(ResponseCode.USER_NOT_FOUND, user_id=user_id)
        checked = self.authenticate_password(user, current_password)
        if not checked.ok:
            return checked
        updated = self.users.update_password(user.id, self.hasher.hash(new_password))
        if updated.ok:
            self.logger.info("password_changed", user_id=user.id)
        return updated

    async def _send_password_email(
        self, email: str, purpose: VerificationType
    ) -> Result[None]:
        user = self.users.get_user_by_email(email)
        if not user:
            return Result.failure(
                ResponseCode.USER_NOT_FOUND, email_hash=hash_identifier(email)
            )
        template, subject, path = _PASSWORD_EMAILS[purpose]
        issued = self.verification.set_verification_uid(user.id, purpose)
        if not issued.ok:
            return Result.failure(issued.code, **issued.context)
        sent = await self.email.send(
            template,
            user.email,
            subject,
            {"link": self._verification_link(path, issued.value)},
        )
        if not sent.ok:
            # An undelivered link must not stay redeemable
            self.verification.clear_verification_uid(user.id, purpose)
            return Result.failure(sent.code, user_id=user.id, purpose=purpose.value)
        return Result.success()

    def _consume_verification_and_set_password(
        self, uid: str, hash_uid: str, password: str, purpose: VerificationType
    ) -> Result[User]:
        verified = self.verification.verify_uid(uid, hash_uid, purpose)
        if not verified.ok:
            return Result.failure(verified.code, **verified.context)
        entry = verified.value
        user = self.users.get_user(entry.user_id)
        if not user:
            return Result.failure(ResponseCode.USER_NOT_FOUND, user_id=entry.user_id)
        consumed = self.verification.consume(entry)
        if not consumed.ok:
            return Result.failure(consumed.code, **consumed.context)
        updated = self.users.update_password(user.id, self.hasher.hash(password))
        if not updated.ok:
            return updated
        if purpose is VerificationType.RESET_PASSWORD:
            # Anyone holding the old refresh token is signed out
            self.sessions.expire_user_session(user.id, SessionStatus.EXPIRED)
        self.logger.info("password_set", user_id=user.id, purpose=purpose.value)
        return updated

    # email verification

    async def verify_email(self, uid: str, hash_uid: str) -> Result[User]:
        verified = self.verification.verify_uid(
            uid, hash_uid, VerificationType.EMAIL_VERIFICATION
        )
        if not verified.ok:
            return Result.failure(verified.code, **verified.context)
        entry = verified.value
        if not self.users.get_user(entry.user_id):
            return Result.failure(ResponseCode.USER_NOT_FOUND, user_id=entry.user_id)
        consumed = self.verification.consume(entry)
        if not consumed.ok:
            return Result.failure(consumed.code, **consumed.context)
        updated = self.users.update_user(entry.user_id, email_verified=True)
        if updated.ok:
            self.logger.info("email_verified", user_id=entry.user_id)
        return updated

    async def resend_verification_email(self, email: str) -> Result[None]:
        user = self.users.get_user_by_email(email)
        if not user:
            return Result.failure(
                ResponseCode.USER_NOT_FOUND, email_hash=hash_identifier(email)
            )
        if user.email_verified:
            return Result.failure(ResponseCode.USER_ALREADY_ONBOARDED, user_id=user.id)
        return await self._send_verification_email(user)

    async def _send_verification_email(self, user: User) -> Result[None]:
        issued = self.verification.set_verification_uid(
            user.id, VerificationType.EMAIL_VERIFICATION
        )
        if not issued.ok:
            return Result.failure(issued.code, **issued.context)
        sent = await self.email.send(
            EmailTemplate.VERIFY_EMAIL,
            user.email,
            "Verify your email",
            {"link": self._verification_link("verify-email", issued.value)},
        )
        if not sent.ok:
            self.verification.clear_verification_uid(
                user.id, VerificationType.EMAIL_VERIFICATION
            )
            return Result.failure(sent.code, user_id=user.id)
        return Result.success()

    def _verification_link(self, path: str, pair: VerificationPair) -> str:
        return self.email.link(f"{path}/{pair.link_token}")

    # phone verification

    async def send_phone_verification_code(
        self, phone_number: str, user_id: str
    ) -> Result[None]:
        if not self.users.get_user(user_id):
            return Result.failure(ResponseCode.USER_NOT_FOUND, user_id=user_id)
        destination = format_phone_number(phone_number)
        issued = self.phone_codes.issue(user_id, destination)
        if not issued.ok:
            return Result.failure(issued.code, **issued.context)
        minutes = int(self.phone_codes.ttl.total_seconds() // 60)
        sent = await self.sms.send(
            destination,
            f"Your verification code is {issued.value.code}. It expires in {minutes} minutes.",
        )
        if not sent.ok:
            # The code must not count as sent when delivery failed
            self.phone_codes.discard(issued.value)
            return Result.failure(ResponseCode.FAILED_DEPENDENCY, user_id=user_id)
        return Result.success()

    async def verify_phone_code(self, user_id: str, code: str) -> Result[User]:
        if not self.users.get_user(user_id):
            return Result.failure(ResponseCode.USER_NOT_FOUND, user_id=user_id)
        redeemed = self.phone_codes.redeem(user_id, code)
        if not redeemed.ok:
            return Result.failure(redeemed.code, **redeemed.context)
        updated = self.users.update_user(
            user_id, phone_number=redeemed.value.phone_number, phone_verified=True
        )
        if updated.ok:
            self.logger.info("phone_verified", user_id=user_id)
        return updated

    # passwordless login codes

    async def resend_login_code(self, email: str) -> Result[None]:
        user = self.users.get_user_by_email(email)
        if not user:
            return Result.failure(
                ResponseCode.USER_NOT_FOUND, email_hash=hash_identifier(email)
            )
        issued = self.login_codes.issue(user.email)
        if not issued.ok:
            return Result.failure(issued.code, **issued.context)
        minutes = int(self.login_codes.ttl.total_seconds() // 60)
        sent = await self.email.send(
            EmailTemplate.VERIFY_LOGIN,
            user.email,
            "Your login code",
            {"code": issued.value.code, "expires_minutes": minutes},
        )
        if not sent.ok:
            self.login_codes.discard(issued.value)
            return Result.failure(ResponseCode.FAILED_DEPENDENCY, user_id=user.id)
        return Result.success()

    async def verify_login_code(
        self,
        login_code: str,
        email: str,
        dont_ask_on_this_device: bool = False,
        device_token: Optional[str] = None,
    ) -> Result[AuthTokens]:
        redeemed = self.login_codes.redeem(email, login_code)
        if not redeemed.ok:
            return Result.failure(redeemed.code, **redeemed.context)
        user = self.users.get_user_by_email(email)
        if not user:
            return Result.failure(
                ResponseCode.USER_NOT_FOUND, email_hash=hash_identifier(email)
            )
        if dont_ask_on_this_device and device_token:
            trusted = self.devices.store_device_token(device_token, user.id)
            if not trusted.ok:
                return Result.failure(trusted.code, **trusted.context)
        signed = await self.sign_token(user)
        if not signed.ok:
            # The login code is what the caller has to retry
            return Result.failure(
                ResponseCode.INVALID_INPUT, user_id=user.id, cause=signed.code.name
            )
        return signed

    # profile

    async def get_user(self, user_id: str) -> Result[User]:
        user = self.users.get_user(user_id)
        if not user:
            return Result.failure(ResponseCode.USER_NOT_FOUND, user_id=user_id)
        return Result.success(user)

    async def update_notifications(self, user_id: str, enabled: bool) -> Result[User]:
        return self.users.update_notifications(user_id, enabled)

    async def delete_user(self, user_id: str) -> Result[User]:
        """Soft delete: free the email, mark the account deleted and end its session."""
        if not self.users.get_user(user_id):
            return Result.failure(ResponseCode.USER_NOT_FOUND, user_id=user_id)
        self.sessions.expire_user_session(user_id, SessionStatus.LOGGED_OUT)
        deleted = self.users.soft_delete(user_id)
        if deleted.ok:
            self.logger.info("user_deleted", user_id=user_id)
        return deleted
