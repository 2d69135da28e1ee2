"""Single-use verification artefacts: email/reset UIDs, login codes, phone codes.

Every artefact follows the same discipline. Issuing a new one supersedes the
previous one for the same subject and purpose, and a successful check is
followed by an atomic consume. Only the caller whose consume succeeds may
apply the side effect.
"""

from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from authcore.logging import get_logger, hash_identifier
from authcore.service.errors import ResponseCode
from authcore.service.hashing import CredentialHasher
from authcore.service.results import Result
from authcore.storage.common import AuthStore
from authcore.storage.errors import ConstraintViolation, RecordNotFound
from authcore.storage.models import (
    LoginCode,
    PhoneVerificationCode,
    VerificationEntry,
    VerificationType,
)

logger = get_logger(__name__)

LOGIN_CODE_MIN = 1000
LOGIN_CODE_SPAN = 9000
PHONE_CODE_MIN = 100000
PHONE_CODE_SPAN = 900000

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class VerificationPair:
    """The two halves handed to a user: a public lookup key and a secret."""

    uid: str
    hash_uid: str

    @property
    def link_token(self) -> str:
        return f"{self.uid}/{self.hash_uid}"

    @classmethod
    def parse(cls, raw: str) -> Optional["VerificationPair"]:
        """Split a ``uid/hashUid`` link token; None when the shape is wrong."""
        if not raw or not isinstance(raw, str):
            return None
        parts = raw.strip().split("/")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            return None
        return cls(uid=parts[0], hash_uid=parts[1])


class VerificationStore:
    """One UID entry per (user, purpose); the secret half is stored hashed."""

    def __init__(
        self,
        store: AuthStore,
        hasher: CredentialHasher,
        *,
        ttl: Optional[timedelta] = None,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.ttl = ttl
        self._clock = clock or _utcnow

    def set_verification_uid(
        self, user_id: str, vtype: VerificationType
    ) -> Result[VerificationPair]:
        pair = VerificationPair(
            uid=secrets.token_urlsafe(24), hash_uid=secrets.token_urlsafe(32)
        )
        try:
            self.store.replace_verification_entry(
                user_id,
                vtype,
                pair.uid,
                self.hasher.hash(pair.hash_uid),
                created_at=self._clock(),
            )
        except RecordNotFound:
            return Result.failure(ResponseCode.USER_NOT_FOUND, user_id=user_id)
        except ConstraintViolation as exc:
            logger.warning(
                "verification_uid_conflict",
                user_id=user_id,
                purpose=vtype.value,
                error=exc.message,
            )
            return Result.failure(ResponseCode.CONFLICT, user_id=user_id, purpose=vtype.value)
        logger.info("verification_uid_issued", user_id=user_id, purpose=vtype.value)
        return Result.success(pair)

    def verify_uid(
        self, uid: str, hash_uid: str, vtype: VerificationType
    ) -> Result[VerificationEntry]:
        entry = self.store.get_verification_entry(uid, vtype)
        if not entry:
            return Result.failure(
                ResponseCode.VERIFICATION_UID_NOT_FOUND, purpose=vtype.value
            )
        # A mismatch leaves the entry in place so the user can retry
        if not self.hasher.verify(hash_uid, entry.hash):
            logger.warning(
                "verification_uid_mismatch", user_id=entry.user_id, purpose=vtype.value
            )
            return Result.failure(ResponseCode.INVALID_UID, user_id=entry.user_id)
        if self.ttl is not None and entry.created_at + self.ttl <= self._clock():
            logger.info(
                "verification_uid_expired", user_id=entry.user_id, purpose=vtype.value
            )
            return Result.failure(ResponseCode.INVALID_UID, user_id=entry.user_id)
        return Result.success(entry)

    def clear_verification_uid(
        self, user_id: str, vtype: VerificationType
    ) -> Result[None]:
        if not self.store.delete_verification_entry(user_id, vtype):
            return Result.failure(
                ResponseCode.VERIFICATION_UID_NOT_FOUND, user_id=user_id
            )
        return Result.success()

    def consume(self, entry: VerificationEntry) -> Result[None]:
        """Delete a verified entry; fails if a concurrent request got there first."""
        if not self.store.consume_verification_entry(entry.id):
            logger.warning(
                "verification_uid_replayed", user_id=entry.user_id, purpose=entry.type.value
            )
            return Result.failure(
                ResponseCode.VERIFICATION_UID_NOT_FOUND, user_id=entry.user_id
            )
        return Result.success()


class LoginCodeStore:
    """Four-digit passwordless login codes keyed by email."""

    def __init__(
        self, store: AuthStore, *, ttl: timedelta, clock: Clock | None = None
    ) -> None:
        self.store = store
        self.ttl = ttl
        self._clock = clock or _utcnow

    @staticmethod
    def generate_code() -> str:
        return str(LOGIN_CODE_MIN + secrets.randbelow(LOGIN_CODE_SPAN))

    def issue(self, email: str) -> Result[LoginCode]:
        login_code = self.store.replace_login_code(
            email, self.generate_code(), self._clock() + self.ttl
        )
        logger.info("login_code_issued", email_hash=hash_identifier(email))
        return Result.success(login_code)

    def redeem(self, email: str, code: str) -> Result[LoginCode]:
        """Check and consume ``code``. Unknown codes are invalid input, stale ones expired."""
        login_code = self.store.get_login_code(email, code)
        if not login_code:
            return Result.failure(
                ResponseCode.INVALID_INPUT, email_hash=hash_identifier(email)
            )
        if login_code.expires_at <= self._clock():
            logger.info("login_code_expired", email_hash=hash_identifier(email))
            return Result.failure(
                ResponseCode.SESSION_EXPIRED, email_hash=hash_identifier(email)
            )
        if not self.store.consume_login_code(login_code.id):
            return Result.failure(
                ResponseCode.INVALID_INPUT, email_hash=hash_identifier(email)
            )
        return Result.success(login_code)

    def discard(self, login_code: LoginCode) -> None:
        self.store.consume_login_code(login_code.id)


class PhoneCodeStore:
    """Six-digit phone verification codes, one outstanding per user."""

    def __init__(
        self, store: AuthStore, *, ttl: timedelta, clock: Clock | None = None
    ) -> None:
        self.store = store
        self.ttl = ttl
        self._clock = clock or _utcnow

    @staticmethod
    def generate_code() -> str:
        return str(PHONE_CODE_MIN + secrets.randbelow(PHONE_CODE_SPAN))

    def issue(self, user_id: str, phone_number: str) -> Result[PhoneVerificationCode]:
        try:
            phone_code = self.store.replace_phone_code(
                user_id, phone_number, self.generate_code(), self._clock() + self.ttl
            )
        except RecordNotFound:
            return Result.failure(ResponseCode.USER_NOT_FOUND, user_id=user_id)
        return Result.success(phone_code)

    def redeem(self, user_id: str, code: str) -> Result[PhoneVerificationCode]:
        phone_code = self.store.get_phone_code(user_id)
        if not phone_code:
            return Result.failure(ResponseCode.INVALID_INPUT, user_id=user_id)
        if phone_code.expires_at <= self._clock():
            self.store.consume_phone_code(phone_code.id)
            logger.info("phone_code_expired", user_id=user_id)
            return Result.failure(ResponseCode.SESSION_EXPIRED, user_id=user_id)
        if not hmac.compare_digest(phone_code.code, str(code)):
            return Result.failure(ResponseCode.INVALID_INPUT, user_id=user_id)
        if not self.store.consume_phone_code(phone_code.id):
            return Result.failure(ResponseCode.INVALID_INPUT, user_id=user_id)
        return Result.success(phone_code)

    def discard(self, phone_code: PhoneVerificationCode) -> None:
        self.store.consume_phone_code(phone_code.id)
