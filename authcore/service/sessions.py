from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from authcore.logging import get_logger
from authcore.service.errors import ResponseCode
from authcore.service.hashing import CredentialHasher
from authcore.service.results import Result
from authcore.storage.common import AuthStore
from authcore.storage.errors import ConstraintViolation, RecordNotFound
from authcore.storage.models import SessionStatus, UserSession

logger = get_logger(__name__)

TERMINAL_STATUSES = frozenset({SessionStatus.EXPIRED, SessionStatus.LOGGED_OUT})


class SessionStore:
    """Refresh-token sessions, at most one Active per user.

    Refresh tokens are stored only as argon2 hashes. Rotation is a
    compare-and-swap on the stored hash, so two concurrent refreshes with the
    same token cannot both succeed.
    """

    def __init__(
        self,
        store: AuthStore,
        hasher: CredentialHasher,
        *,
        refresh_ttl: timedelta,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.refresh_ttl = refresh_ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def store_user_session(
        self, user_id: str, refresh_token: str, session_id: Optional[str] = None
    ) -> Result[UserSession]:
        if not self.store.get_user(user_id):
            return Result.failure(ResponseCode.USER_NOT_FOUND, user_id=user_id)
        expires_at = self._clock() + self.refresh_ttl
        try:
            session = self.store.replace_active_session(
                user_id, self.hasher.hash(refresh_token), expires_at, session_id=session_id
            )
        except RecordNotFound:
            return Result.failure(ResponseCode.USER_NOT_FOUND, user_id=user_id)
        except ConstraintViolation as exc:
            # Lost a race against a concurrent login for the same user
            logger.warning("session_store_conflict", user_id=user_id, error=exc.message)
            return Result.failure(ResponseCode.CONFLICT, user_id=user_id)
        logger.info("session_created", user_id=user_id, session_id=session.id)
        return Result.success(session)

    def update_user_session(
        self, user_id: str, old_refresh_token: str, new_refresh_token: str
    ) -> Result[UserSession]:
        if not self.store.get_user(user_id):
            return Result.failure(ResponseCode.USER_NOT_FOUND, user_id=user_id)
        session = self.store.get_active_session(user_id)
        if not session:
            return Result.failure(ResponseCode.SESSION_EXPIRED, user_id=user_id)
        now = self._clock()
        if session.expires_at <= now:
            self.store.transition_session(session.id, SessionStatus.EXPIRED)
            logger.info("session_expired", user_id=user_id, session_id=session.id)
            return Result.failure(ResponseCode.SESSION_EXPIRED, user_id=user_id)
        if not self.hasher.verify(old_refresh_token, session.refresh_token_hash):
            logger.warning("refresh_token_mismatch", user_id=user_id, session_id=session.id)
            return Result.failure(ResponseCode.INVALID_TOKEN, user_id=user_id)
        rotated = self.store.rotate_session(
            session.id,
            session.refresh_token_hash,
            self.hasher.hash(new_refresh_token),
            now + self.refresh_ttl,
        )
        if not rotated:
            # Another refresh rotated or ended the session between read and write
            logger.warning("refresh_rotation_lost", user_id=user_id, session_id=session.id)
            return Result.failure(ResponseCode.INVALID_TOKEN, user_id=user_id)
        return Result.success(rotated)

    def expire_user_session(
        self, user_id: str, status: SessionStatus = SessionStatus.LOGGED_OUT
    ) -> Result[UserSession]:
        status = SessionStatus(status)
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status.value} is not a terminal session status")
        session = self.store.get_active_session(user_id)
        if not session:
            return Result.failure(ResponseCode.USER_SESSION_NOT_FOUND, user_id=user_id)
        ended = self.store.transition_session(session.id, status)
        if not ended:
            return Result.failure(ResponseCode.USER_SESSION_NOT_FOUND, user_id=user_id)
        logger.info(
            "session_ended", user_id=user_id, session_id=ended.id, status=status.value
        )
        return Result.success(ended)

    def get_active_session(self, user_id: str) -> Optional[UserSession]:
        return self.store.get_active_session(user_id)

    def list_sessions(self, user_id: str) -> List[UserSession]:
        return self.store.list_user_sessions(user_id)
