from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from authcore.logging import get_logger
from authcore.storage.common import (
    check_user_fields,
    generate_uuid,
    normalize_email,
)
from authcore.storage.errors import ConstraintViolation, RecordNotFound
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
    UserStatus,
    VerificationEntry,
    VerificationType,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """In-process auth store persisted as JSON under ``fs_root/state``.

    Used for tests and single-node development. Every public method holds
    ``_data_lock`` for its whole read-modify-write, which is what makes the
    supersede/rotate/consume operations atomic. Returned records are copies,
    so callers never mutate stored state directly.
    """

    def __init__(self, fs_root: str = "/tmp/authcore") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, UserSession] = {}
        self.verification_entries: Dict[str, VerificationEntry] = {}
        self.login_codes: Dict[str, LoginCode] = {}
        self.phone_codes: Dict[str, PhoneVerificationCode] = {}
        self.device_tokens: Dict[str, DeviceToken] = {}
        self.notifications: Dict[str, Notification] = {}
        self.support_requests: Dict[int, SupportRequest] = {}
        self.user_roles: Dict[str, List[RoleType]] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    # users
    def create_user(
        self,
        email: str,
        auth_type: AuthType,
        password_hash: Optional[str] = None,
        *,
        email_verified: bool = False,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation(
                    "email already exists", {"field": "email"}, constraint="user_email"
                )
            now = _now()
            user = User(
                id=generate_uuid(),
                email=normalized,
                auth_type=AuthType(auth_type),
                password_hash=password_hash,
                email_verified=email_verified,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.email == normalized and u.status is UserStatus.ACTIVE
                ),
                None,
            )
            return replace(user) if user else None

    def get_user_by_email_and_auth_type(
        self, email: str, auth_type: AuthType
    ) -> Optional[User]:
        user = self.get_user_by_email(email)
        if user and user.auth_type is AuthType(auth_type):
            return user
        return None

    def update_user(self, user_id: str, **fields: Any) -> User:
        check_user_fields(fields)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user", user_id)
            if "email" in fields:
                fields["email"] = normalize_email(fields["email"])
                if any(
                    other.email == fields["email"] and other.id != user_id
                    for other in self.users.values()
                ):
                    raise ConstraintViolation(
                        "email already exists", {"field": "email"}, constraint="user_email"
                    )
            if "status" in fields:
                fields["status"] = UserStatus(fields["status"])
            for key, value in fields.items():
                setattr(user, key, value)
            user.updated_at = _now()
            self._persist_state()
            return replace(user)

    def update_password(self, user_id: str, password_hash: str) -> User:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user", user_id)
            user.password_hash = password_hash
            user.updated_at = _now()
            self._persist_state()
            return replace(user)

    # sessions
    def _active_session_locked(self, user_id: str) -> Optional[UserSession]:
        return next(
            (
                s
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_active
            ),
            None,
        )

    def replace_active_session(
        self,
        user_id: str,
        refresh_token_hash: str,
        expires_at: datetime,
        session_id: Optional[str] = None,
    ) -> UserSession:
        with self._data_lock:
            if user_id not in self.users:
                raise RecordNotFound("user", user_id)
            if session_id and session_id in self.sessions:
                raise ConstraintViolation(
                    "session id already exists",
                    {"session_id": session_id},
                    constraint="user_session_pkey",
                )
            now = _now()
            for sess in self.sessions.values():
                if sess.user_id == user_id and sess.is_active:
                    sess.status = SessionStatus.LOGGED_OUT
                    sess.updated_at = now
            sess = UserSession(
                id=session_id or generate_uuid(),
                user_id=user_id,
                refresh_token_hash=refresh_token_hash,
                expires_at=expires_at,
                created_at=now,
                updated_at=now,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return replace(sess)

    def get_active_session(self, user_id: str) -> Optional[UserSession]:
        with self._data_lock:
            sess = self._active_session_locked(user_id)
            return replace(sess) if sess else None

    def rotate_session(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        expires_at: datetime,
    ) -> Optional[UserSession]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if (
                not sess
                or not sess.is_active
                or sess.refresh_token_hash != expected_hash
            ):
                return None
            sess.refresh_token_hash = new_hash
            sess.expires_at = expires_at
            sess.updated_at = _now()
            self._persist_state()
            return replace(sess)

    def transition_session(
        self, session_id: str, status: SessionStatus
    ) -> Optional[UserSession]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return None
            sess.status = SessionStatus(status)
            sess.updated_at = _now()
            self._persist_state()
            return replace(sess)

    def list_user_sessions(self, user_id: str) -> List[UserSession]:
        with self._data_lock:
            results = [replace(s) for s in self.sessions.values() if s.user_id == user_id]
        return sorted(results, key=lambda s: s.created_at)

    # verification entries
    def replace_verification_entry(
        self,
        user_id: str,
        type: VerificationType,
        uid: str,
        hash: str,
        *,
        created_at: Optional[datetime] = None,
    ) -> VerificationEntry:
        vtype = VerificationType(type)
        with self._data_lock:
            if user_id not in self.users:
                raise RecordNotFound("user", user_id)
            if any(e.uid == uid for e in self.verification_entries.values()):
                raise ConstraintViolation(
                    "verification uid collision", constraint="verification_uid"
                )
            self._drop_verification_slot_locked(user_id, vtype)
            entry = VerificationEntry(
                id=generate_uuid(),
                user_id=user_id,
                uid=uid,
                hash=hash,
                type=vtype,
                created_at=created_at or _now(),
            )
            self.verification_entries[entry.id] = entry
            self._persist_state()
            return replace(entry)

    def _drop_verification_slot_locked(self, user_id: str, vtype: VerificationType) -> bool:
        stale = [
            eid
            for eid, entry in self.verification_entries.items()
            if entry.user_id == user_id and entry.type is vtype
        ]
        for eid in stale:
            del self.verification_entries[eid]
        return bool(stale)

    def get_verification_entry(
        self, uid: str, type: VerificationType
    ) -> Optional[VerificationEntry]:
        vtype = VerificationType(type)
        with self._data_lock:
            entry = next(
                (
                    e
                    for e in self.verification_entries.values()
                    if e.uid == uid and e.type is vtype
                ),
                None,
            )
            return replace(entry) if entry else None

    def delete_verification_entry(self, user_id: str, type: VerificationType) -> bool:
        with self._data_lock:
            removed = self._drop_verification_slot_locked(user_id, VerificationType(type))
            if removed:
                self._persist_state()
            return removed

    def consume_verification_entry(self, entry_id: str) -> bool:
        with self._data_lock:
            if self.verification_entries.pop(entry_id, None) is None:
                return False
            self._persist_state()
            return True

    def list_verification_entries(self, user_id: str) -> List[VerificationEntry]:
        with self._data_lock:
            return [
                replace(e)
                for e in self.verification_entries.values()
                if e.user_id == user_id
            ]

    # login codes
    def replace_login_code(
        self, email: str, code: str, expires_at: datetime
    ) -> LoginCode:
        normalized = normalize_email(email)
        with self._data_lock:
            stale = [cid for cid, lc in self.login_codes.items() if lc.email == normalized]
            for cid in stale:
                del self.login_codes[cid]
            login_code = LoginCode(
                id=generate_uuid(), email=normalized, code=code, expires_at=expires_at
            )
            self.login_codes[login_code.id] = login_code
            self._persist_state()
            return replace(login_code)

    def get_login_code(self, email: str, code: str) -> Optional[LoginCode]:
        normalized = normalize_email(email)
        with self._data_lock:
            match = next(
                (
                    lc
                    for lc in self.login_codes.values()
                    if lc.email == normalized and lc.code == code
                ),
                None,
            )
            return replace(match) if match else None

    def consume_login_code(self, code_id: str) -> bool:
        with self._data_lock:
            if self.login_codes.pop(code_id, None) is None:
                return False
            self._persist_state()
            return True

    def list_login_codes(self, email: str) -> List[LoginCode]:
        normalized = normalize_email(email)
        with self._data_lock:
            return [replace(lc) for lc in self.login_codes.values() if lc.email == normalized]

    # phone verification codes
    def replace_phone_code(
        self, user_id: str, phone_number: str, code: str, expires_at: datetime
    ) -> PhoneVerificationCode:
        with self._data_lock:
            if user_id not in self.users:
                raise RecordNotFound("user", user_id)
            stale = [cid for cid, pc in self.phone_codes.items() if pc.user_id == user_id]
            for cid in stale:
                del self.phone_codes[cid]
            phone_code = PhoneVerificationCode(
                id=generate_uuid(),
                user_id=user_id,
                phone_number=phone_number,
                code=code,
                expires_at=expires_at,
            )
            self.phone_codes[phone_code.id] = phone_code
            self._persist_state()
            return replace(phone_code)

    def get_phone_code(self, user_id: str) -> Optional[PhoneVerificationCode]:
        with self._data_lock:
            match = next(
                (pc for pc in self.phone_codes.values() if pc.user_id == user_id), None
            )
            return replace(match) if match else None

    def consume_phone_code(self, code_id: str) -> bool:
        with self._data_lock:
            if self.phone_codes.pop(code_id, None) is None:
                return False
            self._persist_state()
            return True

    # device tokens
    def replace_device_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> DeviceToken:
        with self._data_lock:
            if user_id not in self.users:
                raise RecordNotFound("user", user_id)
            stale = [
                tid for tid, dt in self.device_tokens.items() if dt.token_hash == token_hash
            ]
            for tid in stale:
                del self.device_tokens[tid]
            device = DeviceToken(
                id=generate_uuid(),
                user_id=user_id,
                token_hash=token_hash,
                expires_at=expires_at,
            )
            self.device_tokens[device.id] = device
            self._persist_state()
            return replace(device)

    def get_device_token(self, token_hash: str) -> Optional[DeviceToken]:
        with self._data_lock:
            match = next(
                (dt for dt in self.device_tokens.values() if dt.token_hash == token_hash),
                None,
            )
            return replace(match) if match else None

    def delete_device_token(self, token_id: str) -> bool:
        with self._data_lock:
            if self.device_tokens.pop(token_id, None) is None:
                return False
            self._persist_state()
            return True

    # notifications
    def create_notification(
        self,
        sender_id: str,
        receiver_id: str,
        message: str,
        notification_type: NotificationType,
    ) -> Notification:
        with self._data_lock:
            for user_id in (sender_id, receiver_id):
                if user_id not in self.users:
                    raise RecordNotFound("user", user_id)
            now = _now()
            notification = Notification(
                id=generate_uuid(),
                sender_id=sender_id,
                receiver_id=receiver_id,
                message=message,
                notification_type=NotificationType(notification_type),
                created_at=now,
                updated_at=now,
            )
            self.notifications[notification.id] = notification
            self._persist_state()
            return replace(notification)

    def list_notifications(
        self, receiver_id: str, *, unread_only: bool = False, offset: int = 0, limit: int = 20
    ) -> List[Notification]:
        with self._data_lock:
            matches = [
                replace(n)
                for n in self.notifications.values()
                if n.receiver_id == receiver_id and not (unread_only and n.read)
            ]
        # Newest first, like the postgres ORDER BY created_at DESC
        matches.sort(key=lambda n: n.created_at, reverse=True)
        return matches[offset : offset + limit]

    def set_notification_read(
        self, notification_id: str, receiver_id: str, read: bool
    ) -> Optional[Notification]:
        with self._data_lock:
            notification = self.notifications.get(notification_id)
            if not notification or notification.receiver_id != receiver_id:
                return None
            notification.read = read
            notification.updated_at = _now()
            self._persist_state()
            return replace(notification)

    def delete_notification(self, notification_id: str, receiver_id: str) -> bool:
        with self._data_lock:
            notification = self.notifications.get(notification_id)
            if not notification or notification.receiver_id != receiver_id:
                return False
            del self.notifications[notification_id]
            self._persist_state()
            return True

    # support requests
    def create_support_request(
        self, email: str, first_name: str, last_name: str, subject: str, message: str
    ) -> SupportRequest:
        with self._data_lock:
            now = _now()
            request = SupportRequest(
                id=max(self.support_requests, default=0) + 1,
                email=normalize_email(email),
                first_name=first_name,
                last_name=last_name,
                subject=subject,
                message=message,
                created_at=now,
                updated_at=now,
            )
            self.support_requests[request.id] = request
            self._persist_state()
            return replace(request)

    def get_support_request(self, request_id: int) -> Optional[SupportRequest]:
        with self._data_lock:
            request = self.support_requests.get(request_id)
            return replace(request) if request else None

    def set_support_request_status(
        self, request_id: int, status: SupportRequestStatus
    ) -> Optional[SupportRequest]:
        with self._data_lock:
            request = self.support_requests.get(request_id)
            if not request:
                return None
            request.status = SupportRequestStatus(status)
            request.updated_at = _now()
            self._persist_state()
            return replace(request)

    # roles
    def add_user_role(self, user_id: str, role: RoleType) -> None:
        role = RoleType(role)
        with self._data_lock:
            if user_id not in self.users:
                raise RecordNotFound("user", user_id)
            roles = self.user_roles.setdefault(user_id, [])
            if role in roles:
                raise ConstraintViolation(
                    "role already granted", {"role": role.value}, constraint="user_role_pkey"
                )
            roles.append(role)
            self._persist_state()

    def list_user_roles(self, user_id: str) -> List[RoleType]:
        with self._data_lock:
            return list(self.user_roles.get(user_id, []))

    # persistence
    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        parsed = datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "verification_entries": [
                self._serialize_verification_entry(e)
                for e in self.verification_entries.values()
            ],
            "login_codes": [
                self._serialize_login_code(lc) for lc in self.login_codes.values()
            ],
            "phone_codes": [
                self._serialize_phone_code(pc) for pc in self.phone_codes.values()
            ],
            "device_tokens": [
                self._serialize_device_token(dt) for dt in self.device_tokens.values()
            ],
            "notifications": [
                self._serialize_notification(n) for n in self.notifications.values()
            ],
            "support_requests": [
                self._serialize_support_request(r) for r in self.support_requests.values()
            ],
            "user_roles": {
                user_id: [role.value for role in roles]
                for user_id, roles in self.user_roles.items()
            },
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.verification_entries = {
            e["id"]: self._deserialize_verification_entry(e)
            for e in data.get("verification_entries", [])
        }
        self.login_codes = {
            lc["id"]: self._deserialize_login_code(lc) for lc in data.get("login_codes", [])
        }
        self.phone_codes = {
            pc["id"]: self._deserialize_phone_code(pc) for pc in data.get("phone_codes", [])
        }
        self.device_tokens = {
            dt["id"]: self._deserialize_device_token(dt)
            for dt in data.get("device_tokens", [])
        }
        self.notifications = {
            n["id"]: self._deserialize_notification(n) for n in data.get("notifications", [])
        }
        self.support_requests = {
            int(r["id"]): self._deserialize_support_request(r)
            for r in data.get("support_requests", [])
        }
        self.user_roles = {
            user_id: [RoleType(role) for role in roles]
            for user_id, roles in data.get("user_roles", {}).items()
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "auth_type": user.auth_type.value,
            "password_hash": user.password_hash,
            "email_verified": user.email_verified,
            "phone_number": user.phone_number,
            "phone_verified": user.phone_verified,
            "notifications": user.notifications,
            "status": user.status.value,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            auth_type=AuthType(data.get("auth_type", AuthType.PASSWORD.value)),
            password_hash=data.get("password_hash"),
            email_verified=data.get("email_verified", False),
            phone_number=data.get("phone_number"),
            phone_verified=data.get("phone_verified", False),
            notifications=data.get("notifications", True),
            status=UserStatus(data.get("status", UserStatus.ACTIVE.value)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at", data["created_at"])
            ),
        )

    def _serialize_session(self, session: UserSession) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "refresh_token_hash": session.refresh_token_hash,
            "expires_at": self._serialize_datetime(session.expires_at),
            "status": session.status.value,
            "created_at": self._serialize_datetime(session.created_at),
            "updated_at": self._serialize_datetime(session.updated_at),
        }

    def _deserialize_session(self, data: dict) -> UserSession:
        return UserSession(
            id=data["id"],
            user_id=data["user_id"],
            refresh_token_hash=data["refresh_token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            status=SessionStatus(data["status"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at", data["created_at"])
            ),
        )

    def _serialize_verification_entry(self, entry: VerificationEntry) -> dict:
        return {
            "id": entry.id,
            "user_id": entry.user_id,
            "uid": entry.uid,
            "hash": entry.hash,
            "type": entry.type.value,
            "created_at": self._serialize_datetime(entry.created_at),
        }

    def _deserialize_verification_entry(self, data: dict) -> VerificationEntry:
        return VerificationEntry(
            id=data["id"],
            user_id=data["user_id"],
            uid=data["uid"],
            hash=data["hash"],
            type=VerificationType(data["type"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_login_code(self, login_code: LoginCode) -> dict:
        return {
            "id": login_code.id,
            "email": login_code.email,
            "code": login_code.code,
            "expires_at": self._serialize_datetime(login_code.expires_at),
            "created_at": self._serialize_datetime(login_code.created_at),
        }

    def _deserialize_login_code(self, data: dict) -> LoginCode:
        return LoginCode(
            id=data["id"],
            email=data["email"],
            code=data["code"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_phone_code(self, phone_code: PhoneVerificationCode) -> dict:
        return {
            "id": phone_code.id,
            "user_id": phone_code.user_id,
            "phone_number": phone_code.phone_number,
            "code": phone_code.code,
            "expires_at": self._serialize_datetime(phone_code.expires_at),
            "created_at": self._serialize_datetime(phone_code.created_at),
        }

    def _deserialize_phone_code(self, data: dict) -> PhoneVerificationCode:
        return PhoneVerificationCode(
            id=data["id"],
            user_id=data["user_id"],
            phone_number=data["phone_number"],
            code=data["code"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_device_token(self, device: DeviceToken) -> dict:
        return {
            "id": device.id,
            "user_id": device.user_id,
            "token_hash": device.token_hash,
            "expires_at": self._serialize_datetime(device.expires_at),
            "created_at": self._serialize_datetime(device.created_at),
        }

    def _deserialize_device_token(self, data: dict) -> DeviceToken:
        return DeviceToken(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_notification(self, notification: Notification) -> dict:
        return {
            "id": notification.id,
            "sender_id": notification.sender_id,
            "receiver_id": notification.receiver_id,
            "message": notification.message,
            "notification_type": notification.notification_type.value,
            "read": notification.read,
            "created_at": self._serialize_datetime(notification.created_at),
            "updated_at": self._serialize_datetime(notification.updated_at),
        }

    def _deserialize_notification(self, data: dict) -> Notification:
        return Notification(
            id=data["id"],
            sender_id=data["sender_id"],
            receiver_id=data["receiver_id"],
            message=data["message"],
            notification_type=NotificationType(data["notification_type"]),
            read=data.get("read", False),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at", data["created_at"])
            ),
        )

    def _serialize_support_request(self, request: SupportRequest) -> dict:
        return {
            "id": request.id,
            "email": request.email,
            "first_name": request.first_name,
            "last_name": request.last_name,
            "subject": request.subject,
            "message": request.message,
            "status": request.status.value,
            "created_at": self._serialize_datetime(request.created_at),
            "updated_at": self._serialize_datetime(request.updated_at),
        }

    def _deserialize_support_request(self, data: dict) -> SupportRequest:
        return SupportRequest(
            id=int(data["id"]),
            email=data["email"],
            first_name=data["first_name"],
            last_name=data["last_name"],
            subject=data["subject"],
            message=data["message"],
            status=SupportRequestStatus(data.get("status", SupportRequestStatus.OPEN.value)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at", data["created_at"])
            ),
        )
