from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authcore.logging import get_logger
from authcore.storage.common import check_user_fields, normalize_email, safe_row_value
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

REQUIRED_TABLES = (
    "app_user",
    "user_session",
    "verification_uid",
    "login_code",
    "phone_verification_code",
    "device_token",
    "notification",
    "support_request",
    "user_role",
)


class PostgresStore:
    """Postgres-backed auth store.

    Compound operations run in a single transaction. Per-user operations take
    ``SELECT ... FOR UPDATE`` on the ``app_user`` row first, so concurrent
    requests for the same user serialize; login codes, which are keyed by
    email rather than user, serialize on a transaction-scoped advisory lock.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Run scripts/migrate.py to install the schema.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    @staticmethod
    def _lock_user(conn, user_id: str) -> None:
        row = conn.execute(
            "SELECT id FROM app_user WHERE id = %s FOR UPDATE", (user_id,)
        ).fetchone()
        if not row:
            raise RecordNotFound("user", user_id)

    # row mapping
    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            auth_type=AuthType(row["auth_type"]),
            password_hash=row.get("password_hash"),
            email_verified=bool(row.get("email_verified")),
            phone_number=row.get("phone_number"),
            phone_verified=bool(row.get("phone_verified")),
            notifications=bool(safe_row_value(row, "notifications", True)),
            status=UserStatus(row.get("status") or UserStatus.ACTIVE.value),
            created_at=row["created_at"],
            updated_at=safe_row_value(row, "updated_at") or row["created_at"],
        )

    @staticmethod
    def _row_to_session(row: dict) -> UserSession:
        return UserSession(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token_hash=row["refresh_token_hash"],
            expires_at=row["expires_at"],
            status=SessionStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=safe_row_value(row, "updated_at") or row["created_at"],
        )

    @staticmethod
    def _row_to_verification(row: dict) -> VerificationEntry:
        return VerificationEntry(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            uid=row["uid"],
            hash=row["hash"],
            type=VerificationType(row["type"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_login_code(row: dict) -> LoginCode:
        return LoginCode(
            id=str(row["id"]),
            email=row["email"],
            code=row["code"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_phone_code(row: dict) -> PhoneVerificationCode:
        return PhoneVerificationCode(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            phone_number=row["phone_number"],
            code=row["code"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_device_token(row: dict) -> DeviceToken:
        return DeviceToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_notification(row: dict) -> Notification:
        return Notification(
            id=str(row["id"]),
            sender_id=str(row["sender_id"]),
            receiver_id=str(row["receiver_id"]),
            message=row["message"],
            notification_type=NotificationType(row["notification_type"]),
            read=bool(row.get("read")),
            created_at=row["created_at"],
            updated_at=safe_row_value(row, "updated_at") or row["created_at"],
        )

    @staticmethod
    def _row_to_support_request(row: dict) -> SupportRequest:
        return SupportRequest(
            id=int(row["id"]),
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            subject=row["subject"],
            message=row["message"],
            status=SupportRequestStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=safe_row_value(row, "updated_at") or row["created_at"],
        )

    # users
    def create_user(
        self,
        email: str,
        auth_type: AuthType,
        password_hash: Optional[str] = None,
        *,
        email_verified: bool = False,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, auth_type, password_hash, email_verified)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        normalize_email(email),
                        AuthType(auth_type).value,
                        password_hash,
                        email_verified,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"field": "email"}, constraint="user_email"
            )
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s AND status = %s",
                (normalize_email(email), UserStatus.ACTIVE.value),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email_and_auth_type(
        self, email: str, auth_type: AuthType
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s AND auth_type = %s AND status = %s",
                (
                    normalize_email(email),
                    AuthType(auth_type).value,
                    UserStatus.ACTIVE.value,
                ),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user(self, user_id: str, **fields: Any) -> User:
        check_user_fields(fields)
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        if "status" in fields:
            fields["status"] = UserStatus(fields["status"]).value
        # Column names come from the USER_MUTABLE_FIELDS allow-list
        assignments = ", ".join(f"{name} = %s" for name in fields)
        params = [*fields.values(), user_id]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"field": "email"}, constraint="user_email"
            )
        if not row:
            raise RecordNotFound("user", user_id)
        return self._row_to_user(row)

    def update_password(self, user_id: str, password_hash: str) -> User:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET password_hash = %s, updated_at = now()
                WHERE id = %s RETURNING *
                """,
                (password_hash, user_id),
            ).fetchone()
        if not row:
            raise RecordNotFound("user", user_id)
        return self._row_to_user(row)

    # sessions
    def replace_active_session(
        self, user_id: str, refresh_token_hash: str, expires_at: datetime
    ) -> UserSession:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    self._lock_user(conn, user_id)
                    conn.execute(
                        """
                        UPDATE user_session SET status = %s, updated_at = now()
                        WHERE user_id = %s AND status = %s
                        """,
                        (
                            SessionStatus.LOGGED_OUT.value,
                            user_id,
                            SessionStatus.ACTIVE.value,
                        ),
                    )
                    row = conn.execute(
                        """
                        INSERT INTO user_session (id, user_id, refresh_token_hash, expires_at, status)
                        VALUES (%s, %s, %s, %s, %s)
                        RETURNING *
                        """,
                        (
                            str(uuid.uuid4()),
                            user_id,
                            refresh_token_hash,
                            expires_at,
                            SessionStatus.ACTIVE.value,
                        ),
                    ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "user already has an active session",
                {"user_id": user_id},
                constraint="user_session_active",
            )
        return self._row_to_session(row)

    def get_active_session(self, user_id: str) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE user_id = %s AND status = %s",
                (user_id, SessionStatus.ACTIVE.value),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def rotate_session(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        expires_at: datetime,
    ) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_session
                SET refresh_token_hash = %s, expires_at = %s, updated_at = now()
                WHERE id = %s AND status = %s AND refresh_token_hash = %s
                RETURNING *
                """,
                (
                    new_hash,
                    expires_at,
                    session_id,
                    SessionStatus.ACTIVE.value,
                    expected_hash,
                ),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def transition_session(
        self, session_id: str, status: SessionStatus
    ) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_session SET status = %s, updated_at = now()
                WHERE id = %s AND status = %s
                RETURNING *
                """,
                (SessionStatus(status).value, session_id, SessionStatus.ACTIVE.value),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def list_user_sessions(self, user_id: str) -> List[UserSession]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_session WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

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
        try:
            with self._connect() as conn:
                with conn.transaction():
                    self._lock_user(conn, user_id)
                    conn.execute(
                        "DELETE FROM verification_uid WHERE user_id = %s AND type = %s",
                        (user_id, vtype.value),
                    )
                    row = conn.execute(
                        """
                        INSERT INTO verification_uid (id, user_id, uid, hash, type, created_at)
                        VALUES (%s, %s, %s, %s, %s, COALESCE(%s::timestamptz, now()))
                        RETURNING *
                        """,
                        (str(uuid.uuid4()), user_id, uid, hash, vtype.value, created_at),
                    ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "verification uid collision", constraint="verification_uid"
            )
        return self._row_to_verification(row)

    def get_verification_entry(
        self, uid: str, type: VerificationType
    ) -> Optional[VerificationEntry]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM verification_uid WHERE uid = %s AND type = %s",
                (uid, VerificationType(type).value),
            ).fetchone()
        return self._row_to_verification(row) if row else None

    def delete_verification_entry(self, user_id: str, type: VerificationType) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM verification_uid WHERE user_id = %s AND type = %s",
                (user_id, VerificationType(type).value),
            )
            return cur.rowcount > 0

    def consume_verification_entry(self, entry_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM verification_uid WHERE id = %s RETURNING id", (entry_id,)
            ).fetchone()
        return row is not None

    def list_verification_entries(self, user_id: str) -> List[VerificationEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM verification_uid WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._row_to_verification(row) for row in rows]

    # login codes
    def replace_login_code(
        self, email: str, code: str, expires_at: datetime
    ) -> LoginCode:
        normalized = normalize_email(email)
        with self._connect() as conn:
            with conn.transaction():
                conn.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (normalized,))
                conn.execute("DELETE FROM login_code WHERE email = %s", (normalized,))
                row = conn.execute(
                    """
                    INSERT INTO login_code (id, email, code, expires_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), normalized, code, expires_at),
                ).fetchone()
        return self._row_to_login_code(row)

    def get_login_code(self, email: str, code: str) -> Optional[LoginCode]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM login_code WHERE email = %s AND code = %s",
                (normalize_email(email), code),
            ).fetchone()
        return self._row_to_login_code(row) if row else None

    def consume_login_code(self, code_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM login_code WHERE id = %s RETURNING id", (code_id,)
            ).fetchone()
        return row is not None

    def list_login_codes(self, email: str) -> List[LoginCode]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM login_code WHERE email = %s", (normalize_email(email),)
            ).fetchall()
        return [self._row_to_login_code(row) for row in rows]

    # phone verification codes
    def replace_phone_code(
        self, user_id: str, phone_number: str, code: str, expires_at: datetime
    ) -> PhoneVerificationCode:
        with self._connect() as conn:
            with conn.transaction():
                self._lock_user(conn, user_id)
                conn.execute(
                    "DELETE FROM phone_verification_code WHERE user_id = %s", (user_id,)
                )
                row = conn.execute(
                    """
                    INSERT INTO phone_verification_code (id, user_id, phone_number, code, expires_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), user_id, phone_number, code, expires_at),
                ).fetchone()
        return self._row_to_phone_code(row)

    def get_phone_code(self, user_id: str) -> Optional[PhoneVerificationCode]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM phone_verification_code WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._row_to_phone_code(row) if row else None

    def consume_phone_code(self, code_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM phone_verification_code WHERE id = %s RETURNING id",
                (code_id,),
            ).fetchone()
        return row is not None

    # device tokens
    def replace_device_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> DeviceToken:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    self._lock_user(conn, user_id)
                    conn.execute(
                        "DELETE FROM device_token WHERE token_hash = %s", (token_hash,)
                    )
                    row = conn.execute(
                        """
                        INSERT INTO device_token (id, user_id, token_hash, expires_at)
                        VALUES (%s, %s, %s, %s)
                        RETURNING *
                        """,
                        (str(uuid.uuid4()), user_id, token_hash, expires_at),
                    ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "device token already registered", constraint="device_token"
            )
        return self._row_to_device_token(row)

    def get_device_token(self, token_hash: str) -> Optional[DeviceToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM device_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_device_token(row) if row else None

    def delete_device_token(self, token_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM device_token WHERE id = %s RETURNING id", (token_id,)
            ).fetchone()
        return row is not None

    # notifications
    def create_notification(
        self,
        sender_id: str,
        receiver_id: str,
        message: str,
        notification_type: NotificationType,
    ) -> Notification:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO notification (id, sender_id, receiver_id, message, notification_type)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        sender_id,
                        receiver_id,
                        message,
                        NotificationType(notification_type).value,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise RecordNotFound("user", receiver_id)
        return self._row_to_notification(row)

    def list_notifications(
        self, receiver_id: str, *, unread_only: bool = False, offset: int = 0, limit: int = 20
    ) -> List[Notification]:
        query = "SELECT * FROM notification WHERE receiver_id = %s"
        if unread_only:
            query += " AND read = FALSE"
        query += " ORDER BY created_at DESC OFFSET %s LIMIT %s"
        with self._connect() as conn:
            rows = conn.execute(query, (receiver_id, offset, limit)).fetchall()
        return [self._row_to_notification(row) for row in rows]

    def set_notification_read(
        self, notification_id: str, receiver_id: str, read: bool
    ) -> Optional[Notification]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE notification SET read = %s, updated_at = now()
                WHERE id = %s AND receiver_id = %s
                RETURNING *
                """,
                (read, notification_id, receiver_id),
            ).fetchone()
        return self._row_to_notification(row) if row else None

    def delete_notification(self, notification_id: str, receiver_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM notification WHERE id = %s AND receiver_id = %s RETURNING id",
                (notification_id, receiver_id),
            ).fetchone()
        return row is not None

    # support requests
    def create_support_request(
        self, email: str, first_name: str, last_name: str, subject: str, message: str
    ) -> SupportRequest:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO support_request (email, first_name, last_name, subject, message)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (normalize_email(email), first_name, last_name, subject, message),
            ).fetchone()
        return self._row_to_support_request(row)

    def get_support_request(self, request_id: int) -> Optional[SupportRequest]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM support_request WHERE id = %s", (request_id,)
            ).fetchone()
        return self._row_to_support_request(row) if row else None

    def set_support_request_status(
        self, request_id: int, status: SupportRequestStatus
    ) -> Optional[SupportRequest]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE support_request SET status = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (SupportRequestStatus(status).value, request_id),
            ).fetchone()
        return self._row_to_support_request(row) if row else None

    # roles
    def add_user_role(self, user_id: str, role: RoleType) -> None:
        role = RoleType(role)
        try:
            with self._connect() as conn:
                with conn.transaction():
                    self._lock_user(conn, user_id)
                    conn.execute(
                        "INSERT INTO user_role (user_id, role) VALUES (%s, %s)",
                        (user_id, role.value),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "role already granted", {"role": role.value}, constraint="user_role_pkey"
            )

    def list_user_roles(self, user_id: str) -> List[RoleType]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT role FROM user_role WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [RoleType(row["role"]) for row in rows]
