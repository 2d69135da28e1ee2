"""PostgresStore SQL and transaction behaviour against a scripted connection."""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from authcore.storage.errors import ConstraintViolation, RecordNotFound
from authcore.storage.models import AuthType, NotificationType, RoleType, SessionStatus
from authcore.storage.postgres import REQUIRED_TABLES, PostgresStore

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, row=None, rows=None, rowcount=0):
        self._row = row
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._row

    def fetchall(self):
        return self._rows


class FakeConnection:
    """Answers each execute() with the next scripted cursor and records the SQL."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.statements: list[tuple[str, tuple]] = []
        self.transactions = 0

    def execute(self, sql, params=()):
        self.statements.append((" ".join(sql.split()), tuple(params)))
        nxt = self.responses.pop(0) if self.responses else FakeCursor()
        if isinstance(nxt, Exception):
            raise nxt
        return nxt

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _store(conn) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn)
    return store


def _session_row(**overrides):
    row = {
        "id": "s-1",
        "user_id": "u-1",
        "refresh_token_hash": "h1",
        "expires_at": NOW + timedelta(days=1),
        "status": "Active",
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def _user_row(**overrides):
    row = {
        "id": "u-1",
        "email": "a@x.com",
        "auth_type": "password",
        "password_hash": "hash",
        "email_verified": False,
        "phone_number": None,
        "phone_verified": False,
        "notifications": True,
        "status": "Active",
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


class TestSchemaCheck:
    def test_missing_tables_reported(self):
        responses = [FakeCursor(row={"oid": "x"}) for _ in REQUIRED_TABLES]
        responses[-1] = FakeCursor(row={"oid": None})
        store = _store(FakeConnection(responses))

        with pytest.raises(RuntimeError, match="user_role"):
            store._verify_required_schema()

    def test_complete_schema_passes(self):
        store = _store(FakeConnection([FakeCursor(row={"oid": "x"}) for _ in REQUIRED_TABLES]))

        store._verify_required_schema()


class TestUsers:
    def test_create_user_normalizes_email(self):
        conn = FakeConnection([FakeCursor(row=_user_row())])
        user = _store(conn).create_user(" A@X.com ", AuthType.PASSWORD, "hash")

        assert user.email == "a@x.com"
        _, params = conn.statements[0]
        assert params[1] == "a@x.com"
        assert params[2] == "password"

    def test_duplicate_email(self):
        conn = FakeConnection([errors.UniqueViolation("duplicate key")])

        with pytest.raises(ConstraintViolation) as exc_info:
            _store(conn).create_user("a@x.com", AuthType.PASSWORD, "hash")
        assert exc_info.value.constraint == "user_email"

    def test_update_user_rejects_unknown_columns_before_sql(self):
        conn = FakeConnection()

        with pytest.raises(ValueError):
            _store(conn).update_user("u-1", password_hash="x")
        assert conn.statements == []

    def test_update_missing_user(self):
        conn = FakeConnection([FakeCursor(row=None)])

        with pytest.raises(RecordNotFound):
            _store(conn).update_user("u-1", notifications=False)


class TestSessions:
    def test_replace_active_session_is_one_transaction(self):
        conn = FakeConnection(
            [FakeCursor(row={"id": "u-1"}), FakeCursor(), FakeCursor(row=_session_row())]
        )

        session = _store(conn).replace_active_session("u-1", "h1", NOW + timedelta(days=1))

        assert session.status is SessionStatus.ACTIVE
        assert conn.transactions == 1
        sqls = [sql for sql, _ in conn.statements]
        assert sqls[0].endswith("FOR UPDATE")
        assert sqls[1].startswith("UPDATE user_session SET status")
        assert conn.statements[1][1] == ("LoggedOut", "u-1", "Active")
        assert sqls[2].startswith("INSERT INTO user_session")

    def test_replace_active_session_missing_user(self):
        conn = FakeConnection([FakeCursor(row=None)])

        with pytest.raises(RecordNotFound):
            _store(conn).replace_active_session("u-1", "h1", NOW)
        assert len(conn.statements) == 1

    def test_rotate_guards_on_expected_hash(self):
        conn = FakeConnection([FakeCursor(row=None)])

        assert _store(conn).rotate_session("s-1", "h1", "h2", NOW) is None
        sql, params = conn.statements[0]
        assert "refresh_token_hash = %s RETURNING" in sql
        assert params == ("h2", NOW, "s-1", "Active", "h1")

    def test_transition_only_from_active(self):
        conn = FakeConnection([FakeCursor(row=_session_row(status="Expired"))])

        ended = _store(conn).transition_session("s-1", SessionStatus.EXPIRED)
        assert ended.status is SessionStatus.EXPIRED
        assert conn.statements[0][1] == ("Expired", "s-1", "Active")


class TestSingleUseRecords:
    def test_consume_reports_lost_race(self):
        conn = FakeConnection([FakeCursor(row=None)])

        assert _store(conn).consume_verification_entry("v-1") is False

    def test_login_code_replacement_serializes_on_email(self):
        row = {"id": "c-1", "email": "a@x.com", "code": "1234", "expires_at": NOW, "created_at": NOW}
        conn = FakeConnection([FakeCursor(), FakeCursor(), FakeCursor(row=row)])

        code = _store(conn).replace_login_code("A@x.com", "1234", NOW)

        assert code.code == "1234"
        assert conn.transactions == 1
        assert conn.statements[0] == ("SELECT pg_advisory_xact_lock(hashtext(%s))", ("a@x.com",))
        assert conn.statements[1][0] == "DELETE FROM login_code WHERE email = %s"

    def test_device_token_replaces_by_hash(self):
        row = {"id": "d-1", "user_id": "u-1", "token_hash": "digest", "expires_at": NOW, "created_at": NOW}
        conn = FakeConnection([FakeCursor(row={"id": "u-1"}), FakeCursor(), FakeCursor(row=row)])

        record = _store(conn).replace_device_token("u-1", "digest", NOW)

        assert record.token_hash == "digest"
        assert conn.statements[1] == ("DELETE FROM device_token WHERE token_hash = %s", ("digest",))


class TestNotificationsAndRoles:
    def test_unread_listing_filters_and_pages(self):
        conn = FakeConnection([FakeCursor(rows=[])])

        assert _store(conn).list_notifications("u-1", unread_only=True, offset=20, limit=20) == []
        sql, params = conn.statements[0]
        assert "AND read = FALSE" in sql
        assert sql.endswith("ORDER BY created_at DESC OFFSET %s LIMIT %s")
        assert params == ("u-1", 20, 20)

    def test_notification_for_unknown_user(self):
        conn = FakeConnection([errors.ForeignKeyViolation("violates foreign key")])

        with pytest.raises(RecordNotFound):
            _store(conn).create_notification(
                "u-1", "u-2", "hi", NotificationType.ADDED_TO_FAVORITES
            )

    def test_read_status_is_scoped_to_receiver(self):
        conn = FakeConnection([FakeCursor(row=None)])

        assert _store(conn).set_notification_read("n-1", "u-1", True) is None
        sql, params = conn.statements[0]
        assert "WHERE id = %s AND receiver_id = %s" in sql
        assert params == (True, "n-1", "u-1")

    def test_duplicate_role(self):
        conn = FakeConnection([FakeCursor(row={"id": "u-1"}), errors.UniqueViolation("duplicate key")])

        with pytest.raises(ConstraintViolation) as exc_info:
            _store(conn).add_user_role("u-1", RoleType.ADMIN)
        assert exc_info.value.constraint == "user_role_pkey"
