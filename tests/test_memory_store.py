"""Unit tests for the in-process store and its JSON persistence."""

from datetime import datetime, timedelta, timezone

import pytest

from authcore.storage.errors import ConstraintViolation, RecordNotFound
from authcore.storage.memory import MemoryStore
from authcore.storage.models import (
    AuthType,
    NotificationType,
    RoleType,
    SessionStatus,
    SupportRequestStatus,
    UserStatus,
    VerificationType,
)


def _later(**delta):
    return datetime.now(timezone.utc) + timedelta(**delta)


class TestUsers:
    def test_email_is_normalized_and_unique(self, memory_store):
        user = memory_store.create_user("  A@X.com ", AuthType.PASSWORD, "hash")

        assert user.email == "a@x.com"
        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.create_user("a@x.com", AuthType.GOOGLE)
        assert exc_info.value.constraint == "user_email"

    def test_update_rejects_unknown_fields(self, memory_store):
        user = memory_store.create_user("a@x.com", AuthType.PASSWORD, "hash")

        with pytest.raises(ValueError):
            memory_store.update_user(user.id, password_hash="sneaky")

    def test_update_email_collision(self, memory_store):
        memory_store.create_user("a@x.com", AuthType.PASSWORD, "hash")
        other = memory_store.create_user("b@x.com", AuthType.PASSWORD, "hash")

        with pytest.raises(ConstraintViolation):
            memory_store.update_user(other.id, email="a@x.com")

    def test_deleted_users_hidden_from_email_lookup(self, memory_store):
        user = memory_store.create_user("a@x.com", AuthType.PASSWORD, "hash")
        memory_store.update_user(user.id, status=UserStatus.DELETED)

        assert memory_store.get_user_by_email("a@x.com") is None
        assert memory_store.get_user(user.id).status is UserStatus.DELETED

    def test_returned_records_are_copies(self, memory_store):
        user = memory_store.create_user("a@x.com", AuthType.PASSWORD, "hash")
        user.email_verified = True

        assert memory_store.get_user(user.id).email_verified is False

    def test_update_missing_user(self, memory_store):
        with pytest.raises(RecordNotFound):
            memory_store.update_password("missing", "hash")


class TestSessions:
    def test_rotate_is_compare_and_swap(self, memory_store):
        user = memory_store.create_user("a@x.com", AuthType.PASSWORD, "hash")
        session = memory_store.replace_active_session(user.id, "h1", _later(days=1))

        assert memory_store.rotate_session(session.id, "h1", "h2", _later(days=1)) is not None
        assert memory_store.rotate_session(session.id, "h1", "h3", _later(days=1)) is None
        assert memory_store.get_active_session(user.id).refresh_token_hash == "h2"

    def test_transition_only_from_active(self, memory_store):
        user = memory_store.create_user("a@x.com", AuthType.PASSWORD, "hash")
        session = memory_store.replace_active_session(user.id, "h1", _later(days=1))

        ended = memory_store.transition_session(session.id, SessionStatus.EXPIRED)
        assert ended.status is SessionStatus.EXPIRED
        assert memory_store.transition_session(session.id, SessionStatus.LOGGED_OUT) is None

    def test_session_requires_user(self, memory_store):
        with pytest.raises(RecordNotFound):
            memory_store.replace_active_session("missing", "h1", _later(days=1))


class TestVerificationEntries:
    def test_consume_once(self, memory_store):
        user = memory_store.create_user("a@x.com", AuthType.PASSWORD, "hash")
        entry = memory_store.replace_verification_entry(
            user.id, VerificationType.RESET_PASSWORD, "uid-1", "hash-1"
        )

        assert memory_store.consume_verification_entry(entry.id) is True
        assert memory_store.consume_verification_entry(entry.id) is False

    def test_uid_collision(self, memory_store):
        a = memory_store.create_user("a@x.com", AuthType.PASSWORD, "hash")
        b = memory_store.create_user("b@x.com", AuthType.PASSWORD, "hash")
        memory_store.replace_verification_entry(a.id, VerificationType.RESET_PASSWORD, "uid-1", "h")

        with pytest.raises(ConstraintViolation):
            memory_store.replace_verification_entry(b.id, VerificationType.RESET_PASSWORD, "uid-1", "h")


class TestNotifications:
    def test_list_is_newest_first_and_paged(self, memory_store):
        sender = memory_store.create_user("s@x.com", AuthType.PASSWORD, "hash")
        receiver = memory_store.create_user("r@x.com", AuthType.PASSWORD, "hash")
        created = [
            memory_store.create_notification(
                sender.id, receiver.id, f"m{i}", NotificationType.ADDED_TO_FAVORITES
            )
            for i in range(3)
        ]
        for i, notification in enumerate(created):
            memory_store.notifications[notification.id].created_at = _later(seconds=i)

        page = memory_store.list_notifications(receiver.id, offset=1, limit=1)
        assert [n.message for n in page] == ["m1"]
        assert memory_store.list_notifications(sender.id) == []

    def test_unread_filter(self, memory_store):
        sender = memory_store.create_user("s@x.com", AuthType.PASSWORD, "hash")
        receiver = memory_store.create_user("r@x.com", AuthType.PASSWORD, "hash")
        first = memory_store.create_notification(
            sender.id, receiver.id, "one", NotificationType.COLLABORATION_REQUEST
        )
        memory_store.create_notification(
            sender.id, receiver.id, "two", NotificationType.COLLABORATION_REQUEST
        )

        assert memory_store.set_notification_read(first.id, receiver.id, True).read is True
        unread = memory_store.list_notifications(receiver.id, unread_only=True)
        assert [n.message for n in unread] == ["two"]

    def test_scoped_to_receiver(self, memory_store):
        sender = memory_store.create_user("s@x.com", AuthType.PASSWORD, "hash")
        receiver = memory_store.create_user("r@x.com", AuthType.PASSWORD, "hash")
        notification = memory_store.create_notification(
            sender.id, receiver.id, "hi", NotificationType.ADDED_TO_FAVORITES
        )

        assert memory_store.set_notification_read(notification.id, sender.id, True) is None
        assert memory_store.delete_notification(notification.id, sender.id) is False
        assert memory_store.delete_notification(notification.id, receiver.id) is True

    def test_requires_known_users(self, memory_store):
        sender = memory_store.create_user("s@x.com", AuthType.PASSWORD, "hash")

        with pytest.raises(RecordNotFound):
            memory_store.create_notification(
                sender.id, "missing", "hi", NotificationType.ADDED_TO_FAVORITES
            )


class TestSupportRequestsAndRoles:
    def test_support_request_ids_are_sequential(self, memory_store):
        first = memory_store.create_support_request("A@x.com", "Ann", "Lee", "Help", "body")
        second = memory_store.create_support_request("b@x.com", "Bo", "Ng", "Help", "body")

        assert (first.id, second.id) == (1, 2)
        assert first.email == "a@x.com"
        assert first.status is SupportRequestStatus.OPEN
        closed = memory_store.set_support_request_status(first.id, SupportRequestStatus.CLOSED)
        assert closed.status is SupportRequestStatus.CLOSED
        assert memory_store.set_support_request_status(99, SupportRequestStatus.CLOSED) is None

    def test_roles_are_unique_per_user(self, memory_store):
        user = memory_store.create_user("a@x.com", AuthType.PASSWORD, "hash")
        memory_store.add_user_role(user.id, RoleType.USER)

        with pytest.raises(ConstraintViolation):
            memory_store.add_user_role(user.id, RoleType.USER)
        with pytest.raises(RecordNotFound):
            memory_store.add_user_role("missing", RoleType.ADMIN)
        assert memory_store.list_user_roles(user.id) == [RoleType.USER]


class TestPersistence:
    def test_state_survives_restart(self, tmp_path):
        """Every record kind is reloaded from the JSON state file."""
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("a@x.com", AuthType.PASSWORD, "hash", email_verified=True)
        session = store.replace_active_session(user.id, "h1", _later(days=1))
        store.replace_verification_entry(user.id, VerificationType.EMAIL_VERIFICATION, "uid-1", "h")
        store.replace_login_code("a@x.com", "1234", _later(minutes=10))
        store.replace_phone_code(user.id, "+15555550100", "123456", _later(minutes=10))
        store.replace_device_token(user.id, "digest", _later(days=30))
        other = store.create_user("b@x.com", AuthType.PASSWORD, "hash")
        notification = store.create_notification(
            other.id, user.id, "hi", NotificationType.ADDED_TO_FAVORITES
        )
        request = store.create_support_request("c@x.com", "Cy", "Do", "Help", "body")
        store.add_user_role(user.id, RoleType.ADMIN)

        reloaded = MemoryStore(fs_root=str(tmp_path))

        restored = reloaded.get_user(user.id)
        assert restored.email == "a@x.com"
        assert restored.email_verified is True
        assert restored.auth_type is AuthType.PASSWORD
        assert reloaded.get_active_session(user.id).id == session.id
        assert reloaded.get_verification_entry("uid-1", VerificationType.EMAIL_VERIFICATION)
        assert reloaded.get_login_code("a@x.com", "1234")
        assert reloaded.get_phone_code(user.id).code == "123456"
        assert reloaded.get_device_token("digest").user_id == user.id
        assert reloaded.get_device_token("digest").expires_at.tzinfo is not None
        assert reloaded.list_notifications(user.id)[0].id == notification.id
        assert reloaded.get_support_request(request.id).subject == "Help"
        assert reloaded.list_user_roles(user.id) == [RoleType.ADMIN]
        # The next support request continues the sequence
        assert reloaded.create_support_request("d@x.com", "D", "E", "Hi", "b").id == request.id + 1
