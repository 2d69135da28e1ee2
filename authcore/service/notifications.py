from __future__ import annotations

from typing import List

from authcore.logging import get_logger
from authcore.service.auth import EmailSender
from authcore.service.email import EmailTemplate
from authcore.service.errors import ResponseCode
from authcore.service.results import Result
from authcore.service.users import UserDirectory
from authcore.storage.common import AuthStore
from authcore.storage.errors import RecordNotFound
from authcore.storage.models import Notification, NotificationType

logger = get_logger(__name__)

NOTIFICATION_PAGE_SIZE = 20


class NotificationService:
    """In-app notifications between users, mirrored to email when the receiver opts in.

    Every read and write is scoped to the receiver, so one user can never
    see or change another user's notifications.
    """

    def __init__(
        self,
        store: AuthStore,
        users: UserDirectory,
        email: EmailSender,
        *,
        page_size: int = NOTIFICATION_PAGE_SIZE,
    ) -> None:
        self.store = store
        self.users = users
        self.email = email
        self.page_size = page_size

    async def get_notifications(
        self, user_id: str, *, unread: bool = False, number_of_fetched: int = 0
    ) -> Result[List[Notification]]:
        """Next page of notifications, newest first, skipping ``number_of_fetched``."""
        if number_of_fetched < 0:
            return Result.failure(ResponseCode.INVALID_INPUT, number_of_fetched=number_of_fetched)
        notifications = self.store.list_notifications(
            user_id, unread_only=unread, offset=number_of_fetched, limit=self.page_size
        )
        return Result.success(notifications)

    async def set_read_status(
        self, user_id: str, notification_id: str, read: bool
    ) -> Result[Notification]:
        updated = self.store.set_notification_read(notification_id, user_id, bool(read))
        if not updated:
            return Result.failure(
                ResponseCode.NOTIFICATION_NOT_FOUND,
                user_id=user_id,
                notification_id=notification_id,
            )
        return Result.success(updated)

    async def create_notification(
        self,
        sender_id: str,
        receiver_id: str,
        message: str,
        notification_type: NotificationType,
    ) -> Result[Notification]:
        receiver = self.users.get_user(receiver_id)
        if not receiver:
            return Result.failure(ResponseCode.USER_NOT_FOUND, user_id=receiver_id)
        try:
            notification = self.store.create_notification(
                sender_id, receiver_id, message, NotificationType(notification_type)
            )
        except RecordNotFound:
            return Result.failure(ResponseCode.USER_NOT_FOUND, user_id=sender_id)
        logger.info(
            "notification_created",
            notification_id=notification.id,
            receiver_id=receiver_id,
            notification_type=notification.notification_type.value,
        )
        if not receiver.notifications:
            return Result.success(notification)
        sent = await self.email.send(
            EmailTemplate.NOTIFICATION,
            receiver.email,
            notification.notification_type.value,
            {
                "title": notification.notification_type.value,
                "content": message,
                "link": self.email.link("notifications"),
            },
        )
        if not sent.ok:
            # The notification stays stored; only the email copy is missing
            return Result.failure(
                sent.code, notification_id=notification.id, receiver_id=receiver_id
            )
        return Result.success(notification)

    async def delete_notification(self, user_id: str, notification_id: str) -> Result[None]:
        if not self.store.delete_notification(notification_id, user_id):
            return Result.failure(
                ResponseCode.NOTIFICATION_NOT_FOUND,
                user_id=user_id,
                notification_id=notification_id,
            )
        logger.info("notification_deleted", notification_id=notification_id, user_id=user_id)
        return Result.success()
