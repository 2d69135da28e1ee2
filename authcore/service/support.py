from __future__ import annotations

from typing import Optional

from authcore.logging import get_logger, hash_identifier
from authcore.service.auth import EmailSender
from authcore.service.email import EmailTemplate
from authcore.service.errors import ResponseCode
from authcore.service.results import Result
from authcore.storage.common import AuthStore
from authcore.storage.models import SupportRequest, SupportRequestStatus

logger = get_logger(__name__)


class SupportRequestService:
    """Contact-form requests.

    The request is stored before any email goes out. The copy to the support
    inbox and the confirmation to the requester are best effort: a failed send
    is logged and the stored request still counts as received.
    """

    def __init__(
        self,
        store: AuthStore,
        email: EmailSender,
        *,
        support_address: Optional[str] = None,
        support_phone: Optional[str] = None,
    ) -> None:
        self.store = store
        self.email = email
        self.support_address = support_address
        self.support_phone = support_phone

    async def create_support_request(
        self,
        first_name: str,
        last_name: str,
        email: str,
        subject: str,
        message: str,
    ) -> Result[SupportRequest]:
        request = self.store.create_support_request(email, first_name, last_name, subject, message)
        logger.info(
            "support_request_created",
            support_request_id=request.id,
            email_hash=hash_identifier(request.email),
        )
        data = {
            "request_id": request.id,
            "first_name": first_name,
            "last_name": last_name,
            "email": request.email,
            "subject": subject,
            "message": message,
            "support_phone": self.support_phone or "",
        }
        if self.support_address:
            forwarded = await self.email.send(
                EmailTemplate.CONTACT_SUPPORT,
                self.support_address,
                f"Support request #{request.id}: {subject}",
                data,
            )
            if not forwarded.ok:
                logger.warning("support_inbox_email_failed", support_request_id=request.id)
        else:
            logger.warning("support_inbox_not_configured", support_request_id=request.id)
        confirmed = await self.email.send(
            EmailTemplate.CONTACT_SUPPORT_SUCCESS,
            request.email,
            "Thank you for your contact",
            data,
        )
        if not confirmed.ok:
            logger.warning("support_confirmation_email_failed", support_request_id=request.id)
        return Result.success(request)

    async def update_support_request_status(
        self, request_id: int, status: SupportRequestStatus
    ) -> Result[SupportRequest]:
        updated = self.store.set_support_request_status(request_id, SupportRequestStatus(status))
        if not updated:
            return Result.failure(
                ResponseCode.SUPPORT_REQUEST_NOT_FOUND, support_request_id=request_id
            )
        logger.info(
            "support_request_status_updated",
            support_request_id=request_id,
            status=updated.status.value,
        )
        return Result.success(updated)
