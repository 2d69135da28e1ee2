from __future__ import annotations

import re
from typing import Optional

import httpx

from authcore.logging import get_logger, hash_identifier
from authcore.service.errors import ResponseCode
from authcore.service.results import Result

logger = get_logger(__name__)

_NON_DIGITS = re.compile(r"\D")


def format_phone_number(phone: str) -> str:
    """Normalize to E.164, assuming North American numbers when no country code is given."""
    digits = _NON_DIGITS.sub("", phone or "")
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if phone.strip().startswith("+"):
        return f"+{digits}"
    return f"+1{digits}"


class SmsService:
    """Transactional SMS through an HTTP gateway.

    The gateway receives ``{"to", "from", "body"}`` JSON with a bearer API
    key. Without a gateway URL messages are logged instead when ``dev_mode``
    is set, and refused otherwise.
    """

    def __init__(
        self,
        *,
        gateway_url: Optional[str] = None,
        api_key: Optional[str] = None,
        from_number: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        dev_mode: bool = False,
    ) -> None:
        self.gateway_url = gateway_url
        self.api_key = api_key
        self.from_number = from_number
        self.timeout = timeout
        self._transport = transport
        self.dev_mode = dev_mode

    @property
    def is_configured(self) -> bool:
        return bool(self.gateway_url)

    async def send(self, to: str, message: str) -> Result[None]:
        destination = format_phone_number(to)
        if not self.is_configured:
            if not self.dev_mode:
                logger.error("sms_not_configured", phone_hash=hash_identifier(destination))
                return Result.failure(ResponseCode.FAILED_DEPENDENCY, reason="sms_not_configured")
            logger.info(
                "sms_dev_mode",
                phone_hash=hash_identifier(destination),
                body_preview=message[:160],
            )
            return Result.success()

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        payload = {"to": destination, "from": self.from_number, "body": message}
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(self.gateway_url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "sms_gateway_rejected",
                phone_hash=hash_identifier(destination),
                status_code=exc.response.status_code,
            )
            return Result.failure(ResponseCode.FAILED_DEPENDENCY)
        except httpx.HTTPError as exc:
            logger.error(
                "sms_send_failed",
                phone_hash=hash_identifier(destination),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return Result.failure(ResponseCode.FAILED_DEPENDENCY)
        logger.info("sms_sent", phone_hash=hash_identifier(destination))
        return Result.success()
