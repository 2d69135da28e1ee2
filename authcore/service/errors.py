from __future__ import annotations

from enum import IntEnum
from typing import Optional


class ResponseCode(IntEnum):
    """Stable numeric outcome codes returned by every auth operation.

    The leading three digits are the HTTP status the code maps to at the
    transport boundary, e.g. ``40102`` is delivered as HTTP 401.
    """

    OK = 20000
    INVALID_INPUT = 40001
    WRONG_PASSWORD = 40002
    UNAUTHORIZED = 40100
    INVALID_TOKEN = 40101
    SESSION_EXPIRED = 40102
    INVALID_UID = 40104
    FORBIDDEN = 40300
    USER_NOT_FOUND = 40401
    VERIFICATION_UID_NOT_FOUND = 40402
    USER_SESSION_NOT_FOUND = 40403
    NOTIFICATION_NOT_FOUND = 40404
    SUPPORT_REQUEST_NOT_FOUND = 40405
    ROLE_NOT_FOUND = 40406
    CONFLICT = 40900
    USER_ALREADY_REGISTERED = 40901
    USER_ALREADY_ONBOARDED = 40902
    FAILED_DEPENDENCY = 42400
    TOO_MANY_REQUESTS = 42900
    SERVER_ERROR = 50000

    @property
    def http_status(self) -> int:
        return http_status_for(self)

    @property
    def message(self) -> str:
        return RESPONSE_MESSAGES[self]


RESPONSE_MESSAGES: dict[ResponseCode, str] = {
    ResponseCode.OK: "OK",
    ResponseCode.INVALID_INPUT: "Please check your input",
    ResponseCode.WRONG_PASSWORD: "Incorrect password",
    ResponseCode.UNAUTHORIZED: "Unauthorized",
    ResponseCode.INVALID_TOKEN: "Invalid token",
    ResponseCode.SESSION_EXPIRED: "Session expired",
    ResponseCode.INVALID_UID: "Invalid or expired UID",
    ResponseCode.FORBIDDEN: "Forbidden",
    ResponseCode.USER_NOT_FOUND: "User not found",
    ResponseCode.VERIFICATION_UID_NOT_FOUND: "Verification UID not found",
    ResponseCode.USER_SESSION_NOT_FOUND: "User session not found",
    ResponseCode.NOTIFICATION_NOT_FOUND: "Notification not found",
    ResponseCode.SUPPORT_REQUEST_NOT_FOUND: "Support request not found",
    ResponseCode.ROLE_NOT_FOUND: "Role not found",
    ResponseCode.CONFLICT: "Conflict",
    ResponseCode.USER_ALREADY_REGISTERED: "User already registered",
    ResponseCode.USER_ALREADY_ONBOARDED: "User already onboarded",
    ResponseCode.FAILED_DEPENDENCY: "Failed dependency",
    ResponseCode.TOO_MANY_REQUESTS: "Too many requests",
    ResponseCode.SERVER_ERROR: "Internal server error",
}


def http_status_for(code: int) -> int:
    return int(code) // 100


class ServiceError(Exception):
    """Failed outcome raised at the HTTP boundary.

    Services never raise this for expected conditions; they return a failed
    ``Result``. Routes convert that result into a ``ServiceError`` and the
    registered exception handler renders it as the error envelope.
    """

    def __init__(
        self,
        code: ResponseCode,
        message: Optional[str] = None,
        *,
        detail: Optional[dict] = None,
    ) -> None:
        self.code = ResponseCode(code)
        self.message = message or self.code.message
        super().__init__(self.message)
        self.detail = detail or {}

    @property
    def status_code(self) -> int:
        return self.code.http_status

    @property
    def error_code(self) -> str:
        return self.code.name


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""

    def __init__(self, *, retry_after: int = 60, detail: Optional[dict] = None) -> None:
        super().__init__(ResponseCode.TOO_MANY_REQUESTS, detail=detail)
        self.retry_after = retry_after


__all__ = [
    "ResponseCode",
    "RESPONSE_MESSAGES",
    "http_status_for",
    "ServiceError",
    "RateLimitedError",
]
