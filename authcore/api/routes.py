from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import Optional, TypeVar
from uuid import UUID

from fastapi import APIRouter, Cookie, Depends, Header, Query, Response

from authcore.api.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    CredentialsRequest,
    EmailRequest,
    Envelope,
    NotificationPage,
    NotificationResponse,
    NotificationsRequest,
    ReadStatusRequest,
    RefreshRequest,
    RolesResponse,
    SendPhoneCodeRequest,
    SupportRequestCreate,
    SupportRequestResponse,
    SupportStatusRequest,
    TokenResponse,
    TrustedDeviceRequest,
    UidPasswordRequest,
    UserResponse,
    VerifyEmailRequest,
    VerifyLoginCodeRequest,
    VerifyPhoneRequest,
)
from authcore.config import Settings
from authcore.logging import get_logger, hash_identifier
from authcore.service.auth import AuthTokens
from authcore.service.errors import RateLimitedError, ResponseCode, ServiceError
from authcore.service.results import Result
from authcore.service.runtime import Runtime, check_rate_limit, get_runtime
from authcore.service.verification import VerificationPair
from authcore.storage.models import RoleType, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

T = TypeVar("T")

MOBILE_CLIENT = "mobile"
ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
CSRF_COOKIE = "csrf_token"
DEVICE_COOKIE = "device_token"


def _is_mobile(client_type: Optional[str]) -> bool:
    return (client_type or "").strip().lower() == MOBILE_CLIENT


def _result_or_raise(result: Result[T], event: str) -> T:
    """Return the value of a successful result, else raise for the error envelope.

    The result context is logged here and never leaves the server.
    """
    if result.ok:
        return result.value  # type: ignore[return-value]
    logger.info(event, response_code=int(result.code), code_name=result.code.name, **result.context)
    raise ServiceError(result.code)


def _parse_uid(raw: str) -> VerificationPair:
    pair = VerificationPair.parse(raw)
    if not pair:
        raise ServiceError(ResponseCode.INVALID_UID)
    return pair


async def _enforce_rate_limit(
    runtime: Runtime, key: str, limit: int, window_seconds: int = 60
) -> None:
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, limit=limit, remaining=remaining)
        raise RateLimitedError(retry_after=max(int(reset_seconds), 1))


def _seconds_until(expires_at: datetime) -> int:
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return max(int((expires_at - datetime.now(timezone.utc)).total_seconds()), 0)


def _apply_session_cookies(response: Response, tokens: AuthTokens, settings: Settings) -> None:
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=_seconds_until(tokens.access_token_expires_at),
        domain=settings.cookie_domain,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=_seconds_until(tokens.refresh_token_expires_at),
        domain=settings.cookie_domain,
        path="/",
    )
    # Readable by the browser so it can echo the value in X-CSRF-Token
    response.set_cookie(
        CSRF_COOKIE,
        secrets.token_urlsafe(32),
        httponly=False,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=_seconds_until(tokens.refresh_token_expires_at),
        domain=settings.cookie_domain,
        path="/",
    )


def _clear_session_cookies(response: Response, settings: Settings) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE, CSRF_COOKIE):
        response.delete_cookie(name, domain=settings.cookie_domain, path="/")


def _deliver_tokens(
    response: Response,
    tokens: AuthTokens,
    settings: Settings,
    *,
    mobile: bool,
    device_token: Optional[str] = None,
) -> TokenResponse:
    """Mobile clients get bearer tokens in the body; browsers get cookies."""
    if not mobile:
        _apply_session_cookies(response, tokens, settings)
    return TokenResponse.from_tokens(tokens, include_tokens=mobile, device_token=device_token)


def _ok(data=None) -> Envelope:
    if hasattr(data, "model_dump"):
        data = data.model_dump(by_alias=True, mode="json")
    return Envelope(status="ok", data=data)


async def get_current_user(
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None),
) -> User:
    """Resolve the caller from a bearer token or the access token cookie."""
    token = None
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() != "bearer" or not credentials.strip():
            raise ServiceError(ResponseCode.UNAUTHORIZED)
        token = credentials.strip()
    elif access_token:
        token = access_token
    if not token:
        raise ServiceError(ResponseCode.UNAUTHORIZED)
    runtime = get_runtime()
    result = await runtime.auth.authenticate_access_token(token)
    return _result_or_raise(result, "access_token_rejected")


def require_role(*roles: RoleType):
    """Dependency factory: the caller must hold at least one of ``roles``."""

    async def _require_role(user: User = Depends(get_current_user)) -> User:
        runtime = get_runtime()
        if not await runtime.roles.has_any_role(user.id, *roles):
            logger.info(
                "role_check_failed", user_id=user.id, required=[role.value for role in roles]
            )
            raise ServiceError(ResponseCode.FORBIDDEN)
        return user

    return _require_role


# registration and login


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: CredentialsRequest,
    response: Response,
    x_client_type: Optional[str] = Header(None),
):
    """Create an account, send the verification email and open a session."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{hash_identifier(body.email)}",
        runtime.settings.login_rate_limit_per_minute,
    )
    user = _result_or_raise(
        await runtime.auth.register(body.auth_type, body.email, body.password),
        "register_failed",
    )
    tokens = _result_or_raise(await runtime.auth.sign_token(user), "sign_token_failed")
    delivered = _deliver_tokens(
        response, tokens, runtime.settings, mobile=_is_mobile(x_client_type)
    )
    return _ok(AuthResponse(user=UserResponse.from_user(user), tokens=delivered))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: CredentialsRequest,
    response: Response,
    x_client_type: Optional[str] = Header(None),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{hash_identifier(body.email)}",
        runtime.settings.login_rate_limit_per_minute,
    )
    user = _result_or_raise(
        await runtime.auth.login(body.auth_type, body.email, body.password),
        "login_failed",
    )
    tokens = _result_or_raise(await runtime.auth.sign_token(user), "sign_token_failed")
    delivered = _deliver_tokens(
        response, tokens, runtime.settings, mobile=_is_mobile(x_client_type)
    )
    return _ok(AuthResponse(user=UserResponse.from_user(user), tokens=delivered))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, user: User = Depends(get_current_user)):
    runtime = get_runtime()
    _result_or_raise(await runtime.auth.logout(user.id), "logout_failed")
    _clear_session_cookies(response, runtime.settings)
    return _ok()


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    response: Response,
    body: Optional[RefreshRequest] = None,
    refresh_token: Optional[str] = Cookie(None),
    refresh_token_header: Optional[str] = Header(None, alias="Refresh-Token"),
    x_client_type: Optional[str] = Header(None),
):
    """Rotate the refresh token; the presented token is single use."""
    token = refresh_token or refresh_token_header or (body.refresh_token if body else None)
    if not token:
        raise ServiceError(ResponseCode.UNAUTHORIZED)
    runtime = get_runtime()
    tokens = _result_or_raise(await runtime.auth.refresh_token(token), "refresh_failed")
    delivered = _deliver_tokens(
        response, tokens, runtime.settings, mobile=_is_mobile(x_client_type)
    )
    return _ok(delivered)


# passwords


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: EmailRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{hash_identifier(body.email)}",
        runtime.settings.reset_rate_limit_per_minute,
    )
    _result_or_raise(
        await runtime.auth.send_forgot_password_email(body.email), "forgot_password_failed"
    )
    return _ok()


@router.post("/auth/password/setNew/request", response_model=Envelope, tags=["auth"])
async def request_set_new_password(body: EmailRequest):
    """Email a link for accounts that have never had a password."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{hash_identifier(body.email)}",
        runtime.settings.reset_rate_limit_per_minute,
    )
    _result_or_raise(
        await runtime.auth.send_set_password_email(body.email), "set_password_email_failed"
    )
    return _ok()


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: UidPasswordRequest):
    runtime = get_runtime()
    pair = _parse_uid(body.uid)
    await _enforce_rate_limit(
        runtime, f"uid:{pair.uid}", runtime.settings.verification_rate_limit_per_minute
    )
    _result_or_raise(
        await runtime.auth.reset_password(pair.uid, pair.hash_uid, body.password),
        "reset_password_failed",
    )
    return _ok()


@router.post("/auth/password/setNew", response_model=Envelope, tags=["auth"])
async def set_new_password(body: UidPasswordRequest):
    runtime = get_runtime()
    pair = _parse_uid(body.uid)
    await _enforce_rate_limit(
        runtime, f"uid:{pair.uid}", runtime.settings.verification_rate_limit_per_minute
    )
    _result_or_raise(
        await runtime.auth.set_new_password(pair.uid, pair.hash_uid, body.password),
        "set_new_password_failed",
    )
    return _ok()


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(body: ChangePasswordRequest, user: User = Depends(get_current_user)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"change_password:{user.id}", runtime.settings.login_rate_limit_per_minute
    )
    _result_or_raise(
        await runtime.auth.change_password(user.id, body.current_password, body.new_password),
        "change_password_failed",
    )
    return _ok()


# passwordless login


@router.post("/auth/resendLoginCode", response_model=Envelope, tags=["auth"])
async def resend_login_code(body: EmailRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login_code:{hash_identifier(body.email)}",
        runtime.settings.verification_rate_limit_per_minute,
    )
    _result_or_raise(await runtime.auth.resend_login_code(body.email), "resend_login_code_failed")
    return _ok()


@router.post("/auth/verifyLoginCode", response_model=Envelope, tags=["auth"])
async def verify_login_code(
    body: VerifyLoginCodeRequest,
    response: Response,
    x_client_type: Optional[str] = Header(None),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login_code_verify:{hash_identifier(body.email)}",
        runtime.settings.verification_rate_limit_per_minute,
    )
    device_token = secrets.token_hex(32) if body.dont_ask_on_this_device else None
    tokens = _result_or_raise(
        await runtime.auth.verify_login_code(
            body.login_code,
            body.email,
            dont_ask_on_this_device=body.dont_ask_on_this_device,
            device_token=device_token,
        ),
        "verify_login_code_failed",
    )
    mobile = _is_mobile(x_client_type)
    delivered = _deliver_tokens(
        response, tokens, runtime.settings, mobile=mobile, device_token=device_token
    )
    if device_token and not mobile:
        response.set_cookie(
            DEVICE_COOKIE,
            device_token,
            httponly=True,
            secure=runtime.settings.cookie_secure,
            samesite="lax",
            max_age=runtime.settings.device_token_ttl_days * 86400,
            domain=runtime.settings.cookie_domain,
            path="/",
        )
    return _ok(delivered)


@router.post("/auth/trusted-device", response_model=Envelope, tags=["auth"])
async def trusted_device_login(
    body: TrustedDeviceRequest,
    response: Response,
    device_token: Optional[str] = Cookie(None),
    x_client_type: Optional[str] = Header(None),
):
    """Sign in from a remembered device without a login code."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{hash_identifier(body.email)}",
        runtime.settings.login_rate_limit_per_minute,
    )
    token = body.device_token or device_token
    if not token:
        raise ServiceError(ResponseCode.INVALID_TOKEN)
    user = _result_or_raise(
        await runtime.auth.authenticate_device(body.email, token), "trusted_device_rejected"
    )
    tokens = _result_or_raise(await runtime.auth.sign_token(user), "sign_token_failed")
    delivered = _deliver_tokens(
        response, tokens, runtime.settings, mobile=_is_mobile(x_client_type)
    )
    return _ok(AuthResponse(user=UserResponse.from_user(user), tokens=delivered))


# email and phone verification


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest):
    runtime = get_runtime()
    pair = _parse_uid(body.uid)
    await _enforce_rate_limit(
        runtime, f"uid:{pair.uid}", runtime.settings.verification_rate_limit_per_minute
    )
    user = _result_or_raise(
        await runtime.auth.verify_email(pair.uid, pair.hash_uid), "verify_email_failed"
    )
    return _ok(UserResponse.from_user(user))


@router.post("/auth/resend-verification-email", response_model=Envelope, tags=["auth"])
async def resend_verification_email(body: EmailRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify_email:{hash_identifier(body.email)}",
        runtime.settings.verification_rate_limit_per_minute,
    )
    _result_or_raise(
        await runtime.auth.resend_verification_email(body.email),
        "resend_verification_email_failed",
    )
    return _ok()


@router.post("/auth/send-phone-verification", response_model=Envelope, tags=["auth"])
async def send_phone_verification(
    body: SendPhoneCodeRequest, user: User = Depends(get_current_user)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"phone_code:{user.id}", runtime.settings.verification_rate_limit_per_minute
    )
    _result_or_raise(
        await runtime.auth.send_phone_verification_code(body.phone_number, user.id),
        "send_phone_code_failed",
    )
    return _ok()


@router.post("/auth/verify-phone", response_model=Envelope, tags=["auth"])
async def verify_phone(body: VerifyPhoneRequest, user: User = Depends(get_current_user)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"phone_code_verify:{user.id}",
        runtime.settings.verification_rate_limit_per_minute,
    )
    updated = _result_or_raise(
        await runtime.auth.verify_phone_code(user.id, body.code), "verify_phone_failed"
    )
    return _ok(UserResponse.from_user(updated))


# profile


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_me(user: User = Depends(get_current_user)):
    return _ok(UserResponse.from_user(user))


@router.patch("/users/me/notifications", response_model=Envelope, tags=["users"])
async def update_notifications(
    body: NotificationsRequest, user: User = Depends(get_current_user)
):
    runtime = get_runtime()
    updated = _result_or_raise(
        await runtime.auth.update_notifications(user.id, body.enabled),
        "update_notifications_failed",
    )
    return _ok(UserResponse.from_user(updated))


@router.delete("/users/me", response_model=Envelope, tags=["users"])
async def delete_me(response: Response, user: User = Depends(get_current_user)):
    runtime = get_runtime()
    _result_or_raise(await runtime.auth.delete_user(user.id), "delete_user_failed")
    _clear_session_cookies(response, runtime.settings)
    return _ok()


@router.get("/users/me/roles", response_model=Envelope, tags=["users"])
async def get_my_roles(user: User = Depends(get_current_user)):
    runtime = get_runtime()
    roles = _result_or_raise(await runtime.roles.get_roles_for_user(user.id), "get_roles_failed")
    return _ok(RolesResponse(roles=roles))


# notifications


@router.get("/notifications", response_model=Envelope, tags=["notifications"])
async def get_notifications(
    unread: bool = False,
    number_of_fetched: int = Query(0, alias="numberOfFetched", ge=0),
    user: User = Depends(get_current_user),
):
    """One page of the caller's notifications, newest first."""
    runtime = get_runtime()
    notifications = _result_or_raise(
        await runtime.notifications.get_notifications(
            user.id, unread=unread, number_of_fetched=number_of_fetched
        ),
        "get_notifications_failed",
    )
    return _ok(
        NotificationPage(
            notifications=[NotificationResponse.from_notification(n) for n in notifications]
        )
    )


@router.put("/notifications/{notification_id}", response_model=Envelope, tags=["notifications"])
async def set_notification_read_status(
    notification_id: UUID,
    body: ReadStatusRequest,
    user: User = Depends(get_current_user),
):
    runtime = get_runtime()
    updated = _result_or_raise(
        await runtime.notifications.set_read_status(user.id, str(notification_id), body.read),
        "set_notification_read_failed",
    )
    return _ok(NotificationResponse.from_notification(updated))


@router.delete(
    "/notifications/{notification_id}", response_model=Envelope, tags=["notifications"]
)
async def delete_notification(notification_id: UUID, user: User = Depends(get_current_user)):
    runtime = get_runtime()
    _result_or_raise(
        await runtime.notifications.delete_notification(user.id, str(notification_id)),
        "delete_notification_failed",
    )
    return _ok()


# support requests


@router.post("/support-requests", response_model=Envelope, status_code=201, tags=["support"])
async def create_support_request(body: SupportRequestCreate):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"support:{hash_identifier(body.email)}",
        runtime.settings.verification_rate_limit_per_minute,
    )
    request = _result_or_raise(
        await runtime.support.create_support_request(
            body.first_name, body.last_name, body.email, body.subject, body.message
        ),
        "create_support_request_failed",
    )
    return _ok(SupportRequestResponse.from_request(request))


@router.put(
    "/support-requests/updateStatus/{support_request_id}",
    response_model=Envelope,
    tags=["support"],
)
async def update_support_request_status(
    support_request_id: int,
    body: SupportStatusRequest,
    user: User = Depends(require_role(RoleType.ADMIN)),
):
    runtime = get_runtime()
    updated = _result_or_raise(
        await runtime.support.update_support_request_status(support_request_id, body.status),
        "update_support_request_status_failed",
    )
    return _ok(SupportRequestResponse.from_request(updated))
