from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from authcore.logging import get_logger

logger = get_logger(__name__)


class TokenPurpose(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class DecodedToken:
    subject: str
    purpose: TokenPurpose
    expires_at: datetime
    jti: Optional[str] = None
    session_id: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class TokenSigner:
    """HS256 JWT issuer with independent access and refresh keys.

    ``verify`` checks structure, algorithm, signature, issuer, audience and
    purpose only. Expiry is reported through ``DecodedToken.expires_at`` and
    left to the caller, because refresh rotation needs the subject of an
    expired token to report the right outcome.
    """

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(minutes=30),
        refresh_ttl: timedelta = timedelta(days=1),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh tokens require distinct secrets")
        self._secrets = {
            TokenPurpose.ACCESS: access_secret.encode(),
            TokenPurpose.REFRESH: refresh_secret.encode(),
        }
        self._ttls = {
            TokenPurpose.ACCESS: access_ttl,
            TokenPurpose.REFRESH: refresh_ttl,
        }
        self.issuer = issuer
        self.audience = audience
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def default_ttl(self, purpose: TokenPurpose) -> timedelta:
        return self._ttls[TokenPurpose(purpose)]

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, purpose: TokenPurpose) -> str:
        digest = hmac.new(
            self._secrets[purpose], signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def issue(
        self,
        subject: str,
        purpose: TokenPurpose,
        ttl: Optional[timedelta] = None,
        *,
        session_id: Optional[str] = None,
    ) -> IssuedToken:
        purpose = TokenPurpose(purpose)
        now = self._clock()
        expires_at = now + (ttl if ttl is not None else self._ttls[purpose])
        exp = int(expires_at.timestamp())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "token_type": purpose.value,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": exp,
        }
        if session_id:
            payload["sid"] = session_id
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._sign(signing_input, purpose)}"
        return IssuedToken(token=token, expires_at=datetime.fromtimestamp(exp, timezone.utc))

    def verify(self, token: str, purpose: TokenPurpose) -> Optional[DecodedToken]:
        """Decode ``token`` for ``purpose`` or return None when it is not trustworthy."""
        purpose = TokenPurpose(purpose)
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Only HS256 is accepted to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", purpose)
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload: Any = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return None
        if payload.get("token_type") != purpose.value:
            return None
        subject = payload.get("sub")
        if not subject or not isinstance(subject, str):
            return None
        try:
            expires_at = datetime.fromtimestamp(float(payload["exp"]), timezone.utc)
        except (KeyError, TypeError, ValueError, OverflowError, OSError):
            return None
        sid = payload.get("sid")
        return DecodedToken(
            subject=subject,
            purpose=purpose,
            expires_at=expires_at,
            jti=payload.get("jti"),
            session_id=sid if isinstance(sid, str) else None,
        )
