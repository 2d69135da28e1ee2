from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcore.logging import get_logger

logger = get_logger(__name__)


class CredentialHasher:
    """Salted one-way hashing for passwords, refresh tokens and verification secrets.

    Backed by argon2id; each ``hash`` call embeds a fresh salt in its output and
    ``verify`` delegates to argon2's constant-time comparison.
    """

    algorithm = "argon2id"

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, secret: str, hashed: str | None) -> bool:
        """True iff ``secret`` produced ``hashed``. Malformed hashes yield False."""
        if not hashed or secret is None:
            return False
        try:
            return self._hasher.verify(hashed, secret)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("credential_hash_malformed", algorithm=self.algorithm)
            return False
