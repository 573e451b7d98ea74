"""One-time-code store backed by the session row."""

from __future__ import annotations

import enum
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta

from rcs_auth.config import settings
from rcs_auth.database.repository import SessionStore
from rcs_auth.services.phone import mask_phone

logger = logging.getLogger(__name__)

OTP_LENGTH = 6


class CodeFailure(str, enum.Enum):
    NOT_FOUND = "NotFound"
    EXPIRED = "Expired"
    MISMATCH = "Mismatch"


@dataclass(frozen=True)
class CodeVerification:
    valid: bool
    reason: CodeFailure | None = None


def generate_code(length: int = OTP_LENGTH) -> str:
    """Generate a numeric code using the OS CSPRNG."""
    return "".join(secrets.choice("0123456789") for _ in range(length))


class OTPStore:
    """Holds at most one pending code per phone number.

    Each row carries ``pending_code`` / ``code_expires_at``; issuing a
    new code overwrites the old one.  A code is consumed by a
    compare-and-set on the stored value, so two concurrent verifications
    of the same code cannot both succeed.
    """

    def __init__(self, store: SessionStore) -> None:
        self._store = store

    async def issue(self, phone: str, code: str, ttl_minutes: int | None = None) -> None:
        ttl = ttl_minutes if ttl_minutes is not None else settings.otp_ttl_minutes
        expires_at = self._store.now() + timedelta(minutes=ttl)
        await self._store.store_code(phone, code, expires_at)
        logger.info("One-time code issued for %s (valid %d min)", mask_phone(phone), ttl)

    async def verify(self, phone: str, candidate: str) -> CodeVerification:
        """Check *candidate* against the pending code and consume it on match."""
        stored, expires_at = await self._store.read_code(phone)
        if stored is None or expires_at is None:
            return CodeVerification(valid=False, reason=CodeFailure.NOT_FOUND)

        if self._store.now() > expires_at:
            await self._store.consume_code(phone, stored)
            logger.info("One-time code expired for %s", mask_phone(phone))
            return CodeVerification(valid=False, reason=CodeFailure.EXPIRED)

        if not hmac.compare_digest(stored.encode(), candidate.strip().encode()):
            logger.info("One-time code mismatch for %s", mask_phone(phone))
            return CodeVerification(valid=False, reason=CodeFailure.MISMATCH)

        if not await self._store.consume_code(phone, stored):
            # Another request consumed the same code between read and clear.
            return CodeVerification(valid=False, reason=CodeFailure.NOT_FOUND)

        logger.info("One-time code verified for %s", mask_phone(phone))
        return CodeVerification(valid=True)
