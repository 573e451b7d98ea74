"""Rate limiter — per-phone authentication attempt budget."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from rcs_auth.config import settings
from rcs_auth.database.repository import SessionStore
from rcs_auth.services.phone import mask_phone

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    limited: bool
    remaining_attempts: int
    reset_at: datetime | None = None


class RateLimiter:
    """Counts authentication attempts inside a rolling window.

    The window is measured from the most recent recorded attempt: once
    more than ``window`` has passed since ``last_attempt_at`` the counter
    starts over.  Counting happens in the store as one conditional
    update, never from a cached copy of the row.
    """

    def __init__(
        self,
        store: SessionStore,
        max_attempts: int | None = None,
        window: timedelta | None = None,
    ) -> None:
        self._store = store
        self.max_attempts = max_attempts or settings.rate_limit_max_attempts
        self.window = window or timedelta(minutes=settings.rate_limit_window_minutes)

    async def check_and_record_attempt(self, phone: str) -> RateLimitResult:
        outcome = await self._store.record_attempt(phone, self.max_attempts, self.window)
        row = outcome.session
        remaining = max(0, self.max_attempts - row.auth_attempts)

        if outcome.recorded:
            logger.debug("Attempt %d/%d recorded for %s", row.auth_attempts, self.max_attempts, mask_phone(phone))
            return RateLimitResult(limited=False, remaining_attempts=remaining)

        reset_at = row.last_attempt_at + self.window if row.last_attempt_at else None
        logger.warning("Rate limit reached for %s until %s", mask_phone(phone), reset_at)
        return RateLimitResult(limited=True, remaining_attempts=0, reset_at=reset_at)
