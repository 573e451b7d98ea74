"""Read-through cache of recently seen sessions."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from rcs_auth.models.session import SmsSession

logger = logging.getLogger(__name__)


class SessionCache:
    """In-process mirror of authenticated session rows.

    Only :meth:`SessionManager.get_session` reads from it, and only for
    rows whose expiry is still ahead.  Every write path in this process
    invalidates the phone's entry; entries also age out after ``ttl`` so a
    revocation written by another worker is seen within that bound.  The
    code, attempt and channel decisions always go to the store.
    """

    def __init__(self, max_entries: int = 10_000, ttl: timedelta = timedelta(seconds=30)) -> None:
        self._entries: dict[str, tuple[SmsSession, datetime]] = {}
        self._max_entries = max_entries
        self._ttl = ttl

    def get(self, phone: str, now: datetime) -> SmsSession | None:
        entry = self._entries.get(phone)
        if entry is None:
            return None
        cached, stored_at = entry
        if now - stored_at >= self._ttl or not cached.is_authenticated(now):
            self._entries.pop(phone, None)
            return None
        return cached

    def put(self, session: SmsSession, now: datetime) -> None:
        if not session.is_authenticated(now) or session.channel_downgrade_detected:
            self._entries.pop(session.phone_number, None)
            return
        if len(self._entries) >= self._max_entries and session.phone_number not in self._entries:
            # Oldest insertion goes first; dicts keep insertion order.
            self._entries.pop(next(iter(self._entries)))
        self._entries[session.phone_number] = (session, now)

    def invalidate(self, phone: str) -> None:
        self._entries.pop(phone, None)

    def clear(self) -> None:
        self._entries.clear()
        logger.debug("Session cache cleared")

    def __len__(self) -> int:
        return len(self._entries)
