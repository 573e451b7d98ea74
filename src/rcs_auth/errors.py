"""Exception hierarchy shared by the session core and its collaborators."""

from __future__ import annotations

from datetime import datetime


class RcsAuthError(Exception):
    """Base class for every error raised by this package."""


class NotFound(RcsAuthError):
    """No session or pending code exists for the phone number."""


class Expired(RcsAuthError):
    """The session or code is past its deadline."""


class RateLimited(RcsAuthError):
    """The attempt budget for the phone number is exhausted."""

    def __init__(self, phone: str, reset_at: datetime | None) -> None:
        super().__init__("Too many authentication attempts")
        self.phone = phone
        self.reset_at = reset_at

    def minutes_remaining(self, now: datetime) -> int:
        """Whole minutes until the window reopens (at least 1)."""
        if self.reset_at is None:
            return 1
        seconds = (self.reset_at - now).total_seconds()
        return max(1, -(-int(seconds) // 60))


class ChannelDowngraded(RcsAuthError):
    """The session left the trusted channel while trust was required."""


class InvalidCredential(RcsAuthError):
    """The identity provider rejected a code, link or token."""


class StoreUnavailable(RcsAuthError):
    """The backing store failed transiently."""


class UpstreamUnavailable(RcsAuthError):
    """The transport or identity provider failed transiently."""


class PermanentDeliveryError(RcsAuthError):
    """The transport refused the destination; retrying cannot help."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code
