"""Session manager — the façade the messaging dispatcher talks to."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from rcs_auth.config import settings
from rcs_auth.database.repository import SessionStore, SweepResult
from rcs_auth.errors import (
    ChannelDowngraded,
    Expired,
    InvalidCredential,
    NotFound,
    RateLimited,
    UpstreamUnavailable,
)
from rcs_auth.models.session import AuthMethod, ChannelType, SmsSession
from rcs_auth.services.channel_trust import ChannelTrustTracker, ChannelUpdate
from rcs_auth.services.identity_provider import IdentityProvider, TokenClaims
from rcs_auth.services.otp_store import CodeVerification, OTPStore
from rcs_auth.services.phone import mask_phone
from rcs_auth.services.rate_limiter import RateLimiter, RateLimitResult
from rcs_auth.services.session_cache import SessionCache

logger = logging.getLogger(__name__)


@dataclass
class UserContext:
    """Authorization attributes of the identity bound to a phone number."""

    user_id: str
    email: str | None
    phone_number: str
    org_id: str | None
    user_role: str | None
    session_expires_at: datetime | None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionStats:
    active_sessions: int
    by_method: dict[str, int]
    average_session_age: timedelta


@dataclass
class ChannelCapability:
    is_capable: bool
    last_known_channel: ChannelType
    days_since_last_update: int | None


class SessionManager:
    """Composes the store, rate limiter, code store and channel tracker.

    Every write goes to the store first and then invalidates the cache
    entry for that phone number.  Reads through :meth:`get_session` may
    be served from the cache; nothing that decides on codes, attempts or
    channel trust is.
    """

    def __init__(
        self,
        store: SessionStore,
        identity: IdentityProvider,
        cache: SessionCache | None = None,
        rate_limiter: RateLimiter | None = None,
        otp_store: OTPStore | None = None,
        tracker: ChannelTrustTracker | None = None,
    ) -> None:
        self._store = store
        self._identity = identity
        self._cache = (
            cache
            if cache is not None
            else SessionCache(ttl=timedelta(seconds=settings.session_cache_ttl_seconds))
        )
        self._rate_limiter = rate_limiter or RateLimiter(store)
        self._otp_store = otp_store or OTPStore(store)
        self._tracker = tracker or ChannelTrustTracker(store)

    @property
    def store(self) -> SessionStore:
        return self._store

    # ── Lookup ───────────────────────────────────────────

    async def get_session(self, phone: str) -> SmsSession | None:
        """Return the session for *phone*, or ``None`` if absent or expired.

        An expired session is invalidated on the way out rather than
        returned with stale credentials.
        """
        now = self._store.now()
        cached = self._cache.get(phone, now)
        if cached is not None:
            return cached

        session = await self._store.fetch(phone)
        if session is None:
            return None

        if session.is_expired(now):
            logger.info("Session for %s expired at %s", mask_phone(phone), session.expires_at)
            await self.invalidate_session(phone)
            return None

        self._cache.put(session, now)
        return session

    # ── Lifecycle ────────────────────────────────────────

    async def create_session(
        self,
        phone: str,
        email: str,
        user_id: str,
        token: str,
        method: AuthMethod = AuthMethod.MAGIC_LINK,
    ) -> SmsSession:
        """Promote *phone* to authenticated after a verified credential.

        Raises :class:`ChannelDowngraded` if the row was flagged; the user
        has to start a new authentication cycle first.
        """
        session = await self._store.upsert_authenticated(
            phone,
            email,
            user_id,
            token,
            method,
            default_duration_days=settings.session_duration_days,
            default_trust_required=settings.trust_required,
        )
        self._cache.invalidate(phone)
        if session is None:
            logger.warning("Refusing to authenticate downgraded session for %s", mask_phone(phone))
            raise ChannelDowngraded(f"Session for {mask_phone(phone)} is downgrade-flagged")

        logger.info(
            "Session created for %s via %s until %s",
            mask_phone(phone),
            method.value,
            session.expires_at,
        )
        return session

    async def upsert_pending_session(
        self,
        phone: str,
        email: str,
        method: AuthMethod = AuthMethod.MAGIC_LINK,
        trust_required: bool | None = None,
        duration_days: int | None = None,
        record_attempt: bool = True,
    ) -> SmsSession:
        """Start (or restart) an authentication cycle for *phone*."""
        session = await self._store.upsert_pending(
            phone,
            email,
            method,
            settings.trust_required if trust_required is None else trust_required,
            duration_days or settings.session_duration_days,
            record_attempt=record_attempt,
        )
        self._cache.invalidate(phone)
        logger.info("Pending %s session for %s", method.value, mask_phone(phone))
        return session

    async def invalidate_session(self, phone: str) -> None:
        """Drop the credentials held for *phone* (logout / expiry)."""
        self._cache.invalidate(phone)
        await self._store.clear_authentication(phone)
        logger.info("Session invalidated for %s", mask_phone(phone))

    async def refresh_session(self, phone: str) -> SmsSession | None:
        """Extend an authenticated session; ``None`` if there is none to extend."""
        session = await self._store.extend_expiry(phone)
        self._cache.invalidate(phone)
        if session is None:
            return None
        logger.info("Session for %s refreshed until %s", mask_phone(phone), session.expires_at)
        return session

    async def get_user_context(self, phone: str) -> UserContext | None:
        """Resolve organisation and role for the identity bound to *phone*.

        A token the provider rejects invalidates the local session.  When
        the provider cannot be reached the caller is treated as
        unauthenticated for this request and the session is left intact.
        """
        session = await self.get_session(phone)
        if session is None or not session.user_id or not session.session_token:
            return None
        if not session.is_authenticated(self._store.now()):
            return None

        try:
            claims = await self._identity.validate_token(session.session_token)
        except InvalidCredential:
            logger.warning("Identity provider rejected token for %s", mask_phone(phone))
            await self.invalidate_session(phone)
            return None
        except UpstreamUnavailable as exc:
            logger.warning("Could not validate token for %s: %s", mask_phone(phone), exc)
            return None

        return UserContext(
            user_id=claims.user_id,
            email=claims.email or session.email,
            phone_number=phone,
            org_id=claims.claim("org_id"),
            user_role=claims.claim("user_role"),
            session_expires_at=session.expires_at,
            metadata=dict(session.session_metadata or {}),
        )

    async def session_for_token(self, token: str) -> tuple[SmsSession, TokenClaims]:
        """Find the live session a bearer token belongs to.

        Raises :class:`InvalidCredential` if the provider rejects the
        token, :class:`NotFound` if no session holds it and
        :class:`Expired` once the session is past its deadline.
        """
        claims = await self._identity.validate_token(token)
        session = await self._store.fetch_by_token(claims.user_id, token)
        if session is None:
            raise NotFound("Session not found")
        if session.expires_at is None or session.is_expired(self._store.now()):
            raise Expired(f"Session for {mask_phone(session.phone_number)} has expired")
        return session, claims

    # ── Rate limiting and codes ──────────────────────────

    async def check_and_record_attempt(self, phone: str) -> RateLimitResult:
        result = await self._rate_limiter.check_and_record_attempt(phone)
        self._cache.invalidate(phone)
        return result

    async def require_attempt(self, phone: str) -> RateLimitResult:
        """Record an attempt, raising :class:`RateLimited` if the budget is spent."""
        result = await self.check_and_record_attempt(phone)
        if result.limited:
            raise RateLimited(phone, result.reset_at)
        return result

    async def issue_code(self, phone: str, code: str, ttl_minutes: int | None = None) -> None:
        await self._otp_store.issue(phone, code, ttl_minutes)
        self._cache.invalidate(phone)

    async def verify_code(self, phone: str, candidate: str) -> CodeVerification:
        result = await self._otp_store.verify(phone, candidate)
        self._cache.invalidate(phone)
        return result

    # ── Channel trust ────────────────────────────────────

    async def record_outbound_message(self, phone: str, message_id: str) -> None:
        await self._store.set_last_message_id(phone, message_id)
        self._cache.invalidate(phone)

    async def apply_status_callback(self, message_id: str, prefix: str | None) -> ChannelUpdate | None:
        update = await self._tracker.on_status_callback(message_id, prefix)
        if update is not None:
            self._cache.invalidate(update.session.phone_number)
        return update

    async def check_inbound_channel(self, phone: str, prefix: str | None) -> ChannelUpdate | None:
        """Apply an inbound transport indicator and resync the cache from the store."""
        update = await self._tracker.on_inbound(phone, prefix)
        if update is not None:
            # The tracker always reads the stored row; it may carry a
            # revocation another worker wrote.
            self._cache.invalidate(phone)
            self._cache.put(update.session, self._store.now())
        return update

    async def check_rcs_capability(self, phone: str) -> ChannelCapability:
        session = await self._store.fetch(phone)
        if session is None or session.channel_type is not ChannelType.TRUSTED:
            return ChannelCapability(False, ChannelType.UNKNOWN, None)
        age = self._store.now() - session.updated_at
        return ChannelCapability(True, session.channel_type, age.days)

    # ── Maintenance and monitoring ───────────────────────

    async def cleanup_expired_sessions(self) -> SweepResult:
        sweep = await self._store.purge(
            expired_retention=timedelta(days=settings.expired_retention_days),
            downgrade_retention=timedelta(days=settings.downgrade_retention_days),
        )
        self._cache.clear()
        logger.info(
            "Session sweep: %d expired deleted, %d downgraded deleted, %d codes cleared",
            sweep.expired_deleted,
            sweep.downgraded_deleted,
            sweep.codes_cleared,
        )
        return sweep

    async def get_session_stats(self) -> SessionStats:
        now = self._store.now()
        sessions = await self._store.active_sessions()
        by_method = {method.value: 0 for method in AuthMethod}
        total_age = timedelta()
        for session in sessions:
            by_method[session.auth_method.value] += 1
            total_age += now - session.authenticated_at
        average = total_age / len(sessions) if sessions else timedelta()
        return SessionStats(
            active_sessions=len(sessions), by_method=by_method, average_session_age=average
        )
