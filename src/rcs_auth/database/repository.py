"""Repositories — data access for sessions and the phone directory.

``SessionStore`` owns every write to ``sms_sessions``.  Each public
method is one short transaction, and the writes that decide something
(attempt counting, code consumption, channel transitions, promotion to
authenticated) are single conditional statements so that two requests
for the same phone number cannot both win.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import case, delete, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rcs_auth.errors import NotFound, StoreUnavailable
from rcs_auth.models.base import utc_now
from rcs_auth.models.directory import PhoneAssignment
from rcs_auth.models.session import AuthMethod, ChannelType, SmsSession

logger = logging.getLogger(__name__)

_RETURNING = {"populate_existing": True}
_NO_SYNC = {"synchronize_session": False}


class PhoneDirectoryRepository:
    """Encapsulates all queries against the organisation phone directory."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def find_by_phone(self, phone: str) -> PhoneAssignment | None:
        """Look up an active assignment by E.164 phone number."""
        stmt = select(PhoneAssignment).where(
            PhoneAssignment.phone_number == phone, PhoneAssignment.is_active.is_(True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_email_by_phone(self, phone: str) -> str | None:
        assignment = await self.find_by_phone(phone)
        return assignment.assigned_to_email if assignment else None


@dataclass
class AttemptOutcome:
    """Result of a conditional attempt increment."""

    recorded: bool
    session: SmsSession


@dataclass
class SweepResult:
    expired_deleted: int = 0
    codes_cleared: int = 0
    downgraded_deleted: int = 0


class SessionStore:
    """Authoritative per-phone-number session storage.

    Parameters
    ----------
    session_factory:
        Factory producing ``AsyncSession`` objects bound to the engine.
    clock:
        Returns the current aware UTC time.  Injected so tests can move
        time forward.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._factory = session_factory
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._factory() as db:
                async with db.begin():
                    yield db
        except (OperationalError, InterfaceError, PoolTimeoutError, TimeoutError) as exc:
            logger.error("Session store unavailable: %s", exc)
            raise StoreUnavailable(str(exc)) from exc

    @staticmethod
    def _insert(db: AsyncSession):
        if db.bind.dialect.name == "postgresql":
            return pg_insert
        return sqlite_insert

    async def _ensure_row(self, db: AsyncSession, phone: str, now: datetime) -> None:
        insert = self._insert(db)
        stmt = (
            insert(SmsSession)
            .values(
                phone_number=phone,
                channel_type=ChannelType.UNKNOWN,
                auth_attempts=0,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["phone_number"])
        )
        await db.execute(stmt)

    # ── Reads ────────────────────────────────────────────

    async def fetch(self, phone: str) -> SmsSession | None:
        async with self._transaction() as db:
            result = await db.execute(
                select(SmsSession).where(SmsSession.phone_number == phone)
            )
            return result.scalar_one_or_none()

    async def fetch_by_message_id(self, message_id: str) -> SmsSession | None:
        async with self._transaction() as db:
            result = await db.execute(
                select(SmsSession).where(SmsSession.last_message_id == message_id)
            )
            return result.scalars().first()

    async def fetch_latest_by_email(self, email: str) -> SmsSession | None:
        """Most recently touched session bound to *email*."""
        async with self._transaction() as db:
            result = await db.execute(
                select(SmsSession)
                .where(SmsSession.email == email)
                .order_by(SmsSession.updated_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def fetch_by_token(self, user_id: str, token: str) -> SmsSession | None:
        async with self._transaction() as db:
            result = await db.execute(
                select(SmsSession).where(
                    SmsSession.user_id == user_id,
                    SmsSession.session_token == token,
                )
            )
            return result.scalars().first()

    async def count(self, phone: str) -> int:
        async with self._transaction() as db:
            result = await db.execute(
                select(SmsSession.id).where(SmsSession.phone_number == phone)
            )
            return len(result.all())

    async def active_sessions(self) -> list[SmsSession]:
        now = self.now()
        async with self._transaction() as db:
            result = await db.execute(
                select(SmsSession).where(
                    SmsSession.authenticated_at.is_not(None),
                    SmsSession.expires_at >= now,
                )
            )
            return list(result.scalars().all())

    # ── Lifecycle writes ─────────────────────────────────

    async def upsert_pending(
        self,
        phone: str,
        email: str,
        method: AuthMethod,
        trust_required: bool,
        duration_days: int,
        record_attempt: bool = True,
    ) -> SmsSession:
        """Insert or reset the row for a fresh authentication cycle."""
        now = self.now()
        async with self._transaction() as db:
            insert = self._insert(db)
            stmt = insert(SmsSession).values(
                phone_number=phone,
                email=email,
                auth_method=method,
                trust_required=trust_required,
                session_duration_days=duration_days,
                channel_type=ChannelType.PENDING,
                channel_downgrade_detected=False,
                auth_attempts=1 if record_attempt else 0,
                last_attempt_at=now if record_attempt else None,
                created_at=now,
                updated_at=now,
            )
            changes = {
                "email": stmt.excluded.email,
                "auth_method": stmt.excluded.auth_method,
                "trust_required": stmt.excluded.trust_required,
                "session_duration_days": stmt.excluded.session_duration_days,
                "channel_type": ChannelType.PENDING,
                "channel_downgrade_detected": False,
                "updated_at": now,
            }
            if record_attempt:
                changes["auth_attempts"] = SmsSession.auth_attempts + 1
                changes["last_attempt_at"] = now
            stmt = stmt.on_conflict_do_update(
                index_elements=["phone_number"], set_=changes
            ).returning(SmsSession)
            result = await db.scalars(stmt, execution_options=_RETURNING)
            return result.one()

    async def upsert_authenticated(
        self,
        phone: str,
        email: str,
        user_id: str,
        token: str,
        method: AuthMethod,
        default_duration_days: int,
        default_trust_required: bool,
    ) -> SmsSession | None:
        """Promote the row to authenticated.

        Returns ``None`` without writing when the row carries a downgrade
        flag; only a fresh pending cycle can clear it.
        """
        now = self.now()
        async with self._transaction() as db:
            existing = await db.scalar(
                select(SmsSession.session_duration_days).where(
                    SmsSession.phone_number == phone
                )
            )
            duration_days = existing or default_duration_days
            expires_at = now + timedelta(days=duration_days)

            insert = self._insert(db)
            stmt = insert(SmsSession).values(
                phone_number=phone,
                email=email,
                user_id=user_id,
                session_token=token,
                auth_method=method,
                authenticated_at=now,
                expires_at=expires_at,
                auth_attempts=0,
                channel_type=ChannelType.UNKNOWN,
                channel_downgrade_detected=False,
                trust_required=default_trust_required,
                session_duration_days=duration_days,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["phone_number"],
                set_={
                    "email": stmt.excluded.email,
                    "user_id": stmt.excluded.user_id,
                    "session_token": stmt.excluded.session_token,
                    "auth_method": stmt.excluded.auth_method,
                    "authenticated_at": now,
                    "expires_at": expires_at,
                    "auth_attempts": 0,
                    "pending_code": None,
                    "code_expires_at": None,
                    "updated_at": now,
                },
                where=SmsSession.channel_downgrade_detected.is_(False),
            ).returning(SmsSession)
            result = await db.scalars(stmt, execution_options=_RETURNING)
            return result.one_or_none()

    async def clear_authentication(self, phone: str) -> bool:
        now = self.now()
        async with self._transaction() as db:
            result = await db.execute(
                update(SmsSession)
                .where(SmsSession.phone_number == phone)
                .values(
                    session_token=None,
                    authenticated_at=None,
                    expires_at=None,
                    updated_at=now,
                ),
                execution_options=_NO_SYNC,
            )
            return result.rowcount > 0

    async def extend_expiry(self, phone: str) -> SmsSession | None:
        """Push ``expires_at`` out by the row's own duration.

        The update is conditioned on the token read in the same
        transaction, so a concurrent logout or revocation wins.
        """
        now = self.now()
        async with self._transaction() as db:
            row = await db.scalar(
                select(SmsSession).where(SmsSession.phone_number == phone)
            )
            if row is None or not row.is_authenticated(now):
                return None
            stmt = (
                update(SmsSession)
                .where(
                    SmsSession.phone_number == phone,
                    SmsSession.session_token == row.session_token,
                    SmsSession.channel_downgrade_detected.is_(False),
                    SmsSession.expires_at > now,
                )
                .values(
                    expires_at=now + timedelta(days=row.session_duration_days),
                    updated_at=now,
                )
                .returning(SmsSession)
            )
            result = await db.scalars(stmt, execution_options=_RETURNING)
            return result.one_or_none()

    async def set_last_message_id(self, phone: str, message_id: str) -> None:
        async with self._transaction() as db:
            await db.execute(
                update(SmsSession)
                .where(SmsSession.phone_number == phone)
                .values(last_message_id=message_id, updated_at=self.now()),
                execution_options=_NO_SYNC,
            )

    # ── Rate limiting ────────────────────────────────────

    async def record_attempt(
        self, phone: str, max_attempts: int, window: timedelta
    ) -> AttemptOutcome:
        """Count one attempt unless the budget inside *window* is spent.

        A single UPDATE decides: it only matches when the window has
        lapsed (counter restarts at one) or the counter is below the cap.
        """
        now = self.now()
        cutoff = now - window
        async with self._transaction() as db:
            await self._ensure_row(db, phone, now)
            window_lapsed = or_(
                SmsSession.last_attempt_at.is_(None),
                SmsSession.last_attempt_at < cutoff,
            )
            stmt = (
                update(SmsSession)
                .where(
                    SmsSession.phone_number == phone,
                    or_(window_lapsed, SmsSession.auth_attempts < max_attempts),
                )
                .values(
                    auth_attempts=case(
                        (window_lapsed, 1), else_=SmsSession.auth_attempts + 1
                    ),
                    last_attempt_at=now,
                    updated_at=now,
                )
                .returning(SmsSession)
            )
            result = await db.scalars(stmt, execution_options=_RETURNING)
            row = result.one_or_none()
            if row is not None:
                return AttemptOutcome(recorded=True, session=row)

            current = await db.scalar(
                select(SmsSession).where(SmsSession.phone_number == phone)
            )
            return AttemptOutcome(recorded=False, session=current)

    # ── One-time codes ───────────────────────────────────

    async def store_code(self, phone: str, code: str, expires_at: datetime) -> None:
        async with self._transaction() as db:
            result = await db.execute(
                update(SmsSession)
                .where(SmsSession.phone_number == phone)
                .values(pending_code=code, code_expires_at=expires_at, updated_at=self.now()),
                execution_options=_NO_SYNC,
            )
            if result.rowcount == 0:
                raise NotFound(f"No session for {phone}")

    async def read_code(self, phone: str) -> tuple[str | None, datetime | None]:
        async with self._transaction() as db:
            row = (
                await db.execute(
                    select(SmsSession.pending_code, SmsSession.code_expires_at).where(
                        SmsSession.phone_number == phone
                    )
                )
            ).one_or_none()
            if row is None:
                return None, None
            return row.pending_code, row.code_expires_at

    async def consume_code(self, phone: str, expected_code: str) -> bool:
        """Clear the pending code only if it is still *expected_code*.

        Returns whether this call was the one that cleared it.
        """
        async with self._transaction() as db:
            result = await db.execute(
                update(SmsSession)
                .where(
                    SmsSession.phone_number == phone,
                    SmsSession.pending_code == expected_code,
                )
                .values(pending_code=None, code_expires_at=None, updated_at=self.now()),
                execution_options=_NO_SYNC,
            )
            return result.rowcount == 1

    # ── Channel trust ────────────────────────────────────

    async def compare_and_set_channel(
        self,
        phone: str,
        expected_channel: ChannelType,
        expected_downgraded: bool,
        channel: ChannelType,
        downgraded: bool,
        revoke: bool,
    ) -> SmsSession | None:
        """Write a channel transition if the row still holds the prior state.

        Revocation is part of the same statement, so the downgrade flag
        and the cleared credentials always land together.
        """
        values = {
            "channel_type": channel,
            "channel_downgrade_detected": downgraded,
            "updated_at": self.now(),
        }
        if revoke:
            values.update(session_token=None, authenticated_at=None, expires_at=None)
        async with self._transaction() as db:
            stmt = (
                update(SmsSession)
                .where(
                    SmsSession.phone_number == phone,
                    SmsSession.channel_type == expected_channel,
                    SmsSession.channel_downgrade_detected.is_(expected_downgraded),
                )
                .values(**values)
                .returning(SmsSession)
            )
            result = await db.scalars(stmt, execution_options=_RETURNING)
            return result.one_or_none()

    # ── Maintenance ──────────────────────────────────────

    async def purge(
        self, expired_retention: timedelta, downgrade_retention: timedelta
    ) -> SweepResult:
        """Delete long-expired and downgraded rows, clear stale codes."""
        now = self.now()
        sweep = SweepResult()
        async with self._transaction() as db:
            result = await db.execute(
                delete(SmsSession).where(SmsSession.expires_at < now - expired_retention),
                execution_options=_NO_SYNC,
            )
            sweep.expired_deleted = result.rowcount
            result = await db.execute(
                delete(SmsSession).where(
                    SmsSession.channel_downgrade_detected.is_(True),
                    SmsSession.updated_at < now - downgrade_retention,
                ),
                execution_options=_NO_SYNC,
            )
            sweep.downgraded_deleted = result.rowcount
            # Keep updated_at as-is; it drives the downgrade retention above.
            result = await db.execute(
                update(SmsSession)
                .where(SmsSession.code_expires_at < now)
                .values(
                    pending_code=None,
                    code_expires_at=None,
                    updated_at=SmsSession.updated_at,
                ),
                execution_options=_NO_SYNC,
            )
            sweep.codes_cleared = result.rowcount
        return sweep
