"""Shared fixtures: in-memory database, controllable clock and fake collaborators."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from rcs_auth.database.repository import SessionStore
from rcs_auth.errors import InvalidCredential
from rcs_auth.models.base import Base
from rcs_auth.services.identity_provider import IdentityProvider, IssuedCredential, TokenClaims
from rcs_auth.services.session_manager import SessionManager
from rcs_auth.services.transport import MessageTransport, SentMessage


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2025, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FakeIdentityProvider(IdentityProvider):
    """Identity provider double that accepts one code per email."""

    def __init__(self) -> None:
        self.issued: list[tuple[str, str | None]] = []
        self.codes: dict[str, str] = {}
        self.links: dict[str, str] = {}
        self.tokens: dict[str, TokenClaims] = {}
        self.issue_error: Exception | None = None

    async def issue_credential(self, email: str, redirect_to: str | None = None) -> None:
        if self.issue_error is not None:
            raise self.issue_error
        self.issued.append((email, redirect_to))

    async def verify_credential(self, *, email=None, code=None, token_hash=None, kind="email"):
        if token_hash is not None:
            email = self.links.pop(token_hash, None)
            if email is None:
                raise InvalidCredential("Invalid token hash")
        elif self.codes.get(email) != code:
            raise InvalidCredential("Token has expired or is invalid")
        else:
            del self.codes[email]
        user_id = f"user-{email.split('@')[0]}"
        token = f"token-{user_id}"
        self.tokens[token] = TokenClaims(
            user_id=user_id,
            email=email,
            claims={"user_metadata": {"org_id": "acme_corp"}, "app_metadata": {"user_role": "admin"}},
        )
        return IssuedCredential(user_id=user_id, email=email, token=token, expires_in=3600)

    async def validate_token(self, token: str) -> TokenClaims:
        claims = self.tokens.get(token)
        if claims is None:
            raise InvalidCredential("invalid JWT")
        return claims


class FakeTransport(MessageTransport):
    """Records outbound messages instead of sending them."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, bool]] = []

    async def send(self, phone: str, text: str, track_channel: bool = False) -> SentMessage:
        self.sent.append((phone, text, track_channel))
        return SentMessage(message_id=f"SM{len(self.sent):04d}")


# ── In-memory test database ─────────────────────────────

@pytest_asyncio.fixture
async def session_factory():
    """Create tables in a fresh in-memory DB and yield a session factory."""
    engine = create_async_engine("sqlite+aiosqlite://", echo=False, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    # Tear down
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(session_factory, clock):
    return SessionStore(session_factory, clock=clock)


@pytest.fixture
def identity():
    return FakeIdentityProvider()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def manager(store, identity):
    return SessionManager(store, identity)


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """File-backed DB with a real connection pool, for concurrent writers."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sessions.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()
