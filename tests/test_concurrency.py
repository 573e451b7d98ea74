"""Concurrent requests for one phone number against a file-backed store.

Each task gets its own pooled connection, so the conditional statements
in the store decide who wins.
"""

from __future__ import annotations

import asyncio

import pytest

from rcs_auth.config import settings
from rcs_auth.database.repository import SessionStore
from rcs_auth.errors import ChannelDowngraded
from rcs_auth.models.session import AuthMethod, ChannelType
from rcs_auth.services.session_manager import SessionManager

PHONE = "+15551234567"
EMAIL = "alice@example.com"


@pytest.fixture
def workers(file_session_factory, clock, identity):
    """Two managers over one database, as two worker processes would be."""
    return [
        SessionManager(SessionStore(file_session_factory, clock=clock), identity)
        for _ in range(2)
    ]


async def _trusted_session(manager):
    await manager.upsert_pending_session(PHONE, EMAIL, record_attempt=False)
    await manager.create_session(PHONE, EMAIL, "u1", "tok", AuthMethod.MAGIC_LINK)
    await manager.record_outbound_message(PHONE, "SM1")
    await manager.apply_status_callback("SM1", "RCS")


@pytest.mark.asyncio
async def test_code_is_consumed_once(workers):
    first, second = workers
    await first.upsert_pending_session(PHONE, EMAIL, AuthMethod.OTP)
    await first.issue_code(PHONE, "424242")

    results = await asyncio.gather(
        first.verify_code(PHONE, "424242"),
        second.verify_code(PHONE, "424242"),
        first.verify_code(PHONE, "424242"),
    )

    assert sum(result.valid for result in results) == 1


@pytest.mark.asyncio
async def test_attempt_cap_holds_under_concurrency(workers):
    first, second = workers
    batch = [first.check_and_record_attempt(PHONE) for _ in range(5)]
    batch += [second.check_and_record_attempt(PHONE) for _ in range(5)]

    results = await asyncio.gather(*batch)

    allowed = [result for result in results if not result.limited]
    assert len(allowed) == settings.rate_limit_max_attempts
    row = await first.store.fetch(PHONE)
    assert row.auth_attempts == settings.rate_limit_max_attempts
    assert await first.store.count(PHONE) == 1


@pytest.mark.asyncio
async def test_downgrade_racing_promotion_leaves_no_credentials(workers):
    first, second = workers
    await _trusted_session(first)

    results = await asyncio.gather(
        second.apply_status_callback("SM1", "SM"),
        first.create_session(PHONE, EMAIL, "u1", "tok2", AuthMethod.MAGIC_LINK),
        return_exceptions=True,
    )

    for result in results:
        if isinstance(result, Exception):
            assert isinstance(result, ChannelDowngraded)
    row = await first.store.fetch(PHONE)
    assert row.channel_downgrade_detected is True
    assert row.channel_type is ChannelType.UNTRUSTED
    assert row.session_token is None
    assert row.authenticated_at is None
    assert row.expires_at is None


@pytest.mark.asyncio
async def test_competing_channel_reports_agree(workers):
    first, second = workers
    await _trusted_session(first)

    updates = await asyncio.gather(
        first.apply_status_callback("SM1", "SM"),
        second.check_inbound_channel(PHONE, "SM"),
    )

    assert sum(update.downgraded for update in updates) == 1
    row = await second.store.fetch(PHONE)
    assert row.channel_downgrade_detected is True
    assert row.session_token is None
