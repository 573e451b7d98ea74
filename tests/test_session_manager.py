"""Tests for the SessionManager façade."""

from datetime import timedelta

import pytest

from rcs_auth.errors import (
    ChannelDowngraded,
    Expired,
    InvalidCredential,
    NotFound,
    RateLimited,
    UpstreamUnavailable,
)
from rcs_auth.models.session import AuthMethod, ChannelType
from rcs_auth.services.otp_store import CodeFailure

PHONE = "+15551234567"
EMAIL = "alice@example.com"


async def _login(manager, identity, method=AuthMethod.MAGIC_LINK):
    await manager.upsert_pending_session(PHONE, EMAIL, method)
    identity.codes[EMAIL] = "123456"
    credential = await identity.verify_credential(email=EMAIL, code="123456")
    return await manager.create_session(PHONE, EMAIL, credential.user_id, credential.token, method)


@pytest.mark.asyncio
async def test_create_session_authenticates(manager, identity, clock):
    session = await _login(manager, identity)

    assert session.is_authenticated(clock())
    assert session.expires_at == clock() + timedelta(days=7)
    assert session.auth_attempts == 0
    assert (await manager.get_session(PHONE)).session_token == session.session_token


@pytest.mark.asyncio
async def test_get_session_returns_pending_rows(manager):
    await manager.upsert_pending_session(PHONE, EMAIL, AuthMethod.OTP)

    session = await manager.get_session(PHONE)

    assert session is not None
    assert session.email == EMAIL
    assert session.auth_method is AuthMethod.OTP
    assert session.channel_type is ChannelType.PENDING


@pytest.mark.asyncio
async def test_get_session_unknown_phone(manager):
    assert await manager.get_session(PHONE) is None


@pytest.mark.asyncio
async def test_expired_session_is_invalidated(manager, identity, store, clock):
    await _login(manager, identity)
    clock.advance(days=8)

    assert await manager.get_session(PHONE) is None
    row = await store.fetch(PHONE)
    assert row.session_token is None
    assert row.authenticated_at is None
    assert row.expires_at is None


@pytest.mark.asyncio
async def test_cached_session_expires_too(manager, identity, clock):
    await _login(manager, identity)
    assert await manager.get_session(PHONE) is not None  # populates the cache

    clock.advance(days=7, seconds=1)

    assert await manager.get_session(PHONE) is None


@pytest.mark.asyncio
async def test_refresh_session_extends_from_now(manager, identity, clock):
    await _login(manager, identity)
    clock.advance(days=3)

    refreshed = await manager.refresh_session(PHONE)

    assert refreshed.expires_at == clock() + timedelta(days=7)


@pytest.mark.asyncio
async def test_refresh_requires_authentication(manager):
    await manager.upsert_pending_session(PHONE, EMAIL)
    assert await manager.refresh_session(PHONE) is None


@pytest.mark.asyncio
async def test_invalidate_session(manager, identity):
    await _login(manager, identity)

    await manager.invalidate_session(PHONE)

    session = await manager.get_session(PHONE)
    assert session.session_token is None
    assert await manager.refresh_session(PHONE) is None


@pytest.mark.asyncio
async def test_create_session_on_downgraded_row_raises(manager, identity, store):
    await _login(manager, identity)
    await store.compare_and_set_channel(PHONE, ChannelType.PENDING, False, ChannelType.TRUSTED, False, False)
    await manager.check_inbound_channel(PHONE, "SM")

    with pytest.raises(ChannelDowngraded):
        await manager.create_session(PHONE, EMAIL, "u1", "tok2", AuthMethod.MAGIC_LINK)

    # A new cycle clears the flag.
    await manager.upsert_pending_session(PHONE, EMAIL)
    session = await manager.create_session(PHONE, EMAIL, "u1", "tok2", AuthMethod.MAGIC_LINK)
    assert session.session_token == "tok2"


@pytest.mark.asyncio
async def test_downgrade_through_status_callback(manager, identity, store):
    await _login(manager, identity)
    await manager.record_outbound_message(PHONE, "SM1")
    await manager.apply_status_callback("SM1", "RCS")
    assert await manager.get_session(PHONE) is not None  # cached

    update = await manager.apply_status_callback("SM1", "SM")

    assert update.downgraded
    session = await manager.get_session(PHONE)
    assert session.channel_downgrade_detected is True
    assert session.session_token is None


@pytest.mark.asyncio
async def test_user_context_resolves_claims(manager, identity):
    await _login(manager, identity)

    context = await manager.get_user_context(PHONE)

    assert context.user_id == "user-alice"
    assert context.org_id == "acme_corp"
    assert context.user_role == "admin"
    assert context.phone_number == PHONE


@pytest.mark.asyncio
async def test_rejected_token_invalidates(manager, identity, store):
    await _login(manager, identity)
    identity.tokens.clear()

    assert await manager.get_user_context(PHONE) is None
    assert (await store.fetch(PHONE)).session_token is None


@pytest.mark.asyncio
async def test_unreachable_provider_degrades_to_unauthenticated(manager, identity, store):
    session = await _login(manager, identity)

    async def unavailable(token):
        raise UpstreamUnavailable("GET /user: HTTP 503")

    identity.validate_token = unavailable

    assert await manager.get_user_context(PHONE) is None
    row = await store.fetch(PHONE)
    assert row.session_token == session.session_token
    assert row.expires_at == session.expires_at


@pytest.mark.asyncio
async def test_user_context_without_session(manager):
    assert await manager.get_user_context(PHONE) is None


@pytest.mark.asyncio
async def test_codes_through_manager(manager):
    await manager.upsert_pending_session(PHONE, EMAIL, AuthMethod.OTP)
    await manager.issue_code(PHONE, "424242")

    assert (await manager.verify_code(PHONE, "000000")).reason is CodeFailure.MISMATCH
    assert (await manager.verify_code(PHONE, "424242")).valid
    assert (await manager.verify_code(PHONE, "424242")).reason is CodeFailure.NOT_FOUND


@pytest.mark.asyncio
async def test_successful_login_resets_attempts(manager, identity):
    await manager.check_and_record_attempt(PHONE)
    await manager.check_and_record_attempt(PHONE)

    session = await _login(manager, identity)

    assert session.auth_attempts == 0


@pytest.mark.asyncio
async def test_rcs_capability(manager, identity, store, clock):
    capability = await manager.check_rcs_capability(PHONE)
    assert not capability.is_capable

    await _login(manager, identity)
    await store.compare_and_set_channel(PHONE, ChannelType.PENDING, False, ChannelType.TRUSTED, False, False)
    clock.advance(days=2)

    capability = await manager.check_rcs_capability(PHONE)
    assert capability.is_capable
    assert capability.last_known_channel is ChannelType.TRUSTED
    assert capability.days_since_last_update == 2


@pytest.mark.asyncio
async def test_stats_and_cleanup(manager, identity, store, clock):
    await _login(manager, identity)
    await manager.upsert_pending_session("+15559876543", "bob@example.com", AuthMethod.OTP)
    clock.advance(hours=6)

    stats = await manager.get_session_stats()
    assert stats.active_sessions == 1
    assert stats.by_method == {"magic_link": 1, "otp": 0}
    assert stats.average_session_age == timedelta(hours=6)

    clock.advance(days=40)
    sweep = await manager.cleanup_expired_sessions()
    assert sweep.expired_deleted == 1
    assert await store.fetch(PHONE) is None


@pytest.mark.asyncio
async def test_require_attempt_raises_when_spent(manager, clock):
    for _ in range(3):
        await manager.require_attempt(PHONE)

    with pytest.raises(RateLimited) as excinfo:
        await manager.require_attempt(PHONE)

    assert excinfo.value.reset_at == clock() + timedelta(hours=1)
    clock.advance(minutes=30, seconds=10)
    assert excinfo.value.minutes_remaining(clock()) == 30


@pytest.mark.asyncio
async def test_session_for_token(manager, identity, clock):
    session = await _login(manager, identity)

    found, claims = await manager.session_for_token(session.session_token)
    assert found.phone_number == PHONE
    assert claims.claim("org_id") == "acme_corp"

    clock.advance(days=8)
    with pytest.raises(Expired):
        await manager.session_for_token(session.session_token)


@pytest.mark.asyncio
async def test_session_for_token_after_revocation(manager, identity):
    session = await _login(manager, identity)
    await manager.invalidate_session(PHONE)

    with pytest.raises(NotFound):
        await manager.session_for_token(session.session_token)
    with pytest.raises(InvalidCredential):
        await manager.session_for_token("not-a-token")


@pytest.mark.asyncio
async def test_inbound_check_resyncs_cache_from_store(manager, identity, store):
    await _login(manager, identity)
    await store.compare_and_set_channel(PHONE, ChannelType.PENDING, False, ChannelType.TRUSTED, False, False)
    assert await manager.get_session(PHONE) is not None  # cached

    # Revocation written behind this manager's back.
    await store.compare_and_set_channel(PHONE, ChannelType.TRUSTED, False, ChannelType.UNTRUSTED, True, True)
    update = await manager.check_inbound_channel(PHONE, "RCS")

    assert not update.changed
    assert (await manager.get_session(PHONE)).session_token is None
