"""Tests for outbound delivery: Twilio client, truncation and retry."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from rcs_auth.errors import PermanentDeliveryError, UpstreamUnavailable
from rcs_auth.services.transport import (
    MAX_MESSAGE_LENGTH,
    MessageTransport,
    SentMessage,
    TwilioTransport,
    send_with_retry,
    truncate_message,
)

PHONE = "+15551234567"
TWILIO_URL = "https://api.twilio.test/2010-04-01/Accounts/AC123/Messages.json"


def _twilio(**kwargs) -> TwilioTransport:
    return TwilioTransport(
        account_sid="AC123",
        auth_token="secret",
        from_number="+15550001111",
        messaging_service_sid=kwargs.pop("messaging_service_sid", ""),
        status_callback_url="https://app.test/api/twilio/status-callback",
        base_url="https://api.twilio.test/2010-04-01",
        **kwargs,
    )


def _response(status: int, payload: dict) -> httpx.Response:
    return httpx.Response(status, json=payload, request=httpx.Request("POST", TWILIO_URL))


class FlakyTransport(MessageTransport):
    def __init__(self, failures: list[Exception]) -> None:
        self.failures = failures
        self.calls = 0

    async def send(self, phone, text, track_channel=False):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return SentMessage(message_id="SM1")


# ── Truncation ───────────────────────────────────────────

def test_short_message_untouched():
    assert truncate_message("hello") == "hello"


def test_long_message_cut_at_word_boundary():
    message = "word " * 400
    truncated = truncate_message(message)
    assert len(truncated) <= MAX_MESSAGE_LENGTH
    assert truncated.endswith("word...")


# ── Retry ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_retry_backs_off_exponentially():
    transport = FlakyTransport([UpstreamUnavailable("503"), UpstreamUnavailable("503")])
    sleep = AsyncMock()

    sent = await send_with_retry(transport, PHONE, "hi", max_retries=3, base_delay=1.0, sleep=sleep)

    assert sent.message_id == "SM1"
    assert transport.calls == 3
    assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0]


@pytest.mark.asyncio
async def test_retry_gives_up_after_max_attempts():
    transport = FlakyTransport([UpstreamUnavailable(str(i)) for i in range(5)])
    sleep = AsyncMock()

    with pytest.raises(UpstreamUnavailable):
        await send_with_retry(transport, PHONE, "hi", max_retries=3, base_delay=1.0, sleep=sleep)

    assert transport.calls == 3
    assert sleep.await_count == 2


@pytest.mark.asyncio
async def test_permanent_error_is_not_retried():
    transport = FlakyTransport([PermanentDeliveryError("blocked", code=21610)])
    sleep = AsyncMock()

    with pytest.raises(PermanentDeliveryError):
        await send_with_retry(transport, PHONE, "hi", max_retries=3, base_delay=1.0, sleep=sleep)

    assert transport.calls == 1
    sleep.assert_not_awaited()


# ── Twilio client ────────────────────────────────────────

@pytest.mark.asyncio
async def test_twilio_send_with_status_callback():
    post = AsyncMock(return_value=_response(201, {"sid": "SM42", "status": "queued"}))
    with patch.object(httpx.AsyncClient, "post", post):
        sent = await _twilio(messaging_service_sid="MG1").send(PHONE, "hello", track_channel=True)

    assert sent == SentMessage(message_id="SM42", status="queued")
    form = post.await_args.kwargs["data"]
    assert form["To"] == PHONE
    assert form["MessagingServiceSid"] == "MG1"
    assert "From" not in form
    assert form["StatusCallback"] == "https://app.test/api/twilio/status-callback"
    assert post.await_args.kwargs["auth"] == ("AC123", "secret")


@pytest.mark.asyncio
async def test_twilio_send_from_number_without_tracking():
    post = AsyncMock(return_value=_response(201, {"sid": "SM43"}))
    with patch.object(httpx.AsyncClient, "post", post):
        await _twilio().send(PHONE, "hello")

    form = post.await_args.kwargs["data"]
    assert form["From"] == "+15550001111"
    assert "StatusCallback" not in form


@pytest.mark.asyncio
async def test_twilio_permanent_rejection():
    post = AsyncMock(return_value=_response(400, {"code": 21211, "message": "Invalid 'To'"}))
    with patch.object(httpx.AsyncClient, "post", post):
        with pytest.raises(PermanentDeliveryError) as excinfo:
            await _twilio().send(PHONE, "hello")

    assert excinfo.value.code == 21211
    assert "Invalid phone number" in str(excinfo.value)


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [429, 500, 503])
async def test_twilio_transient_status(status):
    post = AsyncMock(return_value=_response(status, {}))
    with patch.object(httpx.AsyncClient, "post", post):
        with pytest.raises(UpstreamUnavailable):
            await _twilio().send(PHONE, "hello")


@pytest.mark.asyncio
async def test_twilio_network_error():
    post = AsyncMock(side_effect=httpx.ConnectError("refused"))
    with patch.object(httpx.AsyncClient, "post", post):
        with pytest.raises(UpstreamUnavailable):
            await _twilio().send(PHONE, "hello")
