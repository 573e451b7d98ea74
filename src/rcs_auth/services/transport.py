"""Message transport — outbound RCS/SMS delivery via Twilio.

Messages go out through a Messaging Service when one is configured so
Twilio can pick RCS and fall back to SMS; the status callback later
reports which channel actually carried each message.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx

from rcs_auth.config import settings
from rcs_auth.errors import PermanentDeliveryError, UpstreamUnavailable
from rcs_auth.services.phone import mask_phone

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 1600

# Twilio error codes that no retry will fix.
INVALID_NUMBER = 21211
BLOCKLISTED = 21610
REGION_NOT_PERMITTED = 21408
PERMANENT_ERROR_CODES = {
    INVALID_NUMBER: "Invalid phone number format",
    BLOCKLISTED: "Phone number is on the blocklist",
    REGION_NOT_PERMITTED: "Permission denied to send to this region",
}


@dataclass
class SentMessage:
    message_id: str
    status: str = "queued"


class MessageTransport(ABC):
    """Abstract outbound message channel."""

    @abstractmethod
    async def send(self, phone: str, text: str, track_channel: bool = False) -> SentMessage:
        """Send *text* to *phone*; request a status callback if *track_channel*."""


def truncate_message(message: str, max_length: int = MAX_MESSAGE_LENGTH) -> str:
    """Trim *message* to *max_length*, preferring a word boundary."""
    if len(message) <= max_length:
        return message
    truncated = message[: max_length - 3]
    last_space = truncated.rfind(" ")
    if last_space > max_length - 50:
        truncated = truncated[:last_space]
    return truncated + "..."


class TwilioTransport(MessageTransport):
    """Sends messages through the Twilio Messages REST API."""

    def __init__(
        self,
        account_sid: str | None = None,
        auth_token: str | None = None,
        from_number: str | None = None,
        messaging_service_sid: str | None = None,
        status_callback_url: str | None = None,
        base_url: str | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._account_sid = account_sid or settings.twilio_account_sid
        self._auth_token = auth_token or settings.twilio_auth_token
        self._from_number = from_number or settings.twilio_phone_number
        self._messaging_service_sid = messaging_service_sid or settings.messaging_service_sid
        self._status_callback_url = status_callback_url or settings.status_callback_url
        self._base_url = (base_url or settings.twilio_api_base_url).rstrip("/")
        self._timeout = timeout

    async def send(self, phone: str, text: str, track_channel: bool = False) -> SentMessage:
        url = f"{self._base_url}/Accounts/{self._account_sid}/Messages.json"
        form: dict[str, str] = {"To": phone, "Body": truncate_message(text)}
        if self._messaging_service_sid:
            form["MessagingServiceSid"] = self._messaging_service_sid
        else:
            form["From"] = self._from_number
        if track_channel:
            form["StatusCallback"] = self._status_callback_url

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(
                    url, data=form, auth=(self._account_sid, self._auth_token)
                )
        except httpx.HTTPError as exc:
            logger.warning("Message send to %s failed: %s", mask_phone(phone), exc)
            raise UpstreamUnavailable(str(exc)) from exc

        if resp.status_code >= 500 or resp.status_code == 429:
            logger.warning("Twilio returned %s for %s", resp.status_code, mask_phone(phone))
            raise UpstreamUnavailable(f"Twilio HTTP {resp.status_code}")
        if resp.status_code >= 400:
            code = _error_code(resp)
            reason = PERMANENT_ERROR_CODES.get(code, f"Twilio rejected message ({code})")
            logger.error("Message to %s rejected: %s", mask_phone(phone), reason)
            raise PermanentDeliveryError(reason, code=code)

        data = resp.json()
        logger.info("Message sent to %s: %s", mask_phone(phone), data.get("sid"))
        return SentMessage(message_id=data["sid"], status=data.get("status", "queued"))


class LogOnlyTransport(MessageTransport):
    """Fallback used when no Twilio credentials are configured."""

    async def send(self, phone: str, text: str, track_channel: bool = False) -> SentMessage:
        logger.warning("Twilio not configured — message to %s logged only: %s", mask_phone(phone), text)
        return SentMessage(message_id=f"local-{uuid.uuid4().hex}", status="logged")


def build_transport() -> MessageTransport:
    if settings.twilio_account_sid and settings.twilio_auth_token:
        return TwilioTransport()
    return LogOnlyTransport()


async def send_with_retry(
    transport: MessageTransport,
    phone: str,
    text: str,
    *,
    track_channel: bool = False,
    max_retries: int | None = None,
    base_delay: float | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> SentMessage:
    """Send with bounded exponential backoff (1s, 2s, 4s, …).

    Only :class:`UpstreamUnavailable` is retried; permanent rejections
    propagate on the first failure.
    """
    attempts = max_retries or settings.send_max_retries
    delay = base_delay if base_delay is not None else settings.send_backoff_seconds
    last_error: UpstreamUnavailable | None = None

    for attempt in range(1, attempts + 1):
        try:
            return await transport.send(phone, text, track_channel=track_channel)
        except UpstreamUnavailable as exc:
            last_error = exc
            logger.warning("Send attempt %d/%d to %s failed: %s", attempt, attempts, mask_phone(phone), exc)
            if attempt < attempts:
                await sleep(delay * (2 ** (attempt - 1)))

    raise last_error


def _error_code(resp: httpx.Response) -> int | None:
    try:
        return int(resp.json().get("code"))
    except (ValueError, TypeError, AttributeError):
        return None
