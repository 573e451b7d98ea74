"""Channel trust tracker — the transport-downgrade state machine.

A session's channel is one of ``unknown``, ``pending``, ``trusted`` (RCS,
provider-verified) or ``untrusted`` (SMS/MMS fallback), paired with a
sticky ``downgraded`` flag.  Every change goes through :func:`transition`,
which also decides whether the session's credentials must be revoked.
The tracker persists the result with a compare-and-set so the flag and
the revocation land in one statement.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Union

from rcs_auth.database.repository import SessionStore
from rcs_auth.errors import StoreUnavailable
from rcs_auth.models.session import ChannelType, SmsSession
from rcs_auth.services.phone import mask_phone

logger = logging.getLogger(__name__)

TRUSTED_PREFIXES = frozenset({"RCS"})
UNTRUSTED_PREFIXES = frozenset({"SM", "MM"})

# Compare-and-set rounds before giving up on a contended row.
CAS_ATTEMPTS = 3


def classify_prefix(prefix: str | None) -> ChannelType | None:
    """Map a provider channel prefix to a channel, ``None`` if unrecognised."""
    if not prefix:
        return None
    prefix = prefix.strip().upper()
    if prefix in TRUSTED_PREFIXES:
        return ChannelType.TRUSTED
    if prefix in UNTRUSTED_PREFIXES:
        return ChannelType.UNTRUSTED
    return None


@dataclass(frozen=True)
class ChannelState:
    channel: ChannelType
    downgraded: bool = False

    @classmethod
    def of(cls, row: SmsSession) -> ChannelState:
        return cls(row.channel_type, row.channel_downgrade_detected)


@dataclass(frozen=True)
class SessionStarted:
    """A new authentication cycle began for the phone number."""


@dataclass(frozen=True)
class ChannelObserved:
    """The provider reported which transport delivered an outbound message."""

    channel: ChannelType | None


@dataclass(frozen=True)
class InboundObserved:
    """An inbound message arrived carrying this transport indicator."""

    channel: ChannelType | None


ChannelEvent = Union[SessionStarted, ChannelObserved, InboundObserved]


@dataclass(frozen=True)
class Transition:
    state: ChannelState
    revoke: bool = False


def _into_untrusted(state: ChannelState, trust_required: bool) -> Transition:
    if trust_required and state.channel is ChannelType.TRUSTED:
        return Transition(ChannelState(ChannelType.UNTRUSTED, downgraded=True), revoke=True)
    return Transition(ChannelState(ChannelType.UNTRUSTED, state.downgraded))


def transition(state: ChannelState, event: ChannelEvent, trust_required: bool) -> Transition:
    """Compute the next channel state for *event*.

    Pure function; callers persist the result.  Leaving a trusted channel
    for an untrusted one while trust is required is the only path that
    sets ``downgraded`` and requests revocation.
    """
    if isinstance(event, SessionStarted):
        return Transition(ChannelState(ChannelType.PENDING, downgraded=False))

    if isinstance(event, ChannelObserved):
        if event.channel is ChannelType.TRUSTED:
            return Transition(ChannelState(ChannelType.TRUSTED, state.downgraded))
        if event.channel is ChannelType.UNTRUSTED:
            if state.channel is ChannelType.UNTRUSTED:
                return Transition(state)
            return _into_untrusted(state, trust_required)
        return Transition(state)

    if isinstance(event, InboundObserved):
        if (
            trust_required
            and state.channel is ChannelType.TRUSTED
            and event.channel is not ChannelType.TRUSTED
        ):
            return _into_untrusted(state, trust_required)
        return Transition(state)

    raise TypeError(f"Unknown channel event: {event!r}")


@dataclass(frozen=True)
class ChannelUpdate:
    """What happened to a row after an event was applied."""

    session: SmsSession
    changed: bool
    downgraded: bool


class ChannelTrustTracker:
    """Applies channel events to stored sessions."""

    def __init__(self, store: SessionStore) -> None:
        self._store = store

    async def on_status_callback(self, message_id: str, prefix: str | None) -> ChannelUpdate | None:
        """Handle a delivery-status report for an outbound message."""
        row = await self._store.fetch_by_message_id(message_id)
        if row is None:
            logger.debug("Status callback for unknown message %s", message_id)
            return None
        channel = classify_prefix(prefix)
        if channel is None:
            logger.info("Ignoring unrecognised channel prefix %r for %s", prefix, message_id)
            return ChannelUpdate(session=row, changed=False, downgraded=False)
        return await self._apply(row, ChannelObserved(channel))

    async def on_inbound(self, phone: str, prefix: str | None) -> ChannelUpdate | None:
        """Check an inbound message before anything acts on it."""
        row = await self._store.fetch(phone)
        if row is None:
            return None
        return await self._apply(row, InboundObserved(classify_prefix(prefix)))

    async def _apply(self, row: SmsSession, event: ChannelEvent) -> ChannelUpdate:
        phone = row.phone_number
        for _ in range(CAS_ATTEMPTS):
            current = ChannelState.of(row)
            result = transition(current, event, row.trust_required)
            if result.state == current and not result.revoke:
                return ChannelUpdate(session=row, changed=False, downgraded=False)

            updated = await self._store.compare_and_set_channel(
                phone,
                expected_channel=current.channel,
                expected_downgraded=current.downgraded,
                channel=result.state.channel,
                downgraded=result.state.downgraded,
                revoke=result.revoke,
            )
            if updated is not None:
                if result.revoke:
                    logger.warning(
                        "Channel downgrade detected for %s (%s -> %s); session revoked",
                        mask_phone(phone),
                        current.channel.value,
                        result.state.channel.value,
                    )
                else:
                    logger.info(
                        "Channel for %s: %s -> %s",
                        mask_phone(phone),
                        current.channel.value,
                        result.state.channel.value,
                    )
                return ChannelUpdate(session=updated, changed=True, downgraded=result.revoke)

            # Lost the race; re-derive from whatever the row holds now.
            row = await self._store.fetch(phone)
            if row is None:
                raise StoreUnavailable(f"Session for {mask_phone(phone)} vanished mid-update")

        raise StoreUnavailable(f"Channel state for {mask_phone(phone)} kept changing")
