"""Message router — dispatches incoming messages to the correct agent."""

from __future__ import annotations

import logging

from rcs_auth.agents.auth_agent import (
    AuthAgent,
    downgrade_notice,
    is_auth_command,
    is_code,
    is_logout_command,
)
from rcs_auth.agents.base import AgentResponse
from rcs_auth.errors import PermanentDeliveryError, UpstreamUnavailable
from rcs_auth.models.session import AuthMethod, ChannelType
from rcs_auth.services.channel_trust import classify_prefix
from rcs_auth.services.phone import mask_phone
from rcs_auth.services.session_manager import SessionManager
from rcs_auth.services.transport import MessageTransport, SentMessage, send_with_retry

logger = logging.getLogger(__name__)


class MessageRouter:
    """Central router that decides which agent handles a message.

    Routing logic
    -------------
    * The inbound channel is checked first; a downgrade ends the turn.
    * LOGIN / LOGOUT and 6-digit codes (for ``otp`` sessions) → ``AuthAgent``
    * Authenticated users → answered with their resolved user context
    * Everyone else → prompted to text LOGIN
    """

    def __init__(
        self,
        session_manager: SessionManager,
        auth_agent: AuthAgent,
        transport: MessageTransport,
    ) -> None:
        self._sessions = session_manager
        self._auth_agent = auth_agent
        self._transport = transport

    async def route(self, phone: str, message: str, channel_prefix: str | None = None) -> AgentResponse:
        """Route a message to the appropriate agent and return its response.

        Parameters
        ----------
        phone:
            The sender's E.164 phone number.
        message:
            The raw text body of the message.
        channel_prefix:
            Transport indicator the provider attached to the inbound
            message (``RCS``, ``SM``, ``MM``), if any.
        """
        update = await self._sessions.check_inbound_channel(phone, channel_prefix)
        if update is not None and update.downgraded:
            logger.warning("Inbound from %s arrived after a channel downgrade", mask_phone(phone))
            return AgentResponse(reply_text=downgrade_notice())

        session = await self._sessions.get_session(phone)

        if is_auth_command(message) or is_logout_command(message):
            logger.info("Routing %s → %s", mask_phone(phone), self._auth_agent.name)
            return await self._auth_agent.handle(phone, message, session)

        if is_code(message) and session is not None and session.auth_method is AuthMethod.OTP:
            logger.info("Routing code from %s → %s", mask_phone(phone), self._auth_agent.name)
            return await self._auth_agent.handle(phone, message, session)

        if session is not None and session.is_authenticated(self._sessions.store.now()):
            if session.trust_required and classify_prefix(channel_prefix) is not ChannelType.TRUSTED:
                # Channel never verified as trusted: refuse without revoking.
                logger.warning("Refusing request from %s over %s", mask_phone(phone), channel_prefix or "SMS")
                return AgentResponse(reply_text=downgrade_notice())
            return await self._answer_authenticated(phone)

        return AgentResponse(
            reply_text=(
                "🔒 Authentication required. Text LOGIN to receive a secure "
                "sign-in link by email."
            )
        )

    async def _answer_authenticated(self, phone: str) -> AgentResponse:
        context = await self._sessions.get_user_context(phone)
        if context is None:
            return AgentResponse(
                reply_text="🔒 Your session has ended. Text LOGIN to sign in again."
            )

        # ── Authenticated — future task routing goes here ─────
        logger.info("User %s is authenticated; no task agent registered yet", mask_phone(phone))
        org = context.org_id or "your organisation"
        role = context.user_role or "member"
        return AgentResponse(
            reply_text=(
                f"👋 You're signed in to {org} as {role}. "
                "Task-based features are coming soon.\n\n"
                "Text LOGOUT to end your session."
            ),
            track_channel=True,
        )

    async def reply(self, phone: str, response: AgentResponse) -> SentMessage | None:
        """Deliver *response* and remember its id for channel tracking.

        Returns ``None`` when delivery failed; the failure is logged.
        """
        try:
            sent = await send_with_retry(
                self._transport, phone, response.reply_text, track_channel=response.track_channel
            )
        except (PermanentDeliveryError, UpstreamUnavailable) as exc:
            logger.error("Reply to %s not delivered: %s", mask_phone(phone), exc)
            return None

        if response.track_channel:
            await self._sessions.record_outbound_message(phone, sent.message_id)
        return sent

    async def handle(self, phone: str, message: str, channel_prefix: str | None = None) -> AgentResponse:
        """Route *message* and send the reply back to *phone*."""
        response = await self.route(phone, message, channel_prefix)
        await self.reply(phone, response)
        return response
