"""Authentication agent — LOGIN → email credential → verified session flow."""

from __future__ import annotations

import logging
import re
from urllib.parse import quote

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rcs_auth.agents.base import AgentResponse, BaseAgent
from rcs_auth.config import settings
from rcs_auth.database.repository import PhoneDirectoryRepository
from rcs_auth.errors import ChannelDowngraded, InvalidCredential, RateLimited, UpstreamUnavailable
from rcs_auth.models.session import AuthMethod, SmsSession
from rcs_auth.services.identity_provider import IdentityProvider
from rcs_auth.services.phone import mask_email, mask_phone
from rcs_auth.services.session_manager import SessionManager

logger = logging.getLogger(__name__)

AUTH_COMMANDS = frozenset({"LOGIN", "SIGNIN", "AUTH", "AUTHENTICATE"})
LOGOUT_COMMANDS = frozenset({"LOGOUT", "SIGNOUT", "EXIT", "QUIT"})
CODE_PATTERN = re.compile(r"^\d{6}$")


def is_auth_command(message: str) -> bool:
    return message.strip().upper() in AUTH_COMMANDS


def is_logout_command(message: str) -> bool:
    return message.strip().upper() in LOGOUT_COMMANDS


def is_code(message: str) -> bool:
    return bool(CODE_PATTERN.match(message.strip()))


class AuthAgent(BaseAgent):
    """Authenticates a phone number against the email identity bound to it.

    Flow
    ----
    1. The user texts LOGIN.  The attempt is counted against the rate
       limit and the email is taken from the existing session or the
       organisation phone directory.
    2. A pending session is upserted and the identity provider emails a
       magic link (or a 6-digit code for ``otp`` sessions).
    3. The link callback (:meth:`complete_magic_link`) or a code texted
       back (:meth:`verify_code`) promotes the session to authenticated.
    4. LOGOUT drops the credentials again.
    """

    def __init__(
        self,
        session_manager: SessionManager,
        identity: IdentityProvider,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        self._sessions = session_manager
        self._identity = identity
        self._session_factory = session_factory

    @property
    def name(self) -> str:
        return "AuthAgent"

    async def handle(self, phone: str, message: str, session: SmsSession | None) -> AgentResponse:
        """Route to the matching auth step based on the command."""
        if is_logout_command(message):
            return await self.logout(phone)
        if is_code(message):
            return await self.verify_code(phone, message.strip(), session)
        return await self.login(phone, session)

    # ── LOGIN ────────────────────────────────────────────

    async def login(self, phone: str, session: SmsSession | None) -> AgentResponse:
        try:
            await self._sessions.require_attempt(phone)
        except RateLimited as exc:
            minutes = exc.minutes_remaining(self._sessions.store.now())
            return AgentResponse(
                reply_text=f"⏳ Too many attempts. Please try again in {minutes} minutes."
            )

        email = session.email if session and session.email else await self._lookup_email(phone)
        if not email:
            logger.info("No directory entry for %s", mask_phone(phone))
            return AgentResponse(
                reply_text=(
                    "📱 Phone number not registered. "
                    "Please contact your administrator to set up access."
                )
            )

        method = AuthMethod(settings.default_auth_method)
        # The attempt was already counted by the rate limiter above.
        await self._sessions.upsert_pending_session(phone, email, method, record_attempt=False)

        redirect_to = f"{settings.app_url.rstrip('/')}/api/auth/callback?phone={quote(phone)}"
        try:
            await self._identity.issue_credential(email, redirect_to=redirect_to)
        except (InvalidCredential, UpstreamUnavailable) as exc:
            logger.error("Credential issue failed for %s: %s", mask_phone(phone), exc)
            return AgentResponse(reply_text="❌ Authentication failed. Please try again later.")

        if method is AuthMethod.OTP:
            instructions = "Reply with the 6-digit code from that email."
        else:
            instructions = f"Check {mask_email(email)} for your magic link."
        return AgentResponse(
            reply_text=(
                "🔐 Authentication email sent!\n\n"
                f"{instructions}\n\n"
                f"This secure session will last {settings.session_duration_days} days."
            ),
            track_channel=True,
        )

    async def _lookup_email(self, phone: str) -> str | None:
        async with self._session_factory() as db:
            repo = PhoneDirectoryRepository(db)
            return await repo.find_email_by_phone(phone)

    # ── Code entry ───────────────────────────────────────

    async def verify_code(self, phone: str, code: str, session: SmsSession | None) -> AgentResponse:
        if session is None or not session.email or session.auth_method is not AuthMethod.OTP:
            return AgentResponse(
                reply_text="🔒 No verification is pending. Text LOGIN to request a code."
            )

        try:
            credential = await self._identity.verify_credential(
                email=session.email, code=code, kind="email"
            )
        except InvalidCredential:
            rate = await self._sessions.check_and_record_attempt(phone)
            if rate.limited or rate.remaining_attempts == 0:
                return AgentResponse(
                    reply_text="❌ Too many failed attempts. Please request a new code."
                )
            return AgentResponse(
                reply_text=(
                    f"❌ Invalid code. {rate.remaining_attempts} attempts remaining. "
                    "Please check the code and try again."
                )
            )
        except UpstreamUnavailable:
            return AgentResponse(
                reply_text="❌ Verification failed. Please try again or request a new code."
            )

        try:
            await self._sessions.create_session(
                phone, session.email, credential.user_id, credential.token, AuthMethod.OTP
            )
        except ChannelDowngraded:
            return AgentResponse(reply_text=downgrade_notice())

        return AgentResponse(
            reply_text=(
                "✅ Authentication successful! You're now signed in for "
                f"{settings.session_duration_days} days. How can I help you today?"
            ),
            track_channel=True,
        )

    # ── Magic link ───────────────────────────────────────

    async def complete_magic_link(self, token_hash: str, kind: str = "magiclink") -> tuple[str, AgentResponse]:
        """Exchange a magic-link token and authenticate the matching phone.

        Returns the phone number and the confirmation to send it.  Raises
        :class:`InvalidCredential` if the link is invalid or no phone
        session is waiting for the email it belongs to.
        """
        credential = await self._identity.verify_credential(token_hash=token_hash, kind=kind)
        pending = await self._sessions.store.fetch_latest_by_email(credential.email)
        if pending is None:
            logger.error("No phone session found for %s", mask_email(credential.email))
            raise InvalidCredential("Session not found")

        phone = pending.phone_number
        await self._sessions.create_session(
            phone, credential.email, credential.user_id, credential.token, AuthMethod.MAGIC_LINK
        )
        return phone, AgentResponse(
            reply_text=(
                f"✅ You're authenticated for {settings.session_duration_days} days! "
                "You can now chat with the assistant here. "
                "Text LOGOUT anytime to sign out."
            ),
            track_channel=True,
        )

    # ── LOGOUT ───────────────────────────────────────────

    async def logout(self, phone: str) -> AgentResponse:
        await self._sessions.invalidate_session(phone)
        return AgentResponse(
            reply_text="👋 You've been signed out successfully. Text LOGIN to sign in again."
        )


def downgrade_notice() -> str:
    setup_url = settings.rcs_setup_url or f"{settings.app_url.rstrip('/')}/rcs-setup"
    return (
        "⚠️ Secure RCS channel unavailable.\n\n"
        "For your security, this conversation has been paused.\n\n"
        "To continue:\n"
        "• Android: Messages → Settings → Chat features → Enable\n"
        "• iPhone: Settings → Messages → RCS → Enable\n\n"
        "Then text LOGIN to sign in again.\n"
        f"Learn more: {setup_url}"
    )

