"""Base agent — abstract interface every agent must implement."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rcs_auth.models.session import SmsSession


@dataclass
class AgentResponse:
    """Value object returned by an agent after processing a message."""

    reply_text: str
    track_channel: bool = False


class BaseAgent(ABC):
    """Abstract base class for all conversational agents.

    Every agent receives the sender's phone number, the raw message text
    and the sender's current session row (``None`` before first
    contact).  It returns an ``AgentResponse`` containing the reply to
    send back; ``track_channel`` asks the dispatcher to request a
    delivery-status callback so the channel can be verified.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable agent name (used in logs and routing)."""

    @abstractmethod
    async def handle(
        self,
        phone: str,
        message: str,
        session: SmsSession | None,
    ) -> AgentResponse:
        """Process a user message and return a response.

        Parameters
        ----------
        phone:
            The sender's E.164 phone number.
        message:
            The raw text the user sent.
        session:
            The sender's session row as last read from the store.
        """
