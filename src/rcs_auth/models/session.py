"""SQLAlchemy model for per-phone-number authentication sessions."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, Enum, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from rcs_auth.models.base import Base, UTCDateTime, utc_now


class ChannelType(str, enum.Enum):
    UNKNOWN = "unknown"
    PENDING = "pending"
    TRUSTED = "trusted"
    UNTRUSTED = "untrusted"


class AuthMethod(str, enum.Enum):
    MAGIC_LINK = "magic_link"
    OTP = "otp"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class SmsSession(Base):
    """The authoritative record for one phone number.

    Combines the identity binding (``email`` / ``user_id``), the
    authentication state (``session_token`` / ``authenticated_at`` /
    ``expires_at``), the rate-limit counters, any pending one-time code
    and the channel-trust state. There is exactly one row per phone
    number; every write path is an upsert or a keyed update.
    """

    __tablename__ = "sms_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    phone_number: Mapped[str] = mapped_column(
        String(32), nullable=False, unique=True, doc="E.164 phone number"
    )

    # Identity binding
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    email: Mapped[str | None] = mapped_column(String(256), nullable=True)

    # Authentication state
    session_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    auth_method: Mapped[AuthMethod] = mapped_column(
        Enum(AuthMethod, native_enum=False, length=16, values_callable=_enum_values),
        default=AuthMethod.MAGIC_LINK,
        nullable=False,
    )
    authenticated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Rate limiting
    auth_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # One-time code
    pending_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    code_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Channel trust
    channel_type: Mapped[ChannelType] = mapped_column(
        Enum(ChannelType, native_enum=False, length=16, values_callable=_enum_values),
        default=ChannelType.UNKNOWN,
        nullable=False,
    )
    channel_downgrade_detected: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    trust_required: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_message_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    session_duration_days: Mapped[int] = mapped_column(Integer, default=7, nullable=False)

    session_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, default=dict, nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        Index("ix_sms_sessions_user_id", "user_id"),
        Index("ix_sms_sessions_email", "email"),
        Index("ix_sms_sessions_expires_at", "expires_at"),
        Index("ix_sms_sessions_last_message_id", "last_message_id"),
    )

    def is_authenticated(self, now: datetime) -> bool:
        """True while a token is held and its expiry lies in the future."""
        return (
            self.authenticated_at is not None
            and self.session_token is not None
            and self.expires_at is not None
            and self.expires_at > now
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def __repr__(self) -> str:
        return (
            f"<SmsSession phone={self.phone_number!r} channel={self.channel_type.value} "
            f"downgraded={self.channel_downgrade_detected}>"
        )
