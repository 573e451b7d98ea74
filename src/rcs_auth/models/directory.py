"""SQLAlchemy model for the organisation phone directory."""

from datetime import datetime

from sqlalchemy import Boolean, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from rcs_auth.models.base import Base, UTCDateTime, utc_now


class PhoneAssignment(Base):
    """A phone number an organisation has assigned to one of its members.

    Consulted on first contact, before any session row exists, to find
    the email address a login link should be sent to.
    """

    __tablename__ = "organization_phone_numbers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[str] = mapped_column(
        String(64), nullable=False, doc="Organisation the number belongs to"
    )
    phone_number: Mapped[str] = mapped_column(
        String(32), nullable=False, unique=True, doc="E.164 phone number"
    )
    assigned_to_email: Mapped[str] = mapped_column(String(256), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)

    __table_args__ = (Index("ix_org_phone_numbers_org_id", "org_id"),)

    def __repr__(self) -> str:
        return (
            f"<PhoneAssignment id={self.id} org={self.org_id!r} "
            f"phone={self.phone_number!r}>"
        )
