"""User and request-log models.

Users are provisioned by the external identity provider; this service only
reads the admin flag. UserRequest rows are the ledger the daily quota counts.
Neither chats nor user_requests reference users by foreign key: a user
without a row is a valid standard user.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import Boolean, DateTime, Index, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from deepsearch.database import Base


def _utcnow() -> datetime:
    return datetime.now(UTC)


class User(Base):
    """Identity owned by the auth provider."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(255))
    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
    )


class UserRequest(Base):
    """One accepted call to a rate-limited endpoint."""

    __tablename__ = "user_requests"
    __table_args__ = (
        Index("ix_user_requests_user_date", "user_id", "request_date"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    # No FK to users: a user without a row is a standard user
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False)
    request_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )
