"""Stream model — one generation attempt for a chat."""

from datetime import UTC, datetime

from sqlalchemy import DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from deepsearch.database import Base


class Stream(Base):
    """Append-only record of a generation attempt.

    Existence means a generation was started, not that it finished.
    """

    __tablename__ = "streams"
    __table_args__ = (
        Index("ix_streams_chat_created", "chat_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    chat_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("chats.id", ondelete="CASCADE"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
