"""Stream registry — append-only log of generation attempts per chat."""

from collections.abc import Callable
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from deepsearch.core.errors import StorageUnavailable
from deepsearch.core.logging import get_logger
from deepsearch.database import TRANSIENT_DB_ERRORS
from deepsearch.models.stream import Stream
from deepsearch.schemas.chat import StreamIds

logger = get_logger(__name__)


class StreamRegistry:
    """Records which stream ids were started for a chat.

    A row means a generation was attempted. Whether it finished is answered
    by the chat's stored messages, not by this table.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._session_maker = session_maker
        self._clock = clock

    async def append_stream(self, chat_id: str, stream_id: str) -> Stream:
        stream = Stream(id=stream_id, chat_id=chat_id, created_at=self._clock())
        try:
            async with self._session_maker() as db, db.begin():
                db.add(stream)
        except TRANSIENT_DB_ERRORS as e:
            raise StorageUnavailable("stream_registry.append_stream", e) from e

        logger.debug("stream_appended", chat_id=chat_id, stream_id=stream_id)
        return stream

    async def get_stream_ids(self, chat_id: str) -> StreamIds:
        try:
            async with self._session_maker() as db:
                result = await db.execute(
                    select(Stream.id)
                    .where(Stream.chat_id == chat_id)
                    .order_by(Stream.created_at.desc())
                )
                stream_ids = list(result.scalars().all())
        except TRANSIENT_DB_ERRORS as e:
            raise StorageUnavailable("stream_registry.get_stream_ids", e) from e

        return StreamIds(
            stream_ids=stream_ids,
            most_recent_stream_id=stream_ids[0] if stream_ids else None,
        )
