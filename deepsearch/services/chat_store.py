"""Chat store — transactional persistence of chats and their message lists.

A chat's messages are never patched individually. Every upsert replaces the
whole list inside one transaction, so readers see either the previous list or
the new one. The chat endpoint calls upsert twice per generation: once with
the user's messages before generating (a durability checkpoint) and once with
the full transcript when the reply is complete.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from deepsearch.core.errors import OwnershipViolation, StorageUnavailable
from deepsearch.core.logging import get_logger
from deepsearch.database import TRANSIENT_DB_ERRORS
from deepsearch.models.chat import Chat, Message, MessageRole
from deepsearch.schemas.chat import ChatMessageIn, ChatRead, ChatWithMessages, MessageRead

logger = get_logger(__name__)

DEFAULT_TITLE = "New Chat"
TITLE_MAX_CHARS = 50


def derive_title(messages: Sequence[ChatMessageIn]) -> str:
    """Title from the first user message, truncated to 50 characters."""
    first_user = next((m for m in messages if m.role == MessageRole.USER), None)
    if first_user is None:
        return DEFAULT_TITLE

    text = first_user.text()
    if not text.strip():
        return DEFAULT_TITLE

    title = text[:TITLE_MAX_CHARS].strip()
    if len(text) > TITLE_MAX_CHARS:
        title += "..."
    return title


class ChatStore:
    """Owns the chats and messages tables."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._session_maker = session_maker
        self._clock = clock

    async def upsert(
        self,
        *,
        user_id: str,
        chat_id: str,
        title: str,
        messages: Sequence[ChatMessageIn],
    ) -> Chat:
        """Create or update a chat and replace its message list atomically.

        Raises:
            OwnershipViolation: the chat exists under another user, including
                one created concurrently by that user. Nothing is written.
            StorageUnavailable: the database could not be reached. The
                transaction is rolled back; safe to retry.
        """
        now = self._clock()

        try:
            async with self._session_maker() as db, db.begin():
                chat = await db.get(Chat, chat_id, with_for_update=True)

                if chat is not None and chat.user_id != user_id:
                    logger.warning(
                        "chat_ownership_violation",
                        chat_id=chat_id,
                        owner_id=chat.user_id,
                        user_id=user_id,
                    )
                    raise OwnershipViolation(chat_id)

                if chat is None:
                    chat = Chat(
                        id=chat_id,
                        user_id=user_id,
                        title=title,
                        created_at=now,
                        updated_at=now,
                    )
                    db.add(chat)
                else:
                    chat.title = title
                    chat.updated_at = now
                await db.flush()

                await db.execute(delete(Message).where(Message.chat_id == chat_id))
                await self._insert_messages(db, chat_id, messages)
        except TRANSIENT_DB_ERRORS as e:
            logger.error("chat_upsert_storage_error", chat_id=chat_id, error=str(e))
            raise StorageUnavailable("chat_store.upsert", e) from e
        except IntegrityError as e:
            # Lost the race to create this id: the row appeared after our get
            owner_id = await self._owner_of(chat_id)
            if owner_id is not None and owner_id != user_id:
                logger.warning(
                    "chat_ownership_violation",
                    chat_id=chat_id,
                    owner_id=owner_id,
                    user_id=user_id,
                )
                raise OwnershipViolation(chat_id) from e
            raise

        logger.info("chat_upserted", chat_id=chat_id, message_count=len(messages))
        return chat

    async def _owner_of(self, chat_id: str) -> str | None:
        try:
            async with self._session_maker() as db:
                result = await db.execute(select(Chat.user_id).where(Chat.id == chat_id))
                return result.scalar_one_or_none()
        except TRANSIENT_DB_ERRORS as e:
            raise StorageUnavailable("chat_store.upsert", e) from e

    async def _insert_messages(
        self,
        db: AsyncSession,
        chat_id: str,
        messages: Sequence[ChatMessageIn],
    ) -> None:
        db.add_all([
            Message(
                chat_id=chat_id,
                role=MessageRole(message.role).value,
                parts=message.parts,
                order=index,
            )
            for index, message in enumerate(messages)
        ])
        await db.flush()

    async def get_chat(self, chat_id: str, user_id: str) -> ChatWithMessages | None:
        """Chat with messages in order, or None if missing or not owned by user_id."""
        try:
            async with self._session_maker() as db:
                result = await db.execute(
                    select(Chat)
                    .where(Chat.id == chat_id)
                    .where(Chat.user_id == user_id)
                )
                chat = result.scalar_one_or_none()
                if chat is None:
                    return None

                result = await db.execute(
                    select(Message)
                    .where(Message.chat_id == chat_id)
                    .order_by(Message.order.asc())
                )
                messages = list(result.scalars().all())
        except TRANSIENT_DB_ERRORS as e:
            raise StorageUnavailable("chat_store.get_chat", e) from e

        return ChatWithMessages(
            chat=ChatRead.model_validate(chat),
            messages=[MessageRead.model_validate(m) for m in messages],
        )

    async def get_chats(self, user_id: str) -> list[Chat]:
        """All chats of a user, most recently updated first."""
        try:
            async with self._session_maker() as db:
                result = await db.execute(
                    select(Chat)
                    .where(Chat.user_id == user_id)
                    .order_by(Chat.updated_at.desc())
                )
                return list(result.scalars().all())
        except TRANSIENT_DB_ERRORS as e:
            raise StorageUnavailable("chat_store.get_chats", e) from e
