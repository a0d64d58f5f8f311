"""Chat request/response schemas."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from deepsearch.models.chat import MessageRole


class ChatMessageIn(BaseModel):
    """A message as supplied by the client.

    Either structured ``parts`` or a plain ``content`` string; plain content
    is stored as a single text part.
    """

    role: MessageRole
    parts: Any = None
    content: str | None = None

    @model_validator(mode="after")
    def _fill_parts(self) -> "ChatMessageIn":
        if self.parts is None:
            self.parts = [{"type": "text", "text": self.content or ""}]
        return self

    def text(self) -> str:
        """Plain text of the message, joined from its text parts."""
        if self.content is not None:
            return self.content
        if isinstance(self.parts, str):
            return self.parts
        if isinstance(self.parts, list):
            return "".join(
                p.get("text", "")
                for p in self.parts
                if isinstance(p, dict) and p.get("type") == "text"
            )
        return ""


class ChatRequest(BaseModel):
    chat_id: str | None = Field(default=None, max_length=255)
    messages: list[ChatMessageIn] = Field(min_length=1)


class MessageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    role: MessageRole
    parts: Any
    order: int
    created_at: datetime | None = None


class ChatRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    title: str
    created_at: datetime | None = None
    updated_at: datetime


class ChatWithMessages(BaseModel):
    chat: ChatRead
    messages: list[MessageRead]


class StreamIds(BaseModel):
    """Stream ids for a chat, newest first."""

    stream_ids: list[str] = Field(default_factory=list)
    most_recent_stream_id: str | None = None
