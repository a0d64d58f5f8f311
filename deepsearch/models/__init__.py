"""SQLAlchemy models package."""

from deepsearch.models.cache_entry import CacheEntry
from deepsearch.models.chat import Chat, Message, MessageRole
from deepsearch.models.stream import Stream
from deepsearch.models.user import User, UserRequest

__all__ = [
    "CacheEntry",
    "Chat",
    "Message",
    "MessageRole",
    "Stream",
    "User",
    "UserRequest",
]
