"""Pydantic schemas for API and service boundaries."""

from deepsearch.schemas.chat import (
    ChatMessageIn,
    ChatRead,
    ChatRequest,
    ChatWithMessages,
    MessageRead,
    StreamIds,
)
from deepsearch.schemas.rate_limit import AdmissionResult

__all__ = [
    "AdmissionResult",
    "ChatMessageIn",
    "ChatRead",
    "ChatRequest",
    "ChatWithMessages",
    "MessageRead",
    "StreamIds",
]
