"""Chat runner — drives one generation attempt to completion.

Runs detached from the HTTP request so a client disconnect does not abort the
generation; the client can reconnect and replay the Redis stream. When the
reply is complete the full transcript, tool calls and results included, is
saved with a second upsert. If that save fails for any reason the error is
logged and the stream still completes, so the reply reaches the client but
may be missing from stored history.
"""

from __future__ import annotations

from collections.abc import Sequence

from deepsearch.core.logging import get_logger
from deepsearch.core.streams import GenerationStreamPublisher
from deepsearch.models.chat import MessageRole
from deepsearch.schemas.chat import ChatMessageIn
from deepsearch.services.chat_store import ChatStore
from deepsearch.services.generation import ChatGenerator

logger = get_logger(__name__)


async def run_generation(
    *,
    generator: ChatGenerator,
    publisher: GenerationStreamPublisher,
    chat_store: ChatStore,
    user_id: str,
    chat_id: str,
    title: str,
    messages: Sequence[ChatMessageIn],
) -> str | None:
    """Generate a reply, publish it, and persist the updated transcript.

    Returns the reply text, or None if generation failed.
    """
    reply = ""
    done_data: dict = {}

    try:
        async for event in generator.generate(messages):
            if event.event == "token":
                reply += str(event.data)
                await publisher.emit_delta(str(event.data))
            elif event.event == "tool" and isinstance(event.data, dict):
                await publisher.emit_tool(
                    event.data.get("tool", ""),
                    event.data.get("phase", ""),
                )
            elif event.event == "error":
                logger.warning("generation_error", error=str(event.data))
                await publisher.emit_error("generation_error", str(event.data))
                return None
            elif event.event == "done" and isinstance(event.data, dict):
                done_data = event.data
    except Exception as e:
        # Detached task: nothing above us would see this
        logger.exception("generation_crashed", error=str(e))
        await publisher.emit_error("generation_crashed", "Oops, an error occurred!")
        return None

    reply = done_data.get("text", reply)
    response = done_data.get("messages") or [
        ChatMessageIn(role=MessageRole.ASSISTANT, content=reply),
    ]
    updated = [*messages, *response]

    try:
        await chat_store.upsert(
            user_id=user_id,
            chat_id=chat_id,
            title=title,
            messages=updated,
        )
    except Exception as e:
        # The reply was already streamed; the stream must still end with done
        logger.exception("chat_save_failed", chat_id=chat_id, error=str(e))

    await publisher.emit_done(
        finish_reason=done_data.get("finish_reason", "stop"),
        tool_calls=done_data.get("tool_calls", 0),
    )
    logger.info(
        "generation_completed",
        chat_id=chat_id,
        reply_chars=len(reply),
        tool_calls=done_data.get("tool_calls", 0),
    )
    return reply
