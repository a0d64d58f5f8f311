"""Chat endpoints — admission, persistence checkpoints, and resumable SSE.

POST /chat flow:
1. Admission check (AdmissionDenied -> 429), then record the request
2. Save the user's messages before generating (durability checkpoint)
3. Register a new stream id for the chat
4. Start the generation as a detached task publishing to Redis Streams
5. Return SSE read from that Redis stream

A client that loses the connection calls GET /chat/{chat_id}/stream to
replay the most recent generation, from the start or after the SSE id it
sends as Last-Event-ID.
"""

import asyncio
import json
from typing import Annotated
from uuid import uuid4

import redis.asyncio as aioredis
from fastapi import APIRouter, Header, HTTPException, Response, status
from fastapi.responses import StreamingResponse

from deepsearch.config import get_settings
from deepsearch.core.logging import chat_id_var, get_logger, stream_id_var
from deepsearch.core.streams import (
    EVENT_CHAT_CREATED,
    EVENT_DELTA,
    EVENT_DONE,
    EVENT_ERROR,
    EVENT_TOOL,
    GenerationStreamConsumer,
    GenerationStreamPublisher,
    format_event_id,
    resume_point,
    stream_key,
)
from deepsearch.deps import (
    ChatGeneratorDep,
    ChatStoreDep,
    CurrentUserId,
    RateLimiterDep,
    StreamRedis,
    StreamRegistryDep,
)
from deepsearch.schemas.chat import ChatRead, ChatRequest, ChatWithMessages, StreamIds
from deepsearch.services.chat_runner import run_generation
from deepsearch.services.chat_store import derive_title

settings = get_settings()
logger = get_logger(__name__)

router = APIRouter()

CHAT_ENDPOINT = "/api/v1/chat"

# Strong references so detached generations are not garbage collected
_running_generations: set[asyncio.Task] = set()

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _format_sse(event: str, data: str, event_id: str | None = None) -> str:
    """Format SSE message with multi-line support."""
    data_lines = "\n".join(f"data: {line}" for line in data.split("\n"))
    id_line = f"id: {event_id}\n" if event_id else ""
    return f"event: {event}\n{id_line}{data_lines}\n\n"


async def _sse_from_stream(redis: aioredis.Redis, stream_id: str, last_id: str = "0-0"):
    """Translate buffered generation events into SSE frames.

    Buffered events carry an SSE id so a reconnecting client can send it back
    as Last-Event-ID and skip what it already has.
    """
    yield _format_sse("stream_id", stream_id)

    consumer = GenerationStreamConsumer(
        redis,
        stream_id,
        last_id=last_id,
        heartbeat_interval=settings.chat_sse_heartbeat_interval,
        hard_timeout=settings.chat_sse_hard_timeout,
    )

    seen_seqs: set[str] = set()

    async for raw_event in consumer:
        seq = raw_event.get("seq", "")
        event_type = raw_event.get("type", "")
        event_id = format_event_id(stream_id, raw_event["id"]) if "id" in raw_event else None

        # Skip replayed events
        if seq in seen_seqs and seq != "-1":
            continue
        seen_seqs.add(seq)

        try:
            data = json.loads(raw_event.get("data", "{}"))
        except (json.JSONDecodeError, TypeError):
            data = {"raw": raw_event.get("data")}

        if event_type == EVENT_DELTA:
            yield _format_sse("token", data.get("text", ""), event_id)
        elif event_type in (EVENT_CHAT_CREATED, EVENT_TOOL, EVENT_DONE, EVENT_ERROR):
            yield _format_sse(event_type, json.dumps(data), event_id)
        elif event_type == "heartbeat":
            yield _format_sse("heartbeat", "{}")



@router.post("/chat")
async def chat(
    request: ChatRequest,
    user_id: CurrentUserId,
    rate_limiter: RateLimiterDep,
    chat_store: ChatStoreDep,
    stream_registry: StreamRegistryDep,
    generator: ChatGeneratorDep,
    redis: StreamRedis,
) -> Response:
    """Start a generation for a chat and stream it back as SSE."""
    # AdmissionDenied is rendered as 429 by the app's exception handler
    decision = await rate_limiter.check(user_id)
    await rate_limiter.record(user_id, CHAT_ENDPOINT)

    chat_id = request.chat_id or str(uuid4())
    title = derive_title(request.messages)
    chat_id_var.set(chat_id)

    # Saved before generating so a broken stream never loses the user's input
    await chat_store.upsert(
        user_id=user_id,
        chat_id=chat_id,
        title=title,
        messages=request.messages,
    )

    stream_id = str(uuid4())
    stream_id_var.set(stream_id)
    await stream_registry.append_stream(chat_id, stream_id)

    publisher = GenerationStreamPublisher(redis, stream_id)
    await publisher.setup(ttl=settings.chat_stream_ttl, maxlen=settings.chat_stream_maxlen)
    if request.chat_id is None:
        await publisher.emit_chat_created(chat_id)

    task = asyncio.create_task(
        run_generation(
            generator=generator,
            publisher=publisher,
            chat_store=chat_store,
            user_id=user_id,
            chat_id=chat_id,
            title=title,
            messages=request.messages,
        )
    )
    _running_generations.add(task)
    task.add_done_callback(_running_generations.discard)

    logger.info(
        "generation_started",
        chat_id=chat_id,
        stream_id=stream_id,
        message_count=len(request.messages),
        requests_today=decision.requests_today,
    )

    return StreamingResponse(
        _sse_from_stream(redis, stream_id),
        media_type="text/event-stream",
        headers={**_SSE_HEADERS, **decision.headers()},
    )


@router.get("/chat/{chat_id}/stream")
async def resume_chat_stream(
    chat_id: str,
    user_id: CurrentUserId,
    chat_store: ChatStoreDep,
    stream_registry: StreamRegistryDep,
    redis: StreamRedis,
    last_event_id: Annotated[str | None, Header()] = None,
) -> Response:
    """Replay the most recent generation of a chat, if it is still buffered.

    A Last-Event-ID from this generation resumes after that event; any other
    value replays from the start. 204 means there is nothing to resume; the
    stored messages are complete as far as the server knows.
    """
    chat = await chat_store.get_chat(chat_id, user_id)
    if chat is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")

    streams = await stream_registry.get_stream_ids(chat_id)
    stream_id = streams.most_recent_stream_id
    if stream_id is None or not await redis.exists(stream_key(stream_id)):
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    last_id = resume_point(last_event_id, stream_id)
    logger.info("generation_resumed", chat_id=chat_id, stream_id=stream_id, last_id=last_id)
    return StreamingResponse(
        _sse_from_stream(redis, stream_id, last_id),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


@router.get("/chats", response_model=list[ChatRead])
async def list_chats(user_id: CurrentUserId, chat_store: ChatStoreDep) -> list[ChatRead]:
    chats = await chat_store.get_chats(user_id)
    return [ChatRead.model_validate(c) for c in chats]


@router.get("/chats/{chat_id}", response_model=ChatWithMessages)
async def get_chat(
    chat_id: str,
    user_id: CurrentUserId,
    chat_store: ChatStoreDep,
) -> ChatWithMessages:
    chat = await chat_store.get_chat(chat_id, user_id)
    if chat is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
    return chat


@router.get("/chats/{chat_id}/streams", response_model=StreamIds)
async def get_chat_streams(
    chat_id: str,
    user_id: CurrentUserId,
    chat_store: ChatStoreDep,
    stream_registry: StreamRegistryDep,
) -> StreamIds:
    if await chat_store.get_chat(chat_id, user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
    return await stream_registry.get_stream_ids(chat_id)
