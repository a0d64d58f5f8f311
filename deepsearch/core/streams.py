"""Redis Streams buffer for chat generations.

Each generation attempt publishes its events to ``chat-stream:{stream_id}``.
The client that started the generation and any client that reconnects later
read the same stream, which is what makes a generation resumable. Events carry
sequential ids so a reader can drop duplicates after a reconnect, and a
reader can resume after the last Redis message id it saw. The stream
expires a few minutes after the generation finishes.
"""

from __future__ import annotations

import json
import re
import time

import redis.asyncio as aioredis

from deepsearch.config import get_settings

# ── Event types ──────────────────────────────────────────────────────

EVENT_CHAT_CREATED = "chat_created"  # new chat id assigned by the server
EVENT_DELTA = "delta"                # text chunk
EVENT_TOOL = "tool"                  # tool called / completed
EVENT_DONE = "done"                  # generation completed
EVENT_ERROR = "error"                # generation failed

TERMINAL_EVENTS = (EVENT_DONE, EVENT_ERROR)


def stream_key(stream_id: str) -> str:
    return f"chat-stream:{stream_id}"


_REDIS_ID = re.compile(r"^\d+-\d+$")


def format_event_id(stream_id: str, msg_id: str) -> str:
    """SSE event id: the stream id and the Redis message id, slash-separated."""
    return f"{stream_id}/{msg_id}"


def resume_point(last_event_id: str | None, stream_id: str) -> str:
    """Redis id to resume ``stream_id`` after, given a client's Last-Event-ID.

    Ids that are malformed or that belong to another stream replay from the
    start.
    """
    if not last_event_id:
        return "0-0"
    owner, _, msg_id = last_event_id.rpartition("/")
    if owner != stream_id or not _REDIS_ID.match(msg_id):
        return "0-0"
    return msg_id


class GenerationStreamPublisher:
    """Publishes events for a single generation attempt.

    Usage::

        pub = GenerationStreamPublisher(redis, stream_id)
        await pub.setup(ttl=600)
        await pub.emit_delta("Hello")
        await pub.emit_done()
    """

    def __init__(self, redis: aioredis.Redis, stream_id: str) -> None:
        self._redis = redis
        self._key = stream_key(stream_id)
        self._seq = 0
        self._ttl = 600
        self._maxlen = 2000

    async def setup(self, ttl: int = 600, maxlen: int = 2000) -> None:
        self._ttl = ttl
        self._maxlen = maxlen
        await self._redis.expire(self._key, ttl)

    async def _emit(self, event_type: str, payload: dict) -> str:
        """Append an event. Returns the Redis stream message id."""
        self._seq += 1
        fields = {
            "seq": str(self._seq),
            "type": event_type,
            "ts": str(time.time()),
            "data": json.dumps(payload, default=str),
        }
        msg_id = await self._redis.xadd(
            self._key,
            fields,
            maxlen=self._maxlen,
            approximate=True,
        )
        # XADD creates the key, so the TTL must be (re)applied after it
        if self._seq == 1 or self._seq % 10 == 0 or event_type in TERMINAL_EVENTS:
            await self._redis.expire(self._key, self._ttl)
        return msg_id

    async def emit_chat_created(self, chat_id: str) -> str:
        return await self._emit(EVENT_CHAT_CREATED, {"chat_id": chat_id})

    async def emit_delta(self, text: str) -> str:
        return await self._emit(EVENT_DELTA, {"text": text})

    async def emit_tool(self, tool_name: str, phase: str, detail: dict | None = None) -> str:
        """phase: 'called' or 'completed' or 'failed'"""
        return await self._emit(EVENT_TOOL, {
            "tool": tool_name, "phase": phase, **(detail or {}),
        })

    async def emit_done(self, *, finish_reason: str = "stop", tool_calls: int = 0) -> str:
        return await self._emit(EVENT_DONE, {
            "finish_reason": finish_reason,
            "tool_calls": tool_calls,
        })

    async def emit_error(self, code: str, message: str | None = None) -> str:
        return await self._emit(EVENT_ERROR, {"code": code, "message": message})


class GenerationStreamConsumer:
    """Async iterator over the events of one generation.

    Usage::

        async for event in GenerationStreamConsumer(redis, stream_id):
            # event = {"id": "1-0", "seq": "1", "type": "delta", "ts": "...", "data": "{...}"}
            ...

    Reads messages after ``last_id`` (``0-0`` replays everything). Stops after
    a terminal event or when ``hard_timeout`` elapses. Emits a synthetic
    heartbeat (seq ``-1``, no ``id``) while the stream is idle.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        stream_id: str,
        *,
        last_id: str = "0-0",
        block_ms: int = 500,
        heartbeat_interval: float = 15.0,
        hard_timeout: float = 180.0,
    ) -> None:
        self._redis = redis
        self._key = stream_key(stream_id)
        self._last_id = last_id
        self._block_ms = block_ms
        self._heartbeat_interval = heartbeat_interval
        self._hard_timeout = hard_timeout

    def __aiter__(self):
        return self._consume()

    async def _consume(self):
        start_time = time.time()
        last_event_time = start_time

        while True:
            if time.time() - start_time > self._hard_timeout:
                yield {
                    "seq": "-1",
                    "type": EVENT_ERROR,
                    "ts": str(time.time()),
                    "data": json.dumps({"code": "hard_timeout", "message": "Stream timeout"}),
                }
                return

            result = await self._redis.xread(
                {self._key: self._last_id},
                block=self._block_ms,
                count=50,
            )

            if not result:
                if time.time() - last_event_time >= self._heartbeat_interval:
                    yield {
                        "seq": "-1",
                        "type": "heartbeat",
                        "ts": str(time.time()),
                        "data": "{}",
                    }
                    last_event_time = time.time()
                continue

            for _stream_name, messages in result:
                for msg_id, fields in messages:
                    self._last_id = msg_id
                    last_event_time = time.time()

                    decoded = {"id": msg_id.decode() if isinstance(msg_id, bytes) else msg_id}
                    for k, v in fields.items():
                        key = k.decode() if isinstance(k, bytes) else k
                        val = v.decode() if isinstance(v, bytes) else v
                        decoded[key] = val

                    yield decoded

                    if decoded.get("type") in TERMINAL_EVENTS:
                        return


# ── Redis connection pool (singleton) ────────────────────────────────

_redis_pool: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis:
    """Get or create the shared async Redis client."""
    global _redis_pool
    if _redis_pool is None:
        settings = get_settings()
        _redis_pool = aioredis.from_url(
            settings.redis_url,
            decode_responses=False,  # consumer decodes
        )
    return _redis_pool


async def close_redis() -> None:
    """Close the Redis connection pool (call on shutdown)."""
    global _redis_pool
    if _redis_pool is not None:
        await _redis_pool.aclose()
        _redis_pool = None
