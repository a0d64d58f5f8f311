"""Generation — streaming tool-calling loop against an OpenAI-compatible API.

The model gets one tool, ``search_web``, executed through the cached search
so repeated identical searches inside one conversation (or across users) are
served from the cache. The loop yields GenerationEvents that the chat runner
publishes to the generation's Redis stream.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

from openai import AsyncOpenAI, OpenAIError

from deepsearch.config import get_settings
from deepsearch.core.errors import UpstreamOperationFailed
from deepsearch.core.logging import get_logger
from deepsearch.models.chat import MessageRole
from deepsearch.schemas.chat import ChatMessageIn
from deepsearch.services.web_search import SearchFn

logger = get_logger(__name__)
settings = get_settings()

SYSTEM_PROMPT = """You are a helpful research assistant with access to real-time web search.

Today's date is {today}.

- Use the search_web tool for any question that benefits from current information, facts, or data.
- Search again with different terms when the first results are not enough.
- Give complete answers and cite every factual claim inline with a markdown link, e.g. [source title](https://example.com).
"""

SEARCH_WEB_SCHEMA: dict = {
    "type": "function",
    "function": {
        "name": "search_web",
        "description": "Search the web. Returns titles, links and snippets.",
        "parameters": {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "The query to search the web for",
                },
            },
            "required": ["query"],
        },
    },
}


@dataclass
class GenerationEvent:
    """Event emitted by the loop: token, tool, done or error."""

    event: str
    data: str | dict | None = None


def _tool_call_message(text: str, tool_calls: Iterable[dict]) -> ChatMessageIn:
    parts: list[dict] = [{"type": "text", "text": text}] if text else []
    for tc in tool_calls:
        try:
            args = json.loads(tc["arguments"] or "{}")
        except json.JSONDecodeError:
            args = {}
        parts.append({
            "type": "tool-invocation",
            "toolCallId": tc["id"],
            "toolName": tc["name"],
            "args": args,
        })
    return ChatMessageIn(role=MessageRole.ASSISTANT, parts=parts)


def _parts_of(message: ChatMessageIn, part_type: str) -> list[dict]:
    if not isinstance(message.parts, list):
        return []
    return [p for p in message.parts if isinstance(p, dict) and p.get("type") == part_type]


def _result_content(part: dict) -> str:
    result = part.get("result")
    return result if isinstance(result, str) else json.dumps(result)


def to_llm_messages(messages: Sequence[ChatMessageIn]) -> list[dict]:
    """Chat history as OpenAI messages.

    Stored tool invocations are replayed as assistant ``tool_calls`` followed
    by one ``tool`` message per result. Invocations and results that lack
    their counterpart are dropped, since the API rejects unpaired tool turns.
    """
    invoked = {
        p.get("toolCallId")
        for m in messages
        if m.role == MessageRole.ASSISTANT
        for p in _parts_of(m, "tool-invocation")
    }
    answered = {
        p.get("toolCallId")
        for m in messages
        if m.role == MessageRole.TOOL
        for p in _parts_of(m, "tool-result")
    }
    paired = invoked & answered

    llm_messages: list[dict] = []
    for m in messages:
        if m.role == MessageRole.TOOL:
            llm_messages.extend(
                {"role": "tool", "tool_call_id": p["toolCallId"], "content": _result_content(p)}
                for p in _parts_of(m, "tool-result")
                if p.get("toolCallId") in paired
            )
            continue

        invocations = [
            p for p in _parts_of(m, "tool-invocation") if p.get("toolCallId") in paired
        ]
        if m.role == MessageRole.ASSISTANT and invocations:
            llm_messages.append({
                "role": "assistant",
                "content": m.text() or None,
                "tool_calls": [
                    {
                        "id": p["toolCallId"],
                        "type": "function",
                        "function": {
                            "name": p.get("toolName", ""),
                            "arguments": json.dumps(p.get("args") or {}),
                        },
                    }
                    for p in invocations
                ],
            })
        else:
            llm_messages.append({"role": m.role.value, "content": m.text()})
    return llm_messages


class ChatGenerator:
    """Runs the model over a chat history, executing web searches as needed."""

    def __init__(
        self,
        *,
        search: SearchFn,
        client: AsyncOpenAI | None = None,
        model: str | None = None,
        max_steps: int | None = None,
    ) -> None:
        self._search = search
        self._client = client or AsyncOpenAI(
            api_key=settings.openai_api_key,
            base_url=settings.llm_base_url,
        )
        self._model = model or settings.llm_model
        self._max_steps = max_steps or settings.llm_max_steps

    async def _run_search(self, arguments: str) -> tuple[str, bool]:
        """Execute a search_web call. Returns (tool message content, success)."""
        try:
            args = json.loads(arguments or "{}")
        except json.JSONDecodeError:
            args = {}
        query = str(args.get("query", "")).strip()
        if not query:
            return json.dumps({"error": "Missing query"}), False

        try:
            results = await self._search(query, num=settings.web_search_topk)
        except UpstreamOperationFailed as e:
            logger.warning("search_tool_failed", query=query[:80], error=str(e))
            return json.dumps({"error": str(e)}), False

        return json.dumps([r.model_dump(exclude_none=True) for r in results]), True

    async def generate(self, history: Sequence[ChatMessageIn]) -> AsyncIterator[GenerationEvent]:
        """Stream the assistant reply for ``history``.

        The final ``done`` event carries the full reply text and the turns to
        append to the transcript: assistant tool calls, their results and the
        closing assistant text, in order.
        """
        today = datetime.now(UTC).date().isoformat()
        messages: list[dict] = [
            {"role": "system", "content": SYSTEM_PROMPT.format(today=today)},
            *to_llm_messages(history),
        ]

        full_response = ""
        finish_reason = "stop"
        tool_calls_made = 0
        response_messages: list[ChatMessageIn] = []

        for step in range(self._max_steps):
            try:
                stream = await self._client.chat.completions.create(
                    model=self._model,
                    messages=messages,
                    tools=[SEARCH_WEB_SCHEMA],
                    max_tokens=settings.llm_max_tokens,
                    stream=True,
                )
            except OpenAIError as e:
                yield GenerationEvent(event="error", data=str(e))
                return

            streamed_content = ""
            tool_calls_acc: dict[int, dict] = {}

            try:
                async for chunk in stream:
                    choice = chunk.choices[0] if chunk.choices else None
                    if not choice:
                        continue

                    delta = choice.delta
                    if delta.content:
                        streamed_content += delta.content
                        full_response += delta.content
                        yield GenerationEvent(event="token", data=delta.content)

                    if delta.tool_calls:
                        for tc in delta.tool_calls:
                            acc = tool_calls_acc.setdefault(
                                tc.index, {"id": "", "name": "", "arguments": ""}
                            )
                            if tc.id:
                                acc["id"] = tc.id
                            if tc.function and tc.function.name:
                                acc["name"] = tc.function.name
                            if tc.function and tc.function.arguments:
                                acc["arguments"] += tc.function.arguments

                    if choice.finish_reason:
                        finish_reason = choice.finish_reason
            except OpenAIError as e:
                yield GenerationEvent(event="error", data=f"Stream error: {e}")
                return

            if not tool_calls_acc:
                if streamed_content:
                    response_messages.append(
                        ChatMessageIn(role=MessageRole.ASSISTANT, content=streamed_content)
                    )
                break

            response_messages.append(_tool_call_message(streamed_content, tool_calls_acc.values()))
            results: list[dict] = []

            messages.append({
                "role": "assistant",
                "content": streamed_content or None,
                "tool_calls": [
                    {
                        "id": tc["id"],
                        "type": "function",
                        "function": {"name": tc["name"], "arguments": tc["arguments"]},
                    }
                    for tc in tool_calls_acc.values()
                ],
            })

            for tc in tool_calls_acc.values():
                tool_calls_made += 1
                yield GenerationEvent(event="tool", data={"tool": tc["name"], "phase": "called"})

                if tc["name"] == "search_web":
                    content, ok = await self._run_search(tc["arguments"])
                else:
                    content, ok = json.dumps({"error": f"Unknown tool: {tc['name']}"}), False

                yield GenerationEvent(
                    event="tool",
                    data={"tool": tc["name"], "phase": "completed" if ok else "failed"},
                )
                messages.append({
                    "role": "tool",
                    "tool_call_id": tc["id"],
                    "content": content,
                })
                results.append({
                    "type": "tool-result",
                    "toolCallId": tc["id"],
                    "toolName": tc["name"],
                    "result": content,
                })

            response_messages.append(ChatMessageIn(role=MessageRole.TOOL, parts=results))
        else:
            logger.warning("generation_max_steps_reached", max_steps=self._max_steps)
            finish_reason = "max_steps"

        yield GenerationEvent(
            event="done",
            data={
                "text": full_response,
                "finish_reason": finish_reason,
                "tool_calls": tool_calls_made,
                "steps": step + 1,
                "messages": response_messages,
            },
        )
