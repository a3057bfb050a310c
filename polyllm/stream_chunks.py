"""Helpers for reassembling streamed tool calls and rewriting chunks."""

from __future__ import annotations

import logging
import uuid

from .schema import ChatCompletionResponse, Choice, FunctionCall, ToolCall

LOG = logging.getLogger(__name__)


class ToolCallAccumulator:
    """Merge streamed tool-call fragments into complete calls, keyed by index.

    The first fragment list seeds the in-progress calls. Later fragments for
    a known index only extend ``function.arguments``; name and id are fixed
    by the first fragment. A fragment for a new index starts another call
    when it names a function and is dropped otherwise.
    """

    def __init__(self) -> None:
        self._calls: dict[int, ToolCall] = {}
        self.dropped = 0

    def __bool__(self) -> bool:
        return bool(self._calls)

    def __len__(self) -> int:
        return len(self._calls)

    def add(self, fragments: list[ToolCall]) -> None:
        seeding = not self._calls
        for position, fragment in enumerate(fragments):
            index = fragment.index if fragment.index is not None else position
            existing = self._calls.get(index)
            if existing is not None:
                existing.function.arguments += fragment.function.arguments or ""
                continue
            if not seeding and not fragment.function.name:
                self.dropped += 1
                LOG.warning("dropping nameless tool call fragment for unknown index=%s", index)
                continue
            self._calls[index] = ToolCall(
                id=fragment.id,
                type=fragment.type or "function",
                function=FunctionCall(
                    name=fragment.function.name,
                    arguments=fragment.function.arguments or "",
                ),
            )

    def calls(self) -> list[ToolCall]:
        """Return the completed calls in index order, with ids filled in."""
        out: list[ToolCall] = []
        for index in sorted(self._calls):
            call = self._calls[index]
            out.append(
                ToolCall(
                    id=call.id or f"call_{uuid.uuid4().hex}",
                    type="function",
                    function=FunctionCall(name=call.function.name or "", arguments=call.function.arguments),
                )
            )
        return out


def delta_tool_calls(chunk: ChatCompletionResponse) -> list[ToolCall]:
    """Return the tool-call fragments carried by a chunk's primary choice."""
    choice = chunk.primary_choice()
    if choice is None:
        return []
    carrier = choice.delta or choice.message
    if carrier is None or not carrier.tool_calls:
        return []
    return list(carrier.tool_calls)


def message_tool_calls(response: ChatCompletionResponse) -> list[ToolCall]:
    """Return complete tool calls from a non-streaming response."""
    choice = response.primary_choice()
    if choice is None or choice.message is None or not choice.message.tool_calls:
        return []
    out: list[ToolCall] = []
    for call in choice.message.tool_calls:
        out.append(
            ToolCall(
                id=call.id or f"call_{uuid.uuid4().hex}",
                type="function",
                function=FunctionCall(name=call.function.name or "", arguments=call.function.arguments or ""),
            )
        )
    return out


def finish_reason(chunk: ChatCompletionResponse) -> str | None:
    choice = chunk.primary_choice()
    return choice.finish_reason if choice else None


def has_content(choice: Choice) -> bool:
    carrier = choice.delta or choice.message
    if carrier is None:
        return False
    return carrier.content not in (None, "", [])


def delta_text(chunk: ChatCompletionResponse | None) -> str:
    """Text carried by the first choice of a streamed chunk."""
    choice = chunk.primary_choice() if chunk is not None else None
    if choice is None or choice.delta is None:
        return ""
    content = choice.delta.content
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(part.get("text", "") for part in content if isinstance(part, dict))
    return ""


def without_finish_reason(chunk: ChatCompletionResponse) -> ChatCompletionResponse:
    """Copy a chunk with every choice's finish reason cleared."""
    out = chunk.model_copy(deep=True)
    for choice in out.choices:
        choice.finish_reason = None
    return out


def content_only(chunk: ChatCompletionResponse) -> ChatCompletionResponse:
    """Copy a chunk without tool-call fragments or finish reasons."""
    out = without_finish_reason(chunk)
    for choice in out.choices:
        for carrier in (choice.delta, choice.message):
            if carrier is not None:
                carrier.tool_calls = None
    return out
