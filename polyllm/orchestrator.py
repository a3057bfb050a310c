"""Completion loop: resolve, call the backend, run tool rounds, repeat.

The loop turns one logical request into one event sequence. Content from
every round is forwarded as it arrives, tool-call fragments are held back
and executed, and the caller sees exactly one terminal event at the end.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable

from .errors import PolyLLMError, RequestFailedError, ToolLoopExceededError
from .json_helpers import parse_json_object, to_bounded_json
from .mcp_client import MCPError
from .providers import ProviderRegistry
from .schema import ChatCompletionMessage, ChatCompletionRequest, StreamEvent, Tool, ToolCall
from .stream_chunks import (
    ToolCallAccumulator,
    content_only,
    delta_text,
    delta_tool_calls,
    finish_reason,
    has_content,
    message_tool_calls,
    without_finish_reason,
)
from .tool_bridge import ToolBridge, decode_tool_name, flatten_tool_content, parse_tool_directive
from .upstream import LLMClient

LOG = logging.getLogger(__name__)

EventCallback = Callable[[StreamEvent], Any]


@dataclass
class _RoundOutcome:
    """What one backend call ended with: either tool calls or a terminal event."""

    tool_calls: list[ToolCall] = field(default_factory=list)
    assistant_content: Any = None
    terminal: StreamEvent | None = None


def merge_tools(user_tools: list[Tool] | None, extra_tools: list[Tool]) -> list[Tool] | None:
    """Append extra tools after the caller's own, dropping duplicate names."""
    merged: list[Tool] = []
    seen: set[str] = set()
    for tool in [*(user_tools or []), *extra_tools]:
        name = tool.function.name
        if name in seen:
            continue
        seen.add(name)
        merged.append(tool)
    return merged or None


class CompletionOrchestrator:
    """Drive chat completions with automatic MCP tool rounds."""

    def __init__(
        self,
        registry: ProviderRegistry,
        bridge: ToolBridge | None = None,
        *,
        max_tool_rounds: int = 8,
        max_tool_concurrency: int = 4,
    ) -> None:
        self.registry = registry
        self.bridge = bridge
        self.max_tool_rounds = max_tool_rounds
        self.max_tool_concurrency = max(1, max_tool_concurrency)

    async def chat_completion(self, request: ChatCompletionRequest, on_event: EventCallback) -> None:
        """Deliver every event of the request to ``on_event`` (sync or async)."""
        async for event in self.stream_chat_completion(request):
            result = on_event(event)
            if inspect.isawaitable(result):
                await result

    async def stream_chat_completion(self, request: ChatCompletionRequest) -> AsyncIterator[StreamEvent]:
        """Yield the event sequence for one request, ending in exactly one terminal event."""
        try:
            resolution = self.registry.resolve(request.model)
        except PolyLLMError as exc:
            LOG.info("model resolution failed model=%s error=%s", request.model, exc)
            yield StreamEvent(error=exc)
            return

        working = request.model_copy(deep=True)
        working.model = resolution.backend_model
        working.tools = merge_tools(working.tools, await self._directive_tools(resolution.directive))
        LOG.debug(
            "chat completion provider=%s backend_model=%s stream=%s tools=%s",
            resolution.provider.name,
            working.model,
            working.stream,
            len(working.tools or []),
        )

        rounds = 0
        while True:
            outcome = _RoundOutcome()
            async with contextlib.aclosing(self._run_round(resolution.client, working, outcome)) as round_events:
                async for event in round_events:
                    yield event

            if outcome.terminal is not None:
                yield outcome.terminal
                return

            if rounds >= self.max_tool_rounds:
                LOG.warning("tool round limit reached model=%s rounds=%s", request.model, rounds)
                yield StreamEvent(error=ToolLoopExceededError(self.max_tool_rounds))
                return
            rounds += 1

            LOG.info(
                "tool round=%s calls=%s",
                rounds,
                ", ".join(call.function.name or "?" for call in outcome.tool_calls),
            )
            working.messages.append(
                ChatCompletionMessage(
                    role="assistant",
                    content=outcome.assistant_content,
                    tool_calls=outcome.tool_calls,
                )
            )
            working.messages.extend(await self._execute_tool_calls(outcome.tool_calls))

    async def _directive_tools(self, directive: str) -> list[Tool]:
        if self.bridge is None or not directive:
            return []
        available = self.bridge.server_names()
        tools: list[Tool] = []
        for server in parse_tool_directive(directive, available):
            if server not in available:
                LOG.warning("ignoring unknown tool server in directive server=%s", server)
                continue
            try:
                tools.extend(await self.bridge.list_tools(server))
            except Exception as exc:
                LOG.warning("listing tools failed server=%s error=%s", server, exc)
        return tools

    async def _run_round(
        self,
        client: LLMClient,
        request: ChatCompletionRequest,
        outcome: _RoundOutcome,
    ) -> AsyncIterator[StreamEvent]:
        """Yield forwardable events of one backend call and fill ``outcome``."""
        accumulator = ToolCallAccumulator()
        streamed_text: list[str] = []
        try:
            async with contextlib.aclosing(client.chat_completion(request)) as events:
                async for event in events:
                    if event.error is not None:
                        outcome.terminal = event
                        return

                    response = event.response
                    if not request.stream:
                        calls = message_tool_calls(response) if response is not None else []
                        if calls:
                            choice = response.primary_choice()
                            outcome.tool_calls = calls
                            outcome.assistant_content = choice.message.content if choice and choice.message else None
                        else:
                            outcome.terminal = StreamEvent(response=response, done=True)
                        return

                    if response is not None:
                        forward: StreamEvent | None = None
                        fragments = delta_tool_calls(response)
                        if fragments:
                            accumulator.add(fragments)
                            if any(has_content(choice) for choice in response.choices):
                                forward = StreamEvent(response=content_only(response))
                        elif finish_reason(response) == "tool_calls":
                            if any(has_content(choice) for choice in response.choices):
                                forward = StreamEvent(response=without_finish_reason(response))
                        else:
                            forward = StreamEvent(response=response)
                        if forward is not None:
                            streamed_text.append(delta_text(forward.response))
                            yield forward

                    if event.done:
                        if accumulator:
                            outcome.tool_calls = accumulator.calls()
                            outcome.assistant_content = "".join(streamed_text) or None
                        else:
                            outcome.terminal = StreamEvent(done=True)
                        return
        except Exception as exc:
            LOG.warning("backend call failed provider=%s error=%s", client.provider.name, exc)
            outcome.tool_calls = []
            outcome.terminal = StreamEvent(
                error=RequestFailedError(f"provider '{client.provider.name}' call failed: {exc}")
            )
            return

        outcome.terminal = StreamEvent(
            error=RequestFailedError(f"provider '{client.provider.name}' stream ended without a terminal event")
        )

    async def _execute_tool_calls(self, tool_calls: list[ToolCall]) -> list[ChatCompletionMessage]:
        """Run tool calls concurrently; results keep the original call order."""
        semaphore = asyncio.Semaphore(self.max_tool_concurrency)

        async def run_one(call: ToolCall) -> ChatCompletionMessage:
            async with semaphore:
                content = await self._invoke_tool(call)
            return ChatCompletionMessage(
                role="tool",
                tool_call_id=call.id,
                name=call.function.name,
                content=content,
            )

        return list(await asyncio.gather(*(run_one(call) for call in tool_calls)))

    async def _invoke_tool(self, call: ToolCall) -> str:
        """Return the tool's text output, or an ``Error: ...`` description on failure."""
        name = call.function.name or ""
        try:
            server, tool = decode_tool_name(name)
            arguments = parse_json_object(call.function.arguments)
            if self.bridge is None:
                raise MCPError("no tool servers are configured")
            blocks = await self.bridge.call_tool(server, tool, arguments)
        except Exception as exc:
            LOG.warning("tool call failed tool=%s error=%s", name, exc)
            return f"Error: {exc}"

        text = flatten_tool_content(blocks)
        if not text:
            # Only non-text blocks (images, resources); pass them on as JSON.
            text = to_bounded_json(blocks)
        LOG.debug("tool call result tool=%s result=%s", name, to_bounded_json(text, max_len=2000))
        return text
