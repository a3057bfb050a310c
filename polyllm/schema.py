"""Wire types for the OpenAI-compatible chat completion contract.

All models allow extra fields so backend-specific keys (usage, system
fingerprints, reasoning fields, sampling parameters) survive a round trip
through the gateway untouched.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .errors import PolyLLMError


class _WireModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Dump to a JSON-ready dict without unset optional keys."""
        return self.model_dump(mode="json", exclude_none=True, by_alias=True)


class Model(_WireModel):
    id: str
    name: str | None = None
    object: str = "model"
    created: int | None = None
    owned_by: str | None = None
    description: str | None = None


class FunctionCall(_WireModel):
    name: str | None = None
    arguments: str = ""


class ToolCall(_WireModel):
    index: int | None = None
    id: str | None = None
    type: str = "function"
    function: FunctionCall = Field(default_factory=FunctionCall)


class ChatCompletionMessage(_WireModel):
    role: str | None = None
    content: Any = None
    name: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None


class FunctionDefinition(_WireModel):
    name: str
    description: str | None = None
    parameters: dict[str, Any] | None = None


class Tool(_WireModel):
    type: str = "function"
    function: FunctionDefinition


class ChatCompletionRequest(_WireModel):
    model: str
    messages: list[ChatCompletionMessage] = Field(default_factory=list)
    tools: list[Tool] | None = None
    stream: bool = False
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None


class Choice(_WireModel):
    index: int = 0
    message: ChatCompletionMessage | None = None
    delta: ChatCompletionMessage | None = None
    finish_reason: str | None = None


class ChatCompletionResponse(_WireModel):
    id: str | None = None
    object: str | None = None
    created: int | None = None
    model: str | None = None
    choices: list[Choice] = Field(default_factory=list)

    def primary_choice(self) -> Choice | None:
        """Return the choice with index 0, else the first one."""
        for choice in self.choices:
            if choice.index == 0:
                return choice
        return self.choices[0] if self.choices else None


@dataclass
class StreamEvent:
    """One element of the normalized event sequence produced for a request.

    A well-formed sequence is any number of non-terminal events followed by
    exactly one terminal event (``done`` or ``error``).
    """

    response: ChatCompletionResponse | None = None
    error: PolyLLMError | None = None
    done: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.done or self.error is not None
