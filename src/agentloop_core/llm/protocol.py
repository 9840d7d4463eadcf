import asyncio
from collections.abc import AsyncIterator
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field

from agentloop_core.chunks import Chunk
from agentloop_core.context import RunContext
from agentloop_core.messages import Message, ToolCallPart


class Usage(BaseModel):
    """Token usage of one or more model calls."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class ToolSpec(BaseModel):
    """Tool definition as sent to the model."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class ModelRequest(BaseModel):
    """Everything a model needs for one invocation."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    messages: list[Message]
    tools: list[ToolSpec] = Field(default_factory=list)
    tool_choice: str | None = None
    model_settings: dict[str, Any] = Field(default_factory=dict)
    context: RunContext = Field(default_factory=RunContext)
    abort_signal: asyncio.Event | None = None


class ModelResponse(BaseModel):
    """Final output of a non-streaming model call."""

    text: str = ""
    object: Any = None
    tool_calls: list[ToolCallPart] = Field(default_factory=list)
    finish_reason: str = "stop"
    usage: Usage = Field(default_factory=Usage)


class LanguageModel(Protocol):
    """Protocol for model invocation.

    ``stream`` yields ``text-delta``, ``object`` and ``tool-call`` chunks and
    ends with one ``finish`` chunk carrying ``finish_reason`` and ``usage``.
    Both methods may raise; errors propagate to the caller unchanged.
    """

    @property
    def model_id(self) -> str:
        """Identifier used in logs and metrics."""
        ...

    async def generate(self, request: ModelRequest) -> ModelResponse:
        """Run one model call and return its complete output."""
        ...

    def stream(self, request: ModelRequest) -> AsyncIterator[Chunk]:
        """Run one model call and yield its output as chunks."""
        ...
