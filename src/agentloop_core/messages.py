"""Internal message representation for the agent loop.

Messages carry an ordered list of typed content parts. Text, tool-call and
tool-result parts are modelled explicitly; any other part shape is carried
through untouched so provider-specific content survives a round trip.

Usage:
    ```python
    from agentloop_core.messages import Message, ToolCallPart

    Message(role="user", content="What's the weather in Paris?")
    Message(
        role="assistant",
        content=[ToolCallPart(tool_call_id="c1", tool_name="weather", args={"city": "Paris"})],
    )
    ```
"""

from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

Role = Literal["user", "assistant", "system", "tool"]

# Where a message entered the MessageList from.
MessageOrigin = Literal["memory", "input", "response", "context"]

_ORIGIN_ALIASES: dict[str, MessageOrigin] = {
    "memory": "memory",
    "input": "input",
    "user": "input",
    "user-input": "input",
    "response": "response",
    "context": "context",
}


def normalize_origin(origin: str) -> MessageOrigin:
    """Map an origin name or alias to its canonical form.

    Raises:
        ValueError: If the origin is not recognised.
    """
    try:
        return _ORIGIN_ALIASES[origin]
    except KeyError:
        raise ValueError(f"Unknown message origin: {origin!r}") from None


def new_id() -> str:
    return str(uuid4())


def utc_now() -> datetime:
    return datetime.now(UTC)


class TextPart(BaseModel):
    """A run of text."""

    type: Literal["text"] = "text"
    text: str = ""


class ToolCallPart(BaseModel):
    """A tool invocation requested by the model."""

    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)


class ToolResultPart(BaseModel):
    """The outcome of a tool invocation."""

    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str = ""
    result: Any = None
    is_error: bool = False


class UnknownPart(BaseModel):
    """Any content part this layer does not interpret (images, files, reasoning)."""

    model_config = ConfigDict(extra="allow")

    type: str = "unknown"


ContentPart = TextPart | ToolCallPart | ToolResultPart | UnknownPart

_PART_TYPES: dict[str, type[BaseModel]] = {
    "text": TextPart,
    "tool-call": ToolCallPart,
    "tool-result": ToolResultPart,
}


def coerce_part(value: Any) -> ContentPart:
    """Turn a raw value into a content part without ever rejecting it."""
    if isinstance(value, (TextPart, ToolCallPart, ToolResultPart, UnknownPart)):
        return value
    if isinstance(value, str):
        return TextPart(text=value)
    if isinstance(value, BaseModel):
        value = value.model_dump()
    if isinstance(value, dict):
        part_type = _PART_TYPES.get(str(value.get("type")))
        if part_type is not None:
            try:
                return part_type.model_validate(value)
            except ValueError:
                pass
        return UnknownPart.model_validate(value)
    return UnknownPart(type="unknown", value=value)


class Message(BaseModel):
    """A unit of conversation.

    Attributes:
        id: Stable identifier; re-adding a message with the same id merges into it.
        role: user, assistant, system or tool.
        content: Ordered content parts. A plain string becomes one text part.
        created_at: Creation time. Left empty, the MessageList assigns one.
        thread_id: Conversation thread the message belongs to.
        resource_id: Owner of the thread (user, tenant, ...).
        metadata: Free-form metadata, deep-merged on update.
    """

    id: str = Field(default_factory=new_id)
    role: Role
    content: list[ContentPart] = Field(default_factory=list)
    created_at: datetime | None = None
    thread_id: str | None = None
    resource_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("content", mode="before")
    @classmethod
    def _coerce_content(cls, value: Any) -> list[ContentPart]:
        if value is None:
            return []
        if isinstance(value, str):
            return [TextPart(text=value)]
        if not isinstance(value, (list, tuple)):
            value = [value]
        return [coerce_part(item) for item in value]

    @field_validator("created_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @property
    def text(self) -> str:
        """Concatenated text of all text parts."""
        return "".join(p.text for p in self.content if isinstance(p, TextPart))

    @property
    def tool_calls(self) -> list[ToolCallPart]:
        return [p for p in self.content if isinstance(p, ToolCallPart)]

    @property
    def tool_results(self) -> list[ToolResultPart]:
        return [p for p in self.content if isinstance(p, ToolResultPart)]


class Thread(BaseModel):
    """A conversation thread owned by a resource."""

    id: str = Field(default_factory=new_id)
    resource_id: str
    title: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
