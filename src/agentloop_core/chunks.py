"""Typed chunks exchanged between models, the step loop and stream consumers."""

from typing import Any, Literal

from pydantic import BaseModel, Field

ChunkType = Literal[
    "text-delta",
    "object",
    "tool-call",
    "tool-result",
    "tool-error",
    "tripwire",
    "step-start",
    "step-finish",
    "finish",
    "error",
    "abort",
]


class Chunk(BaseModel):
    """One streamed event.

    The payload holds the event data; values are kept as-is, so an ``error``
    chunk references the very exception object that ended the run.
    """

    type: ChunkType
    payload: dict[str, Any] = Field(default_factory=dict)
    run_id: str | None = None

    @classmethod
    def text_delta(cls, text: str) -> "Chunk":
        return cls(type="text-delta", payload={"text": text})

    @classmethod
    def tool_call(cls, tool_call_id: str, tool_name: str, args: dict[str, Any]) -> "Chunk":
        return cls(
            type="tool-call",
            payload={"tool_call_id": tool_call_id, "tool_name": tool_name, "args": args},
        )

    @classmethod
    def finish(cls, finish_reason: str, **payload: Any) -> "Chunk":
        return cls(type="finish", payload={"finish_reason": finish_reason, **payload})

    @property
    def text(self) -> str:
        return self.payload.get("text", "")

    @property
    def error(self) -> BaseException | None:
        return self.payload.get("error")
