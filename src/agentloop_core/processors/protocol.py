"""Processor capability interfaces and hook arguments.

A processor implements any subset of five hooks. Each hook is its own
runtime-checkable Protocol, so the runner asks ``isinstance(p, InputProcessor)``
instead of probing for methods.

Hooks may be sync or async. To stop the run, return ``args.abort(reason)``;
``abort`` records the verdict and the runner stops the phase after the hook
returns.

Example:
    ```python
    class NoShouting(BaseProcessor):
        id = "no-shouting"

        async def process_output_step(self, args: ProcessOutputStepArgs):
            if args.text.isupper():
                return args.abort("Please do not shout", retry=True)
            return None
    ```
"""

from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from agentloop_core.chunks import Chunk
from agentloop_core.context import RunContext
from agentloop_core.message_list import MessageList
from agentloop_core.messages import Message, ToolCallPart
from agentloop_core.tripwire import Tripwire


class ProcessorState(BaseModel):
    """Per-processor state that lives for one run.

    Behaves like a dict for custom values and also tracks the stream parts
    and text a stream processor has seen.
    """

    data: dict[str, Any] = Field(default_factory=dict)
    stream_parts: list[Chunk] = Field(default_factory=list)
    accumulated_text: str = ""

    def record_part(self, part: Chunk) -> None:
        self.stream_parts.append(part)
        if part.type == "text-delta":
            self.accumulated_text += part.text

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def __getitem__(self, key: str) -> Any:
        return self.data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self.data[key] = value

    def __contains__(self, key: object) -> bool:
        return key in self.data


class StepOverrides(BaseModel):
    """Step-scoped changes returned by input-step processors.

    Unset fields leave the step untouched. Overrides apply to one step only.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    model: Any = None
    tools: dict[str, Any] | None = None
    active_tools: list[str] | None = None
    tool_choice: str | None = None
    model_settings: dict[str, Any] | None = None
    system_messages: list[Message | str] | None = None
    messages: list[Message] | None = None


class ProcessInputResult(BaseModel):
    """Input hook result that also replaces the system messages."""

    messages: list[Message]
    system_messages: list[Message | str] | None = None


class ProcessorArgs(BaseModel):
    """Fields shared by every hook's arguments."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    processor_id: str
    retry_count: int = 0
    state: ProcessorState = Field(default_factory=ProcessorState)
    context: RunContext = Field(default_factory=RunContext)

    _tripwire: Tripwire | None = PrivateAttr(default=None)

    def _default_reason(self) -> str:
        return f"Tripwire triggered by {self.processor_id}"

    def abort(
        self,
        reason: str | None = None,
        *,
        retry: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> Tripwire:
        """Stop the run (or, with ``retry``, regenerate the current step).

        Returns:
            The recorded verdict. Return it from the hook.
        """
        self._tripwire = Tripwire(
            reason=reason or self._default_reason(),
            retry=retry,
            metadata=metadata,
            processor_id=self.processor_id,
        )
        return self._tripwire

    @property
    def tripwire(self) -> Tripwire | None:
        return self._tripwire


class ProcessInputArgs(ProcessorArgs):
    messages: list[Message]
    system_messages: list[Message]
    message_list: MessageList
    step_number: int = 0


class ProcessInputStepArgs(ProcessorArgs):
    messages: list[Message]
    system_messages: list[Message]
    message_list: MessageList
    step_number: int = 0
    steps: list[Any] = Field(default_factory=list)
    model: Any = None
    tools: dict[str, Any] = Field(default_factory=dict)
    active_tools: list[str] | None = None
    tool_choice: str | None = None
    model_settings: dict[str, Any] = Field(default_factory=dict)


class ProcessOutputResultArgs(ProcessorArgs):
    messages: list[Message]
    message_list: MessageList


class ProcessOutputStreamArgs(ProcessorArgs):
    part: Chunk
    stream_parts: list[Chunk]

    def _default_reason(self) -> str:
        return f"Stream part blocked by {self.processor_id}"


class ProcessOutputStepArgs(ProcessorArgs):
    messages: list[Message]
    message_list: MessageList
    step_number: int = 0
    steps: list[Any] = Field(default_factory=list)
    text: str = ""
    tool_calls: list[ToolCallPart] = Field(default_factory=list)
    finish_reason: str | None = None


MessagesResult = list[Message] | MessageList | Tripwire | None


@runtime_checkable
class InputProcessor(Protocol):
    """Transforms or vetoes the conversation before each model call."""

    id: str

    def process_input(self, args: ProcessInputArgs) -> MessagesResult | ProcessInputResult:
        """Return new messages, the same MessageList, or None to keep them."""
        ...


@runtime_checkable
class InputStepProcessor(Protocol):
    """Changes step settings (model, tools, ...) before each model call."""

    id: str

    def process_input_step(self, args: ProcessInputStepArgs) -> StepOverrides | list[Message] | Tripwire | None:
        """Return overrides for this step, or None."""
        ...


@runtime_checkable
class OutputResultProcessor(Protocol):
    """Inspects the final response messages of a run."""

    id: str

    def process_output_result(self, args: ProcessOutputResultArgs) -> MessagesResult:
        """Return new messages, the same MessageList, or None."""
        ...


@runtime_checkable
class OutputStreamProcessor(Protocol):
    """Transforms or filters streamed chunks."""

    id: str

    def process_output_stream(self, args: ProcessOutputStreamArgs) -> Chunk | Tripwire | None:
        """Return the chunk to emit, or None to drop it."""
        ...


@runtime_checkable
class OutputStepProcessor(Protocol):
    """Accepts, rewrites or rejects a step once its full text is known."""

    id: str

    def process_output_step(self, args: ProcessOutputStepArgs) -> MessagesResult:
        """Return new messages, the same MessageList, or None."""
        ...


class BaseProcessor:
    """Convenience base giving processors an ``id`` and ``name``."""

    id: str = "processor"
    name: str | None = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r})"
