"""Runs processors against a MessageList or a stream of chunks.

Processors run strictly in configured order. A processor without the hook
for the current phase is skipped for that phase only. The first tripwire
ends the phase: later processors do not run and the verdict is returned on
the PhaseOutcome. Exceptions raised by processors propagate unchanged.
"""

import inspect
import logging
from collections.abc import Sequence
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from agentloop_core.chunks import Chunk
from agentloop_core.context import RunContext
from agentloop_core.errors import ProcessorContractError
from agentloop_core.message_list import MessageList
from agentloop_core.messages import Message, MessageOrigin
from agentloop_core.processors.protocol import (
    InputProcessor,
    InputStepProcessor,
    OutputResultProcessor,
    OutputStepProcessor,
    OutputStreamProcessor,
    ProcessInputArgs,
    ProcessInputResult,
    ProcessInputStepArgs,
    ProcessorArgs,
    ProcessorState,
    ProcessOutputResultArgs,
    ProcessOutputStepArgs,
    ProcessOutputStreamArgs,
    StepOverrides,
)
from agentloop_core.tripwire import Tripwire

logger = logging.getLogger(__name__)


class PhaseOutcome(BaseModel):
    """Result of running one phase of the pipeline."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    tripwire: Tripwire | None = None
    overrides: StepOverrides = Field(default_factory=StepOverrides)
    part: Chunk | None = None

    @property
    def aborted(self) -> bool:
        return self.tripwire is not None


def _merge_overrides(current: StepOverrides, update: StepOverrides) -> StepOverrides:
    changes = {
        name: getattr(update, name)
        for name in update.model_fields_set
        if getattr(update, name) is not None
    }
    return current.model_copy(update=changes)


def _verdict(args: ProcessorArgs, result: Any) -> Tripwire | None:
    if args.tripwire is not None:
        return args.tripwire
    if isinstance(result, Tripwire):
        if result.processor_id is None:
            return result.model_copy(update={"processor_id": args.processor_id})
        return result
    return None


class ProcessorRunner:
    """Drives the processor hooks of one run.

    One runner belongs to one run: per-processor state persists across all
    hook calls of the run and is discarded with the runner.

    Args:
        input_processors: Processors consulted before each model call.
        output_processors: Processors consulted on model output.
        context: Immutable run context handed to every hook.
    """

    def __init__(
        self,
        input_processors: Sequence[Any] = (),
        output_processors: Sequence[Any] = (),
        context: RunContext | None = None,
    ) -> None:
        self.input_processors = list(input_processors)
        self.output_processors = list(output_processors)
        self.context = context or RunContext()
        self._states: dict[str, ProcessorState] = {}

    def state_for(self, processor: Any) -> ProcessorState:
        return self._states.setdefault(processor.id, ProcessorState())

    async def _call(self, processor: Any, hook: str, args: ProcessorArgs, message_list: MessageList | None) -> Any:
        if message_list is not None:
            message_list.start_recording()
        try:
            result = getattr(processor, hook)(args)
            if inspect.isawaitable(result):
                result = await result
        finally:
            if message_list is not None:
                events = message_list.stop_recording()
                if events:
                    logger.debug("processor %s %s mutations=%d", processor.id, hook, len(events))
        return result

    # =========================================================================
    # Message phases
    # =========================================================================

    async def run_input(
        self,
        message_list: MessageList,
        *,
        step_number: int = 0,
        retry_count: int = 0,
    ) -> PhaseOutcome:
        """Run ``process_input`` of every input processor."""
        for processor in self.input_processors:
            if not isinstance(processor, InputProcessor):
                continue
            args = ProcessInputArgs(
                processor_id=processor.id,
                retry_count=retry_count,
                state=self.state_for(processor),
                context=self.context,
                messages=message_list.raw_messages(),
                system_messages=message_list.get_all_system_messages(),
                message_list=message_list,
                step_number=step_number,
            )
            result = await self._call(processor, "process_input", args, message_list)
            if verdict := _verdict(args, result):
                logger.debug("input tripwire processor=%s reason=%s", processor.id, verdict.reason)
                return PhaseOutcome(tripwire=verdict)
            self._apply(processor, message_list, result, args.messages, "input")
        return PhaseOutcome()

    async def run_input_step(
        self,
        message_list: MessageList,
        *,
        step_number: int,
        steps: list[Any],
        retry_count: int = 0,
        model: Any = None,
        tools: dict[str, Any] | None = None,
        active_tools: list[str] | None = None,
        tool_choice: str | None = None,
        model_settings: dict[str, Any] | None = None,
    ) -> PhaseOutcome:
        """Run ``process_input_step`` of every input processor.

        Each processor sees the settings as changed by the processors before it.
        """
        overrides = StepOverrides()
        for processor in self.input_processors:
            if not isinstance(processor, InputStepProcessor):
                continue
            args = ProcessInputStepArgs(
                processor_id=processor.id,
                retry_count=retry_count,
                state=self.state_for(processor),
                context=self.context,
                messages=message_list.raw_messages(),
                system_messages=message_list.get_all_system_messages(),
                message_list=message_list,
                step_number=step_number,
                steps=list(steps),
                model=overrides.model or model,
                tools=overrides.tools if overrides.tools is not None else dict(tools or {}),
                active_tools=overrides.active_tools if overrides.active_tools is not None else active_tools,
                tool_choice=overrides.tool_choice or tool_choice,
                model_settings=overrides.model_settings if overrides.model_settings is not None else dict(model_settings or {}),
            )
            result = await self._call(processor, "process_input_step", args, message_list)
            if verdict := _verdict(args, result):
                logger.debug("input step tripwire processor=%s reason=%s", processor.id, verdict.reason)
                return PhaseOutcome(tripwire=verdict, overrides=overrides)
            if result is None:
                continue
            if isinstance(result, list):
                self._apply(processor, message_list, result, args.messages, "input")
                continue
            if not isinstance(result, StepOverrides):
                raise ProcessorContractError(
                    processor.id, f"process_input_step returned unsupported {type(result).__name__}"
                )
            if result.messages is not None:
                self._apply(processor, message_list, result.messages, args.messages, "input")
            if result.system_messages is not None:
                message_list.replace_all_system_messages(result.system_messages)
            overrides = _merge_overrides(overrides, result)
        return PhaseOutcome(overrides=overrides)

    async def run_output_result(
        self,
        message_list: MessageList,
        *,
        retry_count: int = 0,
    ) -> PhaseOutcome:
        """Run ``process_output_result`` against the response messages."""
        for processor in self.output_processors:
            if not isinstance(processor, OutputResultProcessor):
                continue
            args = ProcessOutputResultArgs(
                processor_id=processor.id,
                retry_count=retry_count,
                state=self.state_for(processor),
                context=self.context,
                messages=message_list.response_messages(),
                message_list=message_list,
            )
            result = await self._call(processor, "process_output_result", args, message_list)
            if verdict := _verdict(args, result):
                logger.debug("output result tripwire processor=%s reason=%s", processor.id, verdict.reason)
                return PhaseOutcome(tripwire=verdict)
            self._apply(processor, message_list, result, args.messages, "response")
        return PhaseOutcome()

    async def run_output_step(
        self,
        message_list: MessageList,
        *,
        step_number: int,
        steps: list[Any],
        text: str,
        tool_calls: list[Any],
        finish_reason: str | None,
        retry_count: int = 0,
    ) -> PhaseOutcome:
        """Run ``process_output_step`` once the step's full output is known."""
        for processor in self.output_processors:
            if not isinstance(processor, OutputStepProcessor):
                continue
            args = ProcessOutputStepArgs(
                processor_id=processor.id,
                retry_count=retry_count,
                state=self.state_for(processor),
                context=self.context,
                messages=message_list.raw_messages(),
                message_list=message_list,
                step_number=step_number,
                steps=list(steps),
                text=text,
                tool_calls=list(tool_calls),
                finish_reason=finish_reason,
            )
            result = await self._call(processor, "process_output_step", args, message_list)
            if verdict := _verdict(args, result):
                logger.debug("output step tripwire processor=%s reason=%s retry=%s", processor.id, verdict.reason, verdict.retry)
                return PhaseOutcome(tripwire=verdict)
            self._apply(processor, message_list, result, args.messages, "response")
        return PhaseOutcome()

    # =========================================================================
    # Stream phase
    # =========================================================================

    async def process_part(self, part: Chunk, *, retry_count: int = 0) -> PhaseOutcome:
        """Pass one chunk through every stream processor.

        Returns:
            PhaseOutcome whose ``part`` is the chunk to emit, or None when a
            processor filtered it or raised a tripwire.
        """
        current = part
        for processor in self.output_processors:
            if not isinstance(processor, OutputStreamProcessor):
                continue
            state = self.state_for(processor)
            state.record_part(current)
            args = ProcessOutputStreamArgs(
                processor_id=processor.id,
                retry_count=retry_count,
                state=state,
                context=self.context,
                part=current,
                stream_parts=list(state.stream_parts),
            )
            result = await self._call(processor, "process_output_stream", args, None)
            if verdict := _verdict(args, result):
                logger.debug("stream tripwire processor=%s reason=%s", processor.id, verdict.reason)
                return PhaseOutcome(tripwire=verdict)
            if result is None:
                return PhaseOutcome()
            if not isinstance(result, Chunk):
                raise ProcessorContractError(
                    processor.id, f"process_output_stream returned unsupported {type(result).__name__}"
                )
            current = result
        return PhaseOutcome(part=current)

    # =========================================================================
    # Applying message results
    # =========================================================================

    def _apply(
        self,
        processor: Any,
        message_list: MessageList,
        result: Any,
        passed: list[Message],
        default_origin: MessageOrigin,
    ) -> None:
        if result is None:
            return
        if isinstance(result, MessageList):
            if result is not message_list:
                raise ProcessorContractError(
                    processor.id, "returned a MessageList that is not the run's MessageList"
                )
            return
        if isinstance(result, ProcessInputResult):
            self._apply_messages(message_list, result.messages, passed, default_origin)
            if result.system_messages is not None:
                message_list.replace_all_system_messages(result.system_messages)
            return
        if isinstance(result, list):
            self._apply_messages(message_list, result, passed, default_origin)
            return
        raise ProcessorContractError(processor.id, f"returned unsupported {type(result).__name__}")

    def _apply_messages(
        self,
        message_list: MessageList,
        returned: list[Message | dict[str, Any] | str],
        passed: list[Message],
        default_origin: MessageOrigin,
    ) -> None:
        source_of = message_list.make_source_checker()
        coerced = [
            item if isinstance(item, Message) else Message.model_validate(
                {"role": "user", "content": item} if isinstance(item, str) else item
            )
            for item in returned
        ]
        kept = {m.id for m in coerced if m.role != "system"}
        removed = [m.id for m in passed if m.id not in kept]
        if removed:
            message_list.remove_by_ids(removed)

        for message in coerced:
            if message.role == "system":
                message_list.add_system(message)
                continue
            message_list.add(message, source_of(message) or default_origin)
