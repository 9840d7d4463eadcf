"""The agentic step loop.

One logical step is one accepted model invocation plus its tool executions.
A processor may reject a step and ask for a retry; the step is then
regenerated with the rejection reason as feedback, without counting against
``max_steps``. Two independent budgets bound a run:

- ``max_steps`` counts accepted steps.
- ``max_model_calls`` counts every model invocation, retries included.
  It defaults to ``max_steps * (max_processor_retries + 1)``.

Reaching either budget ends the run with the best-effort result. If the
model-call budget runs out while a retry is pending, the run ends with the
pending rejection as its tripwire.

State flow:
    IDLE -> PREPARING -> AWAITING_MODEL -> OUTPUT_PROCESSING -> TOOL_EXECUTION
         -> CONTINUE | RETRY | COMPLETE | TRIPWIRE
"""

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from agentloop_core.chunks import Chunk
from agentloop_core.context import RunContext
from agentloop_core.llm.protocol import LanguageModel, ModelRequest, Usage
from agentloop_core.loop.channel import ChunkChannel
from agentloop_core.message_list import MessageList
from agentloop_core.messages import Message, TextPart, ToolCallPart
from agentloop_core.metrics import MetricsRecorder
from agentloop_core.processors.runner import ProcessorRunner
from agentloop_core.results import LoopOutcome, StepResult
from agentloop_core.tools import ToolExecutor
from agentloop_core.tripwire import RETRY_FEEDBACK_TAG, Tripwire, retry_feedback

logger = logging.getLogger(__name__)

_END = object()
_ABORTED = object()


class StepState(StrEnum):
    IDLE = "idle"
    PREPARING = "preparing"
    AWAITING_MODEL = "awaiting-model"
    TOOL_EXECUTION = "tool-execution"
    OUTPUT_PROCESSING = "output-processing"
    CONTINUE = "continue"
    RETRY = "retry"
    COMPLETE = "complete"
    TRIPWIRE = "tripwire"
    ABORTED = "aborted"
    ERROR = "error"


class _ModelTurn(BaseModel):
    """Output of one model invocation, after stream processing."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    text: str = ""
    object: Any = None
    tool_calls: list[ToolCallPart] = Field(default_factory=list)
    finish_reason: str = "stop"
    usage: Usage = Field(default_factory=Usage)
    tripwire: Tripwire | None = None


def default_model_call_budget(max_steps: int, max_processor_retries: int | None) -> int:
    return max_steps * ((max_processor_retries or 0) + 1)


async def _next(iterator: Any) -> Any:
    try:
        return await anext(iterator)
    except StopAsyncIteration:
        return _END


class StepLoop:
    """Drives one run from the first model call to a terminal state.

    Args:
        model: Default model; input-step processors may swap it per step.
        message_list: The run's MessageList. Mutated in place.
        runner: Processor runner of this run.
        executor: Tool executor with the agent's tools.
        context: Immutable run context.
        max_steps: Accepted-step budget.
        max_processor_retries: Retries allowed per logical step. None disables retries.
        max_model_calls: Total invocation budget.
        channel: Chunk channel when streaming; None for generate.
        abort_signal: Event that cancels the run when set.
        metrics: Optional metrics recorder.
        on_step_finish: Optional ``callback(step)`` after every step, sync or async.
    """

    def __init__(
        self,
        *,
        model: LanguageModel,
        message_list: MessageList,
        runner: ProcessorRunner,
        executor: ToolExecutor,
        context: RunContext,
        max_steps: int = 5,
        max_processor_retries: int | None = None,
        max_model_calls: int | None = None,
        tool_choice: str | None = None,
        model_settings: dict[str, Any] | None = None,
        active_tools: list[str] | None = None,
        channel: ChunkChannel | None = None,
        abort_signal: asyncio.Event | None = None,
        metrics: MetricsRecorder | None = None,
        on_step_finish: Callable[[StepResult], Awaitable[None] | None] | None = None,
    ) -> None:
        self._model = model
        self._message_list = message_list
        self._runner = runner
        self._executor = executor
        self._context = context
        self._max_steps = max_steps
        self._max_processor_retries = max_processor_retries
        self._max_model_calls = max_model_calls or default_model_call_budget(
            max_steps, max_processor_retries
        )
        self._tool_choice = tool_choice
        self._model_settings = dict(model_settings or {})
        self._active_tools = active_tools
        self._channel = channel
        self._abort_signal = abort_signal
        self._metrics = metrics
        self._on_step_finish = on_step_finish

        self.state = StepState.IDLE
        self.transitions: list[StepState] = [StepState.IDLE]
        self.model_calls = 0

    # =========================================================================
    # Main loop
    # =========================================================================

    async def run(self) -> LoopOutcome:
        """Run until COMPLETE, TRIPWIRE, ABORTED or a budget is exhausted.

        Raises:
            Exception: Whatever the model or a processor raised; the loop
                enters ERROR and nothing from the failed call is committed.
        """
        try:
            return await self._run()
        except Exception:
            self._transition(StepState.ERROR)
            raise

    async def _run(self) -> LoopOutcome:
        ml = self._message_list
        ml.mark_system_baseline()

        steps: list[StepResult] = []
        usage = Usage()
        step_number = 0
        retry_count = 0
        pending: Tripwire | None = None
        finish_reason: str | None = None

        while True:
            if self._is_aborted():
                return await self._abort(steps, usage)
            if step_number >= self._max_steps:
                logger.debug("step budget reached steps=%d", step_number)
                break
            if self.model_calls >= self._max_model_calls:
                logger.debug("model call budget reached calls=%d", self.model_calls)
                if pending is not None:
                    return await self._trip(pending, steps, usage)
                break

            # PREPARING
            self._transition(StepState.PREPARING)
            ml.reset_system_messages()
            if pending is not None:
                ml.add_system(retry_feedback(pending.reason), tag=RETRY_FEEDBACK_TAG)

            phase = await self._runner.run_input(ml, step_number=step_number, retry_count=retry_count)
            if phase.tripwire:
                return await self._trip(phase.tripwire, steps, usage)
            phase = await self._runner.run_input_step(
                ml,
                step_number=step_number,
                steps=steps,
                retry_count=retry_count,
                model=self._model,
                tools=self._executor.tools,
                active_tools=self._active_tools,
                tool_choice=self._tool_choice,
                model_settings=self._model_settings,
            )
            if phase.tripwire:
                return await self._trip(phase.tripwire, steps, usage)

            overrides = phase.overrides
            model = overrides.model or self._model
            executor = self._executor.with_tools(overrides.tools) if overrides.tools is not None else self._executor
            active_tools = overrides.active_tools if overrides.active_tools is not None else self._active_tools
            model_settings = overrides.model_settings if overrides.model_settings is not None else self._model_settings

            # AWAITING_MODEL
            self._transition(StepState.AWAITING_MODEL)
            request = ModelRequest(
                messages=ml.prompt_messages(),
                tools=executor.specs(active_tools),
                tool_choice=overrides.tool_choice or self._tool_choice,
                model_settings=model_settings,
                context=self._context,
                abort_signal=self._abort_signal,
            )
            self.model_calls += 1
            self._count("agent_model_calls_total", model)
            started = time.monotonic()
            await self._emit(
                Chunk(type="step-start", payload={"step_number": step_number, "retry_count": retry_count})
            )
            turn = await self._invoke(model, request, retry_count)
            if turn is None:
                return await self._abort(steps, usage)
            usage = usage + turn.usage
            self._count("agent_tokens_total", model, turn.usage.total_tokens)

            step = StepResult(
                step_number=step_number,
                retry_count=retry_count,
                request_messages=request.messages,
                text=turn.text,
                object=turn.object,
                tool_calls=turn.tool_calls,
                finish_reason=turn.finish_reason,
                usage=turn.usage,
            )
            assistant = Message(role="assistant", content=[TextPart(text=turn.text), *turn.tool_calls])
            ml.add(assistant, "response")

            # OUTPUT_PROCESSING
            self._transition(StepState.OUTPUT_PROCESSING)
            verdict = turn.tripwire
            if verdict is None:
                phase = await self._runner.run_output_step(
                    ml,
                    step_number=step_number,
                    steps=steps,
                    text=turn.text,
                    tool_calls=turn.tool_calls,
                    finish_reason=turn.finish_reason,
                    retry_count=retry_count,
                )
                verdict = phase.tripwire

            if verdict is not None:
                # The rejected response is never replayed or persisted.
                ml.remove_by_ids([assistant.id])
                step.tripwire = verdict
                step.duration_ms = (time.monotonic() - started) * 1000
                steps.append(step)
                if verdict.retry and self._can_retry(retry_count):
                    self._transition(StepState.RETRY)
                    logger.debug(
                        "retrying step=%d retry=%d reason=%s", step_number, retry_count + 1, verdict.reason
                    )
                    await self._emit(
                        Chunk(
                            type="step-finish",
                            payload={"step_number": step_number, "reason": "retry", "retry_count": retry_count},
                        )
                    )
                    pending = verdict
                    retry_count += 1
                    continue
                if verdict.retry:
                    logger.warning(
                        "Processor %s requested a retry but the retry budget is exhausted (%d/%s)",
                        verdict.processor_id,
                        retry_count,
                        self._max_processor_retries,
                    )
                return await self._trip(verdict, steps, usage)

            # TOOL_EXECUTION
            if turn.tool_calls:
                self._transition(StepState.TOOL_EXECUTION)
                if self._is_aborted():
                    return await self._abort(steps, usage)
                outcomes = await self._until_aborted(
                    executor.execute(turn.tool_calls, self._context, self._abort_signal)
                )
                if outcomes is _ABORTED:
                    return await self._abort(steps, usage)
                step.tool_results = [outcome.part for outcome in outcomes]
                ml.add(Message(role="tool", content=step.tool_results), "response")
                self._count("agent_tool_calls_total", model, len(outcomes))
                for outcome in outcomes:
                    kind = "tool-error" if outcome.error is not None else "tool-result"
                    await self._emit(Chunk(type=kind, payload={**outcome.part.model_dump(), "error": outcome.error}))

            step.duration_ms = (time.monotonic() - started) * 1000
            steps.append(step)
            if self._metrics is not None:
                self._metrics.observe("agent_step_duration_ms", step.duration_ms, self._labels(model))
            await self._emit(
                Chunk(
                    type="step-finish",
                    payload={"step_number": step_number, "reason": turn.finish_reason, "usage": turn.usage},
                )
            )
            await self._notify_step(step)

            finish_reason = turn.finish_reason
            step_number += 1
            retry_count = 0
            pending = None
            if not turn.tool_calls:
                break
            self._transition(StepState.CONTINUE)

        phase = await self._runner.run_output_result(ml)
        if phase.tripwire:
            # A vetoed response is neither returned nor persisted.
            source = ml.make_source_checker()
            ml.remove_by_ids([m.id for m in ml.raw_messages() if source(m) == "response"])
            return await self._trip(phase.tripwire, steps, usage)

        self._transition(StepState.COMPLETE)
        await self._emit(Chunk.finish(finish_reason or "stop", usage=usage))
        return LoopOutcome(
            steps=steps, finish_reason=finish_reason, usage=usage, model_calls=self.model_calls
        )

    # =========================================================================
    # Model invocation
    # =========================================================================

    async def _invoke(self, model: LanguageModel, request: ModelRequest, retry_count: int) -> _ModelTurn | None:
        """Call the model; None when the abort signal fired first."""
        if self._channel is not None:
            return await self._invoke_stream(model, request, retry_count)

        response = await self._until_aborted(model.generate(request))
        if response is _ABORTED:
            return None
        return _ModelTurn(
            text=response.text,
            object=response.object,
            tool_calls=response.tool_calls,
            finish_reason=response.finish_reason,
            usage=response.usage,
        )

    async def _invoke_stream(
        self, model: LanguageModel, request: ModelRequest, retry_count: int
    ) -> _ModelTurn | None:
        turn = _ModelTurn()
        iterator = model.stream(request).__aiter__()
        try:
            while True:
                chunk = await self._until_aborted(_next(iterator))
                if chunk is _ABORTED:
                    return None
                if chunk is _END:
                    break
                if chunk.type == "finish":
                    turn.finish_reason = chunk.payload.get("finish_reason") or "stop"
                    turn.usage = Usage.model_validate(chunk.payload.get("usage") or {})
                    continue

                phase = await self._runner.process_part(chunk, retry_count=retry_count)
                if phase.tripwire:
                    turn.tripwire = phase.tripwire
                    break
                part = phase.part
                if part is None:
                    continue
                if part.type == "text-delta":
                    turn.text += part.text
                elif part.type == "tool-call":
                    turn.tool_calls.append(ToolCallPart.model_validate(part.payload))
                elif part.type == "object":
                    turn.object = part.payload.get("object")
                await self._emit(part)
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

        if turn.tool_calls and turn.finish_reason == "stop":
            turn.finish_reason = "tool-calls"
        return turn

    async def _until_aborted(self, awaitable: Awaitable[Any]) -> Any:
        """Await ``awaitable`` unless the abort signal fires first."""
        if self._abort_signal is None:
            return await awaitable
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._abort_signal.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return _ABORTED

    # =========================================================================
    # Terminal states and helpers
    # =========================================================================

    def _can_retry(self, retry_count: int) -> bool:
        return self._max_processor_retries is not None and retry_count < self._max_processor_retries

    def _is_aborted(self) -> bool:
        return self._abort_signal is not None and self._abort_signal.is_set()

    async def _trip(self, tripwire: Tripwire, steps: list[StepResult], usage: Usage) -> LoopOutcome:
        self._transition(StepState.TRIPWIRE)
        logger.debug("tripwire processor=%s reason=%s", tripwire.processor_id, tripwire.reason)
        if self._metrics is not None:
            self._metrics.increment(
                "agent_tripwires_total",
                labels={**self._labels(self._model), "processor": tripwire.processor_id or "unknown"},
            )
        await self._emit(Chunk(type="tripwire", payload=tripwire.model_dump()))
        return LoopOutcome(
            steps=steps,
            tripwire=tripwire,
            finish_reason="tripwire",
            usage=usage,
            model_calls=self.model_calls,
        )

    async def _abort(self, steps: list[StepResult], usage: Usage) -> LoopOutcome:
        self._transition(StepState.ABORTED)
        logger.debug("run aborted after %d model calls", self.model_calls)
        await self._emit(Chunk(type="abort", payload={"steps": len(steps)}))
        return LoopOutcome(
            steps=steps, finish_reason="abort", usage=usage, aborted=True, model_calls=self.model_calls
        )

    async def _emit(self, chunk: Chunk) -> None:
        if self._channel is not None:
            await self._channel.send(chunk.model_copy(update={"run_id": self._context.run_id}))

    async def _notify_step(self, step: StepResult) -> None:
        if self._on_step_finish is None:
            return
        result = self._on_step_finish(step)
        if inspect.isawaitable(result):
            await result

    def _transition(self, state: StepState) -> None:
        self.state = state
        self.transitions.append(state)

    def _labels(self, model: Any) -> dict[str, Any]:
        return {
            "agent": self._context.agent_id or "agent",
            "model": getattr(model, "model_id", type(model).__name__),
            "thread_id": self._context.thread_id,
            "run_id": self._context.run_id,
        }

    def _count(self, name: str, model: Any, value: float = 1.0) -> None:
        if self._metrics is not None:
            self._metrics.increment(name, value, self._labels(model))
