"""Agent - a language model behind a multi-step tool loop with memory.

Usage:
    ```python
    from agentloop_core import Agent, Memory, Tool
    from agentloop_core.storage import InMemoryStore

    agent = Agent(
        model=model,
        instructions="You are a weather assistant.",
        tools=[weather_tool],
        memory=Memory(InMemoryStore()),
    )

    result = await agent.generate("Weather in Paris?", thread_id="t1", resource_id="u1")
    print(result.text)

    async for chunk in agent.stream("And in Rome?", thread_id="t1", resource_id="u1"):
        if chunk.type == "text-delta":
            print(chunk.text, end="")
    ```
"""

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping, Sequence
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from agentloop_core.adapters.langchain import LangChainAdapter
from agentloop_core.chunks import Chunk
from agentloop_core.config import AgentLoopConfig
from agentloop_core.context import RunContext
from agentloop_core.errors import MemoryNotConfiguredError
from agentloop_core.llm.protocol import LanguageModel, ModelRequest
from agentloop_core.loop.channel import ChunkChannel
from agentloop_core.loop.step_loop import StepLoop
from agentloop_core.memory import (
    DEFAULT_TITLE_INSTRUCTIONS,
    Memory,
    clean_title,
    resolve_dynamic,
)
from agentloop_core.message_list import MessageList
from agentloop_core.messages import Message, Thread
from agentloop_core.metrics import MetricsRecorder
from agentloop_core.processors.message_history import MessageHistory
from agentloop_core.processors.prepare_step import PrepareStepProcessor
from agentloop_core.processors.runner import ProcessorRunner
from agentloop_core.processors.semantic_recall import SemanticRecall
from agentloop_core.processors.working_memory import WorkingMemory, update_working_memory_tool
from agentloop_core.results import GenerateResult, assemble_result
from agentloop_core.tools import Tool, ToolExecutor

logger = logging.getLogger(__name__)

Callback = Callable[..., Awaitable[Any] | Any]


class RunOptions(BaseModel):
    """Per-call options of ``Agent.generate`` and ``Agent.stream``.

    Budgets left unset fall back to the agent's AgentLoopConfig.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="forbid")

    thread_id: str | None = None
    resource_id: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    instructions: str | list[str] | None = None
    max_steps: int | None = Field(default=None, ge=1)
    max_processor_retries: int | None = Field(default=None, ge=0)
    max_model_calls: int | None = Field(default=None, ge=1)
    prepare_step: Callback | None = None
    tool_choice: str | None = None
    active_tools: list[str] | None = None
    model_settings: dict[str, Any] = Field(default_factory=dict)
    abort_signal: asyncio.Event | None = None
    on_error: Callback | None = None
    on_abort: Callback | None = None
    on_step_finish: Callback | None = None
    on_finish: Callback | None = None


async def _call(callback: Callback | None, *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class AgentStream:
    """Pull-based stream of one run's chunks.

    Iterate it for chunks; ``await stream.result()`` for the GenerateResult.
    The run starts on first use. ``aclose()`` (or leaving ``async with``)
    cancels a run that is still producing.
    """

    def __init__(self, produce: Callable[[ChunkChannel], Awaitable[GenerateResult]]) -> None:
        self._produce = produce
        self._channel = ChunkChannel()
        self._task: asyncio.Task[GenerateResult] | None = None

    def _start(self) -> asyncio.Task[GenerateResult]:
        if self._task is None:
            self._task = asyncio.create_task(self._run())
        return self._task

    async def _run(self) -> GenerateResult:
        try:
            return await self._produce(self._channel)
        finally:
            self._channel.close()

    async def __aiter__(self) -> AsyncIterator[Chunk]:
        self._start()
        async for chunk in self._channel:
            yield chunk

    async def text_stream(self) -> AsyncIterator[str]:
        async for chunk in self:
            if chunk.type == "text-delta":
                yield chunk.text

    async def result(self) -> GenerateResult:
        return await self._start()

    async def aclose(self) -> None:
        task = self._start()
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def __aenter__(self) -> "AgentStream":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()


class Agent:
    """A model, its instructions and tools, and optional memory and processors.

    Args:
        model: Model used for every step (and for titles unless overridden).
        id: Stable agent id, used in logs and metric labels.
        instructions: System prompt: a string, a list of strings, or
            ``callable(context)`` returning either (sync or async).
        tools: Tools the model may call.
        memory: Thread memory; enables history, persistence and titles.
        input_processors: Processors run before each model call.
        output_processors: Processors run on model output.
        config: Budgets and defaults. Uses AgentLoopConfig() if not provided.
        metrics: Optional in-process metrics recorder.
    """

    def __init__(
        self,
        *,
        model: LanguageModel,
        id: str = "agent",
        name: str | None = None,
        instructions: str | list[str] | Callable[[RunContext], Any] = "",
        tools: Sequence[Tool] | Mapping[str, Tool] = (),
        memory: Memory | None = None,
        input_processors: Sequence[Any] = (),
        output_processors: Sequence[Any] = (),
        config: AgentLoopConfig | None = None,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self.id = id
        self.name = name or id
        self._model = model
        self._instructions = instructions
        self._tools: dict[str, Tool] = dict(tools) if isinstance(tools, Mapping) else {t.id: t for t in tools}
        self._memory = memory
        self._input_processors = list(input_processors)
        self._output_processors = list(output_processors)
        self._config = config or AgentLoopConfig()
        self._metrics = metrics
        self._adapter = LangChainAdapter()
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def memory(self) -> Memory:
        if self._memory is None:
            raise MemoryNotConfiguredError(f"Agent {self.id!r} has no memory configured")
        return self._memory

    # =========================================================================
    # Public API
    # =========================================================================

    async def generate(self, messages: Any, **options: Any) -> GenerateResult:
        """Run the agent to completion.

        Args:
            messages: A string, Message, dict, LangChain message, or a list of these.
            **options: RunOptions fields (thread_id, resource_id, max_steps, ...).

        Returns:
            The assembled result. A tripwire is a result, not an error.

        Raises:
            Exception: The model's (or a processor's) error, unchanged, after
                ``on_error`` has been called with it.
        """
        run_options = RunOptions.model_validate(options)
        context = self._context(run_options)
        try:
            return await self._execute(messages, run_options, context, None)
        except Exception as exc:
            logger.error("Agent %s run %s failed: %s", self.id, context.run_id, exc)
            await _call(run_options.on_error, exc)
            raise

    def stream(self, messages: Any, **options: Any) -> AgentStream:
        """Run the agent, exposing its chunks as they are produced.

        Errors do not raise from iteration: they reach ``on_error``, an
        ``error`` chunk and ``GenerateResult.error`` as the same object.
        """
        run_options = RunOptions.model_validate(options)
        context = self._context(run_options)

        async def produce(channel: ChunkChannel) -> GenerateResult:
            try:
                return await self._execute(messages, run_options, context, channel)
            except Exception as exc:
                logger.error("Agent %s run %s failed: %s", self.id, context.run_id, exc)
                await _call(run_options.on_error, exc)
                await channel.send(Chunk(type="error", payload={"error": exc}, run_id=context.run_id))
                return GenerateResult(
                    run_id=context.run_id,
                    error=exc,
                    finish_reason="error",
                    thread_id=run_options.thread_id,
                )

        return AgentStream(produce)

    async def wait_for_background_tasks(self) -> None:
        """Wait for fire-and-continue work such as title generation."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # =========================================================================
    # Run orchestration
    # =========================================================================

    def _context(self, options: RunOptions) -> RunContext:
        return RunContext(
            agent_id=self.id,
            thread_id=options.thread_id,
            resource_id=options.resource_id,
            values=options.context,
        )

    async def _execute(
        self,
        messages: Any,
        options: RunOptions,
        context: RunContext,
        channel: ChunkChannel | None,
    ) -> GenerateResult:
        memory = self._memory if options.thread_id else None
        thread: Thread | None = None
        if memory is not None:
            # Created before any model call so storage always has the thread.
            thread = await memory.ensure_thread(options.thread_id, options.resource_id)

        message_list = MessageList(thread_id=options.thread_id, resource_id=options.resource_id)
        for text in await self._resolve_instructions(options, context):
            message_list.add_system(text)
        message_list.add(self._coerce_input(messages), "input")

        semantic = self._semantic_recall(memory)
        runner = ProcessorRunner(
            input_processors=self._input_processors_for(options, memory, semantic),
            output_processors=self._output_processors_for(memory, semantic),
            context=context,
        )
        loop = StepLoop(
            model=self._model,
            message_list=message_list,
            runner=runner,
            executor=ToolExecutor(self._tools_for(memory), self._config.tool_concurrency),
            context=context,
            max_steps=options.max_steps or self._config.max_steps,
            max_processor_retries=(
                options.max_processor_retries
                if options.max_processor_retries is not None
                else self._config.max_processor_retries
            ),
            max_model_calls=options.max_model_calls or self._config.max_model_calls,
            tool_choice=options.tool_choice,
            model_settings=options.model_settings,
            active_tools=options.active_tools,
            channel=channel,
            abort_signal=options.abort_signal,
            metrics=self._metrics,
            on_step_finish=options.on_step_finish,
        )

        outcome = await loop.run()
        logger.debug(
            "run %s finished reason=%s model_calls=%d", context.run_id, outcome.finish_reason, outcome.model_calls
        )

        if outcome.aborted:
            await _call(options.on_abort, outcome.steps)
        elif memory is not None and outcome.model_calls > 0:
            await memory.save_messages(message_list.drain_unsaved_messages())

        result = assemble_result(
            context.run_id,
            outcome,
            messages=message_list.response_messages(),
            thread_id=options.thread_id,
        )

        if (
            memory is not None
            and thread is not None
            and not thread.title
            and memory.title_config() is not None
            and outcome.tripwire is None
            and not outcome.aborted
        ):
            first_user = next((m.text for m in message_list.input_messages() if m.role == "user"), None)
            if first_user:
                self._spawn(self._generate_title(memory, thread, first_user, context))

        await _call(options.on_finish, result)
        return result

    def _coerce_input(self, messages: Any) -> list[Message | dict[str, Any] | str]:
        items = messages if isinstance(messages, (list, tuple)) else [messages]
        coerced: list[Message | dict[str, Any] | str] = []
        for item in items:
            if isinstance(item, (Message, dict, str)):
                coerced.append(item)
            else:
                coerced.append(self._adapter.convert_single(item))
        return coerced

    async def _resolve_instructions(self, options: RunOptions, context: RunContext) -> list[str]:
        value = options.instructions if options.instructions is not None else self._instructions
        value = await resolve_dynamic(value, context)
        if not value:
            return []
        if isinstance(value, str):
            return [value]
        return [text for text in value if text]

    def _tools_for(self, memory: Memory | None) -> dict[str, Tool]:
        tools = dict(self._tools)
        if memory is not None and memory.working_memory_config() is not None and not memory.config.read_only:
            tool = update_working_memory_tool(memory)
            tools[tool.id] = tool
        return tools

    def _semantic_recall(self, memory: Memory | None) -> SemanticRecall | None:
        if memory is None or not memory.semantic_recall_enabled:
            return None
        return SemanticRecall(memory.embedder, memory.vector_index, top_k=memory.config.semantic_recall_top_k)

    def _input_processors_for(
        self, options: RunOptions, memory: Memory | None, semantic: SemanticRecall | None
    ) -> list[Any]:
        processors: list[Any] = []
        if memory is not None and memory.config.last_messages is not None:
            processors.append(MessageHistory(memory))
        if memory is not None and memory.working_memory_config() is not None:
            processors.append(WorkingMemory(memory))
        if semantic is not None:
            processors.append(semantic)
        processors.extend(self._input_processors)
        if options.prepare_step is not None:
            processors.append(PrepareStepProcessor(options.prepare_step))
        return processors

    def _output_processors_for(self, memory: Memory | None, semantic: SemanticRecall | None) -> list[Any]:
        processors = list(self._output_processors)
        if semantic is not None and memory is not None and not memory.config.read_only:
            processors.append(semantic)
        return processors

    # =========================================================================
    # Title generation
    # =========================================================================

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _generate_title(
        self,
        memory: Memory,
        thread: Thread,
        user_text: str,
        context: RunContext,
    ) -> str | None:
        """Generate and save a thread title; failures leave the title unchanged."""
        config = memory.title_config()
        if config is None:
            return None
        try:
            model = await resolve_dynamic(config.model, context) or self._model
            instructions = await resolve_dynamic(config.instructions, context) or DEFAULT_TITLE_INSTRUCTIONS
            response = await model.generate(
                ModelRequest(
                    messages=[
                        Message(role="system", content=instructions),
                        Message(role="user", content=user_text),
                    ],
                    context=context,
                )
            )
            title = clean_title(response.text)
            if not title:
                return None
            await memory.update_title(thread, title)
            logger.debug("thread %s titled %r", thread.id, title)
            return title
        except Exception:
            logger.exception("Title generation failed for thread %s", thread.id)
            return None
