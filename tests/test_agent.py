"""Tests for Agent.generate and Agent.stream.

Run with:
    uv run pytest tests/test_agent.py -v
"""

import asyncio

import pytest
from pydantic import BaseModel, ValidationError

from agentloop_core import Agent, Memory, MemoryConfig, Tool
from agentloop_core.chunks import Chunk
from agentloop_core.errors import MemoryNotConfiguredError
from agentloop_core.processors import BaseProcessor
from agentloop_core.tripwire import retry_feedback

from .conftest import ScriptedModel, tool_call_response


class BlockInput(BaseProcessor):
    id = "block-input"

    def process_input(self, args):
        return args.abort("Input blocked")


class RejectDrafts(BaseProcessor):
    id = "reject-drafts"

    def process_output_step(self, args):
        if "draft" in args.text:
            return args.abort("the answer is only a draft", retry=True)
        return None


class WeatherInput(BaseModel):
    city: str


async def get_weather(args: WeatherInput, ctx) -> str:
    return f"{args.city}: 21C"


# =============================================================================
# Generate
# =============================================================================


class TestGenerate:
    """Tests for non-streaming runs."""

    async def test_fixed_text_answer(self):
        """A memoryless agent returns the model's text and no tool calls."""
        model = ScriptedModel(["Donald Trump won the 2016 election."])
        agent = Agent(model=model, instructions="You are a historian.")

        result = await agent.generate("Who won the 2016 election?")

        assert "Donald Trump" in result.text
        assert len(result.tool_calls) < 1
        assert result.finish_reason == "stop"
        assert result.error is None

    async def test_instructions_lead_the_prompt(self):
        """Instructions, static or resolved from context, are system messages."""
        model = ScriptedModel()
        agent = Agent(model=model, instructions=lambda ctx: f"Answer in {ctx.get('language')}.")

        await agent.generate("Hi", context={"language": "French"})

        first = model.requests[0].messages[0]
        assert first.role == "system"
        assert first.text == "Answer in French."

    async def test_tool_round_trip(self):
        """Tools requested by the model are executed and reported."""
        model = ScriptedModel([tool_call_response("weather", {"city": "Paris"}, "c1"), "It is 21C in Paris."])
        weather = Tool("weather", get_weather, description="Current weather", input_schema=WeatherInput)
        agent = Agent(model=model, tools=[weather])

        result = await agent.generate("Weather in Paris?")

        assert result.text == "It is 21C in Paris."
        assert [c.tool_name for c in result.tool_calls] == ["weather"]
        assert result.tool_results[0].result == "Paris: 21C"
        assert model.requests[0].tools[0].name == "weather"
        assert model.requests[0].tools[0].parameters["properties"]["city"]["type"] == "string"

    async def test_input_abort_makes_no_model_call(self, memory, store):
        """An input tripwire ends the run before the model is called."""
        model = ScriptedModel()
        agent = Agent(model=model, memory=memory, input_processors=[BlockInput()])

        result = await agent.generate("hello", thread_id="t1", resource_id="u1")

        assert result.tripwire.reason == "Input blocked"
        assert result.tripwire.processor_id == "block-input"
        assert result.text == ""
        assert model.calls == 0
        assert result.model_calls == 0
        assert await store.get_thread_by_id("t1") is not None
        assert await store.list_messages("t1") == []

    async def test_retry_then_accept(self, memory, store):
        """A rejected draft is regenerated and only the final answer is kept."""
        model = ScriptedModel(["a draft answer", "the final answer"])
        agent = Agent(model=model, memory=memory, output_processors=[RejectDrafts()])

        result = await agent.generate(
            "Explain retries", thread_id="t1", resource_id="u1", max_processor_retries=2
        )

        assert result.text == "the final answer"
        assert result.tripwire is None
        assert model.calls == 2
        final_prompt = [m.text for m in model.requests[-1].messages]
        assert "a draft answer" not in final_prompt
        assert retry_feedback("the answer is only a draft") in final_prompt
        saved = await store.list_messages("t1")
        assert [m.text for m in saved] == ["Explain retries", "the final answer"]

    async def test_always_retry_ends_in_tripwire(self):
        """Exhausting retries returns a tripwire with the last reason."""
        model = ScriptedModel(["another draft"])
        agent = Agent(model=model, output_processors=[RejectDrafts()])

        result = await agent.generate("Explain retries", max_processor_retries=2)

        assert model.calls == 3
        assert result.tripwire.reason == "the answer is only a draft"
        assert result.finish_reason == "tripwire"
        assert result.text == ""
        assert len(result.steps) == 3

    async def test_vetoed_result_is_not_saved(self, memory, store):
        """A response rejected by process_output_result is never stored or replayed."""

        class VetoResult(BaseProcessor):
            id = "veto-result"

            def process_output_result(self, args):
                if any("SECRET" in m.text for m in args.messages):
                    return args.abort("unsafe answer")
                return None

        model = ScriptedModel(["SECRET unsafe answer", "a safe answer"])
        agent = Agent(model=model, memory=memory, output_processors=[VetoResult()])

        result = await agent.generate("hi", thread_id="t1", resource_id="u1")

        assert result.tripwire.reason == "unsafe answer"
        assert result.messages == []
        assert [m.text for m in await store.list_messages("t1")] == ["hi"]

        await agent.generate("again", thread_id="t1", resource_id="u1")

        assert [m.text for m in model.requests[1].messages] == ["hi", "again"]

    async def test_model_error_saves_nothing(self, mock_memory_store):
        """A model failure creates the thread but persists no messages."""
        error = ConnectionError("provider down")
        seen: list[Exception] = []
        agent = Agent(model=ScriptedModel([error]), memory=Memory(mock_memory_store))

        with pytest.raises(ConnectionError) as exc_info:
            await agent.generate("hi", thread_id="t1", resource_id="u1", on_error=seen.append)

        assert exc_info.value is error
        assert seen == [error]
        mock_memory_store.save_thread.assert_awaited_once()
        mock_memory_store.save_messages.assert_not_called()

    async def test_history_is_recalled(self, memory):
        """A second run on a thread sees the first run's messages."""
        model = ScriptedModel(["Nice to meet you, Ada.", "Your name is Ada."])
        agent = Agent(model=model, memory=memory)

        await agent.generate("My name is Ada.", thread_id="t1", resource_id="u1")
        result = await agent.generate("What is my name?", thread_id="t1", resource_id="u1")

        assert result.text == "Your name is Ada."
        assert [m.text for m in model.requests[1].messages] == [
            "My name is Ada.",
            "Nice to meet you, Ada.",
            "What is my name?",
        ]

    async def test_read_only_memory_saves_nothing(self, store):
        """Read-only memory recalls but never writes messages."""
        agent = Agent(model=ScriptedModel(), memory=Memory(store, MemoryConfig(read_only=True)))

        await agent.generate("hi", thread_id="t1", resource_id="u1")

        assert await store.list_messages("t1") == []

    async def test_callbacks(self):
        """on_step_finish and on_finish receive the step and the result."""
        steps = []
        finished = []
        agent = Agent(model=ScriptedModel(["done"]))

        result = await agent.generate("go", on_step_finish=steps.append, on_finish=finished.append)

        assert [s.text for s in steps] == ["done"]
        assert finished == [result]

    async def test_langchain_input(self):
        """LangChain messages are accepted as input."""
        from langchain_core.messages import HumanMessage

        model = ScriptedModel()
        agent = Agent(model=model)

        await agent.generate([HumanMessage(content="Hello from LangChain")])

        assert model.requests[0].messages[-1].text == "Hello from LangChain"

    async def test_unknown_option_rejected(self):
        """Misspelled run options fail loudly."""
        agent = Agent(model=ScriptedModel())

        with pytest.raises(ValidationError):
            await agent.generate("hi", maxSteps=1)

    def test_memory_required(self):
        """Accessing memory on an agent without it raises."""
        agent = Agent(model=ScriptedModel())

        with pytest.raises(MemoryNotConfiguredError):
            agent.memory


# =============================================================================
# Stream
# =============================================================================


class TestStream:
    """Tests for streaming runs."""

    async def test_stream_text_and_result(self):
        """Chunks arrive in order and the result matches the streamed text."""
        agent = Agent(model=ScriptedModel(["Streaming works fine."]))

        stream = agent.stream("Does streaming work?")
        chunks = [chunk async for chunk in stream]
        result = await stream.result()

        assert chunks[-1].type == "finish"
        assert "".join(c.text for c in chunks if c.type == "text-delta") == "Streaming works fine."
        assert result.text == "Streaming works fine."
        assert {c.run_id for c in chunks} == {result.run_id}

    async def test_text_stream(self):
        """text_stream yields only text."""
        agent = Agent(model=ScriptedModel(["one two three"]))

        pieces = [piece async for piece in agent.stream("count").text_stream()]

        assert "".join(pieces) == "one two three"

    async def test_error_identity(self, mock_memory_store):
        """The callback, the error chunk and the result share one error object."""
        error = RuntimeError("stream failed")
        seen: list[Exception] = []
        agent = Agent(model=ScriptedModel([error]), memory=Memory(mock_memory_store))

        stream = agent.stream("hi", thread_id="t1", resource_id="u1", on_error=seen.append)
        chunks = [chunk async for chunk in stream]
        result = await stream.result()

        error_chunks = [c for c in chunks if c.type == "error"]
        assert len(error_chunks) == 1
        assert seen[0] is error
        assert error_chunks[0].error is error
        assert result.error is error
        assert result.finish_reason == "error"
        mock_memory_store.save_messages.assert_not_called()

    async def test_abort_mid_stream(self, memory, store):
        """Aborting mid-stream emits an abort chunk, calls on_abort and saves nothing."""

        class SlowStream(ScriptedModel):
            async def stream(self, request):
                self.requests.append(request)
                yield Chunk.text_delta("Hello")
                await asyncio.sleep(10)
                yield Chunk.finish("stop")

        signal = asyncio.Event()
        aborted = []
        agent = Agent(model=SlowStream(), memory=memory)

        stream = agent.stream(
            "hi", thread_id="t1", resource_id="u1", abort_signal=signal, on_abort=aborted.append
        )
        types = []
        async for chunk in stream:
            types.append(chunk.type)
            if chunk.type == "text-delta":
                signal.set()
        result = await stream.result()

        assert "abort" in types
        assert result.finish_reason == "abort"
        assert aborted == [[]]
        assert await store.list_messages("t1") == []

    async def test_aclose_cancels_run(self):
        """Closing the stream early cancels the producing run."""

        class Endless(ScriptedModel):
            async def stream(self, request):
                self.requests.append(request)
                while True:
                    yield Chunk.text_delta("more ")
                    await asyncio.sleep(0)

        stream = Agent(model=Endless()).stream("go on")
        async with stream:
            async for chunk in stream:
                assert chunk.type in ("step-start", "text-delta")
                if chunk.type == "text-delta":
                    break

        assert stream._task.done()
