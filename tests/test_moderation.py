"""Tests for ModerationProcessor."""

import json

from agentloop_core import Agent
from agentloop_core.chunks import Chunk
from agentloop_core.context import RunContext
from agentloop_core.llm.protocol import ModelResponse
from agentloop_core.processors import ModerationProcessor, ModerationResult, ProcessorRunner

from .conftest import ScriptedModel, tool_call_response


def verdict(**scores: float) -> str:
    return json.dumps({"category_scores": scores, "reason": "judge says so" if scores else None})


CLEAN = verdict()
HATEFUL = verdict(hate=0.9)


class TestModerate:
    """Tests for judging text."""

    async def test_parses_json_verdict(self):
        """Judge JSON text is parsed into a ModerationResult."""
        moderation = ModerationProcessor(ScriptedModel([HATEFUL]))

        result = await moderation.moderate("some text", RunContext())

        assert result.category_scores == {"hate": 0.9}
        assert moderation.flagged(result) == ["hate"]

    async def test_structured_object_verdict(self):
        """A structured object response is used when present."""
        judge = ScriptedModel([ModelResponse(object={"category_scores": {"violence": 0.7}})])
        moderation = ModerationProcessor(judge, threshold=0.6)

        result = await moderation.moderate("text", RunContext())

        assert moderation.flagged(result) == ["violence"]

    async def test_judge_failure_allows_content(self, caplog):
        """Judge errors and unparsable output are logged and allowed."""
        failing = ModerationProcessor(ScriptedModel([RuntimeError("judge down")]))
        garbled = ModerationProcessor(ScriptedModel(["not json"]))

        assert await failing.moderate("text", RunContext()) is None
        assert await garbled.moderate("text", RunContext()) is None
        assert "allowing content" in caplog.text

    def test_threshold_and_categories(self):
        """Only configured categories at or above the threshold are flagged."""
        moderation = ModerationProcessor(ScriptedModel(), categories=["hate"], threshold=0.5)
        result = ModerationResult(category_scores={"hate": 0.5, "violence": 0.99})

        assert moderation.flagged(result) == ["hate"]


class TestStrategies:
    """Tests for block, warn and filter strategies in a run."""

    async def test_block_input(self):
        """Blocked input ends the run before the agent model is called."""
        model = ScriptedModel(["never sent"])
        moderation = ModerationProcessor(ScriptedModel([HATEFUL]))
        agent = Agent(model=model, input_processors=[moderation])

        result = await agent.generate("something hateful")

        assert model.calls == 0
        assert result.tripwire.processor_id == "moderation"
        assert result.tripwire.reason == "judge says so"
        assert result.tripwire.metadata["categories"] == ["hate"]

    async def test_input_checked_once_per_run(self):
        """The same user message is judged once even across steps."""
        judge = ScriptedModel([CLEAN])
        model = ScriptedModel([tool_call_response("missing"), "done"])
        agent = Agent(model=model, input_processors=[ModerationProcessor(judge)])

        await agent.generate("hello")

        assert model.calls == 2
        assert judge.calls == 1

    async def test_warn_lets_content_through(self, caplog):
        """Warn logs flagged content and continues."""
        model = ScriptedModel(["answer"])
        agent = Agent(model=model, input_processors=[ModerationProcessor(ScriptedModel([HATEFUL]), strategy="warn")])

        result = await agent.generate("something hateful")

        assert result.text == "answer"
        assert "Moderation flagged message" in caplog.text

    async def test_filter_output_message(self):
        """Filter removes a flagged response message."""
        judge = ScriptedModel([HATEFUL])
        agent = Agent(
            model=ScriptedModel(["hateful answer"]),
            output_processors=[ModerationProcessor(judge, strategy="filter")],
        )

        result = await agent.generate("hi")

        assert result.tripwire is None
        assert result.messages == []

    async def test_blocked_output_is_not_saved(self, memory, store):
        """A response blocked on output never reaches the thread's history."""
        agent = Agent(
            model=ScriptedModel(["hateful answer"]),
            memory=memory,
            output_processors=[ModerationProcessor(ScriptedModel([HATEFUL]), strategy="block")],
        )

        result = await agent.generate("hi", thread_id="t1", resource_id="u1")

        assert result.tripwire is not None
        assert [m.text for m in await store.list_messages("t1")] == ["hi"]

    async def test_filter_stream_chunk(self):
        """Filter drops flagged stream chunks."""
        judge = ScriptedModel([CLEAN, HATEFUL, CLEAN])
        runner = ProcessorRunner(output_processors=[ModerationProcessor(judge, strategy="filter")])

        parts = [await runner.process_part(Chunk.text_delta(text)) for text in ("a", " b", " c")]

        assert [p.part.text if p.part else None for p in parts] == ["a", None, " c"]

    async def test_stream_chunk_window(self):
        """Previous chunks within the window are judged with the current one."""
        judge = ScriptedModel([CLEAN])
        runner = ProcessorRunner(output_processors=[ModerationProcessor(judge, chunk_window=1)])

        for text in ("one", " two", " three"):
            await runner.process_part(Chunk.text_delta(text))

        assert judge.requests[-1].messages[-1].text == " two three"
