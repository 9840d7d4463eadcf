"""Tests for FallbackModel."""

import pytest

from agentloop_core.chunks import Chunk
from agentloop_core.llm.fallback import FallbackModel, ModelWithRetries
from agentloop_core.llm.protocol import ModelRequest
from agentloop_core.messages import Message

from .conftest import ScriptedModel


def request() -> ModelRequest:
    return ModelRequest(messages=[Message(role="user", content="hi")])


def fallback(*entries) -> FallbackModel:
    return FallbackModel(list(entries), min_wait=0, max_wait=0)


class BreaksMidStream:
    """Streams one chunk, then fails."""

    model_id = "breaks-mid-stream"

    def __init__(self) -> None:
        self.calls = 0

    async def generate(self, request):
        raise NotImplementedError

    async def stream(self, request):
        self.calls += 1
        yield Chunk.text_delta("partial")
        raise ConnectionError("connection reset")


class TestGenerate:
    """Tests for FallbackModel.generate."""

    async def test_primary_used_when_healthy(self):
        """The first model answers when it succeeds."""
        primary = ScriptedModel(["primary"], model_id="primary")
        backup = ScriptedModel(["backup"], model_id="backup")

        response = await fallback(primary, backup).generate(request())

        assert response.text == "primary"
        assert backup.calls == 0

    async def test_falls_back_after_retries(self):
        """A failing model is retried, then the next one is used."""
        primary = ScriptedModel([TimeoutError("slow")], model_id="primary")
        backup = ScriptedModel(["backup"], model_id="backup")

        response = await fallback(ModelWithRetries(model=primary, max_retries=2), backup).generate(request())

        assert response.text == "backup"
        assert primary.calls == 3

    async def test_retry_recovers(self):
        """A transient failure is retried on the same model."""
        primary = ScriptedModel([TimeoutError("slow"), "second try"], model_id="primary")

        response = await fallback(ModelWithRetries(model=primary, max_retries=1)).generate(request())

        assert response.text == "second try"
        assert primary.calls == 2

    async def test_all_models_fail(self):
        """Exhaustion raises RuntimeError chained to the last error."""
        last = ValueError("backup broke")
        primary = ScriptedModel([TimeoutError("slow")], model_id="primary")
        backup = ScriptedModel([last], model_id="backup")

        with pytest.raises(RuntimeError, match="Exhausted all fallback models") as exc_info:
            await fallback(primary, backup).generate(request())

        assert exc_info.value.__cause__ is last

    def test_disabled_models_skipped(self):
        """Disabled entries are dropped; at least one must remain."""
        primary = ScriptedModel(model_id="primary")
        backup = ScriptedModel(model_id="backup")

        model = fallback(ModelWithRetries(model=primary, enabled=False), backup)

        assert model.model_id == "backup"
        with pytest.raises(ValueError, match="at least one enabled model"):
            fallback(ModelWithRetries(model=primary, enabled=False))


class TestStream:
    """Tests for FallbackModel.stream."""

    async def test_falls_back_before_first_chunk(self):
        """A model that fails before emitting is replaced by the next."""
        primary = ScriptedModel([ConnectionError("refused")], model_id="primary")
        backup = ScriptedModel(["hello there"], model_id="backup")

        chunks = [c async for c in fallback(primary, backup).stream(request())]

        assert "".join(c.text for c in chunks if c.type == "text-delta") == "hello there"
        assert chunks[-1].type == "finish"

    async def test_failure_after_emission_propagates(self):
        """Once a chunk is out, errors are not retried or swallowed."""
        broken = BreaksMidStream()
        backup = ScriptedModel(["never"], model_id="backup")
        seen = []

        with pytest.raises(ConnectionError):
            async for chunk in fallback(ModelWithRetries(model=broken, max_retries=3), backup).stream(request()):
                seen.append(chunk.text)

        assert seen == ["partial"]
        assert broken.calls == 1
        assert backup.calls == 0
