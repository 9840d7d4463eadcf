import re
from pathlib import Path
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from agentloop_core.chunks import Chunk
from agentloop_core.config import AgentLoopConfig
from agentloop_core.llm.protocol import ModelRequest, ModelResponse, Usage
from agentloop_core.memory import Memory, MemoryConfig
from agentloop_core.messages import ToolCallPart
from agentloop_core.storage.inmemory import InMemoryStore


class ScriptedModel:
    """Model that replays scripted responses and records every request.

    Each call consumes the next scripted item; the last item repeats once
    the script runs out. Strings become text responses and exceptions are
    raised from the call.
    """

    def __init__(self, responses=("ok",), model_id: str = "scripted-model") -> None:
        self._responses = list(responses)
        self._model_id = model_id
        self.requests: list[ModelRequest] = []

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def calls(self) -> int:
        return len(self.requests)

    def _next_response(self) -> ModelResponse:
        item = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, str):
            return ModelResponse(text=item, usage=Usage(input_tokens=10, output_tokens=5, total_tokens=15))
        return item

    async def generate(self, request: ModelRequest) -> ModelResponse:
        self.requests.append(request)
        return self._next_response()

    async def stream(self, request: ModelRequest):
        self.requests.append(request)
        response = self._next_response()
        for piece in re.findall(r"\s*\S+", response.text):
            yield Chunk.text_delta(piece)
        for call in response.tool_calls:
            yield Chunk.tool_call(call.tool_call_id, call.tool_name, call.args)
        yield Chunk.finish(response.finish_reason, usage=response.usage)


def tool_call_response(tool_name: str, args: dict | None = None, tool_call_id: str | None = None) -> ModelResponse:
    """Model response asking for one tool call."""
    return ModelResponse(
        tool_calls=[
            ToolCallPart(
                tool_call_id=tool_call_id or f"call-{uuid4().hex[:8]}",
                tool_name=tool_name,
                args=args or {},
            )
        ],
        finish_reason="tool-calls",
    )


class MockEmbedder:
    """Mock embedder for testing."""

    def __init__(self, dimensions: int = 8) -> None:
        self._dimensions = dimensions

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed(self, text: str) -> list[float]:
        """Return a deterministic bag-of-letters embedding."""
        vec = [0.0] * self._dimensions
        for char in text.lower():
            if char.isalpha():
                vec[ord(char) % self._dimensions] += 1.0
        norm = sum(x * x for x in vec) ** 0.5 or 1.0
        return [x / norm for x in vec]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed multiple texts."""
        return [await self.embed(text) for text in texts]


@pytest.fixture
def scripted_model() -> ScriptedModel:
    """Provide a model that always answers "ok"."""
    return ScriptedModel()


@pytest.fixture
def mock_embedder() -> MockEmbedder:
    """Provide a mock embedder for tests."""
    return MockEmbedder()


@pytest.fixture
def sample_thread_id() -> str:
    """Provide a sample thread ID."""
    return f"thread-{uuid4()}"


@pytest.fixture
def config(tmp_path: Path) -> AgentLoopConfig:
    """Config isolated from the environment's home directory."""
    return AgentLoopConfig(home=tmp_path / ".agentloop")


@pytest.fixture
async def store():
    """Connected in-memory store."""
    store = InMemoryStore()
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def memory(store: InMemoryStore) -> Memory:
    """Memory over the in-memory store."""
    return Memory(store, MemoryConfig(last_messages=10))


@pytest.fixture
def mock_memory_store(mocker) -> AsyncMock:
    """Provide a mock memory store."""
    mock = AsyncMock()
    mock.connect = AsyncMock()
    mock.close = AsyncMock()
    mock.save_thread = AsyncMock(side_effect=lambda thread: thread)
    mock.get_thread_by_id = AsyncMock(return_value=None)
    mock.delete_thread = AsyncMock()
    mock.save_messages = AsyncMock(side_effect=lambda messages: messages)
    mock.list_messages = AsyncMock(return_value=[])
    mock.recall = AsyncMock(return_value=[])
    return mock


@pytest.fixture
def mock_vector_index(mocker) -> AsyncMock:
    """Provide a mock vector index."""
    mock = AsyncMock()
    mock.connect = AsyncMock()
    mock.close = AsyncMock()
    mock.add = AsyncMock()
    mock.search = AsyncMock(return_value=[])
    mock.delete_by_thread = AsyncMock(return_value=0)
    return mock
