"""LangChain chat model wrapper.

Exposes any ``langchain_core`` chat model as a LanguageModel.

Usage:
    ```python
    from langchain_openai import ChatOpenAI
    from agentloop_core.llm.langchain import LangChainChatModel

    model = LangChainChatModel(ChatOpenAI(model="gpt-4o-mini"))
    agent = Agent(model=model, instructions="Be brief.")
    ```
"""

import logging
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

from agentloop_core.adapters.langchain import LangChainAdapter
from agentloop_core.chunks import Chunk
from agentloop_core.llm.protocol import ModelRequest, ModelResponse, Usage
from agentloop_core.messages import ToolCallPart

if TYPE_CHECKING:
    from langchain_core.language_models import BaseChatModel
    from langchain_core.messages import AIMessage

logger = logging.getLogger(__name__)

_FINISH_REASONS = {
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "end_turn": "stop",
    "max_tokens": "length",
    "content_filter": "content-filter",
}


def _finish_reason(message: "AIMessage") -> str:
    if message.tool_calls:
        return "tool-calls"
    metadata = message.response_metadata or {}
    raw = metadata.get("finish_reason") or metadata.get("stop_reason") or "stop"
    return _FINISH_REASONS.get(raw, raw)


def _usage(message: "AIMessage") -> Usage:
    usage = getattr(message, "usage_metadata", None) or {}
    return Usage(
        input_tokens=usage.get("input_tokens", 0),
        output_tokens=usage.get("output_tokens", 0),
        total_tokens=usage.get("total_tokens", 0),
    )


class LangChainChatModel:
    """LanguageModel backed by a LangChain ``BaseChatModel``."""

    def __init__(self, chat_model: "BaseChatModel", model_id: str | None = None) -> None:
        self._chat_model = chat_model
        self._model_id = model_id or getattr(chat_model, "model_name", None) or type(chat_model).__name__
        self._adapter = LangChainAdapter()

    @property
    def model_id(self) -> str:
        return self._model_id

    def _runnable(self, request: ModelRequest) -> Any:
        runnable: Any = self._chat_model
        if request.tools:
            tools = [
                {
                    "type": "function",
                    "function": {
                        "name": spec.name,
                        "description": spec.description,
                        "parameters": spec.parameters,
                    },
                }
                for spec in request.tools
            ]
            kwargs = {"tool_choice": request.tool_choice} if request.tool_choice else {}
            runnable = runnable.bind_tools(tools, **kwargs)
        if request.model_settings:
            runnable = runnable.bind(**request.model_settings)
        return runnable

    async def generate(self, request: ModelRequest) -> ModelResponse:
        """Invoke the chat model once."""
        messages = self._adapter.to_external(request.messages)
        reply = await self._runnable(request).ainvoke(messages)
        converted = self._adapter.convert_single(reply)
        logger.debug("langchain generate model=%s tool_calls=%d", self._model_id, len(reply.tool_calls))
        return ModelResponse(
            text=converted.text,
            tool_calls=converted.tool_calls,
            finish_reason=_finish_reason(reply),
            usage=_usage(reply),
        )

    async def stream(self, request: ModelRequest) -> AsyncIterator[Chunk]:
        """Stream text deltas, then tool calls, then a finish chunk."""
        messages = self._adapter.to_external(request.messages)
        gathered = None
        async for piece in self._runnable(request).astream(messages):
            gathered = piece if gathered is None else gathered + piece
            for part in self._adapter.convert_single(piece).content:
                text = getattr(part, "text", None)
                if text:
                    yield Chunk.text_delta(text)

        if gathered is None:
            yield Chunk.finish("stop", usage=Usage())
            return

        calls: list[ToolCallPart] = self._adapter.convert_single(gathered).tool_calls
        for call in calls:
            yield Chunk.tool_call(call.tool_call_id, call.tool_name, call.args)
        yield Chunk.finish(_finish_reason(gathered), usage=_usage(gathered))
