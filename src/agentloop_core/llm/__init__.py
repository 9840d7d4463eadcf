from agentloop_core.llm.fallback import FallbackModel, ModelWithRetries
from agentloop_core.llm.langchain import LangChainChatModel
from agentloop_core.llm.protocol import (
    LanguageModel,
    ModelRequest,
    ModelResponse,
    ToolSpec,
    Usage,
)

__all__ = [
    "FallbackModel",
    "LangChainChatModel",
    "LanguageModel",
    "ModelRequest",
    "ModelResponse",
    "ModelWithRetries",
    "ToolSpec",
    "Usage",
]
