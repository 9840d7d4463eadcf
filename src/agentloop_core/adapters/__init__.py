from agentloop_core.adapters.langchain import LangChainAdapter
from agentloop_core.adapters.protocol import MessageAdapter

__all__ = [
    "LangChainAdapter",
    "MessageAdapter",
]
