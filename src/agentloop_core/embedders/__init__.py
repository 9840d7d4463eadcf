from agentloop_core.embedders.openai import OpenAIEmbedder
from agentloop_core.embedders.protocol import Embedder

__all__ = [
    "Embedder",
    "OpenAIEmbedder",
]
