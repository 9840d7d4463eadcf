from agentloop_core.storage.inmemory import InMemoryStore
from agentloop_core.storage.kuzu_store import KuzuMemoryStore
from agentloop_core.storage.protocols import MemoryStore, MessageSearchResult, VectorIndex
from agentloop_core.storage.vector import LanceDBMessageIndex

__all__ = [
    "InMemoryStore",
    "KuzuMemoryStore",
    "LanceDBMessageIndex",
    "MemoryStore",
    "MessageSearchResult",
    "VectorIndex",
]
