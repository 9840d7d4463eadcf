from agentloop_core.storage.vector.lance import LanceDBMessageIndex

__all__ = [
    "LanceDBMessageIndex",
]
