from datetime import datetime
from typing import Protocol

from pydantic import BaseModel

from agentloop_core.messages import Message, Thread


class MessageSearchResult(BaseModel):
    """Result from a vector search over past messages."""

    message_id: str
    role: str
    text: str
    thread_id: str
    resource_id: str | None = None
    created_at: datetime
    score: float


class MemoryStore(Protocol):
    """Protocol for thread and message persistence.

    Writes are upserts by id, so saving the same thread or message twice is
    harmless.
    """

    async def connect(self) -> None:
        """Connect to the backing store."""
        ...

    async def close(self) -> None:
        """Close the connection."""
        ...

    async def initialize_schema(self) -> None:
        """Create tables if they do not exist. Idempotent."""
        ...

    async def save_thread(self, thread: Thread) -> Thread:
        """Insert or update a thread."""
        ...

    async def get_thread_by_id(self, thread_id: str) -> Thread | None:
        """Get a thread by id."""
        ...

    async def delete_thread(self, thread_id: str) -> None:
        """Delete a thread and its messages."""
        ...

    async def save_messages(self, messages: list[Message]) -> list[Message]:
        """Insert or update messages."""
        ...

    async def list_messages(self, thread_id: str) -> list[Message]:
        """All messages of a thread in chronological order."""
        ...

    async def recall(
        self,
        thread_id: str,
        resource_id: str | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        """The last ``limit`` messages of a thread, oldest first."""
        ...

    async def get_resource_working_memory(self, resource_id: str) -> str | None:
        """Working memory shared by all threads of a resource."""
        ...

    async def save_resource_working_memory(self, resource_id: str, content: str) -> None:
        """Replace a resource's working memory."""
        ...


class VectorIndex(Protocol):
    """Protocol for vector indexing of message text."""

    async def connect(self) -> None:
        """Connect to the vector store."""
        ...

    async def close(self) -> None:
        """Close the connection."""
        ...

    async def add(self, message: Message, vector: list[float]) -> None:
        """Index one message; re-adding an id replaces its vector."""
        ...

    async def search(
        self,
        query_vector: list[float],
        limit: int = 10,
        resource_id: str | None = None,
        exclude_thread_id: str | None = None,
    ) -> list[MessageSearchResult]:
        """Most similar indexed messages, best first."""
        ...

    async def delete_by_thread(self, thread_id: str) -> int:
        """Delete all vectors for a thread. Returns count deleted."""
        ...
