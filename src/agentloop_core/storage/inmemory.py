"""Dict-backed MemoryStore for tests and single-process use."""

import logging
from datetime import UTC, datetime

from agentloop_core.messages import Message, Thread

logger = logging.getLogger(__name__)


class InMemoryStore:
    """MemoryStore that keeps threads and messages in process memory."""

    def __init__(self) -> None:
        self._threads: dict[str, Thread] = {}
        self._messages: dict[str, Message] = {}
        self._working_memory: dict[str, str] = {}

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def initialize_schema(self) -> None:
        return None

    async def save_thread(self, thread: Thread) -> Thread:
        self._threads[thread.id] = thread.model_copy(deep=True)
        logger.debug("save_thread id=%s", thread.id)
        return thread

    async def get_thread_by_id(self, thread_id: str) -> Thread | None:
        thread = self._threads.get(thread_id)
        return thread.model_copy(deep=True) if thread else None

    async def delete_thread(self, thread_id: str) -> None:
        self._threads.pop(thread_id, None)
        for message_id in [m.id for m in self._messages.values() if m.thread_id == thread_id]:
            del self._messages[message_id]

    async def save_messages(self, messages: list[Message]) -> list[Message]:
        for message in messages:
            self._messages[message.id] = message.model_copy(deep=True)
        logger.debug("save_messages n=%d", len(messages))
        return messages

    async def list_messages(self, thread_id: str) -> list[Message]:
        found = [m for m in self._messages.values() if m.thread_id == thread_id]
        found.sort(key=lambda m: m.created_at or datetime.min.replace(tzinfo=UTC))
        return [m.model_copy(deep=True) for m in found]

    async def recall(
        self,
        thread_id: str,
        resource_id: str | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        messages = await self.list_messages(thread_id)
        if resource_id is not None:
            messages = [m for m in messages if m.resource_id in (None, resource_id)]
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return messages

    async def get_resource_working_memory(self, resource_id: str) -> str | None:
        return self._working_memory.get(resource_id)

    async def save_resource_working_memory(self, resource_id: str, content: str) -> None:
        self._working_memory[resource_id] = content
