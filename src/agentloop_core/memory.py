"""Thread memory: recall, persistence, working memory and thread titles.

Usage:
    ```python
    from agentloop_core import Agent, Memory, MemoryConfig, TitleGenerationConfig
    from agentloop_core.storage import KuzuMemoryStore

    async with KuzuMemoryStore(db_path=home / "graph") as store:
        memory = Memory(
            store,
            MemoryConfig(last_messages=20, generate_title=TitleGenerationConfig(model=cheap_model)),
        )
        agent = Agent(model=model, memory=memory)
        await agent.generate("Hi!", thread_id="t1", resource_id="u1")
    ```
"""

import inspect
import logging
import re
from collections.abc import Callable
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from agentloop_core.config import AgentLoopConfig
from agentloop_core.context import RunContext
from agentloop_core.embedders.openai import OpenAIEmbedder
from agentloop_core.embedders.protocol import Embedder
from agentloop_core.messages import Message, Thread, utc_now
from agentloop_core.storage.inmemory import InMemoryStore
from agentloop_core.storage.kuzu_store import KuzuMemoryStore
from agentloop_core.storage.protocols import MemoryStore, VectorIndex
from agentloop_core.storage.vector import LanceDBMessageIndex

logger = logging.getLogger(__name__)

DEFAULT_TITLE_INSTRUCTIONS = """
- you will generate a short title based on the first message a user begins a conversation with
- ensure it is not more than 80 characters long
- the title should be a summary of the user's message
- do not use quotes or colons
- the entire text you return will be used as the title""".strip()

DEFAULT_WORKING_MEMORY_TEMPLATE = """
# User Information
- **First Name**:
- **Last Name**:
- **Location**:
- **Occupation**:
- **Interests**:
- **Goals**:
- **Events**:
- **Facts**:
- **Projects**:""".strip()

# Thread metadata key holding thread-scoped working memory.
WORKING_MEMORY_METADATA_KEY = "working_memory"

_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.DOTALL)

# A value or a callable resolving it from the run context (sync or async).
Dynamic = Any


async def resolve_dynamic(value: Dynamic, context: RunContext) -> Any:
    """Resolve a static value or a ``callable(context)``."""
    if callable(value) and not hasattr(value, "generate"):
        value = value(context)
        if inspect.isawaitable(value):
            value = await value
    return value


def clean_title(text: str) -> str:
    """Strip reasoning blocks and surrounding whitespace from a model title."""
    return _THINK_BLOCK.sub("", text).strip()


class TitleGenerationConfig(BaseModel):
    """How thread titles are generated.

    Attributes:
        model: Model for the title call, or ``callable(context)`` returning one.
            Defaults to the agent's own model.
        instructions: System prompt, or ``callable(context)`` returning one.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    model: Dynamic = None
    instructions: str | Callable[..., Any] | None = None


class WorkingMemoryConfig(BaseModel):
    """Persistent Markdown notes the model keeps up to date across runs.

    Attributes:
        scope: ``resource`` shares one working memory between all threads of a
            resource; ``thread`` keeps a separate one per thread.
        template: Markdown skeleton the model fills in.
    """

    scope: Literal["resource", "thread"] = "resource"
    template: str = DEFAULT_WORKING_MEMORY_TEMPLATE


class MemoryConfig(BaseModel):
    """Memory behaviour for agent runs."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    # Recent messages recalled into each run; None disables history
    last_messages: int | None = Field(default=40, ge=0)
    # Never write messages back
    read_only: bool = False
    generate_title: bool | TitleGenerationConfig = False
    semantic_recall_top_k: int = Field(default=3, ge=1)
    working_memory: bool | WorkingMemoryConfig = False


class Memory:
    """Thread and message memory on top of a MemoryStore.

    Args:
        store: Persistence backend.
        config: Memory behaviour.
        embedder: Enables semantic recall together with ``vector_index``.
        vector_index: Vector index for semantic recall.
    """

    def __init__(
        self,
        store: MemoryStore,
        config: MemoryConfig | None = None,
        *,
        embedder: Embedder | None = None,
        vector_index: VectorIndex | None = None,
    ) -> None:
        self.store = store
        self.config = config or MemoryConfig()
        self.embedder = embedder
        self.vector_index = vector_index

    @classmethod
    def from_config(
        cls,
        config: AgentLoopConfig | None = None,
        *,
        embedder: Embedder | None = None,
        memory_config: MemoryConfig | None = None,
    ) -> "Memory":
        """Build stores from settings.

        Semantic recall is enabled when an embedder is given or an OpenAI
        API key is configured.

        Args:
            config: Settings. Uses AgentLoopConfig() if not provided.
            embedder: Custom embedder for semantic recall.
            memory_config: Memory behaviour. Derived from ``config`` if not provided.
        """
        config = config or AgentLoopConfig()
        if config.store == "kuzu":
            store: MemoryStore = KuzuMemoryStore(db_path=config.get_store_path())
        else:
            store = InMemoryStore()

        if embedder is None and config.openai_api_key:
            embedder = OpenAIEmbedder.from_config(config)
        vector_index = None
        if embedder is not None:
            vector_index = LanceDBMessageIndex(
                path=config.get_vector_path(),
                embedding_dimensions=embedder.dimensions,
            )

        memory_config = memory_config or MemoryConfig(
            last_messages=config.last_messages,
            semantic_recall_top_k=config.semantic_recall_top_k,
        )
        return cls(store, memory_config, embedder=embedder, vector_index=vector_index)

    async def __aenter__(self) -> "Memory":
        """Connect the store (and vector index) and create the schema."""
        await self.store.connect()
        await self.store.initialize_schema()
        if self.vector_index is not None:
            await self.vector_index.connect()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.store.close()
        if self.vector_index is not None:
            await self.vector_index.close()

    @property
    def semantic_recall_enabled(self) -> bool:
        return self.embedder is not None and self.vector_index is not None

    def title_config(self) -> TitleGenerationConfig | None:
        """Normalised title generation config, or None when disabled."""
        value = self.config.generate_title
        if value is True:
            return TitleGenerationConfig()
        if isinstance(value, TitleGenerationConfig):
            return value
        return None

    async def get_thread(self, thread_id: str) -> Thread | None:
        return await self.store.get_thread_by_id(thread_id)

    async def ensure_thread(self, thread_id: str, resource_id: str | None) -> Thread:
        """Return the thread, creating and saving it first if it does not exist."""
        thread = await self.store.get_thread_by_id(thread_id)
        if thread is not None:
            return thread
        thread = Thread(id=thread_id, resource_id=resource_id or thread_id)
        await self.store.save_thread(thread)
        logger.debug("created thread id=%s resource=%s", thread.id, thread.resource_id)
        return thread

    async def recall(
        self,
        thread_id: str,
        resource_id: str | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        """Recent non-system messages of a thread, oldest first."""
        if limit is None:
            limit = self.config.last_messages
        if limit is None:
            return []
        messages = await self.store.recall(thread_id, resource_id=resource_id, limit=limit)
        return [m for m in messages if m.role != "system"]

    async def save_messages(self, messages: list[Message]) -> list[Message]:
        """Persist conversation messages. System and empty messages are skipped."""
        if self.config.read_only:
            return []
        to_save = [m for m in messages if m.role != "system" and m.content]
        if not to_save:
            return []
        return await self.store.save_messages(to_save)

    async def update_title(self, thread: Thread, title: str) -> Thread:
        updated = thread.model_copy(update={"title": title, "updated_at": utc_now()})
        await self.store.save_thread(updated)
        return updated

    # =========================================================================
    # Working memory
    # =========================================================================

    def working_memory_config(self) -> WorkingMemoryConfig | None:
        """Normalised working memory config, or None when disabled."""
        value = self.config.working_memory
        if value is True:
            return WorkingMemoryConfig()
        if isinstance(value, WorkingMemoryConfig):
            return value
        return None

    async def get_working_memory(self, thread_id: str | None, resource_id: str | None) -> str | None:
        """Stored working memory for the configured scope, or None."""
        config = self.working_memory_config() or WorkingMemoryConfig()
        if config.scope == "thread":
            if not thread_id:
                return None
            thread = await self.store.get_thread_by_id(thread_id)
            return thread.metadata.get(WORKING_MEMORY_METADATA_KEY) if thread else None
        if not resource_id:
            return None
        return await self.store.get_resource_working_memory(resource_id)

    async def update_working_memory(
        self,
        content: str,
        *,
        thread_id: str | None,
        resource_id: str | None,
    ) -> None:
        """Replace the working memory of the configured scope.

        Raises:
            ValueError: The id the scope needs is missing, or the thread
                belongs to another resource.
        """
        config = self.working_memory_config() or WorkingMemoryConfig()
        if config.scope == "thread":
            if not thread_id:
                raise ValueError("Thread ID is required for thread-scoped working memory updates")
            thread = await self.ensure_thread(thread_id, resource_id)
            if resource_id and thread.resource_id != resource_id:
                raise ValueError(
                    f"Thread {thread_id} belongs to resource {thread.resource_id}, not {resource_id}"
                )
            metadata = {**thread.metadata, WORKING_MEMORY_METADATA_KEY: content}
            await self.store.save_thread(thread.model_copy(update={"metadata": metadata, "updated_at": utc_now()}))
        else:
            if not resource_id:
                raise ValueError("Resource ID is required for resource-scoped working memory updates")
            await self.store.save_resource_working_memory(resource_id, content)
        logger.debug("working memory updated scope=%s chars=%d", config.scope, len(content))
