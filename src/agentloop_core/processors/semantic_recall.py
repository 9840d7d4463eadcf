"""Semantic recall: pulls similar past messages of the same resource into the run."""

import logging

from agentloop_core.embedders.protocol import Embedder
from agentloop_core.message_list import MessageList
from agentloop_core.messages import Message
from agentloop_core.processors.protocol import (
    BaseProcessor,
    ProcessInputArgs,
    ProcessOutputResultArgs,
)
from agentloop_core.storage.protocols import VectorIndex

logger = logging.getLogger(__name__)


class SemanticRecall(BaseProcessor):
    """Vector-search recall on input and indexing on output.

    On input, the latest user message is embedded and the ``top_k`` most
    similar messages of the same resource from other threads are added as
    memory. On output, the run's new user and assistant texts are indexed.

    Args:
        embedder: Embeds message text.
        index: Vector index holding past messages.
        top_k: Number of similar messages to recall.
    """

    id = "semantic-recall"

    def __init__(self, embedder: Embedder, index: VectorIndex, top_k: int = 3) -> None:
        self._embedder = embedder
        self._index = index
        self._top_k = top_k

    async def process_input(self, args: ProcessInputArgs) -> MessageList | None:
        if args.state.get("recalled"):
            return None
        args.state["recalled"] = True

        query = args.message_list.latest_user_text()
        if not query:
            return None
        vector = await self._embedder.embed(query)
        hits = await self._index.search(
            vector,
            limit=self._top_k,
            resource_id=args.context.resource_id,
            exclude_thread_id=args.context.thread_id,
        )
        present = {m.id for m in args.messages}
        recalled = [
            Message(
                id=hit.message_id,
                role=hit.role,
                content=hit.text,
                thread_id=hit.thread_id,
                resource_id=hit.resource_id,
                created_at=hit.created_at,
                metadata={"recall": {"score": hit.score}},
            )
            for hit in hits
            if hit.message_id not in present
        ]
        logger.debug("semantic recall n=%d", len(recalled))
        args.message_list.add(recalled, "memory")
        return args.message_list

    async def process_output_result(self, args: ProcessOutputResultArgs) -> None:
        new = [
            m
            for m in args.message_list.input_messages() + args.messages
            if m.role in ("user", "assistant") and m.text.strip()
        ]
        if not new:
            return None
        vectors = await self._embedder.embed_batch([m.text for m in new])
        for message, vector in zip(new, vectors):
            await self._index.add(message, vector)
        return None
