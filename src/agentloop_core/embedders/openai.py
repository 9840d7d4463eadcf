import logging

from openai import AsyncOpenAI

from agentloop_core.config import AgentLoopConfig

logger = logging.getLogger(__name__)

# Upper bound on inputs per embeddings request.
MAX_BATCH = 2048


class OpenAIEmbedder:
    """Embeds message text through the OpenAI embeddings endpoint.

    Long message lists are split into requests of at most ``batch_size``
    texts. Blank texts are sent as a single space since the endpoint rejects
    empty input.

    Args:
        model: Embedding model name.
        dimensions: Vector length requested from the model.
        api_key: API key. Falls back to ``OPENAI_API_KEY``.
        batch_size: Texts per request.
    """

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        api_key: str | None = None,
        batch_size: int = MAX_BATCH,
    ) -> None:
        self._model = model
        self._dimensions = dimensions
        self._batch_size = min(batch_size, MAX_BATCH)
        self._client = AsyncOpenAI(api_key=api_key)

    @classmethod
    def from_config(cls, config: AgentLoopConfig) -> "OpenAIEmbedder":
        return cls(
            model=config.embedding_model,
            dimensions=config.embedding_dimensions,
            api_key=config.openai_api_key,
        )

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed(self, text: str) -> list[float]:
        [vector] = await self.embed_batch([text])
        return vector

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for start in range(0, len(texts), self._batch_size):
            batch = [text if text.strip() else " " for text in texts[start : start + self._batch_size]]
            response = await self._client.embeddings.create(
                model=self._model,
                input=batch,
                dimensions=self._dimensions,
            )
            vectors.extend(item.embedding for item in sorted(response.data, key=lambda item: item.index))
        logger.debug("embedded n=%d model=%s", len(texts), self._model)
        return vectors
