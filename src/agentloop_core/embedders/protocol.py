from typing import Protocol


class Embedder(Protocol):
    """Turns message text into vectors for semantic recall.

    Every vector an embedder returns has ``dimensions`` entries, so a vector
    index can be created with a fixed-size column before the first message
    is indexed.
    """

    @property
    def dimensions(self) -> int: ...

    async def embed(self, text: str) -> list[float]:
        """Vector for the latest user text of a run."""
        ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Vectors for a run's new messages, in input order."""
        ...
