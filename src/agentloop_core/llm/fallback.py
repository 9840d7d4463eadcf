"""Ordered model fallback with per-model retries.

Each model is retried with exponential backoff (tenacity) before the next
one is tried. Streaming retries only while nothing has been emitted yet.
"""

import logging
from collections.abc import AsyncIterator
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from agentloop_core.chunks import Chunk
from agentloop_core.config import AgentLoopConfig
from agentloop_core.llm.protocol import LanguageModel, ModelRequest, ModelResponse

logger = logging.getLogger(__name__)


class ModelWithRetries(BaseModel):
    """One entry of a fallback chain."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    model: Any
    max_retries: int = Field(default=0, ge=0)
    enabled: bool = True


class FallbackModel:
    """LanguageModel that walks an ordered list of models.

    Example:
        ```python
        model = FallbackModel([
            ModelWithRetries(model=primary, max_retries=2),
            ModelWithRetries(model=backup),
        ])
        ```
    """

    def __init__(
        self,
        models: list[ModelWithRetries | LanguageModel],
        *,
        min_wait: float = 1.0,
        max_wait: float = 10.0,
    ) -> None:
        entries = [m if isinstance(m, ModelWithRetries) else ModelWithRetries(model=m) for m in models]
        self._models = [entry for entry in entries if entry.enabled]
        if not self._models:
            raise ValueError("FallbackModel needs at least one enabled model")
        self._min_wait = min_wait
        self._max_wait = max_wait

    @classmethod
    def from_config(cls, models: list[LanguageModel], config: AgentLoopConfig | None = None) -> "FallbackModel":
        """Fallback chain where every model gets ``config.model_retries`` retries."""
        config = config or AgentLoopConfig()
        return cls(
            [ModelWithRetries(model=model, max_retries=config.model_retries) for model in models],
            min_wait=config.model_retry_min_wait,
            max_wait=config.model_retry_max_wait,
        )

    @property
    def model_id(self) -> str:
        return self._models[0].model.model_id

    def _retrying(self, max_retries: int, should_retry: Any = None) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max_retries + 1),
            wait=wait_exponential(multiplier=self._min_wait, max=self._max_wait),
            retry=retry_if_exception(should_retry or (lambda exc: isinstance(exc, Exception))),
        )

    def _exhausted(self, last_error: BaseException | None) -> RuntimeError:
        return RuntimeError(
            "Exhausted all fallback models and reached the maximum number of retries. "
            f"Last error: {last_error}"
        )

    async def generate(self, request: ModelRequest) -> ModelResponse:
        """Call models in order until one succeeds.

        Raises:
            RuntimeError: Every model failed; chained to the last error.
        """
        last_error: Exception | None = None
        for entry in self._models:
            try:
                async for attempt in self._retrying(entry.max_retries):
                    with attempt:
                        return await entry.model.generate(request)
            except Exception as exc:
                last_error = exc
                logger.warning("Model %s failed, trying next fallback: %s", entry.model.model_id, exc)
        raise self._exhausted(last_error) from last_error

    async def stream(self, request: ModelRequest) -> AsyncIterator[Chunk]:
        """Stream from the first model that starts successfully.

        A failure after the first chunk propagates immediately.
        """
        last_error: Exception | None = None
        for entry in self._models:
            emitted = False
            try:
                async for attempt in self._retrying(entry.max_retries, lambda exc: not emitted):
                    with attempt:
                        async for chunk in entry.model.stream(request):
                            emitted = True
                            yield chunk
                return
            except Exception as exc:
                if emitted:
                    raise
                last_error = exc
                logger.warning("Model %s failed to stream, trying next fallback: %s", entry.model.model_id, exc)
        raise self._exhausted(last_error) from last_error
