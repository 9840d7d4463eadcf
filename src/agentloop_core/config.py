from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AgentLoopConfig(BaseSettings):
    """Configuration for agent runs.

    Settings can be provided via environment variables with AGENTLOOP_ prefix.
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTLOOP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Step loop budgets
    max_steps: int = Field(default=5, ge=1)
    max_processor_retries: int | None = Field(default=None, ge=0)
    # Total model invocations; defaults to max_steps * (max_processor_retries + 1)
    max_model_calls: int | None = Field(default=None, ge=1)
    tool_concurrency: int = Field(default=8, ge=1)

    # Memory store backend
    store: Literal["memory", "kuzu"] = "memory"

    # Home directory for storage (graph + vectors)
    # Default: ~/.agentloop
    home: Path | None = None

    # Number of recent messages recalled into each run (None disables)
    last_messages: int | None = Field(default=40, ge=0)

    # Embedding configuration (semantic recall)
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = Field(default=1536, ge=1)
    openai_api_key: str | None = None
    semantic_recall_top_k: int = Field(default=3, ge=1)

    # Model fallback retries
    model_retries: int = Field(default=0, ge=0)
    model_retry_min_wait: float = Field(default=1.0, ge=0)
    model_retry_max_wait: float = Field(default=10.0, ge=0)

    log_level: str = "WARNING"

    def get_home(self) -> Path:
        """Get the home directory for storage."""
        return self.home or Path.home() / ".agentloop"

    def get_store_path(self) -> Path:
        """Get the Kùzu database path (only used when store='kuzu')."""
        return self.get_home() / "graph"

    def get_vector_path(self) -> Path:
        """Get the vector index path."""
        return self.get_home() / "vectors"
