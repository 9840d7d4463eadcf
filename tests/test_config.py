"""Tests for AgentLoopConfig, Memory.from_config and logging setup."""

import logging
from pathlib import Path

import pytest
from pydantic import ValidationError

from agentloop_core.config import AgentLoopConfig
from agentloop_core.llm.fallback import FallbackModel
from agentloop_core.logging_utils import configure_logging
from agentloop_core.memory import Memory
from agentloop_core.storage import InMemoryStore, KuzuMemoryStore, LanceDBMessageIndex

from .conftest import MockEmbedder


class TestAgentLoopConfig:
    """Tests for settings loading."""

    def test_defaults(self, monkeypatch):
        """Defaults apply when nothing is configured."""
        monkeypatch.delenv("AGENTLOOP_MAX_STEPS", raising=False)
        config = AgentLoopConfig()

        assert config.max_steps == 5
        assert config.max_processor_retries is None
        assert config.store == "memory"
        assert config.get_home() == Path.home() / ".agentloop"

    def test_env_prefix(self, monkeypatch):
        """AGENTLOOP_ environment variables override defaults."""
        monkeypatch.setenv("AGENTLOOP_MAX_STEPS", "9")
        monkeypatch.setenv("AGENTLOOP_MAX_PROCESSOR_RETRIES", "2")
        monkeypatch.setenv("AGENTLOOP_STORE", "kuzu")

        config = AgentLoopConfig()

        assert config.max_steps == 9
        assert config.max_processor_retries == 2
        assert config.store == "kuzu"

    def test_invalid_budget_rejected(self):
        """Budgets must be positive."""
        with pytest.raises(ValidationError):
            AgentLoopConfig(max_steps=0)

    def test_paths_under_home(self, tmp_path):
        """Store and vector paths live under home."""
        config = AgentLoopConfig(home=tmp_path)

        assert config.get_store_path() == tmp_path / "graph"
        assert config.get_vector_path() == tmp_path / "vectors"


class TestFromConfig:
    """Tests for building collaborators from settings."""

    def test_memory_store_default(self, config):
        """The default store is in-memory without semantic recall."""
        memory = Memory.from_config(config)

        assert isinstance(memory.store, InMemoryStore)
        assert not memory.semantic_recall_enabled
        assert memory.config.last_messages == config.last_messages

    def test_kuzu_store_with_embedder(self, tmp_path):
        """kuzu plus an embedder gives persistent storage and semantic recall."""
        config = AgentLoopConfig(home=tmp_path, store="kuzu", semantic_recall_top_k=5)

        memory = Memory.from_config(config, embedder=MockEmbedder())

        assert isinstance(memory.store, KuzuMemoryStore)
        assert isinstance(memory.vector_index, LanceDBMessageIndex)
        assert memory.semantic_recall_enabled
        assert memory.config.semantic_recall_top_k == 5

    async def test_memory_context_manager(self, tmp_path):
        """Entering the memory connects the store and the index."""
        config = AgentLoopConfig(home=tmp_path, store="kuzu")

        async with Memory.from_config(config, embedder=MockEmbedder()) as memory:
            thread = await memory.ensure_thread("t1", "u1")
            assert (await memory.get_thread("t1")).id == thread.id

    def test_fallback_from_config(self, config, scripted_model):
        """Fallback retries come from settings."""
        config = config.model_copy(update={"model_retries": 2})

        model = FallbackModel.from_config([scripted_model], config)

        assert model.model_id == "scripted-model"
        assert model._models[0].max_retries == 2


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_sets_package_level(self):
        """The package logger gets the requested level."""
        logger = configure_logging("DEBUG")

        assert logger.name == "agentloop_core"
        assert logger.level == logging.DEBUG
        configure_logging(logging.WARNING)
