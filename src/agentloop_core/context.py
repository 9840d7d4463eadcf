"""Immutable per-run context threaded through prepare, invoke and process calls."""

from collections.abc import Mapping
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class RunContext(BaseModel):
    """Request-scoped values for one agent run.

    Replaces ambient request state: every hook, tool and dynamic option
    resolver receives the same frozen instance.

    Example:
        ```python
        ctx = RunContext(thread_id="t1", resource_id="u1", values={"tenant": "acme"})
        ctx.get("tenant")  # "acme"
        ```
    """

    model_config = ConfigDict(frozen=True)

    run_id: str = Field(default_factory=lambda: str(uuid4()))
    agent_id: str | None = None
    thread_id: str | None = None
    resource_id: str | None = None
    values: Mapping[str, Any] = Field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)
