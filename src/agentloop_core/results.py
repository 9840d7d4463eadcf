"""Step history and the final result of a run."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from agentloop_core.llm.protocol import Usage
from agentloop_core.messages import Message, ToolCallPart, ToolResultPart
from agentloop_core.tripwire import Tripwire


class StepResult(BaseModel):
    """One model invocation with its tool executions and processor verdict.

    Rejected steps stay in the history with ``tripwire`` set; they never
    contribute to the run's text.
    """

    step_number: int
    retry_count: int = 0
    request_messages: list[Message] = Field(default_factory=list)
    text: str = ""
    object: Any = None
    tool_calls: list[ToolCallPart] = Field(default_factory=list)
    tool_results: list[ToolResultPart] = Field(default_factory=list)
    finish_reason: str | None = None
    usage: Usage = Field(default_factory=Usage)
    duration_ms: float = 0.0
    tripwire: Tripwire | None = None

    @property
    def is_retry(self) -> bool:
        """Whether this step was rejected and regenerated."""
        return self.tripwire is not None and self.tripwire.retry


class GenerateResult(BaseModel):
    """What ``Agent.generate`` returns and ``AgentStream.result()`` resolves to."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    run_id: str
    text: str = ""
    object: Any = None
    steps: list[StepResult] = Field(default_factory=list)
    tripwire: Tripwire | None = None
    finish_reason: str | None = None
    usage: Usage = Field(default_factory=Usage)
    error: Exception | None = None
    messages: list[Message] = Field(default_factory=list)
    thread_id: str | None = None

    @property
    def accepted_steps(self) -> list[StepResult]:
        return [step for step in self.steps if step.tripwire is None]

    @property
    def tool_calls(self) -> list[ToolCallPart]:
        return [call for step in self.accepted_steps for call in step.tool_calls]

    @property
    def tool_results(self) -> list[ToolResultPart]:
        return [result for step in self.accepted_steps for result in step.tool_results]

    @property
    def model_calls(self) -> int:
        return len(self.steps)


class LoopOutcome(BaseModel):
    """Terminal state of a step loop, before result assembly."""

    steps: list[StepResult] = Field(default_factory=list)
    tripwire: Tripwire | None = None
    finish_reason: str | None = None
    usage: Usage = Field(default_factory=Usage)
    aborted: bool = False
    model_calls: int = 0


def assemble_result(
    run_id: str,
    outcome: LoopOutcome,
    *,
    messages: list[Message] | None = None,
    thread_id: str | None = None,
) -> GenerateResult:
    """Build the caller-facing result from the loop's step history.

    Text and object come from the last accepted step; a tripwire result
    carries no text.
    """
    accepted = [step for step in outcome.steps if step.tripwire is None]
    last = accepted[-1] if accepted and outcome.tripwire is None else None
    return GenerateResult(
        run_id=run_id,
        text=last.text if last else "",
        object=last.object if last else None,
        steps=outcome.steps,
        tripwire=outcome.tripwire,
        finish_reason=outcome.finish_reason,
        usage=outcome.usage,
        messages=messages or [],
        thread_id=thread_id,
    )
