"""Tripwire verdicts raised by processors.

A tripwire is a value, not an exception: ``abort()`` returns it and the
processor runner inspects it after each hook.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict

# System message tag under which retry feedback is injected.
RETRY_FEEDBACK_TAG = "processor-retry-feedback"


class Tripwire(BaseModel):
    """Terminal, policy-driven stop verdict.

    Attributes:
        reason: Human readable reason, surfaced on the run result.
        retry: Ask the step loop to regenerate the current step.
        metadata: Extra data for callers (scores, categories, ...).
        processor_id: Id of the processor that raised it.
    """

    model_config = ConfigDict(frozen=True)

    reason: str
    retry: bool = False
    metadata: dict[str, Any] | None = None
    processor_id: str | None = None


def retry_feedback(reason: str) -> str:
    """System message text shown to the model after a rejected response."""
    return (
        f"[Processor Feedback] Your previous response was not accepted: {reason}. "
        "Please try again with the feedback in mind."
    )
