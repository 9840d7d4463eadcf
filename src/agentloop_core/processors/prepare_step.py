import inspect
from collections.abc import Callable
from typing import Any

from agentloop_core.processors.protocol import BaseProcessor, ProcessInputStepArgs, StepOverrides
from agentloop_core.tripwire import Tripwire


class PrepareStepProcessor(BaseProcessor):
    """Runs a caller-supplied ``prepare_step(args)`` callback before each model call.

    The callback may return a StepOverrides, a dict of override fields, None,
    or ``args.abort(...)``.
    """

    id = "prepare-step"

    def __init__(self, prepare_step: Callable[[ProcessInputStepArgs], Any]) -> None:
        self._prepare_step = prepare_step

    async def process_input_step(self, args: ProcessInputStepArgs) -> StepOverrides | Tripwire | None:
        result = self._prepare_step(args)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, dict):
            return StepOverrides(**result)
        return result
