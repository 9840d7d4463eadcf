from agentloop_core.loop.channel import ChunkChannel
from agentloop_core.loop.step_loop import StepLoop, StepState, default_model_call_budget

__all__ = [
    "ChunkChannel",
    "StepLoop",
    "StepState",
    "default_model_call_budget",
]
