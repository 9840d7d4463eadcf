from agentloop_core.processors.message_history import MessageHistory
from agentloop_core.processors.moderation import ModerationProcessor, ModerationResult
from agentloop_core.processors.prepare_step import PrepareStepProcessor
from agentloop_core.processors.protocol import (
    BaseProcessor,
    InputProcessor,
    InputStepProcessor,
    OutputResultProcessor,
    OutputStepProcessor,
    OutputStreamProcessor,
    ProcessInputArgs,
    ProcessInputResult,
    ProcessInputStepArgs,
    ProcessorState,
    ProcessOutputResultArgs,
    ProcessOutputStepArgs,
    ProcessOutputStreamArgs,
    StepOverrides,
)
from agentloop_core.processors.runner import PhaseOutcome, ProcessorRunner
from agentloop_core.processors.semantic_recall import SemanticRecall
from agentloop_core.processors.working_memory import WorkingMemory, update_working_memory_tool

__all__ = [
    # Capabilities
    "BaseProcessor",
    "InputProcessor",
    "InputStepProcessor",
    "OutputResultProcessor",
    "OutputStepProcessor",
    "OutputStreamProcessor",
    # Hook arguments and results
    "ProcessInputArgs",
    "ProcessInputResult",
    "ProcessInputStepArgs",
    "ProcessOutputResultArgs",
    "ProcessOutputStepArgs",
    "ProcessOutputStreamArgs",
    "ProcessorState",
    "StepOverrides",
    # Runner
    "PhaseOutcome",
    "ProcessorRunner",
    # Built-in processors
    "MessageHistory",
    "ModerationProcessor",
    "ModerationResult",
    "PrepareStepProcessor",
    "SemanticRecall",
    "WorkingMemory",
    "update_working_memory_tool",
]
