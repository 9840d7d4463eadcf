"""Exceptions raised by agentloop_core."""


class AgentLoopError(Exception):
    """Base class for agentloop_core errors."""


class ProcessorContractError(AgentLoopError):
    """A processor returned a value the pipeline cannot apply."""

    def __init__(self, processor_id: str, message: str) -> None:
        super().__init__(f"Processor {processor_id!r}: {message}")
        self.processor_id = processor_id


class ToolValidationError(AgentLoopError):
    """Tool input did not match the tool's input schema."""


class MemoryNotConfiguredError(AgentLoopError):
    """A memory operation was requested on an agent without memory."""
