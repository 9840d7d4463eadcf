from agentloop_core.agent import Agent, AgentStream, RunOptions
from agentloop_core.chunks import Chunk
from agentloop_core.config import AgentLoopConfig
from agentloop_core.context import RunContext
from agentloop_core.embedders import Embedder, OpenAIEmbedder
from agentloop_core.errors import (
    AgentLoopError,
    MemoryNotConfiguredError,
    ProcessorContractError,
    ToolValidationError,
)
from agentloop_core.llm import (
    FallbackModel,
    LangChainChatModel,
    LanguageModel,
    ModelRequest,
    ModelResponse,
    ModelWithRetries,
    ToolSpec,
    Usage,
)
from agentloop_core.logging_utils import configure_logging
from agentloop_core.memory import Memory, MemoryConfig, TitleGenerationConfig, WorkingMemoryConfig
from agentloop_core.message_list import MessageList
from agentloop_core.messages import (
    Message,
    TextPart,
    Thread,
    ToolCallPart,
    ToolResultPart,
    UnknownPart,
)
from agentloop_core.metrics import CardinalityFilter, MetricsRecorder
from agentloop_core.processors import (
    BaseProcessor,
    ModerationProcessor,
    ProcessorRunner,
    SemanticRecall,
    WorkingMemory,
)
from agentloop_core.results import GenerateResult, StepResult
from agentloop_core.storage import (
    InMemoryStore,
    KuzuMemoryStore,
    LanceDBMessageIndex,
    MemoryStore,
    VectorIndex,
)
from agentloop_core.tools import Tool, ToolContext
from agentloop_core.tripwire import Tripwire

__all__ = [
    # Main class
    "Agent",
    "AgentStream",
    "RunOptions",
    # Config
    "AgentLoopConfig",
    "configure_logging",
    # Messages
    "Message",
    "MessageList",
    "TextPart",
    "Thread",
    "ToolCallPart",
    "ToolResultPart",
    "UnknownPart",
    # Run
    "Chunk",
    "GenerateResult",
    "RunContext",
    "StepResult",
    "Tripwire",
    # Errors
    "AgentLoopError",
    "MemoryNotConfiguredError",
    "ProcessorContractError",
    "ToolValidationError",
    # Models
    "FallbackModel",
    "LangChainChatModel",
    "LanguageModel",
    "ModelRequest",
    "ModelResponse",
    "ModelWithRetries",
    "ToolSpec",
    "Usage",
    # Tools
    "Tool",
    "ToolContext",
    # Processors
    "BaseProcessor",
    "ModerationProcessor",
    "ProcessorRunner",
    "SemanticRecall",
    "WorkingMemory",
    # Memory
    "Memory",
    "MemoryConfig",
    "TitleGenerationConfig",
    "WorkingMemoryConfig",
    # Embedders
    "Embedder",
    "OpenAIEmbedder",
    # Storage
    "InMemoryStore",
    "KuzuMemoryStore",
    "LanceDBMessageIndex",
    "MemoryStore",
    "VectorIndex",
    # Metrics
    "CardinalityFilter",
    "MetricsRecorder",
]
