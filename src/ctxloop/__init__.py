"""
ctxloop: a context-budgeted agent loop for tool-calling LLMs.

Primary entry point::

    from ctxloop import AgentLoop, LoopConfig, ToolRegistry
    from ctxloop.llm import LiteLLMClient

    loop = AgentLoop(LiteLLMClient(), ToolRegistry([read_file_tool]), config=LoopConfig())
    result = await loop.run("sess_01J...", "Summarize the README", user_id="u1")
    print(result.content)
"""

from ctxloop.compaction import (
    CompactionEngine,
    LLMSummarizer,
    OutputTruncator,
    OverflowDetector,
    SummarizationError,
    Summarizer,
    ToolOutputPruner,
)
from ctxloop.context import ContextBuilder
from ctxloop.events.bus import EventBus, LoopEvent
from ctxloop.ids import make_id
from ctxloop.llm import GenerateOptions, LiteLLMClient, LLMClient
from ctxloop.loop import MAX_ITERATIONS_ERROR, AgentLoop
from ctxloop.models import (
    CompactionConfig,
    CompactionResult,
    LLMResponse,
    LoopConfig,
    LoopResult,
    LoopSettings,
    Message,
    ModelInfo,
    PruneResult,
    StoreConfig,
    TokenUsage,
    ToolCallRequest,
    ToolExecutionResult,
    TruncationConfig,
)
from ctxloop.store import InMemoryPersistence, MessageStore, SQLitePersistence
from ctxloop.tokens import TokenEstimator
from ctxloop.tools import FunctionTool, Tool, ToolDispatcher, ToolRegistry

__version__ = "0.1.0"

__all__ = [
    # Core
    "AgentLoop",
    "MAX_ITERATIONS_ERROR",
    "make_id",
    # Config
    "LoopConfig",
    "LoopSettings",
    "CompactionConfig",
    "TruncationConfig",
    "StoreConfig",
    "ModelInfo",
    # Models
    "Message",
    "ToolCallRequest",
    "ToolExecutionResult",
    "TokenUsage",
    "LLMResponse",
    "LoopResult",
    "CompactionResult",
    "PruneResult",
    # LLM
    "LLMClient",
    "LiteLLMClient",
    "GenerateOptions",
    # Tools
    "Tool",
    "FunctionTool",
    "ToolRegistry",
    "ToolDispatcher",
    # Storage
    "MessageStore",
    "InMemoryPersistence",
    "SQLitePersistence",
    # Compaction
    "CompactionEngine",
    "OverflowDetector",
    "ToolOutputPruner",
    "OutputTruncator",
    "Summarizer",
    "LLMSummarizer",
    "SummarizationError",
    # Context
    "ContextBuilder",
    # Events
    "EventBus",
    "LoopEvent",
    # Tokens
    "TokenEstimator",
]
