"""ctxloop data models."""

from ctxloop.models.config import (
    CompactionConfig,
    LoopConfig,
    LoopSettings,
    ModelInfo,
    StoreConfig,
    TruncationConfig,
)
from ctxloop.models.message import (
    CompactionResult,
    LLMResponse,
    LoopResult,
    Message,
    MessageKind,
    PruneResult,
    Role,
    TokenUsage,
    ToolCallRequest,
    ToolExecutionResult,
)

__all__ = [
    "CompactionConfig",
    "CompactionResult",
    "LLMResponse",
    "LoopConfig",
    "LoopResult",
    "LoopSettings",
    "Message",
    "MessageKind",
    "ModelInfo",
    "PruneResult",
    "Role",
    "StoreConfig",
    "TokenUsage",
    "ToolCallRequest",
    "ToolExecutionResult",
    "TruncationConfig",
]
