"""Compaction tiers: truncation, pruning, and summarization."""

from ctxloop.compaction.engine import CompactionEngine, CompactionState, SummaryRange
from ctxloop.compaction.overflow import OverflowDetector, is_overflow
from ctxloop.compaction.pruner import PRUNED_MARKER, ToolOutputPruner
from ctxloop.compaction.summarizer import LLMSummarizer, SummarizationError, Summarizer
from ctxloop.compaction.truncation import (
    DirectorySpillStore,
    MemorySpillStore,
    OutputTruncator,
    SpillNotFoundError,
    SpillStore,
    TruncatedOutput,
)

__all__ = [
    "PRUNED_MARKER",
    "CompactionEngine",
    "CompactionState",
    "DirectorySpillStore",
    "LLMSummarizer",
    "MemorySpillStore",
    "OutputTruncator",
    "OverflowDetector",
    "SpillNotFoundError",
    "SpillStore",
    "SummarizationError",
    "Summarizer",
    "SummaryRange",
    "ToolOutputPruner",
    "TruncatedOutput",
    "is_overflow",
]
