"""Core message, tool call, and result models."""

from __future__ import annotations

import time
from typing import Literal

from pydantic import BaseModel, Field

Role = Literal["user", "system", "assistant", "tool"]
MessageKind = Literal["text", "tool_call", "tool_result", "summary"]

# ── Tool Calls ─────────────────────────────────────────────────────────────────


class ToolCallRequest(BaseModel):
    """A tool invocation requested by the model, with its raw JSON arguments."""

    id: str
    name: str
    arguments: str = "{}"
    """Raw JSON text exactly as produced by the model. Parsed by the dispatcher."""


class ToolExecutionResult(BaseModel):
    """The outcome of dispatching a single ``ToolCallRequest``."""

    tool_call_id: str
    tool_name: str
    output: str
    """Text placed into the transcript. For failures this is the error text."""
    error: str | None = None
    """Diagnostic detail when the call failed. None on success."""
    truncated: bool = False
    spill_handle: str | None = None
    """Out-of-band handle for the full output when it was truncated."""

    @property
    def is_error(self) -> bool:
        return self.error is not None


# ── Messages ───────────────────────────────────────────────────────────────────


class Message(BaseModel):
    """
    A single entry in a session's history.

    Messages are append-only. The only in-place edits are blanking a tool
    result's content during pruning (``compacted_at`` set) and marking a
    message as replaced by a summary (``superseded_by`` set).
    """

    id: str
    """ULID-based sortable ID, e.g. ``msg_01JXYZ6K3MNPQR4STUVWXYZ01``."""
    session_id: str
    role: Role
    content: str = ""
    kind: MessageKind = "text"
    tool_call_id: str | None = None
    """For ``tool_result`` messages: the id of the call being answered."""
    tool_name: str | None = None
    tool_calls: list[ToolCallRequest] = Field(default_factory=list)
    """For ``tool_call`` messages: the calls the assistant issued."""
    turn_index: int | None = None
    """Ordinal of the user turn this message belongs to. None = unassigned."""
    seq: int = 0
    """Position in the session log, assigned by the store on append."""
    created_at: int = Field(default_factory=lambda: int(time.time() * 1000))
    """Unix millisecond timestamp."""
    compacted_at: int | None = None
    """Unix millisecond timestamp when the content was blanked by pruning."""
    superseded_by: str | None = None
    """ID of the summary message that replaced this one."""

    @property
    def is_summary(self) -> bool:
        return self.kind == "summary"

    @property
    def is_tool_result(self) -> bool:
        return self.kind == "tool_result"


# ── Token Usage ────────────────────────────────────────────────────────────────


class TokenUsage(BaseModel):
    """Token counts reported by the provider for a single LLM response."""

    prompt_tokens: int = 0
    cache_read_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.prompt_tokens + self.cache_read_tokens + self.output_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


class LLMResponse(BaseModel):
    """A single completion returned by an ``LLMClient``."""

    content: str = ""
    tool_calls: list[ToolCallRequest] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    finish_reason: str | None = None


# ── Result Types ───────────────────────────────────────────────────────────────


class PruneResult(BaseModel):
    """The result of a ToolOutputPruner pass."""

    pruned_count: int
    pruned_tokens: int
    candidates_scanned: int


class CompactionResult(BaseModel):
    """
    The result of a compaction pass.

    ``still_overflowing`` tells the caller whether the projected usage after
    this pass would still exceed the budget; the loop re-evaluates on its next
    iteration either way.
    """

    session_id: str
    pruned_tool_outputs: int = 0
    pruned_tokens: int = 0
    summarized: bool = False
    summary_message_id: str | None = None
    compacted_message_count: int = 0
    tokens_before: int = 0
    tokens_after: int = 0
    still_overflowing: bool = False
    error: str | None = None
    elapsed_ms: float = 0.0


class LoopResult(BaseModel):
    """The outcome of a single ``AgentLoop.run()`` call."""

    session_id: str
    status: Literal["completed", "failed", "aborted"]
    content: str = ""
    """The final assistant answer. Empty unless ``status == "completed"``."""
    failure: Literal["provider_error", "max_iterations", "aborted"] | None = None
    error: str | None = None
    iterations: int = 0
    usage: TokenUsage = Field(default_factory=TokenUsage)
    """Cumulative provider usage across every LLM call in this run."""
    compactions: list[CompactionResult] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "completed"
