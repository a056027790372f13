"""Typed payload definitions for each LoopEvent.

Every event published by ctxloop components carries a payload dict. This
module defines a ``TypedDict`` for each so handlers can use static type
checkers rather than guessing key names at runtime.

Usage example::

    from ctxloop.events.bus import EventBus, LoopEvent
    from ctxloop.events.payloads import CompactionCompletedPayload

    def on_compaction(event: LoopEvent, payload: CompactionCompletedPayload) -> None:
        print(f"{payload['tokens_before']} -> {payload['tokens_after']} tokens")

    bus.subscribe(LoopEvent.COMPACTION_COMPLETED, on_compaction)  # type: ignore[arg-type]
"""

from __future__ import annotations

from typing import NotRequired, TypedDict

# ── Session lifecycle ─────────────────────────────────────────────────────────


class SessionHydratedPayload(TypedDict):
    """Payload for :attr:`LoopEvent.SESSION_HYDRATED`."""

    session_id: str
    message_count: int
    """Number of active messages loaded from persistence."""


class SessionDeletedPayload(TypedDict):
    """Payload for :attr:`LoopEvent.SESSION_DELETED`."""

    session_id: str


# ── Message lifecycle ─────────────────────────────────────────────────────────


class MessageAppendedPayload(TypedDict):
    """Payload for :attr:`LoopEvent.MESSAGE_APPENDED`."""

    session_id: str
    message_id: str
    role: str
    kind: str


# ── Loop lifecycle ────────────────────────────────────────────────────────────


class LoopIterationPayload(TypedDict):
    """Payload for :attr:`LoopEvent.LOOP_ITERATION`."""

    session_id: str
    iteration: int
    """1-based index of the LLM call about to be made."""
    projected_tokens: int


class ToolsDispatchedPayload(TypedDict):
    """Payload for :attr:`LoopEvent.TOOLS_DISPATCHED`."""

    session_id: str
    tool_names: list[str]
    error_count: int


class OutputTruncatedPayload(TypedDict):
    """Payload for :attr:`LoopEvent.OUTPUT_TRUNCATED`."""

    tool_name: str
    handle: str
    original_bytes: int


class LoopResultPayload(TypedDict):
    """Payload for :attr:`LoopEvent.LOOP_COMPLETED` and :attr:`LoopEvent.LOOP_FAILED`.

    This is the ``model_dump()`` of a :class:`ctxloop.models.message.LoopResult`.
    """

    session_id: str
    status: str
    content: str
    failure: str | None
    error: str | None
    iterations: int
    usage: dict[str, int]
    compactions: list[dict[str, object]]


# ── Compaction lifecycle ──────────────────────────────────────────────────────


class CompactionTriggeredPayload(TypedDict):
    """Payload for :attr:`LoopEvent.COMPACTION_TRIGGERED`."""

    session_id: str
    tokens: int
    """Projected token usage that crossed the threshold."""
    forced: NotRequired[bool]
    """Present and True for explicit ``compact()`` requests."""


class CompactionCompletedPayload(TypedDict):
    """Payload for :attr:`LoopEvent.COMPACTION_COMPLETED`.

    This is the ``model_dump()`` of a :class:`ctxloop.models.message.CompactionResult`.
    """

    session_id: str
    pruned_tool_outputs: int
    pruned_tokens: int
    summarized: bool
    summary_message_id: str | None
    compacted_message_count: int
    tokens_before: int
    tokens_after: int
    still_overflowing: bool
    error: str | None
    elapsed_ms: float


class CompactionFailedPayload(TypedDict):
    """Payload for :attr:`LoopEvent.COMPACTION_FAILED`."""

    session_id: str
    error: str


class PruneCompletedPayload(TypedDict):
    """Payload for :attr:`LoopEvent.PRUNE_COMPLETED`."""

    session_id: str
    pruned_count: int
    pruned_tokens: int
