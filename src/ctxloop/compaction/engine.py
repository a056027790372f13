"""Compaction orchestration engine.

One pass runs the tiers in order and stops as soon as the projected usage fits:

1. **Truncation** happens when each tool result is created (see
   :mod:`ctxloop.compaction.truncation`), so a pass only records the state.
2. **Pruning** blanks stale tool outputs (see :mod:`ctxloop.compaction.pruner`).
3. **Summarization** replaces the oldest summarizable span with one summary
   message, which becomes the new boundary. Everything before a boundary is
   immutable to later passes.

A pass never raises. A summarizer failure leaves the session exactly as it
was and reports ``still_overflowing=True`` so the caller re-evaluates on its
next iteration.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import StrEnum

import structlog

from ctxloop.compaction.overflow import OverflowDetector
from ctxloop.compaction.pruner import ToolOutputPruner
from ctxloop.compaction.summarizer import Summarizer
from ctxloop.events.bus import EventBus, LoopEvent
from ctxloop.ids import make_id
from ctxloop.models.config import LoopConfig, ModelInfo
from ctxloop.models.message import CompactionResult, Message
from ctxloop.store.memory import MessageStore, MessageStoreError
from ctxloop.tokens.estimator import TokenEstimator

SUMMARY_PREFIX = "[Historical Memory Snapshot]:\n"
USER_QUOTES_HEADER = "\n\n[User messages in summarized history, verbatim]:\n"

_MAX_TRANSCRIPT_CHARS = 2000
_TRANSCRIPT_HEAD_CHARS = 1000
_OMITTED = "...(omitted)..."
_MAX_ARGUMENT_CHARS = 200


class CompactionState(StrEnum):
    """Per-session position within a compaction pass."""

    IDLE = "idle"
    TRUNCATING = "truncating"
    PRUNING = "pruning"
    SUMMARIZING = "summarizing"


@dataclass
class SummaryRange:
    """The span a summarization would replace."""

    messages: list[Message]
    """Messages to summarize, oldest first. Never empty."""
    previous_summary: Message | None = None
    """The latest summary, when the span starts at it. It is superseded too."""

    @property
    def first_id(self) -> str:
        return (self.previous_summary or self.messages[0]).id

    @property
    def last_id(self) -> str:
        return self.messages[-1].id

    @property
    def replaced(self) -> list[Message]:
        head = [self.previous_summary] if self.previous_summary is not None else []
        return head + self.messages


def render_transcript(messages: Sequence[Message]) -> str:
    """Serialize messages as ``[role:kind]: content`` lines for the summarizer."""
    lines = []
    for msg in messages:
        content = msg.content
        if len(content) > _MAX_TRANSCRIPT_CHARS:
            content = content[:_TRANSCRIPT_HEAD_CHARS] + _OMITTED
        if msg.tool_calls:
            calls = ", ".join(
                f"{c.name}({_clip(c.arguments, _MAX_ARGUMENT_CHARS)})" for c in msg.tool_calls
            )
            content = f"{content}\n-> {calls}" if content else f"-> {calls}"
        lines.append(f"[{msg.role}:{msg.kind}]: {content}")
    return "\n".join(lines)


def split_summary(content: str) -> tuple[str, str]:
    """Split summary message content into ``(summary_body, quoted_user_block)``."""
    body, _, quotes = content.partition(USER_QUOTES_HEADER)
    if body.startswith(SUMMARY_PREFIX):
        body = body[len(SUMMARY_PREFIX) :]
    return body, quotes


def compose_summary(body: str, carried_quotes: str, user_messages: Sequence[str]) -> str:
    """Build summary message content: prefix, body, then every user message verbatim."""
    quotes = carried_quotes.rstrip("\n")
    new = "\n".join("- " + text.replace("\n", "\n  ") for text in user_messages)
    block = "\n".join(part for part in (quotes, new) if part)
    content = SUMMARY_PREFIX + body
    if block:
        content += USER_QUOTES_HEADER + block
    return content


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


class CompactionEngine:
    """
    Runs compaction passes for sessions held in a ``MessageStore``.

    Guarantees:
    - ``run_compaction()`` never raises for summarizer or policy failures.
    - At most one pass per session runs at a time.
    - Surviving messages keep their order and content before the latest
      summary boundary is never touched.
    - A successful summary always lowers the estimated size of the history.
    - The EventBus receives ``COMPACTION_COMPLETED`` (or ``COMPACTION_FAILED``).

    Example::

        engine = CompactionEngine(store, estimator, summarizer, event_bus, config)
        result = await engine.run_compaction(session_id, model=config.model_info())
        if result.still_overflowing:
            ...
    """

    def __init__(
        self,
        store: MessageStore,
        token_estimator: TokenEstimator,
        summarizer: Summarizer | None,
        event_bus: EventBus,
        config: LoopConfig,
        detector: OverflowDetector | None = None,
        id_generator: Callable[[str], str] | None = None,
    ) -> None:
        self._store = store
        self._estimator = token_estimator
        self._summarizer = summarizer
        self._event_bus = event_bus
        self._config = config
        self._detector = detector or OverflowDetector(config, token_estimator)
        self._pruner = ToolOutputPruner(store, token_estimator, config.compaction)
        self._id_gen = id_generator or make_id
        self._locks: dict[str, asyncio.Lock] = {}
        self._states: dict[str, CompactionState] = {}
        self._logger = structlog.get_logger("ctxloop.compaction")

    @property
    def detector(self) -> OverflowDetector:
        return self._detector

    def state(self, session_id: str) -> CompactionState:
        return self._states.get(session_id, CompactionState.IDLE)

    def forget(self, session_id: str) -> None:
        """Drop per-session bookkeeping after the session is torn down."""
        self._locks.pop(session_id, None)
        self._states.pop(session_id, None)

    def _advance(self, session_id: str, state: CompactionState) -> None:
        self._states[session_id] = state
        self._logger.debug("compaction_state", session_id=session_id, state=str(state))

    # ── Public compaction entry point ───────────────────────────────────────────

    async def run_compaction(
        self,
        session_id: str,
        *,
        model: ModelInfo,
        force: bool = False,
        overhead: int = 0,
    ) -> CompactionResult:
        """
        Run one compaction pass. Never raises except on cancellation.

        Args:
            session_id: The session to compact.
            model: Model metadata providing the context and output limits.
            force: Summarize even if pruning alone brings usage under budget.
                Used for explicit compaction requests.
            overhead: Estimated tokens each request sends besides the
                history (system prompt, tool schemas).

        Returns:
            CompactionResult describing what happened.

        Raises:
            SessionNotFoundError: If the session is not open in the store.
        """
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            start_ms = time.time() * 1000
            session = self._store.get_session(session_id)
            tokens_before = self._detector.project(session, overhead=overhead).total

            self._logger.info("compaction_triggered", session_id=session_id, tokens=tokens_before)
            payload: dict[str, object] = {"session_id": session_id, "tokens": tokens_before}
            if force:
                payload["forced"] = True
            self._event_bus.publish(LoopEvent.COMPACTION_TRIGGERED, payload)

            try:
                result = await self._run_pass(session_id, model, force, tokens_before, overhead)
            except Exception as exc:
                self._logger.error(
                    "compaction_unexpected_error",
                    session_id=session_id,
                    error=str(exc),
                )
                self._event_bus.publish(
                    LoopEvent.COMPACTION_FAILED,
                    {"session_id": session_id, "error": str(exc)},
                )
                result = CompactionResult(
                    session_id=session_id,
                    tokens_before=tokens_before,
                    tokens_after=self._detector.project(session, overhead=overhead).total,
                    still_overflowing=True,
                    error=str(exc),
                )
            finally:
                self._advance(session_id, CompactionState.IDLE)

            result.elapsed_ms = time.time() * 1000 - start_ms
            if result.error is None:
                self._logger.info(
                    "compaction_completed",
                    session_id=session_id,
                    pruned=result.pruned_tool_outputs,
                    summarized=result.summarized,
                    tokens_before=result.tokens_before,
                    tokens_after=result.tokens_after,
                    still_overflowing=result.still_overflowing,
                )
                self._event_bus.publish(LoopEvent.COMPACTION_COMPLETED, result.model_dump())
            return result

    # ── Internal implementation ─────────────────────────────────────────────────

    async def _run_pass(
        self,
        session_id: str,
        model: ModelInfo,
        force: bool,
        tokens_before: int,
        overhead: int,
    ) -> CompactionResult:
        session = self._store.get_session(session_id)

        # Tier 1 already ran when each tool result was created.
        self._advance(session_id, CompactionState.TRUNCATING)

        self._advance(session_id, CompactionState.PRUNING)
        prune = self._pruner.prune(session_id)
        if prune.pruned_count:
            self._event_bus.publish(
                LoopEvent.PRUNE_COMPLETED,
                {
                    "session_id": session_id,
                    "pruned_count": prune.pruned_count,
                    "pruned_tokens": prune.pruned_tokens,
                },
            )

        projected = self._detector.project(session, overhead=overhead)
        result = CompactionResult(
            session_id=session_id,
            pruned_tool_outputs=prune.pruned_count,
            pruned_tokens=prune.pruned_tokens,
            tokens_before=tokens_before,
            tokens_after=projected.total,
            still_overflowing=self._detector.exceeds(projected, model),
        )
        if not (result.still_overflowing or force):
            return result

        self._advance(session_id, CompactionState.SUMMARIZING)
        return await self._summarize(session_id, model, result, overhead)

    async def _summarize(
        self,
        session_id: str,
        model: ModelInfo,
        result: CompactionResult,
        overhead: int,
    ) -> CompactionResult:
        session = self._store.get_session(session_id)
        if self._summarizer is None:
            self._logger.warning("summarizer_not_configured", session_id=session_id)
            return result

        span = self.select_range(session.messages)
        if span is None:
            self._logger.debug("nothing_to_summarize", session_id=session_id)
            return result

        previous_body, carried_quotes = (
            split_summary(span.previous_summary.content)
            if span.previous_summary is not None
            else (None, "")
        )
        transcript = render_transcript(span.messages)

        timeout = self._config.loop.llm_timeout
        try:
            async with asyncio.timeout(timeout):
                summary_text = await self._summarizer.summarize(transcript, previous_body)
        except TimeoutError:
            return self._failed(result, f"summarization timed out after {timeout}s")
        except Exception as exc:
            return self._failed(result, f"summarization failed: {exc}")
        if not summary_text or not summary_text.strip():
            return self._failed(result, "summarization failed: empty summary")

        user_texts = [m.content for m in span.messages if m.role == "user"]
        summary = Message(
            id=self._id_gen("msg"),
            session_id=session_id,
            role="system",
            kind="summary",
            content=compose_summary(summary_text.strip(), carried_quotes, user_texts),
        )

        replaced_tokens = self._estimator.estimate_total(span.replaced)
        summary_tokens = self._estimator.estimate_message(summary)
        if summary_tokens >= replaced_tokens:
            self._logger.warning(
                "summary_no_progress",
                session_id=session_id,
                replaced_tokens=replaced_tokens,
                summary_tokens=summary_tokens,
            )
            return self._failed(
                result,
                "summary is not smaller than the history it replaces",
                still_overflowing=result.still_overflowing,
            )

        try:
            archived = self._store.replace_range(session_id, span.first_id, span.last_id, summary)
        except MessageStoreError as exc:
            return self._failed(result, f"summary could not be applied: {exc}")

        projected = self._detector.project(session, overhead=overhead)
        return result.model_copy(
            update={
                "summarized": True,
                "summary_message_id": summary.id,
                "compacted_message_count": len(archived),
                "tokens_after": projected.total,
                "still_overflowing": self._detector.exceeds(projected, model),
            }
        )

    def _failed(
        self,
        result: CompactionResult,
        error: str,
        *,
        still_overflowing: bool = True,
    ) -> CompactionResult:
        self._logger.warning("summarization_failed", session_id=result.session_id, error=error)
        self._event_bus.publish(
            LoopEvent.COMPACTION_FAILED,
            {"session_id": result.session_id, "error": error},
        )
        return result.model_copy(update={"error": error, "still_overflowing": still_overflowing})

    # ── Range selection ─────────────────────────────────────────────────────────

    def select_range(self, messages: Sequence[Message]) -> SummaryRange | None:
        """
        Choose the span to summarize, or None if nothing can be summarized.

        The span starts at the latest summary (folded in as the previous
        summary) or right after the leading system messages. It ends before the
        protected tail, which begins at a user message so no tool result is
        separated from its call, and before any later non-summary system
        message. When the configured number of turns leaves nothing to
        summarize, the tail shrinks one turn at a time. A single long turn is
        split before its most recent tool call as a last resort.
        """
        msgs = list(messages)
        lead = 0
        while lead < len(msgs) and msgs[lead].role == "system" and not msgs[lead].is_summary:
            lead += 1

        boundary = max((i for i, m in enumerate(msgs) if m.is_summary), default=-1)
        start = boundary if boundary >= lead else lead
        first_content = start + 1 if boundary >= lead else start

        tail = self._tail_start(msgs, first_content)
        if tail is None:
            return None

        end = tail
        for i in range(first_content, tail):
            if msgs[i].role == "system" and not msgs[i].is_summary:
                end = i
                break

        body = msgs[first_content:end]
        if not body:
            return None
        previous = msgs[boundary] if boundary >= lead else None
        return SummaryRange(messages=body, previous_summary=previous)

    def _tail_start(self, msgs: list[Message], first_content: int) -> int | None:
        user_idx = [i for i in range(first_content, len(msgs)) if msgs[i].role == "user"]
        for keep in range(self._config.compaction.summary_recent_turns, 0, -1):
            if len(user_idx) >= keep and user_idx[-keep] > first_content:
                return user_idx[-keep]

        current_turn = user_idx[-1] if user_idx else first_content
        for i in range(len(msgs) - 1, current_turn, -1):
            if msgs[i].kind == "tool_call" and i > first_content:
                return i
        return None
