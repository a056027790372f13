"""Tool output pruner: reclaims context space by blanking stale tool outputs."""

from __future__ import annotations

import time

import structlog

from ctxloop.models.config import CompactionConfig
from ctxloop.models.message import Message, PruneResult
from ctxloop.store.memory import MessageStore
from ctxloop.tokens.estimator import TokenEstimator

PRUNED_MARKER = "[Old tool result content cleared]"


class ToolOutputPruner:
    """
    Reclaims context space by blanking stale tool outputs.

    The protect window keeps the tool outputs of the most recent
    ``recent_turns_protected`` turns, and the most recent
    ``prune_protect_tokens`` worth of tool output, untouched. Only tool results
    outside both are candidates.

    No LLM call is required; this is entirely deterministic.

    Example::

        pruner = ToolOutputPruner(store, estimator, config.compaction)
        result = pruner.prune("sess_01JXYZ...")
        print(f"Pruned {result.pruned_count} tool outputs ({result.pruned_tokens:,} tokens)")
    """

    def __init__(
        self,
        store: MessageStore,
        estimator: TokenEstimator,
        config: CompactionConfig,
    ) -> None:
        self._store = store
        self._estimator = estimator
        self._config = config
        self._logger = structlog.get_logger("ctxloop.pruner")

    def select(self, messages: tuple[Message, ...] | list[Message]) -> tuple[list[Message], int, int]:
        """
        Pick the tool results a prune pass would blank, without mutating anything.

        Algorithm:
        1. Walk backward from the newest message.
        2. Stop at the latest summary (compaction boundary).
        3. Skip protected tools and outputs that were already blanked.
        4. Add every other tool output to a running token total.
        5. A tool result becomes a candidate once the running total exceeds
           ``prune_protect_tokens`` and its turn falls outside the protected
           window, which holds the newest ``recent_turns_protected`` turns
           (turn ages 0 to N-1). A result with no turn index is never a
           candidate.

        Returns:
            ``(candidates, candidate_tokens, scanned)``.
        """
        protect_tokens = self._config.prune_protect_tokens
        window = self._config.recent_turns_protected
        protected_tools = self._config.protected_tools

        newest_turn = max((m.turn_index for m in messages if m.turn_index is not None), default=0)

        candidates: list[Message] = []
        total_tool_tokens = 0
        pruned_volume = 0
        scanned = 0

        for msg in reversed(messages):
            if msg.is_summary:
                break
            if not msg.is_tool_result:
                continue

            scanned += 1
            if msg.tool_name in protected_tools:
                continue
            if msg.compacted_at is not None:
                continue

            output_tokens = self._estimator.estimate(msg.content)
            total_tool_tokens += output_tokens

            if total_tool_tokens <= protect_tokens:
                continue
            if msg.turn_index is None:
                continue
            # Age N-1 is the oldest protected turn.
            if newest_turn - msg.turn_index < window:
                continue

            candidates.append(msg)
            pruned_volume += output_tokens

        return candidates, pruned_volume, scanned

    def prune(self, session_id: str) -> PruneResult:
        """
        Run a prune pass for the given session.

        The pass is all-or-nothing: if the candidate volume is below
        ``prune_minimum_tokens`` nothing is blanked.

        Args:
            session_id: The session to prune.

        Returns:
            PruneResult with counts of pruned outputs and tokens.
        """
        if not self._config.prune:
            return PruneResult(pruned_count=0, pruned_tokens=0, candidates_scanned=0)

        messages = self._store.messages(session_id)
        if not messages:
            return PruneResult(pruned_count=0, pruned_tokens=0, candidates_scanned=0)

        candidates, pruned_volume, scanned = self.select(messages)
        minimum_tokens = self._config.prune_minimum_tokens

        if not candidates or pruned_volume < minimum_tokens:
            self._logger.debug(
                "prune_below_minimum",
                session_id=session_id,
                pruned_volume=pruned_volume,
                minimum=minimum_tokens,
            )
            return PruneResult(pruned_count=0, pruned_tokens=0, candidates_scanned=scanned)

        marker_tokens = self._estimator.estimate(PRUNED_MARKER)
        now_ms = int(time.time() * 1000)
        for msg in candidates:
            reclaimed = max(0, self._estimator.estimate(msg.content) - marker_tokens)
            self._store.blank_tool_output(
                session_id,
                msg.id,
                marker=PRUNED_MARKER,
                compacted_at=now_ms,
                reclaimed_tokens=reclaimed,
            )

        self._logger.info(
            "prune_completed",
            session_id=session_id,
            pruned_count=len(candidates),
            pruned_tokens=pruned_volume,
        )
        return PruneResult(
            pruned_count=len(candidates),
            pruned_tokens=pruned_volume,
            candidates_scanned=scanned,
        )
