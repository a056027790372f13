"""Overflow detection: when does history no longer fit the context window."""

from __future__ import annotations

from ctxloop.models.config import LoopConfig, ModelInfo
from ctxloop.models.message import TokenUsage
from ctxloop.store.memory import SessionRecord
from ctxloop.tokens.estimator import TokenEstimator


def is_overflow(
    prompt_tokens: int,
    cache_read_tokens: int,
    output_tokens: int,
    context_limit: int,
    model_output_limit: int,
    output_cap: int,
) -> bool:
    """
    Return True if the used tokens exceed the window left after reserving output.

    ``reserved = min(model_output_limit, output_cap)`` and
    ``available = context_limit - reserved``. Overflow iff
    ``prompt + cache_read + output > available``. Monotonic in every usage
    argument. A ``context_limit`` of 0 or less means "unknown" and never
    overflows.
    """
    if context_limit <= 0:
        return False
    total = prompt_tokens + cache_read_tokens + output_tokens
    reserved = min(model_output_limit, output_cap)
    available = context_limit - reserved
    return total > available


class OverflowDetector:
    """
    Applies ``is_overflow`` to a session using the loop configuration.

    ``project()`` turns the last provider-reported usage into an estimate of
    what the next request will cost: the reported numbers, plus an estimate of
    everything appended since, minus whatever pruning reclaimed. Before the
    first LLM call, or right after a summary rewrote history, there is no
    trustworthy provider number and the whole history is estimated instead.
    """

    def __init__(self, config: LoopConfig, estimator: TokenEstimator) -> None:
        self._config = config
        self._estimator = estimator

    def project(self, session: SessionRecord, *, overhead: int = 0) -> TokenUsage:
        """
        Project the usage of the next request for ``session``.

        Args:
            session: The session whose history is sent.
            overhead: Estimated tokens sent with every request besides the
                history (system prompt, tool schemas). Only added when the
                whole history is estimated, since a provider-reported prompt
                count already includes it.
        """
        if session.usage is None:
            history = self._estimator.estimate_total(session.messages)
            return TokenUsage(prompt_tokens=history + overhead)

        since = [m for m in session.messages if m.seq > session.usage_seq]
        added = self._estimator.estimate_total(since)
        usage = session.usage
        return TokenUsage(
            prompt_tokens=max(0, usage.prompt_tokens + added - session.reclaimed_tokens),
            cache_read_tokens=usage.cache_read_tokens,
            output_tokens=usage.output_tokens,
        )

    def exceeds(self, usage: TokenUsage, model: ModelInfo) -> bool:
        """Budget check regardless of the auto-compaction switch."""
        return is_overflow(
            usage.prompt_tokens,
            usage.cache_read_tokens,
            usage.output_tokens,
            model.context_limit,
            model.max_output_tokens,
            self._config.loop.max_output_tokens,
        )

    def should_compact(self, usage: TokenUsage, model: ModelInfo) -> bool:
        """Return True if automatic compaction should run. Always False in manual-only mode."""
        if not self._config.compaction.auto:
            return False
        return self.exceeds(usage, model)
