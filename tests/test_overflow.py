"""Tests for overflow detection and usage projection."""

from __future__ import annotations

import pytest

from ctxloop.compaction.overflow import OverflowDetector, is_overflow
from ctxloop.models.config import CompactionConfig, LoopConfig, ModelInfo
from ctxloop.models.message import TokenUsage
from tests.conftest import make_message


class TestIsOverflow:
    def test_over_available_window(self):
        # available = 200000 - min(8000, 8000) = 192000; used = 195000
        assert is_overflow(190_000, 5_000, 0, 200_000, 8_000, 8_000) is True

    def test_under_available_window(self):
        assert is_overflow(100_000, 0, 0, 200_000, 8_000, 8_000) is False

    def test_exactly_available_is_not_overflow(self):
        assert is_overflow(192_000, 0, 0, 200_000, 8_000, 8_000) is False
        assert is_overflow(192_001, 0, 0, 200_000, 8_000, 8_000) is True

    def test_reserve_uses_smaller_output_limit(self):
        # reserved = min(32000, 4000) = 4000 -> available 196000
        assert is_overflow(195_000, 0, 0, 200_000, 32_000, 4_000) is False

    def test_unknown_context_limit_never_overflows(self):
        assert is_overflow(10**9, 10**9, 10**9, 0, 8_000, 8_000) is False
        assert is_overflow(10**9, 0, 0, -1, 8_000, 8_000) is False

    @pytest.mark.parametrize("field", [0, 1, 2])
    def test_monotonic_in_each_usage_argument(self, field):
        base = [150_000, 20_000, 10_000]
        results = []
        for bump in range(0, 40_000, 5_000):
            usage = list(base)
            usage[field] += bump
            results.append(is_overflow(*usage, 200_000, 8_000, 8_000))
        # Once True, stays True.
        assert results == sorted(results)


class TestOverflowDetector:
    def _model(self, limit: int = 10_000) -> ModelInfo:
        return ModelInfo(model_id="test", context_limit=limit, max_output_tokens=1_000)

    def test_auto_off_never_compacts(self, estimator):
        cfg = LoopConfig(compaction=CompactionConfig(auto=False))
        detector = OverflowDetector(cfg, estimator)
        usage = TokenUsage(prompt_tokens=10**6)
        assert detector.should_compact(usage, self._model()) is False
        assert detector.exceeds(usage, self._model()) is True

    async def test_project_estimates_all_without_usage(self, store, session_id, estimator):
        detector = OverflowDetector(LoopConfig(), estimator)
        store.append(session_id, make_message(content="x" * 400))
        projected = detector.project(store.get_session(session_id))
        assert projected.prompt_tokens == 100 + 4

    async def test_project_adds_overhead_without_usage(self, store, session_id, estimator):
        detector = OverflowDetector(LoopConfig(), estimator)
        store.append(session_id, make_message(content="x" * 400))
        assert detector.project(store.get_session(session_id), overhead=250).prompt_tokens == 104 + 250

    async def test_overhead_ignored_once_usage_is_reported(self, store, session_id, estimator):
        detector = OverflowDetector(LoopConfig(), estimator)
        store.append(session_id, make_message(content="first"))
        store.record_usage(session_id, TokenUsage(prompt_tokens=5_000))
        assert detector.project(store.get_session(session_id), overhead=250).prompt_tokens == 5_000

    async def test_project_adds_messages_since_usage(self, store, session_id, estimator):
        detector = OverflowDetector(LoopConfig(), estimator)
        store.append(session_id, make_message(content="first"))
        store.record_usage(session_id, TokenUsage(prompt_tokens=5_000, output_tokens=50))
        store.append(session_id, make_message(role="tool", kind="tool_result", content="y" * 400))

        projected = detector.project(store.get_session(session_id))
        assert projected.prompt_tokens == 5_000 + 104
        assert projected.output_tokens == 50

    async def test_project_subtracts_reclaimed_tokens(self, store, session_id, estimator):
        detector = OverflowDetector(LoopConfig(), estimator)
        msg = store.append(
            session_id,
            make_message(role="tool", kind="tool_result", content="y" * 400, tool_call_id="c"),
        )
        store.record_usage(session_id, TokenUsage(prompt_tokens=5_000))
        store.blank_tool_output(
            session_id, msg.id, marker="[cleared]", compacted_at=1, reclaimed_tokens=90
        )
        assert detector.project(store.get_session(session_id)).prompt_tokens == 4_910

    def test_model_info_overrides(self):
        cfg = LoopConfig(context_limit=50_000, model_output_limit=2_000)
        info = cfg.model_info("anthropic/claude-sonnet-4-5")
        assert info.context_limit == 50_000
        assert info.max_output_tokens == 2_000
