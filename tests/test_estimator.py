"""Tests for TokenEstimator."""

from __future__ import annotations

from ctxloop.models.message import ToolCallRequest
from ctxloop.tokens.estimator import MESSAGE_OVERHEAD_TOKENS, TokenEstimator
from tests.conftest import make_message


class TestEstimate:
    def test_empty_is_zero(self):
        assert TokenEstimator().estimate("") == 0

    def test_ascii_quarter_token_per_char(self):
        e = TokenEstimator()
        assert e.estimate("abcd") == 1
        assert e.estimate("abcde") == 2
        assert e.estimate("x" * 400) == 100

    def test_non_empty_is_at_least_one(self):
        assert TokenEstimator().estimate("a") == 1

    def test_cjk_counts_one_per_char(self):
        e = TokenEstimator()
        assert e.estimate("你好世界") == 4
        assert e.estimate("こんにちは") == 5
        assert e.estimate("안녕") == 2

    def test_mixed_text(self):
        # 2 wide chars + 4 ascii chars = 2 + 1
        assert TokenEstimator().estimate("你好abcd") == 3

    def test_monotonic_under_append(self):
        e = TokenEstimator()
        text = ""
        previous = 0
        for ch in "hello 世界, this grows one char at a time":
            text += ch
            current = e.estimate(text)
            assert current >= previous
            previous = current


class TestEstimateMessage:
    def test_includes_overhead(self):
        e = TokenEstimator()
        msg = make_message(content="x" * 40)
        assert e.estimate_message(msg) == 10 + MESSAGE_OVERHEAD_TOKENS

    def test_includes_tool_calls(self):
        e = TokenEstimator()
        call = ToolCallRequest(id="c1", name="read", arguments='{"p": "abc"}')
        msg = make_message(role="assistant", content="", kind="tool_call", tool_calls=[call])
        expected = e.estimate("read") + e.estimate('{"p": "abc"}') + MESSAGE_OVERHEAD_TOKENS
        assert e.estimate_message(msg) == expected

    def test_summary_estimate_is_cached_by_id(self):
        e = TokenEstimator()
        msg = make_message(role="system", kind="summary", content="x" * 80, msg_id="msg_sum")
        first = e.estimate_message(msg)
        changed = msg.model_copy(update={"content": "x" * 800})
        assert e.estimate_message(changed) == first

    def test_estimate_total_sums_messages(self):
        e = TokenEstimator()
        msgs = [make_message(content="x" * 4), make_message(content="y" * 8)]
        assert e.estimate_total(msgs) == (1 + 4) + (2 + 4)
