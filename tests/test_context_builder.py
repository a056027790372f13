"""Tests for ContextBuilder."""

from __future__ import annotations

from ctxloop.context.builder import ContextBuilder
from ctxloop.models.message import ToolCallRequest
from tests.conftest import make_message


def _call_message(call_id: str = "c1"):
    return make_message(
        role="assistant",
        content="",
        kind="tool_call",
        tool_calls=[ToolCallRequest(id=call_id, name="grep", arguments='{"q": "x"}')],
    )


def _result_message(call_id: str = "c1", content: str = "match"):
    return make_message(role="tool", kind="tool_result", content=content, tool_call_id=call_id, tool_name="grep")


class TestContextBuilder:
    def test_system_prompt_first(self, estimator):
        built = ContextBuilder(estimator).build([make_message(content="hi")], system_prompt="rules")
        assert built.messages[0] == {"role": "system", "content": "rules"}
        assert built.messages[1] == {"role": "user", "content": "hi"}

    def test_no_system_prompt(self, estimator):
        built = ContextBuilder(estimator).build([make_message(content="hi")])
        assert built.messages == [{"role": "user", "content": "hi"}]

    def test_tool_call_and_result_shapes(self, estimator):
        built = ContextBuilder(estimator).build([make_message(), _call_message(), _result_message()])
        call, result = built.messages[1], built.messages[2]
        assert call["role"] == "assistant"
        assert call["content"] is None
        assert call["tool_calls"] == [
            {"id": "c1", "type": "function", "function": {"name": "grep", "arguments": '{"q": "x"}'}}
        ]
        assert result == {"role": "tool", "tool_call_id": "c1", "content": "match"}

    def test_summary_rendered_as_system(self, estimator):
        summary = make_message(role="system", kind="summary", content="[Historical Memory Snapshot]:\nx")
        built = ContextBuilder(estimator).build([summary, make_message(content="next")])
        assert built.has_summary is True
        assert built.messages[0]["role"] == "system"

    def test_orphan_tool_result_dropped(self, estimator):
        built = ContextBuilder(estimator).build([make_message(), _result_message("c_missing")])
        assert built.dropped_orphans == 1
        assert all(m["role"] != "tool" for m in built.messages)

    def test_token_estimate_covers_history(self, estimator):
        history = [make_message(content="x" * 40), _call_message(), _result_message()]
        built = ContextBuilder(estimator).build(history)
        assert built.token_estimate == estimator.estimate_total(history)
