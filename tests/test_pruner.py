"""Tests for ToolOutputPruner."""

from __future__ import annotations

from ctxloop.compaction.pruner import PRUNED_MARKER, ToolOutputPruner
from ctxloop.models.config import CompactionConfig
from tests.conftest import add_tool_turn, make_message


def _tool_results(store, session_id):
    return [m for m in store.messages(session_id) if m.is_tool_result]


def _small_config(**overrides) -> CompactionConfig:
    values = {"prune_protect_tokens": 100, "prune_minimum_tokens": 50, "recent_turns_protected": 2}
    values.update(overrides)
    return CompactionConfig(**values)


class TestToolOutputPruner:
    async def test_prune_noop_when_disabled(self, store, session_id, estimator):
        """Pruner is a no-op when compaction.prune is False."""
        for _ in range(5):
            add_tool_turn(store, session_id, output="x" * 4000)
        pruner = ToolOutputPruner(store, estimator, _small_config(prune=False))
        result = pruner.prune(session_id)
        assert result.pruned_count == 0
        assert all(m.compacted_at is None for m in _tool_results(store, session_id))

    async def test_prune_noop_when_no_messages(self, store, session_id, estimator):
        pruner = ToolOutputPruner(store, estimator, CompactionConfig())
        result = pruner.prune(session_id)
        assert result.pruned_count == 0
        assert result.pruned_tokens == 0

    async def test_long_session_blanks_old_large_output(self, store, session_id, estimator):
        """A 200k-char output at turn 5 of 25 is blanked; the last two turns are untouched."""
        for turn in range(1, 26):
            output = "y" * 200_000 if turn == 5 else "x" * 400
            add_tool_turn(store, session_id, output=output)

        pruner = ToolOutputPruner(store, estimator, CompactionConfig())
        result = pruner.prune(session_id)

        by_turn = {m.turn_index: m for m in _tool_results(store, session_id)}
        assert by_turn[5].content == PRUNED_MARKER
        assert by_turn[5].compacted_at is not None
        assert by_turn[24].content == "x" * 400
        assert by_turn[25].content == "x" * 400
        assert result.pruned_count >= 1
        assert result.pruned_tokens >= 50_000

    async def test_below_minimum_is_noop(self, store, session_id, estimator):
        for _ in range(6):
            add_tool_turn(store, session_id, output="x" * 400)
        # Candidates are turns 1-2 (200 tokens), short of the 400-token minimum.
        cfg = _small_config(prune_protect_tokens=450, prune_minimum_tokens=400)
        pruner = ToolOutputPruner(store, estimator, cfg)
        result = pruner.prune(session_id)
        assert result.pruned_count == 0
        assert result.candidates_scanned == 6
        assert all(m.compacted_at is None for m in _tool_results(store, session_id))

    async def test_turn_window_holds_exactly_n_turns(self, store, session_id, estimator):
        """With ``recent_turns_protected=2`` only the two newest turns are kept."""
        for _ in range(5):
            add_tool_turn(store, session_id, output="x" * 400)
        pruner = ToolOutputPruner(store, estimator, _small_config(prune_protect_tokens=1, prune_minimum_tokens=0))
        candidates, _, _ = pruner.select(store.messages(session_id))
        assert sorted(m.turn_index for m in candidates) == [1, 2, 3]

    async def test_turn_just_outside_window_is_pruned(self, store, session_id, estimator):
        """Turn 23 of 25 is outside a two-turn window once the token budget is spent."""
        for turn in range(1, 26):
            output = "y" * 200_000 if turn == 23 else "x" * 400
            add_tool_turn(store, session_id, output=output)

        ToolOutputPruner(store, estimator, CompactionConfig()).prune(session_id)

        by_turn = {m.turn_index: m for m in _tool_results(store, session_id)}
        assert by_turn[23].content == PRUNED_MARKER
        assert by_turn[24].content == "x" * 400
        assert by_turn[25].content == "x" * 400

    async def test_single_turn_window(self, store, session_id, estimator):
        for _ in range(3):
            add_tool_turn(store, session_id, output="x" * 400)
        cfg = _small_config(prune_protect_tokens=1, prune_minimum_tokens=0, recent_turns_protected=1)
        candidates, _, _ = ToolOutputPruner(store, estimator, cfg).select(store.messages(session_id))
        assert sorted(m.turn_index for m in candidates) == [1, 2]

    async def test_token_window_protects_recent_output(self, store, session_id, estimator):
        for _ in range(6):
            add_tool_turn(store, session_id, output="x" * 400)  # 100 tokens each
        cfg = _small_config(prune_protect_tokens=450, prune_minimum_tokens=0)
        candidates, volume, _ = ToolOutputPruner(store, estimator, cfg).select(store.messages(session_id))
        # Running total passes 450 only at the fifth-newest output (turn 2).
        assert sorted(m.turn_index for m in candidates) == [1, 2]
        assert volume == 200

    async def test_protected_tools_are_skipped(self, store, session_id, estimator):
        for _ in range(3):
            add_tool_turn(store, session_id, tool_name="skill", output="x" * 4000)
        for _ in range(4):
            add_tool_turn(store, session_id, output="x" * 400)
        pruner = ToolOutputPruner(store, estimator, _small_config(prune_protect_tokens=1, prune_minimum_tokens=0))
        result = pruner.prune(session_id)
        for msg in _tool_results(store, session_id):
            if msg.tool_name == "skill":
                assert msg.content == "x" * 4000
        assert result.pruned_count == 2  # turns 4-5; turns 6-7 are recent

    async def test_stops_at_summary_boundary(self, store, session_id, estimator):
        """Tool results before the latest summary are neither scanned nor blanked."""
        for _ in range(3):
            add_tool_turn(store, session_id, output="x" * 4000)
        msgs = store.messages(session_id)
        summary = make_message(session_id, "system", "[Historical Memory Snapshot]:\nold", kind="summary")
        # Summarize turn 2 only, leaving turn 1 before the boundary.
        store.replace_range(session_id, msgs[4].id, msgs[7].id, summary)
        for _ in range(4):
            add_tool_turn(store, session_id, output="x" * 400)

        pruner = ToolOutputPruner(store, estimator, _small_config(prune_protect_tokens=1, prune_minimum_tokens=0))
        result = pruner.prune(session_id)

        turn_one = store.messages(session_id)[2]
        assert turn_one.turn_index == 1
        assert turn_one.content == "x" * 4000
        assert result.candidates_scanned == 5
        assert result.pruned_count > 0

    async def test_unassigned_turn_is_never_pruned(self, store, session_id, estimator):
        store.append(
            session_id,
            make_message(session_id, "tool", "z" * 4000, kind="tool_result", tool_call_id="c0", tool_name="grep"),
        )
        for _ in range(5):
            add_tool_turn(store, session_id, output="x" * 400)
        pruner = ToolOutputPruner(store, estimator, _small_config(prune_protect_tokens=1, prune_minimum_tokens=0))
        pruner.prune(session_id)
        orphan = store.messages(session_id)[0]
        assert orphan.turn_index is None
        assert orphan.content == "z" * 4000

    async def test_already_blanked_outputs_are_not_counted_again(self, store, session_id, estimator):
        for _ in range(5):
            add_tool_turn(store, session_id, output="x" * 400)
        pruner = ToolOutputPruner(store, estimator, _small_config(prune_protect_tokens=1, prune_minimum_tokens=0))
        first = pruner.prune(session_id)
        second = pruner.prune(session_id)
        assert first.pruned_count == 3
        assert second.pruned_count == 0

    async def test_prune_credits_reclaimed_tokens(self, store, session_id, estimator):
        for _ in range(5):
            add_tool_turn(store, session_id, output="x" * 400)
        pruner = ToolOutputPruner(store, estimator, _small_config(prune_protect_tokens=1, prune_minimum_tokens=0))
        pruner.prune(session_id)
        marker = estimator.estimate(PRUNED_MARKER)
        assert store.get_session(session_id).reclaimed_tokens == 3 * (100 - marker)
