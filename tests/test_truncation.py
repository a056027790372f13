"""Tests for tier-1 output truncation and spill storage."""

from __future__ import annotations

import pytest

from ctxloop.compaction.truncation import (
    DirectorySpillStore,
    MemorySpillStore,
    OutputTruncator,
    SpillNotFoundError,
    make_handle,
    spill_store_from_config,
)
from ctxloop.models.config import TruncationConfig
from ctxloop.tools.spill import make_spill_reader_tool


def _lines(n: int, width: int = 10) -> str:
    return "".join(f"{i:0{width}d}\n" for i in range(n))


class TestOutputTruncator:
    def test_small_output_passes_through(self):
        truncator = OutputTruncator(TruncationConfig(), MemorySpillStore())
        result = truncator.truncate("hello\nworld", "bash")
        assert result.truncated is False
        assert result.content == "hello\nworld"
        assert result.handle is None

    def test_line_limit(self):
        spill = MemorySpillStore()
        truncator = OutputTruncator(TruncationConfig(max_lines=5), spill)
        output = _lines(100)
        result = truncator.truncate(output, "bash")

        assert result.truncated is True
        assert result.content.startswith(_lines(5))
        assert "[OUTPUT TRUNCATED: showing 5 of 100 lines" in result.content
        assert result.handle in result.content
        assert spill.get(result.handle) == output

    def test_byte_limit(self):
        truncator = OutputTruncator(TruncationConfig(max_bytes=1024), MemorySpillStore())
        result = truncator.truncate(_lines(1000), "bash")
        preview = result.content.split("\n[OUTPUT TRUNCATED")[0]
        assert len(preview.encode("utf-8")) <= 1024
        # Whole lines only.
        assert all(len(line) == 10 for line in preview.strip("\n").split("\n"))

    def test_single_huge_line_cut_on_character_boundary(self):
        truncator = OutputTruncator(TruncationConfig(max_bytes=1000), MemorySpillStore())
        output = "é" * 5000
        result = truncator.truncate(output, "bash")
        preview = result.content.split("\n[OUTPUT TRUNCATED")[0].rstrip("\n")
        assert set(preview) == {"é"}
        assert len(preview.encode("utf-8")) <= 1000

    def test_deterministic(self):
        a = OutputTruncator(TruncationConfig(max_lines=3), MemorySpillStore())
        b = OutputTruncator(TruncationConfig(max_lines=3), MemorySpillStore())
        output = _lines(50)
        assert a.truncate(output).content == b.truncate(output).content

    def test_marker_names_reader_tool(self):
        truncator = OutputTruncator(
            TruncationConfig(max_lines=2),
            MemorySpillStore(),
            reader_tool_name="read_spilled_output",
        )
        result = truncator.truncate(_lines(10))
        assert "call read_spilled_output with this handle" in result.content
        assert result.content.endswith("to read more.]")


class TestSpillStores:
    def test_handle_is_content_addressed(self):
        assert make_handle("abc") == make_handle("abc")
        assert make_handle("abc") != make_handle("abd")
        assert make_handle("abc").startswith("out_")

    def test_memory_missing_handle(self):
        with pytest.raises(SpillNotFoundError):
            MemorySpillStore().get("out_missing")

    def test_directory_store_round_trip(self, tmp_path):
        spill = DirectorySpillStore(tmp_path / "spill")
        handle = spill.put("full output")
        assert spill.get(handle) == "full output"
        assert (tmp_path / "spill" / f"{handle}.txt").exists()

    def test_directory_store_rejects_path_handles(self, tmp_path):
        spill = DirectorySpillStore(tmp_path)
        with pytest.raises(SpillNotFoundError):
            spill.get("../etc/passwd")

    def test_memory_discard(self):
        spill = MemorySpillStore()
        handle = spill.put("payload")
        spill.discard(handle)
        spill.discard(handle)
        assert len(spill) == 0
        with pytest.raises(SpillNotFoundError):
            spill.get(handle)

    def test_directory_discard(self, tmp_path):
        spill = DirectorySpillStore(tmp_path)
        handle = spill.put("payload")
        spill.discard(handle)
        spill.discard("../etc/passwd")
        assert not (tmp_path / f"{handle}.txt").exists()

    def test_from_config(self, tmp_path):
        assert isinstance(spill_store_from_config(TruncationConfig()), MemorySpillStore)
        cfg = TruncationConfig(storage_dir=str(tmp_path))
        assert isinstance(spill_store_from_config(cfg), DirectorySpillStore)


class TestSpillReaderTool:
    async def test_reads_window(self):
        spill = MemorySpillStore()
        handle = spill.put("\n".join(f"line {i}" for i in range(10)))
        tool = make_spill_reader_tool(spill)

        out = await tool.execute({"handle": handle, "offset": 2, "limit": 3})
        assert out.splitlines()[1:] == ["line 2", "line 3", "line 4"]
        assert "offset=5" in out

    async def test_unknown_handle(self):
        tool = make_spill_reader_tool(MemorySpillStore())
        out = await tool.execute({"handle": "out_nope"})
        assert out.startswith("Error: no spilled output")
