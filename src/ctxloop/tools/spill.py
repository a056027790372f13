"""A tool that lets the model page through outputs spilled by truncation."""

from __future__ import annotations

from pydantic import BaseModel, Field

from ctxloop.compaction.truncation import SpillNotFoundError, SpillStore
from ctxloop.tools.base import FunctionTool

SPILL_READER_NAME = "read_spilled_output"


class SpillReadArgs(BaseModel):
    """Arguments for ``read_spilled_output``."""

    handle: str = Field(description="Handle named in an [OUTPUT TRUNCATED] marker, e.g. out_3f2a...")
    offset: int = Field(default=0, ge=0, description="First line to return (0-based).")
    limit: int = Field(default=200, ge=1, le=2000, description="Maximum number of lines to return.")


def make_spill_reader_tool(spill: SpillStore, name: str = SPILL_READER_NAME) -> FunctionTool:
    """Build a tool that returns a line window of a spilled output."""

    def read(handle: str, offset: int = 0, limit: int = 200) -> str:
        try:
            content = spill.get(handle)
        except SpillNotFoundError:
            return f"Error: no spilled output with handle {handle!r}"
        lines = content.splitlines()
        window = lines[offset : offset + limit]
        end = offset + len(window)
        header = f"[{handle}: lines {offset + 1}-{end} of {len(lines)}]"
        if end < len(lines):
            header += f" (call again with offset={end} for more)"
        return header + "\n" + "\n".join(window)

    return FunctionTool(
        name,
        "Read part of a tool output that was truncated in the conversation. "
        "Pass the handle from the truncation marker and a line offset.",
        read,
        args_model=SpillReadArgs,
    )
