"""Tier 1: bound individual tool outputs at the moment they are created.

Oversized outputs are replaced by a preview that fits both the line and the
byte ceiling, followed by a visible marker naming an opaque handle. The full
payload is kept out of band in a ``SpillStore``, content-addressed by SHA-256
so identical outputs share one entry.
"""

from __future__ import annotations

import contextlib
import hashlib
from pathlib import Path
from typing import Protocol, runtime_checkable

import structlog
from pydantic import BaseModel

from ctxloop.models.config import TruncationConfig

HANDLE_PREFIX = "out_"


class SpillNotFoundError(KeyError):
    """Raised when a spill handle does not resolve to a stored payload."""

    def __init__(self, handle: str) -> None:
        super().__init__(f"Spilled output not found: {handle!r}")
        self.handle = handle


def make_handle(content: str) -> str:
    """Return the content-addressed handle for ``content``."""
    return HANDLE_PREFIX + hashlib.sha256(content.encode("utf-8")).hexdigest()[:24]


# ── Spill stores ───────────────────────────────────────────────────────────────


@runtime_checkable
class SpillStore(Protocol):
    """Out-of-band storage for full tool outputs."""

    def put(self, content: str) -> str: ...

    def get(self, handle: str) -> str: ...

    def discard(self, handle: str) -> None: ...


class MemorySpillStore:
    """Keeps spilled outputs in a dict until they are discarded."""

    def __init__(self) -> None:
        self._items: dict[str, str] = {}

    def put(self, content: str) -> str:
        handle = make_handle(content)
        self._items.setdefault(handle, content)
        return handle

    def get(self, handle: str) -> str:
        try:
            return self._items[handle]
        except KeyError:
            raise SpillNotFoundError(handle) from None

    def discard(self, handle: str) -> None:
        """Drop a payload. No-op for unknown handles."""
        self._items.pop(handle, None)

    def __len__(self) -> int:
        return len(self._items)


class DirectorySpillStore:
    """Writes spilled outputs as ``<handle>.txt`` files under a directory."""

    def __init__(self, directory: str | Path) -> None:
        self._dir = Path(directory).expanduser()
        self._dir.mkdir(parents=True, exist_ok=True)

    def _path(self, handle: str) -> Path:
        if not handle.startswith(HANDLE_PREFIX) or not handle[len(HANDLE_PREFIX) :].isalnum():
            raise SpillNotFoundError(handle)
        return self._dir / f"{handle}.txt"

    def put(self, content: str) -> str:
        handle = make_handle(content)
        path = self._path(handle)
        if not path.exists():
            path.write_text(content, encoding="utf-8")
        return handle

    def get(self, handle: str) -> str:
        path = self._path(handle)
        if not path.exists():
            raise SpillNotFoundError(handle)
        return path.read_text(encoding="utf-8")

    def discard(self, handle: str) -> None:
        with contextlib.suppress(SpillNotFoundError):
            self._path(handle).unlink(missing_ok=True)


def spill_store_from_config(config: TruncationConfig) -> SpillStore:
    """Directory store when ``storage_dir`` is set, in-memory otherwise."""
    if config.storage_dir:
        return DirectorySpillStore(config.storage_dir)
    return MemorySpillStore()


# ── Truncator ──────────────────────────────────────────────────────────────────


class TruncatedOutput(BaseModel):
    """What goes into the transcript for one tool output."""

    content: str
    truncated: bool = False
    handle: str | None = None
    original_lines: int = 0
    original_bytes: int = 0


class OutputTruncator:
    """
    Deterministic line/byte ceiling for tool outputs.

    Example::

        truncator = OutputTruncator(TruncationConfig(max_lines=100), MemorySpillStore())
        result = truncator.truncate(huge_listing, tool_name="bash")
        if result.truncated:
            full = truncator.spill.get(result.handle)
    """

    def __init__(
        self,
        config: TruncationConfig,
        spill: SpillStore | None = None,
        *,
        reader_tool_name: str | None = None,
    ) -> None:
        self._config = config
        self.spill = spill if spill is not None else spill_store_from_config(config)
        self._reader_tool_name = reader_tool_name
        self._logger = structlog.get_logger("ctxloop.truncation")

    def truncate(self, output: str, tool_name: str = "") -> TruncatedOutput:
        """
        Bound ``output`` to the configured ceilings.

        Args:
            output: The raw tool output.
            tool_name: Name of the producing tool, for logging only.

        Returns:
            TruncatedOutput. ``content`` is ``output`` unchanged when it fits.
        """
        lines = output.splitlines(keepends=True)
        size = len(output.encode("utf-8"))
        if len(lines) <= self._config.max_lines and size <= self._config.max_bytes:
            return TruncatedOutput(content=output, original_lines=len(lines), original_bytes=size)

        handle = self.spill.put(output)
        preview, shown_lines = self._preview(lines)
        marker = (
            f"[OUTPUT TRUNCATED: showing {shown_lines} of {len(lines)} lines "
            f"({len(preview.encode('utf-8'))} of {size} bytes). "
            f"Full output stored as {handle}."
        )
        if self._reader_tool_name:
            marker = marker[:-1] + f"; call {self._reader_tool_name} with this handle to read more."
        marker += "]"

        self._logger.info(
            "tool_output_truncated",
            tool=tool_name,
            handle=handle,
            original_lines=len(lines),
            original_bytes=size,
        )
        sep = "" if preview.endswith("\n") or not preview else "\n"
        return TruncatedOutput(
            content=f"{preview}{sep}\n{marker}",
            truncated=True,
            handle=handle,
            original_lines=len(lines),
            original_bytes=size,
        )

    def _preview(self, lines: list[str]) -> tuple[str, int]:
        """Take whole lines from the top until either ceiling would be crossed."""
        budget = self._config.max_bytes
        kept: list[str] = []
        used = 0
        for line in lines[: self._config.max_lines]:
            n = len(line.encode("utf-8"))
            if used + n > budget:
                break
            kept.append(line)
            used += n

        if not kept and lines:
            # A single line larger than the byte ceiling: cut it on a character boundary.
            head = lines[0].encode("utf-8")[:budget].decode("utf-8", errors="ignore")
            return head, 1
        return "".join(kept), len(kept)
