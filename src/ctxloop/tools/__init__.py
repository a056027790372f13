"""Tool interface, registry, and dispatcher."""

from ctxloop.tools.base import (
    FunctionTool,
    Tool,
    ToolAlreadyRegisteredError,
    ToolArgumentError,
    ToolError,
    ToolNotFoundError,
)
from ctxloop.tools.dispatcher import MALFORMED_ARGUMENTS, ToolDispatcher, aborted_result
from ctxloop.tools.registry import ToolRegistry
from ctxloop.tools.spill import SPILL_READER_NAME, make_spill_reader_tool

__all__ = [
    "MALFORMED_ARGUMENTS",
    "SPILL_READER_NAME",
    "FunctionTool",
    "Tool",
    "ToolAlreadyRegisteredError",
    "ToolArgumentError",
    "ToolDispatcher",
    "ToolError",
    "ToolNotFoundError",
    "ToolRegistry",
    "aborted_result",
    "make_spill_reader_tool",
]
