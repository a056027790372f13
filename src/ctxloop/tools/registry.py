"""Explicitly constructed registry of tools available to a loop."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from typing import Any

import structlog

from ctxloop.tools.base import Tool, ToolAlreadyRegisteredError, ToolNotFoundError


class ToolRegistry:
    """
    Name-keyed set of tools.

    There is no global registry: build one per loop (or per test) and pass it
    in, so two sessions can offer different tools without interfering.

    A registry may be layered over a ``parent``: lookups fall through to the
    parent, registrations stay in the child, and a child tool shadows a parent
    tool of the same name. A loop uses this to add its own tools to a registry
    shared with other loops.

    Example::

        registry = ToolRegistry([read_file_tool, bash_tool])
        registry.register(search_tool)
        schemas = registry.schemas()
    """

    def __init__(
        self,
        tools: Iterable[Tool] | None = None,
        *,
        parent: ToolRegistry | None = None,
    ) -> None:
        self._tools: dict[str, Tool] = {}
        self._parent = parent
        self._logger = structlog.get_logger("ctxloop.tools")
        for tool in tools or ():
            self.register(tool)

    @property
    def parent(self) -> ToolRegistry | None:
        return self._parent

    def register(self, tool: Tool, *, replace: bool = False) -> None:
        """
        Add a tool.

        Args:
            tool: The tool to add.
            replace: Overwrite an existing tool with the same name.

        Raises:
            ToolAlreadyRegisteredError: If the name is taken in this registry
                and ``replace`` is False. Names in the parent may be shadowed.
        """
        if tool.name in self._tools and not replace:
            raise ToolAlreadyRegisteredError(tool.name)
        self._tools[tool.name] = tool
        self._logger.debug("tool_registered", tool=tool.name)

    def unregister(self, name: str) -> None:
        """Remove a tool from this registry. No-op if not registered here."""
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        tool = self._tools.get(name)
        if tool is None and self._parent is not None:
            return self._parent.get(name)
        return tool

    def require(self, name: str) -> Tool:
        """
        Return a tool by name.

        Raises:
            ToolNotFoundError: If no tool has that name.
        """
        tool = self.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def names(self) -> list[str]:
        return [tool.name for tool in self._merged()]

    def schemas(self, names: Iterable[str] | None = None) -> list[dict[str, Any]]:
        """
        Tool descriptions in function-calling format.

        Args:
            names: Restrict to these tools. Unknown names are ignored.
                None = every registered tool.
        """
        if names is None:
            selected: Iterable[Tool] = self._merged()
        else:
            selected = [tool for tool in map(self.get, names) if tool is not None]
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameter_schema,
                },
            }
            for tool in selected
        ]

    def _merged(self) -> list[Tool]:
        # Parent order first, shadowed in place; then tools only this layer has.
        inherited = list(self._parent._merged()) if self._parent is not None else []
        merged = [self._tools.get(tool.name, tool) for tool in inherited]
        seen = {tool.name for tool in inherited}
        merged.extend(tool for name, tool in self._tools.items() if name not in seen)
        return merged

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None

    def __len__(self) -> int:
        return len(self._merged())

    def __iter__(self) -> Iterator[Tool]:
        return iter(self._merged())
