"""Tool capability interface and a function-backed implementation."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ValidationError

# ── Exceptions ─────────────────────────────────────────────────────────────────


class ToolError(Exception):
    """Base class for tool errors."""


class ToolAlreadyRegisteredError(ToolError):
    """Raised when registering a tool name that is already taken."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Tool already registered: {name!r}")
        self.name = name


class ToolNotFoundError(ToolError):
    """Raised when looking up a tool name that is not registered."""

    def __init__(self, name: str) -> None:
        super().__init__(f'Tool "{name}" not found')
        self.name = name


class ToolArgumentError(ToolError):
    """Raised when arguments do not satisfy a tool's parameter model."""


# ── Capability interface ───────────────────────────────────────────────────────


@runtime_checkable
class Tool(Protocol):
    """
    Anything the model can call.

    ``parameter_schema`` is a JSON Schema object describing the arguments.
    ``execute`` receives the parsed arguments and returns text for the
    transcript; raising marks the call as failed.
    """

    @property
    def name(self) -> str: ...

    @property
    def description(self) -> str: ...

    @property
    def parameter_schema(self) -> dict[str, Any]: ...

    async def execute(self, args: dict[str, Any]) -> str: ...


ToolFunc = Callable[..., str | Awaitable[str]]


class FunctionTool:
    """
    A ``Tool`` backed by a plain function.

    When ``args_model`` is given, its JSON Schema is published to the model
    and incoming arguments are validated into it before the call; the function
    then receives the model's fields as keyword arguments. Synchronous
    functions run in a worker thread so they never block the event loop.

    Example::

        class ReadArgs(BaseModel):
            path: str

        def read_file(path: str) -> str:
            return Path(path).read_text()

        tool = FunctionTool("read_file", "Read a UTF-8 file.", read_file, args_model=ReadArgs)
    """

    def __init__(
        self,
        name: str,
        description: str,
        func: ToolFunc,
        *,
        args_model: type[BaseModel] | None = None,
        schema: dict[str, Any] | None = None,
    ) -> None:
        self._name = name
        self._description = description
        self._func = func
        self._args_model = args_model
        if schema is not None:
            self._schema = schema
        elif args_model is not None:
            self._schema = args_model.model_json_schema()
        else:
            self._schema = {"type": "object", "properties": {}}

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def parameter_schema(self) -> dict[str, Any]:
        return self._schema

    async def execute(self, args: dict[str, Any]) -> str:
        """
        Validate ``args`` (when an args model is set) and call the function.

        Raises:
            ToolArgumentError: If validation against ``args_model`` fails.
        """
        kwargs = args
        if self._args_model is not None:
            try:
                kwargs = self._args_model.model_validate(args).model_dump()
            except ValidationError as exc:
                raise ToolArgumentError(f"Invalid arguments for {self._name}: {exc}") from exc

        if inspect.iscoroutinefunction(self._func):
            result = await self._func(**kwargs)
        else:
            result = await asyncio.to_thread(self._func, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        return result if isinstance(result, str) else str(result)

    def __repr__(self) -> str:
        return f"FunctionTool(name={self._name!r})"
