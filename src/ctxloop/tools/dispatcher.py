"""Concurrent, failure-isolated execution of one batch of tool calls."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence
from typing import Any

import structlog

from ctxloop.compaction.truncation import OutputTruncator
from ctxloop.events.bus import EventBus, LoopEvent
from ctxloop.models.message import ToolCallRequest, ToolExecutionResult
from ctxloop.tools.registry import ToolRegistry

MALFORMED_ARGUMENTS = (
    "Error: Failed to parse tool arguments. The JSON was malformed. "
    "Please try again with properly formatted parameters."
)
ABORTED = "Error: Tool call aborted before it completed."

_MAX_ECHOED_ARGUMENT_CHARS = 200


def aborted_result(request: ToolCallRequest) -> ToolExecutionResult:
    """Result recorded for a call that was cancelled by an abort."""
    return ToolExecutionResult(
        tool_call_id=request.id,
        tool_name=request.name,
        output=ABORTED,
        error="aborted",
    )


class ToolDispatcher:
    """
    Runs every tool call from one LLM turn at the same time.

    - One result per request, in request order, whatever the completion order.
    - Malformed JSON (or a non-object) never reaches the tool.
    - An unknown tool, a raised exception, or a timeout yields an error result
      for that call only; siblings are unaffected.
    - Outputs pass through the truncator before they are returned.
    - Cancelling ``dispatch()`` cancels every call still in flight.

    Example::

        dispatcher = ToolDispatcher(registry, truncator, tool_timeout=60)
        results = await dispatcher.dispatch(response.tool_calls)
    """

    def __init__(
        self,
        registry: ToolRegistry,
        truncator: OutputTruncator | None = None,
        *,
        tool_timeout: float | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._registry = registry
        self._truncator = truncator
        self._timeout = tool_timeout
        self._event_bus = event_bus
        self._logger = structlog.get_logger("ctxloop.dispatcher")

    async def dispatch(
        self,
        requests: Sequence[ToolCallRequest],
        *,
        abort: asyncio.Event | None = None,
    ) -> list[ToolExecutionResult]:
        """
        Execute ``requests`` concurrently.

        Args:
            requests: Tool calls from a single assistant message.
            abort: When set while calls are running, the unfinished calls are
                cancelled and receive an "aborted" error result. Calls that
                already finished keep their real result.

        Returns:
            Exactly ``len(requests)`` results, aligned with ``requests``.
        """
        if not requests:
            return []
        if abort is None:
            return list(await asyncio.gather(*(self._run_one(r) for r in requests)))

        tasks = [asyncio.ensure_future(self._run_one(r)) for r in requests]
        waiter = asyncio.ensure_future(abort.wait())
        try:
            pending: set[asyncio.Future[Any]] = set(tasks)
            while pending and not waiter.done():
                _, pending = await asyncio.wait(
                    pending | {waiter}, return_when=asyncio.FIRST_COMPLETED
                )
                pending.discard(waiter)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise
        finally:
            waiter.cancel()

        unfinished = [t for t in tasks if not t.done()]
        for task in unfinished:
            task.cancel()
        if unfinished:
            await asyncio.gather(*unfinished, return_exceptions=True)
            self._logger.info("tool_calls_aborted", count=len(unfinished))

        return [
            task.result() if task.done() and not task.cancelled() else aborted_result(request)
            for task, request in zip(tasks, requests, strict=True)
        ]

    async def _run_one(self, request: ToolCallRequest) -> ToolExecutionResult:
        args, parse_error = _parse_arguments(request.arguments)
        if parse_error is not None:
            self._logger.warning(
                "tool_arguments_malformed",
                tool=request.name,
                tool_call_id=request.id,
                error=parse_error,
            )
            return ToolExecutionResult(
                tool_call_id=request.id,
                tool_name=request.name,
                output=MALFORMED_ARGUMENTS,
                error=f"{parse_error}\nReceived: {_clip(request.arguments)}",
            )

        tool = self._registry.get(request.name)
        if tool is None:
            message = f'Tool "{request.name}" not found'
            self._logger.warning("tool_not_found", tool=request.name, tool_call_id=request.id)
            return ToolExecutionResult(
                tool_call_id=request.id,
                tool_name=request.name,
                output=f"Error: {message}",
                error=message,
            )

        try:
            async with asyncio.timeout(self._timeout):
                output = await tool.execute(args)
        except TimeoutError:
            message = f'Tool "{request.name}" timed out after {self._timeout}s'
            self._logger.warning("tool_timeout", tool=request.name, tool_call_id=request.id)
            return ToolExecutionResult(
                tool_call_id=request.id,
                tool_name=request.name,
                output=f"Error: {message}",
                error=message,
            )
        except Exception as exc:
            self._logger.warning(
                "tool_execution_failed",
                tool=request.name,
                tool_call_id=request.id,
                error=str(exc),
            )
            return ToolExecutionResult(
                tool_call_id=request.id,
                tool_name=request.name,
                output=f'Error executing tool "{request.name}": {exc}',
                error=str(exc) or type(exc).__name__,
            )

        return self._finish(request, output if isinstance(output, str) else str(output))

    def _finish(self, request: ToolCallRequest, output: str) -> ToolExecutionResult:
        if self._truncator is None:
            return ToolExecutionResult(tool_call_id=request.id, tool_name=request.name, output=output)

        bounded = self._truncator.truncate(output, request.name)
        if bounded.truncated and self._event_bus is not None:
            self._event_bus.publish(
                LoopEvent.OUTPUT_TRUNCATED,
                {
                    "tool_name": request.name,
                    "handle": bounded.handle,
                    "original_bytes": bounded.original_bytes,
                },
            )
        return ToolExecutionResult(
            tool_call_id=request.id,
            tool_name=request.name,
            output=bounded.content,
            truncated=bounded.truncated,
            spill_handle=bounded.handle,
        )


def _parse_arguments(raw: str) -> tuple[dict[str, Any], str | None]:
    if not raw or not raw.strip():
        return {}, None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        return {}, f"Invalid JSON in tool parameters: {exc}"
    if not isinstance(parsed, dict):
        return {}, f"Tool parameters must be a JSON object, got {type(parsed).__name__}"
    return parsed, None


def _clip(text: str) -> str:
    if len(text) <= _MAX_ECHOED_ARGUMENT_CHARS:
        return text
    return text[:_MAX_ECHOED_ARGUMENT_CHARS] + "..."
