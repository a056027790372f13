"""In-process pub/sub event bus for agent loop lifecycle events."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

import structlog

Handler = Callable[["LoopEvent", dict[str, Any]], None | Awaitable[None]]


class LoopEvent(StrEnum):
    """All event types published by ctxloop components.

    Typed payload definitions for each event live in
    :mod:`ctxloop.events.payloads`.

    **Payload schemas by event:**

    ``SESSION_HYDRATED``
        ``session_id: str``, ``message_count: int``

    ``SESSION_DELETED``
        ``session_id: str``

    ``MESSAGE_APPENDED``
        ``session_id: str``, ``message_id: str``, ``role: str``, ``kind: str``

    ``LOOP_ITERATION``
        ``session_id: str``, ``iteration: int``, ``projected_tokens: int``

    ``TOOLS_DISPATCHED``
        ``session_id: str``, ``tool_names: list[str]``, ``error_count: int``

    ``OUTPUT_TRUNCATED``
        ``tool_name: str``, ``handle: str``, ``original_bytes: int``

    ``LOOP_COMPLETED`` / ``LOOP_FAILED``
        The ``model_dump()`` of :class:`~ctxloop.models.message.LoopResult`.

    ``COMPACTION_TRIGGERED``
        ``session_id: str``, ``tokens: int``

    ``COMPACTION_COMPLETED``
        The ``model_dump()`` of :class:`~ctxloop.models.message.CompactionResult`.

    ``COMPACTION_FAILED``
        ``session_id: str``, ``error: str``

    ``PRUNE_COMPLETED``
        ``session_id: str``, ``pruned_count: int``, ``pruned_tokens: int``
    """

    # Session lifecycle
    SESSION_HYDRATED = "session.hydrated"
    SESSION_DELETED = "session.deleted"

    # Message lifecycle
    MESSAGE_APPENDED = "message.appended"

    # Loop lifecycle
    LOOP_ITERATION = "loop.iteration"
    TOOLS_DISPATCHED = "tools.dispatched"
    OUTPUT_TRUNCATED = "output.truncated"
    LOOP_COMPLETED = "loop.completed"
    LOOP_FAILED = "loop.failed"

    # Compaction lifecycle
    COMPACTION_TRIGGERED = "compaction.triggered"
    COMPACTION_COMPLETED = "compaction.completed"
    COMPACTION_FAILED = "compaction.failed"
    PRUNE_COMPLETED = "prune.completed"


class EventBus:
    """
    Simple in-process pub/sub event bus.

    Design decisions:
    - Sync handlers are called inline within ``publish()``.
    - Async handlers are scheduled via ``asyncio.create_task()`` (fire-and-forget).
    - Handler exceptions are logged but never propagate to the publisher.
    - There is no global bus. Each ``AgentLoop`` creates its own unless one is
      injected; share one instance across loops for cross-session monitoring.

    Example::

        bus = EventBus()

        def on_compaction(event, payload):
            print(f"Compacted {payload['compacted_message_count']} messages")

        bus.subscribe(LoopEvent.COMPACTION_COMPLETED, on_compaction)
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self._handlers: dict[LoopEvent, list[Handler]] = {}
        self._global_handlers: list[Handler] = []
        self._pending: set[asyncio.Task[Any]] = set()
        self._logger = logger or structlog.get_logger("ctxloop.events")

    def subscribe(self, event: LoopEvent, handler: Handler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event: The event type to listen for.
            handler: Callable accepting ``(event, payload)``. May be sync or async.
        """
        self._handlers.setdefault(event, []).append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        """Register a handler for ALL event types."""
        self._global_handlers.append(handler)

    def unsubscribe(self, event: LoopEvent, handler: Handler) -> None:
        """Remove a previously registered handler. No-op if not found."""
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event: LoopEvent, payload: dict[str, Any]) -> None:
        """
        Publish an event to all registered handlers.

        Sync handlers are called immediately in registration order.
        Async handlers are scheduled as background tasks (non-blocking).
        Exceptions from any handler are logged and swallowed.

        Args:
            event: The event type to publish.
            payload: Event-specific data dictionary.
        """
        all_handlers = list(self._handlers.get(event, [])) + list(self._global_handlers)
        for handler in all_handlers:
            try:
                result = handler(event, payload)
                if asyncio.iscoroutine(result):
                    self._schedule(result, event, handler)
            except Exception as exc:
                self._log_handler_error(event, handler, exc)

    def _schedule(self, coro: Any, event: LoopEvent, handler: Handler) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No running event loop; the coroutine can never run.
            coro.close()
            return
        task = loop.create_task(coro)
        self._pending.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._pending.discard(t)
            if not t.cancelled() and t.exception() is not None:
                self._log_handler_error(event, handler, t.exception())

        task.add_done_callback(_done)

    def _log_handler_error(self, event: LoopEvent, handler: Handler, exc: BaseException | None) -> None:
        self._logger.error(
            "event_handler_error",
            event=str(event),
            handler=getattr(handler, "__qualname__", repr(handler)),
            error=str(exc),
        )
