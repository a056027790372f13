"""Shared fixtures for ctxloop tests."""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Callable, Sequence
from typing import Any

import pytest
import pytest_asyncio

from ctxloop.events.bus import EventBus, LoopEvent
from ctxloop.llm.client import GenerateOptions
from ctxloop.models.config import LoopConfig, StoreConfig
from ctxloop.models.message import LLMResponse, Message, TokenUsage, ToolCallRequest
from ctxloop.store.memory import MessageStore
from ctxloop.store.persistence import InMemoryPersistence
from ctxloop.tokens.estimator import TokenEstimator
from ctxloop.tools.base import FunctionTool
from ctxloop.tools.registry import ToolRegistry

SESSION_ID = "sess_TEST01"


@pytest.fixture
def config(tmp_path):
    """LoopConfig with a temp database path."""
    return LoopConfig(store=StoreConfig(db_path=str(tmp_path / "test.db")))


@pytest.fixture
def estimator():
    return TokenEstimator()


@pytest.fixture
def persistence():
    return InMemoryPersistence()


@pytest.fixture
def store(persistence):
    """MessageStore backed by dict persistence."""
    return MessageStore(persistence)


@pytest_asyncio.fixture
async def session_id(store):
    """A session opened in the store."""
    await store.open_session(SESSION_ID, user_id="user_test")
    return SESSION_ID


@pytest.fixture
def event_bus():
    """EventBus with a .collected list for asserting events."""
    bus = EventBus()
    collected: list[tuple[LoopEvent, dict[str, Any]]] = []

    def _collect(event: LoopEvent, payload: dict[str, Any]) -> None:
        collected.append((event, payload))

    bus.subscribe_all(_collect)
    bus.collected = collected  # type: ignore[attr-defined]
    return bus


def events_of(bus: EventBus, event: LoopEvent) -> list[dict[str, Any]]:
    return [payload for ev, payload in bus.collected if ev == event]  # type: ignore[attr-defined]


# ── Message helpers ────────────────────────────────────────────────────────────

_ids = itertools.count(1)


def make_message(
    session_id: str = SESSION_ID,
    role: str = "user",
    content: str = "hello",
    *,
    kind: str = "text",
    msg_id: str | None = None,
    turn_index: int | None = None,
    tool_call_id: str | None = None,
    tool_name: str | None = None,
    tool_calls: list[ToolCallRequest] | None = None,
) -> Message:
    """Helper to create a test Message."""
    return Message(
        id=msg_id or f"msg_{next(_ids):06d}",
        session_id=session_id,
        role=role,
        content=content,
        kind=kind,
        turn_index=turn_index,
        tool_call_id=tool_call_id,
        tool_name=tool_name,
        tool_calls=tool_calls or [],
    )


def add_tool_turn(
    store: MessageStore,
    session_id: str,
    *,
    user_text: str = "do the thing",
    tool_name: str = "read_file",
    output: str = "x" * 400,
    answer: str = "done",
) -> int:
    """Append one full turn: user, tool call, tool result, final answer."""
    turn = store.begin_turn(session_id)
    store.append(session_id, make_message(session_id, "user", user_text))
    call_id = f"call_{next(_ids):06d}"
    store.append(
        session_id,
        make_message(
            session_id,
            "assistant",
            "",
            kind="tool_call",
            tool_calls=[ToolCallRequest(id=call_id, name=tool_name, arguments='{"path": "a.py"}')],
        ),
    )
    store.append(
        session_id,
        make_message(
            session_id,
            "tool",
            output,
            kind="tool_result",
            tool_call_id=call_id,
            tool_name=tool_name,
        ),
    )
    store.append(session_id, make_message(session_id, "assistant", answer))
    return turn


# ── Scripted LLM ───────────────────────────────────────────────────────────────


def reply(content: str = "", *, prompt_tokens: int = 100, output_tokens: int = 10) -> LLMResponse:
    """A final-answer response."""
    return LLMResponse(
        content=content,
        usage=TokenUsage(prompt_tokens=prompt_tokens, output_tokens=output_tokens),
        finish_reason="stop",
    )


def call_tools(*calls: tuple[str, str], prompt_tokens: int = 100, output_tokens: int = 10) -> LLMResponse:
    """A response requesting ``(name, arguments)`` tool calls."""
    return LLMResponse(
        tool_calls=[
            ToolCallRequest(id=f"call_{next(_ids):06d}", name=name, arguments=args)
            for name, args in calls
        ],
        usage=TokenUsage(prompt_tokens=prompt_tokens, output_tokens=output_tokens),
        finish_reason="tool_calls",
    )


class ScriptedLLM:
    """
    LLMClient fake that replays a script of responses.

    Items may be an ``LLMResponse``, ``None`` (provider failure), an exception
    instance (raised), or a callable receiving ``(messages, options)``. Once the
    script is exhausted ``default`` is returned, if set.
    """

    def __init__(
        self,
        script: Sequence[Any] = (),
        *,
        default: Any = None,
        summary: str | None = "Summary of earlier work.",
    ) -> None:
        self._script = list(script)
        self._default = default
        self._summary = summary
        self.calls: list[tuple[list[dict[str, Any]], GenerateOptions]] = []
        self.summary_calls: list[str] = []

    async def generate(
        self,
        messages: list[dict[str, Any]],
        options: GenerateOptions,
    ) -> LLMResponse | None:
        if options.tools is None and messages and "<conversation>" in str(messages[-1]["content"]):
            self.summary_calls.append(messages[-1]["content"])
            return None if self._summary is None else LLMResponse(content=self._summary)

        self.calls.append((messages, options))
        item = self._script.pop(0) if self._script else self._default
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            item = item(messages, options)
            if asyncio.iscoroutine(item):
                item = await item
        return item


class StaticSummarizer:
    """Summarizer fake returning a fixed text or raising."""

    def __init__(self, text: str = "Earlier: read files and fixed a bug.", error: Exception | None = None):
        self.text = text
        self.error = error
        self.calls: list[tuple[str, str | None]] = []

    async def summarize(self, text_block: str, previous_summary: str | None = None) -> str:
        self.calls.append((text_block, previous_summary))
        if self.error is not None:
            raise self.error
        return self.text


class HangingSummarizer:
    """Summarizer fake that never returns until cancelled."""

    def __init__(self, on_start: Callable[[], None] | None = None):
        self.on_start = on_start
        self.cancelled = False

    async def summarize(self, text_block: str, previous_summary: str | None = None) -> str:
        if self.on_start is not None:
            self.on_start()
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return "never"


# ── Tools ──────────────────────────────────────────────────────────────────────


def make_tool(name: str, func: Callable[..., Any], description: str = "test tool") -> FunctionTool:
    return FunctionTool(name, description, func)


@pytest.fixture
def registry():
    """ToolRegistry with an echo tool and a failing tool."""

    def echo(text: str = "") -> str:
        return f"echo: {text}"

    def boom() -> str:
        raise RuntimeError("kaboom")

    return ToolRegistry([make_tool("echo", echo), make_tool("boom", boom)])
