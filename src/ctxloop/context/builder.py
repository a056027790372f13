"""Renders session history into the message list sent to the LLM."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from ctxloop.models.message import Message
from ctxloop.tokens.estimator import TokenEstimator


@dataclass
class BuiltContext:
    """The assembled request history ready for an LLM call."""

    messages: list[dict[str, Any]]
    token_estimate: int
    has_summary: bool
    dropped_orphans: int = 0


class ContextBuilder:
    """
    Converts stored messages into function-calling chat messages.

    Invariants:
    1. The system prompt, when given, is always the first message.
    2. Summary messages are rendered as system messages in place.
    3. Assistant ``tool_call`` messages carry their ``tool_calls`` list.
    4. Every ``tool`` message answers a call issued earlier in the list;
       a tool result whose call is not present is dropped and logged.
    """

    def __init__(self, token_estimator: TokenEstimator) -> None:
        self._estimator = token_estimator
        self._logger = structlog.get_logger("ctxloop.context_builder")

    def build(self, history: Sequence[Message], system_prompt: str | None = None) -> BuiltContext:
        out: list[dict[str, Any]] = []
        estimate = 0
        if system_prompt:
            out.append({"role": "system", "content": system_prompt})
            estimate += self._estimator.estimate(system_prompt)

        issued: set[str] = set()
        orphans = 0
        has_summary = False
        for msg in history:
            if msg.kind == "tool_result":
                if msg.tool_call_id not in issued:
                    orphans += 1
                    continue
                out.append(
                    {"role": "tool", "tool_call_id": msg.tool_call_id, "content": msg.content}
                )
            elif msg.kind == "tool_call":
                issued.update(c.id for c in msg.tool_calls)
                out.append(
                    {
                        "role": "assistant",
                        "content": msg.content or None,
                        "tool_calls": [
                            {
                                "id": c.id,
                                "type": "function",
                                "function": {"name": c.name, "arguments": c.arguments},
                            }
                            for c in msg.tool_calls
                        ],
                    }
                )
            elif msg.is_summary:
                has_summary = True
                out.append({"role": "system", "content": msg.content})
            else:
                out.append({"role": msg.role, "content": msg.content})
            estimate += self._estimator.estimate_message(msg)

        if orphans:
            self._logger.warning("orphan_tool_results_dropped", count=orphans)
        return BuiltContext(
            messages=out,
            token_estimate=estimate,
            has_summary=has_summary,
            dropped_orphans=orphans,
        )
