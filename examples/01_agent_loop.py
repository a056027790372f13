"""
Example 01: Agent Loop with Tools
=================================

Demonstrates the basic ctxloop flow:
- Registering tools in a ToolRegistry
- Running AgentLoop.run() against a session
- Parallel tool calls, a failing tool, and malformed arguments
- Persisting the session to SQLite and reading the history back

The LLM is a scripted stand-in so the example runs without an API key.
Pass ``--live`` to use LiteLLMClient instead (requires ``ctxloop[litellm]``
and a provider key such as ANTHROPIC_API_KEY).

Run:
    uv run python examples/01_agent_loop.py
"""

import asyncio
import sys
from pathlib import Path
from typing import Any

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from pydantic import BaseModel  # noqa: E402

from ctxloop import (  # noqa: E402
    AgentLoop,
    FunctionTool,
    GenerateOptions,
    LLMResponse,
    LoopConfig,
    MessageStore,
    SQLitePersistence,
    StoreConfig,
    TokenUsage,
    ToolCallRequest,
    ToolRegistry,
)

# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class ReadFileArgs(BaseModel):
    path: str


def read_file(path: str) -> str:
    return Path(path).read_text(encoding="utf-8")


def word_count(text: str) -> str:
    return str(len(text.split()))


# ---------------------------------------------------------------------------
# Stub: replace with LiteLLMClient() for real calls
# ---------------------------------------------------------------------------


class ScriptedLLM:
    """Replays a fixed conversation: two tool rounds, then an answer."""

    def __init__(self) -> None:
        self._step = 0

    async def generate(self, messages: list[dict[str, Any]], options: GenerateOptions) -> LLMResponse:
        self._step += 1
        usage = TokenUsage(prompt_tokens=sum(len(str(m.get("content") or "")) for m in messages) // 4)
        if self._step == 1:
            return LLMResponse(
                tool_calls=[
                    ToolCallRequest(id="call_1", name="read_file", arguments=f'{{"path": "{__file__}"}}'),
                    ToolCallRequest(id="call_2", name="word_count", arguments='{"text": "one two three"}'),
                    ToolCallRequest(id="call_3", name="word_count", arguments='{"text": '),
                ],
                usage=usage,
            )
        if self._step == 2:
            return LLMResponse(
                tool_calls=[ToolCallRequest(id="call_4", name="delete_everything", arguments="{}")],
                usage=usage,
            )
        return LLMResponse(content="This file is the ctxloop quick-start example.", usage=usage)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


async def main() -> None:
    print("=== ctxloop Agent Loop Example ===\n")

    if "--live" in sys.argv:
        from ctxloop.llm import LiteLLMClient

        llm: Any = LiteLLMClient()
    else:
        llm = ScriptedLLM()

    registry = ToolRegistry(
        [
            FunctionTool("read_file", "Read a UTF-8 text file.", read_file, args_model=ReadFileArgs),
            FunctionTool("word_count", "Count the words in a string.", word_count),
        ]
    )

    config = LoopConfig(store=StoreConfig(db_path="/tmp/ctxloop_example_01.db"))
    persistence = SQLitePersistence(config.store)
    await persistence.initialize()
    try:
        loop = AgentLoop(llm, registry, config=config, store=MessageStore(persistence))
        result = await loop.run(
            "sess_example_01",
            "What is examples/01_agent_loop.py about?",
            user_id="demo",
            system_prompt="You are a concise code assistant.",
        )

        print(f"Status     : {result.status}")
        print(f"Iterations : {result.iterations}")
        print(f"Answer     : {result.content or result.error}\n")

        print("History:")
        for msg in await loop.history("sess_example_01"):
            preview = msg.content.replace("\n", " ")[:70]
            print(f"  [{msg.role}:{msg.kind}] {preview}")
    finally:
        await persistence.close()

    print("\nHistory is persisted in /tmp/ctxloop_example_01.db")


if __name__ == "__main__":
    asyncio.run(main())
