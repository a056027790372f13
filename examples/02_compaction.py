"""
Example 02: Staying Within the Context Budget
=============================================

Demonstrates what happens as a session outgrows its context window:
- A deliberately tiny context limit so compaction triggers quickly
- Large tool outputs truncated at creation, with the full text spilled
- Stale tool outputs pruned, then old turns summarized
- Subscribing to the EventBus for compaction notifications

The LLM is a scripted stand-in, including for summarization, so the example
runs without an API key.

Run:
    uv run python examples/02_compaction.py
"""

import asyncio
import sys
from pathlib import Path
from typing import Any

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from ctxloop import (  # noqa: E402
    AgentLoop,
    CompactionConfig,
    FunctionTool,
    GenerateOptions,
    LLMResponse,
    LoopConfig,
    LoopEvent,
    TokenUsage,
    ToolCallRequest,
    ToolRegistry,
    TruncationConfig,
)


def list_directory() -> str:
    return "".join(f"src/module_{i:04d}.py\n" for i in range(3_000))


class ScriptedLLM:
    """Lists a directory once per query, then answers. Summaries are canned."""

    def __init__(self) -> None:
        self._calls = 0

    async def generate(self, messages: list[dict[str, Any]], options: GenerateOptions) -> LLMResponse:
        if options.tools is None:
            return LLMResponse(content="The user explored a large repository, one directory at a time.")
        self._calls += 1
        usage = TokenUsage(prompt_tokens=sum(len(str(m.get("content") or "")) for m in messages) // 4)
        if messages[-1]["role"] == "user":
            call = ToolCallRequest(id=f"call_{self._calls}", name="list_directory", arguments="{}")
            return LLMResponse(tool_calls=[call], usage=usage)
        return LLMResponse(content=f"Listed the directory (call {self._calls}).", usage=usage)


async def main() -> None:
    print("=== ctxloop Compaction Example ===\n")

    config = LoopConfig(
        context_limit=12_000,
        model_output_limit=1_000,
        compaction=CompactionConfig(prune_protect_tokens=2_000, prune_minimum_tokens=500),
        truncation=TruncationConfig(max_lines=400),
    )
    loop = AgentLoop(
        ScriptedLLM(),
        ToolRegistry([FunctionTool("list_directory", "List the repository.", list_directory)]),
        config=config,
    )

    def on_event(event: LoopEvent, payload: dict[str, Any]) -> None:
        if event == LoopEvent.OUTPUT_TRUNCATED:
            print(f"  [truncated] {payload['original_bytes']:,} bytes spilled as {payload['handle']}")
        elif event == LoopEvent.PRUNE_COMPLETED:
            print(f"  [pruned]    {payload['pruned_count']} tool outputs, ~{payload['pruned_tokens']:,} tokens")
        elif event == LoopEvent.COMPACTION_COMPLETED:
            print(
                f"  [compacted] {payload['tokens_before']:,} -> {payload['tokens_after']:,} tokens"
                f" (summarized={payload['summarized']})"
            )

    loop.event_bus.subscribe_all(on_event)

    for i in range(8):
        result = await loop.run("sess_example_02", f"Look at the repository again ({i + 1}).")
        print(f"Turn {i + 1}: {result.status}, {result.iterations} LLM calls")

    history = await loop.history("sess_example_02")
    summaries = [m for m in history if m.is_summary]
    print(f"\nActive messages : {len(history)}")
    print(f"Archived        : {len(loop.store.archived('sess_example_02'))}")
    if summaries:
        print(f"\nLatest summary:\n{summaries[-1].content}")


if __name__ == "__main__":
    asyncio.run(main())
