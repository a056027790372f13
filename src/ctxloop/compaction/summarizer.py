"""Summarizer contract and the LLM-backed implementation used for tier 3."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import structlog
from jinja2 import Template

from ctxloop.llm.client import GenerateOptions, LLMClient
from ctxloop.models.config import CompactionConfig

SUMMARY_PROMPT = """\
You are an expert conversation compressor. Compress the conversation history \
into a structured summary organized in the following 8 sections:
1. **Primary Request and Intent**: What is the user's core goal?
2. **Key Technical Concepts**: Frameworks, libraries, tech stacks, etc., involved in the conversation.
3. **Files and Code Sections**: All file paths mentioned or modified.
4. **Errors and Fixes**: Record error messages encountered and their solutions.
5. **Problem Solving**: The thought process and decision path for solving the problem.
6. **All User Messages**: Preserve key instructions and feedback from the user.
7. **Pending Tasks**: Work items that remain unfinished.
8. **Current Work**: The progress at the point the conversation was interrupted.

<previous_summary>
{{ previous_summary or "(none)" }}
</previous_summary>

<conversation>
{{ conversation }}
</conversation>

## Requirements:
- Maintain high density and accuracy of information
- Highlight key technical decisions and solutions
- Ensure continuity of context
- Retain all important file paths
- Be concise; the summary replaces the conversation above
"""


class SummarizationError(Exception):
    """Raised when a summarizer cannot produce a summary."""


@runtime_checkable
class Summarizer(Protocol):
    """Turns a block of transcript text into a compact summary, or raises."""

    async def summarize(self, text_block: str, previous_summary: str | None = None) -> str: ...


class LLMSummarizer:
    """
    Summarizer that asks an LLM for the eight-section compression.

    Example::

        summarizer = LLMSummarizer(LiteLLMClient(), model="anthropic/claude-haiku-4-5")
        text = await summarizer.summarize(transcript, previous_summary=old)
    """

    def __init__(
        self,
        client: LLMClient,
        model: str,
        config: CompactionConfig | None = None,
    ) -> None:
        self._client = client
        self._model = model
        self._config = config or CompactionConfig()
        self._template = Template(self._config.summary_prompt or SUMMARY_PROMPT)
        self._logger = structlog.get_logger("ctxloop.summarizer")

    async def summarize(self, text_block: str, previous_summary: str | None = None) -> str:
        """
        Summarize ``text_block``, folding in ``previous_summary``.

        Raises:
            SummarizationError: If the client returns nothing usable.
        """
        prompt = self._template.render(
            previous_summary=previous_summary or "",
            conversation=text_block,
        )
        options = GenerateOptions(
            model=self._model,
            max_tokens=self._config.summary_max_tokens,
            temperature=self._config.summary_temperature,
        )
        response = await self._client.generate([{"role": "user", "content": prompt}], options)
        if response is None or not response.content.strip():
            raise SummarizationError("Summarizer returned an empty response")

        self._logger.debug(
            "summary_generated",
            model=self._model,
            input_chars=len(text_block),
            output_chars=len(response.content),
        )
        return response.content.strip()
