"""LLM client contract and a litellm-backed implementation."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

import structlog
from pydantic import BaseModel

from ctxloop.models.message import LLMResponse, TokenUsage, ToolCallRequest


class GenerateOptions(BaseModel):
    """Per-call parameters passed to ``LLMClient.generate()``."""

    model: str
    max_tokens: int
    temperature: float | None = None
    tools: list[dict[str, Any]] | None = None
    """Tool schemas in function-calling format. None = no tools offered."""


@runtime_checkable
class LLMClient(Protocol):
    """
    Anything that can turn a message list into one completion.

    Returning ``None`` or raising is a hard failure for that call; the loop
    does not retry unless ``LoopSettings.llm_retries`` asks it to.
    """

    async def generate(
        self,
        messages: list[dict[str, Any]],
        options: GenerateOptions,
    ) -> LLMResponse | None: ...


class LiteLLMClient:
    """
    ``LLMClient`` over ``litellm.acompletion``.

    Requires the ``litellm`` extra (``pip install ctxloop[litellm]``). Extra
    keyword arguments (``api_base``, ``api_key``, ...) are forwarded on every
    call.
    """

    def __init__(self, **completion_kwargs: Any) -> None:
        self._completion_kwargs = completion_kwargs
        self._logger = structlog.get_logger("ctxloop.llm")

    async def generate(
        self,
        messages: list[dict[str, Any]],
        options: GenerateOptions,
    ) -> LLMResponse | None:
        import litellm

        call_kwargs: dict[str, Any] = {
            **self._completion_kwargs,
            "model": options.model,
            "messages": messages,
            "max_tokens": options.max_tokens,
        }
        if options.temperature is not None:
            call_kwargs["temperature"] = options.temperature
        if options.tools:
            call_kwargs["tools"] = options.tools

        response = await litellm.acompletion(**call_kwargs)
        if not response.choices:
            self._logger.warning("llm_empty_choices", model=options.model)
            return None

        choice = response.choices[0]
        message = choice.message
        tool_calls = [
            ToolCallRequest(
                id=call.id,
                name=call.function.name,
                arguments=call.function.arguments or "{}",
            )
            for call in (getattr(message, "tool_calls", None) or [])
        ]
        return LLMResponse(
            content=message.content or "",
            tool_calls=tool_calls,
            usage=_usage_from_response(response),
            finish_reason=choice.finish_reason,
        )


def _usage_from_response(response: Any) -> TokenUsage:
    usage = getattr(response, "usage", None)
    if usage is None:
        return TokenUsage()
    prompt = getattr(usage, "prompt_tokens", 0) or 0
    details = getattr(usage, "prompt_tokens_details", None)
    cached = (getattr(details, "cached_tokens", 0) or 0) if details is not None else 0
    # Providers report cached tokens inside prompt_tokens; keep the two disjoint.
    return TokenUsage(
        prompt_tokens=max(0, prompt - cached),
        cache_read_tokens=cached,
        output_tokens=getattr(usage, "completion_tokens", 0) or 0,
    )
