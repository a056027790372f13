"""LLM client contract."""

from ctxloop.llm.client import GenerateOptions, LiteLLMClient, LLMClient

__all__ = ["GenerateOptions", "LLMClient", "LiteLLMClient"]
