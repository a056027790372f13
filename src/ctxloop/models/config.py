"""Configuration models for the agent loop and its components."""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator


class CompactionConfig(BaseModel):
    """Configuration for the compaction engine (pruning and summarization)."""

    auto: bool = True
    """Whether to compact automatically when overflow is detected. False = manual only."""

    prune: bool = True
    """Whether to run tool output pruning before summarization."""

    recent_turns_protected: int = Field(
        default=2,
        ge=1,
        description="Number of most recent turns whose tool outputs are never pruned.",
    )

    prune_protect_tokens: int = Field(
        default=40_000,
        ge=0,
        description="Tool output tokens, counted from the end of history, that are never pruned.",
    )

    prune_minimum_tokens: int = Field(
        default=20_000,
        ge=0,
        description="Minimum prunable volume required to actually apply pruning.",
    )

    protected_tools: frozenset[str] = Field(
        default_factory=lambda: frozenset({"skill"}),
        description="Tool names whose outputs are never pruned.",
    )

    summary_recent_turns: int = Field(
        default=2,
        ge=1,
        description="Number of most recent turns kept verbatim when summarizing.",
    )

    summary_model: str | None = Field(
        default=None,
        description="Model to use for summarization. None = use the loop model.",
    )

    summary_max_tokens: int = Field(default=8_000, ge=256)
    """Output cap for the summarization call."""

    summary_temperature: float = Field(default=0.3, ge=0.0, le=2.0)

    summary_prompt: str | None = Field(
        default=None,
        description="Custom Jinja2 prompt template for summarization. "
        "Receives ``previous_summary`` and ``conversation``. "
        "None = use the built-in eight-section prompt.",
    )

    @model_validator(mode="after")
    def validate_prune_thresholds(self) -> CompactionConfig:
        if self.prune_minimum_tokens >= self.prune_protect_tokens:
            raise ValueError("prune_minimum_tokens must be strictly less than prune_protect_tokens")
        return self


class TruncationConfig(BaseModel):
    """Configuration for tier-1 truncation of individual tool outputs."""

    max_lines: int = Field(
        default=2_000,
        ge=1,
        description="Maximum number of lines kept inline in a tool result.",
    )

    max_bytes: int = Field(
        default=50 * 1024,
        ge=256,
        description="Maximum UTF-8 size in bytes kept inline in a tool result.",
    )

    storage_dir: str | None = Field(
        default=None,
        description="Directory for spilled tool outputs. None = keep them in memory.",
    )

    reader_tool: bool = Field(
        default=True,
        description="Register a read_spilled_output tool and name it in truncation markers.",
    )


class StoreConfig(BaseModel):
    """Configuration for the SQLite persistence layer."""

    db_path: str = Field(
        default="~/.ctxloop/sessions.db",
        description="Path to the SQLite database file. ~ is expanded at runtime.",
    )

    wal_mode: bool = True
    """Use WAL journal mode for better concurrent read performance."""

    connection_timeout: float = 30.0
    """Seconds to wait for the database connection before raising."""


class LoopSettings(BaseModel):
    """Limits and call parameters for a single ``AgentLoop.run()``."""

    model: str = "anthropic/claude-sonnet-4-5"
    """Model string in litellm format."""

    max_iterations: int = Field(
        default=100,
        ge=1,
        description="Hard ceiling on LLM calls per run.",
    )

    max_output_tokens: int = Field(
        default=8_000,
        ge=1,
        description="Configured output cap per LLM call. The reserved output budget is "
        "the smaller of this and the model's own output limit.",
    )

    temperature: float | None = None

    llm_timeout: float | None = Field(
        default=None,
        gt=0,
        description="Seconds before an LLM call is abandoned. None = no timeout.",
    )

    tool_timeout: float | None = Field(
        default=120.0,
        gt=0,
        description="Seconds before a single tool call is abandoned. None = no timeout.",
    )

    llm_retries: int = Field(
        default=0,
        ge=0,
        le=5,
        description="Extra attempts after a failed or null LLM response.",
    )


class LoopConfig(BaseModel):
    """
    Top-level configuration for an ``AgentLoop``.

    All sub-configs have sensible defaults and can be overridden individually.

    Example::

        config = LoopConfig(
            loop=LoopSettings(model="gpt-4o", max_iterations=30),
            compaction=CompactionConfig(prune_protect_tokens=60_000),
            truncation=TruncationConfig(max_lines=500),
        )
    """

    loop: LoopSettings = Field(default_factory=LoopSettings)
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    truncation: TruncationConfig = Field(default_factory=TruncationConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)

    context_limit: int | None = Field(
        default=None,
        ge=0,
        description="Override the model's context window. 0 = unknown (never overflows).",
    )

    model_output_limit: int | None = Field(
        default=None,
        ge=1,
        description="Override the model's own maximum output tokens.",
    )

    @classmethod
    def default(cls) -> LoopConfig:
        """Return a config instance with all defaults."""
        return cls()

    def model_info(self, model: str | None = None) -> ModelInfo:
        """Resolve model metadata, applying any configured overrides."""
        info = ModelInfo.from_model_string(model or self.loop.model)
        update: dict[str, int] = {}
        if self.context_limit is not None:
            update["context_limit"] = self.context_limit
        if self.model_output_limit is not None:
            update["max_output_tokens"] = self.model_output_limit
        return info.model_copy(update=update) if update else info


class ModelInfo(BaseModel):
    """Resolved model metadata used for budget calculations."""

    model_id: str
    provider_id: str = ""
    context_limit: int = Field(
        default=200_000,
        description="Total input + output token limit for this model.",
    )
    max_output_tokens: int = Field(
        default=8_192,
        description="Maximum output tokens for a single response.",
    )

    @classmethod
    def from_model_string(cls, model: str) -> ModelInfo:
        """
        Create a ModelInfo by heuristically parsing a model string.

        Supports litellm-style strings like ``anthropic/claude-sonnet-4-5``,
        ``gpt-4o``, ``deepseek/deepseek-chat``, etc.
        """
        lower = model.lower()
        provider = ""
        model_name = lower

        if "/" in lower:
            provider, model_name = lower.split("/", 1)

        if "claude-opus" in model_name or "claude-3-opus" in model_name:
            return cls(
                model_id=model,
                provider_id=provider or "anthropic",
                context_limit=200_000,
                max_output_tokens=32_000,
            )
        if "claude" in model_name:
            return cls(
                model_id=model,
                provider_id=provider or "anthropic",
                context_limit=200_000,
                max_output_tokens=8_192,
            )
        if "deepseek" in model_name:
            return cls(
                model_id=model,
                provider_id=provider or "deepseek",
                context_limit=128_000,
                max_output_tokens=8_192,
            )
        if "o1" in model_name or "o3" in model_name:
            return cls(
                model_id=model,
                provider_id=provider or "openai",
                context_limit=200_000,
                max_output_tokens=100_000,
            )
        if "gpt-4o" in model_name:
            return cls(
                model_id=model,
                provider_id=provider or "openai",
                context_limit=128_000,
                max_output_tokens=16_384,
            )
        if "gpt-4" in model_name or "gpt-3" in model_name:
            return cls(
                model_id=model,
                provider_id=provider or "openai",
                context_limit=128_000,
                max_output_tokens=4_096,
            )
        if "gemini" in model_name:
            return cls(
                model_id=model,
                provider_id=provider or "google",
                context_limit=1_000_000,
                max_output_tokens=8_192,
            )
        # Safe default for unknown models
        return cls(
            model_id=model,
            provider_id=provider,
            context_limit=128_000,
            max_output_tokens=4_096,
        )
