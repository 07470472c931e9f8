"""Configuration schema using Pydantic."""

from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from chatcompact.compaction.types import (
    DEFAULT_MAX_CONTEXT_TOKENS,
    Budget,
    CompressionLevels,
    StrategyConfig,
)


class CompressionLevelsConfig(BaseModel):
    """Retention targets for smart summarization."""
    mid_term: float = Field(0.4, ge=0.3, le=0.7)  # retain 40% of mid-term zone
    archive: float = Field(0.2, ge=0.1, le=0.4)  # retain 20% of archive zone

    @model_validator(mode="after")
    def _archive_not_above_mid_term(self) -> "CompressionLevelsConfig":
        if self.archive > self.mid_term:
            raise ValueError(
                f"archive retention ({self.archive}) must not exceed "
                f"mid_term retention ({self.mid_term})"
            )
        return self


class ContextConfig(BaseModel):
    """Context management configuration."""
    strategy: Literal["trim", "summarize", "smart_summarize"] = "smart_summarize"
    summarizer: Literal["gemini", "openrouter", "koboldcpp"] = "gemini"
    max_context_tokens: int | None = Field(None, gt=0)  # None = model default
    recent_zone_tokens: int = Field(35000, ge=0)
    compression_levels: CompressionLevelsConfig = Field(default_factory=CompressionLevelsConfig)
    chunk_size: int = Field(12000, gt=0)  # characters per summarization call
    max_concurrency: int = Field(3, ge=1)
    provider_timeout_seconds: float = Field(60.0, gt=0)
    deadline_seconds: float = Field(120.0, gt=0)
    safety_margin: float = Field(0.05, ge=0, lt=1)
    token_counting: Literal["tiktoken", "heuristic"] = "tiktoken"
    cache_max_entries: int = Field(512, ge=1)
    debug_mode: bool = False


class ProviderConfig(BaseModel):
    """Hosted LLM provider configuration."""
    api_key: str = ""
    api_base: str | None = None
    model: str = ""


class KoboldCppConfig(BaseModel):
    """Local KoboldCpp server configuration."""
    url: str = "http://localhost:5001"


class ProvidersConfig(BaseModel):
    """Configuration for summarization providers."""
    gemini: ProviderConfig = Field(
        default_factory=lambda: ProviderConfig(model="gemini-2.5-flash")
    )
    openrouter: ProviderConfig = Field(
        default_factory=lambda: ProviderConfig(model="google/gemini-flash-1.5")
    )
    koboldcpp: KoboldCppConfig = Field(default_factory=KoboldCppConfig)


class Config(BaseSettings):
    """Root configuration for chatcompact."""
    context: ContextConfig = Field(default_factory=ContextConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    debug_log_path: str = "~/.chatcompact/summarization_debug.json"

    model_config = SettingsConfigDict(
        env_prefix="CHATCOMPACT_",
        env_nested_delimiter="__",
    )

    def resolve_max_context_tokens(self, native_context_window: int | None = None) -> int:
        """Override, else the model's native window, else a safe default."""
        return (
            self.context.max_context_tokens
            or native_context_window
            or DEFAULT_MAX_CONTEXT_TOKENS
        )

    def build_budget(
        self,
        native_context_window: int | None = None,
        reserved_tokens: int = 0,
    ) -> Budget:
        max_tokens = self.resolve_max_context_tokens(native_context_window)
        return Budget(
            max_context_tokens=max_tokens,
            recent_zone_tokens=min(self.context.recent_zone_tokens, max_tokens),
            reserved_tokens=reserved_tokens,
        )

    def build_strategy_config(self, hint: str | None = None) -> StrategyConfig:
        ctx = self.context
        return StrategyConfig(
            strategy=ctx.strategy,
            provider_id=ctx.summarizer,
            chunk_size=ctx.chunk_size,
            compression_levels=CompressionLevels(
                mid_term=ctx.compression_levels.mid_term,
                archive=ctx.compression_levels.archive,
            ),
            max_concurrency=ctx.max_concurrency,
            provider_timeout_seconds=ctx.provider_timeout_seconds,
            deadline_seconds=ctx.deadline_seconds,
            safety_margin=ctx.safety_margin,
            debug_mode=ctx.debug_mode,
            hint=hint,
        )
