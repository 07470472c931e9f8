"""Tests for configuration schema validation."""

import pytest
from pydantic import ValidationError

from chatcompact.compaction.types import Budget, CompressionLevels
from chatcompact.config.schema import (
    CompressionLevelsConfig,
    Config,
    ContextConfig,
    KoboldCppConfig,
    ProviderConfig,
    ProvidersConfig,
)


class TestConfig:
    def test_defaults(self):
        config = Config()
        assert config.context.strategy == "smart_summarize"
        assert config.context.summarizer == "gemini"
        assert config.context.recent_zone_tokens == 35000
        assert config.context.chunk_size == 12000
        assert config.context.max_concurrency == 3
        assert config.context.debug_mode is False

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("CHATCOMPACT_CONTEXT__STRATEGY", "trim")
        monkeypatch.setenv("CHATCOMPACT_PROVIDERS__GEMINI__API_KEY", "env-key")
        config = Config()
        assert config.context.strategy == "trim"
        assert config.providers.gemini.api_key == "env-key"

    def test_resolve_max_context_tokens(self):
        config = Config()
        assert config.resolve_max_context_tokens() == 8192
        assert config.resolve_max_context_tokens(1_000_000) == 1_000_000

        config.context.max_context_tokens = 64000
        assert config.resolve_max_context_tokens(1_000_000) == 64000

    def test_build_budget(self):
        config = Config()
        config.context.max_context_tokens = 100_000
        budget = config.build_budget(reserved_tokens=1200)
        assert budget == Budget(100_000, 35000, 1200)

    def test_build_budget_clamps_recent_zone(self):
        budget = Config().build_budget()
        assert budget.max_context_tokens == 8192
        assert budget.recent_zone_tokens == 8192
        budget.validate()

    def test_build_strategy_config(self):
        config = Config()
        config.context.strategy = "summarize"
        config.context.summarizer = "koboldcpp"
        config.context.compression_levels = CompressionLevelsConfig(mid_term=0.5, archive=0.3)
        config.context.debug_mode = True

        strategy = config.build_strategy_config(hint="Keep names.")
        assert strategy.strategy == "summarize"
        assert strategy.provider_id == "koboldcpp"
        assert strategy.compression_levels == CompressionLevels(mid_term=0.5, archive=0.3)
        assert strategy.debug_mode is True
        assert strategy.hint == "Keep names."
        strategy.validate()


class TestContextConfig:
    def test_invalid_strategy(self):
        with pytest.raises(ValidationError):
            ContextConfig(strategy="compress_harder")

    def test_invalid_summarizer(self):
        with pytest.raises(ValidationError):
            ContextConfig(summarizer="claude")

    def test_positive_chunk_size(self):
        with pytest.raises(ValidationError):
            ContextConfig(chunk_size=0)

    def test_safety_margin_range(self):
        with pytest.raises(ValidationError):
            ContextConfig(safety_margin=1.0)


class TestCompressionLevelsConfig:
    def test_defaults(self):
        levels = CompressionLevelsConfig()
        assert levels.mid_term == 0.4
        assert levels.archive == 0.2

    def test_mid_term_range(self):
        with pytest.raises(ValidationError):
            CompressionLevelsConfig(mid_term=0.8)

    def test_archive_range(self):
        with pytest.raises(ValidationError):
            CompressionLevelsConfig(archive=0.05)

    def test_archive_not_above_mid_term(self):
        with pytest.raises(ValidationError, match="must not exceed"):
            CompressionLevelsConfig(mid_term=0.3, archive=0.35)

    def test_equal_levels_allowed(self):
        levels = CompressionLevelsConfig(mid_term=0.35, archive=0.35)
        assert levels.archive == levels.mid_term


class TestProvidersConfig:
    def test_defaults(self):
        providers = ProvidersConfig()
        assert providers.gemini.model == "gemini-2.5-flash"
        assert providers.openrouter.model == "google/gemini-flash-1.5"
        assert providers.koboldcpp.url == "http://localhost:5001"

    def test_provider_config(self):
        p = ProviderConfig(api_key="key", api_base="http://localhost:8000", model="m")
        assert p.api_key == "key"
        assert p.api_base == "http://localhost:8000"

    def test_kobold_config(self):
        assert KoboldCppConfig(url="http://gpu:5001").url == "http://gpu:5001"
