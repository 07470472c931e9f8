"""Select summarizer adapters by configuration id."""

from typing import Callable

from chatcompact.compaction.errors import ConfigurationError
from chatcompact.compaction.estimator import TokenCounter
from chatcompact.config.schema import Config
from chatcompact.providers.base import SummarizerProvider
from chatcompact.providers.kobold import KoboldCppSummarizer
from chatcompact.providers.litellm_provider import LiteLLMSummarizer


def _gemini(config: Config, counter: TokenCounter) -> SummarizerProvider:
    p = config.providers.gemini
    return LiteLLMSummarizer("gemini", p.model, p.api_key, p.api_base, counter)


def _openrouter(config: Config, counter: TokenCounter) -> SummarizerProvider:
    p = config.providers.openrouter
    return LiteLLMSummarizer("openrouter", p.model, p.api_key, p.api_base, counter)


def _koboldcpp(config: Config, counter: TokenCounter) -> SummarizerProvider:
    return KoboldCppSummarizer(
        config.providers.koboldcpp.url,
        counter,
        timeout=config.context.provider_timeout_seconds,
    )


PROVIDER_FACTORIES: dict[str, Callable[[Config, TokenCounter], SummarizerProvider]] = {
    "gemini": _gemini,
    "openrouter": _openrouter,
    "koboldcpp": _koboldcpp,
}


def create_summarizer(
    config: Config,
    provider_id: str | None = None,
    counter: TokenCounter | None = None,
) -> SummarizerProvider:
    """
    Build the adapter for a configuration id.

    Args:
        config: Root configuration.
        provider_id: One of ``gemini``, ``openrouter``, ``koboldcpp``.
            Defaults to the configured summarizer.
        counter: Token counter shared with the engine.

    Raises:
        ConfigurationError: Unknown provider id.
    """
    provider_id = provider_id or config.context.summarizer
    factory = PROVIDER_FACTORIES.get(provider_id)
    if factory is None:
        raise ConfigurationError(
            f"Unknown summarizer {provider_id!r}, expected one of {sorted(PROVIDER_FACTORIES)}"
        )
    return factory(config, counter or TokenCounter(config.context.token_counting))


def create_summarizers(
    config: Config,
    counter: TokenCounter | None = None,
) -> dict[str, SummarizerProvider]:
    """Build every known adapter, keyed by configuration id."""
    counter = counter or TokenCounter(config.context.token_counting)
    return {pid: create_summarizer(config, pid, counter) for pid in PROVIDER_FACTORIES}
