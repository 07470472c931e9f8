"""Summarizer provider module."""

from chatcompact.providers.base import SummarizerProvider
from chatcompact.providers.kobold import KoboldCppSummarizer
from chatcompact.providers.litellm_provider import LiteLLMSummarizer
from chatcompact.providers.registry import create_summarizer, create_summarizers

__all__ = [
    "SummarizerProvider",
    "KoboldCppSummarizer",
    "LiteLLMSummarizer",
    "create_summarizer",
    "create_summarizers",
]
