"""Summarizer provider interface."""

import math
import re
from abc import ABC, abstractmethod

from loguru import logger

from chatcompact.compaction.cache import summary_key
from chatcompact.compaction.errors import EmptySummaryError, SummaryRefusedError
from chatcompact.compaction.estimator import TokenCounter
from chatcompact.compaction.types import (
    MAX_SUMMARY_TOKENS,
    MIN_SUMMARY_RATIO,
    Message,
    MessageRange,
    SummaryRecord,
)

SUMMARIZE_SYSTEM_PROMPT = """You are a precise summarization assistant. Your task is to condense conversation history while preserving:
- Key plot points and story developments
- Character states, emotions, and relationships
- Important dialogue and interactions
- Scene settings and context
- Any significant events or decisions

Focus on factual content. Remove redundancy but keep essential narrative information."""

SUMMARIZE_USER_PROMPT = """Summarize the following conversation to approximately {percent}% of its original length (~{target_chars} characters).

{previous_context}Conversation:
{conversation}

{custom_instructions}Provide a comprehensive summary that captures all important information:"""

_REFUSAL_PATTERNS = [
    re.compile(r"I cannot|I can't|I'm unable|I apologize|I'm sorry", re.IGNORECASE),
    re.compile(r"inappropriate|unsafe|harmful|violates", re.IGNORECASE),
]


def format_conversation(messages: list[Message]) -> str:
    """Render messages as ``role: text`` paragraphs."""
    return "\n\n".join(f"{m.role}: {m.text}" for m in messages if m.text)


def build_user_prompt(
    conversation: str,
    target_retention: float,
    hint: str | None = None,
    previous_summary: str | None = None,
) -> str:
    target_chars = math.ceil(len(conversation) * target_retention)
    previous_context = (
        f"Summary of the conversation so far (fold it into your summary):\n{previous_summary}\n\n"
        if previous_summary else ""
    )
    return SUMMARIZE_USER_PROMPT.format(
        percent=round(target_retention * 100),
        target_chars=target_chars,
        previous_context=previous_context,
        conversation=conversation,
        custom_instructions=f"{hint}\n\n" if hint else "",
    )


def target_max_tokens(conversation: str, target_retention: float) -> int:
    """Output token cap: target characters at ~3 chars/token, capped."""
    target_chars = len(conversation) * target_retention
    return max(64, min(math.ceil(target_chars / 3), MAX_SUMMARY_TOKENS))


def validate_summary(
    summary: str | None,
    target_chars: int,
    provider_id: str,
) -> str:
    """
    Reject empty, too-short and refused summaries.

    Returns:
        The stripped summary text.

    Raises:
        EmptySummaryError: Empty or shorter than 10% of the target.
        SummaryRefusedError: The model declined to summarize.
    """
    text = (summary or "").strip()
    if not text:
        raise EmptySummaryError("Provider returned an empty summary", provider_id)
    if len(text) < target_chars * MIN_SUMMARY_RATIO:
        raise EmptySummaryError(
            f"Summary too short ({len(text)} < {target_chars * MIN_SUMMARY_RATIO:.0f} chars)",
            provider_id,
            reason="too_short",
        )
    if any(pattern.search(text) for pattern in _REFUSAL_PATTERNS):
        raise SummaryRefusedError("Provider refused to summarize", provider_id)
    return text


class SummarizerProvider(ABC):
    """
    Abstract base class for summarization backends.

    Subclasses implement ``_generate``; ``summarize`` wraps it with prompt
    construction, validation and record bookkeeping. Every failure surfaces
    as a ``ProviderError`` subclass.
    """

    def __init__(self, counter: TokenCounter | None = None):
        self.counter = counter or TokenCounter()

    @property
    @abstractmethod
    def provider_id(self) -> str:
        """Stable identity, part of every cache key."""
        pass

    @abstractmethod
    async def _generate(
        self,
        conversation: str,
        target_retention: float,
        hint: str | None,
        previous_summary: str | None,
    ) -> str:
        """Produce raw summary text for ``conversation``."""
        pass

    @abstractmethod
    async def check_connection(self) -> bool:
        """Return True if the backend is reachable and configured."""
        pass

    async def summarize(
        self,
        messages: list[Message],
        target_retention: float,
        hint: str | None = None,
        previous_summary: str | None = None,
    ) -> SummaryRecord:
        """
        Summarize a batch of messages at the requested retention.

        Args:
            messages: Messages to summarize, chronological.
            target_retention: Fraction of the source length to keep.
            hint: Optional extra instructions.
            previous_summary: Rolling summary to fold in, if any.

        Returns:
            SummaryRecord for the batch.
        """
        if not messages:
            raise ValueError("Nothing to summarize")

        conversation = format_conversation(messages)
        target_chars = math.ceil(len(conversation) * target_retention)
        logger.debug(
            f"{self.provider_id}: summarizing {len(messages)} messages "
            f"({len(conversation)} chars → ~{target_chars})"
        )

        raw = await self._generate(conversation, target_retention, hint, previous_summary)
        text = validate_summary(raw, target_chars, self.provider_id)

        return SummaryRecord(
            key=summary_key(messages, target_retention, self.provider_id),
            summary_text=text,
            source_token_count=sum(
                m.tokens if m.token_count is not None else self.counter.count_message(m)
                for m in messages
            ),
            summary_token_count=self.counter.count(text),
            provider_id=self.provider_id,
            message_range=MessageRange.of(messages),
            message_ids=frozenset(m.id for m in messages),
            target_retention=target_retention,
        )
