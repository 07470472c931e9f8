"""Token estimation for messages."""

import math
import re
from dataclasses import replace
from typing import Literal

import tiktoken
from loguru import logger

from chatcompact.compaction.types import IMAGE_TOKENS, Message

CountingMode = Literal["tiktoken", "heuristic"]

_ARABIC_RE = re.compile(r"[\u0600-\u06FF]")

# Cache the encoder
_encoder: tiktoken.Encoding | None = None
_encoder_failed = False


def _get_encoder() -> tiktoken.Encoding | None:
    """Get or create the tiktoken encoder, None if it cannot be loaded."""
    global _encoder, _encoder_failed
    if _encoder is None and not _encoder_failed:
        try:
            _encoder = tiktoken.get_encoding("cl100k_base")
        except Exception as e:
            # Offline installs can miss the BPE file
            logger.warning(f"Tokenizer unavailable, falling back to approximation: {e}")
            _encoder_failed = True
    return _encoder


def _chars_per_token(text: str) -> float:
    """Characters per token for Gemini-family tokenizers, by script mix."""
    arabic_ratio = len(_ARABIC_RE.findall(text)) / len(text)
    if arabic_ratio > 0.6:
        return 2.51
    if arabic_ratio > 0.2:
        return 2.8
    return 3.8


class TokenCounter:
    """
    Counts tokens for text and messages.

    ``tiktoken`` mode is exact for cl100k-family models and degrades to a
    characters/4 approximation when the encoder cannot be loaded.
    ``heuristic`` mode is always approximate.
    """

    def __init__(self, mode: CountingMode = "tiktoken"):
        self.mode = mode

    @property
    def approximate(self) -> bool:
        if self.mode == "heuristic":
            return True
        return _get_encoder() is None

    def count(self, text: str) -> int:
        """
        Count tokens in a text string.

        Args:
            text: The text to count.

        Returns:
            Token count, at least 1 for non-empty text.
        """
        if not text:
            return 0

        if self.mode == "heuristic":
            return max(1, math.ceil(len(text) / _chars_per_token(text)))

        encoder = _get_encoder()
        if encoder is None:
            return max(1, math.ceil(len(text) / 4))
        return max(1, len(encoder.encode(text, disallowed_special=())))

    def count_message(self, message: Message) -> int:
        tokens = self.count(message.text)
        if message.has_image:
            tokens += IMAGE_TOKENS
        return tokens

    def measure(self, messages: list[Message]) -> list[Message]:
        """Return messages with ``token_count`` filled in where missing."""
        return [
            m if m.token_count is not None else replace(m, token_count=self.count_message(m))
            for m in messages
        ]


def estimate_messages_tokens(messages: list[Message]) -> int:
    """Total tokens for already-measured messages."""
    return sum(m.tokens for m in messages)
