"""Message trimming, splitting and chunking utilities."""

from chatcompact.compaction.estimator import estimate_messages_tokens
from chatcompact.compaction.types import Message

DEFAULT_PARTS = 2


def normalize_parts(parts: int, message_count: int) -> int:
    """Normalize parts count to valid range."""
    if parts <= 1:
        return 1
    return min(max(1, parts), max(1, message_count))


def split_messages_by_token_share(
    messages: list[Message],
    parts: int = DEFAULT_PARTS,
) -> list[list[Message]]:
    """
    Split messages into contiguous chunks of roughly equal token share.

    Args:
        messages: Measured messages, chronological.
        parts: Number of parts to split into.

    Returns:
        List of message chunks, oldest first.
    """
    if not messages:
        return []

    normalized_parts = normalize_parts(parts, len(messages))
    if normalized_parts <= 1:
        return [messages]

    total_tokens = estimate_messages_tokens(messages)
    target_tokens = total_tokens / normalized_parts
    chunks: list[list[Message]] = []
    current: list[Message] = []
    current_tokens = 0

    for message in messages:
        if (
            len(chunks) < normalized_parts - 1
            and current
            and current_tokens + message.tokens > target_tokens
        ):
            chunks.append(current)
            current = []
            current_tokens = 0

        current.append(message)
        current_tokens += message.tokens

    if current:
        chunks.append(current)

    return chunks


def chunk_messages_by_chars(
    messages: list[Message],
    max_chars: int,
) -> list[list[Message]]:
    """
    Chunk messages so each chunk holds about ``max_chars`` characters.

    A message larger than ``max_chars`` gets a chunk of its own; messages
    are never split.

    Args:
        messages: Messages to chunk.
        max_chars: Maximum characters per chunk.

    Returns:
        List of message chunks, oldest first.
    """
    if not messages:
        return []

    chunks: list[list[Message]] = []
    current_chunk: list[Message] = []
    current_chars = 0

    for message in messages:
        message_chars = len(message.text)

        if current_chunk and current_chars + message_chars > max_chars:
            chunks.append(current_chunk)
            current_chunk = []
            current_chars = 0

        current_chunk.append(message)
        current_chars += message_chars

        if message_chars > max_chars:
            chunks.append(current_chunk)
            current_chunk = []
            current_chars = 0

    if current_chunk:
        chunks.append(current_chunk)

    return chunks


def take_oldest_batch(
    messages: list[Message],
    max_chars: int,
) -> tuple[list[Message], list[Message]]:
    """Split off the oldest chunk of about ``max_chars`` characters."""
    chunks = chunk_messages_by_chars(messages, max_chars)
    if not chunks:
        return [], []
    batch = chunks[0]
    return batch, messages[len(batch):]


def trim_to_budget(
    messages: list[Message],
    budget_tokens: int,
) -> tuple[list[Message], list[Message]]:
    """
    Keep the longest suffix of whole messages that fits the budget.

    Args:
        messages: Measured messages, chronological.
        budget_tokens: Tokens available.

    Returns:
        Tuple of (kept suffix, dropped prefix).
    """
    kept_tokens = 0
    start = len(messages)
    for i in range(len(messages) - 1, -1, -1):
        tokens = messages[i].tokens
        if kept_tokens + tokens > budget_tokens:
            break
        kept_tokens += tokens
        start = i
    return messages[start:], messages[:start]
