"""Split a transcript into Recent / Mid-term / Archive zones."""

from loguru import logger

from chatcompact.compaction.estimator import estimate_messages_tokens
from chatcompact.compaction.pruning import split_messages_by_token_share
from chatcompact.compaction.types import (
    Budget,
    CompressionLevels,
    Message,
    Partition,
    Zone,
)


class ZonePartitioner:
    """
    Partitions a measured transcript against a budget.

    The newest messages up to ``recent_zone_tokens`` form the protected
    Recent zone. Older messages that do not fit the remaining budget are
    split by token share: the older half becomes Archive, the newer half
    Mid-term. Pure and non-blocking.
    """

    def __init__(self, levels: CompressionLevels | None = None):
        self.levels = levels or CompressionLevels()

    def split_recent(
        self,
        messages: list[Message],
        recent_zone_tokens: int,
    ) -> tuple[list[Message], list[Message]]:
        """Return (older prefix, recent suffix)."""
        accumulated = 0
        start = len(messages)
        while start > 0 and accumulated < recent_zone_tokens:
            start -= 1
            accumulated += messages[start].tokens
        return messages[:start], messages[start:]

    def partition(self, messages: list[Message], budget: Budget) -> Partition:
        """
        Partition messages into zones.

        Args:
            messages: Measured messages, chronological.
            budget: Planning budget (reserved tokens already subtracted
                by the caller if needed).

        Returns:
            Partition with a Recent zone and, when the older prefix does
            not fit, Mid-term and Archive zones.
        """
        older, recent = self.split_recent(messages, budget.recent_zone_tokens)
        partition = Partition(recent=Zone("recent", tuple(recent)))

        # Protection is never partially honored: an oversized message stays whole
        partition.oversized_message_ids = [
            m.id for m in recent
            if budget.recent_zone_tokens and m.tokens > budget.recent_zone_tokens
        ]
        if partition.oversized_message_ids:
            logger.warning(
                f"Recent zone holds {len(partition.oversized_message_ids)} message(s) "
                f"larger than the {budget.recent_zone_tokens}-token protection floor"
            )

        if not older:
            return partition

        recent_tokens = estimate_messages_tokens(recent)
        remaining_budget = budget.available_tokens - max(recent_tokens, budget.recent_zone_tokens)
        if estimate_messages_tokens(older) <= remaining_budget:
            partition.fitting_prefix = tuple(older)
            return partition

        if len(older) == 1:
            partition.archive = Zone("archive", tuple(older), self.levels.archive)
            return partition

        halves = split_messages_by_token_share(older, parts=2)
        if len(halves) < 2:
            # Zero-token prefixes cannot be split by share
            mid = len(older) // 2
            halves = [older[:mid], older[mid:]]

        archive, mid_term = halves
        partition.archive = Zone("archive", tuple(archive), self.levels.archive)
        partition.mid_term = Zone("mid_term", tuple(mid_term), self.levels.mid_term)

        logger.info(
            f"Zones: archive={len(archive)} msgs, mid-term={len(mid_term)} msgs, "
            f"recent={len(recent)} msgs ({recent_tokens} tokens protected)"
        )
        return partition
