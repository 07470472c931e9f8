"""Compaction strategies: trim, flat summarize, tiered summarize."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from loguru import logger

from chatcompact.compaction.errors import ConfigurationError, ProviderError
from chatcompact.compaction.estimator import TokenCounter, estimate_messages_tokens
from chatcompact.compaction.pruning import (
    chunk_messages_by_chars,
    take_oldest_batch,
    trim_to_budget,
)
from chatcompact.compaction.types import (
    BlockZone,
    ContentBlock,
    Message,
    MessageBlock,
    StrategyName,
    SummaryBlock,
    SummaryRecord,
)

if TYPE_CHECKING:
    from chatcompact.compaction.service import CompactionRun


@dataclass
class ChunkOutcome:
    """Result of one summarization dispatch."""

    zone: BlockZone
    index: int
    messages: list[Message]
    retention: float = 0.0
    record: SummaryRecord | None = None
    cache_hit: bool = False
    error: ProviderError | None = None


def make_summary_block(
    zone: BlockZone,
    records: list[SummaryRecord],
    message_count: int,
    counter: TokenCounter,
) -> SummaryBlock:
    """Build a summary block and measure its rendered text."""
    block = SummaryBlock(zone, tuple(records), message_count, token_count=0)
    return replace(block, token_count=counter.count(block.render()))


def assemble_outcomes(
    outcomes: list[ChunkOutcome],
    allowance: int,
    run: "CompactionRun",
) -> list[ContentBlock]:
    """
    Turn chunk outcomes into blocks in chronological order.

    Consecutive successful chunks of a zone merge into one summary block.
    Failed chunks fall back to their raw messages, trimmed from the oldest
    end when the raw text would not fit; newer chunks get the allowance
    first.

    Args:
        outcomes: Outcomes in chronological order.
        allowance: Tokens left for the zones after the Recent zone.
        run: Current compaction run.
    """
    # Consecutive successes of one zone form a segment, each failure its own
    segments: list[list[ChunkOutcome]] = []
    for outcome in outcomes:
        previous = segments[-1][-1] if segments else None
        if (
            outcome.record is not None
            and previous is not None
            and previous.record is not None
            and previous.zone == outcome.zone
        ):
            segments[-1].append(outcome)
        else:
            segments.append([outcome])

    summary_blocks: dict[int, SummaryBlock] = {}
    for position, segment in enumerate(segments):
        if segment[0].record is not None:
            summary_blocks[position] = make_summary_block(
                segment[0].zone,
                [o.record for o in segment],
                sum(len(o.messages) for o in segment),
                run.counter,
            )
    allowance -= sum(block.token_count for block in summary_blocks.values())

    kept_raw: dict[int, list[Message]] = {}
    for position in range(len(segments) - 1, -1, -1):
        if position in summary_blocks:
            continue
        outcome = segments[position][0]
        kept, dropped = trim_to_budget(outcome.messages, max(0, allowance))
        allowance -= estimate_messages_tokens(kept)
        kept_raw[position] = kept
        event = run.record_fallback(
            outcome.zone,
            outcome.index,
            kept,
            dropped,
            outcome.retention,
            outcome.error.reason if outcome.error else None,
        )
        logger.warning(
            f"Fallback for {outcome.zone} chunk {outcome.index}: {event.mode} "
            f"({len(kept)} kept, {len(dropped)} dropped)"
        )

    blocks: list[ContentBlock] = []
    for position, segment in enumerate(segments):
        if position in summary_blocks:
            blocks.append(summary_blocks[position])
        else:
            blocks.extend(MessageBlock(m, segment[0].zone) for m in kept_raw[position])
    return blocks


class CompactionStrategy(ABC):
    """Top-level compaction algorithm."""

    name: StrategyName
    needs_provider = True

    @abstractmethod
    async def run(self, messages: list[Message], run: "CompactionRun") -> list[ContentBlock]:
        """Produce blocks for an over-budget transcript."""
        pass

    def _recent_only(self, recent: list[Message], run: "CompactionRun") -> list[ContentBlock]:
        recent_tokens = estimate_messages_tokens(recent)
        run.diagnostics.warn(
            f"Recent zone alone uses {recent_tokens} of {run.budget_tokens} tokens, "
            "older messages dropped"
        )
        return [MessageBlock(m, "recent") for m in recent]


class TrimStrategy(CompactionStrategy):
    """Drop the oldest whole messages until the transcript fits."""

    name: StrategyName = "trim"
    needs_provider = False

    async def run(self, messages: list[Message], run: "CompactionRun") -> list[ContentBlock]:
        kept, dropped = trim_to_budget(messages, run.budget_tokens)
        if not kept:
            # Even the newest message does not fit: keep the Recent zone as-is
            _, recent = run.partitioner.split_recent(messages, run.budget.recent_zone_tokens)
            kept = recent or messages[-1:]
            run.diagnostics.still_over_budget = True
            return self._recent_only(kept, run)

        logger.info(f"Trim: dropped {len(dropped)} oldest message(s), kept {len(kept)}")
        return [MessageBlock(m, "recent") for m in kept]


class FlatSummarizeStrategy(CompactionStrategy):
    """
    Fold the oldest messages into one rolling summary, batch by batch.

    Each round summarizes the next batch of about ``chunk_size`` characters
    together with the previous rolling summary, until the transcript fits
    or only the Recent zone is left.
    """

    name: StrategyName = "summarize"

    async def run(self, messages: list[Message], run: "CompactionRun") -> list[ContentBlock]:
        older, recent = run.partitioner.split_recent(messages, run.budget.recent_zone_tokens)
        recent_tokens = estimate_messages_tokens(recent)
        if recent_tokens >= run.budget_tokens:
            run.diagnostics.still_over_budget = recent_tokens > run.budget_tokens
            return self._recent_only(recent, run)

        retention = run.config.compression_levels.mid_term
        pool = list(older)
        summarized: list[Message] = []
        summary: SummaryBlock | None = None
        interrupted = False
        failure_reason = "timeout"
        rounds = 0

        def total() -> int:
            summary_tokens = summary.token_count if summary else 0
            return summary_tokens + estimate_messages_tokens(pool) + recent_tokens

        while pool and total() > run.budget_tokens:
            if run.remaining() <= 0:
                run.diagnostics.deadline_exceeded = True
                logger.warning("Compaction deadline reached during rolling summarization")
                interrupted = True
                break

            batch, rest = take_oldest_batch(pool, run.config.chunk_size)
            outcome = await run.summarize_chunk(
                "rolling",
                rounds,
                rounds + len(chunk_messages_by_chars(pool, run.config.chunk_size)),
                batch,
                retention,
                key_messages=summarized + batch,
                previous_summary=summary.text if summary else None,
            )
            if outcome.record is None:
                interrupted = True
                failure_reason = outcome.error.reason if outcome.error else failure_reason
                break

            summarized.extend(batch)
            pool = rest
            rounds += 1
            summary = make_summary_block("rolling", [outcome.record], len(summarized), run.counter)

        if interrupted and pool and total() > run.budget_tokens:
            summary_tokens = summary.token_count if summary else 0
            kept, dropped = trim_to_budget(pool, max(0, run.budget_tokens - recent_tokens - summary_tokens))
            run.record_fallback(
                "rolling",
                rounds,
                kept,
                dropped,
                retention,
                failure_reason,
            )
            logger.warning(f"Rolling summary incomplete, trimmed {len(dropped)} oldest message(s)")
            pool = kept

        logger.info(f"Flat summarize: {rounds} round(s), {len(summarized)} message(s) folded")

        blocks: list[ContentBlock] = [summary] if summary else []
        blocks.extend(MessageBlock(m, "history") for m in pool)
        blocks.extend(MessageBlock(m, "recent") for m in recent)
        return blocks


class TieredSummarizeStrategy(CompactionStrategy):
    """
    Protect the Recent zone and summarize Mid-term and Archive separately.

    Chunks of both zones are dispatched together; each chunk is cached by
    its message ids, retention level and provider.
    """

    name: StrategyName = "smart_summarize"

    async def run(self, messages: list[Message], run: "CompactionRun") -> list[ContentBlock]:
        partition = run.partitioner.partition(messages, run.budget)
        recent = list(partition.recent.messages)
        recent_blocks: list[ContentBlock] = [MessageBlock(m, "recent") for m in recent]

        if partition.oversized_message_ids:
            run.diagnostics.warn(
                f"Protected message(s) {', '.join(partition.oversized_message_ids)} "
                "exceed the recent-zone floor"
            )

        if not partition.needs_summary:
            return [MessageBlock(m, "history") for m in partition.fitting_prefix] + recent_blocks

        recent_tokens = partition.recent.token_count
        if recent_tokens >= run.budget_tokens:
            run.diagnostics.still_over_budget = recent_tokens > run.budget_tokens
            return self._recent_only(recent, run)

        jobs: list[tuple[BlockZone, int, int, list[Message], float]] = []
        for zone in (partition.archive, partition.mid_term):
            if zone is None:
                continue
            chunks = chunk_messages_by_chars(list(zone.messages), run.config.chunk_size)
            for index, chunk in enumerate(chunks):
                jobs.append((zone.kind, index, len(chunks), chunk, zone.target_retention))

        logger.info(f"Smart summarize: dispatching {len(jobs)} chunk(s)")
        outcomes = await run.gather_chunks(jobs)

        zone_blocks = assemble_outcomes(outcomes, run.budget_tokens - recent_tokens, run)
        return zone_blocks + recent_blocks


STRATEGIES: dict[str, type[CompactionStrategy]] = {
    "trim": TrimStrategy,
    "summarize": FlatSummarizeStrategy,
    "smart_summarize": TieredSummarizeStrategy,
}


def get_strategy(name: str) -> CompactionStrategy:
    strategy_cls = STRATEGIES.get(name)
    if strategy_cls is None:
        raise ConfigurationError(f"Unknown strategy {name!r}")
    return strategy_cls()
