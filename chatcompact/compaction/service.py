"""Context compaction engine."""

import asyncio
import time
from dataclasses import replace
from typing import TYPE_CHECKING

from loguru import logger

from chatcompact.compaction.cache import SummaryCache, summary_key
from chatcompact.compaction.errors import ConfigurationError, ProviderError, ProviderTimeoutError
from chatcompact.compaction.estimator import TokenCounter, estimate_messages_tokens
from chatcompact.compaction.partition import ZonePartitioner
from chatcompact.compaction.strategies import ChunkOutcome, get_strategy
from chatcompact.compaction.types import (
    BlockZone,
    Budget,
    CompactionResult,
    Diagnostics,
    FallbackEvent,
    Message,
    MessageBlock,
    MessageRange,
    ProviderFailure,
    StrategyConfig,
    SummarizationDebugLog,
    SummaryRecord,
)

if TYPE_CHECKING:
    from chatcompact.config.schema import Config
    from chatcompact.providers.base import SummarizerProvider


class CompactionRun:
    """
    State of a single ``compact()`` call.

    Holds the planning budget, the deadline and the concurrency limit,
    and dispatches summarization through the shared cache.
    """

    def __init__(
        self,
        engine: "ContextCompactionEngine",
        budget: Budget,
        config: StrategyConfig,
        provider: "SummarizerProvider | None",
        diagnostics: Diagnostics,
        conversation_id: str | None = None,
    ):
        self.engine = engine
        self.budget = budget
        self.config = config
        self.provider = provider
        self.diagnostics = diagnostics
        self.conversation_id = conversation_id
        self.partitioner = ZonePartitioner(config.compression_levels)
        self._loop = asyncio.get_running_loop()
        self._deadline = self._loop.time() + config.deadline_seconds
        self._semaphore = asyncio.Semaphore(config.max_concurrency)

    @property
    def counter(self) -> TokenCounter:
        return self.engine.counter

    @property
    def budget_tokens(self) -> int:
        return self.budget.max_context_tokens

    def remaining(self) -> float:
        """Seconds left before the outer deadline."""
        return max(0.0, self._deadline - self._loop.time())

    async def _call_provider(
        self,
        key: str,
        messages: list[Message],
        key_messages: list[Message],
        retention: float,
        previous_summary: str | None,
    ) -> SummaryRecord:
        provider = self.provider
        async with self._semaphore:
            remaining = self.remaining()
            if remaining <= 0:
                raise ProviderTimeoutError(
                    "Compaction deadline reached before dispatch", provider.provider_id
                )
            timeout = min(self.config.provider_timeout_seconds, remaining)
            try:
                record = await asyncio.wait_for(
                    provider.summarize(messages, retention, self.config.hint, previous_summary),
                    timeout,
                )
            except asyncio.TimeoutError as e:
                raise ProviderTimeoutError(
                    f"Summarization timed out after {timeout:.1f}s", provider.provider_id
                ) from e

        # Language models do not hit ratios exactly: re-measure what came back
        return replace(
            record,
            key=key,
            message_range=MessageRange.of(key_messages),
            message_ids=frozenset(m.id for m in key_messages),
            summary_token_count=self.counter.count(record.summary_text),
        )

    async def summarize_chunk(
        self,
        zone: BlockZone,
        index: int,
        total: int,
        messages: list[Message],
        retention: float,
        key_messages: list[Message] | None = None,
        previous_summary: str | None = None,
    ) -> ChunkOutcome:
        """
        Summarize one chunk through the cache.

        Provider failures are recorded and returned, never raised. Any
        other exception from an adapter is treated as a provider failure.

        Args:
            zone: Zone the chunk belongs to.
            index: Chunk position within the zone.
            total: Number of chunks in the zone.
            messages: Messages sent to the provider.
            retention: Target retention.
            key_messages: Messages the summary stands for, when that is
                more than ``messages`` (rolling summaries).
            previous_summary: Rolling summary to fold in.
        """
        key_messages = key_messages or messages
        provider_id = self.provider.provider_id
        key = summary_key(key_messages, retention, provider_id)
        started = time.monotonic()
        input_tokens = estimate_messages_tokens(messages)

        try:
            record, hit = await self.engine.cache.get_or_compute(
                key,
                lambda: self._call_provider(key, messages, key_messages, retention, previous_summary),
                MessageRange.of(key_messages),
                frozenset(m.id for m in key_messages),
            )
        except ProviderError as e:
            return self._chunk_failed(zone, index, total, messages, retention, input_tokens, started, e)
        except Exception as e:
            logger.error(f"Unexpected error from {provider_id} on {zone} chunk {index}: {e}")
            error = ProviderError(f"{type(e).__name__}: {e}", provider_id)
            return self._chunk_failed(zone, index, total, messages, retention, input_tokens, started, error)

        duration_ms = (time.monotonic() - started) * 1000
        if hit:
            self.diagnostics.cache_hits += 1
        else:
            self.diagnostics.cache_misses += 1
            self.diagnostics.record_latency(zone, duration_ms)
        self._log_chunk(
            zone, index, total, retention, input_tokens, record.summary_token_count,
            "cached" if hit else "success", duration_ms,
            preview=self._preview(messages), output=record.summary_text,
        )
        return ChunkOutcome(zone, index, messages, retention, record=record, cache_hit=hit)

    def _chunk_failed(
        self,
        zone: BlockZone,
        index: int,
        total: int,
        messages: list[Message],
        retention: float,
        input_tokens: int,
        started: float,
        error: ProviderError,
    ) -> ChunkOutcome:
        duration_ms = (time.monotonic() - started) * 1000
        self.diagnostics.cache_misses += 1
        self.diagnostics.record_latency(zone, duration_ms)
        provider_id = error.provider_id or self.provider.provider_id
        self.diagnostics.provider_errors.append(
            ProviderFailure(zone, index, provider_id, error.reason, str(error))
        )
        logger.warning(f"Summarization of {zone} chunk {index} failed ({error.reason}): {error}")
        self._log_chunk(
            zone, index, total, retention, input_tokens, 0, "error", duration_ms,
            fallback_reason=error.reason, error_message=str(error),
        )
        return ChunkOutcome(zone, index, messages, retention, error=error)

    def record_fallback(
        self,
        zone: BlockZone,
        index: int,
        kept: list[Message],
        dropped: list[Message],
        retention: float,
        reason: str | None = None,
    ) -> FallbackEvent:
        """Record that a chunk was replaced by (part of) its raw messages."""
        if not dropped:
            mode = "raw"
        elif kept:
            mode = "trimmed"
        else:
            mode = "dropped"
        event = FallbackEvent(zone, index, mode, len(kept), len(dropped))
        self.diagnostics.fallbacks.append(event)
        self._log_chunk(
            zone, index, 1, retention,
            estimate_messages_tokens(kept) + estimate_messages_tokens(dropped),
            estimate_messages_tokens(kept),
            "fallback", 0.0,
            fallback_reason=reason or mode,
        )
        return event

    async def gather_chunks(
        self,
        jobs: list[tuple[BlockZone, int, int, list[Message], float]],
    ) -> list[ChunkOutcome]:
        """
        Dispatch every chunk concurrently and wait for all of them.

        Chunks still running at the deadline are cancelled and come back
        as failed outcomes. Results keep the order of ``jobs``.
        """
        if not jobs:
            return []

        tasks = [
            asyncio.create_task(self.summarize_chunk(zone, index, total, chunk, retention))
            for zone, index, total, chunk, retention in jobs
        ]
        done, pending = await asyncio.wait(tasks, timeout=self.remaining())

        if pending:
            self.diagnostics.deadline_exceeded = True
            logger.warning(f"Compaction deadline reached with {len(pending)} chunk(s) unfinished")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        outcomes: list[ChunkOutcome] = []
        for task, (zone, index, _, chunk, retention) in zip(tasks, jobs):
            if task in pending:
                outcomes.append(ChunkOutcome(
                    zone, index, chunk, retention,
                    error=ProviderTimeoutError("Compaction deadline exceeded", self.provider.provider_id),
                ))
            else:
                outcomes.append(task.result())
        return outcomes

    def _preview(self, messages: list[Message]) -> str:
        text = "\n\n".join(f"{m.role}: {m.text}" for m in messages)
        return text[:500] + ("..." if len(text) > 500 else "")

    def _log_chunk(
        self,
        zone: str,
        index: int,
        total: int,
        retention: float,
        input_tokens: int,
        output_tokens: int,
        status: str,
        duration_ms: float,
        fallback_reason: str | None = None,
        error_message: str | None = None,
        preview: str | None = None,
        output: str | None = None,
    ) -> None:
        if not self.config.debug_mode:
            return
        self.diagnostics.chunk_logs.append(SummarizationDebugLog(
            timestamp=time.time(),
            zone=zone,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            retention_rate=retention,
            provider_id=self.provider.provider_id,
            status=status,
            duration_ms=duration_ms,
            chunk_index=index,
            total_chunks=total,
            conversation_id=self.conversation_id,
            fallback_reason=fallback_reason,
            error_message=error_message,
            input_preview=preview,
            output_summary=output,
        ))


class ContextCompactionEngine:
    """
    Public entry point for context compaction.

    Handles:
    - Budget and settings validation before any I/O
    - Strategy selection (trim, flat summarize, smart summarize)
    - Shared summary cache and its invalidation hook
    """

    def __init__(
        self,
        providers: "dict[str, SummarizerProvider] | None" = None,
        counter: TokenCounter | None = None,
        cache: SummaryCache | None = None,
    ):
        """
        Initialize the engine.

        Args:
            providers: Summarizer adapters keyed by configuration id.
            counter: Token counter for messages and summaries.
            cache: Summary cache, shared across calls.
        """
        self.providers = providers or {}
        self.counter = counter or TokenCounter()
        self.cache = cache or SummaryCache()

    @classmethod
    def from_config(cls, config: "Config") -> "ContextCompactionEngine":
        """Build an engine with every configured provider."""
        from chatcompact.providers.registry import create_summarizers

        counter = TokenCounter(config.context.token_counting)
        return cls(
            providers=create_summarizers(config, counter),
            counter=counter,
            cache=SummaryCache(config.context.cache_max_entries),
        )

    def _provider_for(self, provider_id: str) -> "SummarizerProvider":
        provider = self.providers.get(provider_id)
        if provider is None:
            raise ConfigurationError(
                f"No summarizer configured for {provider_id!r} "
                f"(available: {sorted(self.providers) or 'none'})"
            )
        return provider

    def planning_tokens(self, budget: Budget, config: StrategyConfig) -> int:
        """Tokens the strategies plan against."""
        tokens = budget.available_tokens
        if self.counter.approximate:
            tokens = int(tokens * (1 - config.safety_margin))
        return tokens

    async def compact(
        self,
        transcript: list[Message],
        budget: Budget,
        config: StrategyConfig | None = None,
        conversation_id: str | None = None,
    ) -> CompactionResult:
        """
        Produce a bounded context for the next model call.

        Args:
            transcript: Messages, chronological. Never mutated.
            budget: Token budget.
            config: Strategy settings.
            conversation_id: Tags debug logs.

        Returns:
            CompactionResult. Provider failures degrade to raw or trimmed
            content and are reported in diagnostics.

        Raises:
            ConfigurationError: Invalid budget or settings.
        """
        config = config or StrategyConfig()
        budget.validate()
        config.validate()
        strategy = get_strategy(config.strategy)
        provider = self._provider_for(config.provider_id) if strategy.needs_provider else None

        started = time.monotonic()
        messages = self.counter.measure(list(transcript))
        diagnostics = Diagnostics(approximate_counts=self.counter.approximate)
        planning_tokens = self.planning_tokens(budget, config)
        total_tokens = estimate_messages_tokens(messages)

        if total_tokens <= planning_tokens:
            return CompactionResult(
                blocks=[MessageBlock(m, "recent") for m in messages],
                total_tokens=total_tokens,
                strategy_used=config.strategy,
                was_managed=False,
                diagnostics=diagnostics,
            )

        if diagnostics.approximate_counts:
            logger.warning(
                f"Token counts are approximate, planning against {planning_tokens} tokens"
            )
        logger.info(
            f"Compacting context: {total_tokens} tokens exceeds {planning_tokens} "
            f"(strategy={config.strategy})"
        )

        run = CompactionRun(
            self,
            Budget(planning_tokens, min(budget.recent_zone_tokens, planning_tokens)),
            config,
            provider,
            diagnostics,
            conversation_id,
        )
        blocks = await strategy.run(messages, run)

        result_tokens = 0
        for block in blocks:
            result_tokens += block.token_count
            diagnostics.zone_tokens[block.zone] = diagnostics.zone_tokens.get(block.zone, 0) + block.token_count

        if result_tokens > planning_tokens and not diagnostics.still_over_budget:
            diagnostics.still_over_budget = True
            diagnostics.warn(
                f"Compacted context is {result_tokens} tokens, over the {planning_tokens}-token budget"
            )

        diagnostics.elapsed_ms = (time.monotonic() - started) * 1000
        logger.info(
            f"Compaction done: {total_tokens} → {result_tokens} tokens, "
            f"{diagnostics.cache_hits} cache hit(s), {len(diagnostics.fallbacks)} fallback(s)"
        )

        return CompactionResult(
            blocks=blocks,
            total_tokens=result_tokens,
            strategy_used=config.strategy,
            was_managed=True,
            diagnostics=diagnostics,
        )

    def invalidate_range(self, message_range: MessageRange) -> int:
        """Drop cached summaries covering edited or deleted messages."""
        return self.cache.invalidate_range(message_range)

    def clear_cache(self) -> None:
        self.cache.clear()
