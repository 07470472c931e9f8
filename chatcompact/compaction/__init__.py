"""Compaction system for context management."""

from chatcompact.compaction.cache import SummaryCache, summary_key
from chatcompact.compaction.debug import DebugLogStore, SummarizationStats
from chatcompact.compaction.errors import (
    BudgetExceededWarning,
    CompactionError,
    ConfigurationError,
    EmptySummaryError,
    InvalidResponseError,
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    SummaryRefusedError,
)
from chatcompact.compaction.estimator import TokenCounter, estimate_messages_tokens
from chatcompact.compaction.partition import ZonePartitioner
from chatcompact.compaction.pruning import (
    chunk_messages_by_chars,
    split_messages_by_token_share,
    trim_to_budget,
)
from chatcompact.compaction.service import CompactionRun, ContextCompactionEngine
from chatcompact.compaction.strategies import (
    CompactionStrategy,
    FlatSummarizeStrategy,
    TieredSummarizeStrategy,
    TrimStrategy,
    get_strategy,
)
from chatcompact.compaction.types import (
    Budget,
    CompactionResult,
    CompressionLevels,
    Diagnostics,
    Message,
    MessageBlock,
    MessageRange,
    Partition,
    StrategyConfig,
    SummaryBlock,
    SummaryRecord,
    Zone,
)

__all__ = [
    # Engine
    "ContextCompactionEngine",
    "CompactionRun",
    # Strategies
    "CompactionStrategy",
    "TrimStrategy",
    "FlatSummarizeStrategy",
    "TieredSummarizeStrategy",
    "get_strategy",
    # Building blocks
    "TokenCounter",
    "estimate_messages_tokens",
    "ZonePartitioner",
    "SummaryCache",
    "summary_key",
    "DebugLogStore",
    "SummarizationStats",
    "chunk_messages_by_chars",
    "split_messages_by_token_share",
    "trim_to_budget",
    # Types
    "Budget",
    "CompactionResult",
    "CompressionLevels",
    "Diagnostics",
    "Message",
    "MessageBlock",
    "MessageRange",
    "Partition",
    "StrategyConfig",
    "SummaryBlock",
    "SummaryRecord",
    "Zone",
    # Errors
    "CompactionError",
    "ConfigurationError",
    "ProviderError",
    "ProviderAuthError",
    "ProviderRateLimitError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "EmptySummaryError",
    "InvalidResponseError",
    "SummaryRefusedError",
    "BudgetExceededWarning",
]
