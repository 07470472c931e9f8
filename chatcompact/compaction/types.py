"""Types for compaction system."""

import time
from dataclasses import dataclass, field
from typing import Literal

from loguru import logger

from chatcompact.compaction.errors import BudgetExceededWarning, ConfigurationError

Role = Literal["user", "model", "system"]
ZoneKind = Literal["recent", "mid_term", "archive"]
BlockZone = Literal["recent", "history", "mid_term", "archive", "rolling"]
StrategyName = Literal["trim", "summarize", "smart_summarize"]
DebugStatus = Literal["success", "cached", "fallback", "error"]

VALID_ROLES = ("user", "model", "system")
VALID_STRATEGIES = ("trim", "summarize", "smart_summarize")

# Constants
DEFAULT_MAX_CONTEXT_TOKENS = 8192
DEFAULT_RECENT_ZONE_TOKENS = 35_000
DEFAULT_CHUNK_SIZE = 12_000  # characters
DEFAULT_MAX_CONCURRENCY = 3
DEFAULT_PROVIDER_TIMEOUT_SECONDS = 60.0
DEFAULT_DEADLINE_SECONDS = 120.0
DEFAULT_SAFETY_MARGIN = 0.05  # 5% headroom when token counts are approximate
IMAGE_TOKENS = 258
MIN_SUMMARY_RATIO = 0.1  # summaries shorter than 10% of target are rejected
MAX_SUMMARY_TOKENS = 4000

MID_TERM_RETENTION_RANGE = (0.3, 0.7)
ARCHIVE_RETENTION_RANGE = (0.1, 0.4)

ZONE_LABELS = {
    "archive": "Archive Summary",
    "mid_term": "Mid-term Summary",
    "rolling": "Context Summary",
}


@dataclass(frozen=True)
class Message:
    """A single transcript message. Owned by the conversation store."""

    id: str
    role: Role
    text: str
    created_at: int  # monotonic sequence position
    token_count: int | None = None
    has_image: bool = False

    def __post_init__(self) -> None:
        if self.role not in VALID_ROLES:
            raise ValueError(f"Unknown role {self.role!r} for message {self.id}")
        if self.token_count is not None and self.token_count < 0:
            raise ValueError(f"Negative token count for message {self.id}")

    @property
    def tokens(self) -> int:
        return self.token_count or 0

    def as_chat_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.text}


@dataclass(frozen=True)
class MessageRange:
    """Inclusive, chronological range of messages."""

    start_id: str
    end_id: str
    start_seq: int
    end_seq: int

    @classmethod
    def of(cls, messages: "list[Message] | tuple[Message, ...]") -> "MessageRange":
        if not messages:
            raise ValueError("Cannot build a range from no messages")
        first, last = messages[0], messages[-1]
        return cls(first.id, last.id, first.created_at, last.created_at)

    def overlaps(self, other: "MessageRange") -> bool:
        return self.start_seq <= other.end_seq and other.start_seq <= self.end_seq

    def contains(self, message: Message) -> bool:
        return self.start_seq <= message.created_at <= self.end_seq

    def affected_by(self, changed: "MessageRange", member_ids: frozenset[str] = frozenset()) -> bool:
        """
        Whether a change to ``changed`` touches the messages in this range.

        Sequence positions are only unique within one conversation. When
        ``member_ids`` lists the messages this range stands for, a changed
        endpoint that falls inside the range must be one of them; ranges
        of other conversations then never match.
        """
        if not self.overlaps(changed):
            return False
        if not member_ids:
            return True
        if self.start_seq <= changed.start_seq <= self.end_seq:
            return changed.start_id in member_ids
        if self.start_seq <= changed.end_seq <= self.end_seq:
            return changed.end_id in member_ids
        # The change spans this whole range
        return True


@dataclass(frozen=True)
class Budget:
    """Token budget for one compaction call."""

    max_context_tokens: int
    recent_zone_tokens: int
    reserved_tokens: int = 0  # system prompt and other fixed overhead

    def validate(self) -> None:
        if self.max_context_tokens <= 0:
            raise ConfigurationError(
                f"max_context_tokens must be positive, got {self.max_context_tokens}"
            )
        if self.recent_zone_tokens < 0:
            raise ConfigurationError("recent_zone_tokens must not be negative")
        if self.recent_zone_tokens > self.max_context_tokens:
            raise ConfigurationError(
                f"recent_zone_tokens ({self.recent_zone_tokens}) exceeds "
                f"max_context_tokens ({self.max_context_tokens})"
            )
        if not 0 <= self.reserved_tokens < self.max_context_tokens:
            raise ConfigurationError(
                f"reserved_tokens must be in [0, {self.max_context_tokens}), "
                f"got {self.reserved_tokens}"
            )

    @property
    def available_tokens(self) -> int:
        return self.max_context_tokens - self.reserved_tokens


@dataclass(frozen=True)
class CompressionLevels:
    """Target retention per summarized zone."""

    mid_term: float = 0.4
    archive: float = 0.2

    def validate(self) -> None:
        low, high = MID_TERM_RETENTION_RANGE
        if not low <= self.mid_term <= high:
            raise ConfigurationError(
                f"mid_term retention must be in [{low}, {high}], got {self.mid_term}"
            )
        low, high = ARCHIVE_RETENTION_RANGE
        if not low <= self.archive <= high:
            raise ConfigurationError(
                f"archive retention must be in [{low}, {high}], got {self.archive}"
            )
        if self.archive > self.mid_term:
            raise ConfigurationError(
                f"archive retention ({self.archive}) must not exceed "
                f"mid_term retention ({self.mid_term})"
            )


@dataclass(frozen=True)
class StrategyConfig:
    """Per-call compaction settings."""

    strategy: StrategyName = "smart_summarize"
    provider_id: str = "gemini"
    chunk_size: int = DEFAULT_CHUNK_SIZE
    compression_levels: CompressionLevels = field(default_factory=CompressionLevels)
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    provider_timeout_seconds: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS
    deadline_seconds: float = DEFAULT_DEADLINE_SECONDS
    safety_margin: float = DEFAULT_SAFETY_MARGIN
    debug_mode: bool = False
    hint: str | None = None  # extra summarization instructions

    def validate(self) -> None:
        if self.strategy not in VALID_STRATEGIES:
            raise ConfigurationError(f"Unknown strategy {self.strategy!r}")
        if self.chunk_size <= 0:
            raise ConfigurationError("chunk_size must be positive")
        if self.max_concurrency < 1:
            raise ConfigurationError("max_concurrency must be at least 1")
        if self.provider_timeout_seconds <= 0 or self.deadline_seconds <= 0:
            raise ConfigurationError("timeouts must be positive")
        if not 0 <= self.safety_margin < 1:
            raise ConfigurationError("safety_margin must be in [0, 1)")
        if self.strategy == "smart_summarize":
            self.compression_levels.validate()


@dataclass(frozen=True)
class Zone:
    """A contiguous slice of the transcript."""

    kind: ZoneKind
    messages: tuple[Message, ...]
    target_retention: float | None = None

    @property
    def message_range(self) -> MessageRange | None:
        return MessageRange.of(self.messages) if self.messages else None

    @property
    def token_count(self) -> int:
        return sum(m.tokens for m in self.messages)


@dataclass
class Partition:
    """Result of splitting a transcript into zones."""

    recent: Zone
    mid_term: Zone | None = None
    archive: Zone | None = None
    # Older messages that fit without summarization
    fitting_prefix: tuple[Message, ...] = ()
    oversized_message_ids: list[str] = field(default_factory=list)

    @property
    def needs_summary(self) -> bool:
        return self.mid_term is not None or self.archive is not None

    @property
    def older_messages(self) -> list[Message]:
        older = list(self.fitting_prefix)
        for zone in (self.archive, self.mid_term):
            if zone is not None:
                older.extend(zone.messages)
        return older


@dataclass(frozen=True)
class SummaryRecord:
    """A cached summary of a message range at a retention level."""

    key: str
    summary_text: str
    source_token_count: int
    summary_token_count: int
    provider_id: str
    message_range: MessageRange
    target_retention: float
    produced_at: float = field(default_factory=time.time)
    message_ids: frozenset[str] = frozenset()

    def affected_by(self, changed: MessageRange) -> bool:
        return self.message_range.affected_by(changed, self.message_ids)

    @property
    def compression_ratio(self) -> float:
        if not self.source_token_count:
            return 0.0
        return self.summary_token_count / self.source_token_count


@dataclass(frozen=True)
class MessageBlock:
    """A verbatim transcript message in the assembled context."""

    message: Message
    zone: BlockZone = "recent"

    @property
    def token_count(self) -> int:
        return self.message.tokens

    def as_chat_message(self) -> dict[str, str]:
        return self.message.as_chat_message()


@dataclass(frozen=True)
class SummaryBlock:
    """Concatenated chunk summaries standing in for a run of messages."""

    zone: BlockZone
    records: tuple[SummaryRecord, ...]
    message_count: int
    token_count: int

    @property
    def text(self) -> str:
        return "\n\n".join(r.summary_text for r in self.records)

    @property
    def message_range(self) -> MessageRange:
        first, last = self.records[0].message_range, self.records[-1].message_range
        return MessageRange(first.start_id, last.end_id, first.start_seq, last.end_seq)

    def render(self) -> str:
        label = ZONE_LABELS.get(self.zone, "Summary")
        return f"[{label} - {self.message_count} messages compressed]:\n{self.text}"

    def as_chat_message(self) -> dict[str, str]:
        return {"role": "model", "content": self.render()}


ContentBlock = MessageBlock | SummaryBlock


@dataclass
class SummarizationDebugLog:
    """One summarization attempt, collected in debug mode."""

    timestamp: float
    zone: str
    input_tokens: int
    output_tokens: int
    retention_rate: float
    provider_id: str
    status: DebugStatus
    duration_ms: float
    chunk_index: int = 0
    total_chunks: int = 1
    conversation_id: str | None = None
    fallback_reason: str | None = None
    error_message: str | None = None
    input_preview: str | None = None
    output_summary: str | None = None


@dataclass
class ProviderFailure:
    zone: str
    chunk_index: int
    provider_id: str
    reason: str
    message: str


@dataclass
class FallbackEvent:
    zone: str
    chunk_index: int
    mode: Literal["raw", "trimmed", "dropped"]
    messages_kept: int
    messages_dropped: int


@dataclass
class Diagnostics:
    """Side-channel describing how a compaction was produced."""

    cache_hits: int = 0
    cache_misses: int = 0
    provider_errors: list[ProviderFailure] = field(default_factory=list)
    fallbacks: list[FallbackEvent] = field(default_factory=list)
    warnings: list[BudgetExceededWarning] = field(default_factory=list)
    zone_tokens: dict[str, int] = field(default_factory=dict)
    zone_latency_ms: dict[str, float] = field(default_factory=dict)
    chunk_logs: list[SummarizationDebugLog] = field(default_factory=list)
    approximate_counts: bool = False
    still_over_budget: bool = False
    deadline_exceeded: bool = False
    elapsed_ms: float = 0.0

    @property
    def cache_hit_ratio(self) -> float:
        lookups = self.cache_hits + self.cache_misses
        return self.cache_hits / lookups if lookups else 0.0

    def warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(BudgetExceededWarning(message))

    def record_latency(self, zone: str, duration_ms: float) -> None:
        self.zone_latency_ms[zone] = max(self.zone_latency_ms.get(zone, 0.0), duration_ms)


@dataclass
class CompactionResult:
    """Bounded context ready for prompt assembly."""

    blocks: list[ContentBlock]
    total_tokens: int
    strategy_used: StrategyName
    was_managed: bool
    diagnostics: Diagnostics = field(default_factory=Diagnostics)

    @property
    def messages(self) -> list[Message]:
        return [b.message for b in self.blocks if isinstance(b, MessageBlock)]

    @property
    def summaries(self) -> list[SummaryBlock]:
        return [b for b in self.blocks if isinstance(b, SummaryBlock)]

    def as_chat_messages(self) -> list[dict[str, str]]:
        return [b.as_chat_message() for b in self.blocks]
