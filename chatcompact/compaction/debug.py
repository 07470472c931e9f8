"""Persistent store for summarization debug logs."""

import json
import time
from dataclasses import asdict, dataclass
from pathlib import Path

from loguru import logger

from chatcompact.compaction.types import Diagnostics, SummarizationDebugLog

MAX_LOGS = 100
MAX_AGE_SECONDS = 7 * 24 * 60 * 60  # keep logs for 7 days


@dataclass
class SummarizationStats:
    """Aggregated debug statistics for one conversation."""

    conversation_id: str
    total_summarizations: int = 0
    success_count: int = 0
    cached_count: int = 0
    fallback_count: int = 0
    error_count: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    average_duration_ms: float = 0.0
    average_compression_ratio: float = 0.0


class DebugLogStore:
    """
    Keeps the most recent summarization debug logs.

    Logs come from ``Diagnostics.chunk_logs`` of compactions run in debug
    mode. When a path is given, logs are persisted as JSON and entries
    older than seven days are dropped on load.
    """

    def __init__(self, path: Path | None = None, max_logs: int = MAX_LOGS):
        self.path = path
        self.max_logs = max_logs
        self._logs: list[SummarizationDebugLog] = []
        if path is not None:
            self._load()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            self._logs = [SummarizationDebugLog(**item) for item in raw][-self.max_logs:]
        except (json.JSONDecodeError, TypeError, OSError) as e:
            logger.error(f"Failed to load summarization debug logs from {self.path}: {e}")
            self._logs = []
            return

        cutoff = time.time() - MAX_AGE_SECONDS
        before = len(self._logs)
        self._logs = [log for log in self._logs if log.timestamp > cutoff]
        if len(self._logs) < before:
            logger.info(f"Cleaned {before - len(self._logs)} old summarization debug logs")
            self._save()

    def _save(self) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps([asdict(log) for log in self._logs]), encoding="utf-8"
            )
        except OSError as e:
            logger.error(f"Failed to save summarization debug logs to {self.path}: {e}")

    def add(self, *logs: SummarizationDebugLog) -> None:
        """Append logs, keeping only the newest ``max_logs``."""
        self._logs.extend(logs)
        if len(self._logs) > self.max_logs:
            self._logs = self._logs[-self.max_logs:]
        self._save()

    def record(self, conversation_id: str, diagnostics: Diagnostics) -> int:
        """
        Store the chunk logs of one compaction.

        Returns:
            Number of logs added.
        """
        for log in diagnostics.chunk_logs:
            log.conversation_id = log.conversation_id or conversation_id
        self.add(*diagnostics.chunk_logs)
        return len(diagnostics.chunk_logs)

    def logs(self) -> list[SummarizationDebugLog]:
        return list(self._logs)

    def conversation_logs(self, conversation_id: str) -> list[SummarizationDebugLog]:
        return [log for log in self._logs if log.conversation_id == conversation_id]

    def conversation_stats(self, conversation_id: str) -> SummarizationStats:
        logs = self.conversation_logs(conversation_id)
        stats = SummarizationStats(conversation_id=conversation_id)
        if not logs:
            return stats

        stats.total_summarizations = len(logs)
        stats.success_count = sum(1 for log in logs if log.status == "success")
        stats.cached_count = sum(1 for log in logs if log.status == "cached")
        stats.fallback_count = sum(1 for log in logs if log.status == "fallback")
        stats.error_count = sum(1 for log in logs if log.status == "error")
        stats.total_input_tokens = sum(log.input_tokens for log in logs)
        stats.total_output_tokens = sum(log.output_tokens for log in logs)
        stats.average_duration_ms = sum(log.duration_ms for log in logs) / len(logs)

        ratios = [log.output_tokens / log.input_tokens for log in logs if log.input_tokens]
        stats.average_compression_ratio = sum(ratios) / len(ratios) if ratios else 0.0
        return stats

    def clear(self) -> None:
        self._logs = []
        self._save()
