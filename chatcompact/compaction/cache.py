"""Content-addressed summary cache with single-flight semantics."""

import asyncio
import hashlib
from collections import OrderedDict
from dataclasses import dataclass
from typing import Awaitable, Callable

from loguru import logger

from chatcompact.compaction.errors import ProviderTimeoutError
from chatcompact.compaction.types import Message, MessageRange, SummaryRecord

# Maximum number of summaries kept before LRU eviction
DEFAULT_MAX_ENTRIES = 512


def summary_key(messages: list[Message], target_retention: float, provider_id: str) -> str:
    """
    Compute the cache key for summarizing ``messages``.

    The key covers every message id in the range, the retention level and
    the provider identity.
    """
    ids_signature = "|".join(m.id for m in messages)
    raw_key = f"{ids_signature}:{target_retention:.4f}:{provider_id}"
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


@dataclass
class _Pending:
    future: "asyncio.Future[SummaryRecord]"
    message_range: MessageRange | None
    message_ids: frozenset[str]

    def affected_by(self, changed: MessageRange) -> bool:
        # Unknown source: assume the change touches it
        if self.message_range is None:
            return True
        return self.message_range.affected_by(changed, self.message_ids)


class SummaryCache:
    """
    Stores summaries by key and deduplicates in-flight computations.

    Meant to be shared by every compaction running on one event loop.
    Concurrent requests for a key that is already being computed await
    the same future instead of calling the provider again.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES):
        self.max_entries = max_entries
        self._records: OrderedDict[str, SummaryRecord] = OrderedDict()
        self._inflight: dict[str, _Pending] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: str) -> bool:
        return key in self._records

    def get(self, key: str) -> SummaryRecord | None:
        record = self._records.get(key)
        if record is not None:
            self._records.move_to_end(key)
        return record

    def put(self, record: SummaryRecord) -> None:
        """Store a record, overwriting an equivalent one for the same key."""
        self._records[record.key] = record
        self._records.move_to_end(record.key)
        while len(self._records) > self.max_entries:
            evicted, _ = self._records.popitem(last=False)
            logger.debug(f"Summary cache full, evicted {evicted[:12]}")

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[SummaryRecord]],
        message_range: MessageRange | None = None,
        message_ids: frozenset[str] = frozenset(),
    ) -> tuple[SummaryRecord, bool]:
        """
        Return the cached record for ``key`` or compute it once.

        Args:
            key: Cache key.
            compute: Coroutine factory producing the record on a miss.
            message_range: Messages the record will stand for, so an
                invalidation can reach the computation while it runs.
            message_ids: Ids of those messages.

        Returns:
            Tuple of (record, cache_hit). Joining an in-flight computation
            counts as a hit.

        Raises:
            Whatever ``compute`` raises, re-raised to every waiter.
        """
        record = self.get(key)
        if record is not None:
            self.hits += 1
            logger.debug(f"Summary cache hit {key[:12]}")
            return record, True

        pending = self._inflight.get(key)
        if pending is not None:
            self.hits += 1
            logger.debug(f"Joining in-flight summary {key[:12]}")
            # Shield so a cancelled waiter does not cancel the shared work
            return await asyncio.shield(pending.future), True

        self.misses += 1
        pending = _Pending(asyncio.get_running_loop().create_future(), message_range, message_ids)
        self._inflight[key] = pending
        try:
            record = await compute()
        except BaseException as e:
            if isinstance(e, asyncio.CancelledError):
                error: BaseException = ProviderTimeoutError("In-flight summarization was abandoned")
            else:
                error = e
            pending.future.set_exception(error)
            # Mark retrieved so an unawaited future does not log on collection
            pending.future.exception()
            raise
        else:
            # Invalidated while computing: hand the result to current waiters only
            if self._inflight.get(key) is pending:
                self.put(record)
            else:
                logger.debug(f"Summary {key[:12]} went stale while computing, not cached")
            pending.future.set_result(record)
            return record, False
        finally:
            if self._inflight.get(key) is pending:
                del self._inflight[key]

    def invalidate_range(self, message_range: MessageRange) -> int:
        """
        Evict every summary whose source messages overlap ``message_range``.

        Called by the conversation store when messages are edited or
        deleted. Summaries still being computed for an affected range are
        detached: their waiters get the result but it is never stored, and
        later requests compute afresh.

        Returns:
            Number of evicted summaries, in-flight ones included.
        """
        stale = [
            key for key, record in self._records.items()
            if record.affected_by(message_range)
        ]
        for key in stale:
            del self._records[key]

        detached = [
            key for key, pending in self._inflight.items()
            if pending.affected_by(message_range)
        ]
        for key in detached:
            del self._inflight[key]

        if stale or detached:
            logger.info(
                f"Invalidated {len(stale)} cached and {len(detached)} in-flight summaries "
                f"overlapping {message_range.start_id}..{message_range.end_id}"
            )
        return len(stale) + len(detached)

    def clear(self) -> None:
        self._records.clear()
        self.hits = 0
        self.misses = 0
