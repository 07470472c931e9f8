"""Tests for zone partitioning."""

import pytest

from chatcompact.compaction.partition import ZonePartitioner
from chatcompact.compaction.types import Budget, CompressionLevels, Message


def _messages(tokens: list[int]) -> list[Message]:
    return [
        Message(id=f"m{i}", role="user" if i % 2 == 0 else "model", text=f"turn {i}",
                created_at=i, token_count=t)
        for i, t in enumerate(tokens)
    ]


# ── Recent zone ─────────────────────────────────────────────────────


class TestSplitRecent:
    def test_accumulates_until_floor_met(self):
        older, recent = ZonePartitioner().split_recent(_messages([100] * 10), 250)
        assert len(recent) == 3
        assert len(older) == 7

    def test_floor_larger_than_transcript(self):
        older, recent = ZonePartitioner().split_recent(_messages([100] * 3), 1000)
        assert older == []
        assert len(recent) == 3

    def test_zero_floor(self):
        messages = _messages([100] * 3)
        older, recent = ZonePartitioner().split_recent(messages, 0)
        assert older == messages
        assert recent == []


# ── Partition ───────────────────────────────────────────────────────


class TestPartition:
    def test_large_transcript(self):
        """200 x 200 tokens against 30000 / 8000."""
        messages = _messages([200] * 200)
        partition = ZonePartitioner().partition(messages, Budget(30000, 8000))

        assert len(partition.recent.messages) == 40
        assert partition.recent.token_count == 8000
        assert len(partition.archive.messages) + len(partition.mid_term.messages) == 160
        assert len(partition.archive.messages) == 80

    def test_retention_levels_attached(self):
        levels = CompressionLevels(mid_term=0.5, archive=0.25)
        partition = ZonePartitioner(levels).partition(_messages([200] * 200), Budget(30000, 8000))
        assert partition.mid_term.target_retention == 0.5
        assert partition.archive.target_retention == 0.25
        assert partition.recent.target_retention is None

    def test_older_prefix_fits(self):
        partition = ZonePartitioner().partition(_messages([100] * 5), Budget(1000, 200))
        assert not partition.needs_summary
        assert len(partition.fitting_prefix) == 3

    def test_single_older_message_goes_to_archive(self):
        partition = ZonePartitioner().partition(_messages([3000, 1000]), Budget(2000, 1000))
        assert [m.id for m in partition.archive.messages] == ["m0"]
        assert partition.mid_term is None

    def test_oversized_protected_message(self):
        partition = ZonePartitioner().partition(_messages([100, 100, 5000]), Budget(6000, 1000))
        assert [m.id for m in partition.recent.messages] == ["m2"]
        assert partition.oversized_message_ids == ["m2"]

    def test_zero_token_prefix_split_by_count(self):
        # Recent fills the budget, so even a zero-token prefix does not "fit"
        messages = _messages([0, 0, 0, 0, 1000])
        partition = ZonePartitioner().partition(messages, Budget(1000, 1000, reserved_tokens=1))
        assert partition.archive is not None and partition.mid_term is not None
        assert len(partition.archive.messages) == 2
        assert len(partition.mid_term.messages) == 2

    @pytest.mark.parametrize("max_tokens,recent_tokens", [
        (30000, 8000),
        (12000, 2000),
        (5000, 4000),
        (41000, 500),
    ])
    def test_zones_never_interleave(self, max_tokens, recent_tokens):
        tokens = [50 + (i * 37) % 400 for i in range(150)]
        messages = _messages(tokens)
        partition = ZonePartitioner().partition(messages, Budget(max_tokens, recent_tokens))

        assert partition.older_messages + list(partition.recent.messages) == messages
        if partition.archive and partition.mid_term:
            assert partition.archive.messages[-1].created_at < partition.mid_term.messages[0].created_at
            assert partition.mid_term.messages[-1].created_at < partition.recent.messages[0].created_at
