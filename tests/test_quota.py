"""
Unit tests for quota reduction.

Tests the precedence between creation records, quota updates and the
chat turn count.
"""

import base64
import json
import random

import pytest

from topic_quota_guard.core.quota import (
    InvalidQuotaRecord,
    MissingCreationRecord,
    QuotaState,
    compute_quota,
    latest_quota_update,
)
from topic_quota_guard.core.records import classify_message
from topic_quota_guard.core.reassembly import LogicalMessage
from topic_quota_guard.core.topics import classify_entries
from topic_quota_guard.storage.models import ChunkInfo, RawEntry


def _records(*contents):
    """Classify contents as a feed, one sequence number each."""
    records = []
    for seq, content in enumerate(contents, start=1):
        message = LogicalMessage(
            message_id=str(seq),
            payload=json.dumps(content).encode("utf-8"),
            timestamp=f"1700000000.{seq:09d}",
            sequence_number=seq,
        )
        records.append(classify_message(message))
    return records


def _creation(chat_count=3, **extra):
    content = {"type": "PROJECT_CREATION", "name": "Demo", "createdAt": "2024-01-01T00:00:00Z"}
    if chat_count is not None:
        content["chatCount"] = chat_count
    content.update(extra)
    return content


def _chat(question="Q?", timestamp="2024-01-02T00:00:00Z"):
    return {"type": "CHAT_TOPIC", "question": question, "answer": "A", "timestamp": timestamp}


class TestQuotaState:
    """Test the QuotaState value object."""

    def test_from_counts_clamps_remaining(self):
        state = QuotaState.from_counts(3, 5)
        assert state.remaining_messages == 0
        assert state.messages_used == 5

    def test_negative_values_rejected(self):
        with pytest.raises(ValueError, match="remaining_messages cannot be negative"):
            QuotaState(total_allowance=1, messages_used=0, remaining_messages=-1)

    def test_to_dict(self):
        assert QuotaState.from_counts(5, 2).to_dict() == {
            "totalAllowance": 5,
            "messagesUsed": 2,
            "remainingMessages": 3,
        }


class TestComputeQuota:
    """Test reduction of a record history into a QuotaState."""

    def test_creation_only(self):
        state = compute_quota(_records(_creation(3)))
        assert state == QuotaState(total_allowance=3, messages_used=0, remaining_messages=3)

    def test_creation_without_count_uses_default(self):
        assert compute_quota(_records(_creation(None))).total_allowance == 3
        assert compute_quota(_records(_creation(None)), default_allowance=7).total_allowance == 7

    def test_creation_usage_quota_seeds_allowance(self):
        state = compute_quota(_records(_creation(None, usageQuota=6)))
        assert state.total_allowance == 6

    def test_project_created_wire_type(self):
        content = _creation(4)
        content["type"] = "PROJECT_CREATED"
        assert compute_quota(_records(content)).remaining_messages == 4

    def test_chats_are_counted(self):
        state = compute_quota(_records(_creation(3), _chat(), _chat()))
        assert state == QuotaState(total_allowance=3, messages_used=2, remaining_messages=1)

    def test_exhausted_feed(self):
        state = compute_quota(_records(_creation(3), _chat(), _chat(), _chat()))
        assert state.remaining_messages == 0

    def test_remaining_never_negative(self):
        state = compute_quota(_records(_creation(1), _chat(), _chat(), _chat()))
        assert state.remaining_messages == 0
        assert state.messages_used == 3

    def test_no_creation_record(self):
        with pytest.raises(MissingCreationRecord, match="Project not found for topic 0.0.7"):
            compute_quota([], topic_id="0.0.7")

    def test_chats_without_creation_record(self):
        with pytest.raises(MissingCreationRecord):
            compute_quota(_records(_chat()))

    def test_authoritative_update_overrides_chat_count(self):
        records = _records(
            _creation(3),
            {
                "type": "MESSAGE_ALLOWANCE_UPDATE",
                "totalAllowance": 5,
                "messagesUsed": 2,
                "timestamp": "2024-01-05T00:00:00Z",
            },
            _chat(timestamp="2024-01-06T00:00:00Z"),
            _chat(timestamp="2024-01-07T00:00:00Z"),
        )

        state = compute_quota(records)

        assert state == QuotaState(total_allowance=5, messages_used=2, remaining_messages=3)

    def test_authoritative_update_with_remaining_only(self):
        records = _records(_creation(3), {
            "type": "MESSAGE_ALLOWANCE_UPDATE",
            "totalAllowance": 10,
            "remainingMessages": 4,
        })

        assert compute_quota(records) == QuotaState(10, 6, 4)

    def test_latest_update_by_record_timestamp(self):
        """The newest record timestamp wins even when it sits earlier in the feed."""
        records = _records(
            _creation(3),
            {
                "type": "MESSAGE_ALLOWANCE_UPDATE",
                "totalAllowance": 20, "messagesUsed": 1,
                "timestamp": "2024-06-01T00:00:00Z",
            },
            {
                "type": "MESSAGE_ALLOWANCE_UPDATE",
                "totalAllowance": 9, "messagesUsed": 1,
                "timestamp": "2024-01-01T00:00:00Z",
            },
        )

        assert compute_quota(records).total_allowance == 20

    def test_timestamp_tie_goes_to_later_sequence(self):
        records = _records(
            _creation(3),
            {"type": "MESSAGE_ALLOWANCE_UPDATE", "totalAllowance": 8, "messagesUsed": 0,
             "timestamp": "2024-01-01T00:00:00Z"},
            {"type": "MESSAGE_ALLOWANCE_UPDATE", "totalAllowance": 6, "messagesUsed": 0,
             "timestamp": "2024-01-01T00:00:00Z"},
        )

        assert latest_quota_update(records).total_allowance == 6
        assert compute_quota(records).total_allowance == 6

    def test_new_total_replaces_allowance_and_counts_chats(self):
        records = _records(
            _creation(3),
            _chat(), _chat(), _chat(),
            {"type": "MESSAGE_ALLOWANCE_UPDATE", "newTotal": 5, "timestamp": "2024-02-01T00:00:00Z"},
            _chat(timestamp="2024-02-02T00:00:00Z"),
        )

        assert compute_quota(records) == QuotaState(5, 4, 1)

    def test_usage_quota_update_means_remaining(self):
        """A bare usageQuota is what remains right after the update."""
        records = _records(
            _creation(3),
            _chat(), _chat(),
            {"type": "CHAT_TOPIC_QUOTA_UPDATE", "usageQuota": 10, "timestamp": "2024-03-01T00:00:00Z"},
        )

        state = compute_quota(records)

        assert state == QuotaState(12, 2, 10)

    def test_usage_quota_update_then_chats(self):
        records = _records(
            _creation(3),
            {"type": "CHAT_TOPIC_QUOTA_UPDATE", "usageQuota": 2, "timestamp": "2024-03-01T00:00:00Z"},
            _chat(timestamp="2024-03-02T00:00:00Z"),
        )

        assert compute_quota(records).remaining_messages == 1

    def test_negative_creation_allowance_is_invalid(self):
        with pytest.raises(InvalidQuotaRecord, match="chatCount cannot be negative"):
            compute_quota(_records(_creation(-1)))

    def test_negative_update_value_is_invalid(self):
        records = _records(_creation(3), {
            "type": "MESSAGE_ALLOWANCE_UPDATE", "totalAllowance": 5, "messagesUsed": -2,
        })
        with pytest.raises(InvalidQuotaRecord):
            compute_quota(records)

    def test_invalid_quota_record_is_value_error(self):
        assert issubclass(InvalidQuotaRecord, ValueError)

    def test_record_order_does_not_matter(self):
        records = _records(_creation(5), _chat(), _chat())
        shuffled = list(records)
        random.Random(3).shuffle(shuffled)

        assert compute_quota(shuffled) == compute_quota(records)


class TestIncompleteGroupsAndQuota:
    """Test quota over a raw feed with chunked records."""

    def _chunks(self, first_seq, content, parts, group_key):
        payload = json.dumps(content).encode("utf-8")
        size = -(-len(payload) // parts)
        slices = [payload[i:i + size] for i in range(0, len(payload), size)]
        return [
            RawEntry(
                sequence_number=first_seq + i,
                consensus_timestamp=f"1700000000.{first_seq + i:09d}",
                message=base64.b64encode(piece).decode("ascii"),
                chunk_info=ChunkInfo(total=len(slices), number=i + 1, group_key=group_key),
            )
            for i, piece in enumerate(slices)
        ]

    def _single(self, seq, content):
        return RawEntry(
            sequence_number=seq,
            consensus_timestamp=f"1700000000.{seq:09d}",
            message=base64.b64encode(json.dumps(content).encode("utf-8")).decode("ascii"),
        )

    def test_chunked_chat_is_counted(self):
        entries = [self._single(1, _creation(3))] + self._chunks(2, _chat("long " * 50), 3, "g1")

        state = compute_quota(classify_entries(entries))

        assert state.messages_used == 1

    def test_incomplete_chat_is_never_counted(self):
        chunks = self._chunks(2, _chat("long " * 50), 3, "g1")
        for missing in range(len(chunks)):
            partial = [c for i, c in enumerate(chunks) if i != missing]
            entries = [self._single(1, _creation(3))] + partial

            records = classify_entries(entries)

            assert compute_quota(records).messages_used == 0
            assert all(r.record_id != "g1" for r in records)
