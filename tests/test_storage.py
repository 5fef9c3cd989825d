"""
Unit tests for storage layer.

Tests schema creation, topic creation, chunked appends and feed retrieval.
"""

import base64
import os
import tempfile

import pytest

from topic_quota_guard.storage.db import get_connection
from topic_quota_guard.storage.repository import (
    AppendFailure,
    LocalTopicLedger,
    UpstreamFetchFailure,
    format_consensus_timestamp,
    split_payload,
)


def _fixed_clock(start: int = 1_700_000_000_000_000_000):
    """Clock that always returns the same instant."""
    return lambda: start


class TestLedgerSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify tables are created correctly."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            LocalTopicLedger(db_path).initialize_schema()

            conn = get_connection(db_path)
            try:
                cursor = conn.execute("""
                    SELECT name FROM sqlite_master
                    WHERE type='table' AND name IN ('topic', 'topic_message')
                    ORDER BY name
                """)
                tables = [row[0] for row in cursor.fetchall()]
                assert tables == ["topic", "topic_message"]

                cursor = conn.execute("PRAGMA table_info(topic_message)")
                column_names = [col[1] for col in cursor.fetchall()]
                assert column_names == [
                    'id', 'topic_id', 'sequence_number', 'consensus_timestamp',
                    'message', 'chunk_total', 'chunk_number', 'group_key'
                ]
            finally:
                conn.close()

    def test_schema_creation_is_idempotent(self):
        """Initializing twice keeps existing topics."""
        with tempfile.TemporaryDirectory() as temp_dir:
            ledger = LocalTopicLedger(os.path.join(temp_dir, "test.db"))
            ledger.initialize_schema()
            ledger.create_topic("first")
            ledger.initialize_schema()

            assert [t.memo for t in ledger.list_topics()] == ["first"]


class TestHelpers:
    """Test timestamp and chunking helpers."""

    def test_format_consensus_timestamp(self):
        assert format_consensus_timestamp(1_700_000_000_000_000_005) == "1700000000.000000005"

    def test_split_payload(self):
        assert split_payload(b"abcdefg", 3) == [b"abc", b"def", b"g"]

    def test_split_empty_payload(self):
        assert split_payload(b"", 3) == [b""]

    def test_split_payload_rejects_zero_chunk_size(self):
        with pytest.raises(ValueError, match="chunk_size must be > 0"):
            split_payload(b"abc", 0)


class TestLocalTopicLedger:
    """Test appends and reads on the local ledger."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        self.ledger = LocalTopicLedger(self.db_path, chunk_size=4, clock=_fixed_clock())
        self.ledger.initialize_schema()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_create_topic_ids(self):
        """Topic ids are allocated sequentially."""
        first = self.ledger.create_topic("one")
        second = self.ledger.create_topic("two")

        assert first == "0.0.1001"
        assert second == "0.0.1002"
        assert [t.topic_id for t in self.ledger.list_topics()] == [first, second]

    def test_single_chunk_message_has_no_chunk_info(self):
        """A payload within the chunk size is stored as one plain entry."""
        topic_id = self.ledger.create_topic()
        receipt = self.ledger.submit_message(topic_id, b"hi")

        entries = self.ledger.get_topic_entries(topic_id)
        assert len(entries) == 1
        assert entries[0].chunk_info is None
        assert base64.b64decode(entries[0].message) == b"hi"
        assert receipt.sequence_numbers == (1,)
        assert receipt.status == "SUCCESS"

    def test_large_message_is_chunked(self):
        """A payload above the chunk size is split into ordered chunks."""
        topic_id = self.ledger.create_topic()
        receipt = self.ledger.submit_message(topic_id, b"0123456789")

        entries = self.ledger.get_topic_entries(topic_id)
        assert [e.sequence_number for e in entries] == [1, 2, 3]
        assert [e.chunk_info.number for e in entries] == [1, 2, 3]
        assert all(e.chunk_info.total == 3 for e in entries)
        assert len({e.chunk_info.group_key for e in entries}) == 1
        assert b"".join(base64.b64decode(e.message) for e in entries) == b"0123456789"
        assert receipt.sequence_numbers == (1, 2, 3)
        assert receipt.consensus_timestamp == entries[-1].consensus_timestamp
        assert receipt.transaction_id.endswith(entries[0].chunk_info.group_key)

    def test_sequence_and_timestamps_strictly_increase(self):
        """Sequence numbers and consensus times increase even with a frozen clock."""
        topic_id = self.ledger.create_topic()
        for payload in (b"a", b"bb", b"0123456789", b"c"):
            self.ledger.submit_message(topic_id, payload)

        entries = self.ledger.get_topic_entries(topic_id)
        sequences = [e.sequence_number for e in entries]
        nanos = [
            int(e.consensus_timestamp.replace(".", ""))
            for e in entries
        ]
        assert sequences == list(range(1, len(entries) + 1))
        assert nanos == sorted(set(nanos))

    def test_sequence_numbers_are_per_topic(self):
        """Each topic has its own sequence."""
        first = self.ledger.create_topic()
        second = self.ledger.create_topic()
        self.ledger.submit_message(first, b"a")
        self.ledger.submit_message(first, b"b")
        receipt = self.ledger.submit_message(second, b"c")

        assert receipt.sequence_numbers == (1,)

    def test_submit_to_unknown_topic_fails(self):
        """Appending to a topic that doesn't exist raises AppendFailure."""
        with pytest.raises(AppendFailure, match="Topic 0.0.9999 not found") as exc_info:
            self.ledger.submit_message("0.0.9999", b"hello")
        assert exc_info.value.topic_id == "0.0.9999"

    def test_fetch_unknown_topic_fails(self):
        """Reading a topic that doesn't exist raises UpstreamFetchFailure."""
        with pytest.raises(UpstreamFetchFailure) as exc_info:
            self.ledger.get_topic_entries("0.0.9999")
        assert exc_info.value.status_code == 404

    def test_empty_topic_has_no_entries(self):
        topic_id = self.ledger.create_topic()
        assert self.ledger.get_topic_entries(topic_id) == []

    def test_invalid_chunk_size(self):
        with pytest.raises(ValueError, match="chunk_size must be > 0"):
            LocalTopicLedger(self.db_path, chunk_size=0)
