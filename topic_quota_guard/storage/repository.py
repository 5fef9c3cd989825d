"""
Local append-only topic ledger.

Stores topic messages in SQLite the way the ledger network serves them:
every topic has strictly increasing sequence numbers, consensus timestamps,
base64 payloads, and payloads larger than the chunk size are split into
ordered chunks that share the initial transaction's valid-start time.
"""

import base64
import logging
import time
from typing import Callable, List, Optional

from .db import connection
from .models import ChunkInfo, RawEntry, SubmitReceipt, TopicInfo

logger = logging.getLogger(__name__)

FIRST_TOPIC_NUM = 1001


class AppendFailure(Exception):
    """Raised when a message cannot be appended to a topic."""

    def __init__(self, message: str, topic_id: Optional[str] = None):
        super().__init__(message)
        self.topic_id = topic_id


class UpstreamFetchFailure(Exception):
    """Raised when a topic feed cannot be read."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def format_consensus_timestamp(nanos: int) -> str:
    """Render nanoseconds since the epoch as ``seconds.nanoseconds``."""
    return f"{nanos // 1_000_000_000}.{nanos % 1_000_000_000:09d}"


def _parse_consensus_timestamp(value: str) -> int:
    seconds, _, fraction = value.partition(".")
    return int(seconds) * 1_000_000_000 + int(fraction.ljust(9, "0")[:9])


def split_payload(payload: bytes, chunk_size: int) -> List[bytes]:
    """Split a payload into chunks of at most ``chunk_size`` bytes.

    An empty payload still produces one (empty) chunk.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")
    if not payload:
        return [b""]
    return [payload[i:i + chunk_size] for i in range(0, len(payload), chunk_size)]


class LocalTopicLedger:
    """SQLite-backed topic feed that supports both reads and appends.

    This is an append-only ledger: rows are only ever inserted. It serves
    as the submit primitive for the conversation recorder and as an
    offline stand-in for the mirror service.
    """

    def __init__(
        self,
        db_path: str = "topic_quota_guard.db",
        chunk_size: int = 1024,
        operator_id: str = "0.0.2",
        clock: Optional[Callable[[], int]] = None,
    ):
        """Initialize the ledger.

        Args:
            db_path: Path to SQLite database file
            chunk_size: Maximum payload bytes per stored chunk
            operator_id: Account recorded as payer in transaction ids
            clock: Returns the current time in nanoseconds (defaults to time.time_ns)
        """
        if chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        self.db_path = db_path
        self.chunk_size = chunk_size
        self.operator_id = operator_id
        self._clock = clock or time.time_ns

    def initialize_schema(self) -> None:
        """Create the topic and topic_message tables if they don't exist."""
        with connection(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS topic (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    topic_id TEXT NOT NULL UNIQUE,
                    memo TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS topic_message (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    topic_id TEXT NOT NULL REFERENCES topic(topic_id),
                    sequence_number INTEGER NOT NULL,
                    consensus_timestamp TEXT NOT NULL,
                    message TEXT NOT NULL,
                    chunk_total INTEGER,
                    chunk_number INTEGER,
                    group_key TEXT,
                    UNIQUE (topic_id, sequence_number)
                )
            """)
            conn.commit()

    def create_topic(self, memo: str = "") -> str:
        """Create a new topic and return its id (``0.0.<n>``)."""
        with connection(self.db_path) as conn:
            row = conn.execute("SELECT COALESCE(MAX(id), 0) FROM topic").fetchone()
            topic_id = f"0.0.{FIRST_TOPIC_NUM + row[0]}"
            created_at = format_consensus_timestamp(self._clock())
            conn.execute(
                "INSERT INTO topic (topic_id, memo, created_at) VALUES (?, ?, ?)",
                (topic_id, memo, created_at),
            )
            conn.commit()
        logger.info("Created topic %s (%s)", topic_id, memo)
        return topic_id

    def list_topics(self) -> List[TopicInfo]:
        """Return every topic in creation order."""
        with connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT topic_id, memo, created_at FROM topic ORDER BY id"
            ).fetchall()
        return [TopicInfo(topic_id=r["topic_id"], memo=r["memo"], created_at=r["created_at"]) for r in rows]

    def submit_message(self, topic_id: str, payload: bytes) -> SubmitReceipt:
        """Append one logical message, chunking it when it is too large.

        All chunks are written in a single transaction so a reader never
        sees a partially appended message from this ledger.

        Args:
            topic_id: Target topic
            payload: Message bytes

        Returns:
            SubmitReceipt with the transaction id and assigned sequence numbers

        Raises:
            AppendFailure: If the topic doesn't exist or the write fails
        """
        chunks = split_payload(payload, self.chunk_size)
        with connection(self.db_path) as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                if not self._topic_exists(conn, topic_id):
                    raise AppendFailure(f"Topic {topic_id} not found", topic_id=topic_id)

                row = conn.execute(
                    "SELECT sequence_number, consensus_timestamp FROM topic_message "
                    "WHERE topic_id = ? ORDER BY sequence_number DESC LIMIT 1",
                    (topic_id,),
                ).fetchone()
                next_seq = row["sequence_number"] + 1 if row else 1
                # Consensus time must keep increasing even if the clock doesn't
                last_nanos = _parse_consensus_timestamp(row["consensus_timestamp"]) if row else 0
                start = max(self._clock(), last_nanos + 1)
                valid_start = format_consensus_timestamp(start)
                transaction_id = f"{self.operator_id}@{valid_start}"

                sequence_numbers = []
                total = len(chunks)
                for index, chunk in enumerate(chunks):
                    chunked = total > 1
                    conn.execute("""
                        INSERT INTO topic_message
                        (topic_id, sequence_number, consensus_timestamp, message,
                         chunk_total, chunk_number, group_key)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                    """, (
                        topic_id,
                        next_seq + index,
                        format_consensus_timestamp(start + index),
                        base64.b64encode(chunk).decode("ascii"),
                        total if chunked else None,
                        index + 1 if chunked else None,
                        valid_start if chunked else None,
                    ))
                    sequence_numbers.append(next_seq + index)
                conn.commit()
            except AppendFailure:
                conn.rollback()
                raise
            except Exception as e:
                conn.rollback()
                raise AppendFailure(f"Failed to append to topic {topic_id}: {e}", topic_id=topic_id) from e

        logger.info(
            "Appended %d byte message to %s as %d chunk(s), sequence %s",
            len(payload), topic_id, total, sequence_numbers[0],
        )
        return SubmitReceipt(
            topic_id=topic_id,
            transaction_id=transaction_id,
            sequence_numbers=tuple(sequence_numbers),
            consensus_timestamp=format_consensus_timestamp(start + total - 1),
        )

    def get_topic_entries(self, topic_id: str) -> List[RawEntry]:
        """Fetch the full feed of a topic in ascending sequence order.

        Raises:
            UpstreamFetchFailure: If the topic doesn't exist
        """
        with connection(self.db_path) as conn:
            if not self._topic_exists(conn, topic_id):
                raise UpstreamFetchFailure(f"Topic {topic_id} not found", status_code=404)
            rows = conn.execute("""
                SELECT sequence_number, consensus_timestamp, message,
                       chunk_total, chunk_number, group_key
                FROM topic_message
                WHERE topic_id = ?
                ORDER BY sequence_number ASC
            """, (topic_id,)).fetchall()

        entries = []
        for row in rows:
            chunk_info = None
            if row["chunk_total"] is not None:
                chunk_info = ChunkInfo(
                    total=row["chunk_total"],
                    number=row["chunk_number"],
                    group_key=row["group_key"],
                )
            entries.append(RawEntry(
                sequence_number=row["sequence_number"],
                consensus_timestamp=row["consensus_timestamp"],
                message=row["message"],
                chunk_info=chunk_info,
                topic_id=topic_id,
            ))
        return entries

    @staticmethod
    def _topic_exists(conn, topic_id: str) -> bool:
        row = conn.execute("SELECT 1 FROM topic WHERE topic_id = ?", (topic_id,)).fetchone()
        return row is not None
