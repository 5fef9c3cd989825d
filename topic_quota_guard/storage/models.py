"""
Data models for storage layer.

Defines raw feed entries as read from a topic and receipts for appends.
"""

from dataclasses import dataclass
from typing import Optional


UNKNOWN_GROUP_KEY = "unknown"


@dataclass(frozen=True)
class ChunkInfo:
    """Chunk metadata attached to one slice of a multi-chunk submission.

    ``number`` is 1-based and ``group_key`` identifies the initial
    submission every chunk of the same message shares.
    """
    total: int
    number: int
    group_key: str = UNKNOWN_GROUP_KEY


@dataclass(frozen=True)
class RawEntry:
    """Immutable entry of a topic's append-only message feed.

    The payload is kept base64-encoded exactly as the feed serves it.
    """
    sequence_number: int
    consensus_timestamp: str
    message: str
    chunk_info: Optional[ChunkInfo] = None
    topic_id: Optional[str] = None


@dataclass(frozen=True)
class SubmitReceipt:
    """Result of appending one logical message to a topic."""
    topic_id: str
    transaction_id: str
    sequence_numbers: tuple
    consensus_timestamp: str
    status: str = "SUCCESS"


@dataclass(frozen=True)
class TopicInfo:
    """A topic known to the local ledger."""
    topic_id: str
    memo: str
    created_at: str
