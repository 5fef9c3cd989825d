"""
Chunk reassembly for topic feeds.

Large submissions reach the feed split into ordered chunks. Chunks are
grouped by the initial submission they belong to, stored by their explicit
index (so arrival order does not matter) and concatenated once every slot
is filled. Groups that are still missing a chunk when the feed ends are
dropped for this fetch; they are not retried or reported.
"""

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from topic_quota_guard.storage.models import UNKNOWN_GROUP_KEY, RawEntry

logger = logging.getLogger(__name__)


class IncompleteChunkGroup(Exception):
    """Raised when a chunk group is assembled before all slots are filled."""

    def __init__(self, group_key: str, missing: List[int]):
        super().__init__(f"Chunk group {group_key} is missing chunk(s) {missing}")
        self.group_key = group_key
        self.missing = missing


@dataclass(frozen=True)
class LogicalMessage:
    """One complete message ready for decoding.

    ``message_id`` is the sequence number for unchunked entries and the
    group key for reassembled ones.
    """
    message_id: str
    payload: bytes
    timestamp: str
    sequence_number: int


class ChunkGroup:
    """Fixed-size set of chunk slots for one multi-chunk submission."""

    def __init__(self, group_key: str, total: int, timestamp: str, sequence_number: int):
        self.group_key = group_key
        self.total = total
        self.timestamp = timestamp
        # Sequence number of the last chunk seen; used to order the output
        self.sequence_number = sequence_number
        self.slots: List[bytes] = [b""] * total

    def add(self, number: int, data: bytes, timestamp: str, sequence_number: int) -> None:
        """Store chunk ``number`` (1-based) and track the latest timestamp."""
        self.slots[number - 1] = data
        if _timestamp_key(timestamp) > _timestamp_key(self.timestamp):
            self.timestamp = timestamp
        if sequence_number > self.sequence_number:
            self.sequence_number = sequence_number

    @property
    def missing(self) -> List[int]:
        return [i + 1 for i, slot in enumerate(self.slots) if not slot]

    @property
    def is_complete(self) -> bool:
        return not self.missing

    def assemble(self) -> bytes:
        """Concatenate slots in index order.

        Raises:
            IncompleteChunkGroup: If any slot is still empty
        """
        missing = self.missing
        if missing:
            raise IncompleteChunkGroup(self.group_key, missing)
        return b"".join(self.slots)


def _timestamp_key(value: str) -> tuple:
    """Order consensus timestamps (``seconds.nanos``) numerically."""
    seconds, _, nanos = value.partition(".")
    if seconds.isdigit() and (not nanos or nanos.isdigit()):
        return (0, int(seconds), int(nanos.ljust(9, "0")[:9]), "")
    return (1, 0, 0, value)


def _decode_base64(message: str) -> bytes:
    return base64.b64decode(message, validate=True)


def _validated_chunk(entry: RawEntry) -> Optional[tuple]:
    """Return (group_key, total, number) or None when metadata is unusable."""
    info = entry.chunk_info
    total, number = info.total, info.number
    if isinstance(total, bool) or isinstance(number, bool):
        return None
    if not isinstance(total, int) or not isinstance(number, int):
        return None
    if total < 1 or not 1 <= number <= total:
        return None
    return (info.group_key or UNKNOWN_GROUP_KEY, total, number)


def reassemble_entries(entries: List[RawEntry]) -> List[LogicalMessage]:
    """Turn a raw topic feed into complete logical messages.

    Entries are visited in ascending sequence order regardless of input
    order. Unchunked entries are passed through first, in sequence order,
    followed by every complete chunk group in the order its first chunk
    was seen. Malformed chunk metadata or base64 is skipped with a
    warning; it never aborts the pass.

    Args:
        entries: Full feed of one topic

    Returns:
        List of LogicalMessage
    """
    ordered = sorted(entries, key=lambda e: e.sequence_number)

    singles: List[LogicalMessage] = []
    groups: Dict[str, ChunkGroup] = {}

    for entry in ordered:
        if entry.chunk_info is None:
            try:
                payload = _decode_base64(entry.message)
            except (binascii.Error, ValueError) as e:
                logger.warning("Skipping entry %s with invalid base64: %s", entry.sequence_number, e)
                continue
            singles.append(LogicalMessage(
                message_id=str(entry.sequence_number),
                payload=payload,
                timestamp=entry.consensus_timestamp,
                sequence_number=entry.sequence_number,
            ))
            continue

        chunk = _validated_chunk(entry)
        if chunk is None:
            logger.warning(
                "Skipping entry %s with malformed chunk metadata %r",
                entry.sequence_number, entry.chunk_info,
            )
            continue
        group_key, total, number = chunk

        try:
            data = _decode_base64(entry.message)
        except (binascii.Error, ValueError) as e:
            logger.warning("Skipping chunk %s of %s with invalid base64: %s", number, group_key, e)
            continue

        group = groups.get(group_key)
        if group is None:
            group = ChunkGroup(group_key, total, entry.consensus_timestamp, entry.sequence_number)
            groups[group_key] = group
        elif group.total != total:
            logger.warning(
                "Chunk %s of %s declares %s total chunks, group expects %s; skipping",
                number, group_key, total, group.total,
            )
            continue
        group.add(number, data, entry.consensus_timestamp, entry.sequence_number)
        logger.debug("Stored chunk %s of %s for message %s", number, total, group_key)

    assembled: List[LogicalMessage] = []
    for group_key, group in groups.items():
        try:
            payload = group.assemble()
        except IncompleteChunkGroup as e:
            logger.warning("Incomplete chunks for message %s, cannot reassemble: %s", group_key, e)
            continue
        assembled.append(LogicalMessage(
            message_id=group_key,
            payload=payload,
            timestamp=group.timestamp,
            sequence_number=group.sequence_number,
        ))

    return singles + assembled
