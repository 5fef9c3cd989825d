"""
Quota ledger reduction.

Derives a topic's current chat allowance by folding its full record
history. Nothing is cached: every query replays the feed.

Precedence:
1. Project creation record - seeds the total allowance
2. Latest quota update (by record timestamp) - authoritative when it
   carries an explicit total plus used or remaining
3. Legacy update - replaces the total, usage is still counted
4. Chat turn count - messages used when no authoritative update exists
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from .records import QuotaUpdate, RecordType, TopicRecord, parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_ALLOWANCE = 3

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class MissingCreationRecord(Exception):
    """Raised when a topic has no project creation record."""

    def __init__(self, topic_id: Optional[str] = None):
        super().__init__(f"Project not found for topic {topic_id or '<unknown>'}")
        self.topic_id = topic_id


class InvalidQuotaRecord(ValueError):
    """Raised when quota inputs on the feed are negative."""


class QuotaExhausted(Exception):
    """Raised when a chat turn is refused because no messages remain."""

    def __init__(self, topic_id: str, state: "QuotaState"):
        super().__init__(
            f"Message quota exhausted for topic {topic_id}: "
            f"{state.messages_used} of {state.total_allowance} used"
        )
        self.topic_id = topic_id
        self.state = state


@dataclass(frozen=True)
class QuotaState:
    """Current allowance of a topic."""
    total_allowance: int
    messages_used: int
    remaining_messages: int

    def __post_init__(self):
        """Validate counts are non-negative."""
        if self.total_allowance < 0:
            raise ValueError("total_allowance cannot be negative")
        if self.messages_used < 0:
            raise ValueError("messages_used cannot be negative")
        if self.remaining_messages < 0:
            raise ValueError("remaining_messages cannot be negative")

    @classmethod
    def from_counts(cls, total_allowance: int, messages_used: int) -> "QuotaState":
        return cls(
            total_allowance=total_allowance,
            messages_used=messages_used,
            remaining_messages=max(0, total_allowance - messages_used),
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "totalAllowance": self.total_allowance,
            "messagesUsed": self.messages_used,
            "remainingMessages": self.remaining_messages,
        }


def _non_negative(value: Optional[int], name: str) -> Optional[int]:
    if value is not None and value < 0:
        raise InvalidQuotaRecord(f"{name} cannot be negative (got {value})")
    return value


def _creation_allowance(record: TopicRecord, default_allowance: int) -> int:
    """Allowance seeded by a creation record (``chatCount`` or ``usageQuota``)."""
    for name in ("chatCount", "usageQuota"):
        value: Any = record.content.get(name)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return _non_negative(int(value), name)
    return default_allowance


def latest_quota_update(records: Iterable[TopicRecord]) -> Optional[QuotaUpdate]:
    """Pick the quota update with the greatest record-asserted timestamp.

    Ties, and updates whose timestamp can't be parsed, fall back to feed
    order: the later sequence number wins.
    """
    updates = [
        QuotaUpdate.from_record(r) for r in records
        if r.record_type == RecordType.QUOTA_UPDATE
    ]
    if not updates:
        return None
    return max(
        updates,
        key=lambda u: (parse_timestamp(u.timestamp) or _EPOCH, u.sequence_number),
    )


def compute_quota(
    records: Iterable[TopicRecord],
    default_allowance: int = DEFAULT_ALLOWANCE,
    topic_id: Optional[str] = None,
) -> QuotaState:
    """Fold a topic's records into its current QuotaState.

    Args:
        records: Classified records of one topic
        default_allowance: Allowance when the creation record names none
        topic_id: Topic id, used in error messages only

    Returns:
        QuotaState with remaining_messages clamped at zero

    Raises:
        MissingCreationRecord: If no creation record exists
        InvalidQuotaRecord: If a quota value on the feed is negative
    """
    ordered: List[TopicRecord] = sorted(records, key=lambda r: r.sequence_number)

    creation = next((r for r in ordered if r.record_type == RecordType.PROJECT_CREATION), None)
    if creation is None:
        raise MissingCreationRecord(topic_id)
    total_allowance = _creation_allowance(creation, default_allowance)

    chat_turns = [r for r in ordered if r.record_type == RecordType.CHAT_TOPIC]

    latest = latest_quota_update(ordered)
    if latest is not None:
        total = _non_negative(latest.total_allowance, "totalAllowance")
        used = _non_negative(latest.messages_used, "messagesUsed")
        remaining = _non_negative(latest.remaining_messages, "remainingMessages")

        if latest.is_authoritative:
            if used is None:
                used = max(0, total - remaining)
            if remaining is None:
                remaining = max(0, total - used)
            logger.debug("Quota for %s taken from update %s", topic_id, latest.id)
            return QuotaState(total_allowance=total, messages_used=used, remaining_messages=remaining)

        new_total = _non_negative(latest.new_total, "newTotal")
        if new_total is None and total is not None:
            new_total = total
        if new_total is not None:
            total_allowance = new_total
        elif latest.usage_quota is not None:
            # A bare usageQuota is what was left at the time of the update
            usage_quota = _non_negative(latest.usage_quota, "usageQuota")
            used_before = sum(1 for r in chat_turns if r.sequence_number < latest.sequence_number)
            total_allowance = used_before + usage_quota

    return QuotaState.from_counts(total_allowance, len(chat_turns))
