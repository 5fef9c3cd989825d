"""
Topic feed replay.

Runs the read pipeline for one topic: fetch the raw feed, reassemble
chunked messages, classify them, and answer questions over the result.
A feed is any object with ``get_topic_entries(topic_id)``; both the
mirror client and the local ledger qualify.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from topic_quota_guard.storage.models import RawEntry

from .quota import DEFAULT_ALLOWANCE, QuotaState, compute_quota
from .reassembly import reassemble_entries
from .records import (
    ChatTurn,
    QuotaUpdate,
    RecordType,
    TopicRecord,
    classify_message,
    parse_timestamp,
)
from .summary import (
    SubscriptionStatus,
    UsageSummary,
    get_license_metadata,
    get_subscription_status,
    summarize_usage,
)

logger = logging.getLogger(__name__)

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


def classify_entries(entries: Iterable[RawEntry], keep_unknown: bool = False) -> List[TopicRecord]:
    """Reassemble and classify a raw feed into records in feed order."""
    records = []
    for message in reassemble_entries(list(entries)):
        record = classify_message(message, keep_unknown=keep_unknown)
        if record is not None:
            records.append(record)
    records.sort(key=lambda r: r.sequence_number)
    return records


def quota_update_as_chat(update: QuotaUpdate) -> ChatTurn:
    """Render a quota update as an entry in the chat history."""
    value = update.usage_quota
    if value is None:
        value = update.remaining_messages
    if value is None:
        value = update.total_allowance if update.total_allowance is not None else update.new_total
    return ChatTurn(
        id=update.id,
        question="Quota updated",
        answer=f"Your message quota has been updated to {value}",
        timestamp=update.timestamp,
        usage_quota=update.usage_quota,
    )


class TopicService:
    """Read-side operations over one feed."""

    def __init__(self, feed, default_allowance: int = DEFAULT_ALLOWANCE):
        """Initialize the service.

        Args:
            feed: Object exposing get_topic_entries(topic_id)
            default_allowance: Allowance used when a creation record names none
        """
        self.feed = feed
        self.default_allowance = default_allowance

    def get_entries(self, topic_id: str) -> List[RawEntry]:
        return self.feed.get_topic_entries(topic_id)

    def get_records(self, topic_id: str, keep_unknown: bool = False) -> List[TopicRecord]:
        entries = self.get_entries(topic_id)
        records = classify_entries(entries, keep_unknown=keep_unknown)
        logger.debug(
            "Topic %s: %d entries classified into %d records",
            topic_id, len(entries), len(records),
        )
        return records

    def get_topic_messages(self, topic_id: str) -> List[Dict[str, Any]]:
        """Every decodable message of a topic, tagged with its type."""
        return [
            {
                "consensusTimestamp": record.timestamp,
                "topicSequenceNumber": record.sequence_number,
                "type": record.wire_type if record.record_type != RecordType.OTHER else "OTHER",
                "content": record.content,
            }
            for record in self.get_records(topic_id, keep_unknown=True)
        ]

    def get_chat_messages(self, topic_id: str) -> List[ChatTurn]:
        """Chat history of a topic, quota updates included, oldest first."""
        history = []
        for record in self.get_records(topic_id):
            if record.record_type == RecordType.CHAT_TOPIC:
                history.append((record.sequence_number, ChatTurn.from_record(record)))
            elif record.record_type == RecordType.QUOTA_UPDATE:
                update = QuotaUpdate.from_record(record)
                history.append((record.sequence_number, quota_update_as_chat(update)))

        history.sort(key=lambda item: (parse_timestamp(item[1].timestamp) or _OLDEST, item[0]))
        return [turn for _, turn in history]

    def get_quota(self, topic_id: str, records: Optional[List[TopicRecord]] = None) -> QuotaState:
        """Current QuotaState of a topic.

        Raises:
            MissingCreationRecord: If the topic has no creation record
        """
        if records is None:
            records = self.get_records(topic_id)
        return compute_quota(records, default_allowance=self.default_allowance, topic_id=topic_id)

    def summarize_usage(self, topic_id: str) -> UsageSummary:
        return summarize_usage(self.get_records(topic_id))

    def get_subscription_status(self, license_topic_id: str, now: Optional[datetime] = None) -> SubscriptionStatus:
        return get_subscription_status(self.get_records(license_topic_id), now=now)

    def get_license_metadata(self, license_topic_id: str) -> Dict[str, Any]:
        return get_license_metadata(self.get_records(license_topic_id))
