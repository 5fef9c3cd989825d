"""
Read-side summaries over classified topic records.

Usage counts, subscription status and license metadata are all derived
from the same record history as the quota. These helpers are read-only
and deterministic for the same inputs and clock.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Any, Dict, Iterable, List, Optional

from .records import RecordType, TopicRecord, parse_timestamp

DEFAULT_LICENSE_METADATA = {
    "type": "LICENSE",
    "name": "License NFT",
    "description": "License NFT",
}


class SubscriptionVerdict(Enum):
    """Outcome of checking a license topic's subscription."""
    ACTIVE = auto()
    NOT_FOUND = auto()
    EXPIRED = auto()
    INACTIVE = auto()


_VERDICT_MESSAGES = {
    SubscriptionVerdict.ACTIVE: None,
    SubscriptionVerdict.NOT_FOUND: "No subscription found for this license",
    SubscriptionVerdict.EXPIRED: "Subscription has expired",
    SubscriptionVerdict.INACTIVE: "Subscription is not active",
}


@dataclass(frozen=True)
class SubscriptionStatus:
    """Latest subscription on a license topic and whether it is usable."""
    verdict: SubscriptionVerdict
    subscription: Optional[Dict[str, Any]] = None

    @property
    def active(self) -> bool:
        return self.verdict == SubscriptionVerdict.ACTIVE

    @property
    def error(self) -> Optional[str]:
        return _VERDICT_MESSAGES[self.verdict]


@dataclass
class UsageSummary:
    """Record counts for one topic."""
    total_records: int = 0
    counts: Dict[str, int] = field(default_factory=dict)
    chat_turns: int = 0
    quota_updates: int = 0
    first_timestamp: Optional[str] = None
    last_timestamp: Optional[str] = None
    latest_quota_update_at: Optional[str] = None


def summarize_usage(records: Iterable[TopicRecord]) -> UsageSummary:
    """Count records per kind and note the time span they cover."""
    summary = UsageSummary()
    dated: List[tuple] = []

    for record in records:
        summary.total_records += 1
        key = record.record_type.name
        summary.counts[key] = summary.counts.get(key, 0) + 1
        parsed = parse_timestamp(record.timestamp)
        if parsed is not None:
            dated.append((parsed, record))
        if record.record_type == RecordType.CHAT_TOPIC:
            summary.chat_turns += 1
        elif record.record_type == RecordType.QUOTA_UPDATE:
            summary.quota_updates += 1
            latest = parse_timestamp(summary.latest_quota_update_at)
            if parsed is not None and (latest is None or parsed > latest):
                summary.latest_quota_update_at = record.timestamp

    if dated:
        dated.sort(key=lambda item: (item[0], item[1].sequence_number))
        summary.first_timestamp = dated[0][1].timestamp
        summary.last_timestamp = dated[-1][1].timestamp
    return summary


def get_subscription_status(
    records: Iterable[TopicRecord],
    now: Optional[datetime] = None,
) -> SubscriptionStatus:
    """Check the most recent subscription on a license topic.

    The most recent subscription is chosen by its record timestamp. It is
    expired once ``now`` passes ``expiresAt`` and inactive unless its
    status is ``active``.

    Args:
        records: Classified records of the license topic
        now: Reference time (defaults to the current UTC time)

    Returns:
        SubscriptionStatus with the verdict and the subscription content
    """
    now = now or datetime.now(timezone.utc)
    subscriptions = [r for r in records if r.record_type == RecordType.SUBSCRIPTION_CREATED]
    if not subscriptions:
        return SubscriptionStatus(verdict=SubscriptionVerdict.NOT_FOUND)

    oldest = datetime.min.replace(tzinfo=timezone.utc)
    latest = max(
        subscriptions,
        key=lambda r: (parse_timestamp(r.timestamp) or oldest, r.sequence_number),
    )
    content = dict(latest.content)

    expires_at = parse_timestamp(content.get("expiresAt"))
    if expires_at is None or now > expires_at:
        return SubscriptionStatus(verdict=SubscriptionVerdict.EXPIRED, subscription=content)
    if content.get("status") != "active":
        return SubscriptionStatus(verdict=SubscriptionVerdict.INACTIVE, subscription=content)
    return SubscriptionStatus(verdict=SubscriptionVerdict.ACTIVE, subscription=content)


def get_license_metadata(records: Iterable[TopicRecord]) -> Dict[str, Any]:
    """Metadata from the first license creation record, or a default."""
    for record in sorted(records, key=lambda r: r.sequence_number):
        if record.record_type == RecordType.LICENSE_CREATION:
            metadata = record.content.get("metadata")
            if isinstance(metadata, dict):
                return dict(metadata)
    return dict(DEFAULT_LICENSE_METADATA)
