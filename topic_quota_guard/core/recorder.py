"""
Quota-gated appends to topic feeds.

Every chat turn is checked against the quota replayed from the feed
before it is appended. The check and the append for one topic are
serialised per recorder instance; appends from other processes can still
interleave between them.

Check Order:
1. Empty topic - bootstrap allowance, the append proceeds
2. No creation record - MissingCreationRecord
3. Nothing remaining - QuotaExhausted
"""

import logging
import secrets
import threading
from contextlib import nullcontext
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from topic_quota_guard.config.loader import QuotaConfig
from topic_quota_guard.storage.models import SubmitReceipt

from .quota import QuotaExhausted, QuotaState, latest_quota_update
from .records import encode_record, format_timestamp
from .topics import TopicService

logger = logging.getLogger(__name__)


class ConversationRecorder:
    """Appends chat turns and allowance changes to topics.

    Reads go through a TopicService over ``feed``; writes go to
    ``submitter.submit_message(topic_id, payload)``. Fetch and append
    errors propagate unchanged.
    """

    def __init__(
        self,
        feed,
        submitter,
        quota_config: Optional[QuotaConfig] = None,
        subscription_period_days: int = 30,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the recorder.

        Args:
            feed: Object exposing get_topic_entries(topic_id)
            submitter: Object exposing submit_message(topic_id, payload)
            quota_config: Allowance defaults and append serialisation
            subscription_period_days: Lifetime of recorded subscriptions
            clock: Returns the current aware datetime
        """
        self.quota_config = quota_config or QuotaConfig()
        self.topics = TopicService(feed, default_allowance=self.quota_config.default_allowance)
        self.submitter = submitter
        self.subscription_period_days = subscription_period_days
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _topic_lock(self, topic_id: str):
        if not self.quota_config.serialize_appends:
            return nullcontext()
        with self._locks_guard:
            return self._locks.setdefault(topic_id, threading.Lock())

    def _append(self, topic_id: str, content: Dict[str, Any]) -> SubmitReceipt:
        receipt = self.submitter.submit_message(topic_id, encode_record(content))
        logger.info("Recorded %s to topic %s (%s)", content["type"], topic_id, receipt.transaction_id)
        return receipt

    def check_quota(self, topic_id: str) -> QuotaState:
        """Return the allowance available for the next chat turn.

        Raises:
            MissingCreationRecord: If the topic has records but no creation record
            QuotaExhausted: If no messages remain
        """
        records = self.topics.get_records(topic_id)
        if not records:
            bootstrap = self.quota_config.bootstrap_allowance
            logger.info("Topic %s has no records, using initial allowance %d", topic_id, bootstrap)
            return QuotaState.from_counts(bootstrap, 0)

        state = self.topics.get_quota(topic_id, records=records)
        if state.remaining_messages <= 0:
            logger.info("Refusing chat turn on %s: %s", topic_id, state)
            raise QuotaExhausted(topic_id, state)
        return state

    def record_turn(
        self,
        topic_id: str,
        question: str,
        answer: str,
        usage_quota: Optional[int] = None,
    ) -> SubmitReceipt:
        """Append a chat turn if the topic still has quota.

        A topic with no records at all gets the bootstrap allowance. The
        bootstrap turn does not create a project, so the next turn on that
        topic raises MissingCreationRecord until create_project is called.

        Args:
            topic_id: Project topic
            question: User prompt
            answer: Assistant reply
            usage_quota: Value written as ``usageQuota``; defaults to the
                remaining count after this turn

        Returns:
            SubmitReceipt of the append

        Raises:
            ValueError: If question is empty
            QuotaExhausted: If no messages remain
            MissingCreationRecord: If the topic has no creation record
        """
        if not question or not question.strip():
            raise ValueError("question is required and cannot be empty")

        with self._topic_lock(topic_id):
            state = self.check_quota(topic_id)
            if usage_quota is None:
                usage_quota = state.remaining_messages - 1
            content = {
                "type": "CHAT_TOPIC",
                "question": question,
                "answer": answer,
                "timestamp": format_timestamp(self._clock()),
                "usageQuota": usage_quota,
            }
            return self._append(topic_id, content)

    def update_usage_quota(self, topic_id: str, usage_quota: int) -> SubmitReceipt:
        """Set the remaining message count of a topic."""
        if usage_quota < 0:
            raise ValueError("Usage quota cannot be negative")
        content = {
            "type": "CHAT_TOPIC_QUOTA_UPDATE",
            "usageQuota": usage_quota,
            "timestamp": format_timestamp(self._clock()),
        }
        with self._topic_lock(topic_id):
            return self._append(topic_id, content)

    def add_messages(
        self,
        topic_id: str,
        message_count: int,
        transaction_id: str,
    ) -> Tuple[QuotaState, QuotaState]:
        """Top up a topic's allowance after a purchase.

        The remaining count always grows by exactly ``message_count``.
        When the current quota is counted from chat turns, a new total is
        written so later turns keep counting against it. When it comes
        from an explicit allowance snapshot, a new snapshot is written,
        since chat turns after a snapshot are not counted.

        Returns:
            (previous, new) QuotaState

        Raises:
            ValueError: If message_count is not positive or transaction_id is empty
            MissingCreationRecord: If the topic has no creation record
        """
        if message_count <= 0:
            raise ValueError("message_count must be > 0")
        if not transaction_id:
            raise ValueError("transaction_id is required")

        with self._topic_lock(topic_id):
            records = self.topics.get_records(topic_id)
            previous = self.topics.get_quota(topic_id, records=records)
            remaining = previous.remaining_messages + message_count
            content: Dict[str, Any] = {"type": "MESSAGE_ALLOWANCE_UPDATE"}

            latest = latest_quota_update(records)
            if latest is not None and latest.is_authoritative:
                total = previous.total_allowance + message_count
                new_state = QuotaState(
                    total_allowance=total,
                    messages_used=max(0, total - remaining),
                    remaining_messages=remaining,
                )
                content["totalAllowance"] = total
                content["remainingMessages"] = remaining
            else:
                # Turns over the allowance are absorbed so the top-up is never lost
                total = previous.messages_used + remaining
                new_state = QuotaState.from_counts(total, previous.messages_used)
                content["newTotal"] = total

            content.update({
                "addedMessages": message_count,
                "transactionId": transaction_id,
                "timestamp": format_timestamp(self._clock()),
            })
            self._append(topic_id, content)
        return previous, new_state

    def create_project(
        self,
        topic_id: str,
        name: str,
        owner: Optional[str] = None,
        chat_count: Optional[int] = None,
    ) -> SubmitReceipt:
        """Write the creation record that seeds a project's allowance."""
        if not name or not name.strip():
            raise ValueError("name is required and cannot be empty")
        if chat_count is None:
            chat_count = self.quota_config.default_allowance
        if chat_count < 0:
            raise ValueError("chat_count cannot be negative")
        timestamp = format_timestamp(self._clock())
        content = {
            "type": "PROJECT_CREATION",
            "name": name,
            "createdAt": timestamp,
            "timestamp": timestamp,
            "owner": owner,
            "chatCount": chat_count,
        }
        return self._append(topic_id, content)

    def record_subscription(
        self,
        license_topic_id: str,
        payment_transaction_id: str,
        message_limit: int,
        project_limit: int,
        price_usd: float = 0.0,
        price_token: float = 0.0,
    ) -> Dict[str, Any]:
        """Record an active subscription on a license topic.

        Returns:
            The subscription content as written
        """
        if not payment_transaction_id:
            raise ValueError("Payment transaction ID is required")

        now = self._clock()
        expires_at = now + timedelta(days=self.subscription_period_days)
        content = {
            "type": "SUBSCRIPTION_CREATED",
            "subscriptionId": f"sub-{int(now.timestamp() * 1000)}-{secrets.randbelow(100000)}",
            "subscriptionDate": format_timestamp(now),
            "expiresAt": format_timestamp(expires_at),
            "projectLimit": project_limit,
            "messageLimit": message_limit,
            "priceUSD": price_usd,
            "priceToken": price_token,
            "paymentTransactionId": payment_transaction_id,
            "status": "active",
            "timestamp": format_timestamp(now),
        }
        self._append(license_topic_id, content)
        return content
