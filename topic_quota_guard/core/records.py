"""
Message classification and decoding.

Turns logical feed messages into typed records. Decoding is best-effort:
anything that is not a JSON object with a recognised shape is dropped,
never raised, so one bad message cannot hide the rest of a topic.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from .reassembly import LogicalMessage

logger = logging.getLogger(__name__)

DEFAULT_ANSWER = "No answer available"


class RecordType(Enum):
    """Kinds of domain records carried on a topic."""
    CHAT_TOPIC = "chat_topic"
    QUOTA_UPDATE = "quota_update"
    PROJECT_CREATION = "project_creation"
    SUBSCRIPTION_CREATED = "subscription_created"
    LICENSE_CREATION = "license_creation"
    OTHER = "other"


# Wire ``type`` values and the record kind each one decodes to
WIRE_TYPES: Dict[str, RecordType] = {
    "CHAT_TOPIC": RecordType.CHAT_TOPIC,
    "openconvai.message": RecordType.CHAT_TOPIC,
    "CHAT_TOPIC_QUOTA_UPDATE": RecordType.QUOTA_UPDATE,
    "MESSAGE_ALLOWANCE_UPDATE": RecordType.QUOTA_UPDATE,
    "openconvai.quota_update": RecordType.QUOTA_UPDATE,
    "PROJECT_CREATION": RecordType.PROJECT_CREATION,
    "PROJECT_CREATED": RecordType.PROJECT_CREATION,
    "SUBSCRIPTION_CREATED": RecordType.SUBSCRIPTION_CREATED,
    "LICENSE_CREATION": RecordType.LICENSE_CREATION,
    "LICENSE_METADATA": RecordType.OTHER,
    "USAGE": RecordType.OTHER,
    "UPGRADE": RecordType.OTHER,
}

QUOTA_FIELDS = ("totalAllowance", "messagesUsed", "remainingMessages", "newTotal")


class DecodeError(Exception):
    """Raised when a payload is not UTF-8 JSON describing an object."""


@dataclass(frozen=True)
class TopicRecord:
    """A decoded record, tagged by kind.

    ``content`` is the JSON object as written; ``fields`` holds the
    normalised values for chat turns and quota updates.
    """
    record_id: str
    record_type: RecordType
    wire_type: str
    timestamp: str
    sequence_number: int
    content: Dict[str, Any] = field(default_factory=dict, compare=False)
    fields: Dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class ChatTurn:
    """One question/answer exchange."""
    id: str
    question: str
    answer: str
    timestamp: str
    usage_quota: Optional[int] = None

    @classmethod
    def from_record(cls, record: TopicRecord) -> "ChatTurn":
        if record.record_type != RecordType.CHAT_TOPIC:
            raise ValueError(f"Record {record.record_id} is not a chat turn")
        return cls(
            id=record.record_id,
            question=record.fields["question"],
            answer=record.fields["answer"],
            timestamp=record.timestamp,
            usage_quota=record.fields.get("usageQuota"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "question": self.question,
            "answer": self.answer,
            "timestamp": self.timestamp,
        }
        if self.usage_quota is not None:
            data["usageQuota"] = self.usage_quota
        return data


@dataclass(frozen=True)
class QuotaUpdate:
    """An explicit change to a topic's allowance.

    Two field sets exist for the same event: a bare ``usage_quota`` (the
    remaining count after the update) and the allowance triple
    ``total_allowance``/``messages_used``/``remaining_messages``, with
    ``new_total`` as the older spelling of ``total_allowance``.
    """
    id: str
    timestamp: str
    sequence_number: int
    usage_quota: Optional[int] = None
    total_allowance: Optional[int] = None
    messages_used: Optional[int] = None
    remaining_messages: Optional[int] = None
    new_total: Optional[int] = None

    @classmethod
    def from_record(cls, record: TopicRecord) -> "QuotaUpdate":
        if record.record_type != RecordType.QUOTA_UPDATE:
            raise ValueError(f"Record {record.record_id} is not a quota update")
        values = record.fields
        return cls(
            id=record.record_id,
            timestamp=record.timestamp,
            sequence_number=record.sequence_number,
            usage_quota=values.get("usageQuota"),
            total_allowance=values.get("totalAllowance"),
            messages_used=values.get("messagesUsed"),
            remaining_messages=values.get("remainingMessages"),
            new_total=values.get("newTotal"),
        )

    @property
    def is_authoritative(self) -> bool:
        """Carries an explicit total plus one of used/remaining."""
        return self.total_allowance is not None and (
            self.messages_used is not None or self.remaining_messages is not None
        )


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 or ``seconds.nanos`` timestamp as aware UTC.

    Returns None for anything unparseable.
    """
    if not isinstance(value, str) or not value:
        return None
    seconds, dot, nanos = value.partition(".")
    if seconds.isdigit() and (not dot or nanos.isdigit()):
        micros = int(nanos.ljust(9, "0")[:6]) if nanos else 0
        try:
            return datetime.fromtimestamp(int(seconds), tz=timezone.utc).replace(microsecond=micros)
        except (OverflowError, OSError, ValueError):
            return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(moment: datetime) -> str:
    """ISO-8601 UTC string with millisecond precision and a ``Z`` suffix."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    """Current time formatted by format_timestamp."""
    return format_timestamp(datetime.now(timezone.utc))


def decode_payload(payload: Union[bytes, str]) -> Dict[str, Any]:
    """Decode UTF-8 JSON bytes into a dict.

    Raises:
        DecodeError: If the payload is not UTF-8, not JSON, or not an object
    """
    try:
        text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        content = json.loads(text)
    except (UnicodeDecodeError, ValueError) as e:
        raise DecodeError(str(e)) from e
    if not isinstance(content, dict):
        raise DecodeError(f"Expected a JSON object, got {type(content).__name__}")
    return content


def encode_record(content: Dict[str, Any]) -> bytes:
    """Serialise a record for appending to a topic."""
    return json.dumps(content, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _normalize_chat(content: Dict[str, Any], wire_type: str) -> Optional[Dict[str, Any]]:
    if wire_type == "openconvai.message":
        source, target = content.get("input"), content.get("output")
        if not isinstance(source, dict) or not isinstance(target, dict):
            return None
        metadata = content.get("metadata") if isinstance(content.get("metadata"), dict) else {}
        fields = {
            "question": str(source.get("message") or ""),
            "answer": str(target.get("message") or DEFAULT_ANSWER),
            "timestamp": metadata.get("timestamp"),
            "usageQuota": metadata.get("usageQuota"),
        }
    else:
        if not content.get("question"):
            return None
        fields = {
            "question": str(content["question"]),
            "answer": str(content.get("answer") or DEFAULT_ANSWER),
            "timestamp": content.get("timestamp"),
            "usageQuota": content.get("usageQuota"),
        }
    if not _is_number(fields["usageQuota"]):
        fields["usageQuota"] = None
    else:
        fields["usageQuota"] = int(fields["usageQuota"])
    return fields


def _normalize_quota(content: Dict[str, Any], wire_type: str) -> Optional[Dict[str, Any]]:
    source = content
    if wire_type == "openconvai.quota_update":
        source = content.get("metadata")
        if not isinstance(source, dict):
            return None

    fields: Dict[str, Any] = {"timestamp": source.get("timestamp") or content.get("timestamp")}
    for name in ("usageQuota",) + QUOTA_FIELDS:
        if _is_number(source.get(name)):
            fields[name] = int(source[name])

    if len(fields) == 1:
        return None
    return fields


def classify_message(message: LogicalMessage, keep_unknown: bool = False) -> Optional[TopicRecord]:
    """Decode and classify one logical message.

    Never raises. Undecodable payloads and records missing their required
    fields yield None, as do unrecognised types unless ``keep_unknown`` is
    set, in which case they come back as OTHER.

    Args:
        message: A complete logical message from the reassembler
        keep_unknown: Keep records whose type is not recognised

    Returns:
        The classified TopicRecord, or None
    """
    try:
        content = decode_payload(message.payload)
    except DecodeError as e:
        logger.debug("Dropping undecodable message %s: %s", message.message_id, e)
        return None

    wire_type = content.get("type")
    if not isinstance(wire_type, str) or not wire_type:
        logger.debug("Dropping message %s without a type", message.message_id)
        return None

    record_type = WIRE_TYPES.get(wire_type)
    if record_type is None:
        if not keep_unknown:
            logger.debug("Dropping message %s of unrecognised type %r", message.message_id, wire_type)
            return None
        record_type = RecordType.OTHER
    record_id = message.message_id
    fields: Dict[str, Any] = {}

    if record_type == RecordType.CHAT_TOPIC:
        normalized = _normalize_chat(content, wire_type)
        if normalized is None:
            logger.debug("Dropping %s message %s missing required fields", wire_type, record_id)
            return None
        fields = normalized
    elif record_type == RecordType.QUOTA_UPDATE:
        normalized = _normalize_quota(content, wire_type)
        if normalized is None:
            logger.debug("Dropping %s message %s without quota values", wire_type, record_id)
            return None
        fields = normalized
        record_id = f"quota-{record_id}"
    else:
        fields = {"timestamp": content.get("timestamp") or content.get("createdAt")}

    # The record's own timestamp wins over the consensus timestamp
    timestamp = fields.pop("timestamp", None)
    if not isinstance(timestamp, str) or not timestamp:
        timestamp = message.timestamp

    return TopicRecord(
        record_id=record_id,
        record_type=record_type,
        wire_type=wire_type,
        timestamp=timestamp,
        sequence_number=message.sequence_number,
        content=content,
        fields=fields,
    )
