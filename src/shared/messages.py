"""
Queue Message Envelopes

Wire format for the three logical queues of the pipeline:

FETCH QUEUE (order.fetch):
    {"order_number": "ORD-1", "retry_count": 0}

INSERT QUEUE (order.insert):
    {"order_details": {"orderHeader": {...}, "orderDetails": [...]}, "retry_count": 0}
    {"raw_body": "<undecodable body>", "retry_count": 1}     (retried, never persisted)

DEAD-LETTER QUEUES (order.fetch.dlq / order.insert.dlq):
    original envelope + {"error": "...", "stage": "fetch", "failed_at": "..."}

RETRY COUNT:
- Lives in the JSON body, not in a transport header
- Survives re-serialization when a message is republished for retry
- Missing or invalid → 0

DOUBLE-ENCODING DEFENSE:
Some producers serialize the payload twice (a JSON string containing JSON).
unwrap_json() decodes once; if the result is still a string it decodes again.
A string that is still JSON after the second pass is rejected as malformed.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from src.shared.exceptions import MalformedMessage

RETRY_COUNT_FIELD = "retry_count"
ORDER_NUMBER_FIELD = "order_number"
ORDER_DETAILS_FIELD = "order_details"
RAW_BODY_FIELD = "raw_body"
MESSAGE_ID_HEADER = "message_id"


class MessageOutcome(str, Enum):
    """Terminal state of one message within one consumer cycle."""

    PUBLISHED = "published"
    PERSISTED = "persisted"
    REQUEUED = "requeued"
    DEAD_LETTERED = "dead_lettered"
    DROPPED = "dropped"
    DEFERRED = "deferred"
    UNACKNOWLEDGED = "unacknowledged"


# ==============================================================================
# ENCODING / DECODING
# ==============================================================================


def encode_payload(payload: Any) -> bytes:
    """Serialize a payload to UTF-8 JSON bytes."""
    return json.dumps(payload, default=str).encode("utf-8")


def unwrap_json(raw: Union[bytes, str]) -> Any:
    """
    Decode a JSON payload, tolerating one extra layer of string encoding.

    Examples:
        b'{"order_number": "ORD-1"}'           → {"order_number": "ORD-1"}
        b'"{\\"order_number\\": \\"ORD-1\\"}"' → {"order_number": "ORD-1"}
        b'"ORD-1"'                             → "ORD-1"

    Raises:
        MalformedMessage: Not JSON, or still JSON-encoded after two passes
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedMessage(f"Payload is not valid UTF-8: {e}") from e

    try:
        value = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedMessage(f"Payload is not valid JSON: {e}") from e

    if not isinstance(value, str):
        return value

    try:
        value = json.loads(value)
    except ValueError:
        # A plain JSON string (e.g. a bare order number)
        return value

    if isinstance(value, str) and _is_json_container_or_string(value):
        raise MalformedMessage("Payload is JSON-encoded more than twice")

    return value


def _is_json_container_or_string(value: str) -> bool:
    try:
        return isinstance(json.loads(value), (str, dict, list))
    except ValueError:
        return False


def read_retry_count(payload: Any) -> int:
    """Retry counter embedded in a decoded payload (0 when absent or invalid)."""
    if not isinstance(payload, dict):
        return 0
    try:
        retry_count = int(payload.get(RETRY_COUNT_FIELD, 0) or 0)
    except (TypeError, ValueError):
        return 0
    return max(retry_count, 0)


# ==============================================================================
# QUEUE MESSAGE
# ==============================================================================


@dataclass
class QueueMessage:
    """
    A message dequeued from the broker.

    Attributes:
        body: Raw JSON bytes
        headers: Transport headers (message_id, dlq_reason, ...)
        topic/partition/offset: Broker position, used as fallback identity
        raw: Transport handle needed to acknowledge the message
    """

    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)
    topic: Optional[str] = None
    partition: Optional[int] = None
    offset: Optional[int] = None
    raw: Any = field(default=None, repr=False, compare=False)

    @property
    def message_id(self) -> str:
        """Stable identity of this message, used as the lock key."""
        message_id = self.headers.get(MESSAGE_ID_HEADER)
        if message_id:
            return message_id
        return f"{self.topic}:{self.partition}:{self.offset}"

    @property
    def retry_count(self) -> int:
        try:
            return read_retry_count(unwrap_json(self.body))
        except MalformedMessage:
            return 0

    @classmethod
    def from_kafka(cls, msg: Any) -> "QueueMessage":
        """Build from a confluent_kafka.Message."""
        headers: Dict[str, str] = {}
        for key, value in msg.headers() or []:
            if isinstance(value, bytes):
                value = value.decode("utf-8", errors="replace")
            headers[key] = "" if value is None else str(value)

        return cls(
            body=msg.value() or b"",
            headers=headers,
            topic=msg.topic(),
            partition=msg.partition(),
            offset=msg.offset(),
            raw=msg,
        )


# ==============================================================================
# STAGE PAYLOADS
# ==============================================================================


@dataclass
class OrderReference:
    """Fetch-queue payload: one order number to resolve."""

    order_number: str
    retry_count: int = 0

    def to_payload(self) -> Dict[str, Any]:
        return {ORDER_NUMBER_FIELD: self.order_number, RETRY_COUNT_FIELD: self.retry_count}


def parse_order_reference(body: Union[bytes, str]) -> OrderReference:
    """
    Decode a fetch-queue body into an OrderReference.

    Accepts the envelope ({"order_number": ..., "retry_count": ...}), a camelCase
    {"orderNumber": ...} object, or a bare JSON string/number.

    Raises:
        MalformedMessage: If no usable order number can be extracted
    """
    payload = unwrap_json(body)
    retry_count = 0

    if isinstance(payload, dict):
        order_number = payload.get(ORDER_NUMBER_FIELD) or payload.get("orderNumber")
        retry_count = read_retry_count(payload)
    elif isinstance(payload, (str, int)) and not isinstance(payload, bool):
        order_number = payload
    else:
        order_number = None

    if isinstance(order_number, bool) or not isinstance(order_number, (str, int)):
        raise MalformedMessage("Fetch message carries no order number")

    order_number = str(order_number).strip()
    if not order_number:
        raise MalformedMessage("Fetch message carries an empty order number")

    return OrderReference(order_number=order_number, retry_count=retry_count)


def build_insert_payload(order_details: Dict[str, Any], retry_count: int = 0) -> Dict[str, Any]:
    """Insert-queue envelope for one order-detail payload."""
    return {ORDER_DETAILS_FIELD: order_details, RETRY_COUNT_FIELD: retry_count}


def parse_order_details(body: Union[bytes, str]) -> Tuple[Dict[str, Any], int]:
    """
    Decode an insert-queue body into (order-detail payload, retry_count).

    Accepts the envelope or a bare order-detail object; the detail itself may be
    a JSON string inside the envelope.

    Raises:
        MalformedMessage: If the body does not decode to an object
    """
    payload = unwrap_json(body)
    if not isinstance(payload, dict):
        raise MalformedMessage("Insert message is not a JSON object")
    if RAW_BODY_FIELD in payload:
        raise MalformedMessage("Insert message body could not be decoded")

    retry_count = read_retry_count(payload)
    order_details = payload.get(ORDER_DETAILS_FIELD, payload)

    if isinstance(order_details, str):
        order_details = unwrap_json(order_details)

    if not isinstance(order_details, dict):
        raise MalformedMessage("Insert message carries no order details object")

    if order_details is payload:
        order_details = {k: v for k, v in payload.items() if k != RETRY_COUNT_FIELD}

    return order_details, retry_count


def build_raw_body_payload(body: Union[bytes, str]) -> Dict[str, Any]:
    """
    Retry envelope for an insert body that does not decode to order details.

    A body that already is such an envelope keeps its original text and
    retry_count, so the same raw body travels through every retry into the
    dead-letter queue.
    """
    try:
        payload = unwrap_json(body)
    except MalformedMessage:
        payload = None

    if isinstance(payload, dict) and RAW_BODY_FIELD in payload:
        return {RAW_BODY_FIELD: payload[RAW_BODY_FIELD], RETRY_COUNT_FIELD: read_retry_count(payload)}

    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    return {RAW_BODY_FIELD: body, RETRY_COUNT_FIELD: read_retry_count(payload)}


def peek_order_number(order_details: Dict[str, Any]) -> Optional[str]:
    """Best-effort order number for logging before validation."""
    header = order_details.get("orderHeader")
    if isinstance(header, dict) and header.get("orderNumber") is not None:
        return str(header["orderNumber"])
    return None


# ==============================================================================
# DEAD LETTER RECORD
# ==============================================================================


@dataclass
class DeadLetterRecord:
    """Terminal record for a message that exhausted its retries."""

    payload: Dict[str, Any]
    error: str
    retry_count: int
    stage: str
    failed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> Dict[str, Any]:
        record = dict(self.payload)
        record[RETRY_COUNT_FIELD] = self.retry_count
        record["error"] = self.error
        record["stage"] = self.stage
        record["failed_at"] = self.failed_at.isoformat()
        return record
