"""
Kafka Queue Adapters

The pipeline needs four things from a broker:
1. Pull a batch of messages from a queue          → KafkaQueue.dequeue_batch()
2. Acknowledge one message                        → KafkaQueue.acknowledge()
   or hand it back for redelivery                 → KafkaQueue.rewind()
3. Publish a message and know it was delivered    → QueuePublisher.publish()
4. A stable identity per message (lock key)       → "message_id" header

ACKNOWLEDGMENT:
- enable.auto.commit=False: offsets are committed per message after handling
- Committing an offset acknowledges every earlier offset of the partition, so
  a message left unacknowledged is rewound (consumer.seek) and the rest of
  its partition is held back until it is redelivered
- A message that is never acknowledged is redelivered after a restart/rebalance
- Retries never rely on native redelivery: failed messages are republished
  with an incremented retry_count (see src.consumer.retry)

CONFIRMED PUBLISH:
produce() is asynchronous in confluent-kafka. publish() waits for the delivery
report of its own message (polling the producer) so callers only acknowledge
upstream work once the downstream message is safely on the broker.
"""

import logging
import threading
import time
import uuid
from typing import Any, Dict, List, Optional

from confluent_kafka import Consumer, KafkaError, KafkaException, Producer, TopicPartition

from src.shared.exceptions import BrokerUnavailable, PublishError
from src.shared.messages import MESSAGE_ID_HEADER, QueueMessage, encode_payload

logger = logging.getLogger(__name__)

# Errors that mean the broker cannot be used at all: abort the run
FATAL_ERROR_CODES = (
    KafkaError._ALL_BROKERS_DOWN,
    KafkaError._AUTHENTICATION,
    KafkaError.TOPIC_AUTHORIZATION_FAILED,
)


# ==============================================================================
# CONSUMER SIDE
# ==============================================================================


class KafkaQueue:
    """
    One logical queue backed by a Kafka topic and consumer group.

    Attributes:
        topic: Topic consumed from
        consumer: confluent_kafka.Consumer (subscribed on init)
        poll_timeout: Seconds to wait for a batch
    """

    def __init__(
        self,
        kafka_config: Dict[str, Any],
        topic: str,
        poll_timeout: float = 1.0,
        consumer: Optional[Consumer] = None,
    ):
        self.topic = topic
        self.poll_timeout = poll_timeout
        self.consumer = consumer or Consumer(kafka_config)
        self.consumer.subscribe([topic])

        logger.info(
            "Queue consumer subscribed",
            extra={"topic": topic, "group_id": kafka_config.get("group.id")},
        )

    def dequeue_batch(self, max_messages: int) -> List[QueueMessage]:
        """
        Pull up to max_messages messages.

        Returns:
            Messages in broker order (empty list when the queue is idle)

        Raises:
            BrokerUnavailable: On fatal broker errors
        """
        if max_messages <= 0:
            return []

        try:
            raw_messages = self.consumer.consume(
                num_messages=max_messages, timeout=self.poll_timeout
            )
        except KafkaException as e:
            raise BrokerUnavailable(f"Failed to consume from {self.topic}: {e}") from e

        messages = []
        for msg in raw_messages:
            if msg.error():
                self._handle_kafka_error(msg.error())
                continue
            messages.append(QueueMessage.from_kafka(msg))

        return messages

    def acknowledge(self, message: QueueMessage) -> bool:
        """
        Commit the offset of one message.

        Returns:
            True if committed, False if the commit failed (message will be redelivered)
        """
        try:
            self.consumer.commit(message=message.raw, asynchronous=False)
            return True
        except KafkaException as e:
            logger.error(
                "Failed to acknowledge message",
                extra={
                    "topic": message.topic,
                    "partition": message.partition,
                    "offset": message.offset,
                    "error": str(e),
                },
            )
            return False

    def rewind(self, message: QueueMessage) -> None:
        """
        Seek the message's partition back to its offset so it is delivered again.

        Later messages of the same partition already pulled into memory come
        back with it; callers must not acknowledge them this cycle.

        Raises:
            BrokerUnavailable: The seek failed (the run must restart from the
                committed offset instead)
        """
        try:
            self.consumer.seek(TopicPartition(message.topic, message.partition, message.offset))
        except KafkaException as e:
            raise BrokerUnavailable(
                f"Failed to rewind {message.topic}[{message.partition}] to offset {message.offset}: {e}"
            ) from e

        logger.info(
            "Partition rewound for redelivery",
            extra={
                "topic": message.topic,
                "partition": message.partition,
                "offset": message.offset,
                "message_id": message.message_id,
            },
        )

    def _handle_kafka_error(self, error: KafkaError) -> None:
        if error.code() == KafkaError._PARTITION_EOF:
            logger.debug("Reached end of partition", extra={"topic": self.topic})
            return

        logger.error(
            f"Kafka error: {error.str()}",
            extra={"error_code": error.code(), "error_name": error.name()},
        )

        if error.code() in FATAL_ERROR_CODES:
            logger.critical("Fatal Kafka error, aborting run")
            raise BrokerUnavailable(error.str())

    def close(self) -> None:
        try:
            self.consumer.close()
            logger.info("Queue consumer closed", extra={"topic": self.topic})
        except KafkaException:
            logger.error("Error closing queue consumer", exc_info=True)


# ==============================================================================
# PRODUCER SIDE
# ==============================================================================


class QueuePublisher:
    """
    Publishes JSON messages and waits for their delivery reports.

    Safe to share between threads (the fan-out pool publishes concurrently):
    each publish() waits on its own delivery event while any thread polling the
    producer serves the callbacks.
    """

    def __init__(
        self,
        kafka_config: Dict[str, Any],
        delivery_timeout: float = 10.0,
        producer: Optional[Producer] = None,
    ):
        self.delivery_timeout = delivery_timeout
        self.producer = producer or Producer(kafka_config)

    def publish(
        self,
        topic: str,
        payload: Any,
        key: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> str:
        """
        Publish one message and block until the broker confirms it.

        Args:
            topic: Destination topic
            payload: JSON-serializable payload
            key: Partition key (the order number keeps one order on one partition)
            headers: Extra transport headers

        Returns:
            The generated message_id

        Raises:
            PublishError: Rejected, buffer full, or not confirmed within delivery_timeout
        """
        message_id = uuid.uuid4().hex
        message_headers = {MESSAGE_ID_HEADER: message_id}
        message_headers.update(headers or {})

        delivered = threading.Event()
        report: Dict[str, Any] = {}

        def _on_delivery(err: Optional[KafkaError], msg: Any) -> None:
            report["error"] = err
            delivered.set()

        try:
            self.producer.produce(
                topic=topic,
                key=key.encode("utf-8") if key else None,
                value=encode_payload(payload),
                headers=list(message_headers.items()),
                on_delivery=_on_delivery,
            )
        except BufferError as e:
            raise PublishError(f"Producer buffer full: {e}", topic=topic) from e
        except KafkaException as e:
            raise PublishError(f"Kafka rejected message: {e}", topic=topic) from e

        deadline = time.monotonic() + self.delivery_timeout
        while not delivered.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise PublishError(
                    f"Delivery not confirmed within {self.delivery_timeout}s", topic=topic
                )
            self.producer.poll(min(remaining, 0.1))

        error = report.get("error")
        if error is not None:
            raise PublishError(f"Delivery failed: {error.str()}", topic=topic)

        logger.debug(
            "Message delivered",
            extra={"topic": topic, "message_id": message_id, "key": key},
        )
        return message_id

    def flush(self, timeout: float = 30.0) -> int:
        """Wait for outstanding messages. Returns the number still undelivered."""
        remaining = self.producer.flush(timeout)
        if remaining > 0:
            logger.warning(
                "Producer flush timeout",
                extra={"remaining_messages": remaining, "timeout": timeout},
            )
        return remaining

    def close(self, timeout: float = 30.0) -> None:
        remaining = self.flush(timeout=timeout)
        if remaining > 0:
            logger.error(
                f"Publisher closed with {remaining} messages undelivered",
                extra={"remaining_messages": remaining},
            )
