"""
Insert Consumer

Drains the insert queue and idempotently persists order detail into erp_orders.

PER-BATCH FLOW:
1. Lock every pulled message (queue_message_locks, keyed by message identity
   and consumer name). Messages already locked are deferred: not processed,
   not acknowledged this cycle.
2. For each locked message, in batch order:
   - decode the envelope (same double-JSON tolerance as the fetch stage)
   - validate it into an OrderDetail (pydantic)
   - upsert the order row keyed by order number
   - acknowledge
   - release the lock
3. Failures go to the shared retry policy (republish with retry_count + 1,
   or dead-letter once max_retries is reached). A body that cannot be decoded
   is wrapped as {"raw_body": ...} and follows the same path, so it ends in
   the insert dead-letter queue.

OUTCOMES:
- Persisted       upsert committed, message acknowledged
- Requeued        undecodable body / invalid detail / database error,
                  republished for retry
- DeadLettered    retries exhausted
- Deferred        another worker holds the lock, or an earlier message of the
                  same partition was rewound
- Unacknowledged  retry publish or commit failed

Deferred and unacknowledged messages are rewound on the queue so they are
delivered again; nothing later in their partition is acknowledged first.

StorageUnavailable (database gone after in-process retries) and
BrokerUnavailable abort the run. Locks of messages not yet processed are
released before the error propagates.

RUN MODES:
- run(max_messages): bounded, stops early on an empty batch
- run_daemon(): loops until max_execution_seconds, sleeping when idle
"""

import logging
import time
from typing import List, Optional, Tuple

from pydantic import ValidationError

from src.consumer.config import ConsumerConfig
from src.consumer.database import DatabaseManager
from src.consumer.retry import RetryPolicy
from src.consumer.storage import MessageLockManager, OrderStore
from src.shared.exceptions import (
    LockContention,
    MalformedMessage,
    ProcessingFailure,
    PublishError,
    StorageUnavailable,
)
from src.shared.logger import CorrelationAdapter
from src.shared.messages import (
    RETRY_COUNT_FIELD,
    MessageOutcome,
    QueueMessage,
    build_insert_payload,
    build_raw_body_payload,
    parse_order_details,
    peek_order_number,
)
from src.shared.queue import KafkaQueue, QueuePublisher
from src.shared.schemas import OrderDetail

logger = logging.getLogger(__name__)

SERVICE_NAME = "order-insert-consumer"

# Outcomes that hand the message back to the queue for another delivery
REDELIVERED_OUTCOMES = (MessageOutcome.DEFERRED, MessageOutcome.UNACKNOWLEDGED)


def _describe_validation_error(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in error.errors()
    )


class InsertConsumer:
    """
    Locks, validates and upserts insert-queue messages.

    Attributes:
        queue: Insert queue (dequeue, acknowledge, rewind)
        publisher: Publisher used by the retry policy
        store: Idempotent erp_orders writer
        lock_manager: Per-message processing locks
        retry_policy: Requeue / dead-letter policy for the insert stage
        consumer_name: Name recorded with every lock
    """

    def __init__(
        self,
        config: ConsumerConfig,
        queue: KafkaQueue,
        publisher: QueuePublisher,
        store: OrderStore,
        lock_manager: MessageLockManager,
        retry_policy: Optional[RetryPolicy] = None,
        consumer_name: Optional[str] = None,
    ):
        self.config = config
        self.queue = queue
        self.publisher = publisher
        self.store = store
        self.lock_manager = lock_manager
        self.retry_policy = retry_policy or RetryPolicy(
            publisher=publisher,
            retry_topic=config.kafka_topic_insert,
            dead_letter_topic=config.kafka_topic_insert_dlq,
            max_retries=config.max_retries,
            stage="insert",
        )
        self.consumer_name = consumer_name or config.insert_consumer_name
        self.running = True

        self.messages_processed = 0
        self.messages_persisted = 0
        self.messages_requeued = 0
        self.messages_dead_lettered = 0
        self.messages_deferred = 0
        self.messages_unacknowledged = 0

    # ==========================================================================
    # RUN MODES
    # ==========================================================================

    def run(self, max_messages: int) -> int:
        """
        Process up to max_messages messages in batches.

        Returns:
            Number of messages pulled from the queue

        Raises:
            StorageUnavailable / BrokerUnavailable: Run aborted
        """
        start_time = time.monotonic()
        remaining = max_messages
        handled = 0

        logger.info(
            "Insert consumer started",
            extra={"max_messages": max_messages, "batch_size": self.config.batch_size},
        )
        self.lock_manager.purge_expired()

        while self.running and remaining > 0:
            messages = self.queue.dequeue_batch(min(remaining, self.config.batch_size))
            if not messages:
                logger.info("Insert queue drained", extra={"handled": handled})
                break

            self.process_batch(messages)
            handled += len(messages)
            remaining -= len(messages)

        self._log_summary("Insert consumer run completed", start_time)
        return handled

    def run_daemon(self, max_execution_seconds: Optional[int] = None) -> int:
        """
        Loop until the wall-clock cap or stop(), sleeping when the queue is idle.

        Returns:
            Number of messages pulled from the queue
        """
        cap = max_execution_seconds or self.config.max_execution_seconds
        start_time = time.monotonic()
        deadline = start_time + cap
        handled = 0

        logger.info("Insert consumer started in daemon mode", extra={"max_execution_seconds": cap})
        self.lock_manager.purge_expired()

        while self.running and time.monotonic() < deadline:
            messages = self.queue.dequeue_batch(self.config.batch_size)
            if not messages:
                logger.debug("No more messages for consumer. Sleeping...")
                self._idle(min(self.config.poll_interval_seconds, deadline - time.monotonic()))
                continue

            outcomes = self.process_batch(messages)
            handled += len(messages)

            # Everything was deferred back to the queue: wait for the lock holders
            if all(outcome is MessageOutcome.DEFERRED for outcome in outcomes):
                self._idle(min(self.config.poll_interval_seconds, deadline - time.monotonic()))

        self._log_summary("Insert consumer completed in daemon mode", start_time)
        return handled

    def _idle(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while self.running:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            time.sleep(min(remaining, 0.5))

    # ==========================================================================
    # LOCKING
    # ==========================================================================

    def lock_messages(self, messages: List[QueueMessage]) -> Tuple[List[QueueMessage], List[QueueMessage]]:
        """
        Claim every message for this consumer.

        Returns:
            (locked, deferred): messages this worker may process, and messages
            another worker already holds
        """
        locked, deferred = [], []
        try:
            for message in messages:
                try:
                    self.lock_manager.lock(message.message_id, self.consumer_name)
                    locked.append(message)
                except LockContention:
                    deferred.append(message)
                    logger.info(
                        "Message locked by another worker, deferring",
                        extra={"message_id": message.message_id, "consumer_name": self.consumer_name},
                    )
        except StorageUnavailable:
            for message in locked:
                self._release(message)
            raise
        return locked, deferred

    # ==========================================================================
    # MESSAGE PROCESSING
    # ==========================================================================

    def process_batch(self, messages: List[QueueMessage]) -> List[MessageOutcome]:
        """
        Lock, then process each locked message in batch order.

        Each lock is released once its message is handled. A deferred or
        unacknowledged message is rewound on the queue, and the rest of its
        partition in this batch is deferred with it. When the run aborts, the
        locks still held for messages not yet processed are released before
        the error propagates.
        """
        start_time = time.monotonic()
        locked, _ = self.lock_messages(messages)
        held = {id(message) for message in locked}
        rewound = set()
        outcomes = []

        try:
            for message in messages:
                partition = (message.topic, message.partition)
                if partition in rewound or id(message) not in held:
                    outcome = MessageOutcome.DEFERRED
                else:
                    held.discard(id(message))
                    try:
                        outcome = self.process_message(message)
                    finally:
                        self._release(message)

                if outcome is MessageOutcome.DEFERRED:
                    self.messages_deferred += 1
                if outcome in REDELIVERED_OUTCOMES and partition not in rewound:
                    self.queue.rewind(message)
                    rewound.add(partition)
                outcomes.append(outcome)
        finally:
            for message in messages:
                if id(message) in held:
                    self._release(message)

        logger.info(
            "Insert batch processed",
            extra={
                "batch_size": len(messages),
                "persisted": outcomes.count(MessageOutcome.PERSISTED),
                "deferred": outcomes.count(MessageOutcome.DEFERRED),
                "execution_seconds": round(time.monotonic() - start_time, 2),
            },
        )
        return outcomes

    def process_message(self, message: QueueMessage) -> MessageOutcome:
        """Persist one already-locked message. The caller owns the lock."""
        self.messages_processed += 1

        try:
            order_details, retry_count = parse_order_details(message.body)
        except MalformedMessage as e:
            payload = build_raw_body_payload(message.body)
            message_logger = CorrelationAdapter(logger, {"correlation_id": message.message_id})
            return self._handle_failure(message, payload, None, str(e), message_logger)

        order_number = peek_order_number(order_details)
        order_logger = CorrelationAdapter(logger, {"correlation_id": order_number})

        try:
            self._persist(order_details, order_number)
        except ProcessingFailure as e:
            return self._handle_failure(
                message,
                build_insert_payload(order_details, retry_count),
                order_number,
                str(e),
                order_logger,
            )

        if not self.queue.acknowledge(message):
            self.messages_unacknowledged += 1
            return MessageOutcome.UNACKNOWLEDGED

        self.messages_persisted += 1
        order_logger.info("Order data processed successfully", extra={"retry_count": retry_count})
        return MessageOutcome.PERSISTED

    def _persist(self, order_details: dict, order_number: Optional[str]) -> None:
        """
        Raises:
            ProcessingFailure: Invalid detail or non-transient database error
            StorageUnavailable: Database unreachable
        """
        try:
            detail = OrderDetail.from_payload(order_details)
        except ValidationError as e:
            raise ProcessingFailure(
                f"Invalid order details: {_describe_validation_error(e)}",
                order_number=order_number,
            ) from e

        self.store.insert_or_update(detail)

    def _handle_failure(
        self,
        message: QueueMessage,
        payload: dict,
        order_number: Optional[str],
        reason: str,
        order_logger: CorrelationAdapter,
    ) -> MessageOutcome:
        order_logger.error(
            "Error processing order",
            extra={"retry_count": payload.get(RETRY_COUNT_FIELD, 0), "reason": reason},
        )

        try:
            outcome = self.retry_policy.handle_failure(payload, reason, order_number=order_number)
        except PublishError as e:
            self.messages_unacknowledged += 1
            order_logger.error(
                "Retry publish failed, leaving message for redelivery",
                extra={"error": str(e)},
            )
            return MessageOutcome.UNACKNOWLEDGED

        if not self.queue.acknowledge(message):
            self.messages_unacknowledged += 1
            return MessageOutcome.UNACKNOWLEDGED

        if outcome is MessageOutcome.DEAD_LETTERED:
            self.messages_dead_lettered += 1
        else:
            self.messages_requeued += 1
        return outcome

    def _release(self, message: QueueMessage) -> None:
        try:
            self.lock_manager.release(message.message_id, self.consumer_name)
        except StorageUnavailable as e:
            logger.error(
                "Failed to release message lock",
                extra={"message_id": message.message_id, "error": str(e)},
            )

    # ==========================================================================
    # LIFECYCLE
    # ==========================================================================

    def stop(self) -> None:
        """Finish the current batch, then leave the loop."""
        logger.info("Stopping insert consumer...")
        self.running = False

    def close(self) -> None:
        """Close the queue and flush the publisher. The database is closed by the caller."""
        self.queue.close()
        self.publisher.close(timeout=10.0)

    def _log_summary(self, message: str, start_time: float) -> None:
        logger.info(
            message,
            extra={
                "messages_processed": self.messages_processed,
                "messages_persisted": self.messages_persisted,
                "messages_requeued": self.messages_requeued,
                "messages_dead_lettered": self.messages_dead_lettered,
                "messages_deferred": self.messages_deferred,
                "messages_unacknowledged": self.messages_unacknowledged,
                "execution_seconds": round(time.monotonic() - start_time, 2),
            },
        )


# ==============================================================================
# WIRING
# ==============================================================================


def build_insert_consumer(config: ConsumerConfig, db_manager: DatabaseManager) -> InsertConsumer:
    """Create an InsertConsumer with Kafka clients and storage on db_manager."""
    queue = KafkaQueue(
        config.get_consumer_kafka_config("insert"),
        config.kafka_topic_insert,
        poll_timeout=config.poll_timeout_seconds,
    )
    publisher = QueuePublisher(
        config.get_producer_kafka_config(),
        delivery_timeout=config.publish_timeout_seconds,
    )
    store = OrderStore(
        db_manager,
        retry_attempts=config.db_retry_attempts,
        retry_backoff_ms=config.retry_backoff_ms,
    )
    lock_manager = MessageLockManager(db_manager, lock_ttl_seconds=config.lock_ttl_seconds)
    return InsertConsumer(config, queue, publisher, store, lock_manager)
