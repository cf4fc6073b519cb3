"""
Fetch Consumer

Drains the fetch queue, resolves each order number to full order detail via
the upstream API, and forwards the detail to the insert queue.

PER-MESSAGE STATE MACHINE:

    Received ──decode──▶ Resolving ──detail + confirmed publish──▶ Published (ack)
       │                    │
       │ malformed          │ no detail / upstream error / publish failed
       ▼                    ▼
    Dropped            RetryPolicy ──▶ Requeued (ack) | DeadLettered (ack)
    (no ack,                 │
     no retry)               └─ retry publish failed ──▶ Unacknowledged (rewound)

The fetch message is acknowledged only once the insert-queue publish is
confirmed, so an order is never lost between the two queues. An
unacknowledged message is rewound on the queue and later messages of its
partition are deferred until it comes back.

RUN MODES:
- run(max_messages): bounded; pulls batches until N messages are handled or
  the queue returns an empty batch
- run_forever(): one worker's poll → process → sleep-when-idle loop
- run_fetch_daemon(config): N worker processes (multiprocessing), each with
  its own Kafka clients and HTTP client; no shared memory, per-worker counters
"""

import logging
import multiprocessing
import signal
import sys
import time
from typing import List, Optional

from src.consumer.config import ConsumerConfig
from src.consumer.retry import RetryPolicy
from src.shared.exceptions import (
    BrokerUnavailable,
    MalformedMessage,
    ProcessingFailure,
    PublishError,
)
from src.shared.logger import CorrelationAdapter, setup_logger
from src.shared.messages import (
    MessageOutcome,
    OrderReference,
    QueueMessage,
    build_insert_payload,
    parse_order_reference,
)
from src.shared.queue import KafkaQueue, QueuePublisher
from src.shared.upstream import OrderApiClient

logger = logging.getLogger(__name__)

SERVICE_NAME = "order-fetch-consumer"


class FetchConsumer:
    """
    Resolves fetch-queue order numbers and forwards order detail.

    Attributes:
        queue: Fetch queue (dequeue, acknowledge, rewind)
        publisher: Publisher for the insert queue (and retries, via the policy)
        api_client: Upstream order API (detail fetcher)
        retry_policy: Requeue / dead-letter policy for the fetch stage
        worker_id: Worker index in daemon mode (logging only)
        running: Cleared by stop() to end the current loop after its batch
    """

    def __init__(
        self,
        config: ConsumerConfig,
        queue: KafkaQueue,
        publisher: QueuePublisher,
        api_client: OrderApiClient,
        retry_policy: Optional[RetryPolicy] = None,
        worker_id: int = 0,
    ):
        self.config = config
        self.queue = queue
        self.publisher = publisher
        self.api_client = api_client
        self.retry_policy = retry_policy or RetryPolicy(
            publisher=publisher,
            retry_topic=config.kafka_topic_fetch,
            dead_letter_topic=config.kafka_topic_fetch_dlq,
            max_retries=config.max_retries,
            stage="fetch",
        )
        self.worker_id = worker_id
        self.running = True

        # Per-worker counters
        self.messages_processed = 0
        self.messages_published = 0
        self.messages_requeued = 0
        self.messages_dead_lettered = 0
        self.messages_dropped = 0
        self.messages_deferred = 0
        self.messages_unacknowledged = 0

    # ==========================================================================
    # RUN MODES
    # ==========================================================================

    def run(self, max_messages: int) -> int:
        """
        Process up to max_messages messages in batches of config.batch_size.

        Returns:
            Number of messages handled

        Raises:
            BrokerUnavailable: Fatal broker error (run aborted)
        """
        start_time = time.monotonic()
        remaining = max_messages
        handled = 0

        logger.info(
            "Fetch consumer started",
            extra={"max_messages": max_messages, "batch_size": self.config.batch_size},
        )

        while self.running and remaining > 0:
            messages = self.queue.dequeue_batch(min(remaining, self.config.batch_size))
            if not messages:
                logger.info("Fetch queue drained", extra={"handled": handled})
                break

            self.process_batch(messages)
            handled += len(messages)
            remaining -= len(messages)

        self._log_summary("Fetch consumer run completed", start_time)
        return handled

    def run_forever(self) -> int:
        """
        Poll → process → sleep-when-idle until stop() is called.

        Returns:
            Number of messages handled by this worker
        """
        start_time = time.monotonic()
        logger.info(
            "Fetch worker started",
            extra={"worker_id": self.worker_id, "batch_size": self.config.batch_size},
        )

        try:
            while self.running:
                messages = self.queue.dequeue_batch(self.config.batch_size)
                if not messages:
                    logger.debug(
                        "No more messages for consumer. Sleeping...",
                        extra={"worker_id": self.worker_id},
                    )
                    self._idle(self.config.poll_interval_seconds)
                    continue

                self.process_batch(messages)
        finally:
            self._log_summary("Fetch worker stopped", start_time)

        return self.messages_processed

    def _idle(self, seconds: float) -> None:
        """Sleep up to seconds, waking early once stop() is called."""
        deadline = time.monotonic() + seconds
        while self.running:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            time.sleep(min(remaining, 0.5))

    # ==========================================================================
    # MESSAGE PROCESSING
    # ==========================================================================

    def process_batch(self, messages: List[QueueMessage]) -> List[MessageOutcome]:
        """
        Process a batch in order, one outcome per message.

        A message left unacknowledged is rewound on the queue. The rest of its
        partition in this batch is deferred, since acknowledging a later offset
        would commit past it.
        """
        outcomes = []
        rewound = set()
        for message in messages:
            partition = (message.topic, message.partition)
            if partition in rewound:
                self.messages_deferred += 1
                outcomes.append(MessageOutcome.DEFERRED)
                continue

            outcome = self.process_message(message)
            if outcome is MessageOutcome.UNACKNOWLEDGED:
                self.queue.rewind(message)
                rewound.add(partition)
            outcomes.append(outcome)

        return outcomes

    def process_message(self, message: QueueMessage) -> MessageOutcome:
        """Drive one fetch message to a terminal outcome for this cycle."""
        self.messages_processed += 1

        try:
            reference = parse_order_reference(message.body)
        except MalformedMessage as e:
            self.messages_dropped += 1
            logger.warning(
                "Dropping malformed fetch message",
                extra={
                    "message_id": message.message_id,
                    "topic": message.topic,
                    "partition": message.partition,
                    "offset": message.offset,
                    "error": str(e),
                },
            )
            return MessageOutcome.DROPPED

        order_logger = CorrelationAdapter(logger, {"correlation_id": reference.order_number})
        order_logger.info(
            "Processing order fetch",
            extra={"retry_count": reference.retry_count, "worker_id": self.worker_id},
        )

        try:
            self._resolve_and_forward(reference, order_logger)
        except ProcessingFailure as e:
            return self._handle_failure(message, reference, str(e), order_logger)

        if not self.queue.acknowledge(message):
            self.messages_unacknowledged += 1
            return MessageOutcome.UNACKNOWLEDGED

        self.messages_published += 1
        order_logger.info("Successfully acknowledged fetch message")
        return MessageOutcome.PUBLISHED

    def _resolve_and_forward(self, reference: OrderReference, order_logger: CorrelationAdapter) -> None:
        """
        Fetch order detail and publish it to the insert queue.

        Raises:
            ProcessingFailure: No detail returned, or the insert publish failed
        """
        order_details = self.api_client.fetch_order_details(reference.order_number)
        if not order_details:
            raise ProcessingFailure(
                "No order details returned", order_number=reference.order_number
            )

        try:
            self.publisher.publish(
                self.config.kafka_topic_insert,
                build_insert_payload(order_details),
                key=reference.order_number,
            )
        except PublishError as e:
            raise ProcessingFailure(
                f"Failed to publish order details: {e}", order_number=reference.order_number
            ) from e

        order_logger.info(
            "Order details sent to insert queue",
            extra={"topic": self.config.kafka_topic_insert},
        )

    def _handle_failure(
        self,
        message: QueueMessage,
        reference: OrderReference,
        reason: str,
        order_logger: CorrelationAdapter,
    ) -> MessageOutcome:
        order_logger.error(
            "Failed to fetch order details",
            extra={"retry_count": reference.retry_count, "reason": reason},
        )

        try:
            outcome = self.retry_policy.handle_failure(
                reference.to_payload(), reason, order_number=reference.order_number
            )
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

    # ==========================================================================
    # LIFECYCLE
    # ==========================================================================

    def stop(self) -> None:
        """Finish the current batch, then leave the loop."""
        logger.info("Stopping fetch consumer...", extra={"worker_id": self.worker_id})
        self.running = False

    def close(self) -> None:
        """Close the queue, flush the publisher and close the HTTP client."""
        self.queue.close()
        self.publisher.close(timeout=10.0)
        self.api_client.close()

    def _log_summary(self, message: str, start_time: float) -> None:
        logger.info(
            message,
            extra={
                "worker_id": self.worker_id,
                "messages_processed": self.messages_processed,
                "messages_published": self.messages_published,
                "messages_requeued": self.messages_requeued,
                "messages_dead_lettered": self.messages_dead_lettered,
                "messages_dropped": self.messages_dropped,
                "messages_deferred": self.messages_deferred,
                "messages_unacknowledged": self.messages_unacknowledged,
                "execution_seconds": round(time.monotonic() - start_time, 2),
            },
        )


# ==============================================================================
# WIRING
# ==============================================================================


def build_fetch_consumer(config: ConsumerConfig, worker_id: int = 0) -> FetchConsumer:
    """Create a FetchConsumer with its own Kafka and HTTP clients."""
    queue = KafkaQueue(
        config.get_consumer_kafka_config("fetch"),
        config.kafka_topic_fetch,
        poll_timeout=config.poll_timeout_seconds,
    )
    publisher = QueuePublisher(
        config.get_producer_kafka_config(),
        delivery_timeout=config.publish_timeout_seconds,
    )
    api_client = OrderApiClient(
        base_url=config.upstream_base_url,
        api_token=config.upstream_api_token,
        timeout=config.upstream_timeout_seconds,
    )
    return FetchConsumer(config, queue, publisher, api_client, worker_id=worker_id)


# ==============================================================================
# DAEMON MODE (multiprocessing)
# ==============================================================================


def fetch_worker_main(config: ConsumerConfig, worker_id: int) -> None:
    """Entry point of one daemon worker process."""
    setup_logger(
        name="src",
        service_name=SERVICE_NAME,
        log_level=config.log_level,
        log_format=config.log_format,
    )

    consumer = build_fetch_consumer(config, worker_id=worker_id)

    def _stop(signum, frame):
        consumer.stop()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)

    exit_code = 0
    try:
        consumer.run_forever()
    except BrokerUnavailable as e:
        logger.critical(
            "Fetch worker aborted: broker unavailable",
            extra={"worker_id": worker_id, "error": str(e)},
        )
        exit_code = 1
    finally:
        consumer.close()

    sys.exit(exit_code)


def run_fetch_daemon(config: ConsumerConfig, workers: Optional[int] = None, target=fetch_worker_main) -> int:
    """
    Run N fetch workers as separate processes until they are terminated.

    SIGINT/SIGTERM received by the parent are forwarded to every worker, which
    finishes its current batch and exits.

    Returns:
        0 if every worker exited cleanly, 1 otherwise
    """
    workers = workers or config.fetch_workers
    logger.info("Running fetch daemon with parallel workers", extra={"workers": workers})

    processes = []
    for worker_id in range(workers):
        process = multiprocessing.Process(
            target=target,
            args=(config, worker_id),
            name=f"fetch-worker-{worker_id}",
        )
        process.start()
        processes.append(process)
        logger.info(
            "Fetch worker process started",
            extra={"worker_id": worker_id, "pid": process.pid},
        )

    def _forward(signum, frame):
        logger.info("Shutdown signal received, stopping fetch workers", extra={"signal": signum})
        for process in processes:
            if process.is_alive():
                process.terminate()

    previous_handlers = {
        sig: signal.signal(sig, _forward) for sig in (signal.SIGINT, signal.SIGTERM)
    }

    try:
        for process in processes:
            process.join()
    finally:
        for sig, handler in previous_handlers.items():
            signal.signal(sig, handler)

    failed = [process.name for process in processes if process.exitcode not in (0, -signal.SIGTERM)]
    if failed:
        logger.error("Fetch workers exited with errors", extra={"workers": failed})
        return 1

    logger.info("Fetch daemon completed", extra={"workers": workers})
    return 0
