"""
Shared Retry / Dead-Letter Policy

Both consumer stages hand per-message failures to a RetryPolicy:

    retry_count < max_retries   → republish to the stage queue with retry_count + 1
    retry_count >= max_retries  → publish to the stage dead-letter queue (terminal)

With max_retries=3 a message is attempted four times: the original delivery
and three retries (retry_count 0, 1, 2, 3). The failure at retry_count=3 goes
to the DLQ with retry_count=3 and the failure reason.

The caller acknowledges the original message only after the policy's publish
succeeded. A PublishError propagates so the original stays unacknowledged and
is redelivered by the broker.
"""

import logging
from typing import Any, Dict, Optional

from src.shared.messages import (
    RETRY_COUNT_FIELD,
    DeadLetterRecord,
    MessageOutcome,
    read_retry_count,
)
from src.shared.queue import QueuePublisher

logger = logging.getLogger(__name__)


class RetryPolicy:
    """
    Requeue-or-dead-letter decision for one consumer stage.

    Attributes:
        publisher: Confirmed-delivery publisher
        retry_topic: Stage queue that receives retries
        dead_letter_topic: Stage dead-letter queue
        max_retries: Retries before dead-lettering
        stage: Stage name recorded on dead-letter records ("fetch" / "insert")
    """

    def __init__(
        self,
        publisher: QueuePublisher,
        retry_topic: str,
        dead_letter_topic: str,
        max_retries: int = 3,
        stage: str = "fetch",
    ):
        self.publisher = publisher
        self.retry_topic = retry_topic
        self.dead_letter_topic = dead_letter_topic
        self.max_retries = max_retries
        self.stage = stage

    def handle_failure(
        self,
        payload: Dict[str, Any],
        reason: str,
        order_number: Optional[str] = None,
    ) -> MessageOutcome:
        """
        Requeue or dead-letter a failed message.

        Args:
            payload: Decoded message envelope (carries retry_count)
            reason: Failure reason for logs and the dead-letter record
            order_number: Order number (partition key and correlation id)

        Returns:
            MessageOutcome.REQUEUED or MessageOutcome.DEAD_LETTERED

        Raises:
            PublishError: The requeue or dead-letter publish was not confirmed
        """
        retry_count = read_retry_count(payload)

        if retry_count < self.max_retries:
            requeued = dict(payload)
            requeued[RETRY_COUNT_FIELD] = retry_count + 1
            self.publisher.publish(self.retry_topic, requeued, key=order_number)

            logger.warning(
                "Order message requeued",
                extra={
                    "correlation_id": order_number,
                    "stage": self.stage,
                    "retry_count": retry_count + 1,
                    "max_retries": self.max_retries,
                    "reason": reason,
                },
            )
            return MessageOutcome.REQUEUED

        record = DeadLetterRecord(
            payload=payload,
            error=reason,
            retry_count=retry_count,
            stage=self.stage,
        )
        self.publisher.publish(
            self.dead_letter_topic,
            record.to_payload(),
            key=order_number,
            headers={"dlq_reason": "Max retries exceeded", "stage": self.stage},
        )

        logger.error(
            "Order message moved to dead-letter queue",
            extra={
                "correlation_id": order_number,
                "stage": self.stage,
                "retry_count": retry_count,
                "dead_letter_topic": self.dead_letter_topic,
                "reason": reason,
            },
        )
        return MessageOutcome.DEAD_LETTERED
