"""
Change-List Producer Implementation

Turns one upstream "changed orders" call into one fetch-queue message per order.

FLOW:
┌──────────────┐   GET /orders/ChangeList   ┌─────────────────────┐
│  trigger     │──────────────────────────▶│  upstream order API │
│ (API or CLI) │◀──────────────────────────│                     │
└──────┬───────┘   [ORD-1, ORD-2, ...]      └─────────────────────┘
       │ first max_batch_size numbers
       ▼
┌────────────────────────────┐   {"order_number": "ORD-1", "retry_count": 0}
│ bounded fan-out            │─────────────────────────────────────────▶ order.fetch
│ (asyncio, N publish tasks) │
└────────────────────────────┘

FAN-OUT:
- asyncio.Semaphore caps in-flight publishes at `concurrency`
- Each publish blocks on its delivery report, so it runs in a worker thread
  (asyncio.to_thread) while the event loop schedules the rest
- gather(return_exceptions=True): one failed publish never cancels the others
- Failed publishes are logged with their order number and not retried here;
  the next trigger for the same window picks the order up again
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence

from src.shared.messages import OrderReference
from src.shared.queue import QueuePublisher
from src.shared.upstream import OrderApiClient

logger = logging.getLogger(__name__)


@dataclass
class FanOutSummary:
    """Outcome of one fan-out run."""

    total_found: int
    total_submitted: int
    published: int
    failed: int
    elapsed_seconds: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ChangeListProducer:
    """
    Publishes a fetch request for every order changed since a timestamp.

    Attributes:
        api_client: Upstream order API client (change-list endpoint)
        publisher: Confirmed-delivery queue publisher
        topic: Fetch queue topic
        max_batch_size: Order numbers submitted per run (the rest are deferred)
        concurrency: Maximum concurrent publish tasks

    Example:
        producer = ChangeListProducer(api_client, publisher, "order.fetch")
        summary = producer.run("2024-01-01")
        print(summary.total_submitted)
    """

    def __init__(
        self,
        api_client: OrderApiClient,
        publisher: QueuePublisher,
        topic: str,
        max_batch_size: int = 500,
        concurrency: int = 10,
    ):
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        self.api_client = api_client
        self.publisher = publisher
        self.topic = topic
        self.max_batch_size = max_batch_size
        self.concurrency = concurrency

    def fetch_order_numbers(self, timestamp: str) -> List[str]:
        """Order numbers changed since timestamp (empty on upstream failure)."""
        return self.api_client.fetch_change_list(timestamp)

    def run(self, timestamp: str) -> FanOutSummary:
        """Fetch the change list for timestamp and fan it out."""
        order_numbers = self.fetch_order_numbers(timestamp)
        return self.submit(order_numbers, timestamp=timestamp)

    def submit(self, order_numbers: Sequence[str], timestamp: Optional[str] = None) -> FanOutSummary:
        """
        Publish one fetch request per order number, blocking until all complete.

        Args:
            order_numbers: Changed order numbers in upstream order
            timestamp: Trigger timestamp (logging only)

        Returns:
            FanOutSummary with published/failed counts
        """
        start_time = time.monotonic()
        batch = list(order_numbers[: self.max_batch_size])
        deferred = len(order_numbers) - len(batch)

        if deferred > 0:
            logger.warning(
                "Change list exceeds max batch size, deferring remainder",
                extra={
                    "timestamp": timestamp,
                    "total_found": len(order_numbers),
                    "max_batch_size": self.max_batch_size,
                    "deferred": deferred,
                },
            )

        published = 0
        if batch:
            published = asyncio.run(self._fan_out(batch))

        summary = FanOutSummary(
            total_found=len(order_numbers),
            total_submitted=len(batch),
            published=published,
            failed=len(batch) - published,
            elapsed_seconds=round(time.monotonic() - start_time, 3),
        )

        logger.info(
            "Fan-out completed",
            extra={"timestamp": timestamp, "topic": self.topic, **summary.to_dict()},
        )
        return summary

    async def _fan_out(self, order_numbers: List[str]) -> int:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _bounded(order_number: str) -> str:
            async with semaphore:
                return await self._publish_reference(order_number)

        results = await asyncio.gather(
            *(_bounded(order_number) for order_number in order_numbers),
            return_exceptions=True,
        )

        published = 0
        for order_number, result in zip(order_numbers, results):
            if isinstance(result, Exception):
                logger.error(
                    "Failed to publish fetch request",
                    extra={"correlation_id": order_number, "error": str(result)},
                )
            else:
                published += 1
                logger.debug(
                    "Fetch request published",
                    extra={"correlation_id": order_number, "message_id": result},
                )
        return published

    async def _publish_reference(self, order_number: str) -> str:
        reference = OrderReference(order_number=order_number)
        return await asyncio.to_thread(
            self.publisher.publish,
            self.topic,
            reference.to_payload(),
            key=order_number,
        )
