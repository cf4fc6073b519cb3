"""
Trigger API

HTTP entry point that starts one change-list fan-out.

ENDPOINTS:
    GET /orders/sync?timestamp=<value>
        400  "Timestamp is required."            (missing/blank timestamp)
        404  "No orders found."                  (empty change list, nothing published)
        200  {"message": "Orders are being processed.", ...fan-out summary}
        500  "Error processing orders: <reason>" (unhandled failure)

    GET /health
        200  {"status": "ok", "service": "order-trigger-api"}

The sync handler is a plain `def`: FastAPI runs it in its threadpool, so the
blocking fan-out (which drives its own event loop) never stalls the server loop.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from src.producer.config import ProducerConfig, load_config
from src.producer.producer import ChangeListProducer
from src.shared.queue import QueuePublisher
from src.shared.upstream import OrderApiClient

logger = logging.getLogger(__name__)

SERVICE_NAME = "order-trigger-api"


def build_producer(config: ProducerConfig) -> ChangeListProducer:
    """Wire a ChangeListProducer from configuration."""
    api_client = OrderApiClient(
        base_url=config.upstream_base_url,
        api_token=config.upstream_api_token,
        timeout=config.upstream_timeout_seconds,
    )
    publisher = QueuePublisher(
        config.get_kafka_config(),
        delivery_timeout=config.publish_timeout_seconds,
    )
    return ChangeListProducer(
        api_client=api_client,
        publisher=publisher,
        topic=config.kafka_topic_fetch,
        max_batch_size=config.fanout_max_batch_size,
        concurrency=config.fanout_concurrency,
    )


def create_app(
    config: Optional[ProducerConfig] = None,
    producer: Optional[ChangeListProducer] = None,
) -> FastAPI:
    """
    Build the trigger API.

    Args:
        config: Producer configuration (loaded from the environment if omitted)
        producer: Pre-built producer (tests); otherwise built on startup
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_producer = app.state.producer is None
        if owns_producer:
            app.state.producer = build_producer(config or load_config())
        logger.info("Trigger API started", extra={"service": SERVICE_NAME})

        yield

        if owns_producer:
            active = app.state.producer
            active.publisher.close(timeout=5)
            active.api_client.close()
            app.state.producer = None
        logger.info("Trigger API stopped", extra={"service": SERVICE_NAME})

    app = FastAPI(title="Order Sync Trigger API", version="1.0.0", lifespan=lifespan)
    app.state.producer = producer

    @app.get("/orders/sync")
    def sync_orders(
        timestamp: Optional[str] = None,
        change_list_producer: ChangeListProducer = Depends(get_producer),
    ):
        if timestamp is None or not timestamp.strip():
            return PlainTextResponse("Timestamp is required.", status_code=400)

        try:
            order_numbers = change_list_producer.fetch_order_numbers(timestamp)
            if not order_numbers:
                logger.info("No orders found", extra={"timestamp": timestamp})
                return PlainTextResponse("No orders found.", status_code=404)

            summary = change_list_producer.submit(order_numbers, timestamp=timestamp)
        except Exception as e:
            logger.error(
                "Error processing orders",
                exc_info=True,
                extra={"timestamp": timestamp, "error": str(e)},
            )
            return PlainTextResponse(f"Error processing orders: {e}", status_code=500)

        return JSONResponse(
            {"message": "Orders are being processed.", **summary.to_dict()},
            status_code=200,
        )

    @app.get("/health")
    def health():
        return {"status": "ok", "service": SERVICE_NAME}

    return app


def get_producer(request: Request) -> ChangeListProducer:
    producer = request.app.state.producer
    if producer is None:
        raise RuntimeError("Change-list producer is not initialized")
    return producer
