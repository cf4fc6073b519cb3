"""
Order Consumer Services Package

The two consumer stages of the order sync pipeline:

┌─────────────┐    ┌────────────────┐    ┌──────────────┐    ┌─────────────────┐    ┌────────────┐
│ order.fetch │───▶│ FetchConsumer  │───▶│ order.insert │───▶│ InsertConsumer  │───▶│ erp_orders │
└─────────────┘    │ (upstream GET) │    └──────────────┘    │ (lock + upsert) │    └────────────┘
                   └───────┬────────┘                        └────────┬────────┘
                           ▼                                          ▼
                    order.fetch.dlq                            order.insert.dlq

OFFSET MANAGEMENT:
- enable.auto.commit=False: each message is committed after its outcome is final
- A failed message is republished with retry_count + 1 and then committed
- A message whose retry publish failed is left uncommitted (redelivered)

Package components:
- config.py: Configuration from environment variables
- models.py / database.py / storage.py: erp_orders, message locks, upsert
- retry.py: Shared retry / dead-letter policy
- fetch_consumer.py / insert_consumer.py: The two stages
- main.py: CLI entry point with shutdown handling
"""

__version__ = "1.0.0"

from src.consumer.config import ConsumerConfig, load_config

__all__ = [
    "ConsumerConfig",
    "load_config",
]
