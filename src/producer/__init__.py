"""
Change-List Producer Service - Package Initialization

Entry side of the order sync pipeline: asks the upstream order API which
orders changed since a timestamp and publishes one fetch request per order.

PACKAGE STRUCTURE:
- config.py: Producer configuration from environment variables
- producer.py: ChangeListProducer with bounded-concurrency fan-out
- api.py: FastAPI trigger endpoint (GET /orders/sync?timestamp=...)
- main.py: CLI (run once / serve the trigger API)

USAGE:
    python -m src.producer.main run --timestamp 2024-01-01T00:00:00
    python -m src.producer.main serve
"""

__version__ = "1.0.0"

from src.producer.config import ProducerConfig, load_config
from src.producer.producer import ChangeListProducer, FanOutSummary

__all__ = [
    "ChangeListProducer",
    "FanOutSummary",
    "ProducerConfig",
    "load_config",
]
