"""
Pytest Configuration and Shared Fixtures

Unit tests run without external services:
- InMemoryBroker: stands in for both KafkaQueue (dequeue/acknowledge) and
  QueuePublisher (confirmed publish), recording every message per topic
- UpstreamStub: serves the upstream order API through httpx.MockTransport
- db_manager: DatabaseManager on in-memory SQLite (StaticPool, one connection)

Integration tests use testcontainers (Kafka, PostgreSQL) and are skipped when
Docker is not available.

FIXTURE SCOPES:
- session: containers (started once, shared)
- function: everything else (isolated per test)
"""

import itertools
import uuid
from collections import defaultdict
from typing import Any, Dict, Generator, List, Optional

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from src.consumer.config import ConsumerConfig
from src.consumer.database import init_database
from src.shared.exceptions import PublishError
from src.shared.messages import MESSAGE_ID_HEADER, QueueMessage, encode_payload, unwrap_json
from src.shared.mock_data import MockOrderGenerator
from src.shared.upstream import OrderApiClient

# ==============================================================================
# IN-MEMORY BROKER
# ==============================================================================


class InMemoryBroker:
    """
    Topic → pending messages, with acknowledgments recorded per topic.

    publish() mirrors QueuePublisher.publish(); queue(topic) returns an object
    with the KafkaQueue interface. Every topic is a single partition: log keeps
    every message ever put on it so rewind() can replay from an offset.
    """

    def __init__(self):
        self.log: Dict[str, List[QueueMessage]] = defaultdict(list)
        self.pending: Dict[str, List[QueueMessage]] = defaultdict(list)
        self.published: Dict[str, List[QueueMessage]] = defaultdict(list)
        self.acknowledged: Dict[str, List[QueueMessage]] = defaultdict(list)
        self.rewound: Dict[str, List[QueueMessage]] = defaultdict(list)
        self.failing_topics = set()
        self.fail_acknowledge = False
        self._offsets = itertools.count()
        self.closed = False

    def publish(self, topic: str, payload: Any, key: Optional[str] = None, headers=None) -> str:
        if topic in self.failing_topics:
            raise PublishError("Delivery failed: broker unavailable", topic=topic)

        message_id = uuid.uuid4().hex
        message = QueueMessage(
            body=encode_payload(payload),
            headers={MESSAGE_ID_HEADER: message_id, **(headers or {})},
            topic=topic,
            partition=0,
            offset=next(self._offsets),
        )
        self.log[topic].append(message)
        self.pending[topic].append(message)
        self.published[topic].append(message)
        return message_id

    def enqueue_raw(self, topic: str, body: bytes, message_id: Optional[str] = None) -> QueueMessage:
        """Put a raw body on a topic (bypasses JSON encoding)."""
        message = QueueMessage(
            body=body,
            headers={MESSAGE_ID_HEADER: message_id or uuid.uuid4().hex},
            topic=topic,
            partition=0,
            offset=next(self._offsets),
        )
        self.log[topic].append(message)
        self.pending[topic].append(message)
        return message

    def payloads(self, topic: str) -> List[Any]:
        """Decoded bodies of everything published to topic."""
        return [unwrap_json(message.body) for message in self.published[topic]]

    def queue(self, topic: str) -> "InMemoryQueue":
        return InMemoryQueue(self, topic)

    def flush(self, timeout: float = 30.0) -> int:
        return 0

    def close(self, timeout: float = 30.0) -> None:
        self.closed = True


class InMemoryQueue:
    """KafkaQueue stand-in over one InMemoryBroker topic."""

    def __init__(self, broker: InMemoryBroker, topic: str):
        self.broker = broker
        self.topic = topic
        self.closed = False

    def dequeue_batch(self, max_messages: int) -> List[QueueMessage]:
        pending = self.broker.pending[self.topic]
        batch = pending[:max_messages]
        del pending[:max_messages]
        return batch

    def acknowledge(self, message: QueueMessage) -> bool:
        if self.broker.fail_acknowledge:
            return False
        self.broker.acknowledged[self.topic].append(message)
        return True

    def rewind(self, message: QueueMessage) -> None:
        """Seek back: the message and everything after it are delivered again."""
        self.broker.rewound[self.topic].append(message)
        self.broker.pending[self.topic] = [
            m for m in self.broker.log[self.topic] if m.offset >= message.offset
        ]

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


# ==============================================================================
# UPSTREAM ORDER API STUB
# ==============================================================================


class UpstreamStub:
    """
    httpx.MockTransport handler emulating the upstream order API.

    Attributes:
        orders: order number → detail payload (missing → 404)
        change_list: order numbers returned by /orders/ChangeList
        change_list_status: HTTP status for /orders/ChangeList
        requests: Every request received
    """

    BASE_URL = "https://erp.test"
    TOKEN = "test-token"

    def __init__(self):
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.change_list: List[str] = []
        self.change_list_status = 200
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if request.headers.get("Authorization") != f"Bearer {self.TOKEN}":
            return httpx.Response(401, json={"error": "unauthorized"})

        if request.url.path == "/orders/ChangeList":
            if self.change_list_status != 200:
                return httpx.Response(self.change_list_status, text="upstream error")
            return httpx.Response(
                200, json={"orderList": [{"orderNumber": n} for n in self.change_list]}
            )

        order_number = request.url.path[len("/orders/"):]
        if order_number in self.orders:
            return httpx.Response(200, json=self.orders[order_number])
        return httpx.Response(404, json={"error": "not found"})

    def client(self) -> OrderApiClient:
        return OrderApiClient(
            base_url=self.BASE_URL,
            api_token=self.TOKEN,
            timeout=5.0,
            transport=httpx.MockTransport(self.handler),
        )


@pytest.fixture
def upstream() -> UpstreamStub:
    return UpstreamStub()


@pytest.fixture
def api_client(upstream) -> Generator[OrderApiClient, None, None]:
    client = upstream.client()
    yield client
    client.close()


# ==============================================================================
# CONFIG / DATABASE FIXTURES
# ==============================================================================


@pytest.fixture
def consumer_config() -> ConsumerConfig:
    """Consumer config for unit tests: no sleeping, no backoff."""
    return ConsumerConfig(
        batch_size=10,
        poll_interval_seconds=0,
        max_retries=3,
        retry_backoff_ms=0,
        db_retry_attempts=3,
        max_execution_seconds=5,
        lock_ttl_seconds=3600,
    )


@pytest.fixture
def db_manager(consumer_config):
    """DatabaseManager on a private in-memory SQLite database with the schema created."""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    manager = init_database(consumer_config, engine=engine)
    yield manager
    manager.close()


# ==============================================================================
# MOCK DATA FIXTURES
# ==============================================================================


@pytest.fixture
def order_generator() -> MockOrderGenerator:
    return MockOrderGenerator(seed=42)


@pytest.fixture
def sample_order_details() -> Dict[str, Any]:
    """Upstream order-detail payload for ORD-1."""
    return {
        "orderHeader": {
            "orderNumber": "ORD-1",
            "customerCode": "C100",
            "billToName": "Green Acres Landscaping",
            "billToAddress1": "12 Elm St",
            "billToCity": "Springfield",
            "billToState": "IL",
            "billToZip": "62701",
            "branchCode": "BR01",
            "branchName": "Springfield Yard",
            "deliveryCharges": 45.0,
            "orderDate": "2024-01-01",
            "orderStatus": "Open",
            "orderTotal": 157.06,
            "orderType": "SO",
            "saleType": "Account",
            "shipViaCode": "DEL",
            "shipToName": "Green Acres Landscaping",
            "shipToAddress1": "400 Oak Ave",
            "shipToCity": "Springfield",
            "shipToState": "IL",
            "shipToZip": "62704",
            "subTotal": 104.73,
            "tax": 7.33,
            "deliveryDate": "2024-01-03",
            "deliveryWindow": "AM",
            "shipComplete": True,
            "orderedBy": "Pat Doe",
        },
        "orderDetails": [
            {
                "lineNumber": 1,
                "itemCode": "MULCH-BRN-2CF",
                "itemDescription": "Brown Mulch 2 cu ft",
                "quantityOrdered": 15,
                "unitPrice": 4.79,
                "extendedPrice": 71.85,
            },
            {
                "lineNumber": 2,
                "itemCode": "TOPSOIL-40LB",
                "quantityOrdered": 9,
                "unitPrice": 3.49,
                "extendedPrice": 31.41,
            },
        ],
    }


# ==============================================================================
# CONTAINER FIXTURES (integration)
# ==============================================================================


@pytest.fixture(scope="session")
def postgres_container():
    """PostgreSQL testcontainer for the session (skipped without Docker)."""
    from testcontainers.postgres import PostgresContainer

    try:
        container = PostgresContainer("postgres:15")
        container.start()
    except Exception as e:
        pytest.skip(f"Docker not available for PostgreSQL container: {e}")

    try:
        yield container
    finally:
        container.stop()


@pytest.fixture(scope="session")
def kafka_container():
    """Kafka testcontainer for the session (skipped without Docker)."""
    from testcontainers.kafka import KafkaContainer

    try:
        container = KafkaContainer()
        container.start()
    except Exception as e:
        pytest.skip(f"Docker not available for Kafka container: {e}")

    try:
        yield container
    finally:
        container.stop()


# ==============================================================================
# TEST ENVIRONMENT CONFIGURATION
# ==============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (requires containers)"
    )
    config.addinivalue_line("markers", "slow: mark test as slow (takes more than 5 seconds)")
    config.addinivalue_line("markers", "unit: mark test as unit test (no external dependencies)")
