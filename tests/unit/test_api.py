"""
Unit Tests for the Trigger API

Uses FastAPI's TestClient with a ChangeListProducer wired to the upstream stub
and the in-memory broker.

TEST STRATEGY:
- 400 without a timestamp, 404 on an empty change list (nothing published)
- 200 with the fan-out summary
- 500 with the error text on unexpected failures
"""

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from src.producer.api import create_app
from src.producer.producer import ChangeListProducer

FETCH = "order.fetch"


@pytest.fixture
def client(api_client, broker):
    producer = ChangeListProducer(api_client, broker, FETCH)
    with TestClient(create_app(producer=producer)) as test_client:
        yield test_client


@pytest.mark.unit
def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "order-trigger-api"}


@pytest.mark.unit
@pytest.mark.parametrize("query", ["", "?timestamp=", "?timestamp=%20"])
def test_sync_requires_timestamp(client, broker, query):
    response = client.get(f"/orders/sync{query}")

    assert response.status_code == 400
    assert response.text == "Timestamp is required."
    assert broker.published[FETCH] == []


@pytest.mark.unit
def test_sync_no_orders_found(client, broker, upstream):
    response = client.get("/orders/sync", params={"timestamp": "2024-01-01"})

    assert response.status_code == 404
    assert response.text == "No orders found."
    assert broker.published[FETCH] == []


@pytest.mark.unit
def test_sync_publishes_change_list(client, broker, upstream):
    upstream.change_list = ["ORD-1", "ORD-2"]

    response = client.get("/orders/sync", params={"timestamp": "2024-01-01"})

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Orders are being processed."
    assert body["total_found"] == 2
    assert body["published"] == 2
    assert body["failed"] == 0
    assert len(broker.published[FETCH]) == 2
    assert upstream.requests[0].url.params["timestamp"] == "2024-01-01"


@pytest.mark.unit
def test_sync_unexpected_error_returns_500():
    producer = MagicMock(spec=ChangeListProducer)
    producer.fetch_order_numbers.side_effect = RuntimeError("queue offline")

    with TestClient(create_app(producer=producer)) as test_client:
        response = test_client.get("/orders/sync", params={"timestamp": "2024-01-01"})

    assert response.status_code == 500
    assert response.text == "Error processing orders: queue offline"
