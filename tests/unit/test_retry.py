"""
Unit Tests for the Retry / Dead-Letter Policy

TEST STRATEGY:
- Below the ceiling: republish to the stage queue with retry_count + 1
- At the ceiling: publish a dead-letter record, never requeue again
- Publish failures propagate (the caller must not acknowledge)
"""

import pytest

from src.consumer.retry import RetryPolicy
from src.shared.exceptions import PublishError
from src.shared.messages import MessageOutcome


@pytest.fixture
def policy(broker):
    return RetryPolicy(
        publisher=broker,
        retry_topic="order.fetch",
        dead_letter_topic="order.fetch.dlq",
        max_retries=3,
        stage="fetch",
    )


@pytest.mark.unit
@pytest.mark.parametrize("retry_count", [0, 1, 2])
def test_requeue_increments_retry_count_by_one(policy, broker, retry_count):
    outcome = policy.handle_failure(
        {"order_number": "ORD-2", "retry_count": retry_count},
        reason="No order details returned",
        order_number="ORD-2",
    )

    assert outcome == MessageOutcome.REQUEUED
    assert broker.payloads("order.fetch") == [
        {"order_number": "ORD-2", "retry_count": retry_count + 1}
    ]
    assert broker.published["order.fetch.dlq"] == []


@pytest.mark.unit
def test_missing_retry_count_starts_at_zero(policy, broker):
    policy.handle_failure({"order_number": "ORD-2"}, reason="boom", order_number="ORD-2")

    assert broker.payloads("order.fetch")[0]["retry_count"] == 1


@pytest.mark.unit
def test_requeue_does_not_mutate_payload(policy):
    payload = {"order_number": "ORD-2", "retry_count": 1}

    policy.handle_failure(payload, reason="boom", order_number="ORD-2")

    assert payload["retry_count"] == 1


@pytest.mark.unit
def test_ceiling_dead_letters(policy, broker):
    outcome = policy.handle_failure(
        {"order_number": "ORD-2", "retry_count": 3},
        reason="No order details returned",
        order_number="ORD-2",
    )

    assert outcome == MessageOutcome.DEAD_LETTERED
    assert broker.published["order.fetch"] == []

    [record] = broker.payloads("order.fetch.dlq")
    assert record["order_number"] == "ORD-2"
    assert record["retry_count"] == 3
    assert record["error"] == "No order details returned"
    assert record["stage"] == "fetch"

    headers = broker.published["order.fetch.dlq"][0].headers
    assert headers["dlq_reason"] == "Max retries exceeded"


@pytest.mark.unit
def test_zero_max_retries_dead_letters_immediately(broker):
    policy = RetryPolicy(broker, "order.insert", "order.insert.dlq", max_retries=0, stage="insert")

    outcome = policy.handle_failure({"order_details": {}}, reason="invalid")

    assert outcome == MessageOutcome.DEAD_LETTERED
    assert broker.payloads("order.insert.dlq")[0]["stage"] == "insert"


@pytest.mark.unit
@pytest.mark.parametrize("retry_count,topic", [(0, "order.fetch"), (3, "order.fetch.dlq")])
def test_publish_failure_propagates(policy, broker, retry_count, topic):
    broker.failing_topics.add(topic)

    with pytest.raises(PublishError):
        policy.handle_failure(
            {"order_number": "ORD-2", "retry_count": retry_count}, reason="boom"
        )
