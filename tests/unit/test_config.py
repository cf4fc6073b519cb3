"""
Unit Tests for Configuration Classes

Tests Pydantic configuration validation for both Producer and Consumer configs.

TEST STRATEGY:
- Test default values
- Test validation rules (constraints, types)
- Test environment variable loading
- Test helper methods (Kafka config dicts, database URL, display_config)
"""

import pytest
from pydantic import ValidationError

from src.consumer.config import ConsumerConfig
from src.consumer.config import load_config as load_consumer_config
from src.producer.config import ProducerConfig
from src.producer.config import load_config as load_producer_config

# ==============================================================================
# PRODUCER CONFIG TESTS
# ==============================================================================


@pytest.mark.unit
def test_producer_config_defaults(monkeypatch):
    """Test ProducerConfig default values."""
    for name in ("KAFKA_TOPIC_FETCH", "FANOUT_MAX_BATCH_SIZE", "FANOUT_CONCURRENCY", "API_PORT"):
        monkeypatch.delenv(name, raising=False)

    config = ProducerConfig()

    assert config.kafka_topic_fetch == "order.fetch"
    assert config.fanout_max_batch_size == 500
    assert config.fanout_concurrency == 10
    assert config.api_port == 8080
    assert config.enable_idempotence is True


@pytest.mark.unit
def test_producer_config_fanout_limits():
    """Fan-out batch size and concurrency are bounded."""
    with pytest.raises(ValidationError) as exc_info:
        ProducerConfig(fanout_max_batch_size=0)
    assert "fanout_max_batch_size" in str(exc_info.value)

    with pytest.raises(ValidationError):
        ProducerConfig(fanout_concurrency=101)


@pytest.mark.unit
def test_producer_config_from_environment(monkeypatch):
    """Environment variables override defaults (case-insensitive)."""
    monkeypatch.setenv("KAFKA_TOPIC_FETCH", "orders.fetch.test")
    monkeypatch.setenv("FANOUT_CONCURRENCY", "4")
    monkeypatch.setenv("UPSTREAM_BASE_URL", "https://erp.example.com")

    config = load_producer_config()

    assert config.kafka_topic_fetch == "orders.fetch.test"
    assert config.fanout_concurrency == 4
    assert config.upstream_base_url == "https://erp.example.com"


@pytest.mark.unit
def test_producer_kafka_config():
    """get_kafka_config() returns an idempotent confluent-kafka producer config."""
    config = ProducerConfig(kafka_bootstrap_servers="kafka:29092", producer_client_id="p-1")

    kafka_config = config.get_kafka_config()

    assert kafka_config["bootstrap.servers"] == "kafka:29092"
    assert kafka_config["client.id"] == "p-1"
    assert kafka_config["enable.idempotence"] is True
    assert kafka_config["acks"] == "all"


@pytest.mark.unit
def test_producer_display_config_masks_token():
    """The API token never appears in the printable summary."""
    config = ProducerConfig(upstream_api_token="super-secret-token")

    summary = config.display_config()

    assert "super-secret-token" not in summary
    assert "****" in summary


# ==============================================================================
# CONSUMER CONFIG TESTS
# ==============================================================================


@pytest.mark.unit
def test_consumer_config_defaults(monkeypatch):
    """Test ConsumerConfig processing defaults."""
    for name in (
        "BATCH_SIZE",
        "POLL_INTERVAL_SECONDS",
        "MAX_RETRIES",
        "FETCH_WORKERS",
        "MAX_EXECUTION_SECONDS",
        "KAFKA_TOPIC_INSERT",
        "KAFKA_TOPIC_FETCH_DLQ",
        "KAFKA_TOPIC_INSERT_DLQ",
        "INSERT_CONSUMER_NAME",
    ):
        monkeypatch.delenv(name, raising=False)

    config = ConsumerConfig()

    assert config.batch_size == 10
    assert config.poll_interval_seconds == 5.0
    assert config.max_retries == 3
    assert config.fetch_workers == 10
    assert config.max_execution_seconds == 600
    assert config.kafka_topic_insert == "order.insert"
    assert config.kafka_topic_fetch_dlq == "order.fetch.dlq"
    assert config.kafka_topic_insert_dlq == "order.insert.dlq"
    assert config.insert_consumer_name == "order-insert-consumer"


@pytest.mark.unit
def test_consumer_config_validation():
    """Invalid processing values raise ValidationError."""
    with pytest.raises(ValidationError):
        ConsumerConfig(batch_size=0)

    with pytest.raises(ValidationError):
        ConsumerConfig(max_retries=-1)

    with pytest.raises(ValidationError):
        ConsumerConfig(fetch_workers=0)


@pytest.mark.unit
def test_consumer_kafka_config_per_stage():
    """Each stage gets its own consumer group and manual commits."""
    config = ConsumerConfig(consumer_group_id="sync")

    fetch = config.get_consumer_kafka_config("fetch")
    insert = config.get_consumer_kafka_config("insert")

    assert fetch["group.id"] == "sync-fetch"
    assert insert["group.id"] == "sync-insert"
    assert fetch["enable.auto.commit"] is False
    assert insert["enable.auto.commit"] is False


@pytest.mark.unit
def test_consumer_database_url():
    """get_database_url() builds a PostgreSQL URL unless DATABASE_URL is set."""
    config = ConsumerConfig(
        postgres_host="db",
        postgres_port=5433,
        postgres_db="orders",
        postgres_user="sync",
        postgres_password="pw",
        database_url=None,
    )
    assert config.get_database_url() == "postgresql://sync:pw@db:5433/orders"

    override = ConsumerConfig(database_url="sqlite:///orders.db")
    assert override.get_database_url() == "sqlite:///orders.db"


@pytest.mark.unit
def test_consumer_config_from_environment(monkeypatch):
    monkeypatch.setenv("MAX_RETRIES", "5")
    monkeypatch.setenv("LOCK_TTL_SECONDS", "120")

    config = load_consumer_config()

    assert config.max_retries == 5
    assert config.lock_ttl_seconds == 120
