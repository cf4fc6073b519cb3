"""
Consumer Configuration Module

Configuration for both consumer stages (fetch and insert): Kafka consumer and
publisher settings, the upstream order API, PostgreSQL, and processing limits.
Loads settings from environment variables with Pydantic validation.
"""

from typing import Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

# Load .env file if present (local development)
load_dotenv()


class ConsumerConfig(BaseSettings):
    """
    Consumer service configuration with validation.

    One config object drives both stages; each stage joins its own consumer
    group ("<consumer_group_id>-fetch", "<consumer_group_id>-insert").
    """

    # === KAFKA CONSUMER SETTINGS ===
    kafka_bootstrap_servers: str = Field(
        default="localhost:9092",
        description="Kafka broker addresses",
    )

    consumer_group_id: str = Field(
        default="order-sync",
        description="Consumer group prefix; the stage name is appended",
    )

    consumer_client_id: str = Field(
        default="order-consumer",
        description="Consumer client identifier",
    )

    consumer_auto_offset_reset: str = Field(
        default="earliest",
        description="Where to start consuming: earliest or latest",
    )

    poll_timeout_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Seconds to wait for a batch from the broker",
    )

    publish_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Seconds to wait for a delivery report before a publish fails",
    )

    # === TOPICS ===
    kafka_topic_fetch: str = Field(default="order.fetch", description="Fetch queue topic")

    kafka_topic_insert: str = Field(default="order.insert", description="Insert queue topic")

    kafka_topic_fetch_dlq: str = Field(
        default="order.fetch.dlq",
        description="Dead-letter topic for fetch messages that exhausted retries",
    )

    kafka_topic_insert_dlq: str = Field(
        default="order.insert.dlq",
        description="Dead-letter topic for insert messages that exhausted retries",
    )

    # === UPSTREAM ORDER API ===
    upstream_base_url: str = Field(
        default="http://localhost:8000",
        description="Base URL of the upstream order API",
    )

    upstream_api_token: str = Field(
        default="",
        description="Bearer token for the upstream order API (never logged)",
    )

    upstream_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="HTTP timeout for upstream calls (seconds)",
    )

    # === DATABASE SETTINGS ===
    postgres_host: str = Field(
        default="localhost",
        description="PostgreSQL host",
    )

    postgres_port: int = Field(
        default=5432,
        description="PostgreSQL port",
    )

    postgres_db: str = Field(
        default="order_sync",
        description="PostgreSQL database name",
    )

    postgres_user: str = Field(
        default="postgres",
        description="PostgreSQL username",
    )

    postgres_password: str = Field(
        default="postgres",
        description="PostgreSQL password",
    )

    database_url: Optional[str] = Field(
        default=None,
        description="Full SQLAlchemy URL; overrides the POSTGRES_* settings when set",
    )

    db_pool_size: int = Field(
        default=5,
        ge=1,
        le=20,
        description="SQLAlchemy connection pool size",
    )

    # === PROCESSING SETTINGS ===
    batch_size: int = Field(
        default=10,
        ge=1,
        le=500,
        description="Messages pulled per batch",
    )

    poll_interval_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Sleep between polls when the queue is empty (daemon modes)",
    )

    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Republish attempts before a message goes to the dead-letter queue",
    )

    fetch_workers: int = Field(
        default=10,
        ge=1,
        le=64,
        description="Parallel fetch worker processes in daemon mode",
    )

    max_execution_seconds: int = Field(
        default=600,
        ge=1,
        description="Wall-clock cap of one insert daemon run",
    )

    db_retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for an upsert hitting a transient database error",
    )

    retry_backoff_ms: int = Field(
        default=1000,
        ge=0,
        le=10000,
        description="Initial database retry backoff in milliseconds (doubles per attempt)",
    )

    lock_ttl_seconds: int = Field(
        default=600,
        ge=1,
        description="Age after which a message lock may be taken over",
    )

    insert_consumer_name: str = Field(
        default="order-insert-consumer",
        description="Consumer name recorded with message locks",
    )

    # === LOGGING ===
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )

    log_format: str = Field(
        default="json",
        description="Log output format (json or text)",
    )

    class Config:
        """Pydantic configuration."""

        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"

    def get_consumer_kafka_config(self, stage: str) -> dict:
        """Kafka consumer configuration for one stage ("fetch" or "insert")."""
        return {
            "bootstrap.servers": self.kafka_bootstrap_servers,
            "group.id": f"{self.consumer_group_id}-{stage}",
            "client.id": f"{self.consumer_client_id}-{stage}",
            "auto.offset.reset": self.consumer_auto_offset_reset,
            "enable.auto.commit": False,
        }

    def get_producer_kafka_config(self) -> dict:
        """Kafka producer configuration for forwarding, retry and dead-letter publishes."""
        return {
            "bootstrap.servers": self.kafka_bootstrap_servers,
            "client.id": f"{self.consumer_client_id}-publisher",
            "enable.idempotence": True,
            "acks": "all",
            "compression.type": "snappy",
            "linger.ms": 5,
        }

    def get_database_url(self) -> str:
        """Get SQLAlchemy database URL."""
        if self.database_url:
            return self.database_url
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )


def load_config() -> ConsumerConfig:
    """Load and validate consumer configuration."""
    return ConsumerConfig()
