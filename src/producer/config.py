"""
Producer Configuration Module

Loads the change-list producer and trigger API configuration from environment
variables into a validated Pydantic settings object.

CONFIGURATION SOURCES (priority order):
1. Environment variables (highest priority)
2. .env file (loaded by python-dotenv)
3. Default values (fallback)

SECRETS:
- UPSTREAM_API_TOKEN is only ever sent as a bearer header
- display_config() masks it, so the summary is safe to log
"""

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

# Load .env file if present (local development)
load_dotenv()


class ProducerConfig(BaseSettings):
    """
    Change-list producer configuration with validation.

    Attributes:
        kafka_bootstrap_servers: Kafka broker addresses
        kafka_topic_fetch: Fetch queue topic (one message per order number)
        upstream_base_url: Base URL of the upstream order API
        upstream_api_token: Bearer token for the upstream order API
        fanout_max_batch_size: Maximum order numbers submitted per trigger
        fanout_concurrency: Concurrent publish tasks during fan-out
        api_host / api_port: Bind address of the trigger API

    Example:
        >>> config = ProducerConfig()
        >>> config.fanout_max_batch_size
        500
    """

    # === KAFKA CONNECTION ===
    kafka_bootstrap_servers: str = Field(
        default="localhost:9092",
        description="Kafka broker addresses (comma-separated for multiple brokers)",
        json_schema_extra={"example": "kafka:9092"},
    )

    kafka_topic_fetch: str = Field(
        default="order.fetch",
        description="Topic receiving one fetch request per changed order",
        json_schema_extra={"example": "order.fetch"},
    )

    # === PRODUCER SETTINGS ===
    producer_client_id: str = Field(
        default="order-producer",
        description="Producer client identifier (visible in broker logs and monitoring)",
    )

    producer_compression: str = Field(
        default="snappy",
        description="Compression algorithm (none, gzip, snappy, lz4, zstd)",
    )

    producer_linger_ms: int = Field(
        default=10,
        ge=0,
        le=1000,
        description="Time to wait for batching messages (milliseconds)",
    )

    enable_idempotence: bool = Field(
        default=True,
        description="Enable idempotent producer (prevents duplicates on broker retries)",
    )

    publish_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Seconds to wait for a delivery report before a publish fails",
    )

    # === UPSTREAM ORDER API ===
    upstream_base_url: str = Field(
        default="http://localhost:8000",
        description="Base URL of the upstream order API",
        json_schema_extra={"example": "https://erp.example.com/api"},
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

    # === FAN-OUT ===
    fanout_max_batch_size: int = Field(
        default=500,
        ge=1,
        le=5000,
        description="Maximum order numbers submitted per trigger; the rest are deferred",
    )

    fanout_concurrency: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Number of concurrent publish tasks during fan-out",
    )

    # === TRIGGER API ===
    api_host: str = Field(default="0.0.0.0", description="Trigger API bind host")

    api_port: int = Field(default=8080, ge=1, le=65535, description="Trigger API bind port")

    # === LOGGING CONFIGURATION ===
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    log_format: str = Field(
        default="json",
        description="Log output format (json for production, text for development)",
        json_schema_extra={"example": "json", "alternatives": ["json", "text"]},
    )

    class Config:
        """Pydantic configuration."""

        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"

    def get_kafka_config(self) -> dict:
        """
        Kafka producer configuration dictionary for confluent_kafka.Producer.

        acks=all is required by enable.idempotence.
        """
        return {
            "bootstrap.servers": self.kafka_bootstrap_servers,
            "client.id": self.producer_client_id,
            "compression.type": self.producer_compression,
            "linger.ms": self.producer_linger_ms,
            "acks": "all",
            "enable.idempotence": self.enable_idempotence,
        }

    def display_config(self) -> str:
        """Human-readable configuration summary (token masked)."""
        token = "****" if self.upstream_api_token else "(not set)"
        return f"""
Change-List Producer Configuration
==================================
Kafka:
  Bootstrap Servers: {self.kafka_bootstrap_servers}
  Fetch Topic: {self.kafka_topic_fetch}
  Client ID: {self.producer_client_id}
  Publish Timeout: {self.publish_timeout_seconds}s

Upstream:
  Base URL: {self.upstream_base_url}
  API Token: {token}
  Timeout: {self.upstream_timeout_seconds}s

Fan-out:
  Max Batch Size: {self.fanout_max_batch_size}
  Concurrency: {self.fanout_concurrency}

Trigger API:
  Bind: {self.api_host}:{self.api_port}

Logging:
  Level: {self.log_level}
  Format: {self.log_format}
"""


# ==============================================================================
# HELPER FUNCTIONS
# ==============================================================================


def load_config() -> ProducerConfig:
    """
    Load and validate producer configuration.

    Raises:
        ValidationError: If configuration is invalid
    """
    return ProducerConfig()
