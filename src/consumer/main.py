"""
Order Consumer Services - Main Entry Point

Command-line interface for both consumer stages.

USAGE:
    python -m src.consumer.main fetch  [--max-messages N] [--workers N]
    python -m src.consumer.main insert [--max-messages N] [--max-execution-seconds S]

RUN MODES:
    fetch  --max-messages N   Bounded run in this process
    fetch                     Daemon: FETCH_WORKERS worker processes, until terminated
    insert --max-messages N   Bounded run
    insert                    Daemon: until MAX_EXECUTION_SECONDS elapse

GRACEFUL SHUTDOWN:
- Handles SIGINT (Ctrl+C) and SIGTERM (Docker stop)
- Finishes the current batch, then closes Kafka clients and database connections
- The fetch daemon forwards the signal to its worker processes

EXIT CODES:
- 0: run completed
- 1: configuration error, startup failure, or fatal broker/storage error
"""

import argparse
import logging
import signal
import sys
from typing import Optional, Union

from pydantic import ValidationError

from src.consumer.config import ConsumerConfig, load_config
from src.consumer.database import init_database
from src.consumer.fetch_consumer import SERVICE_NAME as FETCH_SERVICE_NAME
from src.consumer.fetch_consumer import FetchConsumer, build_fetch_consumer, run_fetch_daemon
from src.consumer.insert_consumer import SERVICE_NAME as INSERT_SERVICE_NAME
from src.consumer.insert_consumer import InsertConsumer, build_insert_consumer
from src.shared.exceptions import BrokerUnavailable, StorageUnavailable
from src.shared.logger import setup_logger

# ==============================================================================
# GLOBAL STATE
# ==============================================================================
# Global consumer instance for signal handlers

consumer_instance: Optional[Union[FetchConsumer, InsertConsumer]] = None


def signal_handler(signum: int, frame) -> None:
    """Stop the active consumer after its current batch (SIGINT/SIGTERM)."""
    signal_name = signal.Signals(signum).name
    logger = logging.getLogger(__name__)
    logger.info(f"Received {signal_name}, initiating graceful shutdown...")

    if consumer_instance:
        consumer_instance.stop()


# ==============================================================================
# STAGE RUNNERS
# ==============================================================================


def run_fetch(config: ConsumerConfig, max_messages: Optional[int], workers: Optional[int]) -> int:
    global consumer_instance
    logger = logging.getLogger(__name__)

    if max_messages is None:
        return run_fetch_daemon(config, workers=workers)

    try:
        consumer_instance = build_fetch_consumer(config)
    except Exception:
        logger.error("Failed to create fetch consumer", exc_info=True)
        return 1

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        consumer_instance.run(max_messages)
        return 0
    except BrokerUnavailable as e:
        logger.critical("Fetch run aborted: broker unavailable", extra={"error": str(e)})
        return 1
    finally:
        consumer_instance.close()
        consumer_instance = None


def run_insert(
    config: ConsumerConfig,
    max_messages: Optional[int],
    max_execution_seconds: Optional[int],
) -> int:
    global consumer_instance
    logger = logging.getLogger(__name__)

    try:
        db_manager = init_database(config)
    except Exception:
        logger.error("Failed to initialize database", exc_info=True)
        return 1

    try:
        consumer_instance = build_insert_consumer(config, db_manager)
    except Exception:
        logger.error("Failed to create insert consumer", exc_info=True)
        db_manager.close()
        return 1

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        if max_messages is None:
            consumer_instance.run_daemon(max_execution_seconds)
        else:
            consumer_instance.run(max_messages)
        return 0
    except (BrokerUnavailable, StorageUnavailable) as e:
        logger.critical(
            "Insert run aborted",
            extra={"error_type": type(e).__name__, "error": str(e)},
        )
        return 1
    finally:
        consumer_instance.close()
        consumer_instance = None
        db_manager.close()


# ==============================================================================
# CLI ARGUMENT PARSING
# ==============================================================================


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Order Sync Consumers (fetch and insert stages)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Resolve up to 100 fetch messages, then exit
  python -m src.consumer.main fetch --max-messages 100

  # Fetch daemon with 4 worker processes
  python -m src.consumer.main fetch --workers 4

  # Insert daemon for 10 minutes with text logs
  python -m src.consumer.main insert --max-execution-seconds 600 --log-format text

Signals:
  SIGINT (Ctrl+C)            Graceful shutdown
  SIGTERM (Docker stop)      Graceful shutdown
        """,
    )

    subparsers = parser.add_subparsers(dest="stage", required=True)

    fetch_parser = subparsers.add_parser("fetch", help="Resolve order numbers to order details")
    fetch_parser.add_argument(
        "--workers", type=int, help="Daemon worker processes (default: FETCH_WORKERS)"
    )

    insert_parser = subparsers.add_parser("insert", help="Persist order details")
    insert_parser.add_argument(
        "--max-execution-seconds",
        type=int,
        help="Daemon wall-clock cap (default: MAX_EXECUTION_SECONDS)",
    )

    for sub in (fetch_parser, insert_parser):
        sub.add_argument(
            "--max-messages",
            type=int,
            help="Bounded run: process at most N messages (omit for daemon mode)",
        )
        sub.add_argument(
            "--batch-size", type=int, help="Messages per batch (default: BATCH_SIZE)"
        )
        sub.add_argument(
            "--log-level",
            type=str,
            choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            help="Logging level (overrides LOG_LEVEL env var)",
        )
        sub.add_argument(
            "--log-format",
            type=str,
            choices=["json", "text"],
            help="Log output format (overrides LOG_FORMAT env var)",
        )

    return parser.parse_args(argv)


# ==============================================================================
# MAIN FUNCTION
# ==============================================================================


def main(argv=None) -> int:
    """
    Main entry point for the consumer services.

    Returns:
        Exit code (0 = success, 1 = error)
    """
    args = parse_args(argv)

    try:
        config = load_config()
    except ValidationError as e:
        print(f"ERROR: Failed to load configuration: {e}", file=sys.stderr)
        return 1

    if args.log_level:
        config.log_level = args.log_level
    if args.log_format:
        config.log_format = args.log_format
    if args.batch_size:
        config.batch_size = args.batch_size

    service_name = FETCH_SERVICE_NAME if args.stage == "fetch" else INSERT_SERVICE_NAME
    logger = setup_logger(
        name="src",
        service_name=service_name,
        log_level=config.log_level,
        log_format=config.log_format,
    )

    logger.info(
        "Starting order consumer",
        extra={
            "stage": args.stage,
            "kafka_bootstrap_servers": config.kafka_bootstrap_servers,
            "consumer_group": f"{config.consumer_group_id}-{args.stage}",
            "max_messages": args.max_messages,
            "batch_size": config.batch_size,
            "max_retries": config.max_retries,
        },
    )

    if args.stage == "fetch":
        return run_fetch(config, args.max_messages, args.workers)
    return run_insert(config, args.max_messages, args.max_execution_seconds)


if __name__ == "__main__":
    sys.exit(main())
