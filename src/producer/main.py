"""
Change-List Producer Service - Main Entry Point

RUN MODES:
- run:   one fan-out for a timestamp, then exit
- serve: start the trigger API (GET /orders/sync?timestamp=...) under uvicorn

USAGE:
    python -m src.producer.main run --timestamp 2024-01-01T00:00:00
    python -m src.producer.main serve --port 8080
    python -m src.producer.main run --timestamp 2024-01-01 --log-format text

EXIT CODES:
- 0: fan-out completed (run) or server stopped cleanly (serve)
- 1: invalid configuration, no orders found, failed publishes, or startup error
"""

import argparse
import sys

import uvicorn
from pydantic import ValidationError

from src.producer.api import build_producer, create_app
from src.producer.config import ProducerConfig, load_config
from src.shared.logger import setup_logger


# ==============================================================================
# RUN MODES
# ==============================================================================


def run_once(config: ProducerConfig, timestamp: str) -> int:
    """
    Run a single change-list fan-out.

    Returns:
        Exit code (0 = every submitted order published, 1 = otherwise)
    """
    logger = setup_logger(
        name="src",
        service_name="order-producer",
        log_level=config.log_level,
        log_format=config.log_format,
    )

    try:
        producer = build_producer(config)
    except Exception as e:
        logger.error("Failed to initialize producer", exc_info=True, extra={"error": str(e)})
        return 1

    try:
        summary = producer.run(timestamp)
    except Exception as e:
        logger.error(
            "Error processing orders",
            exc_info=True,
            extra={"timestamp": timestamp, "error": str(e)},
        )
        return 1
    finally:
        producer.publisher.close(timeout=10.0)
        producer.api_client.close()

    if summary.total_found == 0:
        logger.info("No orders found", extra={"timestamp": timestamp})
        return 1

    return 0 if summary.failed == 0 else 1


def serve(config: ProducerConfig) -> int:
    """Start the trigger API and block until the server stops."""
    setup_logger(
        name="src",
        service_name="order-trigger-api",
        log_level=config.log_level,
        log_format=config.log_format,
    )

    app = create_app(config=config)
    # uvicorn installs its own SIGINT/SIGTERM handlers and runs the lifespan shutdown
    uvicorn.run(app, host=config.api_host, port=config.api_port, log_config=None)
    return 0


# ==============================================================================
# CLI ARGUMENT PARSING
# ==============================================================================


def parse_args(argv=None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Command-line args override environment variables.
    """
    parser = argparse.ArgumentParser(
        description="Order Change-List Producer - fan out changed orders onto the fetch queue",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # One fan-out for everything changed since a timestamp
  python -m src.producer.main run --timestamp 2024-01-01T00:00:00

  # Start the trigger API
  python -m src.producer.main serve --host 0.0.0.0 --port 8080

  # Text logs for local development
  python -m src.producer.main run --timestamp 2024-01-01 --log-format text
        """,
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run one fan-out and exit")
    run_parser.add_argument(
        "--timestamp", type=str, required=True, help="Changed-since timestamp passed upstream"
    )
    run_parser.add_argument(
        "--max-batch-size", type=int, help="Maximum order numbers submitted (default: from config)"
    )
    run_parser.add_argument(
        "--concurrency", type=int, help="Concurrent publish tasks (default: from config)"
    )

    serve_parser = subparsers.add_parser("serve", help="Start the trigger API")
    serve_parser.add_argument("--host", type=str, help="Bind host (default: from config)")
    serve_parser.add_argument("--port", type=int, help="Bind port (default: from config)")

    for sub in (run_parser, serve_parser):
        sub.add_argument(
            "--log-level",
            type=str,
            choices=["DEBUG", "INFO", "WARNING", "ERROR"],
            help="Logging level (default: from config)",
        )
        sub.add_argument(
            "--log-format",
            type=str,
            choices=["json", "text"],
            help="Log output format (default: from config)",
        )

    return parser.parse_args(argv)


# ==============================================================================
# MAIN ENTRY POINT
# ==============================================================================


def main(argv=None) -> int:
    """
    Main entry point for the producer service.

    Returns:
        Exit code (0 = success, 1 = error)
    """
    args = parse_args(argv)

    try:
        config = load_config()
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1

    if args.log_level:
        config.log_level = args.log_level
    if args.log_format:
        config.log_format = args.log_format

    if args.command == "run":
        if args.max_batch_size:
            config.fanout_max_batch_size = args.max_batch_size
        if args.concurrency:
            config.fanout_concurrency = args.concurrency
        print(config.display_config())
        return run_once(config, args.timestamp)

    if args.host:
        config.api_host = args.host
    if args.port:
        config.api_port = args.port
    print(config.display_config())
    return serve(config)


if __name__ == "__main__":
    sys.exit(main())
