"""
Unit Tests for the Command-Line Entry Points

TEST STRATEGY:
- Subcommands and flags parse into the expected namespace
- Required arguments are enforced
"""

import pytest

from src.consumer.main import parse_args as parse_consumer_args
from src.producer.main import parse_args as parse_producer_args


@pytest.mark.unit
def test_consumer_fetch_bounded_args():
    args = parse_consumer_args(["fetch", "--max-messages", "100", "--batch-size", "20"])

    assert args.stage == "fetch"
    assert args.max_messages == 100
    assert args.batch_size == 20
    assert args.workers is None


@pytest.mark.unit
def test_consumer_fetch_daemon_args():
    args = parse_consumer_args(["fetch", "--workers", "4", "--log-format", "text"])

    assert args.max_messages is None
    assert args.workers == 4
    assert args.log_format == "text"


@pytest.mark.unit
def test_consumer_insert_args():
    args = parse_consumer_args(["insert", "--max-execution-seconds", "600", "--log-level", "DEBUG"])

    assert args.stage == "insert"
    assert args.max_execution_seconds == 600
    assert args.log_level == "DEBUG"


@pytest.mark.unit
def test_consumer_stage_required():
    with pytest.raises(SystemExit):
        parse_consumer_args([])


@pytest.mark.unit
def test_producer_run_args():
    args = parse_producer_args(["run", "--timestamp", "2024-01-01", "--concurrency", "5"])

    assert args.command == "run"
    assert args.timestamp == "2024-01-01"
    assert args.concurrency == 5
    assert args.max_batch_size is None


@pytest.mark.unit
def test_producer_run_requires_timestamp():
    with pytest.raises(SystemExit):
        parse_producer_args(["run"])


@pytest.mark.unit
def test_producer_serve_args():
    args = parse_producer_args(["serve", "--host", "127.0.0.1", "--port", "9000"])

    assert args.command == "serve"
    assert args.host == "127.0.0.1"
    assert args.port == 9000
