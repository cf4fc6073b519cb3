"""
Order Storage and Message Locks

OrderStore.insert_or_update()
    Maps a validated OrderDetail to one flat erp_orders row and upserts it:

        INSERT INTO erp_orders (...) VALUES (...)
        ON CONFLICT (order_number) DO UPDATE SET <every column> = excluded.<column>

    Re-delivering the same order overwrites the row, so duplicates and
    out-of-order deliveries are harmless.

MessageLockManager.lock()
    INSERT INTO queue_message_locks (message_code, consumer_name, locked_at)

    The composite primary key makes the INSERT the lock: a second worker gets
    IntegrityError and defers the message. A lock older than lock_ttl_seconds
    (left behind by a worker that died mid-message) is taken over with a
    conditional UPDATE; only one contender can win it.

    A lock covers one processing attempt: it is released as soon as the
    message is acknowledged, requeued or handed back to the queue. Only a
    worker that dies mid-batch leaves locks behind; purge_expired() clears
    them once they are older than the TTL.

RETRY STRATEGY (storage errors):
- OperationalError (connection lost, timeout): retried in-process with
  exponential backoff (1s, 2s, 4s, ...), then StorageUnavailable
- Any other database error: ProcessingFailure for the message retry policy
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from src.consumer.database import DatabaseManager
from src.consumer.models import ErpOrder, MessageLock
from src.shared.exceptions import LockContention, ProcessingFailure, StorageUnavailable
from src.shared.schemas import OrderDetail

logger = logging.getLogger(__name__)

# Dialects with INSERT ... ON CONFLICT DO UPDATE support
UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}

HEADER_COLUMNS = (
    "order_number",
    "customer_code",
    "bill_to_name",
    "bill_to_address1",
    "bill_to_city",
    "bill_to_state",
    "bill_to_zip",
    "branch_code",
    "branch_name",
    "delivery_charges",
    "order_date",
    "order_status",
    "order_total",
    "order_type",
    "sale_type",
    "ship_via_code",
    "ship_to_name",
    "ship_to_address1",
    "ship_to_city",
    "ship_to_state",
    "ship_to_zip",
    "sub_total",
    "tax",
    "delivery_date",
    "delivery_window",
    "ship_complete",
    "ordered_by",
)


def _utcnow() -> datetime:
    """Naive UTC now (TIMESTAMP columns carry no zone)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ==============================================================================
# ORDER STORE
# ==============================================================================


class OrderStore:
    """
    Idempotent writer for erp_orders.

    Attributes:
        db_manager: Session factory and engine
        retry_attempts: Attempts for transient (OperationalError) failures
        retry_backoff_ms: First backoff, doubled after every failed attempt
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        retry_attempts: int = 3,
        retry_backoff_ms: int = 1000,
    ):
        self.db_manager = db_manager
        self.retry_attempts = max(retry_attempts, 1)
        self.retry_backoff_ms = retry_backoff_ms

    @staticmethod
    def build_row(detail: OrderDetail) -> Dict[str, Any]:
        """
        Flatten an OrderDetail into erp_orders column values.

        Example:
            header {"orderNumber": "ORD-1", "shipComplete": null}, lines [{"itemCode": "A"}]
            → {"order_number": "ORD-1", "ship_complete": False, ...,
               "line_item_codes": {"items": ["A"]},
               "line_item_details": {"items": [{"itemCode": "A"}]}}
        """
        header = detail.header
        row = {column: getattr(header, column) for column in HEADER_COLUMNS}
        row["ship_complete"] = bool(header.ship_complete)
        row["line_item_codes"] = {"items": detail.item_codes()}
        row["line_item_details"] = {"items": detail.line_item_payloads()}
        return row

    def insert_or_update(self, detail: OrderDetail) -> Dict[str, Any]:
        """
        Upsert one order keyed by order number.

        Returns:
            The row values written

        Raises:
            StorageUnavailable: Transient errors persisted through every attempt
            ProcessingFailure: Non-transient database error for this order
        """
        row = self.build_row(detail)
        order_number = row["order_number"]

        for attempt in range(self.retry_attempts):
            try:
                with self.db_manager.get_session() as session:
                    session.execute(self._upsert_statement(row))
                logger.debug("Order upserted", extra={"correlation_id": order_number})
                return row

            except OperationalError as e:
                if attempt < self.retry_attempts - 1:
                    backoff_s = self.retry_backoff_ms * (2**attempt) / 1000
                    logger.warning(
                        f"Database error, retrying in {backoff_s}s",
                        extra={
                            "correlation_id": order_number,
                            "attempt": attempt + 1,
                            "max_attempts": self.retry_attempts,
                            "error": str(e),
                        },
                    )
                    time.sleep(backoff_s)
                else:
                    logger.error(
                        "Database retries exhausted, giving up",
                        extra={"correlation_id": order_number, "attempts": self.retry_attempts},
                    )
                    raise StorageUnavailable(f"Database unavailable: {e}") from e

            except SQLAlchemyError as e:
                raise ProcessingFailure(
                    f"Failed to upsert order: {e}", order_number=order_number
                ) from e

        # Unreachable: the last attempt either returns or raises
        raise StorageUnavailable("Database retries exhausted")

    def _upsert_statement(self, row: Dict[str, Any]):
        dialect = self.db_manager.dialect_name
        insert = UPSERT_INSERTS.get(dialect)
        if insert is None:
            raise ProcessingFailure(f"Upsert not supported for dialect {dialect}")

        stmt = insert(ErpOrder).values(**row, synced_at=func.now())
        update_columns = {
            column: stmt.excluded[column] for column in row if column != "order_number"
        }
        update_columns["synced_at"] = func.now()
        return stmt.on_conflict_do_update(
            index_elements=[ErpOrder.order_number],
            set_=update_columns,
        )

    def get_order(self, order_number: str) -> Optional[Dict[str, Any]]:
        """Stored row for order_number, or None."""
        with self.db_manager.get_session() as session:
            order = session.get(ErpOrder, order_number)
            return order.to_dict() if order else None

    def count_orders(self) -> int:
        with self.db_manager.get_session() as session:
            return session.execute(select(func.count()).select_from(ErpOrder)).scalar_one()


# ==============================================================================
# MESSAGE LOCKS
# ==============================================================================


class MessageLockManager:
    """
    Exclusive per-message processing claims backed by queue_message_locks.

    Example:
        locks.lock(message.message_id, "order-insert-consumer")  # LockContention if held
        try:
            ...
        finally:
            locks.release(message.message_id, "order-insert-consumer")
    """

    def __init__(self, db_manager: DatabaseManager, lock_ttl_seconds: int = 600):
        self.db_manager = db_manager
        self.lock_ttl_seconds = lock_ttl_seconds

    def lock(self, message_code: str, consumer_name: str) -> None:
        """
        Claim a message for this consumer.

        Raises:
            LockContention: Another worker holds a live lock on the message
            StorageUnavailable: The lock table could not be reached
        """
        now = _utcnow()
        try:
            with self.db_manager.get_session() as session:
                session.add(
                    MessageLock(message_code=message_code, consumer_name=consumer_name, locked_at=now)
                )
            return
        except IntegrityError:
            pass
        except OperationalError as e:
            raise StorageUnavailable(f"Lock table unavailable: {e}") from e

        if not self._take_over_expired(message_code, consumer_name, now):
            raise LockContention(message_code, consumer_name)

        logger.warning(
            "Expired message lock taken over",
            extra={
                "message_code": message_code,
                "consumer_name": consumer_name,
                "lock_ttl_seconds": self.lock_ttl_seconds,
            },
        )

    def _take_over_expired(self, message_code: str, consumer_name: str, now: datetime) -> bool:
        cutoff = now - timedelta(seconds=self.lock_ttl_seconds)
        stmt = (
            update(MessageLock)
            .where(
                MessageLock.message_code == message_code,
                MessageLock.consumer_name == consumer_name,
                MessageLock.locked_at < cutoff,
            )
            .values(locked_at=now)
            .execution_options(synchronize_session=False)
        )
        try:
            with self.db_manager.get_session() as session:
                result = session.execute(stmt)
                return result.rowcount == 1
        except OperationalError as e:
            raise StorageUnavailable(f"Lock table unavailable: {e}") from e

    def release(self, message_code: str, consumer_name: str) -> bool:
        """Drop a lock. Returns True if a lock row was removed."""
        stmt = delete(MessageLock).where(
            MessageLock.message_code == message_code,
            MessageLock.consumer_name == consumer_name,
        )
        try:
            with self.db_manager.get_session() as session:
                return session.execute(stmt).rowcount == 1
        except OperationalError as e:
            raise StorageUnavailable(f"Lock table unavailable: {e}") from e

    def purge_expired(self) -> int:
        """Delete locks older than the TTL. Returns the number removed."""
        cutoff = _utcnow() - timedelta(seconds=self.lock_ttl_seconds)
        stmt = delete(MessageLock).where(MessageLock.locked_at < cutoff)
        try:
            with self.db_manager.get_session() as session:
                removed = session.execute(stmt).rowcount
        except OperationalError as e:
            raise StorageUnavailable(f"Lock table unavailable: {e}") from e

        if removed:
            logger.info("Expired message locks purged", extra={"removed": removed})
        return removed

    def is_locked(self, message_code: str, consumer_name: str) -> bool:
        with self.db_manager.get_session() as session:
            return session.get(MessageLock, (message_code, consumer_name)) is not None
