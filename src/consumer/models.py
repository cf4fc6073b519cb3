"""
SQLAlchemy ORM Models for Order Storage

Tables written by the insert consumer:

erp_orders            One row per order number, overwritten on every sync
queue_message_locks   One row per (message, consumer) currently being processed

PATTERN: DECLARATIVE BASE
- SQLAlchemy 2.0 declarative mapping with Mapped[] annotations
- Base.metadata.create_all() bootstraps the schema (see database.init_database)

PORTABLE JSON:
- JSON().with_variant(JSONB, "postgresql") stores JSONB in production and
  plain JSON on SQLite (unit tests)
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, TIMESTAMP, Boolean, Numeric, String, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# ==============================================================================
# DECLARATIVE BASE
# ==============================================================================


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


JSONType = JSON().with_variant(JSONB, "postgresql")

# Money columns come back as float (upstream sends floats, rows are compared as dicts)
Money = Numeric(12, 2, asdecimal=False)


# ==============================================================================
# ORDER MODEL
# ==============================================================================


class ErpOrder(Base):
    """
    Flattened order header plus two derived JSON columns.

    line_item_codes:   {"items": ["MULCH-BRN-2CF", ...]}
    line_item_details: {"items": [{"itemCode": ..., "quantityOrdered": ...}, ...]}

    order_number is the natural key: a repeat delivery overwrites the row.
    """

    __tablename__ = "erp_orders"

    order_number: Mapped[str] = mapped_column(
        String(50), primary_key=True, comment="Natural order key from the upstream system"
    )

    customer_code: Mapped[Optional[str]] = mapped_column(String(50), index=True)

    # === BILL TO ===
    bill_to_name: Mapped[Optional[str]] = mapped_column(String(255))
    bill_to_address1: Mapped[Optional[str]] = mapped_column(String(255))
    bill_to_city: Mapped[Optional[str]] = mapped_column(String(100))
    bill_to_state: Mapped[Optional[str]] = mapped_column(String(50))
    bill_to_zip: Mapped[Optional[str]] = mapped_column(String(20))

    # === BRANCH ===
    branch_code: Mapped[Optional[str]] = mapped_column(String(50))
    branch_name: Mapped[Optional[str]] = mapped_column(String(255))

    # === TOTALS ===
    delivery_charges: Mapped[Optional[float]] = mapped_column(Money)
    order_total: Mapped[Optional[float]] = mapped_column(Money)
    sub_total: Mapped[Optional[float]] = mapped_column(Money)
    tax: Mapped[Optional[float]] = mapped_column(Money)

    # === STATUS / TYPE ===
    order_date: Mapped[Optional[str]] = mapped_column(String(50))
    order_status: Mapped[Optional[str]] = mapped_column(String(50))
    order_type: Mapped[Optional[str]] = mapped_column(String(50))
    sale_type: Mapped[Optional[str]] = mapped_column(String(50))

    # === SHIP TO ===
    ship_via_code: Mapped[Optional[str]] = mapped_column(String(50))
    ship_to_name: Mapped[Optional[str]] = mapped_column(String(255))
    ship_to_address1: Mapped[Optional[str]] = mapped_column(String(255))
    ship_to_city: Mapped[Optional[str]] = mapped_column(String(100))
    ship_to_state: Mapped[Optional[str]] = mapped_column(String(50))
    ship_to_zip: Mapped[Optional[str]] = mapped_column(String(20))

    # === DELIVERY ===
    delivery_date: Mapped[Optional[str]] = mapped_column(String(50))
    delivery_window: Mapped[Optional[str]] = mapped_column(String(50))
    ship_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ordered_by: Mapped[Optional[str]] = mapped_column(String(255))

    # === LINE ITEMS ===
    line_item_codes: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    line_item_details: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)

    synced_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP,
        server_default=text("CURRENT_TIMESTAMP"),
        comment="Last time this order was written by the insert consumer",
    )

    __table_args__ = ({"comment": "Orders synced from the upstream order-management system"},)

    def to_dict(self) -> Dict[str, Any]:
        """Column values keyed by column name (synced_at excluded)."""
        return {
            column.name: getattr(self, column.name)
            for column in self.__table__.columns
            if column.name != "synced_at"
        }

    def __repr__(self) -> str:
        return (
            f"<ErpOrder(order_number={self.order_number}, "
            f"customer_code={self.customer_code}, "
            f"order_status={self.order_status})>"
        )


# ==============================================================================
# MESSAGE LOCK MODEL
# ==============================================================================
# The composite primary key is the lock: a second INSERT for the same
# (message_code, consumer_name) fails with IntegrityError.


class MessageLock(Base):
    """Exclusive processing claim on one queue message."""

    __tablename__ = "queue_message_locks"

    message_code: Mapped[str] = mapped_column(String(255), primary_key=True)
    consumer_name: Mapped[str] = mapped_column(String(100), primary_key=True)
    locked_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, comment="Naive UTC time the lock was taken"
    )

    def __repr__(self) -> str:
        return (
            f"<MessageLock(message_code={self.message_code}, "
            f"consumer_name={self.consumer_name}, locked_at={self.locked_at})>"
        )
