"""
Order Detail Schemas

Pydantic models for the order-detail payload returned by the upstream
order API (GET /orders/<orderNumber>).

UPSTREAM PAYLOAD SHAPE:
{
    "orderHeader": {"orderNumber": "ORD-1", "customerCode": "C100", ...},
    "orderDetails": [{"itemCode": "MULCH-BRN", "quantityOrdered": 4, ...}, ...]
}

The upstream schema is owned by the order-management system, so the models
only require what the pipeline keys on (orderNumber, itemCode) and keep any
additional fields (extra="allow").
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class _UpstreamModel(BaseModel):
    """Base model: camelCase aliases on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
        extra="allow",
    )


class OrderHeader(_UpstreamModel):
    """Order header: customer, billing/shipping, totals, dates and delivery attributes."""

    order_number: str = Field(min_length=1)
    customer_code: Optional[str] = None

    bill_to_name: Optional[str] = None
    bill_to_address1: Optional[str] = None
    bill_to_city: Optional[str] = None
    bill_to_state: Optional[str] = None
    bill_to_zip: Optional[str] = None

    branch_code: Optional[str] = None
    branch_name: Optional[str] = None

    delivery_charges: Optional[float] = None
    order_total: Optional[float] = None
    sub_total: Optional[float] = None
    tax: Optional[float] = None

    order_date: Optional[str] = None
    order_status: Optional[str] = None
    order_type: Optional[str] = None
    sale_type: Optional[str] = None

    ship_via_code: Optional[str] = None
    ship_to_name: Optional[str] = None
    ship_to_address1: Optional[str] = None
    ship_to_city: Optional[str] = None
    ship_to_state: Optional[str] = None
    ship_to_zip: Optional[str] = None

    delivery_date: Optional[str] = None
    delivery_window: Optional[str] = None
    ship_complete: bool = False
    ordered_by: Optional[str] = None

    @field_validator("order_number")
    @classmethod
    def _strip_order_number(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("orderNumber must not be blank")
        return value

    @field_validator("ship_complete", mode="before")
    @classmethod
    def _null_ship_complete(cls, value: Any) -> Any:
        return False if value is None else value


class LineItem(_UpstreamModel):
    """One order line. Only itemCode is required."""

    item_code: str
    item_description: Optional[str] = None
    quantity_ordered: Optional[float] = None
    quantity_shipped: Optional[float] = None
    unit_price: Optional[float] = None
    extended_price: Optional[float] = None


class OrderDetail(_UpstreamModel):
    """Full order detail: header plus ordered line items."""

    header: OrderHeader = Field(alias="orderHeader")
    line_items: List[LineItem] = Field(default_factory=list, alias="orderDetails")

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "OrderDetail":
        """Validate an upstream order-detail payload.

        Raises:
            pydantic.ValidationError: If orderHeader/orderNumber is missing or invalid
        """
        return cls.model_validate(payload)

    @property
    def order_number(self) -> str:
        return self.header.order_number

    def item_codes(self) -> List[str]:
        """Item codes in line order."""
        return [item.item_code for item in self.line_items]

    def line_item_payloads(self) -> List[Dict[str, Any]]:
        """Line items as received (camelCase keys, unknown fields preserved)."""
        return [
            item.model_dump(mode="json", by_alias=True, exclude_unset=True)
            for item in self.line_items
        ]
