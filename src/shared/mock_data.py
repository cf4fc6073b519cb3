"""
Mock Upstream Payload Generator

Generates realistic payloads in the shape the upstream order API returns, for
tests and local runs without access to the real order-management system.

GENERATED SHAPES:
- Change list:   {"orderList": [{"orderNumber": "SO-2024010100001", "changeDate": "..."}]}
- Order detail:  {"orderHeader": {...camelCase header...}, "orderDetails": [{...line...}]}

LIBRARIES USED:
- Faker: names, street addresses, cities, states, zip codes
- random: item selection, quantities

Same seed → same customers, catalog and orders.
"""

import random
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from faker import Faker

DEFAULT_SEED = 42

NUM_CUSTOMERS = 25

# Order number format: SO-YYYYMMDDNNNNN
ORDER_NUMBER_FORMAT = "SO-{date}{sequence:05d}"

# (itemCode, description, unit price)
CATALOG = [
    ("MULCH-BRN-2CF", "Brown Mulch 2 cu ft", 4.79),
    ("MULCH-BLK-2CF", "Black Mulch 2 cu ft", 4.99),
    ("TOPSOIL-40LB", "Premium Topsoil 40 lb", 3.49),
    ("PAVER-HOLL-GRY", "Holland Paver Gray", 0.89),
    ("PAVER-HOLL-RED", "Holland Paver Red", 0.95),
    ("GRAVEL-PEA-YD", "Pea Gravel per Yard", 42.00),
    ("SOD-FESCUE-PAL", "Fescue Sod Pallet", 189.00),
    ("SEED-KBG-50LB", "Kentucky Bluegrass Seed 50 lb", 159.99),
    ("FERT-2404-50LB", "Fertilizer 24-0-4 50 lb", 38.50),
    ("EDGING-STEEL-16", "Steel Edging 16 ft", 27.25),
    ("DRAIN-PIPE-4IN", "Corrugated Drain Pipe 4 in", 19.99),
    ("BOULDER-ROSE-TN", "Rose Quartz Boulder per Ton", 325.00),
]

ORDER_STATUSES = ["Open", "Released", "Picked", "Shipped", "Invoiced"]
ORDER_TYPES = ["SO", "QT", "RM"]
SHIP_VIA_CODES = ["DEL", "PU", "UPS", "LTL"]
DELIVERY_WINDOWS = ["AM", "PM", "ANY"]


class MockOrderGenerator:
    """
    Generates upstream-shaped change lists and order details.

    Attributes:
        customers: Fixed pool of customer dictionaries
        branches: Fixed pool of (branch_code, branch_name)
        order_sequence: Counter for unique order numbers
    """

    def __init__(self, seed: int = DEFAULT_SEED, num_customers: int = NUM_CUSTOMERS):
        self.seed = seed
        self._random = random.Random(seed)
        self._fake = Faker("en_US")
        self._fake.seed_instance(seed)

        self.customers = self._generate_customers(num_customers)
        self.branches = [
            (f"BR{i:02d}", f"{self._fake.city()} Yard") for i in range(1, 6)
        ]
        self.order_sequence = 0

    def _generate_customers(self, count: int) -> List[Dict[str, str]]:
        customers = []
        for i in range(1, count + 1):
            customers.append({
                "customer_code": f"C{i:05d}",
                "name": self._fake.company(),
                "address1": self._fake.street_address(),
                "city": self._fake.city(),
                "state": self._fake.state_abbr(),
                "zip": self._fake.zipcode(),
                "contact": self._fake.name(),
            })
        return customers

    def generate_order_number(self, order_date: Optional[date] = None) -> str:
        self.order_sequence += 1
        order_date = order_date or date(2024, 1, 1)
        return ORDER_NUMBER_FORMAT.format(
            date=order_date.strftime("%Y%m%d"), sequence=self.order_sequence
        )

    def generate_change_list(self, count: int) -> Dict[str, Any]:
        """Change-list response body with count order numbers."""
        return {
            "orderList": [
                {
                    "orderNumber": self.generate_order_number(),
                    "changeDate": self._fake.date_time_between(
                        start_date="-1d", end_date="now"
                    ).isoformat(),
                }
                for _ in range(count)
            ]
        }

    def generate_line_items(self, min_items: int = 1, max_items: int = 5) -> List[Dict[str, Any]]:
        num_items = self._random.randint(min_items, min(max_items, len(CATALOG)))
        lines = []
        for line_number, (item_code, description, price) in enumerate(
            self._random.sample(CATALOG, num_items), start=1
        ):
            quantity = self._random.randint(1, 40)
            lines.append({
                "lineNumber": line_number,
                "itemCode": item_code,
                "itemDescription": description,
                "quantityOrdered": quantity,
                "quantityShipped": 0,
                "unitPrice": price,
                "extendedPrice": round(price * quantity, 2),
            })
        return lines

    def generate_order_details(self, order_number: Optional[str] = None) -> Dict[str, Any]:
        """Order-detail response body for one order."""
        customer = self._random.choice(self.customers)
        ship_to = self._random.choice(self.customers)
        branch_code, branch_name = self._random.choice(self.branches)
        lines = self.generate_line_items()

        order_date = date(2024, 1, 1) + timedelta(days=self._random.randint(0, 30))
        sub_total = round(sum(line["extendedPrice"] for line in lines), 2)
        tax = round(sub_total * 0.07, 2)
        delivery_charges = self._random.choice([0.0, 45.0, 75.0, 125.0])

        header = {
            "orderNumber": order_number or self.generate_order_number(order_date),
            "customerCode": customer["customer_code"],
            "billToName": customer["name"],
            "billToAddress1": customer["address1"],
            "billToCity": customer["city"],
            "billToState": customer["state"],
            "billToZip": customer["zip"],
            "branchCode": branch_code,
            "branchName": branch_name,
            "deliveryCharges": delivery_charges,
            "orderDate": order_date.isoformat(),
            "orderStatus": self._random.choice(ORDER_STATUSES),
            "orderTotal": round(sub_total + tax + delivery_charges, 2),
            "orderType": self._random.choice(ORDER_TYPES),
            "saleType": self._random.choice(["Cash", "Account"]),
            "shipViaCode": self._random.choice(SHIP_VIA_CODES),
            "shipToName": ship_to["name"],
            "shipToAddress1": ship_to["address1"],
            "shipToCity": ship_to["city"],
            "shipToState": ship_to["state"],
            "shipToZip": ship_to["zip"],
            "subTotal": sub_total,
            "tax": tax,
            "deliveryDate": (order_date + timedelta(days=self._random.randint(1, 7))).isoformat(),
            "deliveryWindow": self._random.choice(DELIVERY_WINDOWS),
            "shipComplete": self._random.random() < 0.5,
            "orderedBy": customer["contact"],
        }

        return {"orderHeader": header, "orderDetails": lines}
