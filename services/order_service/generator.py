"""
Synthetic order generator for demos and load tests.

Product ids are drawn from prod-0..prod-49 so they mostly hit the inventory
catalog; prices are whole cents between 1.00 and 1000.00.

A seeded rng reproduces the order contents only. Order and customer ids
are always fresh uuid4 values so restarts never reuse an id on the log.
"""
from __future__ import annotations

import random
import string
import uuid

from shared.events import Address, Customer, LineItem, Order

_FIRST_NAMES = ["Aoife", "Liam", "Maya", "Noah", "Sofia", "Oisin", "Priya", "Mateo", "Chloe", "Ravi"]
_LAST_NAMES = ["Murphy", "Kelly", "Garcia", "Nguyen", "Schmidt", "Rossi", "Okafor", "Silva", "Byrne"]
_CITIES = [
    ("Dublin", "Leinster", "Ireland"),
    ("Cork", "Munster", "Ireland"),
    ("Lyon", "Auvergne-Rhone-Alpes", "France"),
    ("Porto", "Norte", "Portugal"),
    ("Leipzig", "Saxony", "Germany"),
]
_ADJECTIVES = ["Ergonomic", "Rustic", "Sleek", "Handmade", "Refined", "Practical", "Intelligent"]
_MATERIALS = ["Steel", "Wooden", "Cotton", "Granite", "Bamboo", "Plastic", "Leather"]
_PRODUCTS = ["Chair", "Lamp", "Keyboard", "Backpack", "Kettle", "Bottle", "Desk", "Mouse"]


def generate_customer(rng: random.Random) -> Customer:
    first, last = rng.choice(_FIRST_NAMES), rng.choice(_LAST_NAMES)
    city, state, country = rng.choice(_CITIES)
    return Customer(
        customer_id=str(uuid.uuid4()),
        name=f"{first} {last}",
        email=f"{first.lower()}.{last.lower()}{rng.randint(1, 999)}@example.com",
        phone="+353 " + "".join(rng.choice(string.digits) for _ in range(9)),
        address=Address(
            street=f"{rng.randint(1, 250)} {rng.choice(_LAST_NAMES)} Street",
            city=city,
            state=state,
            zip_code="".join(rng.choice(string.digits) for _ in range(5)),
            country=country,
        ),
    )


def generate_line_item(rng: random.Random, catalog_size: int = 50) -> LineItem:
    return LineItem(
        product_id=f"prod-{rng.randrange(catalog_size)}",
        name=f"{rng.choice(_ADJECTIVES)} {rng.choice(_MATERIALS)} {rng.choice(_PRODUCTS)}",
        unit_price_cents=rng.randint(100, 100_000),
        quantity=rng.randint(1, 5),
    )


def generate_order(rng: random.Random | None = None, catalog_size: int = 50) -> Order:
    rng = rng or random.Random()
    items = [generate_line_item(rng, catalog_size) for _ in range(rng.randint(1, 5))]
    return Order.create(customer=generate_customer(rng), items=items)
