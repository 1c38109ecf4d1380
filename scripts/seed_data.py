#!/usr/bin/env python3
"""
Demo script: publish a sample order onto Kafka and watch it through the saga.

Start the services first (one process per service, or all in one):
  orderflow all

Then:
  python scripts/seed_data.py
  python scripts/seed_data.py --bootstrap kafka:9092 --timeout 60
"""
import argparse
import asyncio
import dataclasses
import json
import os
import sys
import uuid

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "services"))

from shared.bus import BusConnectionError, Message  # noqa: E402
from shared.config import Settings  # noqa: E402
from shared.events import (  # noqa: E402
    Address,
    Customer,
    EventEnvelope,
    LineItem,
    Order,
    OrderCreatedPayload,
    Topic,
)
from shared.kafka_bus import KafkaEventBus  # noqa: E402

WATCHED = (
    Topic.PAYMENT_PROCESSED,
    Topic.INVENTORY_UPDATED,
    Topic.SHIPPING_PREPARED,
    Topic.ORDER_COMPLETED,
    Topic.ORDER_FAILED,
)


def sample_order() -> Order:
    return Order.create(
        customer=Customer(
            customer_id=f"cust-{uuid.uuid4().hex[:8]}",
            name="Demo Customer",
            email="demo@example.com",
            address=Address(street="1 Demo Street", city="Dublin", country="Ireland"),
        ),
        items=[
            LineItem(product_id="prod-1", name="Sleek Steel Lamp", quantity=1, unit_price_cents=12999),
            LineItem(product_id="prod-2", name="Rustic Wooden Desk", quantity=2, unit_price_cents=4999),
        ],
    )


async def main(bootstrap: str, timeout: float) -> int:
    settings = Settings.from_env()
    config = dataclasses.replace(settings.bus, bootstrap_servers=bootstrap)

    order = sample_order()
    terminal = asyncio.Event()

    async def watch(message: Message) -> None:
        envelope = EventEnvelope.from_bytes(message.value)
        if envelope.order_id != order.order_id:
            return
        status = envelope.payload.get("status")
        reason = envelope.payload.get("reason")
        print(f"  {envelope.topic.value:<20} {status or ''} {reason or ''}".rstrip())
        if envelope.topic in (Topic.ORDER_COMPLETED, Topic.ORDER_FAILED):
            terminal.set()

    observer = KafkaEventBus(config, service_name="seed-observer")
    publisher = KafkaEventBus(config, service_name="seed-data")
    try:
        await observer.connect()
        await observer.subscribe(f"seed-observer-{uuid.uuid4().hex[:8]}", [t.value for t in WATCHED])
        observer.on_message(watch)
        await observer.start()
        await publisher.connect()
    except BusConnectionError as e:
        print(f"Kafka not reachable: {e}")
        await publisher.close()
        await observer.close()
        return 1

    try:
        # give the observer group time to get its partitions before publishing
        await asyncio.sleep(3)
        print(f"Submitting order {order.order_id}")
        print(f"Payload: {json.dumps(order.model_dump(mode='json'), indent=2)}")
        print()

        envelope = EventEnvelope.wrap(
            Topic.ORDER_CREATED, OrderCreatedPayload(**order.model_dump()), source_service="seed-data"
        )
        message_id = await publisher.publish(Topic.ORDER_CREATED.value, envelope.event_id, envelope.to_bytes())
        print(f"Published as {message_id}. Waiting for the saga...")

        try:
            await asyncio.wait_for(terminal.wait(), timeout)
            print("\nDone.")
            return 0
        except asyncio.TimeoutError:
            print("\nTimed out waiting for order-completed / order-failed. Are the services running?")
            return 2
    finally:
        await publisher.close()
        await observer.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Publish a sample order and follow it")
    parser.add_argument("--bootstrap", default=os.environ.get("KAFKA_BOOTSTRAP_SERVERS", "localhost:9093"))
    parser.add_argument("--timeout", type=float, default=30.0)
    args = parser.parse_args()

    sys.exit(asyncio.run(main(args.bootstrap, args.timeout)))
