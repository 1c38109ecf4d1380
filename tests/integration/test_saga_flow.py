"""
Integration tests: the whole saga running on the in-memory broker.

All six services are started exactly as `orderflow all --in-memory` starts
them, an order is published, and the test waits for the broker to drain
before reading the event log.

The last test runs the same flow against a real Kafka broker:

Run: USE_KAFKA=true KAFKA_BOOTSTRAP_SERVERS=localhost:9093 pytest tests/integration -m kafka
"""
import asyncio
import os
import random

import pytest

from inventory_service.ledger import InventoryLedger
from order_service.generator import generate_order
from shared.config import BusConfig, Settings
from shared.events import (
    EventEnvelope,
    NotificationType,
    OrderStatus,
    Topic,
    derive_order_statuses,
)
from shared.simulation import LatencyModel, RandomOutcomeSource, Simulation, Stage

pytestmark = pytest.mark.integration

KAFKA_BOOTSTRAP_SERVERS = os.environ.get("KAFKA_BOOTSTRAP_SERVERS", "localhost:9093")


def _log(broker):
    return [EventEnvelope.from_bytes(m.value) for m in broker.messages()]


def _payloads(broker, topic):
    return [EventEnvelope.from_bytes(m.value).decode_payload() for m in broker.messages(topic.value)]


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_happy_path_completes_order(start_saga, broker, sample_order):
    ledger = InventoryLedger({"prod-1": 20, "prod-7": 5})
    saga = await start_saga(ledger=ledger)

    await saga.order.create_order(sample_order)
    await broker.wait_until_idle(timeout=5)

    assert ledger.stock_of("prod-1") == 18
    assert ledger.stock_of("prod-7") == 4

    completed = _payloads(broker, Topic.ORDER_COMPLETED)
    assert [c.order_id for c in completed] == ["order-1"]
    assert _payloads(broker, Topic.ORDER_FAILED) == []

    notification_types = [n.notification_type for n in _payloads(broker, Topic.NOTIFICATION_SENT)]
    assert sorted(notification_types) == sorted([
        NotificationType.PAYMENT_CONFIRMATION,
        NotificationType.SHIPPING_CONFIRMATION,
        NotificationType.ORDER_COMPLETED,
    ])

    assert derive_order_statuses(_log(broker)) == {"order-1": OrderStatus.COMPLETED}

    snapshot = saga.analytics.state.snapshot()
    assert snapshot.total_orders == 1
    assert snapshot.successful_orders == 1
    assert snapshot.total_revenue_cents == 5000


@pytest.mark.asyncio
async def test_event_chain_follows_stage_order(start_saga, broker, sample_order):
    saga = await start_saga(ledger=InventoryLedger({"prod-1": 20, "prod-7": 5}))
    await saga.order.create_order(sample_order)
    await broker.wait_until_idle(timeout=5)

    topics = [m.topic for m in broker.messages() if m.topic != Topic.NOTIFICATION_SENT.value]
    assert topics == [
        "order-created",
        "payment-processed",
        "inventory-updated",
        "shipping-prepared",
        "order-completed",
    ]


# ---------------------------------------------------------------------------
# Failure paths
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_payment_failure_stops_saga(start_saga, broker, sample_order):
    ledger = InventoryLedger({"prod-1": 20, "prod-7": 5})
    saga = await start_saga(simulation=Simulation.scripted({Stage.PAYMENT: False}), ledger=ledger)

    await saga.order.create_order(sample_order)
    await broker.wait_until_idle(timeout=5)

    [failed] = _payloads(broker, Topic.ORDER_FAILED)
    assert failed.reason == "Payment failed"
    assert broker.messages(Topic.INVENTORY_UPDATED.value) == []
    assert broker.messages(Topic.SHIPPING_PREPARED.value) == []
    assert broker.messages(Topic.ORDER_COMPLETED.value) == []
    assert ledger.snapshot() == {"prod-1": 20, "prod-7": 5}

    notification_types = [n.notification_type for n in _payloads(broker, Topic.NOTIFICATION_SENT)]
    assert notification_types == [NotificationType.ORDER_FAILED]


@pytest.mark.asyncio
async def test_shipping_failure_keeps_inventory_decrement(start_saga, broker, sample_order):
    """There is no compensation: stock taken before a later failure stays taken."""
    ledger = InventoryLedger({"prod-1": 20, "prod-7": 5})
    saga = await start_saga(simulation=Simulation.scripted({Stage.SHIPPING: False}), ledger=ledger)

    await saga.order.create_order(sample_order)
    await broker.wait_until_idle(timeout=5)

    [failed] = _payloads(broker, Topic.ORDER_FAILED)
    assert failed.reason == "Shipping preparation failed"
    assert ledger.stock_of("prod-1") == 18
    assert derive_order_statuses(_log(broker)) == {"order-1": OrderStatus.FAILED}


# ---------------------------------------------------------------------------
# Many orders
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_every_order_ends_exactly_once(start_saga, broker):
    """Each order reaches one terminal event, never both and never twice."""
    rng = random.Random(2024)
    simulation = Simulation(
        outcomes=RandomOutcomeSource(rng=rng),
        latency=LatencyModel(scale=0.0, rng=rng),
        rng=rng,
    )
    saga = await start_saga(simulation=simulation)

    order_ids = []
    for _ in range(200):
        order = generate_order(rng)
        order_ids.append(order.order_id)
        await saga.order.create_order(order)
    await broker.wait_until_idle(timeout=30)

    completed = [c.order_id for c in _payloads(broker, Topic.ORDER_COMPLETED)]
    failed = [f.order_id for f in _payloads(broker, Topic.ORDER_FAILED)]

    assert len(completed) == len(set(completed))
    assert len(failed) == len(set(failed))
    assert not set(completed) & set(failed)
    assert set(completed) | set(failed) == set(order_ids)

    statuses = derive_order_statuses(_log(broker))
    assert all(statuses[order_id].is_terminal for order_id in order_ids)


@pytest.mark.asyncio
async def test_completion_rate_matches_stage_probabilities(start_saga, broker):
    """0.9 * 0.8 * 0.95 = 0.684 of orders complete."""
    rng = random.Random(7)
    simulation = Simulation(
        outcomes=RandomOutcomeSource(rng=rng),
        latency=LatencyModel(scale=0.0, rng=rng),
        rng=rng,
    )
    saga = await start_saga(simulation=simulation)

    for _ in range(1000):
        await saga.order.create_order(generate_order(rng))
    await broker.wait_until_idle(timeout=60)

    completed = len(broker.messages(Topic.ORDER_COMPLETED.value))
    assert completed / 1000 == pytest.approx(0.684, abs=0.05)


@pytest.mark.asyncio
async def test_latency_does_not_serialize_partitions(start_saga, broker):
    """Orders on different partitions are processed concurrently."""
    slow = Simulation(
        outcomes=RandomOutcomeSource({s: 1.0 for s in Stage}, rng=random.Random(1)),
        latency=LatencyModel(
            scale=1.0, ranges={s: (0.05, 0.05) for s in Stage}, rng=random.Random(1)
        ),
        rng=random.Random(1),
    )
    saga = await start_saga(simulation=slow)

    loop = asyncio.get_running_loop()
    started = loop.time()
    for i in range(12):
        await saga.order.create_order(generate_order(random.Random(i)))
    await broker.wait_until_idle(timeout=10)
    elapsed = loop.time() - started

    assert len(broker.messages(Topic.ORDER_COMPLETED.value)) == 12
    # fully sequential processing would need 12 x 4 x 50ms = 2.4s
    assert elapsed < 2.0


# ---------------------------------------------------------------------------
# Real Kafka
# ---------------------------------------------------------------------------

@pytest.mark.kafka
@pytest.mark.asyncio
async def test_order_reaches_terminal_state_over_kafka(sample_customer):
    from order_service.handler import OrderCoordinator
    from payment_service.handler import PaymentProcessor
    from shared.kafka_bus import KafkaEventBus
    from shared.events import LineItem, Order

    settings = Settings(
        bus=BusConfig(bootstrap_servers=KAFKA_BOOTSTRAP_SERVERS, retries=3),
        latency_scale=0.0,
        p_payment=0.0,
    )
    order_bus = KafkaEventBus(settings.bus, service_name="order-service")
    payment_bus = KafkaEventBus(settings.bus, service_name="payment-service")
    await order_bus.connect()
    await payment_bus.connect()
    coordinator = OrderCoordinator(order_bus, settings)
    processor = PaymentProcessor(payment_bus, settings)
    await coordinator.start()
    await processor.start()
    # let both consumer groups finish joining before publishing
    await asyncio.sleep(5)

    failed_orders = []
    log_failure = coordinator.on_order_failed

    async def record(event):
        failed_orders.append(event.order_id)
        await log_failure(event)

    coordinator.on_order_failed = record
    order = Order.create(
        customer=sample_customer,
        items=[LineItem(product_id="prod-1", unit_price_cents=100, quantity=1)],
    )
    try:
        await coordinator.create_order(order)
        for _ in range(60):
            if order.order_id in failed_orders:
                break
            await asyncio.sleep(0.5)
        assert order.order_id in failed_orders
    finally:
        await processor.stop()
        await coordinator.stop()
        await payment_bus.close()
        await order_bus.close()
