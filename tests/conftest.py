"""
Pytest configuration and shared fixtures.
Unit and integration tests run on the in-memory broker (no Docker needed).
Tests marked `kafka` talk to a real broker and only run with USE_KAFKA=true.
"""
import os
import random
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest
import pytest_asyncio

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "services"))

from shared.config import BusConfig, Settings  # noqa: E402
from shared.events import Address, Customer, LineItem, Order  # noqa: E402
from shared.memory_bus import InMemoryBroker, InMemoryEventBus  # noqa: E402

USE_KAFKA = os.environ.get("USE_KAFKA", "false").lower() == "true"
KAFKA_BOOTSTRAP_SERVERS = os.environ.get("KAFKA_BOOTSTRAP_SERVERS", "localhost:9093")


def pytest_collection_modifyitems(config, items):
    if USE_KAFKA:
        return
    skip_kafka = pytest.mark.skip(reason="set USE_KAFKA=true to run against a real broker")
    for item in items:
        if "kafka" in item.keywords:
            item.add_marker(skip_kafka)


@pytest.fixture
def settings():
    """Zero latency, default probabilities, no retries on the in-memory bus."""
    return Settings(
        bus=BusConfig(retries=0, initial_retry_ms=0),
        latency_scale=0.0,
        random_seed=7,
        metrics_interval_seconds=3600,
    )


@pytest.fixture
def broker(settings):
    return InMemoryBroker(settings.bus)


@pytest_asyncio.fixture
async def bus_factory(broker):
    """Hands out connected in-memory clients and closes them after the test."""
    created = []

    async def make():
        bus = InMemoryEventBus(broker)
        await bus.connect()
        created.append(bus)
        return bus

    yield make

    for bus in created:
        await bus.close()
    await broker.close()


@pytest.fixture
def sample_customer():
    return Customer(
        customer_id="cust-1",
        name="Aoife Murphy",
        email="aoife@example.com",
        phone="+353 871234567",
        address=Address(street="1 Main Street", city="Dublin", country="Ireland"),
    )


@pytest.fixture
def sample_order(sample_customer):
    return Order.create(
        customer=sample_customer,
        items=[
            LineItem(product_id="prod-1", name="Desk", unit_price_cents=1500, quantity=2),
            LineItem(product_id="prod-7", name="Lamp", unit_price_cents=2000, quantity=1),
        ],
        order_id="order-1",
    )


@pytest_asyncio.fixture
async def start_saga(bus_factory, settings):
    """
    Start all six services on the shared in-memory broker.

    Every stage shares one Simulation, so a ScriptedOutcomeSource can force
    an exact path through the saga.
    """
    from analytics_service.handler import AnalyticsAggregator
    from inventory_service.handler import InventoryManager
    from notification_service.handler import NotificationDispatcher
    from order_service.handler import OrderCoordinator
    from payment_service.handler import PaymentProcessor
    from shared.simulation import Simulation
    from shipping_service.handler import ShipmentPreparer

    started = []

    async def start(simulation=None, ledger=None, settings_override=None):
        cfg = settings_override or settings
        simulation = simulation or Simulation.scripted()
        services = SimpleNamespace(
            order=OrderCoordinator(await bus_factory(), cfg, rng=random.Random(0)),
            payment=PaymentProcessor(await bus_factory(), cfg, simulation),
            inventory=InventoryManager(await bus_factory(), cfg, simulation, ledger),
            shipping=ShipmentPreparer(await bus_factory(), cfg, simulation),
            notification=NotificationDispatcher(await bus_factory(), cfg, simulation),
            analytics=AnalyticsAggregator(await bus_factory(), cfg),
        )
        for service in vars(services).values():
            await service.start()
            started.append(service)
        return services

    yield start

    for service in reversed(started):
        await service.stop()
