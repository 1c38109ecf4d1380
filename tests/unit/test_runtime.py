"""
Unit tests for the process runtime and CLI.
"""
import asyncio

import pytest
from aiokafka.errors import KafkaError

from shared import runtime
from shared.bus import BusConnectionError, BusConsumerError
from shared.config import BusConfig, Settings
from shared.memory_bus import InMemoryBroker, InMemoryEventBus


def test_all_expands_to_every_service():
    assert runtime.resolve_service_names(["all"]) == list(runtime.SERVICES)


def test_names_deduplicated_in_given_order():
    assert runtime.resolve_service_names(["payment", "order", "payment"]) == ["payment", "order"]


def test_unknown_service_rejected():
    with pytest.raises(ValueError):
        runtime.resolve_service_names(["billing"])


def test_main_returns_2_for_unknown_service(capsys):
    assert runtime.main(["billing"]) == 2
    assert "billing" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_in_memory_run_drains_and_stops():
    settings = Settings(
        bus=BusConfig(retries=0, initial_retry_ms=0),
        latency_scale=0.0,
        random_seed=1,
        order_interval_seconds=0.001,
        metrics_interval_seconds=3600,
    )
    await runtime.run(["all"], settings, in_memory=True, order_limit=5)


def test_main_returns_1_when_bus_unreachable(monkeypatch):
    async def unreachable(*args, **kwargs):
        raise BusConnectionError("no brokers")

    monkeypatch.setattr(runtime, "run", unreachable)
    assert runtime.main(["payment"]) == 1


@pytest.mark.asyncio
async def test_run_rejects_unknown_service_before_connecting():
    settings = Settings(bus=BusConfig(retries=0, initial_retry_ms=0), latency_scale=0.0)
    with pytest.raises(ValueError, match="billing"):
        await runtime.run(["billing"], settings, in_memory=True)


@pytest.mark.asyncio
async def test_run_stops_and_raises_when_a_consumer_dies(monkeypatch):
    settings = Settings(bus=BusConfig(retries=0, initial_retry_ms=0), latency_scale=0.0)
    broker = InMemoryBroker(settings.bus)

    class DyingBus(InMemoryEventBus):
        def __init__(self, on_fatal):
            super().__init__(broker)
            self._on_fatal = on_fatal

        async def start(self):
            await super().start()
            asyncio.get_running_loop().call_soon(self._on_fatal, KafkaError("group coordinator lost"))

    monkeypatch.setattr(
        runtime, "KafkaEventBus", lambda config, service_name, on_fatal: DyingBus(on_fatal)
    )

    with pytest.raises(BusConsumerError) as excinfo:
        await asyncio.wait_for(runtime.run(["payment"], settings), timeout=5)
    assert isinstance(excinfo.value.__cause__, KafkaError)
    await broker.close()


def test_main_returns_1_when_a_consumer_dies(monkeypatch):
    async def consumer_died(*args, **kwargs):
        raise BusConsumerError("A service stopped consuming")

    monkeypatch.setattr(runtime, "run", consumer_died)
    assert runtime.main(["payment"]) == 1
