"""
Process Runtime
===============
Entry point for running one or more services:

  orderflow payment                 # one service against Kafka
  orderflow all --in-memory         # the whole saga in one process
  orderflow all --in-memory --orders 50

Each service gets its own bus client, exactly as it would in its own
container. A bus that cannot be reached at startup is fatal, and so is a
consumer loop that dies while running: the error is logged, every service
is stopped and the process exits with status 1.
"""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import signal
import sys
from typing import Callable, Sequence

from analytics_service.handler import AnalyticsAggregator
from inventory_service.handler import InventoryManager
from notification_service.handler import NotificationDispatcher
from order_service.handler import OrderCoordinator
from payment_service.handler import PaymentProcessor
from shipping_service.handler import ShipmentPreparer

from shared.bus import BusConsumerError, BusError, EventBus
from shared.config import Settings
from shared.consumer import EventService
from shared.kafka_bus import KafkaEventBus
from shared.logger import configure_logging, get_logger
from shared.memory_bus import InMemoryBroker, InMemoryEventBus

logger = get_logger(__name__)

SERVICES: dict[str, type[EventService]] = {
    "order": OrderCoordinator,
    "payment": PaymentProcessor,
    "inventory": InventoryManager,
    "shipping": ShipmentPreparer,
    "notification": NotificationDispatcher,
    "analytics": AnalyticsAggregator,
}


def resolve_service_names(names: Sequence[str]) -> list[str]:
    if "all" in names:
        return list(SERVICES)
    unknown = [n for n in names if n not in SERVICES]
    if unknown:
        raise ValueError(f"Unknown service(s): {', '.join(unknown)}")
    # keep the caller's order, drop repeats
    return list(dict.fromkeys(names))


async def start_services(
    names: Sequence[str],
    settings: Settings,
    bus_factory: Callable[[str], EventBus],
) -> list[EventService]:
    """Connect one bus per service and start consuming. Stops what it started on failure."""
    started: list[EventService] = []
    try:
        for name in names:
            service_cls = SERVICES[name]
            bus = bus_factory(service_cls.name)
            await bus.connect()
            service = service_cls(bus, settings)
            await service.start()
            started.append(service)
    except BaseException:
        await stop_services(started)
        raise
    return started


async def stop_services(services: Sequence[EventService]) -> None:
    for service in reversed(services):
        try:
            await service.stop()
        finally:
            await service.bus.close()


async def run(
    names: Sequence[str],
    settings: Settings,
    in_memory: bool = False,
    order_limit: int | None = None,
    generate_orders: bool = True,
) -> None:
    names = resolve_service_names(names)
    stop = asyncio.Event()
    consumer_failures: list[BaseException] = []

    def on_fatal(exc: BaseException) -> None:
        consumer_failures.append(exc)
        stop.set()

    if in_memory:
        broker = InMemoryBroker(settings.bus)
        bus_factory: Callable[[str], EventBus] = lambda _name: InMemoryEventBus(broker)
    else:
        broker = None
        bus_factory = lambda name: KafkaEventBus(settings.bus, service_name=name, on_fatal=on_fatal)

    services = await start_services(names, settings, bus_factory)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    generator: asyncio.Task[None] | None = None
    coordinator = next((s for s in services if isinstance(s, OrderCoordinator)), None)
    if coordinator is not None and generate_orders:
        generator = asyncio.create_task(_generate(coordinator, order_limit, broker, stop))

    logger.info("OrderFlow running", extra={"services": list(names), "in_memory": in_memory})
    try:
        await stop.wait()
    finally:
        if generator is not None:
            generator.cancel()
            await asyncio.gather(generator, return_exceptions=True)
        await stop_services(services)
        if broker is not None:
            await broker.close()
        logger.info("OrderFlow stopped")
    if consumer_failures:
        raise BusConsumerError("A service stopped consuming") from consumer_failures[0]


async def _generate(
    coordinator: OrderCoordinator,
    limit: int | None,
    broker: InMemoryBroker | None,
    stop: asyncio.Event,
) -> None:
    await coordinator.run_order_generator(limit=limit)
    if broker is not None:
        # A bounded in-memory run ends once the last order has settled
        await broker.wait_until_idle(timeout=None)
        stop.set()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="orderflow", description="Run OrderFlow saga services.")
    parser.add_argument(
        "services",
        nargs="+",
        metavar="SERVICE",
        help=f"one or more of: all, {', '.join(SERVICES)}",
    )
    parser.add_argument(
        "--in-memory",
        action="store_true",
        help="use an in-process broker instead of Kafka (all services share it)",
    )
    parser.add_argument(
        "--orders",
        type=int,
        default=None,
        help="stop generating after N orders (in-memory runs exit once the saga drains)",
    )
    parser.add_argument("--no-generate", action="store_true", help="do not generate synthetic orders")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    try:
        names = resolve_service_names(args.services)
    except ValueError as e:
        print(e, file=sys.stderr)
        return 2

    configure_logging(
        service_name=SERVICES[names[0]].name if len(names) == 1 else "orderflow",
        level=settings.log_level,
    )
    try:
        asyncio.run(
            run(
                names,
                settings,
                in_memory=args.in_memory,
                order_limit=args.orders,
                generate_orders=not args.no_generate,
            )
        )
    except BusError:
        logger.exception("Bus error")
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
