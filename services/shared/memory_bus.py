"""
In-memory event bus.

InMemoryBroker plays the part of the Kafka cluster: partitioned append-only
topic logs, consumer groups, per-partition ordered delivery. Each service gets
its own InMemoryEventBus client bound to the shared broker, exactly as each
service would get its own Kafka client.

Suitable for tests and for running the whole saga in one process
(`orderflow all --in-memory`). Nothing is persisted.
"""
from __future__ import annotations

import asyncio
import itertools
import zlib
from collections import defaultdict
from typing import Iterable

from shared.bus import (
    BusNotConnectedError,
    EventBus,
    Message,
    MessageHandler,
    PartitionDispatcher,
    format_message_id,
)
from shared.config import BusConfig
from shared.logger import get_logger

logger = get_logger(__name__)


class InMemoryBroker:
    def __init__(self, config: BusConfig | None = None) -> None:
        self.config = config or BusConfig(retries=0, initial_retry_ms=0)
        self._logs: dict[str, list[Message]] = defaultdict(list)
        self._ordered: list[Message] = []
        self._next_offset: dict[tuple[str, int], int] = defaultdict(int)
        self._round_robin = itertools.count()
        # group -> (topics, dispatcher)
        self._groups: dict[str, tuple[frozenset[str], PartitionDispatcher]] = {}
        self._pending = 0
        self._idle = asyncio.Event()
        self._idle.set()

    # -- topic log ----------------------------------------------------------

    def partition_for(self, key: str | None) -> int:
        partitions = max(self.config.partitions, 1)
        if key is None:
            return next(self._round_robin) % partitions
        return zlib.crc32(key.encode("utf-8")) % partitions

    def append(self, topic: str, key: str | None, value: bytes) -> Message:
        partition = self.partition_for(key)
        offset = self._next_offset[(topic, partition)]
        self._next_offset[(topic, partition)] = offset + 1
        message = Message(topic=topic, partition=partition, offset=offset, key=key, value=value)
        self._logs[topic].append(message)
        self._ordered.append(message)
        self._fan_out(message)
        return message

    def messages(self, topic: str | None = None) -> list[Message]:
        """Everything ever published, in publish order (optionally one topic)."""
        if topic is not None:
            return list(self._logs.get(topic, []))
        return list(self._ordered)

    def redeliver(self, message: Message) -> None:
        """Deliver an already-published message again (at-least-once duplicates)."""
        self._fan_out(message)

    # -- consumer groups ----------------------------------------------------

    def register_group(self, group: str, topics: Iterable[str], handler: MessageHandler) -> None:
        if group in self._groups:
            raise ValueError(f"Consumer group {group!r} already has an active member")
        dispatcher = PartitionDispatcher(handler, self.config, on_done=self._message_done)
        subscribed = frozenset(topics)
        self._groups[group] = (subscribed, dispatcher)
        logger.info("Consumer group joined", extra={"group": group, "topics": sorted(subscribed)})

    async def unregister_group(self, group: str) -> None:
        entry = self._groups.pop(group, None)
        if entry is not None:
            await entry[1].close()

    def _fan_out(self, message: Message) -> None:
        for topics, dispatcher in self._groups.values():
            if message.topic in topics:
                self._pending += 1
                self._idle.clear()
                dispatcher.submit(message)

    def _message_done(self, _message: Message) -> None:
        self._pending -= 1
        if self._pending <= 0:
            self._pending = 0
            self._idle.set()

    async def wait_until_idle(self, timeout: float | None = 10.0) -> None:
        """
        Wait until every delivered message has been handled.

        Handlers publish their outcome before they return, so the pending
        count never touches zero while a saga is still moving.
        """
        await asyncio.wait_for(self._idle.wait(), timeout)

    async def close(self) -> None:
        for group in list(self._groups):
            await self.unregister_group(group)


class InMemoryEventBus(EventBus):
    def __init__(self, broker: InMemoryBroker) -> None:
        self._broker = broker
        self._connected = False
        self._group: str | None = None
        self._topics: tuple[str, ...] = ()
        self._handler: MessageHandler | None = None
        self._started = False

    @property
    def broker(self) -> InMemoryBroker:
        return self._broker

    async def connect(self) -> None:
        self._connected = True

    async def close(self) -> None:
        if self._started and self._group is not None:
            await self._broker.unregister_group(self._group)
        self._started = False
        self._connected = False

    async def publish(self, topic: str, key: str | None, payload: bytes) -> str:
        if not self._connected:
            raise BusNotConnectedError("publish() called before connect()")
        message = self._broker.append(topic, key, payload)
        return format_message_id(message.topic, message.partition, message.offset)

    async def subscribe(self, consumer_group: str, topics: Iterable[str]) -> None:
        if not self._connected:
            raise BusNotConnectedError("subscribe() called before connect()")
        self._group = consumer_group
        self._topics = tuple(topics)

    def on_message(self, handler: MessageHandler) -> None:
        self._handler = handler

    async def start(self) -> None:
        if self._group is None or self._handler is None:
            raise BusNotConnectedError("start() needs subscribe() and on_message() first")
        self._broker.register_group(self._group, self._topics, self._handler)
        self._started = True
