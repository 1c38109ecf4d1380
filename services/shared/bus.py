"""
Event Bus Interface
===================
The saga only ever talks to the bus through four operations:

  publish(topic, key, payload)    -> message id
  subscribe(consumer_group, topics)
  on_message(handler)             handler(Message) once per delivery
  (delivery retry)                bounded retries with exponential backoff

Two implementations live next to this module: InMemoryEventBus for tests and
single-process demos, KafkaEventBus for real deployments.

Delivery model shared by both: one message at a time per topic-partition,
partitions in parallel. PartitionDispatcher implements that on top of
asyncio so a handler sleeping through simulated latency only holds up its
own partition.
"""
from __future__ import annotations

import abc
import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable

from shared.config import BusConfig
from shared.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Message:
    topic: str
    partition: int
    offset: int
    key: str | None
    value: bytes


MessageHandler = Callable[[Message], Awaitable[None]]


class BusError(Exception):
    """Base class for bus-level failures."""


class BusConnectionError(BusError):
    """The bus could not be reached after exhausting connection retries."""


class BusNotConnectedError(BusError):
    """An operation that needs a live connection was attempted before connect()."""


class BusConsumerError(BusError):
    """A running consumer stopped reading and will not deliver further messages."""


class EventBus(abc.ABC):
    """One client per service process: a producer plus one consumer group membership."""

    @abc.abstractmethod
    async def connect(self) -> None: ...

    @abc.abstractmethod
    async def close(self) -> None: ...

    @abc.abstractmethod
    async def publish(self, topic: str, key: str | None, payload: bytes) -> str:
        """Append payload to topic; return "<topic>:<partition>:<offset>"."""

    @abc.abstractmethod
    async def subscribe(self, consumer_group: str, topics: Iterable[str]) -> None: ...

    @abc.abstractmethod
    def on_message(self, handler: MessageHandler) -> None: ...

    @abc.abstractmethod
    async def start(self) -> None:
        """Begin delivering messages for the subscription to the handler."""

    async def __aenter__(self) -> "EventBus":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


def format_message_id(topic: str, partition: int, offset: int) -> str:
    return f"{topic}:{partition}:{offset}"


async def deliver_with_retry(handler: MessageHandler, message: Message, config: BusConfig) -> bool:
    """
    Invoke handler, retrying on exception with exponential backoff.

    Returns False when every attempt failed; the message is then dropped so
    the partition can move on.
    """
    attempts = config.retries + 1
    for attempt in range(attempts):
        try:
            await handler(message)
            return True
        except Exception:
            if attempt + 1 >= attempts:
                logger.exception(
                    "Handler failed, retries exhausted, dropping message",
                    extra={
                        "topic": message.topic,
                        "partition": message.partition,
                        "offset": message.offset,
                        "attempts": attempts,
                    },
                )
                return False
            delay = config.backoff_seconds(attempt)
            logger.warning(
                "Handler failed, retrying",
                extra={
                    "topic": message.topic,
                    "partition": message.partition,
                    "offset": message.offset,
                    "attempt": attempt + 1,
                    "retry_in_seconds": delay,
                },
            )
            await asyncio.sleep(delay)
    return False


class PartitionDispatcher:
    """
    Routes messages to one sequential worker per (topic, partition).

    Workers are created lazily on the first message for a partition and run
    until close(). on_done, if given, is called after every message
    (delivered or dropped), which the in-memory broker uses to track idleness.

    max_pending bounds each partition queue (0 means unbounded). submit()
    never waits; a reader that must not run ahead of its handlers awaits
    put() instead, which blocks while the partition queue is full.
    """

    def __init__(
        self,
        handler: MessageHandler,
        config: BusConfig,
        on_done: Callable[[Message], None] | None = None,
        max_pending: int = 0,
    ) -> None:
        self._handler = handler
        self._config = config
        self._on_done = on_done
        self._max_pending = max_pending
        self._queues: dict[tuple[str, int], asyncio.Queue[Message]] = {}
        self._workers: dict[tuple[str, int], asyncio.Task[None]] = {}
        self.delivered = 0
        self.dropped = 0

    def _queue_for(self, message: Message) -> asyncio.Queue[Message]:
        key = (message.topic, message.partition)
        queue = self._queues.get(key)
        if queue is None:
            queue = asyncio.Queue(maxsize=self._max_pending)
            self._queues[key] = queue
            self._workers[key] = asyncio.create_task(
                self._run(queue), name=f"partition-{message.topic}-{message.partition}"
            )
        return queue

    def submit(self, message: Message) -> None:
        """Queue without waiting. Raises asyncio.QueueFull on a full bounded queue."""
        self._queue_for(message).put_nowait(message)

    async def put(self, message: Message) -> None:
        await self._queue_for(message).put(message)

    def pending(self, topic: str, partition: int) -> int:
        queue = self._queues.get((topic, partition))
        return queue.qsize() if queue is not None else 0

    async def _run(self, queue: asyncio.Queue[Message]) -> None:
        while True:
            message = await queue.get()
            try:
                if await deliver_with_retry(self._handler, message, self._config):
                    self.delivered += 1
                else:
                    self.dropped += 1
            finally:
                queue.task_done()
                if self._on_done is not None:
                    self._on_done(message)

    async def join(self) -> None:
        for queue in list(self._queues.values()):
            await queue.join()

    async def close(self) -> None:
        for task in self._workers.values():
            task.cancel()
        await asyncio.gather(*self._workers.values(), return_exceptions=True)
        self._workers.clear()
        self._queues.clear()
