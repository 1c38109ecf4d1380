"""
Kafka event bus (aiokafka).

One producer and one consumer per service process. The consumer loop only
reads; handling happens in PartitionDispatcher workers so a slow message on
one partition does not stall the others. Offsets are committed per partition
after the handler has finished with a message (delivered or dropped), which
gives at-least-once delivery across restarts.

The read loop awaits room in the partition queue (BusConfig.max_pending) so
it cannot run far ahead of a slow handler. If the loop dies, the error is
logged and on_fatal is called so the process can shut down instead of
sitting idle with no consumer.
"""
from __future__ import annotations

import asyncio
from typing import Callable, Iterable

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from aiokafka.errors import KafkaError

from shared.bus import (
    BusConnectionError,
    BusConsumerError,
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


class KafkaEventBus(EventBus):
    def __init__(
        self,
        config: BusConfig,
        service_name: str = "orderflow",
        on_fatal: Callable[[BaseException], None] | None = None,
    ) -> None:
        self._config = config
        self._client_id = f"{config.client_id}-{service_name}"
        self._producer: AIOKafkaProducer | None = None
        self._consumer: AIOKafkaConsumer | None = None
        self._group: str | None = None
        self._topics: tuple[str, ...] = ()
        self._handler: MessageHandler | None = None
        self._dispatcher: PartitionDispatcher | None = None
        self._consume_task: asyncio.Task[None] | None = None
        self._commit_tasks: set[asyncio.Task[None]] = set()
        self._on_fatal = on_fatal

    # ---------------------------------------------------------------------------
    # Connection lifecycle
    # ---------------------------------------------------------------------------

    async def connect(self) -> None:
        if self._producer is not None:
            return

        async def _start_producer() -> AIOKafkaProducer:
            producer = AIOKafkaProducer(
                bootstrap_servers=self._config.bootstrap_servers,
                client_id=self._client_id,
                acks="all",
            )
            try:
                await producer.start()
            except BaseException:
                await producer.stop()
                raise
            return producer

        self._producer = await self._with_retries("producer", _start_producer)
        logger.info(
            "Producer connected",
            extra={"bootstrap_servers": self._config.bootstrap_servers, "client_id": self._client_id},
        )

    async def _with_retries(self, what: str, start):
        attempts = self._config.retries + 1
        for attempt in range(attempts):
            try:
                return await start()
            except KafkaError as e:
                if attempt + 1 >= attempts:
                    raise BusConnectionError(
                        f"Could not start Kafka {what} at {self._config.bootstrap_servers} "
                        f"after {attempts} attempts: {e}"
                    ) from e
                delay = self._config.backoff_seconds(attempt)
                logger.warning(
                    "Kafka %s not reachable, retrying", what,
                    extra={"attempt": attempt + 1, "retry_in_seconds": delay, "error": str(e)},
                )
                await asyncio.sleep(delay)

    async def close(self) -> None:
        if self._consume_task is not None:
            self._consume_task.cancel()
            await asyncio.gather(self._consume_task, return_exceptions=True)
            self._consume_task = None
        if self._dispatcher is not None:
            await self._dispatcher.close()
            self._dispatcher = None
        if self._commit_tasks:
            await asyncio.gather(*self._commit_tasks, return_exceptions=True)
        if self._consumer is not None:
            try:
                await self._consumer.stop()
            except KafkaError as e:
                logger.warning("Error stopping consumer: %s", e)
            self._consumer = None
        if self._producer is not None:
            try:
                await self._producer.stop()
            except KafkaError as e:
                logger.warning("Error stopping producer: %s", e)
            self._producer = None
        logger.info("Disconnected from Kafka")

    # ---------------------------------------------------------------------------
    # Publish / subscribe
    # ---------------------------------------------------------------------------

    async def publish(self, topic: str, key: str | None, payload: bytes) -> str:
        if self._producer is None:
            raise BusNotConnectedError("publish() called before connect()")
        metadata = await self._producer.send_and_wait(
            topic,
            value=payload,
            key=key.encode("utf-8") if key is not None else None,
        )
        return format_message_id(topic, metadata.partition, metadata.offset)

    async def subscribe(self, consumer_group: str, topics: Iterable[str]) -> None:
        if self._producer is None:
            raise BusNotConnectedError("subscribe() called before connect()")
        self._group = consumer_group
        self._topics = tuple(topics)

    def on_message(self, handler: MessageHandler) -> None:
        self._handler = handler

    async def start(self) -> None:
        if self._group is None or self._handler is None:
            raise BusNotConnectedError("start() needs subscribe() and on_message() first")

        async def _start_consumer() -> AIOKafkaConsumer:
            consumer = AIOKafkaConsumer(
                *self._topics,
                bootstrap_servers=self._config.bootstrap_servers,
                client_id=self._client_id,
                group_id=self._group,
                auto_offset_reset="latest",
                enable_auto_commit=False,
            )
            try:
                await consumer.start()
            except BaseException:
                await consumer.stop()
                raise
            return consumer

        self._consumer = await self._with_retries("consumer", _start_consumer)
        self._dispatcher = PartitionDispatcher(
            self._handler, self._config, on_done=self._commit, max_pending=self._config.max_pending
        )
        self._start_consuming()
        logger.info("Subscribed", extra={"group": self._group, "topics": list(self._topics)})

    def _start_consuming(self) -> None:
        self._consume_task = asyncio.create_task(self._consume(), name=f"consume-{self._group}")
        self._consume_task.add_done_callback(self._consume_done)

    async def _consume(self) -> None:
        consumer, dispatcher = self._consumer, self._dispatcher
        if consumer is None or dispatcher is None:
            raise BusNotConnectedError("consume loop started before start()")
        async for record in consumer:
            await dispatcher.put(
                Message(
                    topic=record.topic,
                    partition=record.partition,
                    offset=record.offset,
                    key=record.key.decode("utf-8") if record.key is not None else None,
                    value=record.value,
                )
            )
        raise BusConsumerError(f"Consumer for group {self._group} stopped returning records")

    def _consume_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        logger.error(
            "Consumer loop stopped",
            exc_info=exc,
            extra={"group": self._group, "topics": list(self._topics)},
        )
        if self._on_fatal is not None:
            self._on_fatal(exc)

    def _commit(self, message: Message) -> None:
        if self._consumer is None:
            return
        task = asyncio.create_task(self._commit_offset(message))
        self._commit_tasks.add(task)
        task.add_done_callback(self._commit_tasks.discard)

    async def _commit_offset(self, message: Message) -> None:
        consumer = self._consumer
        if consumer is None:
            return
        try:
            await consumer.commit({TopicPartition(message.topic, message.partition): message.offset + 1})
        except KafkaError as e:
            # Uncommitted offsets are redelivered after a rebalance.
            logger.warning(
                "Offset commit failed",
                extra={"topic": message.topic, "partition": message.partition, "error": str(e)},
            )
