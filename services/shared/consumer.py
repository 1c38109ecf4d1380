"""
Event Service Base
==================
Every saga participant is an EventService subclass. The base class owns the
plumbing that is identical across services:

  - subscribing its consumer group to the topics its handlers declare
  - decoding the envelope and the topic payload (pydantic)
  - dropping malformed messages with an ERROR log instead of crashing
  - optional duplicate suppression by event id
  - emit(): wrapping a payload in a fresh envelope and publishing it

Subclasses only write the business reaction:

    class PaymentProcessor(EventService):
        name = "payment-service"

        @handles(Topic.ORDER_CREATED)
        async def on_order_created(self, order: OrderCreatedPayload) -> None:
            ...
"""
from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, ClassVar

from pydantic import BaseModel, ValidationError

from shared.bus import EventBus, Message
from shared.config import PARTITION_KEY_ORDER_ID, Settings
from shared.events import EventEnvelope, Topic
from shared.idempotency import ProcessedEvents
from shared.logger import get_logger

logger = get_logger(__name__)

Handler = Callable[[Any, BaseModel], Awaitable[None]]


class MalformedMessageError(ValueError):
    """The raw message could not be decoded into an envelope or its topic payload."""

    def __init__(self, message: Message, reason: str):
        self.topic = message.topic
        self.partition = message.partition
        self.offset = message.offset
        super().__init__(
            f"Malformed message on {message.topic}[{message.partition}]@{message.offset}: {reason}"
        )


def handles(*topics: Topic) -> Callable[[Handler], Handler]:
    """Mark a coroutine method as the handler for one or more topics."""
    def decorator(fn: Handler) -> Handler:
        fn._handles_topics = topics  # type: ignore[attr-defined]
        return fn
    return decorator


def decode_message(message: Message) -> tuple[EventEnvelope, BaseModel]:
    try:
        envelope = EventEnvelope.from_bytes(message.value)
    except (ValidationError, json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedMessageError(message, f"invalid envelope: {e}") from e

    if envelope.topic.value != message.topic:
        raise MalformedMessageError(
            message, f"envelope topic {envelope.topic.value!r} does not match delivery topic"
        )
    try:
        payload = envelope.decode_payload()
    except ValidationError as e:
        raise MalformedMessageError(message, f"invalid {message.topic} payload: {e}") from e
    return envelope, payload


class EventService:
    name: ClassVar[str] = "event-service"
    _handlers: ClassVar[dict[Topic, str]] = {}

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        handlers: dict[Topic, str] = {}
        for klass in reversed(cls.__mro__):
            for attr, value in vars(klass).items():
                for topic in getattr(value, "_handles_topics", ()):
                    handlers[topic] = attr
        cls._handlers = handlers

    def __init__(self, bus: EventBus, settings: Settings | None = None) -> None:
        self.bus = bus
        self.settings = settings or Settings()
        self.processed = ProcessedEvents() if self.settings.dedupe_events else None
        self.malformed_count = 0

    @property
    def consumer_group(self) -> str:
        return f"{self.name}-group"

    @property
    def topics(self) -> tuple[Topic, ...]:
        return tuple(self._handlers)

    # ---------------------------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------------------------

    async def start(self) -> None:
        """Subscribe and begin consuming. The bus must already be connected."""
        if self.topics:
            await self.bus.subscribe(self.consumer_group, [t.value for t in self.topics])
            self.bus.on_message(self.dispatch)
            await self.bus.start()
        logger.info(
            "Service started",
            extra={"service": self.name, "topics": [t.value for t in self.topics]},
        )

    async def stop(self) -> None:
        logger.info("Service stopping", extra={"service": self.name})

    # ---------------------------------------------------------------------------
    # Inbound
    # ---------------------------------------------------------------------------

    async def dispatch(self, message: Message) -> None:
        """
        Bus entry point, called once per delivered message.

        Malformed messages are logged and swallowed here so the partition keeps
        moving. Anything a handler raises propagates to the bus, whose retry
        policy decides what happens next.
        """
        try:
            envelope, payload = decode_message(message)
        except MalformedMessageError as e:
            self.malformed_count += 1
            logger.error(
                "Dropping malformed message",
                extra={
                    "service": self.name,
                    "topic": e.topic,
                    "partition": e.partition,
                    "offset": e.offset,
                    "error": str(e),
                },
            )
            return

        attr = self._handlers.get(envelope.topic)
        if attr is None:
            logger.debug(
                "No handler for topic", extra={"service": self.name, "topic": message.topic}
            )
            return

        if self.processed is not None and not self.processed.claim(envelope.event_id):
            return

        try:
            await getattr(self, attr)(payload)
        except Exception:
            if self.processed is not None:
                self.processed.release(envelope.event_id)
            logger.exception(
                "Handler error",
                extra={
                    "service": self.name,
                    "topic": message.topic,
                    "event_id": envelope.event_id,
                    "order_id": envelope.order_id,
                },
            )
            raise

        if self.processed is not None:
            self.processed.complete(envelope.event_id)

    # ---------------------------------------------------------------------------
    # Outbound
    # ---------------------------------------------------------------------------

    async def emit(self, topic: Topic, payload: BaseModel) -> str:
        """
        Publish payload on topic inside a fresh envelope; return the event id.

        The partition key is the new event id unless PARTITION_KEY=order_id,
        in which case every event about one order lands on one partition.
        """
        envelope = EventEnvelope.wrap(topic, payload, source_service=self.name)
        key = envelope.event_id
        if self.settings.partition_key == PARTITION_KEY_ORDER_ID and envelope.order_id:
            key = envelope.order_id

        message_id = await self.bus.publish(topic.value, key, envelope.to_bytes())
        logger.info(
            "Event published",
            extra={
                "service": self.name,
                "topic": topic.value,
                "event_id": envelope.event_id,
                "order_id": envelope.order_id,
                "message_id": message_id,
            },
        )
        return envelope.event_id
