"""
OrderFlow Event Schemas
=======================
All inter-service events are defined here as Pydantic models.
Every service imports the same models, so a producer and its consumers can
never disagree about what a topic carries.

Design note: events are immutable facts ("payment-processed") not commands
("process-payment"). No service keeps a mutable Order record; an order's
status is whatever the event log says it is (see derive_order_statuses).
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Domain enums
# ---------------------------------------------------------------------------

class Topic(str, Enum):
    ORDER_CREATED = "order-created"
    PAYMENT_PROCESSED = "payment-processed"
    INVENTORY_UPDATED = "inventory-updated"
    SHIPPING_PREPARED = "shipping-prepared"
    ORDER_COMPLETED = "order-completed"
    ORDER_FAILED = "order-failed"
    NOTIFICATION_SENT = "notification-sent"


class OutcomeStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class OrderStatus(str, Enum):
    CREATED = "CREATED"
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    INVENTORY_SUCCEEDED = "INVENTORY_SUCCEEDED"
    INVENTORY_FAILED = "INVENTORY_FAILED"
    SHIPPING_SUCCEEDED = "SHIPPING_SUCCEEDED"
    SHIPPING_FAILED = "SHIPPING_FAILED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.COMPLETED, OrderStatus.FAILED)


class NotificationType(str, Enum):
    PAYMENT_CONFIRMATION = "PAYMENT_CONFIRMATION"
    SHIPPING_CONFIRMATION = "SHIPPING_CONFIRMATION"
    ORDER_COMPLETED = "ORDER_COMPLETED"
    ORDER_FAILED = "ORDER_FAILED"


class NotificationStatus(str, Enum):
    SENT = "SENT"
    FAILED = "FAILED"


class Channel(str, Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"


# ---------------------------------------------------------------------------
# Order data
# ---------------------------------------------------------------------------

class _Model(BaseModel):
    # Producers may add fields; consumers only read what they know about.
    model_config = ConfigDict(extra="ignore")


class Address(_Model):
    street: str
    city: str
    state: str = ""
    zip_code: str = ""
    country: str = ""


class Customer(_Model):
    customer_id: str
    name: str
    email: str | None = None
    phone: str | None = None
    address: Address | None = None


class LineItem(_Model):
    product_id: str
    name: str = ""
    unit_price_cents: int = Field(ge=0)  # always use integers for money, never floats
    quantity: int = Field(gt=0)

    @property
    def total_cents(self) -> int:
        return self.quantity * self.unit_price_cents


class Order(_Model):
    """
    An order as it exists at creation time.

    Frozen: nothing downstream may change it. Later stages publish new facts
    about the order instead.
    """
    model_config = ConfigDict(extra="ignore", frozen=True)

    order_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    customer: Customer
    items: list[LineItem] = Field(min_length=1)
    total_cents: int = Field(ge=0)
    status: OrderStatus = OrderStatus.CREATED
    created_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _total_matches_items(self) -> "Order":
        expected = sum(item.total_cents for item in self.items)
        if self.total_cents != expected:
            raise ValueError(
                f"total_cents {self.total_cents} does not match line items ({expected})"
            )
        return self

    @classmethod
    def create(cls, customer: Customer, items: list[LineItem], **kwargs: Any) -> "Order":
        return cls(
            customer=customer,
            items=items,
            total_cents=sum(item.total_cents for item in items),
            **kwargs,
        )


# ---------------------------------------------------------------------------
# Topic payloads
# ---------------------------------------------------------------------------

class OrderCreatedPayload(Order):
    pass


class PaymentProcessedPayload(_Model):
    order_id: str
    status: OutcomeStatus
    provider: str
    transaction_id: str
    amount_cents: int = Field(ge=0)
    currency: str = "EUR"
    items: list[LineItem] = Field(default_factory=list)
    customer: Customer | None = None
    processed_at: datetime = Field(default_factory=_utcnow)


class InventoryUpdatedPayload(_Model):
    order_id: str
    status: OutcomeStatus
    items: list[LineItem] = Field(default_factory=list)
    customer: Customer | None = None
    reason: str | None = None


class ShippingPreparedPayload(_Model):
    order_id: str
    status: OutcomeStatus
    tracking_number: str | None = None
    carrier: str | None = None
    estimated_delivery: datetime | None = None
    address: Address | None = None
    customer: Customer | None = None
    reason: str | None = None


class OrderCompletedPayload(_Model):
    order_id: str
    status: OrderStatus = OrderStatus.COMPLETED
    completed_at: datetime = Field(default_factory=_utcnow)


class OrderFailedPayload(_Model):
    order_id: str
    reason: str
    status: OrderStatus = OrderStatus.FAILED


class NotificationSentPayload(_Model):
    order_id: str
    notification_type: NotificationType
    recipient: str
    channel: Channel
    status: NotificationStatus
    sent_at: datetime = Field(default_factory=_utcnow)
    tracking_number: str | None = None
    carrier: str | None = None
    reason: str | None = None


TOPIC_PAYLOADS: dict[Topic, type[_Model]] = {
    Topic.ORDER_CREATED: OrderCreatedPayload,
    Topic.PAYMENT_PROCESSED: PaymentProcessedPayload,
    Topic.INVENTORY_UPDATED: InventoryUpdatedPayload,
    Topic.SHIPPING_PREPARED: ShippingPreparedPayload,
    Topic.ORDER_COMPLETED: OrderCompletedPayload,
    Topic.ORDER_FAILED: OrderFailedPayload,
    Topic.NOTIFICATION_SENT: NotificationSentPayload,
}


# ---------------------------------------------------------------------------
# Event envelope
# ---------------------------------------------------------------------------

class EventEnvelope(BaseModel):
    """
    Every message on the bus is wrapped in this envelope.

    event_id is generated per emission and is unrelated to the order id:
    two events about the same order never share an event_id, and a
    redelivered message keeps the event_id it was published with.
    """
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    topic: Topic
    emitted_at: datetime = Field(default_factory=_utcnow)
    source_service: str
    payload: dict[str, Any]

    @classmethod
    def wrap(cls, topic: Topic, payload: BaseModel, source_service: str) -> "EventEnvelope":
        return cls(
            topic=topic,
            source_service=source_service,
            payload=payload.model_dump(mode="json"),
        )

    @property
    def order_id(self) -> str | None:
        return self.payload.get("order_id")

    def decode_payload(self) -> _Model:
        """Validate the payload against the model registered for this topic."""
        return TOPIC_PAYLOADS[self.topic].model_validate(self.payload)

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes | str) -> "EventEnvelope":
        return cls.model_validate_json(raw)


# ---------------------------------------------------------------------------
# Status derivation
# ---------------------------------------------------------------------------

_STAGE_STATUS = {
    Topic.PAYMENT_PROCESSED: (OrderStatus.PAYMENT_SUCCEEDED, OrderStatus.PAYMENT_FAILED),
    Topic.INVENTORY_UPDATED: (OrderStatus.INVENTORY_SUCCEEDED, OrderStatus.INVENTORY_FAILED),
    Topic.SHIPPING_PREPARED: (OrderStatus.SHIPPING_SUCCEEDED, OrderStatus.SHIPPING_FAILED),
}


def derive_order_statuses(envelopes: Iterable[EventEnvelope]) -> dict[str, OrderStatus]:
    """
    Rebuild the latest lifecycle status of every order from the event log.

    Events may arrive out of order across topics, so a terminal status is
    sticky: a late stage event never moves an order out of COMPLETED/FAILED.
    Notifications carry no lifecycle information and are skipped.
    """
    statuses: dict[str, OrderStatus] = {}
    for envelope in envelopes:
        order_id = envelope.order_id
        if not order_id:
            continue
        current = statuses.get(order_id)
        if current is not None and current.is_terminal:
            continue

        if envelope.topic is Topic.ORDER_CREATED:
            statuses.setdefault(order_id, OrderStatus.CREATED)
        elif envelope.topic is Topic.ORDER_COMPLETED:
            statuses[order_id] = OrderStatus.COMPLETED
        elif envelope.topic is Topic.ORDER_FAILED:
            statuses[order_id] = OrderStatus.FAILED
        elif envelope.topic in _STAGE_STATUS:
            succeeded, failed = _STAGE_STATUS[envelope.topic]
            ok = envelope.payload.get("status") == OutcomeStatus.SUCCESS.value
            statuses[order_id] = succeeded if ok else failed
    return statuses

