"""
Order Lifecycle Coordinator
===========================
The only service allowed to declare an order finished. It originates orders
(order-created) and watches the three stage outcomes:

  payment-processed  FAILED   -> order-failed "Payment failed"
  inventory-updated  FAILED   -> order-failed "Inventory update failed"
  shipping-prepared  FAILED   -> order-failed "Shipping preparation failed"
  shipping-prepared  SUCCESS  -> order-completed
  payment / inventory SUCCESS -> nothing (the next stage is already on it)

It keeps no per-order state. Each decision is a pure function of the one
event in hand, which is why a redelivered outcome can produce a second
terminal event unless DEDUPE_EVENTS is on.

order-failed is consumed only to log it. Re-emitting it would loop forever.
"""
from __future__ import annotations

import asyncio
import random
from datetime import datetime, timezone

from shared.consumer import EventService, handles
from shared.events import (
    InventoryUpdatedPayload,
    Order,
    OrderCompletedPayload,
    OrderCreatedPayload,
    OrderFailedPayload,
    OutcomeStatus,
    PaymentProcessedPayload,
    ShippingPreparedPayload,
    Topic,
)
from shared.logger import get_logger

from .generator import generate_order

logger = get_logger(__name__)

PAYMENT_FAILED_REASON = "Payment failed"
INVENTORY_FAILED_REASON = "Inventory update failed"
SHIPPING_FAILED_REASON = "Shipping preparation failed"


class OrderCoordinator(EventService):
    name = "order-service"

    def __init__(self, bus, settings=None, rng: random.Random | None = None) -> None:
        super().__init__(bus, settings)
        self._rng = rng or random.Random(self.settings.random_seed)
        self.orders_created = 0

    # ---------------------------------------------------------------------------
    # Order origination
    # ---------------------------------------------------------------------------

    async def create_order(self, order: Order | None = None) -> Order:
        order = order or generate_order(self._rng, self.settings.inventory_catalog_size)
        logger.info(
            "Creating new order",
            extra={"order_id": order.order_id, "total_cents": order.total_cents, "items": len(order.items)},
        )
        await self.emit(Topic.ORDER_CREATED, OrderCreatedPayload(**order.model_dump()))
        self.orders_created += 1
        return order

    async def run_order_generator(self, interval: float | None = None, limit: int | None = None) -> None:
        """Publish a synthetic order every interval seconds until cancelled (or limit reached)."""
        interval = self.settings.order_interval_seconds if interval is None else interval
        created = 0
        while limit is None or created < limit:
            try:
                await self.create_order()
            except Exception:
                # One bad publish must not stop the generator
                logger.exception("Error generating order")
            created += 1
            await asyncio.sleep(interval)

    # ---------------------------------------------------------------------------
    # Stage outcomes
    # ---------------------------------------------------------------------------

    @handles(Topic.PAYMENT_PROCESSED)
    async def on_payment_processed(self, event: PaymentProcessedPayload) -> None:
        if event.status is OutcomeStatus.SUCCESS:
            logger.info("Payment successful", extra={"order_id": event.order_id})
            return
        await self._fail(event.order_id, PAYMENT_FAILED_REASON)

    @handles(Topic.INVENTORY_UPDATED)
    async def on_inventory_updated(self, event: InventoryUpdatedPayload) -> None:
        if event.status is OutcomeStatus.SUCCESS:
            logger.info("Inventory updated", extra={"order_id": event.order_id})
            return
        await self._fail(event.order_id, INVENTORY_FAILED_REASON)

    @handles(Topic.SHIPPING_PREPARED)
    async def on_shipping_prepared(self, event: ShippingPreparedPayload) -> None:
        if event.status is not OutcomeStatus.SUCCESS:
            await self._fail(event.order_id, SHIPPING_FAILED_REASON)
            return

        logger.info("Shipping prepared", extra={"order_id": event.order_id, "carrier": event.carrier})
        await self.emit(
            Topic.ORDER_COMPLETED,
            OrderCompletedPayload(order_id=event.order_id, completed_at=datetime.now(timezone.utc)),
        )

    @handles(Topic.ORDER_FAILED)
    async def on_order_failed(self, event: OrderFailedPayload) -> None:
        logger.info("Order failed", extra={"order_id": event.order_id, "reason": event.reason})

    # ---------------------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------------------

    async def _fail(self, order_id: str, reason: str) -> None:
        logger.info("Failing order", extra={"order_id": order_id, "reason": reason})
        await self.emit(Topic.ORDER_FAILED, OrderFailedPayload(order_id=order_id, reason=reason))
