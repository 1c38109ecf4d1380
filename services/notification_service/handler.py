"""
Notification Dispatcher
=======================
Tells the customer about four moments in an order's life:

  payment-processed SUCCESS  -> PAYMENT_CONFIRMATION
  shipping-prepared SUCCESS  -> SHIPPING_CONFIRMATION (+ tracking number, carrier)
  order-completed            -> ORDER_COMPLETED
  order-failed               -> ORDER_FAILED (+ reason)

Sending is simulated (delay, then SENT with p_notif = 0.98 over EMAIL or
SMS) and every attempt, sent or not, is published on notification-sent.
Notifications are off the saga's critical path: nothing reacts to a failed
one except the analytics counters.

order-completed and order-failed carry no customer, so those notifications
go to the fallback recipient rather than failing.
"""
from __future__ import annotations

from datetime import datetime, timezone

from shared.consumer import EventService, handles
from shared.events import (
    Channel,
    Customer,
    NotificationSentPayload,
    NotificationStatus,
    NotificationType,
    OrderCompletedPayload,
    OrderFailedPayload,
    OutcomeStatus,
    PaymentProcessedPayload,
    ShippingPreparedPayload,
    Topic,
)
from shared.logger import get_logger
from shared.simulation import Simulation, Stage

logger = get_logger(__name__)

FALLBACK_RECIPIENT = "unknown@example.com"


class NotificationDispatcher(EventService):
    name = "notification-service"

    def __init__(self, bus, settings=None, simulation: Simulation | None = None) -> None:
        super().__init__(bus, settings)
        self.simulation = simulation or Simulation.from_settings(self.settings)

    # ---------------------------------------------------------------------------
    # Occasions
    # ---------------------------------------------------------------------------

    @handles(Topic.PAYMENT_PROCESSED)
    async def on_payment_processed(self, event: PaymentProcessedPayload) -> None:
        if event.status is OutcomeStatus.SUCCESS:
            await self._notify(NotificationType.PAYMENT_CONFIRMATION, event.order_id, event.customer)

    @handles(Topic.SHIPPING_PREPARED)
    async def on_shipping_prepared(self, event: ShippingPreparedPayload) -> None:
        if event.status is OutcomeStatus.SUCCESS:
            await self._notify(
                NotificationType.SHIPPING_CONFIRMATION,
                event.order_id,
                event.customer,
                tracking_number=event.tracking_number,
                carrier=event.carrier,
            )

    @handles(Topic.ORDER_COMPLETED)
    async def on_order_completed(self, event: OrderCompletedPayload) -> None:
        await self._notify(NotificationType.ORDER_COMPLETED, event.order_id, None)

    @handles(Topic.ORDER_FAILED)
    async def on_order_failed(self, event: OrderFailedPayload) -> None:
        await self._notify(NotificationType.ORDER_FAILED, event.order_id, None, reason=event.reason)

    # ---------------------------------------------------------------------------
    # Sending
    # ---------------------------------------------------------------------------

    async def send_notification(
        self, notification_type: NotificationType, order_id: str, customer: Customer | None, **extras
    ) -> NotificationSentPayload:
        await self.simulation.latency.wait(Stage.NOTIFICATION)
        sent = self.simulation.outcomes.succeeds(Stage.NOTIFICATION)
        channel = Channel.EMAIL if self.simulation.rng.random() > 0.5 else Channel.SMS
        return NotificationSentPayload(
            order_id=order_id,
            notification_type=notification_type,
            recipient=recipient_for(customer),
            channel=channel,
            status=NotificationStatus.SENT if sent else NotificationStatus.FAILED,
            sent_at=datetime.now(timezone.utc),
            **extras,
        )

    async def _notify(
        self, notification_type: NotificationType, order_id: str, customer: Customer | None, **extras
    ) -> None:
        logger.info(
            "Sending notification",
            extra={"order_id": order_id, "notification_type": notification_type.value},
        )
        result = await self.send_notification(notification_type, order_id, customer, **extras)
        await self.emit(Topic.NOTIFICATION_SENT, result)
        logger.info(
            "Notification %s", result.status.value.lower(),
            extra={
                "order_id": order_id,
                "notification_type": notification_type.value,
                "channel": result.channel.value,
                "recipient": result.recipient,
            },
        )


def recipient_for(customer: Customer | None) -> str:
    if customer is not None and customer.email:
        return customer.email
    return FALLBACK_RECIPIENT
