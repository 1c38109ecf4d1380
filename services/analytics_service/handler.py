"""
Analytics Aggregator
====================
Subscribes to every topic and folds each event into AnalyticsState. It has
no write path back into the saga.

  order-created              total orders + 1
  order-completed            successful orders + 1
  order-failed               failed orders + 1
  payment-processed SUCCESS  revenue, average order value, payment success
                             rate, product popularity
  notification-sent          sent / failed counters
  inventory / shipping       observed, no counter

Reports go to the log every METRICS_INTERVAL_SECONDS and every
METRICS_EVERY_N_EVENTS qualifying events (order-created and notifications
that were SENT).
"""
from __future__ import annotations

import asyncio
from collections import deque

from shared.consumer import EventService, handles
from shared.events import (
    InventoryUpdatedPayload,
    NotificationSentPayload,
    NotificationStatus,
    OrderCompletedPayload,
    OrderCreatedPayload,
    OrderFailedPayload,
    OutcomeStatus,
    PaymentProcessedPayload,
    ShippingPreparedPayload,
    Topic,
)
from shared.logger import get_logger

from .metrics import AnalyticsState, MetricsSnapshot

logger = get_logger(__name__)


class AnalyticsAggregator(EventService):
    name = "analytics-service"

    def __init__(self, bus, settings=None, state: AnalyticsState | None = None) -> None:
        super().__init__(bus, settings)
        self.state = state or AnalyticsState()
        self.reports: deque[MetricsSnapshot] = deque(maxlen=100)
        self._qualifying_events = 0
        self._reporter: asyncio.Task[None] | None = None

    # ---------------------------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------------------------

    async def start(self) -> None:
        await super().start()
        self._reporter = asyncio.create_task(self._report_periodically(), name="analytics-reporter")

    async def stop(self) -> None:
        if self._reporter is not None:
            self._reporter.cancel()
            await asyncio.gather(self._reporter, return_exceptions=True)
            self._reporter = None
        self.report()
        await super().stop()

    async def _report_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.settings.metrics_interval_seconds)
            self.report()

    # ---------------------------------------------------------------------------
    # Counters
    # ---------------------------------------------------------------------------

    @handles(Topic.ORDER_CREATED)
    async def on_order_created(self, event: OrderCreatedPayload) -> None:
        self.state.record_order_created()
        self._count_qualifying()

    @handles(Topic.ORDER_COMPLETED)
    async def on_order_completed(self, event: OrderCompletedPayload) -> None:
        self.state.record_order_completed()

    @handles(Topic.ORDER_FAILED)
    async def on_order_failed(self, event: OrderFailedPayload) -> None:
        self.state.record_order_failed()

    @handles(Topic.PAYMENT_PROCESSED)
    async def on_payment_processed(self, event: PaymentProcessedPayload) -> None:
        if event.status is OutcomeStatus.SUCCESS:
            self.state.record_successful_payment(
                event.amount_cents, [item.product_id for item in event.items]
            )

    @handles(Topic.INVENTORY_UPDATED, Topic.SHIPPING_PREPARED)
    async def on_stage_observed(self, event: InventoryUpdatedPayload | ShippingPreparedPayload) -> None:
        logger.debug("Stage observed", extra={"order_id": event.order_id, "status": event.status.value})

    @handles(Topic.NOTIFICATION_SENT)
    async def on_notification_sent(self, event: NotificationSentPayload) -> None:
        sent = event.status is NotificationStatus.SENT
        self.state.record_notification(sent)
        if sent:
            self._count_qualifying()

    def _count_qualifying(self) -> None:
        self._qualifying_events += 1
        if self._qualifying_events % self.settings.metrics_every_n_events == 0:
            self.report()

    # ---------------------------------------------------------------------------
    # Reporting
    # ---------------------------------------------------------------------------

    def report(self) -> MetricsSnapshot:
        snapshot = self.state.snapshot()
        self.reports.append(snapshot)
        logger.info(
            "Current analytics metrics",
            extra={
                "total_orders": snapshot.total_orders,
                "successful_orders": snapshot.successful_orders,
                "failed_orders": snapshot.failed_orders,
                "total_revenue": f"{snapshot.total_revenue_cents / 100:.2f}",
                "average_order_value": f"{snapshot.average_order_value_cents / 100:.2f}",
                "payment_success_rate": f"{snapshot.payment_success_rate * 100:.2f}%",
                "notifications_sent": snapshot.notifications_sent,
                "notifications_failed": snapshot.notifications_failed,
            },
        )
        for rank, product in enumerate(snapshot.top_products, start=1):
            logger.info(
                "%d. Product %s: %d orders", rank, product.product_id, product.count,
                extra={"rank": rank, "product_id": product.product_id, "count": product.count},
            )
        return snapshot
