"""
Rolling saga metrics.

AnalyticsState is the aggregator's only state and has exactly one writer:
the aggregator's handlers, which run on one event loop and never await in
the middle of an update. snapshot() hands out an immutable copy for
reporting, so readers never see a half-applied event.
"""
from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

TOP_PRODUCTS = 5


class ProductPopularity(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    count: int


class MetricsSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    taken_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    total_orders: int
    successful_orders: int
    failed_orders: int
    total_revenue_cents: int
    average_order_value_cents: float
    payment_success_rate: float
    notifications_sent: int
    notifications_failed: int
    top_products: list[ProductPopularity]


class TopKCounter:
    """
    Appearance counts with a ranked view.

    Every count is kept (a product outside the top K today can climb into it
    tomorrow); only the view is bounded. Ties keep first-seen order because
    dicts preserve insertion order and sorted() is stable.
    """

    def __init__(self, k: int = TOP_PRODUCTS) -> None:
        self.k = k
        self._counts: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._counts)

    def add(self, key: str, amount: int = 1) -> int:
        self._counts[key] = self._counts.get(key, 0) + amount
        return self._counts[key]

    def count(self, key: str) -> int:
        return self._counts.get(key, 0)

    def top(self, k: int | None = None) -> list[tuple[str, int]]:
        ranked = sorted(self._counts.items(), key=lambda kv: kv[1], reverse=True)
        return ranked[: self.k if k is None else k]


class AnalyticsState:
    def __init__(self, top_k: int = TOP_PRODUCTS) -> None:
        self.total_orders = 0
        self.successful_orders = 0
        self.failed_orders = 0
        self.total_revenue_cents = 0
        self.average_order_value_cents = 0.0
        self.payment_success_rate = 0.0
        self.notifications_sent = 0
        self.notifications_failed = 0
        self.products = TopKCounter(top_k)

    def record_order_created(self) -> None:
        self.total_orders += 1

    def record_order_completed(self) -> None:
        self.successful_orders += 1

    def record_order_failed(self) -> None:
        self.failed_orders += 1

    def record_successful_payment(self, amount_cents: int, product_ids: list[str]) -> None:
        self.total_revenue_cents += amount_cents
        self.average_order_value_cents = (
            self.total_revenue_cents / self.successful_orders if self.successful_orders else 0.0
        )
        finished = self.successful_orders + self.failed_orders
        self.payment_success_rate = self.successful_orders / finished if finished else 0.0
        for product_id in product_ids:
            self.products.add(product_id)

    def record_notification(self, sent: bool) -> None:
        if sent:
            self.notifications_sent += 1
        else:
            self.notifications_failed += 1

    def snapshot(self) -> MetricsSnapshot:
        return MetricsSnapshot(
            total_orders=self.total_orders,
            successful_orders=self.successful_orders,
            failed_orders=self.failed_orders,
            total_revenue_cents=self.total_revenue_cents,
            average_order_value_cents=self.average_order_value_cents,
            payment_success_rate=self.payment_success_rate,
            notifications_sent=self.notifications_sent,
            notifications_failed=self.notifications_failed,
            top_products=[
                ProductPopularity(product_id=product_id, count=count)
                for product_id, count in self.products.top()
            ],
        )
