"""
Runtime configuration.

Every knob is an environment variable so the same image can run any of the
services; Settings.from_env() reads them once at startup and the resulting
object is passed down explicitly (nothing below the runtime reads os.environ).
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Mapping

PARTITION_KEY_EVENT_ID = "event_id"
PARTITION_KEY_ORDER_ID = "order_id"


def _bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class BusConfig:
    """Connection and delivery settings shared by every bus implementation."""

    bootstrap_servers: str = "localhost:9093"
    client_id: str = "orderflow"
    retries: int = 10
    initial_retry_ms: int = 300
    max_retry_ms: int = 30_000
    partitions: int = 3
    # Messages a consumer may read ahead of its handler, per partition
    max_pending: int = 1000

    def backoff_seconds(self, attempt: int) -> float:
        """Exponential backoff for the given 0-based retry attempt."""
        delay_ms = min(self.initial_retry_ms * (2 ** attempt), self.max_retry_ms)
        return delay_ms / 1000.0


@dataclass(frozen=True)
class Settings:
    bus: BusConfig = field(default_factory=BusConfig)
    partition_key: str = PARTITION_KEY_EVENT_ID
    dedupe_events: bool = False

    latency_scale: float = 1.0
    p_payment: float = 0.9
    p_inventory: float = 0.8
    p_shipping: float = 0.95
    p_notification: float = 0.98
    random_seed: int | None = None

    inventory_catalog_size: int = 50
    order_interval_seconds: float = 5.0
    metrics_interval_seconds: float = 30.0
    metrics_every_n_events: int = 20
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.partition_key not in (PARTITION_KEY_EVENT_ID, PARTITION_KEY_ORDER_ID):
            raise ValueError(
                f"PARTITION_KEY must be {PARTITION_KEY_EVENT_ID!r} or "
                f"{PARTITION_KEY_ORDER_ID!r}, got {self.partition_key!r}"
            )
        for name in ("p_payment", "p_inventory", "p_shipping", "p_notification"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}")
        if self.latency_scale < 0:
            raise ValueError("LATENCY_SCALE cannot be negative")
        if self.metrics_every_n_events <= 0:
            raise ValueError("METRICS_EVERY_N_EVENTS must be positive")
        if self.metrics_interval_seconds <= 0:
            raise ValueError("METRICS_INTERVAL_SECONDS must be positive")
        if self.order_interval_seconds <= 0:
            raise ValueError("ORDER_INTERVAL_SECONDS must be positive")
        if self.bus.max_pending <= 0:
            raise ValueError("BUS_MAX_PENDING must be positive")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        seed = env.get("RANDOM_SEED")
        return cls(
            bus=BusConfig(
                bootstrap_servers=env.get("KAFKA_BOOTSTRAP_SERVERS", "localhost:9093"),
                client_id=env.get("KAFKA_CLIENT_ID", "orderflow"),
                retries=int(env.get("BUS_RETRIES", "10")),
                initial_retry_ms=int(env.get("BUS_INITIAL_RETRY_MS", "300")),
                partitions=int(env.get("BUS_PARTITIONS", "3")),
                max_pending=int(env.get("BUS_MAX_PENDING", "1000")),
            ),
            partition_key=env.get("PARTITION_KEY", PARTITION_KEY_EVENT_ID),
            dedupe_events=_bool(env.get("DEDUPE_EVENTS", "false")),
            latency_scale=float(env.get("LATENCY_SCALE", "1.0")),
            p_payment=float(env.get("P_PAYMENT", "0.9")),
            p_inventory=float(env.get("P_INVENTORY", "0.8")),
            p_shipping=float(env.get("P_SHIPPING", "0.95")),
            p_notification=float(env.get("P_NOTIFICATION", "0.98")),
            random_seed=int(seed) if seed else None,
            inventory_catalog_size=int(env.get("INVENTORY_CATALOG_SIZE", "50")),
            order_interval_seconds=float(env.get("ORDER_INTERVAL_SECONDS", "5")),
            metrics_interval_seconds=float(env.get("METRICS_INTERVAL_SECONDS", "30")),
            metrics_every_n_events=int(env.get("METRICS_EVERY_N_EVENTS", "20")),
            log_level=env.get("LOG_LEVEL", "INFO"),
        )

    def with_overrides(self, **changes) -> "Settings":
        return replace(self, **changes)
