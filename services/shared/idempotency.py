"""
Idempotent Consumption
======================
The bus delivers at-least-once. A redelivered payment-processed FAILED event
makes the coordinator publish a second order-failed, and a redelivered
inventory event decrements stock twice.

ProcessedEvents remembers the event ids a service has handled so a
redelivery of the same envelope can be skipped. It lives in process memory
(the event log is the only durable store in this system), so it protects
against redelivery within one process lifetime, not across restarts.

Each key moves through two states:
  - On first receipt: claim(key) marks it IN_FLIGHT
  - On success: complete(key) marks it COMPLETE until the TTL expires
  - On failure: release(key) forgets it so the bus retry can run it again
"""
from __future__ import annotations

import time
from collections import OrderedDict
from enum import Enum
from typing import Callable

from shared.logger import get_logger

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60
DEFAULT_MAX_ENTRIES = 100_000


class _State(str, Enum):
    IN_FLIGHT = "IN_FLIGHT"
    COMPLETE = "COMPLETE"


class IdempotencyError(Exception):
    """Raised when an idempotency record is in an unexpected state."""


class IdempotencyAlreadyInProgressError(IdempotencyError):
    """Another delivery of the same event is currently being handled."""


class ProcessedEvents:
    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        # key -> (state, expires_at); insertion order doubles as age order
        self._records: OrderedDict[str, tuple[_State, float]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._records)

    def claim(self, key: str) -> bool:
        """
        Claim key for processing.

        Returns False when the key was already processed (caller should skip
        the message), True when the caller now owns it.
        """
        self._evict_expired()
        record = self._records.get(key)
        if record is not None:
            state, _ = record
            if state is _State.COMPLETE:
                logger.info("Duplicate delivery skipped", extra={"event_id": key})
                return False
            raise IdempotencyAlreadyInProgressError(
                f"Event {key!r} is already being processed"
            )

        self._records[key] = (_State.IN_FLIGHT, self._clock() + self._ttl)
        while len(self._records) > self._max_entries:
            self._records.popitem(last=False)
        return True

    def complete(self, key: str) -> None:
        if key not in self._records:
            raise IdempotencyError(f"complete() for unclaimed event {key!r}")
        self._records[key] = (_State.COMPLETE, self._clock() + self._ttl)

    def release(self, key: str) -> None:
        self._records.pop(key, None)

    def _evict_expired(self) -> None:
        now = self._clock()
        while self._records:
            key, (_, expires_at) = next(iter(self._records.items()))
            if expires_at > now:
                break
            self._records.popitem(last=False)
