"""
Inventory Ledger
================
Product id -> remaining stock, owned by the Inventory Manager alone.

Why a lock per product:
  Handlers for different payment events run concurrently on one event loop.
  A read-modify-write that awaits between the read and the write (as any
  real store call would) lets a second order read the same stale value, and
  one of the two decrements is lost. Holding an asyncio.Lock keyed by
  product id for the whole read-modify-write makes updates to one product
  strictly sequential, while updates to different products still overlap.

Stock is allowed to go negative: the ledger records demand, it does not
enforce availability.
"""
from __future__ import annotations

import asyncio
import random
from collections import defaultdict
from typing import Awaitable, Callable, Iterable

from shared.events import LineItem
from shared.logger import get_logger

logger = get_logger(__name__)

INITIAL_STOCK_RANGE = (10, 109)
UNKNOWN_PRODUCT_STOCK_RANGE = (0, 99)


async def _yield() -> None:
    await asyncio.sleep(0)


class InventoryLedger:
    def __init__(
        self,
        stock: dict[str, int] | None = None,
        rng: random.Random | None = None,
        write_delay: Callable[[], Awaitable[None]] = _yield,
    ) -> None:
        self._stock: dict[str, int] = dict(stock or {})
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._rng = rng or random.Random()
        self._write_delay = write_delay

    @classmethod
    def seeded(cls, catalog_size: int = 50, rng: random.Random | None = None, **kwargs) -> "InventoryLedger":
        """Catalog prod-0..prod-{catalog_size-1}, each with a random starting stock."""
        rng = rng or random.Random()
        low, high = INITIAL_STOCK_RANGE
        stock = {f"prod-{i}": rng.randint(low, high) for i in range(catalog_size)}
        return cls(stock, rng=rng, **kwargs)

    def __contains__(self, product_id: str) -> bool:
        return product_id in self._stock

    def __len__(self) -> int:
        return len(self._stock)

    def stock_of(self, product_id: str) -> int | None:
        return self._stock.get(product_id)

    def snapshot(self) -> dict[str, int]:
        return dict(self._stock)

    async def adjust(self, product_id: str, delta: int) -> int:
        """
        Apply delta to one product's stock and return the new level.

        An unknown product is inserted with a synthetic starting stock
        before the delta is applied.
        """
        async with self._locks[product_id]:
            current = self._stock.get(product_id)
            if current is None:
                low, high = UNKNOWN_PRODUCT_STOCK_RANGE
                current = self._rng.randint(low, high)
                logger.info(
                    "Unknown product added to ledger",
                    extra={"product_id": product_id, "synthetic_stock": current},
                )
            await self._write_delay()
            updated = current + delta
            self._stock[product_id] = updated
            return updated

    async def decrement(self, product_id: str, quantity: int) -> int:
        if quantity <= 0:
            raise ValueError(f"quantity must be positive, got {quantity}")
        return await self.adjust(product_id, -quantity)

    async def apply_order(self, items: Iterable[LineItem]) -> dict[str, int]:
        """
        Decrement stock for every line item; return the new level per product.

        Locks are taken one product at a time, never nested, so two orders
        touching the same products in different orders cannot deadlock.
        """
        levels: dict[str, int] = {}
        for item in items:
            levels[item.product_id] = await self.decrement(item.product_id, item.quantity)
        return levels
