"""
Inventory Manager
=================
Consumes payment-processed and, for successful payments only, updates the
InventoryLedger and publishes inventory-updated.

  SUCCESS (p_inv, 0.8 by default) -> every line item decremented, then
                                     inventory-updated SUCCESS
  FAILED                          -> ledger untouched, inventory-updated
                                     FAILED "Inventory update failed"

Failed payments are ignored here; the coordinator already ends those orders.
"""
from __future__ import annotations

from shared.consumer import EventService, handles
from shared.events import InventoryUpdatedPayload, OutcomeStatus, PaymentProcessedPayload, Topic
from shared.logger import get_logger
from shared.simulation import Simulation, Stage

from .ledger import InventoryLedger

logger = get_logger(__name__)

INVENTORY_FAILED_REASON = "Inventory update failed"


class InventoryManager(EventService):
    name = "inventory-service"

    def __init__(
        self,
        bus,
        settings=None,
        simulation: Simulation | None = None,
        ledger: InventoryLedger | None = None,
    ) -> None:
        super().__init__(bus, settings)
        self.simulation = simulation or Simulation.from_settings(self.settings)
        self._ledger = ledger or InventoryLedger.seeded(
            self.settings.inventory_catalog_size, rng=self.simulation.rng
        )

    def stock_of(self, product_id: str) -> int | None:
        return self._ledger.stock_of(product_id)

    def stock_snapshot(self) -> dict[str, int]:
        return self._ledger.snapshot()

    @handles(Topic.PAYMENT_PROCESSED)
    async def on_payment_processed(self, event: PaymentProcessedPayload) -> None:
        if event.status is not OutcomeStatus.SUCCESS:
            return

        logger.info("Processing inventory", extra={"order_id": event.order_id})
        await self.simulation.latency.wait(Stage.INVENTORY)

        if self.simulation.outcomes.succeeds(Stage.INVENTORY):
            levels = await self._ledger.apply_order(event.items)
            logger.info("Inventory updated", extra={"order_id": event.order_id, "stock": levels})
            result = InventoryUpdatedPayload(
                order_id=event.order_id,
                status=OutcomeStatus.SUCCESS,
                items=event.items,
                customer=event.customer,
            )
        else:
            logger.info("Inventory update failed", extra={"order_id": event.order_id})
            result = InventoryUpdatedPayload(
                order_id=event.order_id,
                status=OutcomeStatus.FAILED,
                items=event.items,
                customer=event.customer,
                reason=INVENTORY_FAILED_REASON,
            )

        await self.emit(Topic.INVENTORY_UPDATED, result)
