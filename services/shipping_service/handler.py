"""
Shipment Preparer
=================
Consumes inventory-updated and, for successful updates only, books a carrier
and publishes shipping-prepared.

The outcome is always computed before the outgoing event is built: SUCCESS
(p_ship, 0.95 by default) carries a tracking number, the carrier, an
estimated delivery 2-6 days out and the customer's address; FAILED carries
only a reason.
"""
from __future__ import annotations

import string
from datetime import datetime, timedelta, timezone

from shared.consumer import EventService, handles
from shared.events import InventoryUpdatedPayload, OutcomeStatus, ShippingPreparedPayload, Topic
from shared.logger import get_logger
from shared.simulation import Simulation, Stage

logger = get_logger(__name__)

CARRIERS = ("AnPost", "UPS", "DPD", "Fastway")
DELIVERY_DAYS = (2, 6)
SHIPPING_FAILED_REASON = "Unable to prepare shipment"

_TRACKING_ALPHABET = string.ascii_uppercase + string.digits


class ShipmentPreparer(EventService):
    name = "shipping-service"

    def __init__(self, bus, settings=None, simulation: Simulation | None = None) -> None:
        super().__init__(bus, settings)
        self.simulation = simulation or Simulation.from_settings(self.settings)

    @handles(Topic.INVENTORY_UPDATED)
    async def on_inventory_updated(self, event: InventoryUpdatedPayload) -> None:
        if event.status is not OutcomeStatus.SUCCESS:
            return

        logger.info("Preparing shipment", extra={"order_id": event.order_id})
        shipment = await self.prepare_shipment(event)
        await self.emit(Topic.SHIPPING_PREPARED, shipment)
        logger.info(
            "Shipment prepared",
            extra={
                "order_id": event.order_id,
                "status": shipment.status.value,
                "carrier": shipment.carrier,
            },
        )

    async def prepare_shipment(self, event: InventoryUpdatedPayload) -> ShippingPreparedPayload:
        rng = self.simulation.rng
        carrier = rng.choice(CARRIERS)

        await self.simulation.latency.wait(Stage.SHIPPING)

        if not self.simulation.outcomes.succeeds(Stage.SHIPPING):
            return ShippingPreparedPayload(
                order_id=event.order_id,
                status=OutcomeStatus.FAILED,
                customer=event.customer,
                reason=SHIPPING_FAILED_REASON,
            )

        days = rng.randint(*DELIVERY_DAYS)
        return ShippingPreparedPayload(
            order_id=event.order_id,
            status=OutcomeStatus.SUCCESS,
            tracking_number="".join(rng.choice(_TRACKING_ALPHABET) for _ in range(12)),
            carrier=carrier,
            estimated_delivery=datetime.now(timezone.utc) + timedelta(days=days),
            address=event.customer.address if event.customer else None,
            customer=event.customer,
        )
