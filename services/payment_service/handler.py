"""
Payment Processor
=================
Consumes order-created, "charges" the order through a randomly chosen
provider and publishes payment-processed.

The provider call is simulated: a non-blocking delay followed by a roll
against p_pay (0.9 by default). A declined payment is an ordinary outcome,
published with status FAILED and never retried; the coordinator turns it
into order-failed.

The order's line items and customer ride along on payment-processed so no
downstream stage ever has to look the order up.
"""
from __future__ import annotations

import string

from shared.consumer import EventService, handles
from shared.events import OrderCreatedPayload, OutcomeStatus, PaymentProcessedPayload, Topic
from shared.logger import get_logger
from shared.simulation import Simulation, Stage

logger = get_logger(__name__)

PAYMENT_PROVIDERS = ("Stripe", "PayPal", "Visa", "MasterCard")
CURRENCY = "EUR"

_TX_ALPHABET = string.digits + string.ascii_lowercase


class PaymentProcessor(EventService):
    name = "payment-service"

    def __init__(self, bus, settings=None, simulation: Simulation | None = None) -> None:
        super().__init__(bus, settings)
        self.simulation = simulation or Simulation.from_settings(self.settings)

    @handles(Topic.ORDER_CREATED)
    async def on_order_created(self, order: OrderCreatedPayload) -> None:
        logger.info("Processing payment", extra={"order_id": order.order_id})
        result = await self.process_payment(order)
        await self.emit(Topic.PAYMENT_PROCESSED, result)
        logger.info(
            "Payment processed",
            extra={
                "order_id": order.order_id,
                "status": result.status.value,
                "provider": result.provider,
                "amount_cents": result.amount_cents,
            },
        )

    async def process_payment(self, order: OrderCreatedPayload) -> PaymentProcessedPayload:
        rng = self.simulation.rng
        provider = rng.choice(PAYMENT_PROVIDERS)

        await self.simulation.latency.wait(Stage.PAYMENT)
        succeeded = self.simulation.outcomes.succeeds(Stage.PAYMENT)

        return PaymentProcessedPayload(
            order_id=order.order_id,
            status=OutcomeStatus.SUCCESS if succeeded else OutcomeStatus.FAILED,
            provider=provider,
            transaction_id=_transaction_id(rng),
            amount_cents=order.total_cents,
            currency=CURRENCY,
            items=order.items,
            customer=order.customer,
        )


def _transaction_id(rng) -> str:
    return "tx-" + "".join(rng.choice(_TX_ALPHABET) for _ in range(13))
