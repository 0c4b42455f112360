"""
Fulfillment Service — payment event subscribers

  payment:completed  {orderId}                → start the order-completion workflow
  payment:failed     {orderId, reason}        → log
  payment:initiated  {orderId, phone, amount} → log

Every handler deals with its own errors, so a bad message only affects
itself: the next delivery on the same topic, and the other topics, carry on.
"""

import logging

from pydantic import ValidationError

from .event_bus import EventBus
from .events import (
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_INITIATED,
    PaymentCompleted,
    PaymentFailed,
    PaymentInitiated,
)
from .workflow import OrderCompletionWorkflow

logger = logging.getLogger(__name__)


class PaymentSubscriber:
    def __init__(self, bus: EventBus, workflow: OrderCompletionWorkflow) -> None:
        self.bus = bus
        self.workflow = workflow

    @property
    def handlers(self):
        return {
            PAYMENT_COMPLETED: self.on_payment_completed,
            PAYMENT_FAILED: self.on_payment_failed,
            PAYMENT_INITIATED: self.on_payment_initiated,
        }

    async def start(self) -> None:
        for topic, handler in self.handlers.items():
            await self.bus.subscribe(topic, handler)

    async def stop(self) -> None:
        for topic in self.handlers:
            await self.bus.unsubscribe(topic)

    async def on_payment_completed(self, message: str, topic: str = PAYMENT_COMPLETED) -> None:
        try:
            event = PaymentCompleted.model_validate_json(message)
            logger.info("Received %s for order %s", topic, event.order_id)

            await self.workflow.trigger_workflow(event.order_id)
            logger.info("Workflow triggered for order %s", event.order_id)
        except ValidationError as e:
            logger.error("Malformed %s message %r: %s", topic, message, e)
        except Exception:
            logger.exception("Failed to process %s", topic)

    async def on_payment_failed(self, message: str, topic: str = PAYMENT_FAILED) -> None:
        try:
            event = PaymentFailed.model_validate_json(message)
            logger.info("Payment failed for order %s: %s", event.order_id, event.reason)
        except ValidationError as e:
            logger.error("Malformed %s message %r: %s", topic, message, e)

    async def on_payment_initiated(self, message: str, topic: str = PAYMENT_INITIATED) -> None:
        try:
            event = PaymentInitiated.model_validate_json(message)
            logger.info(
                "Payment initiated for order %s: %s to %s",
                event.order_id,
                event.amount,
                event.phone,
            )
        except ValidationError as e:
            logger.error("Malformed %s message %r: %s", topic, message, e)
