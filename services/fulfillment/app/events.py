"""
Fulfillment Service — event definitions

Topics on the event bus and the payloads carried on them.
Payload keys are camelCase on the wire (`orderId`), snake_case in Python.
"""

from pydantic import BaseModel, ConfigDict, Field

PAYMENT_COMPLETED = "payment:completed"
PAYMENT_FAILED = "payment:failed"
PAYMENT_INITIATED = "payment:initiated"
WORKFLOW_FAILED = "workflow:failed"


class EventPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PaymentCompleted(EventPayload):
    """Payment confirmed for an order; starts fulfillment"""
    order_id: int = Field(alias="orderId")


class PaymentFailed(EventPayload):
    """Payment was rejected or cancelled"""
    order_id: int = Field(alias="orderId")
    reason: str | None = None


class PaymentInitiated(EventPayload):
    """STK push sent to the customer's phone"""
    order_id: int = Field(alias="orderId")
    phone: str | int
    amount: float


class WorkflowFailed(EventPayload):
    """The fulfillment chain could not be enqueued, or a step failed for good"""
    order_id: int = Field(alias="orderId")
    error: str
    step: str | None = None
