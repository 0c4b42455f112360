"""
Fulfillment Service — error types

  FulfillmentError
  ├── NotFoundError            order / product missing
  ├── BadRequestError
  │   └── InsufficientStockError
  ├── InternalServerError
  │   └── StockConflictError   lost compare-and-swap on product stock
  ├── EventBusError            publish / subscribe transport failure
  ├── WorkflowSubmissionError  chain could not be enqueued
  └── UnknownStepError         no implementation registered for a step
"""


class FulfillmentError(Exception):
    status_code = 500


class NotFoundError(FulfillmentError):
    status_code = 404


class BadRequestError(FulfillmentError):
    status_code = 400


class InternalServerError(FulfillmentError):
    pass


class InsufficientStockError(BadRequestError):
    def __init__(self, product_id: int, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for product {product_id}: "
            f"requested={requested}, available={available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class StockConflictError(InternalServerError):
    def __init__(self, product_id: int, expected: int) -> None:
        super().__init__(
            f"Stock for product {product_id} changed since it was read "
            f"(expected {expected})"
        )
        self.product_id = product_id
        self.expected = expected


class EventBusError(FulfillmentError):
    pass


class WorkflowSubmissionError(FulfillmentError):
    def __init__(self, order_id: int, reason: str) -> None:
        super().__init__(f"Failed to start workflow for order {order_id}: {reason}")
        self.order_id = order_id
        self.reason = reason


class UnknownStepError(FulfillmentError):
    pass
