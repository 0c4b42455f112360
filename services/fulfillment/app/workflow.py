"""
Fulfillment Service — order-completion workflow orchestrator

Turns a paid order into a strictly linear job chain and hands it to the queue:

  ┌────────────┐   ┌──────────────────┐   ┌──────────────────┐   ┌─────────────────────────────┐
  │ store-sale │──▶│ append-sales-csv │──▶│ update-inventory │──▶│ append-inventory-trends-csv │
  └────────────┘   └──────────────────┘   └──────────────────┘   └─────────────────────────────┘

The chain is enqueued as a single job; a worker executes it later. Stock is
decremented only for the items recorded as sold, and the trend ledger only
receives the decrement that update-inventory actually computed.

Triggering twice for the same order enqueues two independent chains.
"""

import logging

from .errors import WorkflowSubmissionError
from .event_bus import EventBus
from .events import WORKFLOW_FAILED, WorkflowFailed
from .queue import FlowJob, JobQueue, StepJob
from .steps import StepName

logger = logging.getLogger(__name__)

ORDER_COMPLETION_STEPS = (
    StepName.STORE_SALE,
    StepName.APPEND_SALES_CSV,
    StepName.UPDATE_INVENTORY,
    StepName.APPEND_INVENTORY_TRENDS_CSV,
)


class OrderCompletionWorkflow:
    def __init__(self, queue: JobQueue, bus: EventBus) -> None:
        self.queue = queue
        self.bus = bus

    def build_chain(self, order_id: int) -> FlowJob:
        return FlowJob(
            order_id=order_id,
            queue=self.queue.name,
            steps=[
                StepJob(name=name, data={"orderId": order_id})
                for name in ORDER_COMPLETION_STEPS
            ],
        )

    async def trigger_workflow(self, order_id: int) -> FlowJob:
        """Enqueue the fulfillment chain. Raises WorkflowSubmissionError if it cannot."""
        flow = self.build_chain(order_id)
        try:
            await self.queue.enqueue(flow)
        except Exception as e:
            logger.error("Failed to start workflow for order %s: %s", order_id, e)
            await self._publish_failure(order_id, str(e))
            raise WorkflowSubmissionError(order_id, str(e)) from e

        logger.info("Workflow started for order %s (job %s)", order_id, flow.id)
        return flow

    async def _publish_failure(self, order_id: int, error: str) -> None:
        try:
            await self.bus.publish(
                WORKFLOW_FAILED, WorkflowFailed(order_id=order_id, error=error)
            )
        except Exception:
            logger.exception("Could not publish %s for order %s", WORKFLOW_FAILED, order_id)

