"""
Fulfillment Service — workflow worker

Reserves FlowJobs from the queue and runs their steps in order.

  for each step in the chain:
    attempt up to retry.attempts times, sleeping delay_for(n) between tries
    ├─ success   → keep the result, hand it to the next step, continue
    └─ exhausted → mark step FAILED, remaining steps ABANDONED,
                   publish workflow:failed, stop the chain

Several consumer tasks run side by side so chains of different orders proceed
in parallel; one chain is only ever handled by a single task. While a chain
runs its lease is refreshed, and a sweeper hands back jobs whose lease ran out.
"""

import asyncio
import logging

from . import config
from .errors import UnknownStepError
from .event_bus import EventBus
from .events import WORKFLOW_FAILED, WorkflowFailed
from .queue import FlowJob, JobQueue, JobState, StepJob
from .steps import StepContext, StepName, StepRegistry

logger = logging.getLogger(__name__)


class FlowWorker:
    def __init__(
        self,
        queue: JobQueue,
        registry: StepRegistry,
        context: StepContext,
        bus: EventBus,
        concurrency: int = config.WORKER_CONCURRENCY,
    ) -> None:
        self.queue = queue
        self.registry = registry
        self.context = context
        self.bus = bus
        self.concurrency = concurrency

    async def run(self, stop_event: asyncio.Event, requeue_stalled: bool = True) -> None:
        logger.info(
            "Worker started on %s with concurrency %d", self.queue.name, self.concurrency
        )
        tasks = [
            asyncio.create_task(self._consume(stop_event), name=f"flow-consumer-{i}")
            for i in range(self.concurrency)
        ]
        if requeue_stalled:
            tasks.append(asyncio.create_task(self._sweep(stop_event), name="flow-sweeper"))
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            logger.info("Worker on %s stopped", self.queue.name)

    async def _sweep(self, stop_event: asyncio.Event) -> None:
        """Hand jobs abandoned by dead workers, in any process, back to the queue."""
        interval = self.queue.visibility_timeout / 2
        while not stop_event.is_set():
            try:
                await self.queue.requeue_stalled()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Failed to requeue stalled jobs on %s", self.queue.name)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def _keep_alive(self, flow: FlowJob) -> None:
        interval = self.queue.visibility_timeout / 3
        while True:
            await asyncio.sleep(interval)
            try:
                await self.queue.touch(flow)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Failed to refresh lease of job %s", flow.id)

    async def _consume(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                flow = await self.queue.reserve(timeout=1)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Failed to reserve job from %s", self.queue.name)
                await asyncio.sleep(1.0)
                continue

            if flow is None:
                continue

            heartbeat = asyncio.create_task(self._keep_alive(flow))
            try:
                await self.run_flow(flow)
            finally:
                heartbeat.cancel()
            try:
                if flow.state == JobState.COMPLETED:
                    await self.queue.complete(flow)
                else:
                    await self.queue.fail(flow)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Failed to archive job %s", flow.id)

    async def run_flow(self, flow: FlowJob) -> FlowJob:
        """Execute the chain in place. Step errors are recorded, never raised."""
        flow.state = JobState.ACTIVE
        previous: StepJob | None = None

        for index, step in enumerate(flow.steps):
            if previous is not None and step.name == StepName.APPEND_INVENTORY_TRENDS_CSV:
                step.data = {**step.data, "updates": previous.result or []}

            if not await self._run_step(flow, step):
                for rest in flow.steps[index + 1:]:
                    rest.state = JobState.ABANDONED
                flow.state = JobState.FAILED
                flow.error = step.error
                await self._report_failure(flow, step)
                return flow

            previous = step

        flow.state = JobState.COMPLETED
        logger.info("Workflow %s completed for order %s", flow.id, flow.order_id)
        return flow

    async def _run_step(self, flow: FlowJob, step: StepJob) -> bool:
        try:
            registered = self.registry.get(step.name)
        except UnknownStepError as e:
            step.error = str(e)
            step.state = JobState.FAILED
            return False

        retry = registered.retry
        step.state = JobState.ACTIVE

        while step.attempts_made < retry.attempts:
            step.attempts_made += 1
            try:
                step.result = await registered.func(self.context, step.data)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                step.error = f"{type(e).__name__}: {e}"
                logger.warning(
                    "Step %s failed for order %s (attempt %d/%d): %s",
                    step.name.value,
                    flow.order_id,
                    step.attempts_made,
                    retry.attempts,
                    e,
                )
                if step.attempts_made < retry.attempts:
                    await asyncio.sleep(retry.delay_for(step.attempts_made))
                continue

            step.state = JobState.COMPLETED
            step.error = None
            logger.info(
                "Step %s completed for order %s", step.name.value, flow.order_id
            )
            return True

        step.state = JobState.FAILED
        return False

    async def _report_failure(self, flow: FlowJob, step: StepJob) -> None:
        logger.error(
            "Workflow %s for order %s failed at %s after %d attempt(s): %s",
            flow.id,
            flow.order_id,
            step.name.value,
            step.attempts_made,
            step.error,
        )
        try:
            await self.bus.publish(
                WORKFLOW_FAILED,
                WorkflowFailed(order_id=flow.order_id, error=step.error or "", step=step.name.value),
            )
        except Exception:
            logger.exception(
                "Could not publish %s for order %s", WORKFLOW_FAILED, flow.order_id
            )
