"""
Fulfillment Service — FastAPI entry point

Runs the order-completion pipeline in the background of the service process:

  payment events ──▶ PaymentSubscriber ──▶ OrderCompletionWorkflow ──▶ Redis queue
                                                                          │
                                                     FlowWorker ◀─────────┘

The HTTP side only exposes health, a manual trigger and queue statistics.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException, Request

from . import config
from .db import create_tables, make_engine, make_session_factory
from .errors import WorkflowSubmissionError
from .event_bus import EventBus
from .ledger import InventoryTrendLedger, SalesLedger
from .logging_config import setup_logging
from .queue import JobQueue
from .repositories import OrderRepository, ProductRepository, SaleRepository
from .steps import StepContext, build_registry
from .subscribers import PaymentSubscriber
from .worker import FlowWorker
from .workflow import OrderCompletionWorkflow

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()

    engine = make_engine(config.DATABASE_URL)
    if config.CREATE_TABLES:
        await create_tables(engine)
    session_factory = make_session_factory(engine)

    redis_pool = aioredis.from_url(config.REDIS_URL, decode_responses=True)
    bus = EventBus(config.REDIS_URL)
    queue = JobQueue(redis_pool)
    workflow = OrderCompletionWorkflow(queue, bus)
    subscriber = PaymentSubscriber(bus, workflow)

    context = StepContext(
        orders=OrderRepository(session_factory),
        products=ProductRepository(session_factory),
        sales=SaleRepository(session_factory),
        sales_ledger=SalesLedger(config.SALES_DIR),
        trend_ledger=InventoryTrendLedger(config.INVENTORY_TRENDS_DIR),
    )
    worker = FlowWorker(queue, build_registry(), context, bus)

    app.state.queue = queue
    app.state.workflow = workflow

    await subscriber.start()

    stop_event = asyncio.Event()
    worker_task = None
    if config.RUN_WORKER:
        worker_task = asyncio.create_task(worker.run(stop_event))

    yield

    stop_event.set()
    if worker_task is not None:
        await asyncio.gather(worker_task, return_exceptions=True)
    await bus.shutdown()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Fulfillment Service", lifespan=lifespan)


@app.post("/workflows/orders/{order_id}", status_code=202)
async def trigger_order_workflow(order_id: int, request: Request):
    """Start fulfillment by hand, e.g. for an order whose payment event was lost."""
    try:
        flow = await request.app.state.workflow.trigger_workflow(order_id)
    except WorkflowSubmissionError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"job_id": flow.id, "order_id": order_id, "steps": [s.name for s in flow.steps]}


@app.get("/queues/order-completion")
async def queue_stats(request: Request):
    queue: JobQueue = request.app.state.queue
    failed = await queue.finished("failed", limit=20)
    return {
        "queue": queue.name,
        "counts": await queue.counts(),
        "recent_failures": [
            {
                "job_id": flow.id,
                "order_id": flow.order_id,
                "step": flow.failed_step.name if flow.failed_step else None,
                "error": flow.error,
                "finished_at": flow.finished_at,
            }
            for flow in failed
        ],
    }


@app.get("/health")
async def health():
    return {"status": "ok", "service": "fulfillment-service"}
