"""
Fulfillment Service — durable job queue on Redis lists

A whole workflow chain travels as one serialised FlowJob.

  <queue>:wait       LPUSH on enqueue
  <queue>:active     BLMOVE wait → active when a worker reserves a job
  <queue>:completed  finished jobs, newest first, capped
  <queue>:failed     permanently failed jobs, newest first, capped
  <queue>:dead       payloads that could not be parsed
  <queue>:leases     hash job id → last time its worker showed signs of life

A worker holding a job refreshes its lease with touch(). requeue_stalled()
only pushes a job back to wait once its lease is older than
visibility_timeout, so jobs held by live workers in other processes stay put.
"""

import logging
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import redis.asyncio as aioredis
from pydantic import BaseModel, Field, PrivateAttr, ValidationError

from . import config
from .steps import StepName

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepJob(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: StepName
    data: dict = {}
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    result: Any = None
    error: str | None = None


class FlowJob(BaseModel):
    """A linear chain: steps[i + 1] only starts after steps[i] completed."""

    id: str = Field(default_factory=_new_id)
    order_id: int
    queue: str
    steps: list[StepJob]
    state: JobState = JobState.WAITING
    error: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    finished_at: datetime | None = None

    # Exact payload popped from Redis, needed to remove it from the active list.
    _raw: str | None = PrivateAttr(default=None)

    @property
    def failed_step(self) -> StepJob | None:
        return next((s for s in self.steps if s.state == JobState.FAILED), None)


class JobQueue:
    def __init__(
        self,
        redis: aioredis.Redis,
        name: str = config.QUEUE_NAME,
        keep_finished: int = config.QUEUE_KEEP_FINISHED,
        visibility_timeout: float = config.QUEUE_VISIBILITY_TIMEOUT,
    ) -> None:
        self._redis = redis
        self.name = name
        self.keep_finished = keep_finished
        self.visibility_timeout = visibility_timeout

    def key(self, state: str) -> str:
        return f"{self.name}:{state}"

    async def enqueue(self, flow: FlowJob) -> None:
        await self._redis.lpush(self.key("wait"), flow.model_dump_json())

    async def reserve(self, timeout: float = 1) -> FlowJob | None:
        """Move the oldest waiting job to active and return it, or None on timeout."""
        raw = await self._redis.blmove(
            self.key("wait"), self.key("active"), timeout, "RIGHT", "LEFT"
        )
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode()

        try:
            flow = FlowJob.model_validate_json(raw)
        except ValidationError:
            logger.exception("Discarding unreadable job on %s", self.name)
            await self._bury(raw)
            return None

        await self.touch(flow)
        flow._raw = raw
        flow.state = JobState.ACTIVE
        return flow

    async def touch(self, flow: FlowJob) -> None:
        await self._redis.hset(self.key("leases"), flow.id, time.time())

    async def complete(self, flow: FlowJob) -> None:
        await self._finish(flow, "completed")

    async def fail(self, flow: FlowJob) -> None:
        await self._finish(flow, "failed")

    async def _finish(self, flow: FlowJob, archive: str) -> None:
        flow.finished_at = _utcnow()
        async with self._redis.pipeline(transaction=True) as pipe:
            if flow._raw is not None:
                pipe.lrem(self.key("active"), 1, flow._raw)
            pipe.hdel(self.key("leases"), flow.id)
            pipe.lpush(self.key(archive), flow.model_dump_json())
            pipe.ltrim(self.key(archive), 0, self.keep_finished - 1)
            await pipe.execute()

    async def _bury(self, raw: str) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self.key("active"), 1, raw)
            pipe.lpush(self.key("dead"), raw)
            await pipe.execute()

    async def requeue_stalled(self) -> int:
        """Push active jobs whose lease expired back to the front of wait."""
        now = time.time()
        moved = 0
        for raw in await self._redis.lrange(self.key("active"), 0, -1):
            try:
                job_id = FlowJob.model_validate_json(raw).id
            except ValidationError:
                logger.exception("Discarding unreadable active job on %s", self.name)
                await self._bury(raw)
                continue

            leased_at = await self._redis.hget(self.key("leases"), job_id)
            if leased_at is None:
                # Reserved a moment ago and not yet leased; give it a full timeout.
                await self._redis.hsetnx(self.key("leases"), job_id, now)
                continue
            if now - float(leased_at) < self.visibility_timeout:
                continue

            # Only one sweeper wins the LREM when several run at once.
            if await self._redis.lrem(self.key("active"), 1, raw):
                await self._redis.hdel(self.key("leases"), job_id)
                await self._redis.rpush(self.key("wait"), raw)
                moved += 1

        if moved:
            logger.warning("Requeued %d stalled job(s) on %s", moved, self.name)
        return moved

    async def counts(self) -> dict[str, int]:
        return {
            state: await self._redis.llen(self.key(state))
            for state in ("wait", "active", "completed", "failed")
        }

    async def finished(self, archive: str, limit: int = 50) -> list[FlowJob]:
        raws = await self._redis.lrange(self.key(archive), 0, limit - 1)
        return [FlowJob.model_validate_json(raw) for raw in raws]
