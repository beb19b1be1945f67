"""Job brokers backing the queue service.

The Redis broker uses the reliable-queue pattern: a delivered job id is
moved atomically from the wait list to the active list and only leaves the
active list once its outcome is recorded. Ids stranded in the active list by
a crashed consumer are moved back with ``requeue_active``.

Keys per queue (prefix ``tramoya:queue:{name}:``):

- ``wait``      list, LPUSH in / RIGHT out (FIFO)
- ``active``    list of ids currently being processed
- ``delayed``   sorted set of ids scored by due time (ms) for retries
- ``job:{id}``  JSON-encoded job
- ``result:{id}`` JSON-encoded job result, expires after the result TTL
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Protocol, runtime_checkable

from redis.asyncio import Redis
from redis.exceptions import RedisError

from tramoya.config import settings
from tramoya.models.job import Job, JobState
from tramoya.runner.errors import QueueError

logger = logging.getLogger(__name__)


@runtime_checkable
class Broker(Protocol):
    """Storage and delivery operations the queue service relies on."""

    async def push(self, job: Job) -> None: ...
    async def pop(self, queue_name: str, timeout: float) -> Job | None: ...
    async def complete(self, job: Job, result: Any) -> None: ...
    async def fail(self, job: Job, reason: str, retry_delay_ms: int | None = None) -> None: ...
    async def promote_delayed(self, queue_name: str) -> int: ...
    async def requeue_active(self, queue_name: str) -> int: ...
    async def get_result(self, queue_name: str, job_id: str) -> Any | None: ...
    async def close(self) -> None: ...


def _now_ms() -> int:
    return int(time.time() * 1000)


def _text(value: bytes | str) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


class RedisBroker:
    """Redis-backed broker. The connection is owned by the caller."""

    KEY_PREFIX = "tramoya:queue:"

    def __init__(self, redis_client: Redis, result_ttl_seconds: int | None = None):
        self.redis = redis_client
        self.result_ttl_seconds = result_ttl_seconds or settings.job_result_ttl_seconds

    def _key(self, queue_name: str, suffix: str) -> str:
        return f"{self.KEY_PREFIX}{queue_name}:{suffix}"

    async def push(self, job: Job) -> None:
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(self._key(job.queue_name, f"job:{job.id}"), job.model_dump_json())
                pipe.lpush(self._key(job.queue_name, "wait"), job.id)
                await pipe.execute()
        except RedisError as e:
            raise QueueError(f"Could not enqueue job {job.id} on {job.queue_name}: {e}") from e

    async def pop(self, queue_name: str, timeout: float) -> Job | None:
        try:
            job_id = await self.redis.blmove(
                self._key(queue_name, "wait"),
                self._key(queue_name, "active"),
                timeout,
                src="RIGHT",
                dest="LEFT",
            )
            if job_id is None:
                return None
            job_id = _text(job_id)
            raw = await self.redis.get(self._key(queue_name, f"job:{job_id}"))
            if raw is None:
                logger.warning(f"Dropping job {job_id} on {queue_name}: job data missing")
                await self.redis.lrem(self._key(queue_name, "active"), 0, job_id)
                return None
        except RedisError as e:
            raise QueueError(f"Could not dequeue from {queue_name}: {e}") from e

        job = Job.model_validate_json(raw)
        job.state = JobState.ACTIVE
        return job

    async def complete(self, job: Job, result: Any) -> None:
        job.state = JobState.COMPLETED
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(
                    self._key(job.queue_name, f"result:{job.id}"),
                    json.dumps(result),
                    ex=self.result_ttl_seconds,
                )
                pipe.delete(self._key(job.queue_name, f"job:{job.id}"))
                pipe.lrem(self._key(job.queue_name, "active"), 0, job.id)
                await pipe.execute()
        except RedisError as e:
            raise QueueError(f"Could not record completion of job {job.id}: {e}") from e

    async def fail(self, job: Job, reason: str, retry_delay_ms: int | None = None) -> None:
        job.failed_reason = reason
        job.state = JobState.DELAYED if retry_delay_ms is not None else JobState.FAILED
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                job_key = self._key(job.queue_name, f"job:{job.id}")
                if retry_delay_ms is not None:
                    pipe.set(job_key, job.model_dump_json())
                    pipe.zadd(
                        self._key(job.queue_name, "delayed"),
                        {job.id: _now_ms() + retry_delay_ms},
                    )
                else:
                    # Failed jobs are kept for inspection until the result TTL runs out
                    pipe.set(job_key, job.model_dump_json(), ex=self.result_ttl_seconds)
                pipe.lrem(self._key(job.queue_name, "active"), 0, job.id)
                await pipe.execute()
        except RedisError as e:
            raise QueueError(f"Could not record failure of job {job.id}: {e}") from e

    async def promote_delayed(self, queue_name: str) -> int:
        delayed_key = self._key(queue_name, "delayed")
        promoted = 0
        try:
            due = await self.redis.zrangebyscore(delayed_key, 0, _now_ms())
            for job_id in due:
                # zrem succeeds for exactly one consumer
                if await self.redis.zrem(delayed_key, job_id):
                    await self.redis.lpush(self._key(queue_name, "wait"), job_id)
                    promoted += 1
        except RedisError as e:
            raise QueueError(f"Could not promote delayed jobs on {queue_name}: {e}") from e
        return promoted

    async def requeue_active(self, queue_name: str) -> int:
        moved = 0
        # active holds the newest id on the left, so the oldest is pushed last and popped first
        try:
            while await self.redis.lmove(
                self._key(queue_name, "active"),
                self._key(queue_name, "wait"),
                src="LEFT",
                dest="RIGHT",
            ):
                moved += 1
        except RedisError as e:
            raise QueueError(f"Could not requeue active jobs on {queue_name}: {e}") from e
        if moved:
            logger.warning(f"Requeued {moved} interrupted job(s) on {queue_name}")
        return moved

    async def get_result(self, queue_name: str, job_id: str) -> Any | None:
        try:
            raw = await self.redis.get(self._key(queue_name, f"result:{job_id}"))
        except RedisError as e:
            raise QueueError(f"Could not read result of job {job_id}: {e}") from e
        return json.loads(raw) if raw is not None else None

    async def get_job(self, queue_name: str, job_id: str) -> Job | None:
        try:
            raw = await self.redis.get(self._key(queue_name, f"job:{job_id}"))
        except RedisError as e:
            raise QueueError(f"Could not read job {job_id}: {e}") from e
        return Job.model_validate_json(raw) if raw is not None else None

    async def close(self) -> None:
        """Nothing to release: the Redis connection belongs to the caller."""
