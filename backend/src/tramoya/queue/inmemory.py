"""In-memory broker for local development and tests.

Satisfies the ``Broker`` protocol within a single event loop. Jobs are
stored serialized, so consumers get a fresh copy exactly as they would from
Redis. Nothing survives a restart.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections import deque
from typing import Any

from tramoya.models.job import Job, JobState
from tramoya.runner.errors import QueueError


class _QueueState:
    def __init__(self) -> None:
        self.waiting: deque[str] = deque()
        self.active: list[str] = []
        self.delayed: dict[str, float] = {}
        self.cond = asyncio.Condition()


class InMemoryBroker:
    def __init__(self) -> None:
        self._queues: dict[str, _QueueState] = {}
        self._jobs: dict[str, str] = {}
        self._results: dict[str, str] = {}
        self._closed = False

    def _state(self, queue_name: str) -> _QueueState:
        if queue_name not in self._queues:
            self._queues[queue_name] = _QueueState()
        return self._queues[queue_name]

    def _key(self, queue_name: str, job_id: str) -> str:
        return f"{queue_name}:{job_id}"

    async def push(self, job: Job) -> None:
        if self._closed:
            raise QueueError(f"Broker closed, cannot enqueue job {job.id}")
        state = self._state(job.queue_name)
        async with state.cond:
            self._jobs[self._key(job.queue_name, job.id)] = job.model_dump_json()
            state.waiting.append(job.id)
            state.cond.notify()

    async def pop(self, queue_name: str, timeout: float) -> Job | None:
        state = self._state(queue_name)
        async with state.cond:
            try:
                await asyncio.wait_for(state.cond.wait_for(lambda: bool(state.waiting)), timeout)
            except asyncio.TimeoutError:
                return None
            job_id = state.waiting.popleft()
            state.active.append(job_id)
        job = Job.model_validate_json(self._jobs[self._key(queue_name, job_id)])
        job.state = JobState.ACTIVE
        return job

    async def complete(self, job: Job, result: Any) -> None:
        job.state = JobState.COMPLETED
        key = self._key(job.queue_name, job.id)
        self._results[key] = json.dumps(result)
        self._jobs.pop(key, None)
        self._discard_active(job)

    async def fail(self, job: Job, reason: str, retry_delay_ms: int | None = None) -> None:
        job.failed_reason = reason
        job.state = JobState.DELAYED if retry_delay_ms is not None else JobState.FAILED
        self._jobs[self._key(job.queue_name, job.id)] = job.model_dump_json()
        self._discard_active(job)
        if retry_delay_ms is not None:
            self._state(job.queue_name).delayed[job.id] = time.monotonic() + retry_delay_ms / 1000

    async def promote_delayed(self, queue_name: str) -> int:
        state = self._state(queue_name)
        now = time.monotonic()
        due = [job_id for job_id, at in state.delayed.items() if at <= now]
        if not due:
            return 0
        async with state.cond:
            for job_id in due:
                del state.delayed[job_id]
                state.waiting.append(job_id)
            state.cond.notify(len(due))
        return len(due)

    async def requeue_active(self, queue_name: str) -> int:
        state = self._state(queue_name)
        moved = list(state.active)
        async with state.cond:
            state.active.clear()
            state.waiting.extendleft(reversed(moved))
            state.cond.notify(len(moved))
        return len(moved)

    async def get_result(self, queue_name: str, job_id: str) -> Any | None:
        raw = self._results.get(self._key(queue_name, job_id))
        return json.loads(raw) if raw is not None else None

    async def get_job(self, queue_name: str, job_id: str) -> Job | None:
        raw = self._jobs.get(self._key(queue_name, job_id))
        return Job.model_validate_json(raw) if raw is not None else None

    async def close(self) -> None:
        self._closed = True

    def _discard_active(self, job: Job) -> None:
        state = self._state(job.queue_name)
        if job.id in state.active:
            state.active.remove(job.id)
