"""Named job queues with producers and consumers.

``QueueService`` keeps two registries keyed by queue name: producer handles
(``JobQueue``) and consumers (``QueueWorker``), at most one consumer per
queue name per service instance. Both registries are get-or-create and are
only touched from the event loop that owns the service, with no await
between lookup and insert.

Delivery is at-least-once. The queue does not deduplicate; callers that must
tolerate redelivery pass their own idempotency key as the job id.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable

from pydantic import BaseModel

from tramoya.config import settings
from tramoya.models.job import Job
from tramoya.queue.broker import Broker
from tramoya.runner.errors import QueueError

logger = logging.getLogger(__name__)

Processor = Callable[[Job], Awaitable[Any]]


def _jsonable(result: Any) -> Any:
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json", by_alias=True)
    return result


class JobQueue:
    """Producer handle for one named queue."""

    def __init__(self, name: str, broker: Broker, max_attempts: int):
        self.name = name
        self.broker = broker
        self.max_attempts = max_attempts

    async def add(self, job_type: str, payload: dict[str, Any], job_id: str | None = None) -> Job:
        job = Job(
            id=job_id or uuid.uuid4().hex,
            queue_name=self.name,
            type=job_type,
            payload=payload,
            max_attempts=self.max_attempts,
        )
        await self.broker.push(job)
        return job


class QueueWorker:
    """Consumer for one named queue, running ``concurrency`` delivery loops."""

    def __init__(
        self,
        queue_name: str,
        processor: Processor,
        broker: Broker,
        *,
        concurrency: int = 1,
        block_timeout: float = 1.0,
        backoff_ms: int = 1000,
    ):
        self.queue_name = queue_name
        self.processor = processor
        self.broker = broker
        self.concurrency = max(1, concurrency)
        self.block_timeout = block_timeout
        self.backoff_ms = backoff_ms
        self.completed = 0
        self.failed = 0
        self._closing = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._closing.is_set()

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._run(slot), name=f"queue-worker:{self.queue_name}:{slot}")
            for slot in range(self.concurrency)
        ]

    async def close(self) -> None:
        """Stop taking deliveries and wait for in-flight jobs to finish."""
        self._closing.set()
        if self._tasks:
            outcomes = await asyncio.gather(*self._tasks, return_exceptions=True)
            for task, outcome in zip(self._tasks, outcomes):
                if isinstance(outcome, Exception):
                    logger.error(f"Consumer {task.get_name()} ended with error: {outcome!r}")
        self._tasks = []

    async def _run(self, slot: int) -> None:
        logger.debug(f"Consumer {slot} started on {self.queue_name}")
        while not self._closing.is_set():
            try:
                await self.broker.promote_delayed(self.queue_name)
                job = await self.broker.pop(self.queue_name, self.block_timeout)
            except QueueError as e:
                logger.error(f"Worker error on {self.queue_name}: {e}")
                await asyncio.sleep(self.block_timeout)
                continue
            except Exception as e:
                # Corrupt job record; the id stays in the active list
                logger.error(f"Could not take a job from {self.queue_name}: {e}", exc_info=True)
                await asyncio.sleep(self.block_timeout)
                continue
            if job is None:
                continue
            await self._handle(job)
        logger.debug(f"Consumer {slot} stopped on {self.queue_name}")

    async def _handle(self, job: Job) -> None:
        job.attempts_made += 1
        try:
            result = await self.processor(job)
        except Exception as e:
            await self._handle_failure(job, e)
            return

        try:
            await self.broker.complete(job, _jsonable(result))
        except QueueError as e:
            # Left in the active list; redelivered when a consumer is next registered
            logger.error(f"Could not acknowledge job {job.id}: {e}")
            return
        except Exception as e:
            logger.error(f"Could not record result of job {job.id}: {e}", exc_info=True)
            await self._handle_failure(job, e)
            return
        self.completed += 1
        logger.info(f"Job completed: {job.id} ({self.queue_name})")

    async def _handle_failure(self, job: Job, error: Exception) -> None:
        reason = f"{type(error).__name__}: {error}"
        retry_delay_ms = None
        if job.attempts_made < job.max_attempts:
            retry_delay_ms = self.backoff_ms * 2 ** (job.attempts_made - 1)
        try:
            await self.broker.fail(job, reason, retry_delay_ms)
        except QueueError as e:
            logger.error(f"Could not record failure of job {job.id}: {e}")
            return

        if retry_delay_ms is not None:
            logger.warning(
                f"Job {job.id} failed (attempt {job.attempts_made}/{job.max_attempts}), "
                f"retrying in {retry_delay_ms}ms: {reason}"
            )
        else:
            self.failed += 1
            logger.error(f"Job failed: {job.id}, reason: {reason}")


class QueueService:
    """Registry of named queues and their consumers over one broker."""

    def __init__(
        self,
        broker: Broker,
        *,
        max_attempts: int | None = None,
        backoff_ms: int | None = None,
        block_timeout: float | None = None,
    ):
        self.broker = broker
        self.max_attempts = max_attempts or settings.job_max_attempts
        self.backoff_ms = settings.job_backoff_ms if backoff_ms is None else backoff_ms
        self.block_timeout = block_timeout or settings.queue_block_timeout_seconds
        self._queues: dict[str, JobQueue] = {}
        self._workers: dict[str, QueueWorker] = {}
        self._closed = False
        logger.info("QueueService initialized")

    def create_queue(self, name: str) -> JobQueue:
        """Get or create the producer handle for ``name``."""
        queue = self._queues.get(name)
        if queue is None:
            queue = JobQueue(name, self.broker, self.max_attempts)
            self._queues[name] = queue
            logger.info(f"Queue created: {name}")
        return queue

    def get_queue(self, name: str) -> JobQueue | None:
        return self._queues.get(name)

    async def add_job(
        self,
        queue_name: str,
        job_type: str,
        payload: dict[str, Any],
        job_id: str | None = None,
    ) -> str:
        """Enqueue a job, creating the queue if needed. Returns the job id."""
        if self._closed:
            raise QueueError(f"QueueService is closed, cannot enqueue on {queue_name}")
        queue = self.create_queue(queue_name)
        try:
            job = await queue.add(job_type, payload, job_id=job_id)
        except QueueError as e:
            logger.error(f"Error adding job to {queue_name}: {e}")
            raise
        logger.info(f"Added job to queue: {queue_name}, job ID: {job.id}, type: {job_type}")
        return job.id

    async def create_worker(
        self,
        queue_name: str,
        processor: Processor,
        concurrency: int | None = None,
    ) -> QueueWorker:
        """Get or create the single consumer for ``queue_name`` and start it.

        On first registration, jobs stranded in the active list by a previous
        consumer process are put back on the queue.
        """
        worker = self._workers.get(queue_name)
        if worker is not None:
            return worker
        if self._closed:
            raise QueueError(f"QueueService is closed, cannot consume {queue_name}")

        worker = QueueWorker(
            queue_name,
            processor,
            self.broker,
            concurrency=concurrency or settings.worker_concurrency,
            block_timeout=self.block_timeout,
            backoff_ms=self.backoff_ms,
        )
        self._workers[queue_name] = worker
        self.create_queue(queue_name)
        try:
            await self.broker.requeue_active(queue_name)
        except QueueError as e:
            del self._workers[queue_name]
            logger.error(f"Error creating worker for {queue_name}: {e}")
            raise
        worker.start()
        logger.info(f"Worker created for queue: {queue_name} (concurrency={worker.concurrency})")
        return worker

    def get_worker(self, queue_name: str) -> QueueWorker | None:
        return self._workers.get(queue_name)

    async def get_job_result(self, queue_name: str, job_id: str) -> Any | None:
        return await self.broker.get_result(queue_name, job_id)

    async def close(self) -> None:
        """Stop consumers, wait for in-flight jobs, and release every registry entry."""
        self._closed = True
        for name, worker in list(self._workers.items()):
            await worker.close()
            logger.info(f"Worker closed: {name}")
        self._workers.clear()
        for name in list(self._queues):
            logger.info(f"Queue closed: {name}")
        self._queues.clear()
        await self.broker.close()
        logger.info("All queues and workers closed")
