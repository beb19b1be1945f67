"""Runner worker.

Binds the step executor to the test-execution queue, owns the shared browser,
and keeps throughput statistics. Shutdown is deliberately split: ``stop()``
releases the browser only; closing the queue service is the caller's job and
happens after the worker has stopped.
"""

from __future__ import annotations

import asyncio
import logging
import os
import resource
import time
from datetime import datetime

from pydantic import BaseModel, Field

from tramoya.config import settings
from tramoya.infra.browser import BrowserResource
from tramoya.infra.storage import ArtifactStore
from tramoya.models.base import utcnow
from tramoya.models.job import (
    QUEUE_TEST_EXECUTION,
    ExecuteTestJobData,
    ExecuteTestJobResult,
    Job,
)
from tramoya.models.result import create_error_result
from tramoya.queue.service import QueueService
from tramoya.runner.errors import JobError
from tramoya.runner.executor import StepExecutor

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


def memory_usage() -> dict[str, str]:
    """Snapshot of process peak RSS and system memory, in MB."""
    usage: dict[str, str] = {}
    # ru_maxrss is reported in KB on Linux
    usage["max_rss"] = f"{round(resource.getrusage(resource.RUSAGE_SELF).ru_maxrss / 1024)}MB"
    try:
        page_size = os.sysconf("SC_PAGE_SIZE")
        usage["system_total"] = f"{round(os.sysconf('SC_PHYS_PAGES') * page_size / _MB)}MB"
        usage["system_free"] = f"{round(os.sysconf('SC_AVPHYS_PAGES') * page_size / _MB)}MB"
    except (ValueError, OSError):
        pass
    return usage


class WorkerStats(BaseModel):
    """Job counters. ``jobs_processed == jobs_succeeded + jobs_failed`` always holds."""

    started_at: datetime = Field(default_factory=utcnow)
    jobs_processed: int = 0
    jobs_succeeded: int = 0
    jobs_failed: int = 0

    @property
    def success_rate(self) -> str:
        if self.jobs_processed == 0:
            return "N/A"
        return f"{round(self.jobs_succeeded / self.jobs_processed * 100)}%"

    def uptime_minutes(self) -> int:
        return round((utcnow() - self.started_at).total_seconds() / 60)

    def describe(self) -> str:
        return (
            f"uptime={self.uptime_minutes()}m processed={self.jobs_processed} "
            f"succeeded={self.jobs_succeeded} failed={self.jobs_failed} "
            f"success_rate={self.success_rate}"
        )


class RunnerWorker:
    """Consumes test-execution jobs and runs them through the step executor."""

    def __init__(
        self,
        queue_service: QueueService,
        artifact_store: ArtifactStore | None = None,
        *,
        browser: BrowserResource | None = None,
        executor: StepExecutor | None = None,
        concurrency: int | None = None,
        stats_interval_seconds: float | None = None,
    ):
        start = time.monotonic()
        self.queue_service = queue_service
        self.browser = browser or BrowserResource()
        if executor is None:
            executor = StepExecutor(self.browser, artifact_store or ArtifactStore())
        self.executor = executor
        self.concurrency = concurrency or settings.worker_concurrency
        self.stats_interval_seconds = stats_interval_seconds or settings.stats_interval_seconds
        self.stats = WorkerStats()
        self._stats_lock = asyncio.Lock()
        self._stats_task: asyncio.Task | None = None
        logger.info(
            f"RunnerWorker initialized in {(time.monotonic() - start) * 1000:.0f}ms, "
            f"memory: {memory_usage()}"
        )

    async def start(self) -> None:
        """Register the job processor and begin periodic stats reporting."""
        logger.info("Starting runner worker")
        await self.queue_service.create_worker(
            QUEUE_TEST_EXECUTION, self.process_job, concurrency=self.concurrency
        )
        if self._stats_task is None:
            self._stats_task = asyncio.create_task(self._report_stats())
        logger.info(f"Runner worker started on queue: {QUEUE_TEST_EXECUTION}")

    async def _report_stats(self) -> None:
        while True:
            await asyncio.sleep(self.stats_interval_seconds)
            self.log_stats("Worker stats")

    def log_stats(self, label: str) -> None:
        logger.info(f"{label}: {self.stats.describe()} memory={memory_usage()}")

    async def process_job(self, job: Job) -> ExecuteTestJobResult:
        """Run one scenario. Never raises once the payload is valid.

        Any result returned by the executor, whatever its status, counts as a
        succeeded job. An exception escaping the executor counts as a failed
        job and produces a synthetic ERROR result.
        """
        data = ExecuteTestJobData.model_validate(job.payload)
        scenario = data.scenario
        job_started_at = utcnow()
        logger.info(
            f"Processing test execution job {job.id}: test={data.test_id} run={data.run_id} "
            f"name={scenario.name!r} steps={len(scenario.steps)}"
        )

        try:
            result = await self.executor.execute_test(scenario, run_id=data.run_id)
        except Exception as e:
            error = JobError(str(e), job_id=job.id, run_id=data.run_id)
            logger.error(
                f"Error executing test {data.test_id} (run {data.run_id}, job {job.id}): {error}",
                exc_info=True,
            )
            await self._record(succeeded=False)
            return ExecuteTestJobResult(
                run_id=data.run_id,
                result=create_error_result(scenario, data.run_id, job_started_at),
            )

        await self._record(succeeded=True)
        logger.info(
            f"Test execution completed: run={data.run_id} status={result.status.value} "
            f"summary={result.summary.model_dump() if result.summary else None}"
        )
        return ExecuteTestJobResult(run_id=data.run_id, result=result)

    async def _record(self, succeeded: bool) -> None:
        async with self._stats_lock:
            self.stats.jobs_processed += 1
            if succeeded:
                self.stats.jobs_succeeded += 1
            else:
                self.stats.jobs_failed += 1

    async def stop(self) -> None:
        """Stop stats reporting and release the shared browser.

        The queue service is left open; the caller closes it afterwards.
        """
        logger.info("Stopping runner worker")
        if self._stats_task is not None:
            self._stats_task.cancel()
            try:
                await self._stats_task
            except asyncio.CancelledError:
                pass
            self._stats_task = None

        await self.browser.close()
        self.log_stats("Final worker stats")
        logger.info("Runner worker stopped")
