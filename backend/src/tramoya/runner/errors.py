"""Error taxonomy for scenario execution and job processing."""

from __future__ import annotations


class TramoyaError(Exception):
    """Base class for all tramoya errors."""


class StepError(TramoyaError):
    """Expected step failure: assertion mismatch, missing selector, navigation error.

    Converted into ``StepResult.error`` plus the skip cascade; never escapes
    ``StepExecutor.execute_test``.
    """

    def __init__(self, message: str, step_id: str | None = None):
        super().__init__(message)
        self.step_id = step_id


class RunnerError(TramoyaError):
    """Fault in the browser driving layer that is not tied to a step outcome."""


class JobError(TramoyaError):
    """An exception escaped the step executor while processing a job."""

    def __init__(self, message: str, job_id: str, run_id: str | None = None):
        super().__init__(message)
        self.job_id = job_id
        self.run_id = run_id


class QueueError(TramoyaError):
    """Broker or connectivity failure in the job queue."""


class ArtifactStoreError(TramoyaError):
    """Upload or URL generation against the artifact store failed."""
