from tramoya.runner.errors import (
    ArtifactStoreError,
    JobError,
    QueueError,
    RunnerError,
    StepError,
    TramoyaError,
)

__all__ = [
    "TramoyaError",
    "StepError",
    "RunnerError",
    "JobError",
    "QueueError",
    "ArtifactStoreError",
]
