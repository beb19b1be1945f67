"""Application state shared by the API routes."""

from __future__ import annotations

from redis.asyncio import Redis

from tramoya.api.store import RunRecords
from tramoya.infra.storage import ArtifactStore
from tramoya.queue.service import QueueService
from tramoya.runner.worker import RunnerWorker


class AppState:
    """Global application state for dependency injection."""
    redis: Redis | None = None
    queue_service: QueueService | None = None
    run_store: RunRecords | None = None
    artifact_store: ArtifactStore | None = None
    worker: RunnerWorker | None = None


app_state = AppState()


def get_state() -> AppState:
    return app_state
