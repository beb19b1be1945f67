from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis

from tramoya.api.routes import router as runs_router
from tramoya.api.state import app_state
from tramoya.api.store import InMemoryRunStore, RunStore
from tramoya.config import configure_logging, settings
from tramoya.infra.storage import ArtifactStore
from tramoya.queue import InMemoryBroker, RedisBroker
from tramoya.queue.service import QueueService
from tramoya.runner.worker import RunnerWorker

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    configure_logging()

    logger.info("Initializing Redis connection...")
    try:
        app_state.redis = Redis.from_url(settings.redis_url, decode_responses=False)
        await app_state.redis.ping()
        logger.info(f"✓ Redis connected: {settings.redis_url.split('@')[-1]}")
        app_state.queue_service = QueueService(RedisBroker(app_state.redis))
        app_state.run_store = RunStore(app_state.redis)
    except Exception as e:
        logger.warning(f"Redis unavailable, using in-process queue and run store: {e}")
        app_state.redis = None
        app_state.queue_service = QueueService(InMemoryBroker())
        app_state.run_store = InMemoryRunStore()

    app_state.artifact_store = ArtifactStore()
    try:
        await app_state.artifact_store.ensure_bucket()
        logger.info(f"✓ Artifact bucket ready: {app_state.artifact_store.bucket}")
    except Exception as e:
        logger.warning(f"Artifact storage unavailable, screenshots will not be stored: {e}")

    # Without Redis no external runner can see the queue, so run one in-process
    if settings.embedded_worker or app_state.redis is None:
        app_state.worker = RunnerWorker(app_state.queue_service, app_state.artifact_store)
        await app_state.worker.start()
        logger.info("✓ Embedded runner worker started")

    yield

    logger.info("Shutting down...")
    if app_state.worker:
        await app_state.worker.stop()
        app_state.worker = None
    await app_state.queue_service.close()
    if app_state.redis:
        await app_state.redis.aclose()
        logger.info("✓ Redis connection closed")


app = FastAPI(
    title="Tramoya - Browser Test Runner",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(runs_router, prefix="/api")
