"""Runner process entry point.

Startup: Redis connection, bucket check (once), queue service, worker.
Shutdown on SIGINT/SIGTERM, in this order: worker stop (browser release),
queue service close, Redis close.
"""

from __future__ import annotations

import asyncio
import logging
import signal

from redis.asyncio import Redis

from tramoya.config import configure_logging, settings
from tramoya.infra.storage import ArtifactStore
from tramoya.queue.broker import RedisBroker
from tramoya.queue.service import QueueService
from tramoya.runner.worker import RunnerWorker

logger = logging.getLogger(__name__)


async def start_runner(redis: Redis) -> tuple[RunnerWorker, QueueService]:
    artifact_store = ArtifactStore()
    await artifact_store.ensure_bucket()

    queue_service = QueueService(RedisBroker(redis))
    worker = RunnerWorker(queue_service, artifact_store)
    await worker.start()
    logger.info("Runner service started")
    return worker, queue_service


async def shutdown(worker: RunnerWorker, queue_service: QueueService, redis: Redis) -> None:
    logger.info("Shutting down runner service")
    await worker.stop()
    await queue_service.close()
    await redis.aclose()
    logger.info("Runner service shut down")


async def run() -> None:
    logger.info(f"Starting runner service (redis: {settings.redis_url.split('@')[-1]})")
    redis = Redis.from_url(settings.redis_url, decode_responses=False)
    await redis.ping()
    worker, queue_service = await start_runner(redis)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await stop.wait()
    logger.info("Received shutdown signal")
    await shutdown(worker, queue_service, redis)


def main() -> None:
    configure_logging()
    asyncio.run(run())


if __name__ == "__main__":
    main()
