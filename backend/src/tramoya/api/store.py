"""Run record storage.

Run results are keyed by run id with last-write-wins semantics, so a
redelivered job overwrites its own record. Records expire after the run TTL.
"""

from __future__ import annotations

import logging
from typing import Protocol

from redis.asyncio import Redis

from tramoya.config import settings
from tramoya.models.result import RunResult

logger = logging.getLogger(__name__)


class RunRecords(Protocol):
    async def save(self, result: RunResult) -> None: ...
    async def get(self, run_id: str) -> RunResult | None: ...
    async def list(self) -> list[RunResult]: ...
    async def delete(self, run_id: str) -> bool: ...


def _newest_first(results: list[RunResult]) -> list[RunResult]:
    return sorted(results, key=lambda r: r.start_time, reverse=True)


class RunStore:
    """Redis-backed run records with TTL."""

    KEY_PREFIX = "tramoya:run:"
    INDEX_KEY = "tramoya:runs"

    def __init__(self, redis_client: Redis, ttl_seconds: int | None = None):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds or settings.run_ttl_seconds

    def _key(self, run_id: str) -> str:
        return f"{self.KEY_PREFIX}{run_id}"

    async def save(self, result: RunResult) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.setex(self._key(result.id), self.ttl_seconds, result.model_dump_json(by_alias=True))
            pipe.sadd(self.INDEX_KEY, result.id)
            await pipe.execute()
        logger.debug(f"Stored run {result.id} ({result.status.value}) with {self.ttl_seconds}s TTL")

    async def get(self, run_id: str) -> RunResult | None:
        raw = await self.redis.get(self._key(run_id))
        if raw is None:
            return None
        return RunResult.model_validate_json(raw)

    async def list(self) -> list[RunResult]:
        run_ids = sorted(
            (rid.decode("utf-8") if isinstance(rid, bytes) else rid)
            for rid in await self.redis.smembers(self.INDEX_KEY)
        )
        if not run_ids:
            return []
        raws = await self.redis.mget([self._key(rid) for rid in run_ids])

        results = []
        expired = []
        for run_id, raw in zip(run_ids, raws):
            if raw is None:
                expired.append(run_id)
            else:
                results.append(RunResult.model_validate_json(raw))
        if expired:
            await self.redis.srem(self.INDEX_KEY, *expired)
            logger.debug(f"Pruned {len(expired)} expired run(s) from index")
        return _newest_first(results)

    async def delete(self, run_id: str) -> bool:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._key(run_id))
            pipe.srem(self.INDEX_KEY, run_id)
            deleted, _ = await pipe.execute()
        return bool(deleted)


class InMemoryRunStore:
    """Process-local run records, used when Redis is unavailable."""

    def __init__(self) -> None:
        self._runs: dict[str, str] = {}

    async def save(self, result: RunResult) -> None:
        self._runs[result.id] = result.model_dump_json(by_alias=True)

    async def get(self, run_id: str) -> RunResult | None:
        raw = self._runs.get(run_id)
        return RunResult.model_validate_json(raw) if raw is not None else None

    async def list(self) -> list[RunResult]:
        return _newest_first([RunResult.model_validate_json(raw) for raw in self._runs.values()])

    async def delete(self, run_id: str) -> bool:
        return self._runs.pop(run_id, None) is not None
