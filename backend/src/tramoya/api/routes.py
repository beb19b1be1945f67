"""Run submission and retrieval routes.

A submitted scenario becomes a RUNNING run record plus an ``execute-test``
job whose id is the run id. Workers publish finished results through the
queue; a read of a still-running record picks them up and persists them.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import AliasChoices, Field
from redis.exceptions import RedisError

from tramoya.api.state import AppState, get_state
from tramoya.infra.storage import RUN_ARTIFACTS, run_artifact_name
from tramoya.models.base import CamelModel
from tramoya.models.job import QUEUE_TEST_EXECUTION, ExecuteTestJobData, ExecuteTestJobResult, JobType
from tramoya.models.result import RunResult, RunStatus, create_run_result, new_run_id
from tramoya.models.scenario import Scenario
from tramoya.runner.errors import ArtifactStoreError, QueueError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["runs"])


class CreateRunRequest(CamelModel):
    test_id: str
    scenario: Scenario = Field(validation_alias=AliasChoices("scenario", "testScenario"))


def _require(state: AppState) -> AppState:
    if state.run_store is None or state.queue_service is None:
        raise HTTPException(status_code=503, detail="Run service not initialized")
    return state


@router.post("/runs", status_code=201)
async def create_run(request: CreateRunRequest, state: AppState = Depends(get_state)) -> dict[str, Any]:
    """Record a new run and enqueue it for execution."""
    state = _require(state)
    run_id = new_run_id()
    result = create_run_result(request.scenario, run_id)
    try:
        await state.run_store.save(result)
    except RedisError as e:
        logger.error(f"Could not store run {run_id}: {e}")
        raise HTTPException(status_code=503, detail="Run storage unavailable")

    payload = ExecuteTestJobData(test_id=request.test_id, run_id=run_id, scenario=request.scenario)
    try:
        await state.queue_service.add_job(
            QUEUE_TEST_EXECUTION,
            JobType.EXECUTE_TEST.value,
            payload.to_wire(),
            job_id=run_id,
        )
    except QueueError as e:
        await state.run_store.delete(run_id)
        raise HTTPException(status_code=503, detail=f"Could not queue run: {e}")

    logger.info(f"Run {run_id} queued for test {request.test_id} ({len(request.scenario.steps)} steps)")
    return {
        "message": "Test execution started",
        "runId": run_id,
        "result": result.to_wire(),
    }


@router.get("/runs")
async def list_runs(state: AppState = Depends(get_state)) -> list[dict[str, Any]]:
    """List stored runs, newest first."""
    state = _require(state)
    return [result.to_wire() for result in await state.run_store.list()]


async def _load_run(state: AppState, run_id: str) -> RunResult:
    result = await state.run_store.get(run_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Run not found")
    if result.status != RunStatus.RUNNING:
        return result

    try:
        job_result = await state.queue_service.get_job_result(QUEUE_TEST_EXECUTION, run_id)
    except QueueError as e:
        logger.warning(f"Could not check job result for run {run_id}: {e}")
        return result
    if job_result is None:
        return result

    completed = ExecuteTestJobResult.model_validate(job_result).result
    await state.run_store.save(completed)
    logger.info(f"Run {run_id} completed with status {completed.status.value}")
    return completed


@router.get("/runs/{run_id}")
async def get_run(run_id: str, state: AppState = Depends(get_state)) -> dict[str, Any]:
    state = _require(state)
    return (await _load_run(state, run_id)).to_wire()


@router.delete("/runs/{run_id}", status_code=204)
async def delete_run(run_id: str, state: AppState = Depends(get_state)) -> Response:
    state = _require(state)
    if not await state.run_store.delete(run_id):
        raise HTTPException(status_code=404, detail="Run not found")
    return Response(status_code=204)


@router.get("/runs/{run_id}/artifacts/{artifact_type}")
async def get_run_artifact(
    run_id: str, artifact_type: str, state: AppState = Depends(get_state)
) -> dict[str, str]:
    """Presigned download URL for a recorded video or trace."""
    state = _require(state)
    if artifact_type not in RUN_ARTIFACTS:
        raise HTTPException(status_code=400, detail=f"Unknown artifact type: {artifact_type}")

    result = await _load_run(state, run_id)
    recorded = result.video_url if artifact_type == "video" else result.trace_url
    if recorded is None:
        raise HTTPException(status_code=404, detail=f"No {artifact_type} recorded for run")
    if state.artifact_store is None:
        raise HTTPException(status_code=503, detail="Artifact storage not initialized")

    try:
        url = await state.artifact_store.get_presigned_url(run_artifact_name(run_id, artifact_type))
    except ArtifactStoreError as e:
        logger.error(f"Could not presign {artifact_type} for run {run_id}: {e}")
        raise HTTPException(status_code=503, detail="Artifact storage unavailable")
    return {"url": url}


@router.get("/health")
async def health(state: AppState = Depends(get_state)) -> dict[str, Any]:
    return {
        "status": "ok",
        "redis": state.redis is not None,
        "embeddedWorker": state.worker is not None,
    }
