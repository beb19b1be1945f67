"""Job queue models."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, Field

from tramoya.models.base import CamelModel, utcnow
from tramoya.models.result import RunResult
from tramoya.models.scenario import Scenario

QUEUE_TEST_EXECUTION = "test-execution"


class JobType(str, enum.Enum):
    EXECUTE_TEST = "execute-test"


class JobState(str, enum.Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


class Job(BaseModel):
    """One queued delivery. Owned by the queue runtime; ephemeral."""

    id: str
    queue_name: str
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    max_attempts: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    failed_reason: str | None = None


class ExecuteTestJobData(CamelModel):
    test_id: str
    run_id: str
    scenario: Scenario = Field(validation_alias=AliasChoices("scenario", "testScenario"))


class ExecuteTestJobResult(CamelModel):
    run_id: str
    result: RunResult = Field(validation_alias=AliasChoices("result", "testResult"))
