"""Run result models.

A ``RunResult`` is created with one PENDING ``StepResult`` per scenario step,
mutated in place by the step executor during a single execution, and
finalized once: status, end time and summary.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Literal

from pydantic import Field

from tramoya.models.base import CamelModel, utcnow
from tramoya.models.scenario import Scenario

LogLevel = Literal["debug", "info", "warn", "error"]


class RunStatus(str, enum.Enum):
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"


class StepStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    # Step that was in flight when the browsing session itself broke
    ERROR = "error"


class LogEntry(CamelModel):
    timestamp: datetime = Field(default_factory=utcnow)
    level: LogLevel
    message: str


class Screenshot(CamelModel):
    id: str
    step_id: str
    timestamp: datetime
    storage_key: str
    url: str | None = None


class StepErrorDetail(CamelModel):
    message: str
    stack: str | None = None


class StepResult(CamelModel):
    step_id: str
    status: StepStatus = StepStatus.PENDING
    start_time: datetime | None = None
    end_time: datetime | None = None
    logs: list[LogEntry] = Field(default_factory=list)
    screenshots: list[Screenshot] = Field(default_factory=list)
    error: StepErrorDetail | None = None

    @property
    def duration_ms(self) -> float | None:
        if self.start_time is None or self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds() * 1000


class ResultSummary(CamelModel):
    total_steps: int = 0
    passed_steps: int = 0
    failed_steps: int = 0
    skipped_steps: int = 0
    error_steps: int = 0
    duration_ms: int = 0


class RunResult(CamelModel):
    id: str
    scenario_id: str
    status: RunStatus = RunStatus.RUNNING
    start_time: datetime = Field(default_factory=utcnow)
    end_time: datetime | None = None
    step_results: list[StepResult] = Field(default_factory=list)
    summary: ResultSummary | None = None
    video_url: str | None = None
    trace_url: str | None = None


def new_run_id() -> str:
    return f"run_{uuid.uuid4()}"


def create_run_result(scenario: Scenario, run_id: str | None = None) -> RunResult:
    """Build a RUNNING result with one PENDING step result per step, in order."""
    return RunResult(
        id=run_id or new_run_id(),
        scenario_id=scenario.id,
        status=RunStatus.RUNNING,
        step_results=[StepResult(step_id=step.id) for step in scenario.steps],
    )


def update_run_summary(result: RunResult) -> ResultSummary:
    """Recompute the summary counts and duration from the step results."""
    counts = {status: 0 for status in StepStatus}
    for step_result in result.step_results:
        counts[step_result.status] += 1

    duration_ms = 0
    if result.end_time is not None:
        duration_ms = int((result.end_time - result.start_time).total_seconds() * 1000)

    result.summary = ResultSummary(
        total_steps=len(result.step_results),
        passed_steps=counts[StepStatus.PASSED],
        failed_steps=counts[StepStatus.FAILED],
        skipped_steps=counts[StepStatus.SKIPPED],
        error_steps=counts[StepStatus.ERROR],
        duration_ms=duration_ms,
    )
    return result.summary


def create_error_result(scenario: Scenario, run_id: str, started_at: datetime) -> RunResult:
    """Synthetic ERROR result for a run whose execution never returned.

    It carries no step results; every step of the scenario is reported as
    skipped in the summary.
    """
    ended_at = utcnow()
    return RunResult(
        id=run_id,
        scenario_id=scenario.id,
        status=RunStatus.ERROR,
        start_time=started_at,
        end_time=ended_at,
        step_results=[],
        summary=ResultSummary(
            total_steps=len(scenario.steps),
            skipped_steps=len(scenario.steps),
            duration_ms=int((ended_at - started_at).total_seconds() * 1000),
        ),
    )
