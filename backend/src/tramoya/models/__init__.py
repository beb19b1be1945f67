from tramoya.models.job import (
    QUEUE_TEST_EXECUTION,
    ExecuteTestJobData,
    ExecuteTestJobResult,
    Job,
    JobState,
    JobType,
)
from tramoya.models.result import (
    LogEntry,
    ResultSummary,
    RunResult,
    RunStatus,
    Screenshot,
    StepErrorDetail,
    StepResult,
    StepStatus,
    create_error_result,
    create_run_result,
    update_run_summary,
)
from tramoya.models.scenario import (
    AssertTextStep,
    AssertUrlStep,
    AssertVisibleStep,
    ClickStep,
    InputStep,
    NavigateStep,
    Scenario,
    ScreenshotStep,
    Step,
    StepType,
    WaitStep,
)

__all__ = [
    "Scenario",
    "Step",
    "StepType",
    "NavigateStep",
    "InputStep",
    "ClickStep",
    "AssertTextStep",
    "AssertVisibleStep",
    "WaitStep",
    "AssertUrlStep",
    "ScreenshotStep",
    "RunResult",
    "RunStatus",
    "StepResult",
    "StepStatus",
    "StepErrorDetail",
    "LogEntry",
    "Screenshot",
    "ResultSummary",
    "create_run_result",
    "create_error_result",
    "update_run_summary",
    "Job",
    "JobState",
    "JobType",
    "ExecuteTestJobData",
    "ExecuteTestJobResult",
    "QUEUE_TEST_EXECUTION",
]
