"""Scenario step executor.

Runs one scenario against one isolated browsing context and records a
detailed result tree:

1. Build a RUNNING result with one PENDING step result per step
2. Open a fresh browser context and page from the shared browser
3. Run steps in order; the first failing step is FAILED, gets an "error"
   screenshot, and every later step is SKIPPED without being run
4. A fault in the browsing session itself turns the whole run into ERROR
5. Always close the context, stamp the end time and recompute the summary
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
import tempfile
import traceback
import uuid
from pathlib import Path
from typing import Any, assert_never

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from tramoya.config import settings
from tramoya.infra.browser import BrowserResource
from tramoya.infra.storage import ArtifactStore, run_artifact_name
from tramoya.models.base import utcnow
from tramoya.models.result import (
    LogEntry,
    LogLevel,
    RunResult,
    RunStatus,
    Screenshot,
    StepErrorDetail,
    StepResult,
    StepStatus,
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
    WaitStep,
)
from tramoya.runner.errors import RunnerError, StepError

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]")

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


class StepExecutor:
    """Executes scenarios step by step using Playwright."""

    def __init__(
        self,
        browser: BrowserResource,
        artifact_store: ArtifactStore,
        *,
        step_timeout_ms: int | None = None,
        screenshot_dir: str | Path | None = None,
        record_video: bool | None = None,
        record_trace: bool | None = None,
    ):
        self.browser = browser
        self.artifact_store = artifact_store
        self.step_timeout_ms = step_timeout_ms or settings.step_timeout_ms
        self.screenshot_dir = Path(
            screenshot_dir or settings.screenshot_dir or tempfile.gettempdir()
        )
        self.screenshot_dir.mkdir(parents=True, exist_ok=True)
        self.record_video = settings.record_video if record_video is None else record_video
        self.record_trace = settings.record_trace if record_trace is None else record_trace

    async def execute_test(self, scenario: Scenario, run_id: str | None = None) -> RunResult:
        """Run every step of ``scenario`` and return the finalized result.

        Step failures and browser faults are recorded in the result; only
        cancellation escapes.
        """
        result = create_run_result(scenario, run_id)
        run_id = result.id
        logger.info(f"Executing test {scenario.id} - {scenario.name} (run {run_id})")

        artifacts_dir = Path(tempfile.mkdtemp(prefix="tramoya-")) if self._records_artifacts else None
        context = None
        page: Page | None = None
        current: int | None = None

        try:
            context = await self.browser.new_context(**self._context_options(artifacts_dir))
            if self.record_trace:
                await context.tracing.start(screenshots=True, snapshots=True)
            page = await context.new_page()

            for index, step in enumerate(scenario.steps):
                current = index
                step_result = result.step_results[index]
                step_result.status = StepStatus.RUNNING
                step_result.start_time = utcnow()

                try:
                    await self._run_step(page, step, step_result, run_id)
                except StepError as e:
                    await self._fail_step(page, step, step_result, e, run_id)
                    _skip_remaining(result)
                    result.status = RunStatus.FAILED
                    break

                step_result.status = StepStatus.PASSED
                step_result.end_time = utcnow()

            current = None
            if result.status == RunStatus.RUNNING:
                result.status = RunStatus.PASSED

        except Exception as e:
            logger.error(f"Error executing test run {run_id}: {e}", exc_info=True)
            result.status = RunStatus.ERROR
            if current is not None:
                step_result = result.step_results[current]
                step_result.status = StepStatus.ERROR
                step_result.error = StepErrorDetail(message=str(e), stack=traceback.format_exc())
                step_result.end_time = utcnow()
                self._add_log(step_result, "error", f"Run aborted: {e}")
            _skip_remaining(result)

        finally:
            if context is not None:
                await self._close_context(context, page, result, artifacts_dir)
            if artifacts_dir is not None:
                shutil.rmtree(artifacts_dir, ignore_errors=True)
            result.end_time = utcnow()
            update_run_summary(result)

        logger.info(f"Test run {run_id} finished with status {result.status.value}")
        return result

    @property
    def _records_artifacts(self) -> bool:
        return self.record_video or self.record_trace

    def _context_options(self, artifacts_dir: Path | None) -> dict[str, Any]:
        viewport = {"width": settings.viewport_width, "height": settings.viewport_height}
        options: dict[str, Any] = {"viewport": viewport}
        if self.record_video and artifacts_dir is not None:
            options["record_video_dir"] = str(artifacts_dir)
            options["record_video_size"] = viewport
        return options

    async def _run_step(self, page: Page, step: Step, step_result: StepResult, run_id: str) -> None:
        """Run one step under the step timeout, translating driver errors."""
        self._add_log(step_result, "info", f"Executing step: {step.type}")
        timeout = self._timeout_seconds(step)
        try:
            await asyncio.wait_for(self._dispatch(page, step, step_result, run_id), timeout)
        except StepError:
            raise
        except asyncio.TimeoutError as e:
            if _session_lost(page):
                raise RunnerError(f"Browser session lost during step {step.id}") from e
            raise StepError(f"Step timed out after {timeout:g}s", step_id=step.id) from e
        except PlaywrightError as e:
            if _session_lost(page):
                raise RunnerError(f"Browser session lost during step {step.id}: {e}") from e
            raise StepError(e.message, step_id=step.id) from e

        if step.take_screenshot:
            await self.take_screenshot(page, step.id, step_result, "step", run_id)

    def _timeout_seconds(self, step: Step) -> float:
        timeout_ms = self.step_timeout_ms
        if isinstance(step, WaitStep):
            timeout_ms += step.milliseconds
        return timeout_ms / 1000

    async def _dispatch(self, page: Page, step: Step, step_result: StepResult, run_id: str) -> None:
        if isinstance(step, NavigateStep):
            await self._navigate(page, step, step_result)
        elif isinstance(step, InputStep):
            await self._input(page, step, step_result)
        elif isinstance(step, ClickStep):
            await self._click(page, step, step_result)
        elif isinstance(step, AssertTextStep):
            await self._assert_text(page, step, step_result)
        elif isinstance(step, AssertVisibleStep):
            await self._assert_visible(page, step, step_result)
        elif isinstance(step, WaitStep):
            await self._wait(step, step_result)
        elif isinstance(step, AssertUrlStep):
            self._assert_url(page, step, step_result)
        elif isinstance(step, ScreenshotStep):
            await self._screenshot(page, step, step_result, run_id)
        else:
            assert_never(step)

    async def _navigate(self, page: Page, step: NavigateStep, step_result: StepResult) -> None:
        self._add_log(step_result, "info", f"Navigating to: {step.url}")
        await page.goto(step.url, timeout=self.step_timeout_ms)
        self._add_log(step_result, "info", "Navigation complete")

    async def _input(self, page: Page, step: InputStep, step_result: StepResult) -> None:
        self._add_log(step_result, "info", f"Entering text into selector: {step.selector}")
        await page.fill(step.selector, step.text, timeout=self.step_timeout_ms)
        self._add_log(step_result, "info", "Text entered")

    async def _click(self, page: Page, step: ClickStep, step_result: StepResult) -> None:
        self._add_log(step_result, "info", f"Clicking on selector: {step.selector}")
        await page.click(step.selector, timeout=self.step_timeout_ms)
        self._add_log(step_result, "info", "Click performed")

    async def _assert_text(self, page: Page, step: AssertTextStep, step_result: StepResult) -> None:
        self._add_log(step_result, "info", f"Asserting text in selector: {step.selector}")
        element = await page.query_selector(step.selector)
        if element is None:
            raise StepError(f"Element not found: {step.selector}", step_id=step.id)

        text = await element.text_content()
        if step.exact_match:
            if text != step.text:
                raise StepError(
                    f'Text does not match. Expected: "{step.text}", Actual: "{text}"',
                    step_id=step.id,
                )
        elif text is None or step.text not in text:
            raise StepError(
                f'Text not found. Expected to contain: "{step.text}", Actual: "{text}"',
                step_id=step.id,
            )
        self._add_log(step_result, "info", "Text assertion passed")

    async def _assert_visible(
        self, page: Page, step: AssertVisibleStep, step_result: StepResult
    ) -> None:
        self._add_log(step_result, "info", f"Asserting visibility of selector: {step.selector}")
        visible = await page.is_visible(step.selector)
        if visible != step.expected_visible:
            raise StepError(
                f"Visibility assertion failed. Expected: {step.expected_visible}, Actual: {visible}",
                step_id=step.id,
            )
        self._add_log(step_result, "info", "Visibility assertion passed")

    async def _wait(self, step: WaitStep, step_result: StepResult) -> None:
        self._add_log(step_result, "info", f"Waiting for {step.milliseconds}ms")
        await asyncio.sleep(step.milliseconds / 1000)
        self._add_log(step_result, "info", "Wait complete")

    def _assert_url(self, page: Page, step: AssertUrlStep, step_result: StepResult) -> None:
        self._add_log(step_result, "info", "Asserting URL")
        current_url = page.url
        if step.exact_match:
            if current_url != step.url:
                raise StepError(
                    f'URL does not match. Expected: "{step.url}", Actual: "{current_url}"',
                    step_id=step.id,
                )
        elif step.url not in current_url:
            raise StepError(
                f'URL does not contain expected value. Expected to contain: "{step.url}", '
                f'Actual: "{current_url}"',
                step_id=step.id,
            )
        self._add_log(step_result, "info", "URL assertion passed")

    async def _screenshot(
        self, page: Page, step: ScreenshotStep, step_result: StepResult, run_id: str
    ) -> None:
        self._add_log(step_result, "info", "Taking screenshot")
        await self.take_screenshot(page, step.id, step_result, step.label or "manual", run_id)
        self._add_log(step_result, "info", "Screenshot taken")

    async def _fail_step(
        self, page: Page, step: Step, step_result: StepResult, error: StepError, run_id: str
    ) -> None:
        step_result.status = StepStatus.FAILED
        step_result.error = StepErrorDetail(
            message=str(error),
            stack="".join(traceback.format_exception(error)),
        )
        self._add_log(step_result, "error", f"Step failed: {error}")
        await self.take_screenshot(page, step.id, step_result, "error", run_id)
        step_result.end_time = utcnow()
        logger.info(f"Step {step.id} failed in run {run_id}: {error}")

    async def take_screenshot(
        self,
        page: Page,
        step_id: str,
        step_result: StepResult,
        label: str,
        run_id: str,
    ) -> Screenshot | None:
        """Capture, upload and record a screenshot. Best-effort: never raises."""
        timestamp = utcnow()
        filename = f"{_safe_name(step_id)}_{_safe_name(label)}_{int(timestamp.timestamp() * 1000)}.png"
        object_name = f"screenshots/{filename}"
        local_path = self.screenshot_dir / filename

        try:
            await page.screenshot(path=str(local_path))
            await self.artifact_store.upload_file(local_path, object_name)
            url = self.artifact_store.get_public_url(object_name)
        except Exception as e:
            logger.error(f"Error taking screenshot {object_name} for run {run_id}: {e}")
            self._add_log(step_result, "warn", f"Screenshot '{label}' could not be stored: {e}")
            return None
        finally:
            local_path.unlink(missing_ok=True)

        screenshot = Screenshot(
            id=str(uuid.uuid4()),
            step_id=step_id,
            timestamp=timestamp,
            storage_key=object_name,
            url=url,
        )
        step_result.screenshots.append(screenshot)
        return screenshot

    async def _close_context(
        self, context: Any, page: Page | None, result: RunResult, artifacts_dir: Path | None
    ) -> None:
        """Stop tracing, close the context and upload run-level artifacts."""
        trace_path = artifacts_dir / "trace.zip" if artifacts_dir is not None else None
        video = page.video if page is not None and self.record_video else None

        if self.record_trace and trace_path is not None:
            try:
                await context.tracing.stop(path=str(trace_path))
            except PlaywrightError as e:
                logger.warning(f"Could not stop tracing for run {result.id}: {e}")

        try:
            await context.close()
        except PlaywrightError as e:
            logger.warning(f"Error closing browser context for run {result.id}: {e}")

        if video is not None:
            try:
                video_path = Path(await video.path())
            except PlaywrightError as e:
                logger.warning(f"Video unavailable for run {result.id}: {e}")
            else:
                result.video_url = await self._upload_run_artifact(
                    video_path, run_artifact_name(result.id, "video")
                )

        if trace_path is not None and trace_path.exists():
            result.trace_url = await self._upload_run_artifact(
                trace_path, run_artifact_name(result.id, "trace")
            )

    async def _upload_run_artifact(self, path: Path, object_name: str) -> str | None:
        if not path.exists():
            return None
        try:
            await self.artifact_store.upload_file(path, object_name)
        except Exception as e:
            logger.error(f"Error uploading {object_name}: {e}")
            return None
        return self.artifact_store.get_public_url(object_name)

    @staticmethod
    def _add_log(step_result: StepResult, level: LogLevel, message: str) -> None:
        step_result.logs.append(LogEntry(level=level, message=message))
        logger.log(_LOG_LEVELS[level], message)


def _safe_name(value: str) -> str:
    """Reduce user-supplied ids and labels to a single path segment."""
    return _UNSAFE_NAME_CHARS.sub("_", value).strip(".") or "_"


def _skip_remaining(result: RunResult) -> None:
    for step_result in result.step_results:
        if step_result.status == StepStatus.PENDING:
            step_result.status = StepStatus.SKIPPED


def _session_lost(page: Page) -> bool:
    if page.is_closed():
        return True
    browser = page.context.browser
    return browser is not None and not browser.is_connected()
