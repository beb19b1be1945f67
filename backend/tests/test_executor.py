"""Tests for StepExecutor against the fake Playwright page."""

from __future__ import annotations

import time

import pytest

from tramoya.models import RunStatus, Scenario, StepStatus
from tramoya.runner.errors import RunnerError
from tramoya.runner.executor import StepExecutor

from conftest import FakeElement


def _scenario(*steps: dict, scenario_id: str = "scn-1") -> Scenario:
    return Scenario.model_validate({"id": scenario_id, "name": "Scenario", "steps": list(steps)})


def _statuses(result) -> list[StepStatus]:
    return [s.status for s in result.step_results]


# ─────────────────────── happy path ───────────────────────


class TestPassingRuns:
    @pytest.mark.asyncio
    async def test_all_steps_pass(self, executor, fake_browser):
        fake_browser.elements.update({
            "#email": FakeElement(),
            "#submit": FakeElement(navigates_to="https://example.com/dashboard"),
            "h1": FakeElement(text="Welcome back, Ada"),
        })
        scenario = _scenario(
            {"id": "s1", "type": "navigate", "url": "https://example.com/login"},
            {"id": "s2", "type": "input", "selector": "#email", "text": "ada@example.com"},
            {"id": "s3", "type": "click", "selector": "#submit"},
            {"id": "s4", "type": "assertUrl", "url": "/dashboard"},
            {"id": "s5", "type": "assertText", "selector": "h1", "text": "Welcome"},
            {"id": "s6", "type": "assertVisible", "selector": "h1"},
            {"id": "s7", "type": "assertVisible", "selector": "#spinner", "expectedVisible": False},
        )

        result = await executor.execute_test(scenario, run_id="run_ok")

        assert result.id == "run_ok"
        assert result.scenario_id == "scn-1"
        assert result.status == RunStatus.PASSED
        assert _statuses(result) == [StepStatus.PASSED] * 7
        assert result.summary.passed_steps == 7
        assert result.summary.total_steps == 7
        assert result.end_time >= result.start_time
        assert fake_browser.elements["#email"].text == "ada@example.com"

    @pytest.mark.asyncio
    async def test_step_results_carry_logs_and_times(self, executor):
        result = await executor.execute_test(
            _scenario({"id": "s1", "type": "navigate", "url": "https://example.com"})
        )
        step = result.step_results[0]
        messages = [entry.message for entry in step.logs]
        assert messages[0] == "Executing step: navigate"
        assert "Navigating to: https://example.com" in messages
        assert step.start_time is not None and step.end_time >= step.start_time

    @pytest.mark.asyncio
    async def test_empty_scenario_passes(self, executor):
        result = await executor.execute_test(_scenario())
        assert result.status == RunStatus.PASSED
        assert result.summary.total_steps == 0

    @pytest.mark.asyncio
    async def test_wait_lasts_at_least_its_duration(self, executor):
        scenario = _scenario({"id": "w", "type": "wait", "milliseconds": 500})
        started = time.monotonic()
        result = await executor.execute_test(scenario)
        elapsed = time.monotonic() - started

        assert result.status == RunStatus.PASSED
        assert elapsed >= 0.5
        assert result.step_results[0].duration_ms >= 500

    @pytest.mark.asyncio
    async def test_wait_longer_than_step_timeout(self, browser_resource, artifact_store, tmp_path):
        executor = StepExecutor(
            browser_resource, artifact_store, step_timeout_ms=100, screenshot_dir=tmp_path
        )
        result = await executor.execute_test(_scenario({"id": "w", "type": "wait", "milliseconds": 300}))
        assert result.status == RunStatus.PASSED


# ─────────────────────── failures ───────────────────────


class TestStepFailure:
    @pytest.mark.asyncio
    async def test_failing_step_skips_the_rest(self, executor, fake_browser, artifact_store):
        fake_browser.elements["h1"] = FakeElement(text="Hello")
        scenario = _scenario(
            {"id": "s1", "type": "navigate", "url": "https://example.com"},
            {"id": "s2", "type": "click", "selector": "#missing"},
            {"id": "s3", "type": "assertText", "selector": "h1", "text": "Hello"},
        )

        result = await executor.execute_test(scenario, run_id="run_fail")

        assert result.status == RunStatus.FAILED
        assert _statuses(result) == [StepStatus.PASSED, StepStatus.FAILED, StepStatus.SKIPPED]
        failed = result.step_results[1]
        assert "#missing" in failed.error.message
        assert failed.error.stack
        assert len(failed.screenshots) == 1
        assert failed.screenshots[0].storage_key.startswith("screenshots/s2_error_")
        assert failed.screenshots[0].url == f"/storage/{failed.screenshots[0].storage_key}"
        assert failed.logs[-1].level == "error"
        assert result.step_results[2].start_time is None
        assert (result.summary.passed_steps, result.summary.failed_steps, result.summary.skipped_steps) == (1, 1, 1)
        assert result.summary.total_steps == 3
        assert result.summary.error_steps == 0
        assert list(artifact_store.objects) == [failed.screenshots[0].storage_key]

    @pytest.mark.asyncio
    async def test_exact_text_mismatch(self, executor, fake_browser):
        fake_browser.elements["h1"] = FakeElement(text="Welcome back")
        result = await executor.execute_test(
            _scenario({"id": "t", "type": "assertText", "selector": "h1", "text": "Welcome", "exactMatch": True})
        )
        assert result.status == RunStatus.FAILED
        assert result.step_results[0].error.message == (
            'Text does not match. Expected: "Welcome", Actual: "Welcome back"'
        )

    @pytest.mark.asyncio
    async def test_assert_text_missing_element(self, executor):
        result = await executor.execute_test(
            _scenario({"id": "t", "type": "assertText", "selector": ".nope", "text": "x"})
        )
        assert result.step_results[0].error.message == "Element not found: .nope"

    @pytest.mark.asyncio
    async def test_visibility_mismatch(self, executor, fake_browser):
        fake_browser.elements["#modal"] = FakeElement(visible=False)
        result = await executor.execute_test(
            _scenario({"id": "v", "type": "assertVisible", "selector": "#modal"})
        )
        assert result.step_results[0].error.message == (
            "Visibility assertion failed. Expected: True, Actual: False"
        )

    @pytest.mark.asyncio
    async def test_exact_url_mismatch(self, executor):
        result = await executor.execute_test(_scenario(
            {"id": "n", "type": "navigate", "url": "https://example.com/a"},
            {"id": "u", "type": "assertUrl", "url": "https://example.com/b", "exactMatch": True},
        ))
        assert _statuses(result) == [StepStatus.PASSED, StepStatus.FAILED]

    @pytest.mark.asyncio
    async def test_navigation_error_is_a_step_failure(self, executor, fake_browser):
        fake_browser.unreachable.add("https://nowhere.invalid")
        result = await executor.execute_test(
            _scenario({"id": "n", "type": "navigate", "url": "https://nowhere.invalid"})
        )
        assert result.status == RunStatus.FAILED
        assert "ERR_NAME_NOT_RESOLVED" in result.step_results[0].error.message

    @pytest.mark.asyncio
    async def test_step_timeout_is_a_step_failure(self, browser_resource, artifact_store, fake_browser, tmp_path):
        fake_browser.elements["#slow"] = FakeElement()
        fake_browser.hang_on.add("#slow")
        executor = StepExecutor(
            browser_resource, artifact_store, step_timeout_ms=100, screenshot_dir=tmp_path
        )
        result = await executor.execute_test(_scenario(
            {"id": "c", "type": "click", "selector": "#slow"},
            {"id": "w", "type": "wait", "milliseconds": 1},
        ))
        assert result.status == RunStatus.FAILED
        assert _statuses(result) == [StepStatus.FAILED, StepStatus.SKIPPED]
        assert "timed out" in result.step_results[0].error.message


# ─────────────────────── session faults ───────────────────────


class TestSessionFault:
    @pytest.mark.asyncio
    async def test_lost_browser_is_an_error(self, executor, fake_browser):
        fake_browser.elements["#boom"] = FakeElement()
        fake_browser.crash_on.add("#boom")
        result = await executor.execute_test(_scenario(
            {"id": "s1", "type": "navigate", "url": "https://example.com"},
            {"id": "s2", "type": "click", "selector": "#boom"},
            {"id": "s3", "type": "wait", "milliseconds": 1},
        ))
        assert result.status == RunStatus.ERROR
        assert _statuses(result) == [StepStatus.PASSED, StepStatus.ERROR, StepStatus.SKIPPED]
        assert result.summary.error_steps == 1
        assert result.end_time is not None

    @pytest.mark.asyncio
    async def test_context_creation_failure_is_an_error(self, browser_resource, artifact_store, tmp_path):
        async def broken_launcher():
            raise RuntimeError("Executable doesn't exist")

        browser_resource._launcher = broken_launcher
        executor = StepExecutor(browser_resource, artifact_store, screenshot_dir=tmp_path)
        result = await executor.execute_test(_scenario({"id": "s1", "type": "wait", "milliseconds": 1}))

        assert result.status == RunStatus.ERROR
        assert _statuses(result) == [StepStatus.SKIPPED]

    @pytest.mark.asyncio
    async def test_context_closed_on_every_outcome(self, executor, fake_browser):
        fake_browser.elements["#boom"] = FakeElement()
        fake_browser.crash_on.add("#boom")
        await executor.execute_test(_scenario({"id": "a", "type": "navigate", "url": "https://example.com"}))
        await executor.execute_test(_scenario({"id": "b", "type": "click", "selector": "#missing"}))
        fake_browser.connected = True
        await executor.execute_test(_scenario({"id": "c", "type": "click", "selector": "#boom"}))

        assert len(fake_browser.contexts) == 3
        assert all(context.closed for context in fake_browser.contexts)


# ─────────────────────── screenshots and artifacts ───────────────────────


class TestScreenshots:
    @pytest.mark.asyncio
    async def test_screenshot_step_and_capture_on_success(self, executor, artifact_store):
        result = await executor.execute_test(_scenario(
            {"id": "home", "type": "navigate", "url": "https://example.com", "takeScreenshot": True},
            {"id": "shot", "type": "screenshot", "label": "landing"},
            {"id": "plain", "type": "screenshot"},
        ))

        assert result.status == RunStatus.PASSED
        keys = [s.screenshots[0].storage_key for s in result.step_results]
        assert keys[0].startswith("screenshots/home_step_")
        assert keys[1].startswith("screenshots/shot_landing_")
        assert keys[2].startswith("screenshots/plain_manual_")
        assert set(keys) == set(artifact_store.objects)

    @pytest.mark.asyncio
    async def test_upload_failure_is_absorbed(self, executor, artifact_store):
        artifact_store.fail_uploads = True
        result = await executor.execute_test(_scenario(
            {"id": "shot", "type": "screenshot"},
            {"id": "s2", "type": "navigate", "url": "https://example.com"},
        ))

        assert result.status == RunStatus.PASSED
        shot = result.step_results[0]
        assert shot.screenshots == []
        assert any(entry.level == "warn" for entry in shot.logs)

    @pytest.mark.asyncio
    async def test_capture_failure_does_not_mask_step_error(self, executor, fake_browser):
        fake_browser.screenshot_error = True
        result = await executor.execute_test(_scenario({"id": "c", "type": "click", "selector": "#missing"}))
        assert result.status == RunStatus.FAILED
        assert "#missing" in result.step_results[0].error.message

    @pytest.mark.asyncio
    async def test_step_id_cannot_escape_screenshot_dir(self, executor, artifact_store, tmp_path):
        result = await executor.execute_test(_scenario({"id": "../escaped/evil", "type": "screenshot"}))

        key = result.step_results[0].screenshots[0].storage_key
        assert key.startswith("screenshots/_escaped_evil_manual_")
        assert "/" not in key.removeprefix("screenshots/")
        assert list(artifact_store.objects) == [key]
        assert not (tmp_path / "escaped").exists()

    @pytest.mark.asyncio
    async def test_local_screenshot_files_removed(self, executor, tmp_path):
        await executor.execute_test(_scenario({"id": "shot", "type": "screenshot"}))
        assert list((tmp_path / "screenshots").iterdir()) == []

    @pytest.mark.asyncio
    async def test_video_and_trace_uploaded(self, browser_resource, artifact_store, fake_browser, tmp_path):
        executor = StepExecutor(
            browser_resource,
            artifact_store,
            screenshot_dir=tmp_path,
            record_video=True,
            record_trace=True,
        )
        result = await executor.execute_test(
            _scenario({"id": "s1", "type": "navigate", "url": "https://example.com"}), run_id="run_rec"
        )

        assert result.video_url == "/storage/runs/run_rec/video.webm"
        assert result.trace_url == "/storage/runs/run_rec/trace.zip"
        assert fake_browser.contexts[0].tracing.started
        assert "record_video_dir" in fake_browser.contexts[0].options


class TestBrowserSharing:
    @pytest.mark.asyncio
    async def test_browser_launched_once_across_runs(self, executor, launcher, fake_browser):
        for _ in range(3):
            await executor.execute_test(_scenario({"id": "s", "type": "wait", "milliseconds": 1}))
        assert launcher.launches == 1
        assert len(fake_browser.contexts) == 3

    @pytest.mark.asyncio
    async def test_browser_relaunched_after_disconnect(self, browser_resource, launcher, fake_browser):
        await browser_resource.get_browser()
        fake_browser.connected = False
        await browser_resource.get_browser()
        assert launcher.launches == 2

    @pytest.mark.asyncio
    async def test_closed_resource_does_not_relaunch(self, browser_resource, launcher):
        await browser_resource.get_browser()
        await browser_resource.close()

        with pytest.raises(RunnerError):
            await browser_resource.new_context()
        assert launcher.launches == 1

    @pytest.mark.asyncio
    async def test_run_after_close_is_an_error(self, executor, browser_resource, launcher):
        await browser_resource.close()
        result = await executor.execute_test(_scenario({"id": "s", "type": "wait", "milliseconds": 1}))

        assert result.status == RunStatus.ERROR
        assert launcher.launches == 0

    @pytest.mark.asyncio
    async def test_close_releases_browser(self, browser_resource, fake_browser):
        await browser_resource.get_browser()
        await browser_resource.close()
        assert fake_browser.closed
        assert not browser_resource.started
