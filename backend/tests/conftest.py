"""Shared fakes for the executor, worker and API tests.

The fake page implements only the slice of the Playwright async API the
step executor uses. Elements are declared on the ``FakeBrowser`` and shared
by every page it opens.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest
from playwright.async_api import Error as PlaywrightError

from tramoya.infra.browser import BrowserResource
from tramoya.runner.errors import ArtifactStoreError
from tramoya.runner.executor import StepExecutor


@dataclass
class FakeElement:
    text: str | None = None
    visible: bool = True
    # URL the page moves to when the element is clicked
    navigates_to: str | None = None


class FakeElementHandle:
    def __init__(self, element: FakeElement):
        self._element = element

    async def text_content(self) -> str | None:
        return self._element.text


class FakeTracing:
    def __init__(self) -> None:
        self.started = False

    async def start(self, **options: Any) -> None:
        self.started = True

    async def stop(self, path: str | None = None) -> None:
        if path is not None:
            Path(path).write_bytes(b"trace")


class FakeVideo:
    def __init__(self, path: Path):
        self._path = path

    async def path(self) -> str:
        return str(self._path)


class FakePage:
    def __init__(self, context: FakeContext):
        self.context = context
        self.url = "about:blank"
        self.closed = False
        self.screenshots: list[str] = []
        self.video: FakeVideo | None = None
        video_dir = context.options.get("record_video_dir")
        if video_dir:
            video_path = Path(video_dir) / "page.webm"
            video_path.write_bytes(b"video")
            self.video = FakeVideo(video_path)

    @property
    def _browser(self) -> FakeBrowser:
        return self.context.browser

    def is_closed(self) -> bool:
        return self.closed

    def _element(self, selector: str, timeout: float | None) -> FakeElement:
        element = self._browser.elements.get(selector)
        if element is None:
            raise PlaywrightError(f"Timeout {timeout}ms exceeded waiting for selector \"{selector}\"")
        return element

    async def _interact(self, selector: str) -> None:
        if selector in self._browser.hang_on:
            await asyncio.sleep(3600)
        if selector in self._browser.crash_on:
            self.closed = True
            self._browser.connected = False
            raise PlaywrightError("Target page, context or browser has been closed")

    async def goto(self, url: str, timeout: float | None = None) -> None:
        if url in self._browser.unreachable:
            raise PlaywrightError(f"net::ERR_NAME_NOT_RESOLVED at {url}")
        self.url = url

    async def fill(self, selector: str, text: str, timeout: float | None = None) -> None:
        await self._interact(selector)
        element = self._element(selector, timeout)
        element.text = text

    async def click(self, selector: str, timeout: float | None = None) -> None:
        await self._interact(selector)
        element = self._element(selector, timeout)
        if element.navigates_to:
            self.url = element.navigates_to

    async def query_selector(self, selector: str) -> FakeElementHandle | None:
        element = self._browser.elements.get(selector)
        return FakeElementHandle(element) if element is not None else None

    async def is_visible(self, selector: str) -> bool:
        element = self._browser.elements.get(selector)
        return element is not None and element.visible

    async def screenshot(self, path: str) -> bytes:
        if self._browser.screenshot_error:
            raise PlaywrightError("Screenshot failed")
        Path(path).write_bytes(b"\x89PNG")
        self.screenshots.append(path)
        return b"\x89PNG"


class FakeContext:
    def __init__(self, browser: FakeBrowser, options: dict[str, Any]):
        self.browser = browser
        self.options = options
        self.tracing = FakeTracing()
        self.pages: list[FakePage] = []
        self.closed = False

    async def new_page(self) -> FakePage:
        page = FakePage(self)
        self.pages.append(page)
        return page

    async def close(self) -> None:
        self.closed = True


class FakeBrowser:
    def __init__(self) -> None:
        self.elements: dict[str, FakeElement] = {}
        self.unreachable: set[str] = set()
        self.hang_on: set[str] = set()
        self.crash_on: set[str] = set()
        self.screenshot_error = False
        self.connected = True
        self.closed = False
        self.contexts: list[FakeContext] = []

    def is_connected(self) -> bool:
        return self.connected

    async def new_context(self, **options: Any) -> FakeContext:
        context = FakeContext(self, options)
        self.contexts.append(context)
        return context

    async def close(self) -> None:
        self.closed = True
        self.connected = False


class FakeArtifactStore:
    """In-memory artifact store recording every upload."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.fail_uploads = False

    async def ensure_bucket(self) -> None:
        return None

    async def upload_file(self, source: bytes | str | Path, object_name: str) -> str:
        if self.fail_uploads:
            raise ArtifactStoreError(f"Upload of {object_name} failed: connection refused")
        data = source if isinstance(source, bytes) else Path(source).read_bytes()
        self.objects[object_name] = data
        return object_name

    def get_public_url(self, object_name: str) -> str:
        return f"/storage/{object_name}"

    async def get_presigned_url(self, object_name: str, expiry_seconds: int = 86400) -> str:
        return f"http://minio.test/tramoya/{object_name}?X-Amz-Expires={expiry_seconds}"


class LaunchCounter:
    def __init__(self, browser: FakeBrowser):
        self.browser = browser
        self.launches = 0

    async def __call__(self) -> FakeBrowser:
        self.launches += 1
        return self.browser


@pytest.fixture
def fake_browser() -> FakeBrowser:
    return FakeBrowser()


@pytest.fixture
def launcher(fake_browser: FakeBrowser) -> LaunchCounter:
    return LaunchCounter(fake_browser)


@pytest.fixture
def browser_resource(launcher: LaunchCounter) -> BrowserResource:
    return BrowserResource(headless=True, launcher=launcher)


@pytest.fixture
def artifact_store() -> FakeArtifactStore:
    return FakeArtifactStore()


@pytest.fixture
def executor(browser_resource, artifact_store, tmp_path) -> StepExecutor:
    return StepExecutor(
        browser_resource,
        artifact_store,
        step_timeout_ms=2000,
        screenshot_dir=tmp_path / "screenshots",
        record_video=False,
        record_trace=False,
    )
