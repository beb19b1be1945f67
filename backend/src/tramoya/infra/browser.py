"""Shared browser resource.

One Chromium instance per worker process, launched on first use and owned
explicitly by whoever constructs the resource (the runner worker). Every run
gets its own disposable browser context from it; contexts are never reused.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from playwright.async_api import Browser, BrowserContext, Playwright, async_playwright

from tramoya.config import settings
from tramoya.runner.errors import RunnerError

logger = logging.getLogger(__name__)

BrowserLauncher = Callable[[], Awaitable[Browser]]


class BrowserResource:
    """Lazily launched, explicitly released Playwright browser."""

    def __init__(self, headless: bool | None = None, launcher: BrowserLauncher | None = None):
        self.headless = settings.browser_headless if headless is None else headless
        self._launcher = launcher
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def started(self) -> bool:
        return self._browser is not None

    async def get_browser(self) -> Browser:
        """Return the shared browser, launching it on first use.

        A disconnected browser is replaced while the resource is open.
        """
        async with self._lock:
            if self._closed:
                raise RunnerError("Browser resource is closed")
            if self._browser is not None and not self._browser.is_connected():
                logger.warning("Browser disconnected, launching a new instance")
                self._browser = None
            if self._browser is None:
                logger.info(f"Initializing browser (headless={self.headless})")
                self._browser = await self._launch()
            return self._browser

    async def new_context(self, **options: Any) -> BrowserContext:
        """Create an isolated browsing context for a single run."""
        browser = await self.get_browser()
        return await browser.new_context(**options)

    async def close(self) -> None:
        """Release the browser for good. Later runs fail instead of relaunching."""
        async with self._lock:
            self._closed = True
            if self._browser is not None:
                logger.info("Closing browser")
                try:
                    await self._browser.close()
                finally:
                    self._browser = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None

    async def _launch(self) -> Browser:
        if self._launcher is not None:
            return await self._launcher()
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(headless=self.headless)
