"""Browser driver: runs the harness page in Chromium through Playwright."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Any, Awaitable, TextIO, TypeVar

import structlog
from playwright.async_api import Browser, BrowserContext, Dialog, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from .console_relay import ConsoleRelay
from .errors import PageCrashedError, PageError
from .harness import STATUS_GLOBAL

logger = structlog.get_logger(__name__)

T = TypeVar("T")

FINISHED_EXPRESSION = f"() => Boolean(window.{STATUS_GLOBAL} && window.{STATUS_GLOBAL}.finished)"
FAILED_EXPRESSION = f"() => window.{STATUS_GLOBAL}.failed"


def find_chromium_executable() -> str | None:
    env_path = os.getenv("CHROMIUM_PATH")
    if env_path and Path(env_path).exists():
        return env_path

    candidates = [
        "/usr/bin/chromium",
        "/usr/bin/chromium-browser",
        "/usr/bin/google-chrome",
        "/usr/bin/google-chrome-stable",
        "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    ]
    for path in candidates:
        if Path(path).exists():
            return path
    return None


class BrowserDriver:
    """Launches Chromium, loads the harness and waits for its verdict.

    A fatal page signal (uncaught page error or renderer crash) settles
    ``_fatal`` with an exception; every wait the driver performs races
    against it.
    """

    def __init__(
        self,
        launch_options: dict[str, Any] | None = None,
        context_options: dict[str, Any] | None = None,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
    ):
        self.launch_options = dict(launch_options or {})
        self.context_options = dict(context_options or {})
        self._stdout = stdout
        self._stderr = stderr
        self._playwright: Playwright | None = None
        self.browser: Browser | None = None
        self.context: BrowserContext | None = None
        self.page: Page | None = None
        self._relay: ConsoleRelay | None = None
        self._fatal: asyncio.Future | None = None
        self._disconnected: asyncio.Event | None = None

    async def start(self) -> Page:
        """Launch the browser and prepare a page with every listener attached."""
        logger.info("Launching browser")
        loop = asyncio.get_running_loop()
        self._fatal = loop.create_future()
        # Mark the exception retrieved when nobody races against it any more.
        self._fatal.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._disconnected = asyncio.Event()

        launch_options = dict(self.launch_options)
        if "executable_path" not in launch_options:
            chromium_path = find_chromium_executable()
            if chromium_path:
                launch_options["executable_path"] = chromium_path

        self._playwright = await async_playwright().start()
        self.browser = await self._playwright.chromium.launch(**launch_options)
        self.browser.on("disconnected", lambda _: self._disconnected.set())
        self.context = await self.browser.new_context(**self.context_options)
        self.page = await self.context.new_page()

        self._relay = ConsoleRelay(self.page, stdout=self._stdout, stderr=self._stderr).attach()
        self.page.on("dialog", self._on_dialog)
        self.page.once("pageerror", self._on_page_error)
        self.page.once("crash", self._on_crash)
        return self.page

    async def _on_dialog(self, dialog: Dialog) -> None:
        try:
            await dialog.dismiss()
        except PlaywrightError as exc:
            logger.error("Failed to dismiss dialog", dialog_type=dialog.type, error=str(exc))

    def _settle_fatal(self, exc: PageError) -> None:
        if self._relay is not None:
            self._relay.detach()
        if self._fatal is not None and not self._fatal.done():
            self._fatal.set_exception(exc)

    def _on_page_error(self, error: PlaywrightError) -> None:
        self._settle_fatal(PageError(error.name, error.message, error.stack))

    def _on_crash(self, _page: Page) -> None:
        self._settle_fatal(PageCrashedError())

    async def _race_fatal(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless a fatal page signal arrives first."""
        assert self._fatal is not None
        task = asyncio.ensure_future(awaitable)
        done, _ = await asyncio.wait({task, self._fatal}, return_when=asyncio.FIRST_COMPLETED)
        if self._fatal in done:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            if self._relay is not None:
                await self._relay.flush()
            self._fatal.result()
        return task.result()

    async def navigate(self, url: str) -> None:
        assert self.page is not None
        await self._race_fatal(self.page.goto(url))

    async def wait_for_results(self) -> int:
        """Wait, without a time limit, for the harness to finish; return the failed count."""
        assert self.page is not None
        await self._race_fatal(self.page.wait_for_function(FINISHED_EXPRESSION, timeout=0))
        failed = await self._race_fatal(self.page.evaluate(FAILED_EXPRESSION))
        if self._relay is not None:
            await self._relay.flush()
        return int(failed or 0)

    async def run(self, url: str) -> int:
        """Navigate to the harness and return how many tests failed."""
        await self.navigate(url)
        return await self.wait_for_results()

    async def wait_closed(self) -> None:
        """Resolve once the browser has gone away (e.g. the operator closed it)."""
        assert self._disconnected is not None
        await self._disconnected.wait()

    async def close(self) -> None:
        """Close the browser. Safe to call more than once or after a failed start."""
        relay, self._relay = self._relay, None
        browser, self.browser = self.browser, None
        pw, self._playwright = self._playwright, None
        try:
            if relay is not None:
                await relay.close()
            if browser is not None:
                await browser.close()
        finally:
            if pw is not None:
                await pw.stop()
