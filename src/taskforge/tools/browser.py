"""Headless Chromium browsing via the Playwright sync API."""

from __future__ import annotations

import base64
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

from taskforge.tools.base import ToolResult

logger = logging.getLogger(__name__)

BROWSER_ACTIONS = ("navigate", "screenshot", "click", "type", "scroll", "wait")
DEFAULT_NAVIGATION_TIMEOUT_MS = 30_000
ELEMENT_TIMEOUT_MS = 10_000
SCROLL_STEP_PX = 500
_BLOCKED_HOSTS = frozenset({"localhost", "127.0.0.1", "0.0.0.0", "::1"})


@dataclass(slots=True)
class BrowserSession:
    """An open page plus the callback that tears down everything behind it."""

    page: Any
    close: Callable[[], None]


def launch_chromium(*, headless: bool = True) -> BrowserSession:
    playwright = sync_playwright().start()
    try:
        browser = playwright.chromium.launch(
            headless=headless,
            args=["--no-sandbox", "--disable-setuid-sandbox", "--disable-dev-shm-usage"],
        )
        page = browser.new_page(viewport={"width": 1280, "height": 720})
    except PlaywrightError:
        playwright.stop()
        raise

    def close() -> None:
        try:
            browser.close()
        finally:
            playwright.stop()

    return BrowserSession(page=page, close=close)


class BrowserTool:
    """One lazily launched page per task, reused across calls until ``close()``."""

    def __init__(
        self,
        *,
        headless: bool = True,
        navigation_timeout_ms: int = DEFAULT_NAVIGATION_TIMEOUT_MS,
        session_factory: Callable[[], BrowserSession] | None = None,
    ) -> None:
        self.navigation_timeout_ms = navigation_timeout_ms
        self._session_factory = session_factory or (lambda: launch_chromium(headless=headless))
        self._session: BrowserSession | None = None

    def execute(  # noqa: PLR0911
        self,
        action: str,
        *,
        url: str | None = None,
        selector: str | None = None,
        text: str | None = None,
        wait_time_ms: int | None = None,
    ) -> ToolResult:
        if action not in BROWSER_ACTIONS:
            return ToolResult.failure(f"Unknown action: {action}")
        if action == "navigate":
            if not url:
                return ToolResult.failure("URL is required for navigate action")
            blocked = _blocked_url_reason(url)
            if blocked:
                return ToolResult.failure(blocked, url=url)
        if action == "click" and not selector:
            return ToolResult.failure("Selector is required for click action")
        if action == "type" and (not selector or text is None):
            return ToolResult.failure("Selector and text are required for type action")

        try:
            page = self._ensure_page()
            if action == "navigate":
                return self._navigate(page, url or "")
            if action == "screenshot":
                current_url = page.url
                return ToolResult(
                    success=True,
                    output=f"Screenshot taken of {current_url}",
                    metadata={"url": current_url, "screenshot": _screenshot(page)},
                )
            if action == "click":
                page.click(selector, timeout=ELEMENT_TIMEOUT_MS)
                return ToolResult(success=True, output=f"Clicked: {selector}")
            if action == "type":
                page.fill(selector, text, timeout=ELEMENT_TIMEOUT_MS)
                return ToolResult(success=True, output=f'Typed "{text}" into {selector}')
            if action == "scroll":
                page.evaluate(f"() => window.scrollBy(0, {SCROLL_STEP_PX})")
                return ToolResult(success=True, output=f"Scrolled down {SCROLL_STEP_PX}px")
            wait_ms = wait_time_ms or 1_000
            page.wait_for_timeout(wait_ms)
            return ToolResult(success=True, output=f"Waited {wait_ms}ms")
        except PlaywrightError as error:
            logger.warning("Browser action %s failed: %s", action, error)
            return ToolResult.failure(str(error))

    def close(self) -> None:
        session = self._session
        if session is None:
            return
        self._session = None
        try:
            session.close()
        except PlaywrightError:
            logger.exception("Failed to close browser session")

    def _ensure_page(self) -> Any:
        if self._session is None:
            self._session = self._session_factory()
        return self._session.page

    def _navigate(self, page: Any, url: str) -> ToolResult:
        page.goto(url, wait_until="networkidle", timeout=self.navigation_timeout_ms)
        title = page.title()
        return ToolResult(
            success=True,
            output=f"Navigated to: {url}\nTitle: {title}",
            metadata={"url": url, "title": title, "screenshot": _screenshot(page)},
        )


def _screenshot(page: Any) -> str:
    return base64.b64encode(page.screenshot()).decode("ascii")


def _blocked_url_reason(url: str) -> str | None:
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return "Browsing local files is not allowed"
    if (parsed.hostname or "").lower() in _BLOCKED_HOSTS:
        return f"Browsing local addresses is not allowed: {url}"
    return None
