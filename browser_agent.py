from __future__ import annotations

"""
browser_agent.py

Async Playwright wrapper used as the browser half of the automation handle.

What this agent does:
- Launches Chromium (optionally channel="chrome", falling back to bundled Chromium).
- Reuses a saved storage state (login cookies) when present, saves it on request.
- Navigates, waits for the page to settle, takes full-page / element screenshots.
- Finds visible text on the page and returns its centre point.

Failures are raised as the capture error taxonomy (NavigationError,
StabilityTimeoutError, CaptureError). A browser that has disconnected raises
AutomationHandleLostError, which the controller treats as fatal.

Logging policy:
- INFO: one line per navigation / screenshot
- DEBUG: locator diagnostics
"""

from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PWError,
    Page,
    Playwright,
    TimeoutError as PWTimeoutError,
    async_playwright,
)

from capture_config import CaptureConfig, setup_logger
from capture_errors import (
    AutomationHandleLostError,
    CaptureError,
    NavigationError,
    ResourceInitError,
    StabilityTimeoutError,
)

logger = setup_logger("browser")

LAUNCH_ARGS = [
    "--start-maximized",
    "--disable-blink-features=AutomationControlled",
]

HIGHLIGHT_JS = """
(el) => {
  el.style.outline = '3px solid #ff6b6b';
  el.style.boxShadow = '0 0 10px rgba(255,107,107,0.5)';
}
"""


class BrowserCaptureAgent:
    """DOM-level automation: precise targeting, but only inside its own browser window."""

    def __init__(self, config: CaptureConfig):
        self.config = config
        self._pw: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._closed = False
        self.reused_storage_state = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    async def launch(self) -> None:
        try:
            logger.info("Launching browser (headless=%s)...", self.config.headless)
            self._pw = await async_playwright().start()

            launch_options: Dict[str, Any] = {
                "headless": self.config.headless,
                "slow_mo": self.config.slow_mo_ms,
                "args": list(LAUNCH_ARGS),
            }

            if self.config.browser_channel:
                try:
                    self._browser = await self._pw.chromium.launch(
                        channel=self.config.browser_channel, **launch_options
                    )
                    logger.info("Launched using channel=%s", self.config.browser_channel)
                except PWError as e:
                    logger.warning("Channel %s failed (%s), falling back to chromium", self.config.browser_channel, e)
                    self._browser = await self._pw.chromium.launch(**launch_options)
            else:
                self._browser = await self._pw.chromium.launch(**launch_options)

            state_path = Path(self.config.auth_state_path)
            self.reused_storage_state = state_path.is_file()

            context_options: Dict[str, Any] = {
                "viewport": self.config.viewport,
                "accept_downloads": True,
                "ignore_https_errors": True,
            }
            if self.reused_storage_state:
                context_options["storage_state"] = str(state_path)

            self._context = await self._browser.new_context(**context_options)
            self._page = await self._context.new_page()
            self._page.set_default_timeout(self.config.element_timeout_ms)
            self._page.set_default_navigation_timeout(self.config.navigation_timeout_ms)

            self._closed = False
            logger.info(
                "Browser ready (session: %s)",
                "existing session found" if self.reused_storage_state else "new session",
            )
        except Exception as e:
            await self.close()
            raise ResourceInitError("browser launch failed", detail=str(e)) from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        logger.info("Closing browser...")
        for name, closer in (
            ("page", self._page.close if self._page else None),
            ("context", self._context.close if self._context else None),
            ("browser", self._browser.close if self._browser else None),
            ("playwright", self._pw.stop if self._pw else None),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception as e:
                logger.debug("close %s failed: %s", name, e)

        self._page = None
        self._context = None
        self._browser = None
        self._pw = None

    def is_alive(self) -> bool:
        if self._closed or self._browser is None or self._page is None:
            return False
        return self._browser.is_connected() and not self._page.is_closed()

    @property
    def page(self) -> Page:
        if not self.is_alive():
            raise AutomationHandleLostError("browser page is not available")
        return self._page  # type: ignore[return-value]

    async def save_storage_state(self, path: Path) -> None:
        if self._context is None:
            raise RuntimeError("no browser context to save")
        path.parent.mkdir(parents=True, exist_ok=True)
        await self._context.storage_state(path=str(path))

    # -------------------------------------------------------------------------
    # Navigation
    # -------------------------------------------------------------------------
    async def goto(self, url: str) -> None:
        page = self.page
        logger.info("[navigate] %s", url)
        try:
            await page.goto(url, wait_until="domcontentloaded", timeout=self.config.navigation_timeout_ms)
        except PWTimeoutError as e:
            raise NavigationError(f"timed out loading {url}", detail=str(e)) from e
        except PWError as e:
            self._raise_if_dead(e)
            raise NavigationError(f"failed to load {url}", detail=str(e)) from e

    async def wait_until_stable(self) -> None:
        page = self.page
        try:
            await page.wait_for_load_state("networkidle", timeout=self.config.stable_timeout_ms)
            return
        except PWTimeoutError:
            logger.debug("[stable] networkidle timed out, falling back to domcontentloaded")
        except PWError as e:
            self._raise_if_dead(e)
            logger.debug("[stable] networkidle failed: %s", e)

        try:
            await page.wait_for_load_state("domcontentloaded", timeout=self.config.stable_timeout_ms)
        except (PWTimeoutError, PWError) as e:
            self._raise_if_dead(e)
            raise StabilityTimeoutError("page did not settle", detail=str(e)) from e

    # -------------------------------------------------------------------------
    # Evidence
    # -------------------------------------------------------------------------
    async def screenshot(self, full_page: bool = True) -> bytes:
        page = self.page
        try:
            data = await page.screenshot(full_page=full_page, type="png")
        except PWError as e:
            self._raise_if_dead(e)
            raise CaptureError("page screenshot failed", detail=str(e)) from e
        logger.info("[capture] page screenshot %d bytes", len(data))
        return data

    async def element_screenshot(self, selector: str) -> bytes:
        page = self.page
        try:
            locator = page.locator(selector).first
            await locator.wait_for(state="visible", timeout=self.config.element_timeout_ms)
            data = await locator.screenshot(type="png")
        except PWError as e:
            self._raise_if_dead(e)
            raise CaptureError(f"element screenshot failed for {selector!r}", detail=str(e)) from e
        logger.info("[capture] element screenshot %s %d bytes", selector, len(data))
        return data

    # -------------------------------------------------------------------------
    # Guidance
    # -------------------------------------------------------------------------
    async def highlight(self, selector: str) -> bool:
        """Outline the step's target element for the operator. Soft failure."""
        try:
            locator = self.page.locator(selector).first
            if not await locator.is_visible():
                logger.debug("[highlight] %s not visible", selector)
                return False
            await locator.evaluate(HIGHLIGHT_JS)
            logger.info("[highlight] %s", selector)
            return True
        except (PWError, AutomationHandleLostError) as e:
            logger.debug("[highlight] %s failed: %s", selector, e)
            return False

    async def locate_text(self, text: str) -> Optional[Tuple[int, int]]:
        """Centre of the first visible element containing `text` (viewport px), or None."""
        try:
            locator = self.page.get_by_text(text, exact=False).first
            box = await locator.bounding_box(timeout=self.config.element_timeout_ms)
        except (PWError, AutomationHandleLostError) as e:
            logger.debug("[locate] %r not found: %s", text, e)
            return None
        if not box:
            logger.debug("[locate] %r has no bounding box", text)
            return None
        return int(box["x"] + box["width"] / 2), int(box["y"] + box["height"] / 2)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------
    def _raise_if_dead(self, err: Exception) -> None:
        if not self.is_alive():
            raise AutomationHandleLostError("browser disconnected", detail=str(err)) from err

