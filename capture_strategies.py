from __future__ import annotations

"""
capture_strategies.py

The closed set of capture strategies, in priority order:

  PrimaryAutomation   - Playwright. Exact DOM targeting; fails on pages it can't load.
  SecondaryAutomation - Desktop (pyautogui + OCR). Works on anything on screen; cannot
                        reach off-screen content.
  FullScreenFallback  - Capture only. No navigation; guarantees some evidence.

All three expose the same contract: navigate, await_stable, capture_evidence,
locate_by_text (plus an optional prepare hook run before the operator gate).
"""

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional, Tuple

from browser_agent import BrowserCaptureAgent
from capture_config import CaptureConfig, setup_logger
from capture_errors import CaptureError
from desktop_agent import DesktopCaptureAgent
from evidence_recorder import (
    QUALIFIER_DESKTOP,
    QUALIFIER_FALLBACK,
    QUALIFIER_FOCUS,
    QUALIFIER_FULL,
    CapturedImage,
)
from steps import Step, resolve_url

logger = setup_logger("strategies")

Point = Tuple[int, int]


class StrategyKind(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    FALLBACK = "fallback"


STRATEGY_LABELS = {
    StrategyKind.PRIMARY: "browser automation",
    StrategyKind.SECONDARY: "desktop automation",
    StrategyKind.FALLBACK: "full-screen fallback",
}


class CaptureStrategy(ABC):
    kind: StrategyKind

    @property
    def label(self) -> str:
        return STRATEGY_LABELS[self.kind]

    @abstractmethod
    async def navigate(self, step: Step) -> None:
        ...

    @abstractmethod
    async def await_stable(self) -> None:
        ...

    async def prepare(self, step: Step) -> None:
        return None

    @abstractmethod
    async def capture_evidence(self, step: Step) -> List[CapturedImage]:
        ...

    async def locate_by_text(self, text: str) -> Optional[Point]:
        return None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} kind={self.kind.value}>"


# -----------------------------------------------------------------------------
# Primary: Playwright
# -----------------------------------------------------------------------------
class PrimaryAutomation(CaptureStrategy):
    kind = StrategyKind.PRIMARY

    def __init__(
        self,
        browser: BrowserCaptureAgent,
        config: CaptureConfig,
        desktop: Optional[DesktopCaptureAgent] = None,
    ):
        self.browser = browser
        self.config = config
        # Cross-validation grab only when desktop mode is on.
        self.desktop = desktop if config.desktop_enabled else None

    async def navigate(self, step: Step) -> None:
        url = resolve_url(step, self.config.base_url)
        if url:
            await self.browser.goto(url)

    async def await_stable(self) -> None:
        await self.browser.wait_until_stable()

    async def prepare(self, step: Step) -> None:
        if step.target_selector:
            await self.browser.highlight(step.target_selector)

    async def capture_evidence(self, step: Step) -> List[CapturedImage]:
        captures = [CapturedImage(QUALIFIER_FULL, await self.browser.screenshot(full_page=True))]

        if step.target_selector:
            try:
                data = await self.browser.element_screenshot(step.target_selector)
                captures.append(CapturedImage(QUALIFIER_FOCUS, data))
            except CaptureError as e:
                logger.warning("[primary] focus capture skipped for %s: %s", step.slug, e)

        if self.desktop is not None:
            try:
                data = await asyncio.to_thread(self.desktop.screenshot_png)
                captures.append(CapturedImage(QUALIFIER_DESKTOP, data))
            except CaptureError as e:
                logger.warning("[primary] desktop cross-check skipped for %s: %s", step.slug, e)

        return captures

    async def locate_by_text(self, text: str) -> Optional[Point]:
        return await self.browser.locate_text(text)


# -----------------------------------------------------------------------------
# Secondary: desktop automation
# -----------------------------------------------------------------------------
class SecondaryAutomation(CaptureStrategy):
    kind = StrategyKind.SECONDARY

    def __init__(self, desktop: DesktopCaptureAgent, config: CaptureConfig):
        self.desktop = desktop
        self.config = config

    async def navigate(self, step: Step) -> None:
        url = resolve_url(step, self.config.base_url)
        if url:
            await asyncio.to_thread(self.desktop.open_url, url)

    async def await_stable(self) -> None:
        await asyncio.sleep(self.config.settle_delay_s)
        await asyncio.to_thread(self.desktop.wait_for_still_screen, self.config.stable_timeout_ms / 1000.0)

    async def capture_evidence(self, step: Step) -> List[CapturedImage]:
        data = await asyncio.to_thread(self.desktop.screenshot_png)
        return [CapturedImage(QUALIFIER_DESKTOP, data)]

    async def locate_by_text(self, text: str) -> Optional[Point]:
        return await asyncio.to_thread(self.desktop.find_text_on_screen, text)


# -----------------------------------------------------------------------------
# Fallback: capture only
# -----------------------------------------------------------------------------
class FullScreenFallback(CaptureStrategy):
    kind = StrategyKind.FALLBACK

    def __init__(
        self,
        desktop: Optional[DesktopCaptureAgent],
        config: CaptureConfig,
        browser: Optional[BrowserCaptureAgent] = None,
    ):
        self.desktop = desktop
        self.config = config
        self.browser = browser

    async def navigate(self, step: Step) -> None:
        logger.info("[fallback] manual navigation expected for %s", step.slug)

    async def await_stable(self) -> None:
        await asyncio.sleep(self.config.settle_delay_s)

    async def capture_evidence(self, step: Step) -> List[CapturedImage]:
        errors: List[str] = []

        if self.desktop is not None:
            try:
                data = await asyncio.to_thread(self.desktop.screenshot_png)
                return [CapturedImage(QUALIFIER_FALLBACK, data)]
            except CaptureError as e:
                errors.append(str(e))
                logger.warning("[fallback] screen grab failed, trying browser viewport: %s", e)

        if self.browser is not None:
            try:
                data = await self.browser.screenshot(full_page=False)
                return [CapturedImage(QUALIFIER_FALLBACK, data)]
            except CaptureError as e:
                errors.append(str(e))

        raise CaptureError("no capture source available", detail="; ".join(errors) or None)


def build_strategies(
    config: CaptureConfig,
    browser: BrowserCaptureAgent,
    desktop: Optional[DesktopCaptureAgent],
) -> List[CaptureStrategy]:
    """Enabled strategies in fixed priority order: primary, secondary, fallback."""
    strategies: List[CaptureStrategy] = [PrimaryAutomation(browser, config, desktop)]
    if config.desktop_enabled and desktop is not None:
        strategies.append(SecondaryAutomation(desktop, config))
    if config.fallback_enabled:
        strategies.append(FullScreenFallback(desktop, config, browser))
    return strategies
