from __future__ import annotations

"""
session_manager.py

Owns the run's resources: the timestamped session directory, the browser and
desktop automation handles, and the per-run capture.log.

acquire()  -> RunSession, or ResourceInitError (fatal)
release()  -> idempotent teardown; best-effort final-state captures first
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from browser_agent import BrowserCaptureAgent
from capture_config import CaptureConfig, attach_run_log, detach_run_log, setup_logger
from capture_errors import AutomationHandleLostError, ResourceInitError
from desktop_agent import DesktopCaptureAgent

logger = setup_logger("session")

SESSION_DIR_FORMAT = "%Y-%m-%d_%H-%M-%S"
FINAL_BROWSER_STATE = "final-browser-state.png"
FINAL_DESKTOP_STATE = "final-desktop-state.png"


@dataclass
class AutomationHandle:
    browser: BrowserCaptureAgent
    desktop: Optional[DesktopCaptureAgent] = None


@dataclass
class RunSession:
    session_directory: Path
    started_at: datetime
    automation_handle: AutomationHandle
    persisted_credentials_path: Optional[Path] = None


def session_dirname(started_at: datetime) -> str:
    return started_at.strftime(SESSION_DIR_FORMAT)


class SessionManager:
    def __init__(
        self,
        config: CaptureConfig,
        *,
        browser_factory: Optional[Callable[[CaptureConfig], BrowserCaptureAgent]] = None,
        desktop_factory: Optional[Callable[[CaptureConfig], DesktopCaptureAgent]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config
        self.browser_factory = browser_factory or BrowserCaptureAgent
        self.desktop_factory = desktop_factory or DesktopCaptureAgent
        self.clock = clock

        self.session: Optional[RunSession] = None
        self.release_count = 0
        self._released = False
        self._log_handler = None

    # -------------------------------------------------------------------------
    # Acquire
    # -------------------------------------------------------------------------
    async def acquire(self) -> RunSession:
        if self.session is not None:
            return self.session

        started_at = self.clock()
        session_dir = (Path(self.config.captures_dir) / session_dirname(started_at)).resolve()
        try:
            session_dir.mkdir(parents=True, exist_ok=True)
            self._log_handler = attach_run_log(session_dir)
        except OSError as e:
            raise ResourceInitError(f"cannot create session directory {session_dir}", detail=str(e)) from e

        logger.info("Session directory: %s", session_dir)

        browser = self.browser_factory(self.config)
        try:
            await browser.launch()
        except asyncio.CancelledError:
            await browser.close()
            self._detach_log()
            raise
        except ResourceInitError:
            self._detach_log()
            raise
        except Exception as e:
            self._detach_log()
            raise ResourceInitError("automation handle startup failed", detail=str(e)) from e

        # Always built: the fallback strategy grabs the screen even without --desktop.
        try:
            desktop = self.desktop_factory(self.config)
        except Exception as e:
            await browser.close()
            self._detach_log()
            raise ResourceInitError("desktop agent startup failed", detail=str(e)) from e

        self.session = RunSession(
            session_directory=session_dir,
            started_at=started_at,
            automation_handle=AutomationHandle(browser=browser, desktop=desktop),
            persisted_credentials_path=Path(self.config.auth_state_path),
        )
        self._released = False
        return self.session

    # -------------------------------------------------------------------------
    # During the run
    # -------------------------------------------------------------------------
    def ensure_live(self) -> None:
        if self.session is None:
            raise AutomationHandleLostError("no active session")
        if not self.session.automation_handle.browser.is_alive():
            raise AutomationHandleLostError("browser disconnected")

    async def persist_credentials(self) -> bool:
        """Save the login state for the next run. Never raises."""
        if self.session is None or self.session.persisted_credentials_path is None:
            return False
        browser = self.session.automation_handle.browser
        path = self.session.persisted_credentials_path
        if not browser.is_alive():
            logger.warning("Browser gone; login state not saved")
            return False
        try:
            await browser.save_storage_state(path)
        except Exception as e:
            logger.warning("Failed to save login state to %s: %s", path, e)
            return False
        logger.info("Login state saved to %s", path)
        return True

    # -------------------------------------------------------------------------
    # Release
    # -------------------------------------------------------------------------
    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        self.release_count += 1

        if self.session is None:
            self._detach_log()
            return

        logger.info("Cleaning up...")
        try:
            await self._capture_final_state()
            await self.session.automation_handle.browser.close()
        finally:
            self._detach_log()

    async def _capture_final_state(self) -> None:
        session = self.session
        browser = session.automation_handle.browser
        desktop = session.automation_handle.desktop

        if browser.is_alive():
            try:
                data = await browser.screenshot(full_page=True)
                (session.session_directory / FINAL_BROWSER_STATE).write_bytes(data)
            except Exception as e:
                logger.debug("final browser capture skipped: %s", e)

        if self.config.desktop_enabled and desktop is not None:
            try:
                data = await asyncio.to_thread(desktop.screenshot_png)
                (session.session_directory / FINAL_DESKTOP_STATE).write_bytes(data)
            except Exception as e:
                logger.debug("final desktop capture skipped: %s", e)

    def _detach_log(self) -> None:
        detach_run_log(self._log_handler)
        self._log_handler = None

    async def __aenter__(self) -> RunSession:
        return await self.acquire()

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.release()
        return False
