"""Tests for session_manager.py: acquire, liveness, credential persistence,
idempotent release."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

import pytest

from capture_config import LOG_NAMESPACE
from capture_errors import AutomationHandleLostError, ResourceInitError
from conftest import FakeBrowser, FakeDesktop
from session_manager import FINAL_BROWSER_STATE, FINAL_DESKTOP_STATE, SessionManager, session_dirname

FIXED = datetime(2026, 3, 4, 5, 6, 7)


def _manager(config, *, browser=None, desktop=None):
    browser = browser or FakeBrowser()
    desktop = desktop or FakeDesktop()
    mgr = SessionManager(
        config,
        browser_factory=lambda cfg: browser,
        desktop_factory=lambda cfg: desktop,
        clock=lambda: FIXED,
    )
    return mgr, browser, desktop


def test_session_dirname():
    assert session_dirname(FIXED) == "2026-03-04_05-06-07"


class TestAcquire:
    @pytest.mark.asyncio
    async def test_creates_directory_and_handle(self, config):
        mgr, browser, desktop = _manager(config)

        session = await mgr.acquire()
        try:
            assert session.session_directory == (config.captures_dir / "2026-03-04_05-06-07").resolve()
            assert session.session_directory.is_dir()
            assert session.started_at == FIXED
            assert session.automation_handle.browser is browser
            assert session.automation_handle.desktop is desktop
            assert session.persisted_credentials_path == config.auth_state_path
            assert browser.launch_count == 1
            assert (session.session_directory / "capture.log").exists()
        finally:
            await mgr.release()

    @pytest.mark.asyncio
    async def test_existing_directory_is_fine(self, config):
        (config.captures_dir / "2026-03-04_05-06-07").mkdir(parents=True)
        mgr, _, _ = _manager(config)
        session = await mgr.acquire()
        assert session.session_directory.is_dir()
        await mgr.release()

    @pytest.mark.asyncio
    async def test_acquire_twice_returns_same_session(self, config):
        mgr, browser, _ = _manager(config)
        first = await mgr.acquire()
        assert await mgr.acquire() is first
        assert browser.launch_count == 1
        await mgr.release()

    @pytest.mark.asyncio
    async def test_directory_failure_is_fatal(self, config, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("x")
        cfg = config.model_copy(update={"captures_dir": blocker})
        mgr, browser, _ = _manager(cfg)

        with pytest.raises(ResourceInitError):
            await mgr.acquire()
        assert browser.launch_count == 0

    @pytest.mark.asyncio
    async def test_launch_failure_is_fatal(self, config):
        mgr, _, _ = _manager(config, browser=FakeBrowser(launch_error=RuntimeError("no chromium")))

        with pytest.raises(ResourceInitError, match="no chromium"):
            await mgr.acquire()
        assert mgr.session is None

    @pytest.mark.asyncio
    async def test_launch_resource_error_passes_through(self, config):
        err = ResourceInitError("browser launch failed")
        mgr, _, _ = _manager(config, browser=FakeBrowser(launch_error=err))

        with pytest.raises(ResourceInitError) as exc_info:
            await mgr.acquire()
        assert exc_info.value is err

    @pytest.mark.asyncio
    async def test_desktop_failure_closes_browser(self, config):
        browser = FakeBrowser()

        def no_display(cfg):
            raise RuntimeError("no display")

        mgr = SessionManager(
            config,
            browser_factory=lambda cfg: browser,
            desktop_factory=no_display,
            clock=lambda: FIXED,
        )

        with pytest.raises(ResourceInitError, match="no display"):
            await mgr.acquire()
        assert browser.launch_count == 1
        assert browser.close_count == 1
        assert mgr.session is None
        run_log = (config.captures_dir / "2026-03-04_05-06-07" / "capture.log").resolve()
        handlers = logging.getLogger(LOG_NAMESPACE).handlers
        assert not [h for h in handlers if isinstance(h, logging.FileHandler) and Path(h.baseFilename) == run_log]


class TestLiveness:
    def test_no_session(self, config):
        mgr, _, _ = _manager(config)
        with pytest.raises(AutomationHandleLostError):
            mgr.ensure_live()

    @pytest.mark.asyncio
    async def test_disconnected_browser(self, config):
        mgr, browser, _ = _manager(config)
        await mgr.acquire()
        mgr.ensure_live()
        browser.alive = False
        with pytest.raises(AutomationHandleLostError):
            mgr.ensure_live()
        await mgr.release()


class TestPersistCredentials:
    @pytest.mark.asyncio
    async def test_saves_state(self, config):
        mgr, browser, _ = _manager(config)
        await mgr.acquire()
        assert await mgr.persist_credentials() is True
        assert browser.saved_to == [config.auth_state_path]
        await mgr.release()

    @pytest.mark.asyncio
    async def test_never_raises(self, config):
        mgr, browser, _ = _manager(config)
        await mgr.acquire()
        browser.save_error = OSError("disk full")
        assert await mgr.persist_credentials() is False
        await mgr.release()

    @pytest.mark.asyncio
    async def test_without_session(self, config):
        mgr, _, _ = _manager(config)
        assert await mgr.persist_credentials() is False


class TestRelease:
    @pytest.mark.asyncio
    async def test_idempotent(self, config):
        mgr, browser, _ = _manager(config)
        session = await mgr.acquire()

        await mgr.release()
        await mgr.release()

        assert browser.close_count == 1
        assert mgr.release_count == 1
        assert (session.session_directory / FINAL_BROWSER_STATE).exists()

    @pytest.mark.asyncio
    async def test_desktop_final_state_only_in_desktop_mode(self, config):
        mgr, _, desktop = _manager(config)
        session = await mgr.acquire()
        await mgr.release()
        assert desktop.grabs == 0
        assert not (session.session_directory / FINAL_DESKTOP_STATE).exists()

        cfg = config.model_copy(update={"desktop_enabled": True, "captures_dir": config.captures_dir / "d"})
        mgr, _, desktop = _manager(cfg)
        session = await mgr.acquire()
        await mgr.release()
        assert desktop.grabs == 1
        assert (session.session_directory / FINAL_DESKTOP_STATE).exists()

    @pytest.mark.asyncio
    async def test_dead_browser_skips_final_capture(self, config):
        mgr, browser, _ = _manager(config)
        session = await mgr.acquire()
        browser.alive = False
        await mgr.release()
        assert not (session.session_directory / FINAL_BROWSER_STATE).exists()
        assert browser.close_count == 1

    @pytest.mark.asyncio
    async def test_release_without_acquire(self, config):
        mgr, browser, _ = _manager(config)
        await mgr.release()
        assert mgr.release_count == 1
        assert browser.close_count == 0

    @pytest.mark.asyncio
    async def test_context_manager_releases_on_error(self, config):
        mgr, browser, _ = _manager(config)
        with pytest.raises(RuntimeError):
            async with mgr as session:
                assert session.session_directory.is_dir()
                raise RuntimeError("step blew up")
        assert browser.close_count == 1
        assert mgr.release_count == 1
