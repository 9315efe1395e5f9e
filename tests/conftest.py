"""Shared fixtures: tiny PNGs, a temp-dir config, a small step catalog, and
fake strategies / browser / desktop / session manager doubles.

No real browser, display, or OCR server is touched.
"""

from __future__ import annotations

import io
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Tuple

import pytest
from PIL import Image

from capture_config import CaptureConfig
from capture_errors import AutomationHandleLostError
from capture_strategies import CaptureStrategy, StrategyKind
from evidence_recorder import (
    QUALIFIER_DESKTOP,
    QUALIFIER_FALLBACK,
    QUALIFIER_FULL,
    CapturedImage,
)
from session_manager import AutomationHandle, RunSession
from steps import Step, build_steps


def make_png(color=(200, 30, 30), size=(8, 6)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


DEFAULT_QUALIFIERS = {
    StrategyKind.PRIMARY: QUALIFIER_FULL,
    StrategyKind.SECONDARY: QUALIFIER_DESKTOP,
    StrategyKind.FALLBACK: QUALIFIER_FALLBACK,
}


class FakeStrategy(CaptureStrategy):
    """Scriptable strategy. `failures` maps step slug (or "*") to the exception
    raised at `fail_stage`."""

    def __init__(
        self,
        kind: StrategyKind,
        png: bytes,
        *,
        failures: Optional[Dict[str, BaseException]] = None,
        fail_stage: str = "navigate",
        located: Optional[Dict[str, Tuple[int, int]]] = None,
        empty_capture: bool = False,
    ):
        self.kind = kind
        self.png = png
        self.failures = dict(failures or {})
        self.fail_stage = fail_stage
        self.located = dict(located or {})
        self.empty_capture = empty_capture
        self.calls = []

    def _maybe_fail(self, stage: str, step: Optional[Step]) -> None:
        if stage != self.fail_stage:
            return
        slug = step.slug if step is not None else None
        err = self.failures.get(slug) or self.failures.get("*")
        if err is not None:
            raise err

    async def navigate(self, step: Step) -> None:
        self.calls.append(("navigate", step.slug))
        self._current = step
        self._maybe_fail("navigate", step)

    async def await_stable(self) -> None:
        self.calls.append(("await_stable", None))
        self._maybe_fail("await_stable", getattr(self, "_current", None))

    async def prepare(self, step: Step) -> None:
        self.calls.append(("prepare", step.slug))
        self._maybe_fail("prepare", step)

    async def capture_evidence(self, step: Step):
        self.calls.append(("capture", step.slug))
        self._maybe_fail("capture", step)
        if self.empty_capture:
            return []
        return [CapturedImage(DEFAULT_QUALIFIERS[self.kind], self.png)]

    async def locate_by_text(self, text: str):
        self.calls.append(("locate", text))
        return self.located.get(text)

    def called(self, name: str):
        return [arg for n, arg in self.calls if n == name]


class RecordingGate:
    """Confirms immediately and remembers what it was asked, plus the
    controller state observed while suspended."""

    def __init__(self):
        self.calls = []
        self.controller = None
        self.observed_states = []

    async def confirm(self, step: Step, strategy_kind: str) -> None:
        self.calls.append((step.slug, strategy_kind))
        if self.controller is not None:
            self.observed_states.append(self.controller.state)


class FakeBrowser:
    def __init__(self, config=None, png: bytes = b"", *, launch_error: Optional[BaseException] = None):
        self.config = config
        self.png = png or make_png()
        self.launch_error = launch_error
        self.alive = False
        self.launch_count = 0
        self.close_count = 0
        self.saved_to = []
        self.save_error: Optional[BaseException] = None

    async def launch(self) -> None:
        self.launch_count += 1
        if self.launch_error is not None:
            raise self.launch_error
        self.alive = True

    async def close(self) -> None:
        self.close_count += 1
        self.alive = False

    def is_alive(self) -> bool:
        return self.alive

    async def screenshot(self, full_page: bool = True) -> bytes:
        if not self.alive:
            raise AutomationHandleLostError("browser page is not available")
        return self.png

    async def save_storage_state(self, path: Path) -> None:
        if self.save_error is not None:
            raise self.save_error
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("{}", encoding="utf-8")
        self.saved_to.append(path)


class FakeDesktop:
    def __init__(self, config=None, png: bytes = b""):
        self.config = config
        self.png = png or make_png((30, 30, 200))
        self.grabs = 0

    def screenshot_png(self) -> bytes:
        self.grabs += 1
        return self.png


class SpySessionManager:
    """Stands in for SessionManager; counts release() calls."""

    def __init__(self, session_dir: Path, *, acquire_error=None, release_error=None, live: bool = True):
        self.session_dir = session_dir
        self.acquire_error = acquire_error
        self.release_error = release_error
        self.live = live
        self.release_count = 0
        self.persist_count = 0
        self.ensure_live_count = 0
        self.session: Optional[RunSession] = None

    async def acquire(self) -> RunSession:
        if self.acquire_error is not None:
            raise self.acquire_error
        self.session_dir.mkdir(parents=True, exist_ok=True)
        self.session = RunSession(
            session_directory=self.session_dir,
            started_at=datetime(2026, 1, 2, 3, 4, 5),
            automation_handle=AutomationHandle(browser=FakeBrowser(), desktop=FakeDesktop()),
            persisted_credentials_path=None,
        )
        return self.session

    def ensure_live(self) -> None:
        self.ensure_live_count += 1
        if not self.live:
            raise AutomationHandleLostError("browser disconnected")

    async def persist_credentials(self) -> bool:
        self.persist_count += 1
        return True

    async def release(self) -> None:
        self.release_count += 1
        if self.release_error is not None:
            raise self.release_error


# === FIXTURES ===


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def config(tmp_path: Path) -> CaptureConfig:
    return CaptureConfig(
        base_url="https://asc.example.test",
        auth_state_path=tmp_path / ".auth" / "state.json",
        captures_dir=tmp_path / "captures",
        settle_delay_s=0.0,
        stable_timeout_ms=0,
    )


@pytest.fixture
def three_steps():
    """Three steps, all with a target URL."""
    return build_steps(
        (
            ("Login", "/login", "input[type='email']", ("Sign In",), "Log in."),
            ("Apps Dashboard", "/apps", None, (), "Open the apps list."),
            ("Pricing", "/apps/pricing", None, (), "Open pricing."),
        )
    )


@pytest.fixture
def session_dir(tmp_path: Path) -> Path:
    d = tmp_path / "session"
    d.mkdir()
    return d
