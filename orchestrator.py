#!/usr/bin/env python3
from __future__ import annotations

"""
orchestrator.py

Guided screenshot capture for an App Store Connect submission walkthrough.

This orchestrator:
- Acquires the run session (session directory, browser, desktop agent)
- Walks the step catalog through the FallbackController
  (primary browser automation -> desktop automation -> full-screen fallback)
- Renders report.md + results.json into the session directory
- Releases the session exactly once, whatever ends the run

Exit codes:
  0  normal completion (even with exhausted steps) or SIGINT/SIGTERM
  1  fatal resource error, unhandled exception, or a failed teardown
  2  invalid configuration

Logging policy:
- INFO: step-level progress
- DEBUG: optional details (enable via CAPTURE_LOG_LEVEL=DEBUG or --log-level)
"""

import argparse
import asyncio
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from pydantic import ValidationError

from capture_config import CaptureConfig, load_config, set_log_level, setup_logger
from capture_errors import FatalCaptureError
from capture_strategies import build_strategies
from evidence_recorder import EvidenceRecorder
from fallback_controller import FallbackController
from operator_gate import AutoConfirmGate, ConfirmationGate, StdinConfirmationGate
from report_generator import render
from session_manager import RunSession, SessionManager
from steps import Step, list_steps, validate_steps

logger = setup_logger("orchestrator")

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class CaptureOrchestrator:
    """Runs one capture session over the step catalog."""

    def __init__(
        self,
        config: CaptureConfig,
        *,
        steps: Optional[Sequence[Step]] = None,
        session_manager: Optional[SessionManager] = None,
        gate: Optional[ConfirmationGate] = None,
        strategies_factory: Callable = build_strategies,
    ):
        self.config = config
        self.steps = tuple(steps) if steps is not None else list_steps()
        validate_steps(self.steps)

        self.session_manager = session_manager or SessionManager(config)
        if gate is None:
            gate = AutoConfirmGate() if config.auto_confirm else StdinConfirmationGate(total_steps=len(self.steps))
        self.gate = gate
        self.strategies_factory = strategies_factory

        self.controller: Optional[FallbackController] = None
        self.interrupted = False
        self.report_path: Optional[Path] = None
        self._task: Optional[asyncio.Task] = None
        self._tearing_down = False

    # -------------------------
    # Signals
    # -------------------------
    def interrupt(self, signame: str = "SIGINT") -> None:
        if self.interrupted:
            return
        self.interrupted = True
        logger.warning("Received %s, shutting down...", signame)
        if self._tearing_down:
            return
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def install_signal_handlers(self) -> List[signal.Signals]:
        loop = asyncio.get_running_loop()
        installed: List[signal.Signals] = []
        for sig in HANDLED_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.interrupt, sig.name)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                # Windows, or not on the main thread
                logger.debug("signal handler for %s not installed", sig.name)
        return installed

    def remove_signal_handlers(self, installed: Sequence[signal.Signals]) -> None:
        loop = asyncio.get_running_loop()
        for sig in installed:
            loop.remove_signal_handler(sig)

    # -------------------------
    # Execution
    # -------------------------
    async def run(self) -> int:
        installed = self.install_signal_handlers()
        try:
            self._task = asyncio.create_task(self._run())
            return await self._task
        finally:
            self.remove_signal_handlers(installed)

    async def _run(self) -> int:
        code = EXIT_OK
        session: Optional[RunSession] = None
        started_at = datetime.now()

        try:
            session = await self.session_manager.acquire()
            handle = session.automation_handle

            strategies = self.strategies_factory(self.config, handle.browser, handle.desktop)
            self.controller = FallbackController(
                strategies,
                EvidenceRecorder(session.session_directory),
                self.gate,
                session_manager=self.session_manager,
            )
            logger.info(
                "Starting capture: %d steps, desktop=%s, fallback=%s",
                len(self.steps),
                self.config.desktop_enabled,
                self.config.fallback_enabled,
            )

            await self.controller.run(self.steps)
            await self.session_manager.persist_credentials()

        except asyncio.CancelledError:
            if not self.interrupted:
                raise
            logger.warning("Run interrupted; keeping artifacts of completed steps")
            if session is not None:
                await self.session_manager.persist_credentials()
        except FatalCaptureError as e:
            logger.error("Fatal error: %s", e)
            code = EXIT_FATAL
        except Exception:
            logger.exception("Unhandled error during capture run")
            code = EXIT_FATAL
        finally:
            self._tearing_down = True
            if session is not None and self.controller is not None:
                self._write_report(session, started_at)
            try:
                await self.session_manager.release()
            except Exception:
                logger.exception("Teardown failed")
                code = EXIT_FATAL

        return code

    def _write_report(self, session: RunSession, started_at: datetime) -> None:
        try:
            self.report_path = render(
                session.session_directory,
                self.controller.results,
                steps=self.steps,
                strategies=[s.kind.value for s in self.controller.strategies],
                started_at=started_at,
                interrupted=self.interrupted,
            )
        except OSError as e:
            logger.error("Failed to write report: %s", e)
            return

        results = self.controller.results
        logger.info(
            "Done: %d/%d steps captured, %d via fallback. Report: %s",
            sum(1 for r in results if r.final_strategy_used is not None),
            len(self.steps),
            sum(1 for r in results if r.fallback_was_used),
            self.report_path,
        )


# -----------------------------------------------------------------------------
# CLI
# -----------------------------------------------------------------------------
def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="hybrid-capture",
        description="Guided App Store Connect submission screenshots with automatic fallback.",
    )
    ap.add_argument("--desktop", action="store_true", default=None, help="enable desktop automation (ENABLE_DESKTOP)")
    ap.add_argument("--no-fallback", action="store_true", help="disable the full-screen fallback strategy")
    ap.add_argument("--base-url", default=None, help="target application base URL (ASC_BASE)")
    ap.add_argument("--auth-state", default=None, help="persisted login state file (AUTH_STATE_PATH)")
    ap.add_argument("--captures-dir", default=None, help="root directory for session folders (CAPTURES_DIR)")
    ap.add_argument("--headless", action="store_true", default=None, help="run the browser headless")
    ap.add_argument("--yes", action="store_true", default=None, help="confirm every step without waiting for Enter")
    ap.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
    ap.add_argument("--list-steps", action="store_true", help="print the step catalog and exit")
    return ap


def config_overrides(args: argparse.Namespace) -> dict:
    return {
        "desktop_enabled": args.desktop,
        "fallback_enabled": False if args.no_fallback else None,
        "base_url": args.base_url,
        "auth_state_path": Path(args.auth_state) if args.auth_state else None,
        "captures_dir": Path(args.captures_dir) if args.captures_dir else None,
        "headless": args.headless,
        "auto_confirm": args.yes,
        "log_level": args.log_level,
    }


def print_steps(steps: Sequence[Step], out=None) -> None:
    out = out or sys.stdout
    for s in steps:
        where = s.target_url or "(manual navigation)"
        out.write(f"{s.prefix:<40} {s.title:<36} {where}\n")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)

    if args.list_steps:
        print_steps(list_steps())
        return EXIT_OK

    try:
        config = load_config(config_overrides(args))
    except ValidationError as e:
        logger.error("Invalid configuration:\n%s", e)
        return EXIT_CONFIG

    set_log_level(config.log_level)

    orch = CaptureOrchestrator(config)
    try:
        return asyncio.run(orch.run())
    except KeyboardInterrupt:
        # Platforms without loop signal handlers
        logger.warning("Interrupted")
        return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
