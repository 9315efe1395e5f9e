"""
Operator confirmation gate: the one deliberate unbounded wait of a run.

StdinConfirmationGate reads Enter on a daemon thread and hands the result back to the
event loop, so a SIGINT/SIGTERM can cancel the waiting step without leaving a
blocked input() behind at shutdown.
"""

from __future__ import annotations

import asyncio
import sys
import threading
from typing import Optional, Protocol, TextIO

from capture_config import setup_logger
from steps import Step

logger = setup_logger("gate")

BANNER_WIDTH = 80


class ConfirmationGate(Protocol):
    async def confirm(self, step: Step, strategy_kind: str) -> None:
        ...


def build_prompt(step: Step, strategy_kind: str, total_steps: Optional[int] = None) -> str:
    position = f"[{step.index}/{total_steps}] " if total_steps else f"[{step.index}] "
    lines = [
        "=" * BANNER_WIDTH,
        f"{position}{step.title}  (strategy: {strategy_kind})",
        "=" * BANNER_WIDTH,
        step.instructions or "Complete the on-screen actions for this step",
    ]
    if step.target_url is None:
        lines.append("Manual navigation required for this step.")
    lines.append("")
    return "\n".join(lines)


class StdinConfirmationGate:
    def __init__(
        self,
        total_steps: Optional[int] = None,
        stream_in: TextIO = sys.stdin,
        stream_out: TextIO = sys.stdout,
    ):
        self.total_steps = total_steps
        self.stream_in = stream_in
        self.stream_out = stream_out

    async def confirm(self, step: Step, strategy_kind: str) -> None:
        loop = asyncio.get_running_loop()
        done: asyncio.Future = loop.create_future()

        self.stream_out.write(build_prompt(step, strategy_kind, self.total_steps) + "\n")
        self.stream_out.write("Press Enter to capture screenshot and continue... ")
        self.stream_out.flush()

        def _resolve(eof: bool) -> None:
            if not done.done():
                done.set_result(eof)

        def _read_line() -> None:
            line = self.stream_in.readline()
            try:
                loop.call_soon_threadsafe(_resolve, line == "")
            except RuntimeError:
                # loop already closed (run interrupted while waiting)
                return

        threading.Thread(target=_read_line, name=f"gate-{step.slug}", daemon=True).start()

        eof = await done
        if eof:
            logger.warning("[gate] stdin closed; treating as confirmation for %s", step.slug)
        else:
            logger.info("[gate] confirmed %s", step.slug)


class AutoConfirmGate:
    """Unattended runs and test harnesses: confirms every step."""

    def __init__(self, delay_s: float = 0.0):
        self.delay_s = delay_s
        self.confirmed = []

    async def confirm(self, step: Step, strategy_kind: str) -> None:
        if self.delay_s > 0:
            await asyncio.sleep(self.delay_s)
        self.confirmed.append((step.index, strategy_kind))
        logger.info("[gate] auto-confirmed %s (%s)", step.slug, strategy_kind)
