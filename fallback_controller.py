from __future__ import annotations

"""
fallback_controller.py

Per-step state machine:

  NOT_STARTED -> ATTEMPTING(i) -> AWAITING_OPERATOR_CONFIRMATION -> ATTEMPTING(i)
              -> SUCCEEDED | EXHAUSTED

For strategy i: navigate + await_stable (only when the step has a target URL),
prepare, look up the step's text hints, wait for the operator, capture, record.
A StrategyError, or any other non-fatal exception (recorded as "unexpected_error"),
marks the attempt failed and moves to strategy i+1; running out of strategies
leaves the step EXHAUSTED and the run continues with the next step.

Fatal errors (FatalCaptureError, cancellation) are never converted into attempts:
they leave the controller untouched and propagate to the caller.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from capture_config import setup_logger
from capture_errors import ERROR_UNEXPECTED, CaptureError, FatalCaptureError, StrategyError
from capture_strategies import CaptureStrategy, StrategyKind
from evidence_recorder import EvidenceRecorder
from operator_gate import ConfirmationGate
from steps import Step

logger = setup_logger("controller")

STRATEGY_PRIORITY: Tuple[StrategyKind, ...] = (
    StrategyKind.PRIMARY,
    StrategyKind.SECONDARY,
    StrategyKind.FALLBACK,
)


class StepState(str, Enum):
    NOT_STARTED = "not_started"
    ATTEMPTING = "attempting"
    AWAITING_OPERATOR_CONFIRMATION = "awaiting_operator_confirmation"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


# -----------------------------------------------------------------------------
# Results models
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class CaptureAttemptResult:
    strategy_kind: StrategyKind
    succeeded: bool
    error_kind: Optional[str] = None
    message: str = ""
    artifact_paths: Tuple[Path, ...] = ()
    elapsed_ms: int = 0
    located: Tuple[Tuple[str, Tuple[int, int]], ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy_kind.value,
            "succeeded": self.succeeded,
            "error_kind": self.error_kind,
            "message": self.message,
            "artifacts": [str(p) for p in self.artifact_paths],
            "elapsed_ms": self.elapsed_ms,
            "located": {text: list(xy) for text, xy in self.located},
        }


@dataclass
class StepResult:
    step: Step
    attempts: List[CaptureAttemptResult] = field(default_factory=list)
    state: StepState = StepState.NOT_STARTED
    elapsed_ms: int = 0

    def record(self, attempt: CaptureAttemptResult) -> None:
        self.attempts.append(attempt)

    @property
    def final_attempt(self) -> Optional[CaptureAttemptResult]:
        for a in self.attempts:
            if a.succeeded:
                return a
        return None

    @property
    def final_strategy_used(self) -> Optional[StrategyKind]:
        a = self.final_attempt
        return a.strategy_kind if a else None

    @property
    def fallback_was_used(self) -> bool:
        final = self.final_strategy_used
        return final is not None and final != StrategyKind.PRIMARY

    @property
    def failure_reason(self) -> Optional[str]:
        if self.final_attempt is not None or not self.attempts:
            return None
        return self.attempts[-1].error_kind

    @property
    def artifact_paths(self) -> Tuple[Path, ...]:
        a = self.final_attempt
        return a.artifact_paths if a else ()

    def to_dict(self) -> Dict[str, Any]:
        final = self.final_strategy_used
        return {
            "index": self.step.index,
            "title": self.step.title,
            "slug": self.step.slug,
            "state": self.state.value,
            "final_strategy": final.value if final else None,
            "fallback_used": self.fallback_was_used,
            "failure_reason": self.failure_reason,
            "elapsed_ms": self.elapsed_ms,
            "attempts": [a.to_dict() for a in self.attempts],
        }


# -----------------------------------------------------------------------------
# Controller
# -----------------------------------------------------------------------------
class FallbackController:
    """Runs the catalog one step at a time, trying strategies in priority order."""

    def __init__(
        self,
        strategies: Sequence[CaptureStrategy],
        recorder: EvidenceRecorder,
        gate: ConfirmationGate,
        *,
        session_manager: Any = None,
    ):
        if not strategies:
            raise ValueError("at least one capture strategy is required")
        kinds = [s.kind for s in strategies]
        if len(set(kinds)) != len(kinds):
            raise ValueError(f"duplicate strategies: {[k.value for k in kinds]}")
        if kinds != sorted(kinds, key=STRATEGY_PRIORITY.index):
            raise ValueError(f"strategies out of priority order: {[k.value for k in kinds]}")

        self.strategies = list(strategies)
        self.recorder = recorder
        self.gate = gate
        self.session_manager = session_manager

        self.results: List[StepResult] = []
        self.state = StepState.NOT_STARTED
        self.current_step: Optional[Step] = None
        self.current_strategy_index: Optional[int] = None

    async def run(self, steps: Sequence[Step]) -> List[StepResult]:
        total = len(steps)
        logger.info(
            "[run] %d steps, strategies=%s",
            total,
            ", ".join(s.kind.value for s in self.strategies),
        )
        for step in steps:
            if self.session_manager is not None:
                self.session_manager.ensure_live()
            logger.info("[step %d/%d] %s", step.index, total, step.title)
            self.results.append(await self.process_step(step))
        return self.results

    async def process_step(self, step: Step) -> StepResult:
        result = StepResult(step=step)
        self.current_step = step
        t0 = time.monotonic()

        for i, strategy in enumerate(self.strategies):
            self._enter(StepState.ATTEMPTING, i)
            result.state = StepState.ATTEMPTING
            attempt = await self._attempt(step, strategy)
            result.record(attempt)

            if attempt.succeeded:
                result.state = StepState.SUCCEEDED
                break

            if i + 1 < len(self.strategies):
                logger.warning(
                    "[fallback] %s: %s failed (%s), trying %s",
                    step.slug,
                    strategy.kind.value,
                    attempt.error_kind,
                    self.strategies[i + 1].kind.value,
                )

        if result.state != StepState.SUCCEEDED:
            result.state = StepState.EXHAUSTED
            logger.error("[step] %s exhausted; no evidence captured (%s)", step.slug, result.failure_reason)
        else:
            logger.info(
                "[step] %s captured via %s%s",
                step.slug,
                result.final_strategy_used.value,
                " (fallback)" if result.fallback_was_used else "",
            )

        result.elapsed_ms = int((time.monotonic() - t0) * 1000)
        self._enter(result.state, None)
        return result

    async def _attempt(self, step: Step, strategy: CaptureStrategy) -> CaptureAttemptResult:
        t0 = time.monotonic()
        located: List[Tuple[str, Tuple[int, int]]] = []

        def _done(ok: bool, error_kind: Optional[str] = None, message: str = "", paths=()) -> CaptureAttemptResult:
            return CaptureAttemptResult(
                strategy_kind=strategy.kind,
                succeeded=ok,
                error_kind=error_kind,
                message=message,
                artifact_paths=tuple(paths),
                elapsed_ms=max(0, int((time.monotonic() - t0) * 1000)),
                located=tuple(located),
            )

        try:
            if step.target_url:
                await strategy.navigate(step)
                await strategy.await_stable()

            await strategy.prepare(step)

            for hint in step.text_hints:
                xy = await strategy.locate_by_text(hint)
                if xy is not None:
                    located.append((hint, (int(xy[0]), int(xy[1]))))
                    logger.info("[locate] %s: %r at %s", strategy.kind.value, hint, xy)
                else:
                    logger.debug("[locate] %s: %r not found", strategy.kind.value, hint)

            self._enter(StepState.AWAITING_OPERATOR_CONFIRMATION, self.current_strategy_index)
            await self.gate.confirm(step, strategy.kind.value)
            self._enter(StepState.ATTEMPTING, self.current_strategy_index)

            captures = await strategy.capture_evidence(step)
            paths = self.recorder.record(step, strategy.kind.value, captures)
            if not paths:
                raise CaptureError(f"{strategy.kind.value} produced no artifacts")

        except StrategyError as e:
            logger.warning("[attempt] %s/%s failed: %s", step.slug, strategy.kind.value, e)
            return _done(False, e.error_kind, str(e))
        except FatalCaptureError:
            raise
        except Exception as e:
            logger.exception("[attempt] %s/%s unexpected error", step.slug, strategy.kind.value)
            return _done(False, ERROR_UNEXPECTED, f"{type(e).__name__}: {e}")

        return _done(True, paths=paths)

    def _enter(self, state: StepState, strategy_index: Optional[int]) -> None:
        self.state = state
        self.current_strategy_index = strategy_index
