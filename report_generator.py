from __future__ import annotations

"""
report_generator.py

Renders the audit trail for a run:
- report.md    : human-readable, one section per catalog step
- results.json : machine-readable RunSummary.to_dict()

Rendering never fails because of missing evidence: exhausted steps get a
"No evidence captured" line and vanished artifacts get a "missing artifact" note.
"""

import json
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from capture_config import setup_logger
from capture_strategies import STRATEGY_LABELS, StrategyKind
from evidence_recorder import caption_for
from fallback_controller import StepResult, StepState
from steps import Step

logger = setup_logger("report")

REPORT_FILENAME = "report.md"
RESULTS_FILENAME = "results.json"


def _pct(n: int, total: int) -> str:
    return f"{(100.0 * n / total):.1f}%" if total else "0.0%"


def _seconds(ms: int) -> str:
    return f"{ms / 1000.0:.2f}s"


@dataclass
class RunSummary:
    session_directory: Path
    results: List[StepResult]
    steps: List[Step] = field(default_factory=list)
    strategies: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    interrupted: bool = False

    @property
    def total_steps(self) -> int:
        return max(len(self.steps), len(self.results))

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.state == StepState.SUCCEEDED)

    @property
    def exhausted(self) -> int:
        return sum(1 for r in self.results if r.state == StepState.EXHAUSTED)

    @property
    def fallback_used(self) -> int:
        return sum(1 for r in self.results if r.fallback_was_used)

    @property
    def total_elapsed_ms(self) -> int:
        return sum(r.elapsed_ms for r in self.results)

    def strategy_distribution(self) -> Dict[str, int]:
        counts = Counter(
            r.final_strategy_used.value if r.final_strategy_used else "none" for r in self.results
        )
        return dict(counts)

    def pending_steps(self) -> List[Step]:
        done = {r.step.index for r in self.results}
        return [s for s in self.steps if s.index not in done]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_directory": str(self.session_directory),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "interrupted": self.interrupted,
            "strategies": list(self.strategies),
            "total_steps": self.total_steps,
            "completed_steps": len(self.results),
            "succeeded": self.succeeded,
            "exhausted": self.exhausted,
            "fallback_used": self.fallback_used,
            "total_elapsed_ms": self.total_elapsed_ms,
            "strategy_distribution": self.strategy_distribution(),
            "steps": [r.to_dict() for r in self.results],
            "pending": [s.slug for s in self.pending_steps()],
        }


# -----------------------------------------------------------------------------
# Markdown
# -----------------------------------------------------------------------------
def _strategy_name(kind: Optional[StrategyKind]) -> str:
    if kind is None:
        return "none"
    return f"{kind.value} ({STRATEGY_LABELS[kind]})"


def _step_section(result: StepResult, session_dir: Path) -> List[str]:
    step = result.step
    out = [f"### {step.index}. {step.title}", ""]
    out.append(f"**Strategy Used:** {_strategy_name(result.final_strategy_used)}  ")
    out.append(f"**Duration:** {_seconds(result.elapsed_ms)}  ")
    out.append(f"**Status:** {'Success' if result.state == StepState.SUCCEEDED else 'Failed'}  ")
    if result.fallback_was_used:
        out.append("**Note:** Fallback strategy used  ")
    out.append("")

    if step.instructions:
        out += [f"**Instructions:** {step.instructions}", ""]
    if step.target_url:
        out += [f"**URL:** {step.target_url}", ""]

    if result.attempts:
        out += ["| # | Strategy | Result | Error | Elapsed |", "|---|---|---|---|---|"]
        for n, a in enumerate(result.attempts, start=1):
            out.append(
                f"| {n} | {a.strategy_kind.value} | {'ok' if a.succeeded else 'failed'} "
                f"| {a.error_kind or '-'} | {_seconds(a.elapsed_ms)} |"
            )
        out.append("")

    if result.final_attempt is None:
        reason = result.failure_reason or "no strategy attempted"
        out += [f"No evidence captured, reason: {reason}", ""]
    else:
        paths = result.artifact_paths
        out += [f"**Screenshots ({len(paths)}):**", ""]
        for p in paths:
            p = Path(p)
            if not (session_dir / p.name).exists():
                out += [f"- {p.name}: missing artifact", ""]
                continue
            out += [f"![{step.title} - {caption_for(p)}](./{p.name})", ""]
        comparison = session_dir / f"{step.prefix}-comparison.md"
        if comparison.exists():
            out += [f"**Comparison:** [{comparison.name}](./{comparison.name})", ""]

    out += ["---", ""]
    return out


def build_report(summary: RunSummary, generated_at: Optional[datetime] = None) -> str:
    generated_at = generated_at or datetime.now()
    total = summary.total_steps
    completed = len(summary.results)

    lines = ["# App Store Connect Capture Report", ""]
    if summary.interrupted:
        lines += [f"**Run interrupted** after {completed} of {total} steps.", ""]
    lines += [
        f"Generated: {generated_at.isoformat(timespec='seconds')}  ",
        f"Session Directory: {summary.session_directory}  ",
        f"Strategies Enabled: {', '.join(summary.strategies) or 'none'}  ",
        f"Total Steps: {total}",
        "",
        "## Performance Summary",
        "",
        f"- **Total Duration:** {summary.total_elapsed_ms / 1000.0:.1f} seconds",
        f"- **Success Rate:** {_pct(summary.succeeded, completed)}",
        f"- **Fallback Usage:** {summary.fallback_used} steps ({_pct(summary.fallback_used, completed)})",
        f"- **No Evidence:** {summary.exhausted} steps",
        "",
        "## Strategy Distribution",
        "",
    ]
    for name, count in sorted(summary.strategy_distribution().items()):
        lines.append(f"- **{name}:** {count} steps")
    lines += ["", "## Detailed Steps", ""]

    for result in summary.results:
        lines += _step_section(result, Path(summary.session_directory))

    for step in summary.pending_steps():
        lines += [
            f"### {step.index}. {step.title}",
            "",
            "No evidence captured, reason: run interrupted before this step",
            "",
            "---",
            "",
        ]

    return "\n".join(lines)


def write_results_json(summary: RunSummary) -> Path:
    out = Path(summary.session_directory) / RESULTS_FILENAME
    out.write_text(json.dumps(summary.to_dict(), indent=2), encoding="utf-8")
    logger.info("Results saved to: %s", out)
    return out


def render(
    session_directory: Path,
    results: Sequence[StepResult],
    *,
    steps: Sequence[Step] = (),
    strategies: Sequence[str] = (),
    started_at: Optional[datetime] = None,
    interrupted: bool = False,
) -> Path:
    """Write report.md and results.json for `results`; returns the report path."""
    session_directory = Path(session_directory)
    summary = RunSummary(
        session_directory=session_directory,
        results=list(results),
        steps=list(steps),
        strategies=list(strategies),
        started_at=started_at,
        finished_at=datetime.now(),
        interrupted=interrupted,
    )

    session_directory.mkdir(parents=True, exist_ok=True)
    report_path = session_directory / REPORT_FILENAME
    report_path.write_text(build_report(summary, summary.finished_at), encoding="utf-8")
    logger.info("Report saved: %s", report_path)

    try:
        write_results_json(summary)
    except (OSError, TypeError) as e:
        logger.warning("results.json not written: %s", e)
    return report_path
