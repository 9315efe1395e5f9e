from __future__ import annotations

"""
evidence_recorder.py

Writes per-step capture artifacts into the session directory.

Naming: {session_dir}/{NN}-{slug}[-{qualifier}].{ext}
- no qualifier : full view (browser page)
- focus        : focused element capture
- desktop      : full-desktop capture (secondary strategy / cross-validation)
- fallback     : capture-only fallback

Writes go through a temp file + os.replace, so re-capturing a step overwrites the
previous artifact instead of failing or duplicating it.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence

from capture_config import setup_logger
from steps import Step

logger = setup_logger("evidence")

QUALIFIER_FULL = ""
QUALIFIER_FOCUS = "focus"
QUALIFIER_DESKTOP = "desktop"
QUALIFIER_FALLBACK = "fallback"

QUALIFIER_CAPTIONS = {
    QUALIFIER_FULL: "Browser View",
    QUALIFIER_FOCUS: "Element Focus",
    QUALIFIER_DESKTOP: "Desktop View",
    QUALIFIER_FALLBACK: "Full-Screen Fallback",
}


@dataclass(frozen=True)
class CapturedImage:
    qualifier: str
    data: bytes
    ext: str = "png"


def artifact_name(step: Step, qualifier: str = QUALIFIER_FULL, ext: str = "png") -> str:
    suffix = f"-{qualifier}" if qualifier else ""
    return f"{step.prefix}{suffix}.{ext}"


def caption_for(path: Path) -> str:
    stem = Path(path).stem
    for qualifier, caption in QUALIFIER_CAPTIONS.items():
        if qualifier and stem.endswith(f"-{qualifier}"):
            return caption
    return QUALIFIER_CAPTIONS[QUALIFIER_FULL]


def _atomic_write(path: Path, data: bytes) -> None:
    tmp = path.with_name(f".{path.name}.tmp")
    with open(tmp, "wb") as f:
        f.write(data)
    os.replace(tmp, path)


class EvidenceRecorder:
    def __init__(self, session_dir: Path):
        self.session_dir = Path(session_dir)

    def path_for(self, step: Step, qualifier: str = QUALIFIER_FULL, ext: str = "png") -> Path:
        return self.session_dir / artifact_name(step, qualifier, ext)

    def record(self, step: Step, strategy_kind: str, captures: Sequence[CapturedImage]) -> List[Path]:
        """Persist `captures` for `step`; returns the written paths in capture order."""
        self.session_dir.mkdir(parents=True, exist_ok=True)
        written: List[Path] = []
        for cap in captures:
            if not cap.data:
                logger.warning("[evidence] step=%s %s capture was empty; skipped", step.slug, cap.qualifier or "full")
                continue
            path = self.path_for(step, cap.qualifier, cap.ext)
            if path in written:
                logger.warning("[evidence] step=%s duplicate qualifier %r; keeping latest", step.slug, cap.qualifier)
                written.remove(path)
            if path.exists():
                logger.info("[evidence] overwriting %s", path.name)
            _atomic_write(path, cap.data)
            written.append(path)
            logger.info("[evidence] step=%s strategy=%s saved %s", step.slug, strategy_kind, path.name)

        if len(written) >= 2:
            self.write_comparison(step, written)
        return written

    def write_comparison(self, step: Step, paths: Sequence[Path]) -> Path:
        """Side-by-side index page for steps captured from more than one angle."""
        out = self.session_dir / f"{step.prefix}-comparison.md"
        lines = [f"# Screenshot Comparison - {step.title}", ""]
        for p in paths:
            caption = caption_for(p)
            lines += [f"## {caption}", "", f"![{caption}](./{p.name})", ""]
        out.write_text("\n".join(lines), encoding="utf-8")
        logger.debug("[evidence] comparison page %s (%d views)", out.name, len(paths))
        return out
