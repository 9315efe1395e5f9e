"""Tests for evidence_recorder.py: deterministic naming, overwrite, comparison page."""

from __future__ import annotations

from conftest import make_png
from evidence_recorder import (
    QUALIFIER_DESKTOP,
    QUALIFIER_FALLBACK,
    QUALIFIER_FOCUS,
    QUALIFIER_FULL,
    CapturedImage,
    EvidenceRecorder,
    artifact_name,
    caption_for,
)


class TestNaming:
    def test_full_view_has_no_qualifier(self, three_steps):
        assert artifact_name(three_steps[0]) == "01-login.png"

    def test_qualifiers(self, three_steps):
        step = three_steps[1]
        assert artifact_name(step, QUALIFIER_FOCUS) == "02-apps-dashboard-focus.png"
        assert artifact_name(step, QUALIFIER_DESKTOP) == "02-apps-dashboard-desktop.png"
        assert artifact_name(step, QUALIFIER_FALLBACK) == "02-apps-dashboard-fallback.png"

    def test_captions(self, tmp_path):
        assert caption_for(tmp_path / "01-login.png") == "Browser View"
        assert caption_for(tmp_path / "01-login-focus.png") == "Element Focus"
        assert caption_for(tmp_path / "01-login-desktop.png") == "Desktop View"
        assert caption_for(tmp_path / "01-login-fallback.png") == "Full-Screen Fallback"


class TestRecord:
    def test_writes_in_capture_order(self, session_dir, three_steps, png_bytes):
        rec = EvidenceRecorder(session_dir)
        paths = rec.record(
            three_steps[0],
            "primary",
            [CapturedImage(QUALIFIER_FULL, png_bytes), CapturedImage(QUALIFIER_FOCUS, png_bytes)],
        )
        assert [p.name for p in paths] == ["01-login.png", "01-login-focus.png"]
        assert all(p.read_bytes() == png_bytes for p in paths)

    def test_rerecord_overwrites(self, session_dir, three_steps):
        rec = EvidenceRecorder(session_dir)
        first, second = make_png((255, 0, 0)), make_png((0, 255, 0))

        rec.record(three_steps[0], "primary", [CapturedImage(QUALIFIER_FULL, first)])
        paths = rec.record(three_steps[0], "primary", [CapturedImage(QUALIFIER_FULL, second)])

        assert paths == [session_dir / "01-login.png"]
        assert (session_dir / "01-login.png").read_bytes() == second
        assert sorted(p.name for p in session_dir.iterdir()) == ["01-login.png"]

    def test_empty_capture_skipped(self, session_dir, three_steps):
        rec = EvidenceRecorder(session_dir)
        assert rec.record(three_steps[0], "primary", [CapturedImage(QUALIFIER_FULL, b"")]) == []
        assert list(session_dir.iterdir()) == []

    def test_creates_missing_session_dir(self, tmp_path, three_steps, png_bytes):
        rec = EvidenceRecorder(tmp_path / "later")
        paths = rec.record(three_steps[2], "fallback", [CapturedImage(QUALIFIER_FALLBACK, png_bytes)])
        assert paths[0].exists()

    def test_comparison_page_for_multiple_views(self, session_dir, three_steps, png_bytes):
        rec = EvidenceRecorder(session_dir)
        rec.record(
            three_steps[0],
            "primary",
            [CapturedImage(QUALIFIER_FULL, png_bytes), CapturedImage(QUALIFIER_DESKTOP, png_bytes)],
        )
        page = (session_dir / "01-login-comparison.md").read_text(encoding="utf-8")
        assert "# Screenshot Comparison - Login" in page
        assert "![Browser View](./01-login.png)" in page
        assert "![Desktop View](./01-login-desktop.png)" in page

    def test_no_comparison_for_single_view(self, session_dir, three_steps, png_bytes):
        EvidenceRecorder(session_dir).record(three_steps[0], "primary", [CapturedImage(QUALIFIER_FULL, png_bytes)])
        assert not (session_dir / "01-login-comparison.md").exists()
