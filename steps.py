from __future__ import annotations

"""
steps.py

Static catalog of the App Store Connect submission walkthrough.

Each Step is an immutable value; list_steps() returns the same ordered tuple
on every call. Artifacts are named from (index, slug), so reordering steps
only changes file prefixes of future runs.
"""

import re
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple
from urllib.parse import urljoin


def slugify(text: str) -> str:
    s = re.sub(r"[^a-z0-9]+", "-", (text or "").lower())
    return s.strip("-")


def format_step_index(index: int) -> str:
    return f"{index:02d}"


@dataclass(frozen=True)
class Step:
    index: int
    title: str
    slug: str
    instructions: str
    target_url: Optional[str] = None
    target_selector: Optional[str] = None
    # On-screen labels looked up before the operator gate.
    text_hints: Tuple[str, ...] = ()

    @property
    def prefix(self) -> str:
        return f"{format_step_index(self.index)}-{self.slug}"


def resolve_url(step: Step, base_url: str) -> Optional[str]:
    """Absolute navigation target for `step`, or None for manual-navigation steps."""
    if not step.target_url:
        return None
    if step.target_url.startswith(("http://", "https://")):
        return step.target_url
    return urljoin(base_url.rstrip("/") + "/", step.target_url.lstrip("/"))


_CATALOG: Sequence[Tuple[str, Optional[str], Optional[str], Tuple[str, ...], str]] = (
    (
        "Login",
        "/login",
        'input[type="email"], input[name="email"], #account_name_text_field',
        ("Sign In", "Apple ID"),
        "Log in to App Store Connect (2FA if prompted). When the dashboard fully loads, press Enter to capture.",
    ),
    (
        "Apps Dashboard",
        "/apps",
        None,
        ("New App",),
        "Confirm you're on Apps. Ensure the (+) New App is visible. Press Enter.",
    ),
    (
        "New App Modal",
        None,
        None,
        ("Bundle ID", "SKU"),
        "Click (+) New App to open the modal. Do not submit, just show the fields (Name, Language, Bundle ID, SKU). Press Enter.",
    ),
    (
        "App Info - Main",
        None,
        None,
        ("App Information",),
        "Open an existing app/draft. Navigate to App Information (name, subtitle, category). Press Enter.",
    ),
    (
        "App Info - URLs & Age Rating",
        None,
        None,
        ("Privacy Policy URL", "Age Rating"),
        "Show Privacy Policy URL, Support URL, and the Age Rating questionnaire entry point. Press Enter.",
    ),
    (
        "App Privacy",
        None,
        None,
        ("Privacy Policy", "Data Collection"),
        "Open App Privacy. Show Data Collection summary/questions. Press Enter.",
    ),
    (
        "Features - In-App Purchases",
        None,
        None,
        ("In-App Purchases",),
        "Go to Features > In-App Purchases. Show the (+) add product button and list. Press Enter.",
    ),
    (
        "Prepare for Submission",
        None,
        None,
        ("What's New", "Keywords"),
        "Open the version's Prepare for Submission page. Show 'What's New', Description, Keywords. Press Enter.",
    ),
    (
        "Encryption",
        None,
        None,
        ("Encryption",),
        "Open the Export Compliance/Encryption section (where you declare HTTPS/standard encryption). Press Enter.",
    ),
    (
        "Upload via Xcode (Info Slide)",
        None,
        None,
        (),
        "Switch to an informational page/placeholder explaining Xcode > Archive > Upload. "
        "(If you have an internal wiki page, open it; otherwise show Activity tab.) Press Enter.",
    ),
    (
        "Activity - Build Processing",
        "/apps",
        None,
        ("Activity",),
        "Open your app > Activity. Show a build in processing / processed. Press Enter.",
    ),
    (
        "Select Build",
        None,
        None,
        ("Build",),
        "Return to Prepare for Submission. Show the 'Select a build' action with the build list visible. Press Enter.",
    ),
    (
        "Attach IAP to Version",
        None,
        None,
        ("In-App Purchases",),
        "Show where to add IAPs to the submission (ensure products are Ready to Submit). Press Enter.",
    ),
    (
        "Review Notes (Demo Login)",
        None,
        None,
        ("Notes",),
        "Open the Review Notes field. Type (or display) demo creds (mask sensitive data). Press Enter.",
    ),
    (
        "Submit for Review",
        None,
        None,
        ("Submit for Review",),
        "Scroll to the bottom where the Submit for Review button is visible. Do NOT click it. Press Enter.",
    ),
)


def build_steps(
    catalog: Sequence[Tuple[str, Optional[str], Optional[str], Tuple[str, ...], str]],
) -> Tuple[Step, ...]:
    steps = tuple(
        Step(
            index=i,
            title=title,
            slug=slugify(title),
            instructions=instructions,
            target_url=url,
            target_selector=selector,
            text_hints=tuple(hints),
        )
        for i, (title, url, selector, hints, instructions) in enumerate(catalog, start=1)
    )
    validate_steps(steps)
    return steps


def validate_steps(steps: Sequence[Step]) -> None:
    seen = set()
    for expected, step in enumerate(steps, start=1):
        if step.index != expected:
            raise ValueError(f"step index {step.index} out of order (expected {expected})")
        if not step.slug:
            raise ValueError(f"step {step.index} has an empty slug")
        if step.slug in seen:
            raise ValueError(f"duplicate step slug {step.slug!r}")
        seen.add(step.slug)


SUBMISSION_STEPS: Tuple[Step, ...] = build_steps(_CATALOG)


def list_steps() -> Tuple[Step, ...]:
    return SUBMISSION_STEPS
