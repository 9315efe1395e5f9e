"""
Error taxonomy for the capture run.

StrategyError subclasses are recoverable: the fallback controller turns them
into a failed attempt and moves on to the next strategy.
FatalCaptureError subclasses abort the whole run (after teardown).
"""

from __future__ import annotations

from typing import Optional

# -----------------------------------------------------------------------------
# Error kinds (stable strings, written to report.md / results.json)
# -----------------------------------------------------------------------------
ERROR_NAVIGATION = "navigation_error"
ERROR_STABILITY_TIMEOUT = "stability_timeout"
ERROR_CAPTURE = "capture_error"
ERROR_RESOURCE_INIT = "resource_init_error"
ERROR_HANDLE_LOST = "automation_handle_lost"
ERROR_UNEXPECTED = "unexpected_error"


class CaptureToolError(Exception):
    error_kind: str = ERROR_UNEXPECTED

    def __init__(self, message: str, *, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message} ({self.detail})"
        return self.message


# -----------------------------------------------------------------------------
# Recoverable (per-strategy)
# -----------------------------------------------------------------------------
class StrategyError(CaptureToolError):
    pass


class NavigationError(StrategyError):
    error_kind = ERROR_NAVIGATION


class StabilityTimeoutError(StrategyError):
    error_kind = ERROR_STABILITY_TIMEOUT


class CaptureError(StrategyError):
    error_kind = ERROR_CAPTURE


# -----------------------------------------------------------------------------
# Fatal (per-run)
# -----------------------------------------------------------------------------
class FatalCaptureError(CaptureToolError):
    pass


class ResourceInitError(FatalCaptureError):
    error_kind = ERROR_RESOURCE_INIT


class AutomationHandleLostError(FatalCaptureError):
    error_kind = ERROR_HANDLE_LOST
