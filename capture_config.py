from __future__ import annotations

"""
capture_config.py

Run configuration + logging setup for the hybrid capture tool.

- Everything the run needs from the environment is read once, here, into an
  immutable CaptureConfig. Nothing else in the project calls os.getenv.
- CLI flags (orchestrator.py) override env values.
- Loggers live under the "capture." namespace; a run attaches a file handler
  to the "capture" parent so every module's output lands in capture.log.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_BASE_URL = "https://appstoreconnect.apple.com"
DEFAULT_AUTH_STATE_PATH = ".auth/state.json"
DEFAULT_CAPTURES_DIR = "captures"

LOG_NAMESPACE = "capture"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATEFMT = "%H:%M:%S"


# -----------------------------------------------------------------------------
# Env helpers
# -----------------------------------------------------------------------------
def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None:
        return default
    try:
        return int(v)
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None:
        return default
    try:
        return float(v)
    except Exception:
        return default


def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    if v is None:
        return default
    return str(v).strip()


# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
def _parse_log_level(s: str, default: int = logging.INFO) -> int:
    if not s:
        return default
    s = s.strip().upper()
    return {
        "CRITICAL": logging.CRITICAL,
        "ERROR": logging.ERROR,
        "WARNING": logging.WARNING,
        "WARN": logging.WARNING,
        "INFO": logging.INFO,
        "DEBUG": logging.DEBUG,
    }.get(s, default)


def setup_logger(name: str) -> logging.Logger:
    level = _parse_log_level(_env_str("CAPTURE_LOG_LEVEL", "INFO"), default=logging.INFO)
    logger = logging.getLogger(f"{LOG_NAMESPACE}.{name}")
    logger.setLevel(level)
    if logger.handlers:
        return logger
    ch = logging.StreamHandler()
    ch.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)
    ch.setFormatter(formatter)
    logger.addHandler(ch)
    return logger


def set_log_level(level_name: str) -> None:
    """Re-level every capture.* logger (and its handlers) after startup."""
    level = _parse_log_level(level_name)
    for name, obj in logging.root.manager.loggerDict.items():
        if not isinstance(obj, logging.Logger):
            continue
        if name == LOG_NAMESPACE or name.startswith(LOG_NAMESPACE + "."):
            obj.setLevel(level)
            for h in obj.handlers:
                if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler):
                    h.setLevel(level)


def attach_run_log(session_dir: Path) -> logging.FileHandler:
    parent = logging.getLogger(LOG_NAMESPACE)
    parent.setLevel(logging.DEBUG)
    fh = logging.FileHandler(Path(session_dir) / "capture.log", encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    parent.addHandler(fh)
    return fh


def detach_run_log(handler: Optional[logging.Handler]) -> None:
    if handler is None:
        return
    logging.getLogger(LOG_NAMESPACE).removeHandler(handler)
    handler.close()


# -----------------------------------------------------------------------------
# Config model
# -----------------------------------------------------------------------------
class CaptureConfig(BaseModel):
    """Immutable settings for one capture run."""

    model_config = ConfigDict(frozen=True)

    base_url: str = DEFAULT_BASE_URL
    auth_state_path: Path = Path(DEFAULT_AUTH_STATE_PATH)
    captures_dir: Path = Path(DEFAULT_CAPTURES_DIR)

    desktop_enabled: bool = False
    fallback_enabled: bool = True
    auto_confirm: bool = False

    headless: bool = False
    browser_channel: Optional[str] = None
    slow_mo_ms: int = Field(default=100, ge=0)
    viewport_width: int = Field(default=1440, gt=0)
    viewport_height: int = Field(default=900, gt=0)

    navigation_timeout_ms: int = Field(default=15_000, ge=1_000, le=120_000)
    stable_timeout_ms: int = Field(default=10_000, ge=0, le=120_000)
    element_timeout_ms: int = Field(default=5_000, ge=0, le=60_000)
    settle_delay_s: float = Field(default=1.0, ge=0.0)

    ocr_url: Optional[str] = None
    ocr_timeout_s: int = Field(default=30, gt=0)
    ocr_min_conf: float = Field(default=0.55, ge=0.0, le=1.0)
    text_match_threshold: int = Field(default=85, ge=0, le=100)

    log_level: str = "INFO"

    @field_validator("base_url")
    @classmethod
    def _check_base_url(cls, v: str) -> str:
        v = (v or "").strip().rstrip("/")
        if not (v.startswith("http://") or v.startswith("https://")):
            raise ValueError(f"base_url must be an http(s) URL, got {v!r}")
        return v

    @field_validator("ocr_url", "browser_channel")
    @classmethod
    def _blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, v: str) -> str:
        v = (v or "INFO").strip().upper()
        if v not in {"CRITICAL", "ERROR", "WARNING", "WARN", "INFO", "DEBUG"}:
            raise ValueError(f"unknown log level {v!r}")
        return v

    @property
    def viewport(self) -> Dict[str, int]:
        return {"width": self.viewport_width, "height": self.viewport_height}


def load_config(overrides: Optional[Dict[str, Any]] = None, *, use_dotenv: bool = True) -> CaptureConfig:
    """
    Build the run config from .env + process env, then apply explicit overrides
    (CLI flags). Overrides set to None are ignored.
    """
    if use_dotenv:
        load_dotenv()

    values: Dict[str, Any] = {
        "base_url": _env_str("ASC_BASE", DEFAULT_BASE_URL),
        "auth_state_path": Path(_env_str("AUTH_STATE_PATH", DEFAULT_AUTH_STATE_PATH)),
        "captures_dir": Path(_env_str("CAPTURES_DIR", DEFAULT_CAPTURES_DIR)),
        "desktop_enabled": _env_bool("ENABLE_DESKTOP", False),
        "fallback_enabled": _env_bool("ENABLE_FALLBACK", True),
        "auto_confirm": _env_bool("CAPTURE_AUTO_CONFIRM", False),
        "headless": _env_bool("BROWSER_HEADLESS", False),
        "browser_channel": _env_str("BROWSER_CHANNEL", "") or None,
        "slow_mo_ms": _env_int("BROWSER_SLOW_MO_MS", 100),
        "navigation_timeout_ms": _env_int("CAPTURE_NAV_TIMEOUT_MS", 15_000),
        "stable_timeout_ms": _env_int("CAPTURE_STABLE_TIMEOUT_MS", 10_000),
        "element_timeout_ms": _env_int("CAPTURE_ELEMENT_TIMEOUT_MS", 5_000),
        "settle_delay_s": _env_float("CAPTURE_SETTLE_DELAY_S", 1.0),
        "ocr_url": _env_str("DESKTOP_OCR_URL", "") or None,
        "ocr_timeout_s": _env_int("DESKTOP_OCR_TIMEOUT_S", 30),
        "ocr_min_conf": _env_float("DESKTOP_OCR_MIN_CONF", 0.55),
        "text_match_threshold": _env_int("FUZZY_MATCH_THRESHOLD", 85),
        "log_level": _env_str("CAPTURE_LOG_LEVEL", "INFO"),
    }

    for k, v in (overrides or {}).items():
        if v is not None:
            values[k] = v

    return CaptureConfig(**values)
