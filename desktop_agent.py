#!/usr/bin/env python3
from __future__ import annotations

"""
desktop_agent.py - Desktop Capture Agent (screen grab + OCR text search)

Key behaviors:
- Full-screen capture through pyautogui, so coordinates match pyautogui.click() space.
- Finds on-screen text via the OCR gateway (/observe) and fuzzy matching; absence is a
  normal result (None), never an exception.
- Drives the focused browser window with keyboard primitives (address bar + URL).
- Detects a settled screen by comparing consecutive downscaled frames.

All methods are blocking; async callers run them with asyncio.to_thread.
"""

import io
import platform
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests
from PIL import Image, ImageChops, ImageStat
from rapidfuzz import fuzz

from capture_config import CaptureConfig, setup_logger
from capture_errors import CaptureError, NavigationError, StabilityTimeoutError

logger = setup_logger("desktop")


@dataclass
class Backoff:
    max_retries: int = 2
    base_delay_s: float = 0.3
    max_delay_s: float = 2.0

    def delay(self, attempt: int) -> float:
        return min(self.max_delay_s, self.base_delay_s * (2 ** attempt)) + (attempt % 3) * 0.05

    def sleep(self, attempt: int) -> None:
        time.sleep(self.delay(attempt))


def _load_pyautogui():
    # Imported lazily: pyautogui needs a display at import time.
    import pyautogui

    pyautogui.FAILSAFE = True
    return pyautogui


# -----------------------------
# OCR helpers
# -----------------------------
def _safe_text(s: Any) -> str:
    return str(s or "").replace("\n", " ").strip()


def _normalize_text(s: str) -> str:
    return " ".join(_safe_text(s).lower().split())


def _element_conf(el: Dict[str, Any]) -> float:
    try:
        return float(el.get("confidence") or el.get("conf") or 0.0)
    except (TypeError, ValueError):
        return 0.0


def _element_click_norm(el: Dict[str, Any]) -> Optional[Tuple[float, float]]:
    cn = el.get("click_norm")
    if isinstance(cn, (list, tuple)) and len(cn) == 2:
        try:
            return float(cn[0]), float(cn[1])
        except (TypeError, ValueError):
            return None
    bn = el.get("bbox_norm")
    if isinstance(bn, (list, tuple)) and len(bn) == 4:
        try:
            x0, y0, x1, y1 = map(float, bn)
            return (x0 + x1) / 2.0, (y0 + y1) / 2.0
        except (TypeError, ValueError):
            return None
    return None


def match_text_element(
    elements: List[Dict[str, Any]],
    needle: str,
    *,
    threshold: int,
    min_conf: float,
) -> Optional[Dict[str, Any]]:
    """
    Best OCR element for `needle`: fuzzy partial match >= threshold, OCR confidence
    >= min_conf, and a usable click point. Ties on score go to higher confidence.
    """
    needle_n = _normalize_text(needle)
    if not needle_n:
        return None

    best: Optional[Dict[str, Any]] = None
    best_key: Tuple[float, float] = (-1.0, -1.0)
    for el in elements or []:
        text_n = _normalize_text(el.get("text") or "")
        if not text_n:
            continue
        conf = _element_conf(el)
        if conf < min_conf:
            continue
        click = _element_click_norm(el)
        if click is None:
            continue
        score = float(fuzz.partial_ratio(needle_n, text_n))
        if score < threshold:
            continue
        key = (score, conf)
        if key > best_key:
            best_key = key
            best = {"element": el, "score": score, "confidence": conf, "click_norm": click}
    return best


def image_to_png_bytes(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def frames_match(a: Image.Image, b: Image.Image, *, tolerance: float = 1.0, width: int = 160) -> bool:
    """True when two frames are visually the same after downscaling (mean abs diff <= tolerance)."""

    def _thumb(img: Image.Image) -> Image.Image:
        w, h = img.size
        height = max(1, int(round(h * (width / float(max(1, w))))))
        return img.convert("L").resize((width, height))

    ta, tb = _thumb(a), _thumb(b)
    if ta.size != tb.size:
        return False
    diff = ImageChops.difference(ta, tb)
    return ImageStat.Stat(diff).mean[0] <= tolerance


# -----------------------------
# Agent
# -----------------------------
class DesktopCaptureAgent:
    """OS-level automation: sees any on-screen app, cannot reach off-screen content."""

    def __init__(self, config: CaptureConfig, backoff: Backoff = Backoff()):
        self.config = config
        self.backoff = backoff
        self.ocr_base_url = (config.ocr_url or "").strip()
        self._gui = None

    @property
    def gui(self):
        if self._gui is None:
            self._gui = _load_pyautogui()
        return self._gui

    # =============================
    # Screenshot backend
    # =============================
    def grab_screen(self) -> Image.Image:
        return self.gui.screenshot().convert("RGB")

    def screenshot_png(self) -> bytes:
        try:
            img = self.grab_screen()
        except Exception as e:
            raise CaptureError("desktop screen capture failed", detail=str(e)) from e
        data = image_to_png_bytes(img)
        logger.info("[capture] desktop screenshot %dx%d", img.size[0], img.size[1])
        return data

    def screen_size(self) -> Tuple[int, int]:
        try:
            w, h = self.gui.size()
            return int(w), int(h)
        except Exception as e:
            logger.warning("Failed to get screen size, using defaults: %s", e)
            return 1920, 1080

    # =============================
    # Keyboard-driven navigation
    # =============================
    def _modifier(self) -> str:
        return "command" if platform.system() == "Darwin" else "ctrl"

    def open_url(self, url: str) -> None:
        """Type `url` into the focused browser window's address bar."""
        try:
            logger.info("[navigate/desktop] %s", url)
            self.gui.hotkey(self._modifier(), "l")
            time.sleep(0.15)
            self.gui.write(url, interval=0.01)
            self.gui.press("enter")
        except Exception as e:
            raise NavigationError(f"desktop navigation to {url} failed", detail=str(e)) from e

    def wait_for_still_screen(self, timeout_s: float, poll_s: float = 0.5) -> None:
        deadline = time.monotonic() + max(0.0, timeout_s)
        try:
            prev = self.grab_screen()
            while True:
                time.sleep(poll_s)
                cur = self.grab_screen()
                if frames_match(prev, cur):
                    return
                if time.monotonic() >= deadline:
                    break
                prev = cur
        except Exception as e:
            raise StabilityTimeoutError("screen grab failed while waiting to settle", detail=str(e)) from e
        raise StabilityTimeoutError(f"screen still changing after {timeout_s:.1f}s")

    # =============================
    # Observer (/observe) full-screen
    # =============================
    def observe(self, image: Image.Image) -> Dict[str, Any]:
        endpoint = self.ocr_base_url.rstrip("/") + "/observe"
        payload = image_to_png_bytes(image)
        last_err: Optional[Exception] = None
        for attempt in range(self.backoff.max_retries + 1):
            try:
                files = {"file": ("screenshot.png", io.BytesIO(payload), "image/png")}
                resp = requests.post(endpoint, files=files, timeout=self.config.ocr_timeout_s)
                resp.raise_for_status()
                obs = resp.json()
                if not obs.get("ok"):
                    raise RuntimeError("observe returned ok=false")
                return obs
            except (requests.RequestException, ValueError, RuntimeError) as e:
                last_err = e
                logger.debug("[observe] attempt %d failed: %s", attempt + 1, e)
                if attempt < self.backoff.max_retries:
                    self.backoff.sleep(attempt)
        raise RuntimeError(f"observe failed: {last_err}")

    def find_text_on_screen(self, text: str) -> Optional[Tuple[int, int]]:
        if not self.ocr_base_url:
            logger.debug("[locate/desktop] DESKTOP_OCR_URL not set; %r not searched", text)
            return None
        try:
            img = self.grab_screen()
            obs = self.observe(img)
        except Exception as e:
            logger.debug("[locate/desktop] %r search failed: %s", text, e)
            return None

        best = match_text_element(
            obs.get("elements") or [],
            text,
            threshold=self.config.text_match_threshold,
            min_conf=self.config.ocr_min_conf,
        )
        if best is None:
            logger.debug("[locate/desktop] %r not found on screen", text)
            return None

        sw, sh = self.screen_size()
        cx, cy = best["click_norm"]
        xy = int(round(cx * sw)), int(round(cy * sh))
        logger.info("[locate/desktop] %r at %s (score=%.0f conf=%.2f)", text, xy, best["score"], best["confidence"])
        return xy
