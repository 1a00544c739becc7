# services/screenshot.py
"""
Headless Chromium screenshot capture.

Each call launches its own browser process, which is why the SCREENSHOT
queue is capped by a permit pool.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from urllib.parse import urlparse

from api.app.config import get_settings

logger = logging.getLogger(__name__)

FULL_SIZE = (1280, 800)
THUMBNAIL_SIZE = (320, 200)


class ScreenshotCaptureError(Exception):
    pass


def is_capturable_url(url: str) -> bool:
    parsed = urlparse(url or "")
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def build_chromium_command(url: str, width: int, height: int, output: Path) -> list[str]:
    return [
        get_settings().chromium_path,
        "--headless=new",
        "--disable-gpu",
        "--no-sandbox",
        "--hide-scrollbars",
        f"--window-size={width},{height}",
        f"--screenshot={output}",
        url,
    ]


async def capture_screenshot(url: str, width: int, height: int, output: Path) -> Path:
    if not is_capturable_url(url):
        raise ValueError(f"Not an http(s) URL: {url!r}")

    settings = get_settings()
    output.parent.mkdir(parents=True, exist_ok=True)
    cmd = build_chromium_command(url, width, height, output)

    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        _, stderr = await asyncio.wait_for(proc.communicate(), timeout=settings.screenshot_timeout_seconds)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise ScreenshotCaptureError(
            f"timeout after {settings.screenshot_timeout_seconds:.0f}s capturing {url}"
        )

    if proc.returncode != 0 or not output.exists():
        detail = stderr.decode("utf-8", errors="replace").strip()[-500:]
        raise ScreenshotCaptureError(f"chromium exited {proc.returncode} for {url}: {detail}")

    logger.debug("Screenshot: %s %dx%d -> %s", url, width, height, output)
    return output
