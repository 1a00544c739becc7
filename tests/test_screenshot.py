# tests/test_screenshot.py
from __future__ import annotations

from pathlib import Path

import pytest

from services.screenshot import build_chromium_command, capture_screenshot, is_capturable_url


def test_capturable_urls():
    assert is_capturable_url("https://example.com/page")
    assert is_capturable_url("http://example.com")
    assert not is_capturable_url("file:///etc/passwd")
    assert not is_capturable_url("javascript:alert(1)")
    assert not is_capturable_url("")
    assert not is_capturable_url(None)


def test_chromium_command():
    cmd = build_chromium_command("https://example.com", 320, 200, Path("/tmp/out.png"))
    assert cmd[0] == "chromium"
    assert "--headless=new" in cmd
    assert "--window-size=320,200" in cmd
    assert "--screenshot=/tmp/out.png" in cmd
    assert cmd[-1] == "https://example.com"


@pytest.mark.asyncio
async def test_capture_refuses_non_http(tmp_path):
    with pytest.raises(ValueError):
        await capture_screenshot("file:///etc/passwd", 320, 200, tmp_path / "x.png")
    assert not (tmp_path / "x.png").exists()
