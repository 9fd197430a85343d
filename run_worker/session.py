from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol

import structlog
from playwright.async_api import Browser, BrowserContext, Page, async_playwright


logger = structlog.get_logger(__name__)

VIEWPORT = {"width": 1280, "height": 720}


class SessionAcquisitionError(RuntimeError):
    pass


class Session(Protocol):
    page: Any

    async def close(self) -> None: ...


SessionFactory = Callable[[], Awaitable[Session]]


def find_chromium_executable() -> str | None:
    env_path = os.getenv("CHROMIUM_PATH")
    if env_path and Path(env_path).exists():
        return env_path

    candidates = [
        "/usr/bin/chromium",
        "/usr/bin/chromium-browser",
        "/usr/bin/google-chrome",
        "/usr/bin/google-chrome-stable",
        "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    ]
    for path in candidates:
        if Path(path).exists():
            return path
    return None


def _launch_args() -> list[str]:
    args = [
        "--no-sandbox",
        "--disable-gpu",
        "--disable-extensions",
        "--disable-background-networking",
        "--disable-sync",
        "--metrics-recording-only",
        "--no-first-run",
        "--no-default-browser-check",
    ]
    # Avoid renderer crashes (and blank screenshots) when /dev/shm is tiny.
    try:
        st = os.statvfs("/dev/shm")
        shm_bytes = int(st.f_frsize) * int(st.f_blocks)
    except Exception:
        shm_bytes = 0
    if shm_bytes < (512 * 1024 * 1024):
        args.append("--disable-dev-shm-usage")
    return args


async def _close_quietly(*resources: Any) -> None:
    for res in resources:
        # Playwright's driver handle has stop(), everything else close().
        closer = getattr(res, "close", None) or getattr(res, "stop", None)
        if closer is None:
            continue
        try:
            await closer()
        except Exception as exc:
            logger.warning("session_release_failed", resource=type(res).__name__, error=str(exc))


@dataclass
class BrowserSession:
    """One disposable Chromium page plus everything that owns it."""

    playwright: Any
    browser: Browser
    context: BrowserContext
    page: Page

    async def close(self) -> None:
        await _close_quietly(self.page, self.context, self.browser, self.playwright)


async def acquire_session(
    *,
    chromium_path: str | None = None,
    page_timeout_seconds: float = 30.0,
) -> BrowserSession:
    """
    Start Playwright and open a fresh page. Anything acquired before a failure is
    released again before SessionAcquisitionError is raised.
    """
    pw = None
    browser = None
    context = None
    executable = chromium_path or find_chromium_executable()
    try:
        pw = await async_playwright().start()
        browser = await pw.chromium.launch(
            headless=True,
            executable_path=executable or None,
            args=_launch_args(),
        )
        context = await browser.new_context(viewport=dict(VIEWPORT))
        page = await context.new_page()
        page.set_default_timeout(int(max(1.0, float(page_timeout_seconds)) * 1000.0))
    except Exception as exc:
        await _close_quietly(context, browser, pw)
        raise SessionAcquisitionError(f"{type(exc).__name__}: {exc}") from exc

    logger.info("session_acquired", chromium_path=executable or "bundled")
    return BrowserSession(playwright=pw, browser=browser, context=context, page=page)


def session_factory(*, chromium_path: str | None = None, page_timeout_seconds: float = 30.0) -> SessionFactory:
    async def _factory() -> Session:
        return await acquire_session(chromium_path=chromium_path, page_timeout_seconds=page_timeout_seconds)

    return _factory
