from __future__ import annotations

import pytest

from run_worker import session as session_mod
from run_worker.session import BrowserSession, SessionAcquisitionError, acquire_session


class _Closable:
    def __init__(self, name: str, order: list[str], *, fail: bool = False) -> None:
        self.name = name
        self.order = order
        self.fail = fail

    async def close(self) -> None:
        self.order.append(self.name)
        if self.fail:
            raise RuntimeError(f"{self.name} close failed")


class _Driver:
    def __init__(self, order: list[str], *, launch_error: Exception | None = None) -> None:
        self.order = order
        self.launch_error = launch_error
        self.chromium = self
        self.launch_kwargs: dict | None = None

    async def launch(self, **kwargs):
        self.launch_kwargs = kwargs
        if self.launch_error is not None:
            raise self.launch_error
        return _Closable("browser", self.order)

    async def stop(self) -> None:
        self.order.append("playwright")


class _Starter:
    def __init__(self, driver: _Driver) -> None:
        self.driver = driver

    async def start(self) -> _Driver:
        return self.driver


@pytest.mark.asyncio
async def test_close_releases_everything_even_if_one_close_fails() -> None:
    order: list[str] = []
    sess = BrowserSession(
        playwright=_Driver(order),
        browser=_Closable("browser", order),
        context=_Closable("context", order, fail=True),
        page=_Closable("page", order),
    )
    await sess.close()
    assert order == ["page", "context", "browser", "playwright"]


@pytest.mark.asyncio
async def test_failed_launch_releases_driver(monkeypatch: pytest.MonkeyPatch) -> None:
    order: list[str] = []
    driver = _Driver(order, launch_error=RuntimeError("Executable doesn't exist at /nope"))
    monkeypatch.setattr(session_mod, "async_playwright", lambda: _Starter(driver))

    with pytest.raises(SessionAcquisitionError, match="Executable doesn't exist"):
        await acquire_session(chromium_path="/nope")
    assert order == ["playwright"]
    assert driver.launch_kwargs is not None
    assert driver.launch_kwargs["headless"] is True
    assert driver.launch_kwargs["executable_path"] == "/nope"
    assert "--no-sandbox" in driver.launch_kwargs["args"]
