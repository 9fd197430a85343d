from __future__ import annotations

import asyncio
import json
import socket
import threading
import time
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path

import httpx
import pytest
import uvicorn

from run_api.app import create_app
from run_api.settings import ApiSettings
from run_store import data_key, log_key, new_output_key, open_store, snapshot_key
from run_worker.engine import RestrictedEngine
from run_worker.outcome import NO_ERRORS_SENTINEL
from run_worker.pipeline import execute_run
from run_worker.session import find_chromium_executable, session_factory


class _SiteHandler(BaseHTTPRequestHandler):
    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def do_GET(self) -> None:  # noqa: N802
        body = (
            "<!doctype html><html><head><title>Example Domain</title></head>"
            "<body><h1>Example Domain</h1><p id='msg'>hello</p></body></html>"
        ).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


@pytest.fixture(scope="module")
def local_site_base_url() -> str:
    httpd = HTTPServer(("127.0.0.1", 0), _SiteHandler)
    host, port = httpd.server_address
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://{host}:{port}"
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()


@pytest.fixture()
def chromium_path() -> str:
    path = find_chromium_executable()
    if not path:
        pytest.skip("No chromium/chrome available for Playwright")
    return path


def _title_script(base_url: str) -> str:
    return "\n".join(
        [
            "async def run(page):",
            f"    await page.goto('{base_url}/', wait_until='domcontentloaded')",
            "    return {'title': await page.title(), 'msg': await page.inner_text('#msg')}",
        ]
    )


@pytest.mark.asyncio
async def test_real_browser_run_produces_all_artifacts(
    tmp_path: Path, local_site_base_url: str, chromium_path: str
) -> None:
    store = open_store(tmp_path, "bucket")
    key = new_output_key()
    report = await execute_run(
        script_source=_title_script(local_site_base_url),
        output_key=key,
        store=store,
        engine=RestrictedEngine(),
        session_factory=session_factory(chromium_path=chromium_path, page_timeout_seconds=15),
    )
    assert report.acquired
    assert json.loads(store.get(data_key(key))) == {"title": "Example Domain", "msg": "hello"}
    assert store.get(log_key(key)).decode("utf-8") == NO_ERRORS_SENTINEL
    assert store.get(snapshot_key(key)).startswith(b"\x89PNG")


@pytest.mark.asyncio
async def test_real_browser_failing_selector_still_captures(
    tmp_path: Path, local_site_base_url: str, chromium_path: str
) -> None:
    store = open_store(tmp_path, "bucket")
    key = new_output_key()
    src = "\n".join(
        [
            "async def run(page):",
            f"    await page.goto('{local_site_base_url}/', wait_until='domcontentloaded')",
            "    return await page.inner_text('#does-not-exist', timeout=500)",
        ]
    )
    await execute_run(
        script_source=src,
        output_key=key,
        store=store,
        engine=RestrictedEngine(),
        session_factory=session_factory(chromium_path=chromium_path, page_timeout_seconds=15),
    )
    assert json.loads(store.get(data_key(key))) == {}
    assert "TimeoutError" in store.get(log_key(key)).decode("utf-8")
    assert store.get(snapshot_key(key)).startswith(b"\x89PNG")


def _pick_free_port() -> int:
    s = socket.socket()
    s.bind(("127.0.0.1", 0))
    port = int(s.getsockname()[1])
    s.close()
    return port


@pytest.fixture()
def api_server(tmp_path: Path, chromium_path: str, monkeypatch: pytest.MonkeyPatch):
    """
    Starts the run API as a real HTTP server (uvicorn) that spawns real worker processes.
    """
    monkeypatch.setenv("CHROMIUM_PATH", chromium_path)
    settings = ApiSettings(
        db_path=str(tmp_path / "run-api.db"),
        artifacts_dir=str(tmp_path / "artifacts"),
        bucket="bucket",
        admin_token="adm_test_token",
        launcher="subprocess",
        worker_log_path=str(tmp_path / "workers.log"),
        worker_page_timeout_seconds=15,
    )
    app = create_app(settings)

    port = _pick_free_port()
    config = uvicorn.Config(app, host="127.0.0.1", port=port, log_level="warning", access_log=False)
    server = uvicorn.Server(config)
    thread = threading.Thread(target=server.run, daemon=True)
    thread.start()

    base_url = f"http://127.0.0.1:{port}"
    with httpx.Client() as client:
        for _ in range(80):
            try:
                r = client.get(f"{base_url}/health", timeout=1.0)
                if r.status_code == 200:
                    break
            except httpx.HTTPError:
                pass
            time.sleep(0.05)
        else:
            raise RuntimeError("run api server did not start")

    try:
        yield {"base_url": base_url, "settings": settings}
    finally:
        server.should_exit = True
        thread.join(timeout=10)


@pytest.mark.asyncio
async def test_submit_then_poll_over_http(api_server: dict[str, object], local_site_base_url: str) -> None:
    base_url = str(api_server["base_url"])
    settings: ApiSettings = api_server["settings"]  # type: ignore[assignment]
    admin = {"Authorization": f"Bearer {settings.admin_token}"}

    async with httpx.AsyncClient(base_url=base_url, timeout=10.0) as client:
        r = await client.post("/api/v1/admin/users", headers=admin, json={"name": "dev"})
        r.raise_for_status()
        user_id = r.json()["user"]["id"]
        r = await client.post("/api/v1/admin/api_keys", headers=admin, json={"user_id": user_id, "name": "k"})
        r.raise_for_status()
        auth = {"Authorization": f"Bearer {r.json()['token']}"}

        r = await client.post("/scripts", headers=auth, json={"name": "title", "code": _title_script(local_site_base_url)})
        r.raise_for_status()
        script_id = r.json()["script"]["id"]

        r = await client.post(f"/run/{script_id}", headers=auth)
        assert r.status_code == 202
        output_key = r.json()["outputKey"]

        deadline = time.monotonic() + 90
        body = None
        while time.monotonic() < deadline:
            r = await client.get(f"/results/{output_key}", headers=auth)
            if r.status_code == 200:
                body = r.json()
                break
            assert r.status_code == 404
            assert r.json() == {"error": "not found"}
            await asyncio.sleep(0.25)

        log_path = Path(settings.worker_log_path)
        assert body is not None, log_path.read_text(encoding="utf-8", errors="replace") if log_path.exists() else ""
        assert body == {"data": {"title": "Example Domain", "msg": "hello"}, "logs": NO_ERRORS_SENTINEL}

        r = await client.get(f"/results/{output_key}/screenshot", headers=auth)
        assert r.status_code == 200
        assert r.headers["content-type"] == "image/png"
        assert r.content.startswith(b"\x89PNG")
