from __future__ import annotations

import http.client
import json
import socket
from dataclasses import dataclass
from typing import Any


class _UnixHTTPConnection(http.client.HTTPConnection):
    def __init__(self, *, socket_path: str, timeout: float) -> None:
        super().__init__("localhost", timeout=timeout)
        self._socket_path = socket_path

    def connect(self) -> None:  # type: ignore[override]
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        sock.connect(self._socket_path)
        self.sock = sock


@dataclass(frozen=True)
class DockerUnixResponse:
    status: int
    ok: bool
    data: Any
    error: str | None


def docker_unix_request_json(
    *,
    socket_path: str,
    method: str,
    path: str,
    body: Any = None,
    timeout_seconds: float = 10.0,
) -> DockerUnixResponse:
    """
    Minimal Docker Engine API client over /var/run/docker.sock.

    Never raises: transport problems come back as ok=False with an error string.
    """
    sp = str(socket_path or "").strip()
    if not sp:
        return DockerUnixResponse(status=0, ok=False, data=None, error="missing_socket_path")
    p = str(path or "").strip()
    if not p.startswith("/"):
        p = "/" + p

    headers = {"Host": "docker"}
    payload: bytes | None = None
    if body is not None:
        payload = json.dumps(body).encode("utf-8")
        headers["Content-Type"] = "application/json"

    conn: _UnixHTTPConnection | None = None
    try:
        conn = _UnixHTTPConnection(socket_path=sp, timeout=max(0.5, float(timeout_seconds)))
        conn.request(str(method or "GET").upper(), p, body=payload, headers=headers)
        resp = conn.getresponse()
        raw = resp.read()
        status = int(resp.status)
        try:
            data = json.loads(raw.decode("utf-8")) if raw else None
        except ValueError:
            data = raw.decode("utf-8", errors="replace")
        ok = 200 <= status < 300
        error = None
        if not ok:
            # Engine errors look like {"message": "..."}.
            msg = data.get("message") if isinstance(data, dict) else None
            error = f"http_{status}: {msg}" if msg else f"http_{status}"
        return DockerUnixResponse(status=status, ok=ok, data=data, error=error)
    except FileNotFoundError:
        return DockerUnixResponse(status=0, ok=False, data=None, error="socket_not_found")
    except Exception as exc:
        return DockerUnixResponse(status=0, ok=False, data=None, error=f"{type(exc).__name__}: {exc}")
    finally:
        if conn is not None:
            try:
                conn.close()
            except Exception:
                pass
