from __future__ import annotations

import asyncio
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Protocol

from run_api.docker_unix import docker_unix_request_json
from run_api.settings import ApiSettings


LOGGER = logging.getLogger("run-launcher")

# Directory holding the run_worker package; used as cwd so `-m run_worker` resolves.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Linux limits a single environment string (MAX_ARG_STRLEN) to 128 KiB; SCRIPT_CODE=<source>
# must fit under it with room for the key.
MAX_SCRIPT_ENV_BYTES = 120_000


class LauncherError(RuntimeError):
    pass


@dataclass(frozen=True)
class LaunchRequest:
    script_source: str
    output_key: str
    bucket: str


class TaskLauncher(Protocol):
    name: str

    async def launch(self, request: LaunchRequest) -> str:
        """Start one worker for the request and return an opaque handle. Never waits for it."""
        ...


def worker_env(settings: ApiSettings, request: LaunchRequest, *, artifacts_dir: str | None = None) -> dict[str, str]:
    return {
        "SCRIPT_CODE": str(request.script_source),
        "OUTPUT_KEY": str(request.output_key),
        "BUCKET": str(request.bucket),
        "ARTIFACTS_DIR": str(artifacts_dir or settings.artifacts_dir),
        "WORKER_SCRIPT_ENGINE": str(settings.worker_script_engine),
        "WORKER_PAGE_TIMEOUT_SECONDS": str(int(settings.worker_page_timeout_seconds)),
    }


def _build_sandbox_env(extra: dict[str, str]) -> dict[str, str]:
    """
    Minimize secret leakage: do not inherit the API process's full env.
    """
    keep_keys = {"PATH", "LANG", "TZ", "CHROMIUM_PATH", "LOG_LEVEL", "WORKER_LOG_LEVEL", "WORKER_LOG_FORMAT"}
    env: dict[str, str] = {}
    for k, v in os.environ.items():
        if k in keep_keys or k.startswith("LC_") or k.startswith("PLAYWRIGHT_"):
            env[str(k)] = str(v)
    env.setdefault("HOME", "/tmp")
    for k, v in extra.items():
        env[str(k)] = str(v)
    return env


class SubprocessLauncher:
    """
    Runs each worker as a local `python -m run_worker` child process.

    The child shares the API host's user and filesystem (including the database
    and every run's artifacts), so this launcher is meant for local development.

    Output goes to settings.worker_log_path (appended) or is discarded. The child
    is reaped by a background task that only logs its exit code.
    """

    name = "subprocess"

    def __init__(self, settings: ApiSettings) -> None:
        self.settings = settings
        self._reapers: set[asyncio.Task[Any]] = set()

    def command(self) -> list[str]:
        python = self.settings.worker_python or sys.executable
        return [python, "-m", "run_worker"]

    def env_for(self, request: LaunchRequest) -> dict[str, str]:
        return _build_sandbox_env(worker_env(self.settings, request))

    async def launch(self, request: LaunchRequest) -> str:
        log_path = self.settings.worker_log_path
        out: Any = asyncio.subprocess.DEVNULL
        log_fh = None
        try:
            if log_path:
                Path(log_path).parent.mkdir(parents=True, exist_ok=True)
                log_fh = open(log_path, "ab")
                out = log_fh
            proc = await asyncio.create_subprocess_exec(
                *self.command(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=out,
                stderr=asyncio.subprocess.STDOUT,
                env=self.env_for(request),
                cwd=str(_PROJECT_ROOT),
            )
        except OSError as exc:
            raise LauncherError(f"worker_spawn_failed: {type(exc).__name__}: {exc}") from exc
        finally:
            # The child holds its own descriptor.
            if log_fh is not None:
                log_fh.close()

        task = asyncio.create_task(self._reap(proc, request.output_key))
        self._reapers.add(task)
        task.add_done_callback(self._reapers.discard)
        return f"pid:{proc.pid}"

    async def _reap(self, proc: asyncio.subprocess.Process, output_key: str) -> None:
        rc = await proc.wait()
        if rc == 0:
            LOGGER.info("Worker exited output_key=%s pid=%s rc=%s", output_key, proc.pid, rc)
        else:
            LOGGER.warning("Worker exited abnormally output_key=%s pid=%s rc=%s", output_key, proc.pid, rc)


class DockerLauncher:
    """
    Runs each worker in its own container through the Docker Engine API:
    create (image, env, run directory mount, network), then start. Containers are
    auto-removed once the worker exits.

    The worker sees only its own <bucket>/<output_key> directory of the artifact
    root, runs without capabilities and cannot gain privileges. Named volumes
    are mounted with VolumeOptions.Subpath (Docker Engine 26+).
    """

    name = "docker"

    # Artifact root inside the worker container.
    container_artifacts_dir = "/data/run-artifacts"

    def __init__(self, settings: ApiSettings) -> None:
        self.settings = settings

    def run_mount(self, request: LaunchRequest) -> dict[str, Any]:
        subpath = f"{request.bucket}/{request.output_key}"
        target = f"{self.container_artifacts_dir}/{subpath}"
        volume = self.settings.docker_artifacts_volume or self.settings.artifacts_dir
        if volume.startswith("/"):
            return {"Type": "bind", "Source": f"{volume.rstrip('/')}/{subpath}", "Target": target}
        return {"Type": "volume", "Source": volume, "Target": target, "VolumeOptions": {"Subpath": subpath}}

    def container_spec(self, request: LaunchRequest) -> dict[str, Any]:
        env = worker_env(self.settings, request, artifacts_dir=self.container_artifacts_dir)
        host_config: dict[str, Any] = {
            "AutoRemove": bool(self.settings.docker_auto_remove),
            "Mounts": [self.run_mount(request)],
            "CapDrop": ["ALL"],
            "SecurityOpt": ["no-new-privileges"],
        }
        if self.settings.docker_network:
            host_config["NetworkMode"] = self.settings.docker_network
        return {
            "Image": self.settings.docker_image,
            "Cmd": ["python", "-m", "run_worker"],
            "Env": [f"{k}={v}" for k, v in env.items()],
            "Labels": {"script-runs.output_key": request.output_key},
            "HostConfig": host_config,
        }

    def _request(self, method: str, path: str, body: Any = None):
        return docker_unix_request_json(
            socket_path=self.settings.docker_socket_path,
            method=method,
            path=path,
            body=body,
            timeout_seconds=float(self.settings.docker_timeout_seconds),
        )

    def _ensure_run_dir(self, request: LaunchRequest) -> None:
        # Bind and subpath sources must exist before the container is created.
        run_dir = Path(self.settings.artifacts_dir) / request.bucket / request.output_key
        run_dir.mkdir(parents=True, exist_ok=True)

    async def launch(self, request: LaunchRequest) -> str:
        try:
            await asyncio.to_thread(self._ensure_run_dir, request)
        except OSError as exc:
            raise LauncherError(f"run_dir_create_failed: {type(exc).__name__}: {exc}") from exc

        created = await asyncio.to_thread(self._request, "POST", "/containers/create", self.container_spec(request))
        if not created.ok:
            raise LauncherError(f"docker_create_failed: {created.error}")
        cid = str((created.data or {}).get("Id") or "").strip() if isinstance(created.data, dict) else ""
        if not cid:
            raise LauncherError("docker_create_failed: missing container id")

        started = await asyncio.to_thread(self._request, "POST", f"/containers/{cid}/start")
        if not started.ok:
            raise LauncherError(f"docker_start_failed: {started.error}")
        LOGGER.info("Worker container started output_key=%s container=%s", request.output_key, cid[:12])
        return f"container:{cid[:12]}"


LAUNCHERS: dict[str, Callable[[ApiSettings], TaskLauncher]] = {
    SubprocessLauncher.name: SubprocessLauncher,
    DockerLauncher.name: DockerLauncher,
}


def get_launcher(settings: ApiSettings) -> TaskLauncher:
    key = str(settings.launcher or "").strip().lower() or DockerLauncher.name
    factory = LAUNCHERS.get(key)
    if factory is None:
        raise ValueError(f"unknown_launcher: {settings.launcher}")
    return factory(settings)
