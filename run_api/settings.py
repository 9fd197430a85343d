from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    s = str(raw).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(str(raw).strip())
    except Exception:
        return int(default)


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return str(default)
    s = str(raw).strip()
    return s if s else str(default)


def _env_csv(name: str, default: str) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        raw = default
    items = [p.strip() for p in str(raw).split(",")]
    return tuple(p for p in items if p)


@dataclass(frozen=True)
class ApiSettings:
    db_path: str = field(default_factory=lambda: _env_str("RUN_API_DB_PATH", "/data/run-api.db"))

    # Artifact store shared with the workers (same root + bucket on both sides).
    artifacts_dir: str = field(default_factory=lambda: _env_str("RUN_API_ARTIFACTS_DIR", "/data/run-artifacts"))
    bucket: str = field(default_factory=lambda: _env_str("RUN_API_BUCKET", "script-runs"))

    # Admin token is used only for admin endpoints (create users/api keys).
    admin_token: str = field(default_factory=lambda: os.getenv("RUN_API_ADMIN_TOKEN", ""))

    # How workers are launched: docker|subprocess. The subprocess launcher gives the
    # worker the API host's filesystem and user; use it for local development only.
    launcher: str = field(default_factory=lambda: _env_str("RUN_LAUNCHER", "docker").lower())
    worker_python: str = field(default_factory=lambda: os.getenv("RUN_API_WORKER_PYTHON", "").strip())
    worker_script_engine: str = field(default_factory=lambda: _env_str("RUN_API_WORKER_SCRIPT_ENGINE", "restricted"))
    worker_page_timeout_seconds: int = field(
        default_factory=lambda: _env_int("RUN_API_WORKER_PAGE_TIMEOUT_SECONDS", 30)
    )
    # Optional file the subprocess workers append their stdout/stderr to.
    worker_log_path: str = field(default_factory=lambda: os.getenv("RUN_API_WORKER_LOG_PATH", "").strip())

    # Docker launcher.
    docker_socket_path: str = field(default_factory=lambda: _env_str("RUN_API_DOCKER_SOCKET", "/var/run/docker.sock"))
    docker_image: str = field(default_factory=lambda: _env_str("RUN_API_DOCKER_IMAGE", "script-run-worker:latest"))
    docker_network: str = field(default_factory=lambda: os.getenv("RUN_API_DOCKER_NETWORK", "").strip())
    # Host path (starting with "/") or named volume holding the artifact root. Only the
    # run's own <bucket>/<output_key> directory of it is mounted into a worker.
    docker_artifacts_volume: str = field(default_factory=lambda: os.getenv("RUN_API_DOCKER_ARTIFACTS_VOLUME", "").strip())
    docker_auto_remove: bool = field(default_factory=lambda: _env_bool("RUN_API_DOCKER_AUTO_REMOVE", True))
    docker_timeout_seconds: int = field(default_factory=lambda: _env_int("RUN_API_DOCKER_TIMEOUT_SECONDS", 10))

    # Script guardrails. The source travels as one env string (SCRIPT_CODE), which
    # Linux caps at 128 KiB; the dispatcher clamps anything above MAX_SCRIPT_ENV_BYTES.
    max_script_bytes: int = field(default_factory=lambda: _env_int("RUN_API_MAX_SCRIPT_BYTES", 120_000))

    # Browser origins allowed by CORS; "*" allows any.
    cors_allow_origins: tuple[str, ...] = field(default_factory=lambda: _env_csv("RUN_API_CORS_ORIGINS", "*"))
