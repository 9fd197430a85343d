from __future__ import annotations

import asyncio
import logging
import os
import sys
from dataclasses import dataclass

import structlog

from run_store import ArtifactStore, ArtifactStoreError, is_valid_output_key, open_store
from run_worker.engine import ScriptEngine, get_engine
from run_worker.outcome import RunReport
from run_worker.pipeline import execute_run
from run_worker.session import session_factory


logger = structlog.get_logger("run-worker")


class WorkerConfigError(ValueError):
    pass


def _env_str(name: str, default: str = "") -> str:
    raw = os.getenv(name)
    if raw is None:
        return str(default)
    s = str(raw).strip()
    return s if s else str(default)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        return float(str(raw).strip())
    except Exception:
        return float(default)


@dataclass(frozen=True)
class WorkerConfig:
    script_code: str
    output_key: str
    bucket: str
    artifacts_dir: str
    script_engine: str
    page_timeout_seconds: float
    chromium_path: str | None


def load_config() -> WorkerConfig:
    """
    Launch parameters arrive as environment variables (SCRIPT_CODE, OUTPUT_KEY,
    BUCKET) next to the worker's own settings.
    """
    # SCRIPT_CODE is taken verbatim: indentation matters.
    code = os.getenv("SCRIPT_CODE") or ""
    output_key = _env_str("OUTPUT_KEY")
    if not code.strip():
        raise WorkerConfigError("missing SCRIPT_CODE")
    if not output_key:
        raise WorkerConfigError("missing OUTPUT_KEY")
    if not is_valid_output_key(output_key):
        raise WorkerConfigError(f"invalid OUTPUT_KEY: {output_key!r}")

    return WorkerConfig(
        script_code=code,
        output_key=output_key,
        bucket=_env_str("BUCKET", "script-runs"),
        artifacts_dir=_env_str("ARTIFACTS_DIR", "/data/run-artifacts"),
        script_engine=_env_str("WORKER_SCRIPT_ENGINE", "restricted").lower(),
        page_timeout_seconds=max(1.0, _env_float("WORKER_PAGE_TIMEOUT_SECONDS", 30.0)),
        chromium_path=_env_str("CHROMIUM_PATH") or None,
    )


def configure_logging(level: str = "INFO", fmt: str = "console") -> None:
    renderer = structlog.processors.JSONRenderer() if fmt == "json" else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level, logging.INFO)),
        # stdout belongs to the submitted script's print() calls.
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


async def run_from_config(cfg: WorkerConfig, store: ArtifactStore, engine: ScriptEngine) -> RunReport:
    return await execute_run(
        script_source=cfg.script_code,
        output_key=cfg.output_key,
        store=store,
        engine=engine,
        session_factory=session_factory(
            chromium_path=cfg.chromium_path,
            page_timeout_seconds=cfg.page_timeout_seconds,
        ),
    )


def main() -> None:
    # Ensure predictable HOME for Playwright temp files inside read-only sandboxes.
    os.environ.setdefault("HOME", "/tmp")
    configure_logging(
        (_env_str("WORKER_LOG_LEVEL") or _env_str("LOG_LEVEL", "INFO")).upper(),
        _env_str("WORKER_LOG_FORMAT", "console").lower(),
    )

    try:
        cfg = load_config()
        store = open_store(cfg.artifacts_dir, cfg.bucket)
        engine = get_engine(cfg.script_engine)
    except (WorkerConfigError, ArtifactStoreError, ValueError) as exc:
        logger.error("worker_config_invalid", error=str(exc))
        sys.exit(2)

    logger.info("worker_started", output_key=cfg.output_key, bucket=cfg.bucket, engine=cfg.script_engine)
    try:
        report = asyncio.run(run_from_config(cfg, store, engine))
    except KeyboardInterrupt:
        sys.exit(130)

    logger.info(
        "worker_finished",
        output_key=report.output_key,
        acquired=report.acquired,
        final_phase=report.phases[-1].value,
    )
    # The launcher tracks "worker exited", not "script succeeded".
    sys.exit(0)


if __name__ == "__main__":
    main()
