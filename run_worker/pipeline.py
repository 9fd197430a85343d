from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

import structlog

from run_store import ArtifactStore, data_key, log_key, snapshot_key
from run_worker.engine import ScriptEngine
from run_worker.outcome import (
    ArtifactKind,
    ExecutionOutcome,
    FailureKind,
    PhaseResult,
    RunPhase,
    RunReport,
    describe_exception,
)
from run_worker.session import SessionFactory


logger = structlog.get_logger(__name__)

_UPLOAD_LABELS = {
    ArtifactKind.DATA: "Data upload error",
    ArtifactKind.SNAPSHOT: "Screenshot upload error",
    ArtifactKind.LOG: "Log upload error",
}


async def capture_snapshot(page: Any) -> PhaseResult:
    """Full-page PNG of whatever state the page is in after the script."""
    try:
        png = await page.screenshot(full_page=True, type="png")
    except Exception as exc:
        return PhaseResult.failed(
            RunPhase.CAPTURING, FailureKind.CAPTURE, f"Screenshot error: {describe_exception(exc)}"
        )
    if not png:
        return PhaseResult.failed(RunPhase.CAPTURING, FailureKind.CAPTURE, "Screenshot error: empty capture")
    return PhaseResult.success(RunPhase.CAPTURING, bytes(png))


def encode_data(data: Any) -> bytes:
    # NaN and Infinity are not JSON; they fail the upload instead of writing invalid data.json.
    return json.dumps(data, ensure_ascii=False, allow_nan=False).encode("utf-8")


async def _upload(store: ArtifactStore, kind: ArtifactKind, key: str, payload: Callable[[], bytes]) -> PhaseResult:
    try:
        body = payload()
        await asyncio.to_thread(store.put, key, body)
    except Exception as exc:
        return PhaseResult.failed(
            RunPhase.PERSISTING, FailureKind.UPLOAD, f"{_UPLOAD_LABELS[kind]}: {describe_exception(exc)}"
        )
    return PhaseResult.success(RunPhase.PERSISTING, key)


async def persist_outcome(
    store: ArtifactStore,
    output_key: str,
    outcome: ExecutionOutcome,
) -> tuple[ExecutionOutcome, dict[ArtifactKind, PhaseResult]]:
    """
    Write data.json and screenshot.png independently, then logs.txt last so it
    can report upload failures of the other two. A failed log write has nowhere
    left to be recorded except this process's own log output.
    """
    kinds: list[ArtifactKind] = [ArtifactKind.DATA]
    jobs = [_upload(store, ArtifactKind.DATA, data_key(output_key), lambda: encode_data(outcome.data))]
    snapshot = outcome.snapshot
    if snapshot is not None:
        kinds.append(ArtifactKind.SNAPSHOT)
        jobs.append(_upload(store, ArtifactKind.SNAPSHOT, snapshot_key(output_key), lambda: snapshot))

    results = await asyncio.gather(*jobs)
    uploads: dict[ArtifactKind, PhaseResult] = dict(zip(kinds, results))
    final = outcome.with_failures(r.failure for r in results if not r.ok)

    log_result = await _upload(store, ArtifactKind.LOG, log_key(output_key), lambda: final.log_text().encode("utf-8"))
    uploads[ArtifactKind.LOG] = log_result
    if not log_result.ok:
        logger.error("log_upload_failed", output_key=output_key, error=log_result.failure)
    return final, uploads


async def execute_run(
    *,
    script_source: str,
    output_key: str,
    store: ArtifactStore,
    engine: ScriptEngine,
    session_factory: SessionFactory,
) -> RunReport:
    """
    Run one script exactly once: acquire a session, execute, capture, persist.

    Only a failed session acquisition ends the run early (and writes nothing).
    Every later phase runs whether or not the previous one failed, and the
    session is released on every path out of here.
    """
    log = logger.bind(output_key=output_key, engine=engine.name)
    phases: list[RunPhase] = [RunPhase.INIT]
    session = None
    try:
        try:
            session = await session_factory()
        except Exception as exc:
            err = describe_exception(exc)
            log.error("session_acquisition_failed", error=err)
            phases.append(RunPhase.DONE)
            return RunReport(
                output_key=output_key,
                phases=tuple(phases),
                acquired=False,
                acquisition_error=err,
            )

        phases.append(RunPhase.EXECUTING)
        log.info("script_started", source_chars=len(script_source or ""))
        script = await engine.run(script_source, session.page)
        if script.ok:
            log.info("script_finished")
        else:
            log.warning("script_failed", error=script.failure)

        phases.append(RunPhase.CAPTURING)
        capture = await capture_snapshot(session.page)
        if capture.ok:
            log.info("snapshot_captured", size_bytes=len(capture.value))
        else:
            log.warning("snapshot_failed", error=capture.failure)

        phases.append(RunPhase.PERSISTING)
        outcome = ExecutionOutcome.from_phases(script, capture)
        final, uploads = await persist_outcome(store, output_key, outcome)

        phases.append(RunPhase.DONE)
        log.info(
            "run_persisted",
            errors=len(final.error_log),
            written=sorted(k.value for k, r in uploads.items() if r.ok),
        )
        return RunReport(
            output_key=output_key,
            phases=tuple(phases),
            acquired=True,
            outcome=final,
            uploads=uploads,
        )
    finally:
        if session is not None:
            try:
                await session.close()
            except Exception:
                log.exception("session_release_failed")
