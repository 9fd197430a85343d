from __future__ import annotations

import logging
from dataclasses import dataclass

from run_api.launcher import MAX_SCRIPT_ENV_BYTES, LaunchRequest, TaskLauncher
from run_store import new_output_key


LOGGER = logging.getLogger("run-api")


class DispatchError(RuntimeError):
    pass


class ScriptTooLarge(DispatchError):
    pass


@dataclass(frozen=True)
class Submission:
    output_key: str
    status: str = "running"
    handle: str = ""


class SubmissionDispatcher:
    """
    Allocates a run and hands it to the launcher, fire-and-forget.

    A launch failure is raised to the caller as DispatchError. It is never
    retried: a second launch could run a script with side effects twice.

    Sources larger than max_script_bytes (never more than MAX_SCRIPT_ENV_BYTES,
    the most a worker env can carry) are refused before anything is launched.
    """

    def __init__(self, launcher: TaskLauncher, *, bucket: str, max_script_bytes: int = MAX_SCRIPT_ENV_BYTES) -> None:
        self.launcher = launcher
        self.bucket = bucket
        limit = int(max_script_bytes or 0)
        self.max_script_bytes = min(limit, MAX_SCRIPT_ENV_BYTES) if limit > 0 else MAX_SCRIPT_ENV_BYTES

    async def submit(self, script_source: str) -> Submission:
        size = len(str(script_source).encode("utf-8"))
        if size > self.max_script_bytes:
            raise ScriptTooLarge(f"script_too_large: {size} > {self.max_script_bytes} bytes")
        output_key = new_output_key()
        request = LaunchRequest(script_source=script_source, output_key=output_key, bucket=self.bucket)
        try:
            handle = await self.launcher.launch(request)
        except Exception as exc:
            LOGGER.error("Worker launch failed output_key=%s launcher=%s err=%s", output_key, self.launcher.name, exc)
            raise DispatchError(f"{type(exc).__name__}: {exc}") from exc
        LOGGER.info("Run dispatched output_key=%s launcher=%s handle=%s", output_key, self.launcher.name, handle)
        return Submission(output_key=output_key, handle=str(handle or ""))
