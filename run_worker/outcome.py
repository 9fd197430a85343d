from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import Any, Iterable


NO_ERRORS_SENTINEL = "no errors detected"


class RunPhase(str, enum.Enum):
    INIT = "init"
    EXECUTING = "executing"
    CAPTURING = "capturing"
    PERSISTING = "persisting"
    DONE = "done"


class FailureKind(str, enum.Enum):
    ACQUISITION = "acquisition"  # fatal, nothing gets written
    SCRIPT = "script"
    CAPTURE = "capture"
    UPLOAD = "upload"


class ArtifactKind(str, enum.Enum):
    DATA = "data"
    SNAPSHOT = "snapshot"
    LOG = "log"


def safe_str(x: Any, *, max_len: int = 2000) -> str:
    s = str(x or "")
    return s if len(s) <= max_len else s[:max_len]


def describe_exception(exc: BaseException) -> str:
    """Type: message, the form every error line in logs.txt uses."""
    msg = safe_str(exc)
    name = type(exc).__name__
    return f"{name}: {msg}" if msg else name


@dataclass(frozen=True)
class PhaseResult:
    """
    Result of one worker phase: either a value or a failure reason, never both.
    """

    phase: RunPhase
    value: Any = None
    failure: str | None = None
    kind: FailureKind | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, phase: RunPhase, value: Any = None) -> PhaseResult:
        return cls(phase=phase, value=value)

    @classmethod
    def failed(cls, phase: RunPhase, kind: FailureKind, reason: str) -> PhaseResult:
        return cls(phase=phase, failure=reason, kind=kind)


@dataclass(frozen=True)
class ExecutionOutcome:
    data: Any = field(default_factory=dict)
    error_log: tuple[str, ...] = ()
    snapshot: bytes | None = None

    @classmethod
    def from_phases(cls, script: PhaseResult, capture: PhaseResult) -> ExecutionOutcome:
        errors: list[str] = []
        if script.ok:
            data = {} if script.value is None else script.value
        else:
            data = {}
            errors.append(str(script.failure))
        snapshot: bytes | None = None
        if capture.ok and capture.value is not None:
            snapshot = bytes(capture.value)
        elif not capture.ok:
            errors.append(str(capture.failure))
        return cls(data=data, error_log=tuple(errors), snapshot=snapshot)

    def with_failures(self, failures: Iterable[str]) -> ExecutionOutcome:
        extra = tuple(str(f) for f in failures if f)
        if not extra:
            return self
        return replace(self, error_log=self.error_log + extra)

    def log_text(self) -> str:
        if not self.error_log:
            return NO_ERRORS_SENTINEL
        return "\n".join(self.error_log)


@dataclass(frozen=True)
class RunReport:
    """What happened to one run, for the worker's own log line and for tests."""

    output_key: str
    phases: tuple[RunPhase, ...]
    acquired: bool
    outcome: ExecutionOutcome | None = None
    uploads: dict[ArtifactKind, PhaseResult] = field(default_factory=dict)
    acquisition_error: str | None = None

    def written(self, kind: ArtifactKind) -> bool:
        r = self.uploads.get(kind)
        return bool(r is not None and r.ok)
