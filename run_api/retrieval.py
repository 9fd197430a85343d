from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from run_store import ArtifactStore, ArtifactStoreError, data_key, is_valid_output_key, log_key, snapshot_key


class RunNotFound(LookupError):
    pass


@dataclass(frozen=True)
class RunResult:
    data: Any
    logs: str


class RetrievalService:
    """
    Reassembles a run from the artifact store.

    A run that never existed, one still in progress, and one whose artifacts
    cannot be read all surface as the same RunNotFound.
    """

    def __init__(self, store: ArtifactStore) -> None:
        self.store = store

    def fetch(self, output_key: str) -> RunResult:
        if not is_valid_output_key(output_key):
            raise RunNotFound(output_key)
        try:
            # logs.txt is written last; without it the run is not finished.
            raw_logs = self.store.get(log_key(output_key))
            raw_data = self.store.get(data_key(output_key))
        except ArtifactStoreError as exc:
            raise RunNotFound(output_key) from exc
        try:
            data = json.loads(raw_data.decode("utf-8"))
        except ValueError as exc:
            raise RunNotFound(output_key) from exc
        return RunResult(data=data, logs=raw_logs.decode("utf-8", errors="replace"))

    def fetch_snapshot(self, output_key: str) -> bytes:
        if not is_valid_output_key(output_key):
            raise RunNotFound(output_key)
        try:
            return self.store.get(snapshot_key(output_key))
        except ArtifactStoreError as exc:
            raise RunNotFound(output_key) from exc
