"""Durable blob storage for run artifacts.

The store is the only rendezvous point between the worker that produces a run's
artifacts and the API that serves them back to clients.
"""

from run_store.layout import (
    DATA_NAME,
    LOG_NAME,
    SNAPSHOT_NAME,
    data_key,
    is_valid_output_key,
    log_key,
    new_output_key,
    snapshot_key,
)
from run_store.store import (
    ArtifactNotFound,
    ArtifactStore,
    ArtifactStoreError,
    FilesystemArtifactStore,
    InvalidArtifactKey,
    open_store,
)

__all__ = [
    "DATA_NAME",
    "LOG_NAME",
    "SNAPSHOT_NAME",
    "ArtifactNotFound",
    "ArtifactStore",
    "ArtifactStoreError",
    "FilesystemArtifactStore",
    "InvalidArtifactKey",
    "data_key",
    "is_valid_output_key",
    "log_key",
    "new_output_key",
    "open_store",
    "snapshot_key",
]
