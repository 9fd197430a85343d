from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Protocol


class ArtifactStoreError(Exception):
    pass


class ArtifactNotFound(ArtifactStoreError):
    pass


class InvalidArtifactKey(ArtifactStoreError):
    pass


class ArtifactStore(Protocol):
    def put(self, key: str, data: bytes) -> None: ...

    def get(self, key: str) -> bytes: ...

    def exists(self, key: str) -> bool: ...


def _split_key(key: str) -> list[str]:
    s = str(key or "").strip()
    if not s or s.startswith("/") or "\\" in s or "\x00" in s:
        raise InvalidArtifactKey(f"invalid_key: {key!r}")
    parts = s.split("/")
    for part in parts:
        if part in {"", ".", ".."}:
            raise InvalidArtifactKey(f"invalid_key: {key!r}")
    return parts


class FilesystemArtifactStore:
    """
    Blob store on a (shared) filesystem volume:
      <root>/<bucket>/<key>

    Writes land in a temp file next to the target and are moved into place with
    os.replace, so a reader sees either the whole artifact or nothing. There is
    no retry and no versioning; putting the same key twice overwrites it.
    """

    def __init__(self, root: str | Path, bucket: str) -> None:
        bucket_s = str(bucket or "").strip()
        if not bucket_s or "/" in bucket_s or bucket_s in {".", ".."}:
            raise InvalidArtifactKey(f"invalid_bucket: {bucket!r}")
        self.bucket = bucket_s
        self.base = (Path(root) / bucket_s).resolve()

    def _path(self, key: str) -> Path:
        parts = _split_key(key)
        path = self.base.joinpath(*parts).resolve()
        if self.base not in path.parents:
            raise InvalidArtifactKey(f"key_outside_bucket: {key!r}")
        return path

    def put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        tmp_name: str | None = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
            with os.fdopen(fd, "wb") as fh:
                fh.write(bytes(data))
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
            tmp_name = None
        except OSError as exc:
            raise ArtifactStoreError(f"put_failed: {key}: {exc}") from exc
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise ArtifactNotFound(key) from exc
        except IsADirectoryError as exc:
            raise ArtifactNotFound(key) from exc
        except OSError as exc:
            raise ArtifactStoreError(f"get_failed: {key}: {exc}") from exc

    def exists(self, key: str) -> bool:
        try:
            return self._path(key).is_file()
        except InvalidArtifactKey:
            return False


def open_store(root: str | Path, bucket: str) -> FilesystemArtifactStore:
    return FilesystemArtifactStore(root, bucket)
