from __future__ import annotations

import re
import uuid


OUTPUT_KEY_PREFIX = "runs"

DATA_NAME = "data.json"
SNAPSHOT_NAME = "screenshot.png"
LOG_NAME = "logs.txt"

_OUTPUT_KEY_RE = re.compile(r"^runs/[0-9a-f]{32}$")


def new_output_key() -> str:
    """
    Allocate the key prefix for a new run: runs/<uuid4 hex>.

    uuid4 draws from os.urandom, so keys are not guessable from earlier ones.
    """
    return f"{OUTPUT_KEY_PREFIX}/{uuid.uuid4().hex}"


def is_valid_output_key(output_key: str) -> bool:
    return bool(_OUTPUT_KEY_RE.match(str(output_key or "").strip()))


def _join(output_key: str, name: str) -> str:
    return f"{str(output_key).strip().rstrip('/')}/{name}"


def data_key(output_key: str) -> str:
    return _join(output_key, DATA_NAME)


def snapshot_key(output_key: str) -> str:
    return _join(output_key, SNAPSHOT_NAME)


def log_key(output_key: str) -> str:
    return _join(output_key, LOG_NAME)
