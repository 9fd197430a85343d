from __future__ import annotations

import sqlite3
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from run_api.settings import ApiSettings


SCHEMA_VERSION = 1


def _utc_ts() -> float:
    return float(time.time())


def _uuid() -> str:
    return str(uuid.uuid4())


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing db_path")
    Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    # Best-effort: WAL improves concurrency for a single-host service.
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except sqlite3.Error:
        pass
    return conn


def ensure_schema(settings: ApiSettings) -> None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
    finally:
        conn.close()


def _ensure_schema_conn(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
    row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    cur = int(row["v"]) if row and row["v"] else 0
    if cur >= SCHEMA_VERSION:
        return

    if cur == 0:
        _apply_v1(conn)
        conn.execute("INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),))
        return

    raise RuntimeError(f"Unsupported schema version upgrade path cur={cur} target={SCHEMA_VERSION}")


def _apply_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
          id TEXT PRIMARY KEY,
          name TEXT NOT NULL,
          created_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS api_keys (
          id TEXT PRIMARY KEY,
          user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
          name TEXT NOT NULL,
          token_hash TEXT NOT NULL,
          created_at_ts REAL NOT NULL,
          revoked_at_ts REAL,
          UNIQUE(token_hash)
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS scripts (
          id TEXT PRIMARY KEY,
          user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
          name TEXT NOT NULL,
          code TEXT NOT NULL,
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_scripts_user_created ON scripts(user_id, created_at_ts DESC);")


@dataclass(frozen=True)
class AuthedUser:
    user_id: str
    api_key_id: str


def create_user(settings: ApiSettings, *, name: str) -> dict[str, Any]:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        uid = _uuid()
        now = _utc_ts()
        conn.execute(
            "INSERT INTO users (id, name, created_at_ts) VALUES (?, ?, ?)",
            (uid, name.strip(), now),
        )
        return {"id": uid, "name": name.strip(), "created_at_ts": now}
    finally:
        conn.close()


def get_user(settings: ApiSettings, *, user_id: str) -> dict[str, Any] | None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute("SELECT * FROM users WHERE id=?", (user_id,)).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def create_api_key(
    settings: ApiSettings,
    *,
    user_id: str,
    name: str,
    token_hash: str,
) -> dict[str, Any]:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        kid = _uuid()
        now = _utc_ts()
        conn.execute(
            "INSERT INTO api_keys (id, user_id, name, token_hash, created_at_ts) VALUES (?, ?, ?, ?, ?)",
            (kid, user_id, name.strip(), token_hash, now),
        )
        return {"id": kid, "user_id": user_id, "name": name.strip(), "created_at_ts": now}
    finally:
        conn.close()


def revoke_api_key(settings: ApiSettings, *, api_key_id: str) -> bool:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        cur = conn.execute(
            "UPDATE api_keys SET revoked_at_ts=? WHERE id=? AND revoked_at_ts IS NULL",
            (_utc_ts(), api_key_id),
        )
        return int(cur.rowcount or 0) > 0
    finally:
        conn.close()


def get_api_key_by_hash(settings: ApiSettings, *, token_hash: str) -> AuthedUser | None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute(
            "SELECT id, user_id FROM api_keys WHERE token_hash=? AND revoked_at_ts IS NULL",
            (token_hash,),
        ).fetchone()
        if not row:
            return None
        return AuthedUser(user_id=str(row["user_id"]), api_key_id=str(row["id"]))
    finally:
        conn.close()


def list_scripts(settings: ApiSettings, *, user_id: str) -> list[dict[str, Any]]:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(
            "SELECT * FROM scripts WHERE user_id=? ORDER BY created_at_ts DESC, rowid DESC",
            (user_id,),
        ).fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()


def get_script(settings: ApiSettings, *, user_id: str, script_id: str) -> dict[str, Any] | None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute(
            "SELECT * FROM scripts WHERE id=? AND user_id=?",
            (script_id, user_id),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def insert_script(settings: ApiSettings, *, user_id: str, name: str, code: str) -> dict[str, Any]:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        sid = _uuid()
        now = _utc_ts()
        conn.execute(
            "INSERT INTO scripts (id, user_id, name, code, created_at_ts, updated_at_ts) VALUES (?, ?, ?, ?, ?, ?)",
            (sid, user_id, name.strip(), code, now, now),
        )
        return {
            "id": sid,
            "user_id": user_id,
            "name": name.strip(),
            "code": code,
            "created_at_ts": now,
            "updated_at_ts": now,
        }
    finally:
        conn.close()


def update_script(
    settings: ApiSettings,
    *,
    user_id: str,
    script_id: str,
    name: str,
    code: str,
) -> dict[str, Any] | None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        cur = conn.execute(
            "UPDATE scripts SET name=?, code=?, updated_at_ts=? WHERE id=? AND user_id=?",
            (name.strip(), code, _utc_ts(), script_id, user_id),
        )
        if int(cur.rowcount or 0) <= 0:
            return None
        row = conn.execute("SELECT * FROM scripts WHERE id=?", (script_id,)).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def delete_script(settings: ApiSettings, *, user_id: str, script_id: str) -> bool:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        cur = conn.execute("DELETE FROM scripts WHERE id=? AND user_id=?", (script_id, user_id))
        return int(cur.rowcount or 0) > 0
    finally:
        conn.close()
