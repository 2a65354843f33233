"""Byte-oriented key-value substrates used for best-effort persistence.

Every backend exposes ``read(key) -> Optional[bytes]`` and
``write(key, data)``.  Callers treat any exception as a failed write or an
empty read; nothing here retries.
"""
from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Protocol

import httpx


class KeyValueStore(Protocol):
    def read(self, key: str) -> Optional[bytes]:
        ...

    def write(self, key: str, data: bytes) -> None:
        ...


class MemoryKeyValueStore:
    def __init__(self, initial: Optional[Dict[str, bytes]] = None) -> None:
        self._data: Dict[str, bytes] = dict(initial or {})
        self._lock = threading.Lock()

    def read(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def write(self, key: str, data: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(data)


class FileKeyValueStore:
    """One file per key under ``root``; writes go through a temp file."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root).expanduser()

    def _path(self, key: str) -> Path:
        name = (key or "").strip().replace("/", "_").replace("\\", "_")
        if not name or name in {".", ".."}:
            raise ValueError(f"Invalid key: {key!r}")
        return self._root / name

    def read(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def write(self, key: str, data: bytes) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(path)


class SqliteKeyValueStore:
    def __init__(self, db_path: Path):
        self._db_path = Path(db_path).expanduser().resolve()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._db_path))

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv_blobs (
                    key TEXT PRIMARY KEY,
                    value BLOB NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

    def read(self, key: str) -> Optional[bytes]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM kv_blobs WHERE key = ?", (key,)).fetchone()
        return bytes(row[0]) if row else None

    def write(self, key: str, data: bytes) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO kv_blobs (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, sqlite3.Binary(data), now),
            )


class HttpKeyValueStore:
    """GET/PUT ``{base_url}/{key}`` against a blob endpoint.

    404 reads as missing; other error statuses raise ``httpx.HTTPStatusError``.
    """

    def __init__(
        self,
        base_url: str,
        timeout_s: float = 5.0,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout_s,
            headers=headers,
            transport=transport,
        )

    def read(self, key: str) -> Optional[bytes]:
        resp = self._client.get(f"/{key}")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.content

    def write(self, key: str, data: bytes) -> None:
        resp = self._client.put(
            f"/{key}",
            content=data,
            headers={"Content-Type": "application/json"},
        )
        resp.raise_for_status()

    def close(self) -> None:
        self._client.close()
