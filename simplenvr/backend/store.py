from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS config (
    id INTEGER PRIMARY KEY,
    segment_time INTEGER NOT NULL,
    retry_interval INTEGER NOT NULL,
    max_backoff INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS cameras (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    url TEXT NOT NULL UNIQUE,
    output_dir TEXT NOT NULL UNIQUE,
    restream_url TEXT UNIQUE,
    username TEXT,
    password TEXT
);
"""

# Field name -> column name. Anything not listed here is rejected.
CAMERA_COLUMNS = {
    "name": "name",
    "url": "url",
    "output_dir": "output_dir",
    "restream": "restream_url",
    "username": "username",
    "password": "password",
}
UNIQUE_FIELDS = frozenset({"name", "url", "output_dir", "restream"})

_SELECT_CAMERA = (
    "SELECT id, name, url, output_dir, username, password, restream_url FROM cameras"
)


class StoreError(Exception):
    """The camera database is unreachable or unusable."""


class StoreConstraintError(StoreError):
    """A write violated a uniqueness or NOT NULL constraint."""


@dataclass(frozen=True)
class GlobalConfig:
    """Process-wide recording settings, in seconds."""

    segment_time: int = 300
    retry_interval: int = 10
    max_backoff: int = 60

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class CameraRecord:
    """A stored camera definition."""

    id: int
    name: str
    url: str
    output_dir: str
    username: Optional[str] = None
    password: Optional[str] = None
    restream: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the record without its password."""
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "output_dir": self.output_dir,
            "username": self.username,
            "restream": self.restream,
        }

    def summary(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "url": self.url}


def _column(field: str) -> str:
    try:
        return CAMERA_COLUMNS[field]
    except KeyError:
        raise ValueError(f"unknown camera field: {field!r}") from None


class ConfigStore:
    """SQLite persistence for the global config and the camera records.

    A single connection is shared between threads and serialized with a lock,
    so callers may use the store from ``asyncio.to_thread``.
    """

    def __init__(self, path: Path | str):
        self.path = str(path)
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(self.path, check_same_thread=False)
            self._conn.executescript(SCHEMA)
            config = self._load_config()
        except sqlite3.Error as exc:
            raise StoreError(f"cannot open camera database {self.path}: {exc}") from exc
        if config is None:
            logger.info("No config found, writing defaults")
            self.set_config(GlobalConfig())

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Global config
    # ------------------------------------------------------------------
    def _load_config(self) -> GlobalConfig | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT segment_time, retry_interval, max_backoff FROM config WHERE id=1"
            ).fetchone()
        if row is None:
            return None
        return GlobalConfig(*row)

    def get_config(self) -> GlobalConfig:
        config = self._load_config()
        if config is None:
            raise StoreError("config row missing")
        return config

    def set_config(self, config: GlobalConfig) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO config (id, segment_time, retry_interval, max_backoff)
                VALUES (1, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    segment_time=excluded.segment_time,
                    retry_interval=excluded.retry_interval,
                    max_backoff=excluded.max_backoff
                """,
                (config.segment_time, config.retry_interval, config.max_backoff),
            )

    # ------------------------------------------------------------------
    # Cameras
    # ------------------------------------------------------------------
    def list_cameras(self) -> List[CameraRecord]:
        with self._lock:
            rows = self._conn.execute(f"{_SELECT_CAMERA} ORDER BY id").fetchall()
        return [CameraRecord(*row) for row in rows]

    def get_camera(self, camera_id: int) -> CameraRecord | None:
        with self._lock:
            row = self._conn.execute(
                f"{_SELECT_CAMERA} WHERE id=?", (camera_id,)
            ).fetchone()
        return CameraRecord(*row) if row else None

    def count_cameras(self) -> int:
        with self._lock:
            (count,) = self._conn.execute("SELECT COUNT(*) FROM cameras").fetchone()
        return count

    def create_camera(self, fields: Dict[str, Any]) -> int:
        """Insert a camera and return its new id."""
        columns = [_column(f) for f in fields]
        placeholders = ", ".join("?" for _ in columns)
        query = f"INSERT INTO cameras ({', '.join(columns)}) VALUES ({placeholders})"
        try:
            with self._lock, self._conn:
                cursor = self._conn.execute(query, tuple(fields.values()))
        except sqlite3.IntegrityError as exc:
            raise StoreConstraintError(str(exc)) from exc
        return cursor.lastrowid

    def update_camera(self, camera_id: int, fields: Dict[str, Any]) -> bool:
        """Apply ``fields`` to a camera; return False if it does not exist."""
        if not fields:
            return self.get_camera(camera_id) is not None
        assignments = ", ".join(f"{_column(f)}=?" for f in fields)
        try:
            with self._lock, self._conn:
                cursor = self._conn.execute(
                    f"UPDATE cameras SET {assignments} WHERE id=?",
                    (*fields.values(), camera_id),
                )
        except sqlite3.IntegrityError as exc:
            raise StoreConstraintError(str(exc)) from exc
        return cursor.rowcount > 0

    def delete_camera(self, camera_id: int) -> bool:
        with self._lock, self._conn:
            cursor = self._conn.execute("DELETE FROM cameras WHERE id=?", (camera_id,))
        return cursor.rowcount > 0

    def exists_with_value(self, field: str, value: str) -> bool:
        """Return True if a camera already holds ``value`` in the unique ``field``."""
        if field not in UNIQUE_FIELDS:
            raise ValueError(f"not a unique camera field: {field!r}")
        with self._lock:
            (count,) = self._conn.execute(
                f"SELECT COUNT(*) FROM cameras WHERE {_column(field)}=?", (value,)
            ).fetchone()
        return count > 0
