"""Photo catalog backed by SQLite.

Holds roots and one row per media file. Ids come from AUTOINCREMENT so a
deleted photo's id is never handed out again.
"""

import logging
import os
import sqlite3
import threading
import time
from datetime import datetime
from pathlib import Path

from errors import CatalogError
from records import Coordinate, MediaType, PhotoRecord, Root, ThumbnailStatus

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS root (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL UNIQUE,
    last_scan_at REAL,
    created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS photo (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    root_id INTEGER NOT NULL REFERENCES root(id) ON DELETE CASCADE,
    path TEXT NOT NULL UNIQUE,
    media_type TEXT NOT NULL CHECK (media_type IN ('photo', 'video')),
    content_hash TEXT NOT NULL DEFAULT '',
    size INTEGER NOT NULL DEFAULT 0,
    mtime REAL NOT NULL DEFAULT 0,
    taken_at TEXT,
    lat REAL,
    lng REAL,
    thumbnail_status TEXT NOT NULL DEFAULT 'pending',
    error TEXT,
    stale INTEGER NOT NULL DEFAULT 0,
    indexed_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_photo_root ON photo(root_id);
CREATE INDEX IF NOT EXISTS idx_photo_hash ON photo(content_hash);
CREATE INDEX IF NOT EXISTS idx_photo_geo ON photo(lat, lng);
"""

_PHOTO_COLUMNS = (
    "id, root_id, path, media_type, content_hash, size, mtime, taken_at, "
    "lat, lng, thumbnail_status, error, stale"
)


def _row_to_record(row: tuple) -> PhotoRecord:
    (photo_id, root_id, path, media_type, content_hash, size, mtime,
     taken_at, lat, lng, thumb, error, stale) = row
    return PhotoRecord(
        id=photo_id,
        root_id=root_id,
        path=path,
        media_type=MediaType(media_type),
        content_hash=content_hash,
        size=size,
        mtime=mtime,
        taken_at=datetime.fromisoformat(taken_at) if taken_at else None,
        coordinate=Coordinate(lat, lng) if lat is not None and lng is not None else None,
        thumbnail_status=ThumbnailStatus(thumb),
        error=error,
        stale=bool(stale),
    )


class Catalog:
    def __init__(self, db_path: Path):
        self._db_path = db_path
        self._lock = threading.RLock()
        try:
            if str(db_path) != ":memory:":
                db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.executescript(_SCHEMA)
            self._conn.commit()
        except sqlite3.Error as exc:
            raise CatalogError(f"Cannot open catalog {db_path}: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as exc:
            raise CatalogError(str(exc)) from exc

    def _commit(self) -> None:
        try:
            self._conn.commit()
        except sqlite3.Error as exc:
            self._conn.rollback()
            raise CatalogError(str(exc)) from exc

    # -- roots --

    def add_root(self, path: str) -> Root:
        """Register a root, or return the existing one with that path."""
        with self._lock:
            existing = self.find_root_by_path(path)
            if existing:
                return existing
            cursor = self._execute(
                "INSERT INTO root (path, created_at) VALUES (?, ?)", (path, time.time()),
            )
            self._commit()
            return Root(id=cursor.lastrowid, path=path)

    def get_root(self, root_id: int) -> Root | None:
        with self._lock:
            row = self._execute(
                "SELECT id, path, last_scan_at FROM root WHERE id = ?", (root_id,),
            ).fetchone()
        return Root(id=row[0], path=row[1], last_scan_at=row[2]) if row else None

    def find_root_by_path(self, path: str) -> Root | None:
        with self._lock:
            row = self._execute(
                "SELECT id, path, last_scan_at FROM root WHERE path = ?", (path,),
            ).fetchone()
        return Root(id=row[0], path=row[1], last_scan_at=row[2]) if row else None

    def list_roots(self) -> list[Root]:
        with self._lock:
            rows = self._execute("SELECT id, path, last_scan_at FROM root ORDER BY id").fetchall()
        return [Root(id=r[0], path=r[1], last_scan_at=r[2]) for r in rows]

    def set_last_scan(self, root_id: int, when: float) -> None:
        with self._lock:
            self._execute("UPDATE root SET last_scan_at = ? WHERE id = ?", (when, root_id))
            self._commit()

    def delete_root(self, root_id: int) -> None:
        """Delete a root and, through the foreign key, all of its photos."""
        with self._lock:
            self._execute("DELETE FROM root WHERE id = ?", (root_id,))
            self._commit()

    # -- photos --

    def get(self, photo_id: int) -> PhotoRecord | None:
        with self._lock:
            row = self._execute(
                f"SELECT {_PHOTO_COLUMNS} FROM photo WHERE id = ?", (photo_id,),
            ).fetchone()
        return _row_to_record(row) if row else None

    def find_by_path(self, path: str) -> PhotoRecord | None:
        with self._lock:
            row = self._execute(
                f"SELECT {_PHOTO_COLUMNS} FROM photo WHERE path = ?", (path,),
            ).fetchone()
        return _row_to_record(row) if row else None

    def list_by_root(self, root_id: int) -> list[PhotoRecord]:
        with self._lock:
            rows = self._execute(
                f"SELECT {_PHOTO_COLUMNS} FROM photo WHERE root_id = ? ORDER BY id", (root_id,),
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def list_located(self) -> list[PhotoRecord]:
        """Every record that should be in the spatial index."""
        with self._lock:
            rows = self._execute(
                f"SELECT {_PHOTO_COLUMNS} FROM photo "
                "WHERE lat IS NOT NULL AND lng IS NOT NULL AND error IS NULL ORDER BY id",
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def count(self, root_id: int | None = None) -> int:
        with self._lock:
            if root_id is None:
                row = self._execute("SELECT COUNT(*) FROM photo").fetchone()
            else:
                row = self._execute(
                    "SELECT COUNT(*) FROM photo WHERE root_id = ?", (root_id,),
                ).fetchone()
        return row[0]

    def upsert(self, record: PhotoRecord) -> PhotoRecord:
        """Insert a new record or overwrite the row with record.id.

        Returns the record with its id filled in.
        """
        lat = record.coordinate.lat if record.coordinate else None
        lng = record.coordinate.lng if record.coordinate else None
        taken_at = record.taken_at.isoformat() if record.taken_at else None
        values = (
            record.root_id, record.path, record.media_type.value, record.content_hash,
            record.size, record.mtime, taken_at, lat, lng,
            record.thumbnail_status.value, record.error, int(record.stale), time.time(),
        )
        with self._lock:
            if record.id is None:
                cursor = self._execute(
                    """INSERT INTO photo
                       (root_id, path, media_type, content_hash, size, mtime, taken_at,
                        lat, lng, thumbnail_status, error, stale, indexed_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    values,
                )
                self._commit()
                return record.copy(id=cursor.lastrowid)

            cursor = self._execute(
                """UPDATE photo SET
                       root_id = ?, path = ?, media_type = ?, content_hash = ?, size = ?,
                       mtime = ?, taken_at = ?, lat = ?, lng = ?, thumbnail_status = ?,
                       error = ?, stale = ?, indexed_at = ?
                   WHERE id = ?""",
                values + (record.id,),
            )
            if cursor.rowcount == 0:
                self._conn.rollback()
                raise CatalogError(f"Photo {record.id} does not exist")
            self._commit()
            return record

    def reassign(self, path: str, from_root: int, to_root: int) -> list[PhotoRecord]:
        """Hand every record of from_root under directory path over to to_root.

        Ids are kept. Returns the records as they are after the move.
        """
        prefix = path.rstrip(os.sep) + os.sep
        with self._lock:
            rows = self._execute(
                f"SELECT {_PHOTO_COLUMNS} FROM photo "
                "WHERE root_id = ? AND substr(path, 1, ?) = ? ORDER BY id",
                (from_root, len(prefix), prefix),
            ).fetchall()
            if not rows:
                return []
            self._execute(
                "UPDATE photo SET root_id = ? WHERE root_id = ? AND substr(path, 1, ?) = ?",
                (to_root, from_root, len(prefix), prefix),
            )
            self._commit()
        return [_row_to_record(r).copy(root_id=to_root) for r in rows]

    def delete(self, photo_id: int) -> bool:
        with self._lock:
            cursor = self._execute("DELETE FROM photo WHERE id = ?", (photo_id,))
            self._commit()
            return cursor.rowcount > 0

    def set_thumbnail_status(self, photo_id: int, status: ThumbnailStatus) -> bool:
        with self._lock:
            cursor = self._execute(
                "UPDATE photo SET thumbnail_status = ? WHERE id = ?", (status.value, photo_id),
            )
            self._commit()
            return cursor.rowcount > 0

    def mark_stale(self, photo_id: int) -> None:
        with self._lock:
            self._execute("UPDATE photo SET stale = 1 WHERE id = ?", (photo_id,))
            self._commit()
