"""Storage backends for dated records.

Three interchangeable backends keep one logical record per date:

* ``file`` - a JSON array per collection under the data directory
* ``blob`` - a JSON array per collection in a key-value store
* ``sql``  - one SQLite table per record kind

The file and blob backends share ``CollectionRepository``, which does a
read-modify-write of the whole collection using ``habitlog.records``. The SQL
backend resolves the latest row per date with queries instead.
"""

import json
import logging
import os
import sqlite3
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from habitlog import checklist, screen_time
from habitlog.config import Settings
from habitlog.errors import StorageError
from habitlog.records import Record, created_at_now, latest_per_date, resolve_latest, upsert

log = logging.getLogger(__name__)

_BACKEND_ERRORS = (OSError, ValueError, sqlite3.Error)


@contextmanager
def _storage_errors(action: str) -> Iterator[None]:
    try:
        yield
    except StorageError:
        raise
    except _BACKEND_ERRORS as exc:
        log.exception("Storage %s failed", action)
        raise StorageError(f"Could not {action}") from exc


@dataclass
class SaveResult:
    record: Record
    created: bool


class Repository(Protocol):
    def save(self, fields: dict[str, Any]) -> SaveResult: ...

    def latest(self, date: str) -> Record | None: ...

    def latest_per_date(self) -> list[Record]: ...

    def reset(self) -> int: ...


# ─────────────────────────────────────────────────────────────
# Collection adapters (file / blob)
# ─────────────────────────────────────────────────────────────

class CollectionAdapter(Protocol):
    def read(self, key: str) -> list[Any]: ...

    def write(self, key: str, records: list[Any]) -> None: ...


class FileAdapter:
    """One pretty-printed JSON file per collection key."""

    def __init__(self, data_dir: str | Path) -> None:
        self.data_dir = Path(data_dir)

    def path_for(self, key: str) -> Path:
        return self.data_dir / f"{key}.json"

    def read(self, key: str) -> list[Any]:
        path = self.path_for(key)
        if not path.exists():
            return []
        parsed = json.loads(path.read_text(encoding="utf-8"))
        return parsed if isinstance(parsed, list) else []

    def write(self, key: str, records: list[Any]) -> None:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        # One temp file per write; a shared name races between threads
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", dir=path.parent, prefix=f".{key}.", suffix=".tmp", delete=False
        ) as tmp:
            json.dump(records, tmp, ensure_ascii=False, indent=2)
        try:
            os.replace(tmp.name, path)
        except OSError:
            Path(tmp.name).unlink(missing_ok=True)
            raise


class KeyValueClient(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...


class SqliteBlobClient:
    """Key-value blob store kept in a single SQLite table."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with _connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS blobs (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                )
                """
            )

    def get(self, key: str) -> str | None:
        with _connect(self.db_path) as conn:
            row = conn.execute("SELECT value FROM blobs WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set(self, key: str, value: str) -> None:
        with _connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO blobs (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
                """,
                (key, value, created_at_now()),
            )


class BlobAdapter:
    """Stores each collection as one JSON blob in a key-value client."""

    def __init__(self, client: KeyValueClient) -> None:
        self.client = client

    def read(self, key: str) -> list[Any]:
        raw = self.client.get(key)
        if raw is None:
            return []
        parsed = json.loads(raw)
        return parsed if isinstance(parsed, list) else []

    def write(self, key: str, records: list[Any]) -> None:
        self.client.set(key, json.dumps(records, ensure_ascii=False))


class CollectionRepository:
    """Read-modify-write of one collection; writes are serialized within the process."""

    def __init__(self, adapter: CollectionAdapter, key: str) -> None:
        self.adapter = adapter
        self.key = key
        # Sync handlers run in a threadpool
        self._lock = threading.Lock()

    def _read(self) -> list[Any]:
        with _storage_errors("read records"):
            return self.adapter.read(self.key)

    def save(self, fields: dict[str, Any]) -> SaveResult:
        date = fields["date"]
        with self._lock:
            records = self._read()
            updated, record_id, is_update = upsert(records, {**fields, "created_at": created_at_now()}, date)
            with _storage_errors("save record"):
                self.adapter.write(self.key, updated)
        record = resolve_latest(updated, date)
        log.info("%s %s id=%s date=%s", "Replaced" if is_update else "Created", self.key, record_id, date)
        return SaveResult(record=record, created=not is_update)

    def latest(self, date: str) -> Record | None:
        return resolve_latest(self._read(), date)

    def latest_per_date(self) -> list[Record]:
        return latest_per_date(self._read())

    def reset(self) -> int:
        with self._lock:
            deleted = len(self._read())
            with _storage_errors("reset records"):
                self.adapter.write(self.key, [])
        log.info("Reset %s, deleted=%d", self.key, deleted)
        return deleted


# ─────────────────────────────────────────────────────────────
# SQL backend
# ─────────────────────────────────────────────────────────────

@contextmanager
def _connect(db_path: str | Path) -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


@dataclass(frozen=True)
class TableSpec:
    name: str
    columns: tuple[str, ...]  # domain columns; id/date/created_at are implicit
    ddl: str
    # column -> definition, added to tables created by older versions
    migrations: tuple[tuple[str, str], ...] = ()


CHECKLIST_TABLE = TableSpec(
    name="entries",
    columns=checklist.FLAG_FIELDS + ("note",),
    ddl="""
        CREATE TABLE IF NOT EXISTS entries (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          date TEXT NOT NULL,
          dishwasher INTEGER NOT NULL CHECK (dishwasher IN (0, 1)),
          creatine INTEGER NOT NULL CHECK (creatine IN (0, 1)),
          omega3 INTEGER NOT NULL DEFAULT 0 CHECK (omega3 IN (0, 1)),
          multivitamin INTEGER NOT NULL DEFAULT 0 CHECK (multivitamin IN (0, 1)),
          water INTEGER NOT NULL DEFAULT 0 CHECK (water IN (0, 1)),
          workout INTEGER NOT NULL DEFAULT 0 CHECK (workout IN (0, 1)),
          bed INTEGER NOT NULL CHECK (bed IN (0, 1)),
          note TEXT,
          created_at TEXT NOT NULL DEFAULT (datetime('now'))
        )
    """,
    migrations=tuple(
        (name, "INTEGER NOT NULL DEFAULT 0") for name in checklist.OPTIONAL_FLAGS
    ) + (("note", "TEXT"),),
)

SCREEN_TIME_TABLE = TableSpec(
    name="screen_time",
    columns=("total_minutes", "pickups", "source"),
    ddl=f"""
        CREATE TABLE IF NOT EXISTS screen_time (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          date TEXT NOT NULL,
          total_minutes INTEGER NOT NULL CHECK (total_minutes >= 0),
          pickups INTEGER CHECK (pickups IS NULL OR pickups >= 0),
          source TEXT CHECK (source IS NULL OR length(source) <= {screen_time.SOURCE_MAX_LENGTH}),
          created_at TEXT NOT NULL DEFAULT (datetime('now'))
        )
    """,
)


class SqlRepository:
    """Dated records in a SQLite table; the max id per date is the latest row."""

    def __init__(self, db_path: str | Path, table: TableSpec) -> None:
        self.db_path = Path(db_path)
        self.table = table
        with _storage_errors("prepare database"):
            self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        t = self.table.name
        with _connect(self.db_path) as conn:
            conn.execute(self.table.ddl)
            cols = [row[1] for row in conn.execute(f"PRAGMA table_info({t})").fetchall()]
            for name, definition in self.table.migrations:
                if name not in cols:
                    conn.execute(f"ALTER TABLE {t} ADD COLUMN {name} {definition}")
            conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{t}_date ON {t} (date)")

    def save(self, fields: dict[str, Any]) -> SaveResult:
        t = self.table.name
        cols = self.table.columns
        date = fields["date"]
        values = [fields.get(c) for c in cols]
        created_at = created_at_now()
        with _storage_errors("save record"), _connect(self.db_path) as conn:
            row = conn.execute(f"SELECT MAX(id) AS id FROM {t} WHERE date = ?", (date,)).fetchone()
            if row["id"] is not None:
                record_id = int(row["id"])
                assignments = ", ".join(f"{c} = ?" for c in cols)
                conn.execute(
                    f"UPDATE {t} SET {assignments}, created_at = ? WHERE id = ?",
                    (*values, created_at, record_id),
                )
                conn.execute(f"DELETE FROM {t} WHERE date = ? AND id != ?", (date, record_id))
                created = False
            else:
                placeholders = ", ".join("?" for _ in cols)
                cur = conn.execute(
                    f"INSERT INTO {t} (date, {', '.join(cols)}, created_at) VALUES (?, {placeholders}, ?)",
                    (date, *values, created_at),
                )
                record_id = int(cur.lastrowid)
                created = True
            record = dict(conn.execute(f"SELECT * FROM {t} WHERE id = ?", (record_id,)).fetchone())
        log.info("%s %s id=%s date=%s", "Created" if created else "Replaced", t, record_id, date)
        return SaveResult(record=record, created=created)

    def latest(self, date: str) -> Record | None:
        t = self.table.name
        with _storage_errors("read records"), _connect(self.db_path) as conn:
            row = conn.execute(
                f"SELECT * FROM {t} WHERE date = ? ORDER BY id DESC LIMIT 1", (date,)
            ).fetchone()
        return dict(row) if row else None

    def latest_per_date(self) -> list[Record]:
        t = self.table.name
        with _storage_errors("read records"), _connect(self.db_path) as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM {t}
                WHERE id IN (SELECT MAX(id) FROM {t} GROUP BY date)
                ORDER BY date ASC
                """
            ).fetchall()
        return [dict(r) for r in rows]

    def reset(self) -> int:
        t = self.table.name
        with _storage_errors("reset records"), _connect(self.db_path) as conn:
            deleted = int(conn.execute(f"SELECT COUNT(1) FROM {t}").fetchone()[0])
            conn.execute(f"DELETE FROM {t}")
        log.info("Reset %s, deleted=%d", t, deleted)
        return deleted


# ─────────────────────────────────────────────────────────────
# Backend selection
# ─────────────────────────────────────────────────────────────

@dataclass
class Repositories:
    entries: Repository
    screen_time: Repository


def build_repositories(settings: Settings) -> Repositories:
    if settings.storage == "sql":
        return Repositories(
            entries=SqlRepository(settings.db_path, CHECKLIST_TABLE),
            screen_time=SqlRepository(settings.db_path, SCREEN_TIME_TABLE),
        )
    if settings.storage == "blob":
        with _storage_errors("prepare database"):
            adapter: CollectionAdapter = BlobAdapter(SqliteBlobClient(settings.db_path))
    else:
        adapter = FileAdapter(settings.data_dir)
    return Repositories(
        entries=CollectionRepository(adapter, checklist.COLLECTION_KEY),
        screen_time=CollectionRepository(adapter, screen_time.COLLECTION_KEY),
    )
