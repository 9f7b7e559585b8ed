from __future__ import annotations

import logging
import shutil
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..errors import PersistenceConflict, PersistenceError
from ..models import PersistedRecord


logger = logging.getLogger(__name__)


_RECORD_COLUMNS = (
    "student_uuid",
    "code",
    "name",
    "credit",
    "cat1",
    "cat2",
    "exam_mark",
    "total_mark",
    "grade",
    "group_title",
)


class MarksheetStore:
    """
    SQLite-backed store for persisted course records, keyed by (student_uuid, code).

    `create` never overwrites: an existing key raises PersistenceConflict. `upsert` is the explicit
    update path.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_path = self.db_path.with_name(self.db_path.name + ".bak")

        # Self-heal on corrupted/missing DB: restore from backup when possible.
        self._conn = self._open_or_restore()
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._ensure_schema()

        self._maybe_backup(if_missing=True)

    @property
    def backup_path(self) -> Path:
        return self._backup_path

    def close(self) -> None:
        self._conn.close()

    # Matches the lifecycle name used by the pipeline.
    disconnect = close

    def _open_or_restore(self) -> sqlite3.Connection:
        """
        Open the records DB. If it looks corrupted, move it aside and restore from the last-known-good backup.
        """
        if self.db_path.exists():
            try:
                conn = sqlite3.connect(self.db_path)
                if self._connection_is_healthy(conn):
                    return conn
                conn.close()
                raise sqlite3.DatabaseError("SQLite quick_check failed")
            except sqlite3.Error as e:
                logger.warning("Records DB appears corrupted/unreadable; attempting restore from backup. (%s)", e)
                self._quarantine_db_files()

                if self._backup_path.exists():
                    try:
                        shutil.copy2(self._backup_path, self.db_path)
                        conn = sqlite3.connect(self.db_path)
                        if self._connection_is_healthy(conn):
                            logger.warning("Restored records DB from backup: %s", self._backup_path)
                            return conn
                        conn.close()
                    except (OSError, sqlite3.Error):
                        logger.warning("Failed to restore records DB from backup; creating a fresh DB.", exc_info=True)
                else:
                    logger.warning("No records DB backup found; creating a fresh DB.")

        return sqlite3.connect(self.db_path)

    def _connection_is_healthy(self, conn: sqlite3.Connection) -> bool:
        try:
            # Touch schema_version to fail fast on "file is not a database".
            _ = conn.execute("PRAGMA schema_version;").fetchone()
            row = conn.execute("PRAGMA quick_check;").fetchone()
            return bool(row and row[0] == "ok")
        except sqlite3.Error:
            return False

    def _quarantine_db_files(self) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        for p in (self.db_path, Path(str(self.db_path) + "-wal"), Path(str(self.db_path) + "-shm")):
            try:
                if p.exists():
                    p.replace(p.with_name(p.name + f".corrupt-{stamp}"))
            except OSError:
                logger.debug("Failed to quarantine path=%s", p, exc_info=True)

    def _maybe_backup(self, *, if_missing: bool) -> None:
        if if_missing and self._backup_path.exists():
            return
        try:
            self.backup()
        except (OSError, sqlite3.Error):
            logger.debug("Failed to write records DB backup.", exc_info=True)

    def backup(self) -> None:
        """
        Write/refresh a last-known-good backup of the records DB at `<db_path>.bak`.
        """
        out = self._backup_path
        out.parent.mkdir(parents=True, exist_ok=True)
        tmp = out.with_name(out.name + ".tmp")
        if tmp.exists():
            tmp.unlink()

        # Online backup API gives a consistent snapshot even with WAL.
        dst = sqlite3.connect(tmp)
        try:
            self._conn.backup(dst)
            dst.commit()
        finally:
            dst.close()

        tmp.replace(out)

    def _ensure_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS marksheet (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              student_uuid TEXT NOT NULL,
              code TEXT NOT NULL,
              name TEXT NOT NULL,
              credit INTEGER NOT NULL,
              cat1 INTEGER NOT NULL,
              cat2 INTEGER NOT NULL,
              exam_mark INTEGER NOT NULL,
              total_mark INTEGER NOT NULL,
              grade TEXT NOT NULL DEFAULT '',
              group_title TEXT NOT NULL DEFAULT '',
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              UNIQUE(student_uuid, code)
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              started_at TEXT NOT NULL,
              finished_at TEXT,
              ok INTEGER,
              stage TEXT,
              message TEXT
            );
            """
        )
        self._conn.commit()

    def create(self, record: PersistedRecord) -> None:
        """
        Insert a new record. Raises PersistenceConflict if (student_uuid, code) already exists.
        """
        now = datetime.now(timezone.utc).isoformat()
        values = record.model_dump()
        try:
            self._conn.execute(
                f"""
                INSERT INTO marksheet({", ".join(_RECORD_COLUMNS)}, created_at, updated_at)
                VALUES ({", ".join("?" for _ in _RECORD_COLUMNS)}, ?, ?);
                """,
                (*(values[c] for c in _RECORD_COLUMNS), now, now),
            )
            self._conn.commit()
        except sqlite3.IntegrityError as e:
            self._conn.rollback()
            raise PersistenceConflict(f"record already exists: {record.record_key()}") from e
        except sqlite3.Error as e:
            self._conn.rollback()
            raise PersistenceError(f"failed to save {record.record_key()}: {e}") from e

    def upsert(self, record: PersistedRecord) -> bool:
        """
        Insert or overwrite the record for (student_uuid, code). Returns True when an existing row was updated.
        """
        now = datetime.now(timezone.utc).isoformat()
        values = record.model_dump()
        updates = ", ".join(f"{c} = excluded.{c}" for c in _RECORD_COLUMNS if c not in ("student_uuid", "code"))
        try:
            existed = self.get(record.student_uuid, record.code) is not None
            self._conn.execute(
                f"""
                INSERT INTO marksheet({", ".join(_RECORD_COLUMNS)}, created_at, updated_at)
                VALUES ({", ".join("?" for _ in _RECORD_COLUMNS)}, ?, ?)
                ON CONFLICT(student_uuid, code) DO UPDATE SET
                  {updates},
                  updated_at = excluded.updated_at;
                """,
                (*(values[c] for c in _RECORD_COLUMNS), now, now),
            )
            self._conn.commit()
        except sqlite3.Error as e:
            self._conn.rollback()
            raise PersistenceError(f"failed to upsert {record.record_key()}: {e}") from e
        return existed

    def get(self, student_uuid: str, code: str) -> Optional[PersistedRecord]:
        row = self._conn.execute(
            f"SELECT {', '.join(_RECORD_COLUMNS)} FROM marksheet WHERE student_uuid = ? AND code = ?;",
            (student_uuid, code),
        ).fetchone()
        if not row:
            return None
        return PersistedRecord(**dict(zip(_RECORD_COLUMNS, row)))

    def list_records(self, student_uuid: Optional[str] = None) -> list[PersistedRecord]:
        sql = f"SELECT {', '.join(_RECORD_COLUMNS)} FROM marksheet"
        params: tuple = ()
        if student_uuid is not None:
            sql += " WHERE student_uuid = ?"
            params = (student_uuid,)
        sql += " ORDER BY id;"
        return [PersistedRecord(**dict(zip(_RECORD_COLUMNS, row))) for row in self._conn.execute(sql, params)]

    def record_run_start(self) -> int:
        now = datetime.now(timezone.utc).isoformat()
        cur = self._conn.execute("INSERT INTO runs(started_at) VALUES (?);", (now,))
        self._conn.commit()
        return int(cur.lastrowid)

    def record_run_finish(
        self,
        run_id: int,
        *,
        ok: bool,
        stage: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self._conn.execute(
            "UPDATE runs SET finished_at = ?, ok = ?, stage = ?, message = ? WHERE id = ?;",
            (now, 1 if ok else 0, stage, message, run_id),
        )
        self._conn.commit()

        # Only refresh backups after a successful run (avoid snapshotting a potentially bad state).
        if ok:
            self._maybe_backup(if_missing=False)

    def last_run(self) -> Optional[dict]:
        row = self._conn.execute(
            "SELECT id, started_at, finished_at, ok, stage, message FROM runs ORDER BY id DESC LIMIT 1;"
        ).fetchone()
        if not row:
            return None
        keys = ("id", "started_at", "finished_at", "ok", "stage", "message")
        return dict(zip(keys, row))
