from __future__ import annotations

import sqlite3
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator, Sequence

from .logger import get_logger
from .models import FastingRegimen, FastingWindow, WindowSource, WindowType
from .store import default_regimen

logger = get_logger(__name__)

_WINDOW_COLUMNS = "id, type, start_date, end_date, note, source, created_at, updated_at"
_REGIMEN_COLUMNS = "id, name, fast_duration, feed_duration, is_active, created_at, updated_at"


class FastingDatabaseError(Exception):
    """Base class for store failures. ``message`` is meant for display."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class OpenDatabaseError(FastingDatabaseError):
    pass


class ExecutionError(FastingDatabaseError):
    pass


class StatementPreparationError(FastingDatabaseError):
    pass


class BindingError(FastingDatabaseError):
    pass


class StepError(FastingDatabaseError):
    pass


class FastingDatabase:
    def __init__(self, db_file: Path, now: Callable[[], datetime] = datetime.now):
        self._db_file = Path(db_file)
        self._db_file.parent.mkdir(parents=True, exist_ok=True)
        self._now = now
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def db_file(self) -> Path:
        return self._db_file

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self._db_file, timeout=30, isolation_level=None)
        except sqlite3.Error as exc:
            raise OpenDatabaseError(f"Unable to open {self._db_file}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.Error as exc:
            conn.close()
            raise OpenDatabaseError(f"Unable to configure {self._db_file}: {exc}") from exc
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
        _execute(conn, "BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            _rollback(conn)
            raise
        try:
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            _rollback(conn)
            raise StepError(f"Commit failed: {exc}") from exc

    def _init_schema(self) -> None:
        with self._lock, self._connection() as conn:
            try:
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS fasting_windows (
                        id TEXT PRIMARY KEY,
                        type TEXT NOT NULL CHECK (type IN ('fast', 'eat')),
                        start_date REAL NOT NULL,
                        end_date REAL NOT NULL,
                        note TEXT,
                        source TEXT NOT NULL DEFAULT 'user',
                        created_at REAL NOT NULL,
                        updated_at REAL NOT NULL
                    );

                    CREATE INDEX IF NOT EXISTS idx_fasting_windows_start
                    ON fasting_windows(start_date);

                    CREATE TABLE IF NOT EXISTS fasting_regimens (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        fast_duration REAL NOT NULL,
                        feed_duration REAL NOT NULL,
                        is_active INTEGER NOT NULL DEFAULT 0,
                        created_at REAL NOT NULL,
                        updated_at REAL NOT NULL
                    );

                    CREATE INDEX IF NOT EXISTS idx_fasting_regimens_created
                    ON fasting_regimens(created_at);
                    """
                )
            except sqlite3.Error as exc:
                raise ExecutionError(f"Schema migration failed: {exc}") from exc
            with self._transaction(conn):
                self._ensure_default_regimen(conn)

    # Windows

    def fetch_windows(self, start: datetime, end: datetime) -> list[FastingWindow]:
        with self._lock, self._connection() as conn:
            rows = _execute(
                conn,
                f"""
                SELECT {_WINDOW_COLUMNS}
                FROM fasting_windows
                WHERE start_date < ? AND end_date > ?
                ORDER BY start_date ASC
                """,
                (end.timestamp(), start.timestamp()),
            ).fetchall()
        return [_row_to_window(row) for row in rows]

    def fetch_window(self, window_id: str) -> FastingWindow | None:
        with self._lock, self._connection() as conn:
            row = _execute(
                conn,
                f"SELECT {_WINDOW_COLUMNS} FROM fasting_windows WHERE id = ? LIMIT 1",
                (window_id,),
            ).fetchone()
        return _row_to_window(row) if row is not None else None

    def fetch_active_window(self, at: datetime) -> FastingWindow | None:
        timestamp = at.timestamp()
        with self._lock, self._connection() as conn:
            row = _execute(
                conn,
                f"""
                SELECT {_WINDOW_COLUMNS}
                FROM fasting_windows
                WHERE start_date <= ? AND end_date > ?
                ORDER BY start_date DESC
                LIMIT 1
                """,
                (timestamp, timestamp),
            ).fetchone()
        return _row_to_window(row) if row is not None else None

    def fetch_most_recent_window(
        self, before: datetime, type: WindowType | None = None
    ) -> FastingWindow | None:
        sql = f"SELECT {_WINDOW_COLUMNS} FROM fasting_windows WHERE start_date <= ?"
        params: list[Any] = [before.timestamp()]
        if type is not None:
            sql += " AND type = ?"
            params.append(type.value)
        sql += " ORDER BY start_date DESC LIMIT 1"
        with self._lock, self._connection() as conn:
            row = _execute(conn, sql, params).fetchone()
        return _row_to_window(row) if row is not None else None

    def fetch_next_window(
        self, after: datetime, type: WindowType | None = None
    ) -> FastingWindow | None:
        sql = f"SELECT {_WINDOW_COLUMNS} FROM fasting_windows WHERE start_date >= ?"
        params: list[Any] = [after.timestamp()]
        if type is not None:
            sql += " AND type = ?"
            params.append(type.value)
        sql += " ORDER BY start_date ASC LIMIT 1"
        with self._lock, self._connection() as conn:
            row = _execute(conn, sql, params).fetchone()
        return _row_to_window(row) if row is not None else None

    def save_window(
        self,
        window: FastingWindow,
        note: str | None = None,
        source: WindowSource | None = None,
    ) -> FastingWindow:
        resolved_note = note if note is not None else window.note
        resolved_source = source if source is not None else window.source
        now = self._now().timestamp()
        with self._lock, self._connection() as conn:
            with self._transaction(conn):
                _execute(
                    conn,
                    """
                    INSERT INTO fasting_windows(
                        id, type, start_date, end_date, note, source, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        type = excluded.type,
                        start_date = excluded.start_date,
                        end_date = excluded.end_date,
                        note = excluded.note,
                        source = excluded.source,
                        updated_at = excluded.updated_at
                    """,
                    (
                        window.id,
                        window.type.value,
                        window.start.timestamp(),
                        window.end.timestamp(),
                        resolved_note,
                        resolved_source.value,
                        window.start.timestamp(),
                        now,
                    ),
                )
                row = _execute(
                    conn,
                    f"SELECT {_WINDOW_COLUMNS} FROM fasting_windows WHERE id = ?",
                    (window.id,),
                ).fetchone()
        if row is None:
            raise StepError(f"Window {window.id} was not stored.")
        return _row_to_window(row)

    def delete_window(self, window_id: str) -> None:
        with self._lock, self._connection() as conn:
            with self._transaction(conn):
                _execute(conn, "DELETE FROM fasting_windows WHERE id = ?", (window_id,))

    # Regimens

    def fetch_regimens(self) -> list[FastingRegimen]:
        with self._lock, self._connection() as conn:
            rows = self._select_regimens(conn)
            if not rows or sum(1 for row in rows if row["is_active"]) != 1:
                with self._transaction(conn):
                    self._ensure_default_regimen(conn)
                rows = self._select_regimens(conn)
        return [_row_to_regimen(row) for row in rows]

    def fetch_active_regimen(self) -> FastingRegimen | None:
        sql = f"""
            SELECT {_REGIMEN_COLUMNS}
            FROM fasting_regimens
            WHERE is_active = 1
            ORDER BY updated_at DESC
            LIMIT 1
        """
        with self._lock, self._connection() as conn:
            row = _execute(conn, sql).fetchone()
            if row is None:
                with self._transaction(conn):
                    self._ensure_default_regimen(conn)
                row = _execute(conn, sql).fetchone()
        return _row_to_regimen(row) if row is not None else None

    def save_regimen(self, regimen: FastingRegimen) -> None:
        with self._lock, self._connection() as conn:
            with self._transaction(conn):
                _execute(
                    conn,
                    """
                    INSERT INTO fasting_regimens(
                        id, name, fast_duration, feed_duration, is_active, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        name = excluded.name,
                        fast_duration = excluded.fast_duration,
                        feed_duration = excluded.feed_duration,
                        is_active = excluded.is_active,
                        updated_at = excluded.updated_at
                    """,
                    (
                        regimen.id,
                        regimen.name,
                        float(regimen.fast_duration),
                        float(regimen.feed_duration),
                        1 if regimen.is_active else 0,
                        regimen.created_at.timestamp(),
                        regimen.updated_at.timestamp(),
                    ),
                )
                if regimen.is_active:
                    self._activate(conn, regimen.id)
                else:
                    self._ensure_default_regimen(conn)

    def delete_regimen(self, regimen_id: str) -> None:
        with self._lock, self._connection() as conn:
            with self._transaction(conn):
                _execute(conn, "DELETE FROM fasting_regimens WHERE id = ?", (regimen_id,))
                self._ensure_default_regimen(conn)

    def set_active_regimen(self, regimen_id: str | None) -> None:
        with self._lock, self._connection() as conn:
            with self._transaction(conn):
                if regimen_id is None:
                    row = _execute(
                        conn,
                        "SELECT id FROM fasting_regimens ORDER BY created_at ASC LIMIT 1",
                    ).fetchone()
                    if row is None:
                        self._ensure_default_regimen(conn)
                        return
                    regimen_id = str(row["id"])
                else:
                    row = _execute(
                        conn,
                        "SELECT id FROM fasting_regimens WHERE id = ?",
                        (regimen_id,),
                    ).fetchone()
                    if row is None:
                        logger.warning("Ignoring activation of unknown regimen %s", regimen_id)
                        return
                self._activate(conn, regimen_id)

    # Snapshots

    def export_snapshot(self) -> bytes:
        with tempfile.TemporaryDirectory() as tmp_dir:
            target_path = Path(tmp_dir) / "fasting-export.sqlite"
            with self._lock, self._connection() as conn:
                try:
                    target = sqlite3.connect(target_path)
                except sqlite3.Error as exc:
                    raise OpenDatabaseError(f"Unable to open export target: {exc}") from exc
                try:
                    conn.backup(target)
                    target.execute("PRAGMA journal_mode=DELETE")
                except sqlite3.Error as exc:
                    raise ExecutionError(f"Export failed: {exc}") from exc
                finally:
                    target.close()
            return target_path.read_bytes()

    def import_snapshot(self, source: Path) -> None:
        source_path = Path(source)
        if source_path.resolve() == self._db_file.resolve():
            raise ExecutionError("Source database matches destination path.")
        if not source_path.is_file():
            raise OpenDatabaseError(f"Snapshot {source_path} does not exist.")

        try:
            snapshot = sqlite3.connect(source_path)
        except sqlite3.Error as exc:
            raise OpenDatabaseError(f"Unable to open snapshot: {exc}") from exc
        try:
            try:
                snapshot.execute(f"SELECT {_WINDOW_COLUMNS} FROM fasting_windows LIMIT 1").fetchall()
                snapshot.execute(f"SELECT {_REGIMEN_COLUMNS} FROM fasting_regimens LIMIT 1").fetchall()
            except sqlite3.Error as exc:
                raise ExecutionError(f"Source is not a fasting database: {exc}") from exc
            with self._lock, self._connection() as conn:
                try:
                    snapshot.backup(conn)
                except sqlite3.Error as exc:
                    raise ExecutionError(f"Import failed: {exc}") from exc
        finally:
            snapshot.close()
        self._init_schema()
        logger.info("Imported snapshot from %s", source_path)

    def reset(self) -> None:
        with self._lock, self._connection() as conn:
            with self._transaction(conn):
                _execute(conn, "DELETE FROM fasting_windows")
                _execute(conn, "DELETE FROM fasting_regimens")
                self._ensure_default_regimen(conn)
        logger.info("Database reset")

    # Helpers

    @staticmethod
    def _select_regimens(conn: sqlite3.Connection) -> list[sqlite3.Row]:
        return _execute(
            conn,
            f"SELECT {_REGIMEN_COLUMNS} FROM fasting_regimens ORDER BY created_at ASC",
        ).fetchall()

    def _activate(self, conn: sqlite3.Connection, regimen_id: str) -> None:
        _execute(conn, "UPDATE fasting_regimens SET is_active = 0")
        _execute(
            conn,
            "UPDATE fasting_regimens SET is_active = 1, updated_at = ? WHERE id = ?",
            (self._now().timestamp(), regimen_id),
        )

    def _ensure_default_regimen(self, conn: sqlite3.Connection) -> None:
        row = _execute(conn, "SELECT COUNT(*) AS total FROM fasting_regimens").fetchone()
        if int(row["total"]) == 0:
            seeded = default_regimen(self._now())
            _execute(
                conn,
                f"""
                INSERT INTO fasting_regimens({_REGIMEN_COLUMNS})
                VALUES (?, ?, ?, ?, 1, ?, ?)
                """,
                (
                    seeded.id,
                    seeded.name,
                    seeded.fast_duration,
                    seeded.feed_duration,
                    seeded.created_at.timestamp(),
                    seeded.updated_at.timestamp(),
                ),
            )
            return

        active = _execute(
            conn,
            "SELECT id FROM fasting_regimens WHERE is_active = 1 ORDER BY updated_at DESC",
        ).fetchall()
        if len(active) == 1:
            return
        if active:
            keep = str(active[0]["id"])
        else:
            earliest = _execute(
                conn,
                "SELECT id FROM fasting_regimens ORDER BY created_at ASC LIMIT 1",
            ).fetchone()
            keep = str(earliest["id"])
        self._activate(conn, keep)


def _execute(
    conn: sqlite3.Connection,
    sql: str,
    params: Sequence[Any] = (),
) -> sqlite3.Cursor:
    try:
        return conn.execute(sql, params)
    except (sqlite3.InterfaceError, sqlite3.ProgrammingError) as exc:
        message = str(exc)
        if "binding" in message.lower():
            raise BindingError(message) from exc
        raise ExecutionError(message) from exc
    except sqlite3.IntegrityError as exc:
        raise StepError(str(exc)) from exc
    except sqlite3.OperationalError as exc:
        message = str(exc)
        if message.startswith(("near ", "no such ", "incomplete input")) or "syntax error" in message:
            raise StatementPreparationError(message) from exc
        raise ExecutionError(message) from exc
    except sqlite3.Error as exc:
        raise ExecutionError(str(exc)) from exc


def _rollback(conn: sqlite3.Connection) -> None:
    try:
        conn.execute("ROLLBACK")
    except sqlite3.Error as exc:
        logger.error("Rollback failed: %s", exc)


def _row_to_window(row: sqlite3.Row) -> FastingWindow:
    try:
        window_type = WindowType(str(row["type"]))
    except ValueError as exc:
        raise ExecutionError("Invalid window type stored in database.") from exc
    try:
        source = WindowSource(str(row["source"]))
    except ValueError as exc:
        raise ExecutionError("Invalid window source stored in database.") from exc
    note = row["note"]
    return FastingWindow(
        id=str(row["id"]),
        type=window_type,
        start=datetime.fromtimestamp(float(row["start_date"])),
        end=datetime.fromtimestamp(float(row["end_date"])),
        note=str(note) if note is not None else None,
        source=source,
        created_at=datetime.fromtimestamp(float(row["created_at"])),
        updated_at=datetime.fromtimestamp(float(row["updated_at"])),
    )


def _row_to_regimen(row: sqlite3.Row) -> FastingRegimen:
    return FastingRegimen(
        id=str(row["id"]),
        name=str(row["name"]),
        fast_duration=float(row["fast_duration"]),
        feed_duration=float(row["feed_duration"]),
        is_active=int(row["is_active"]) == 1,
        created_at=datetime.fromtimestamp(float(row["created_at"])),
        updated_at=datetime.fromtimestamp(float(row["updated_at"])),
    )
