#!/usr/bin/env python3
"""
Append-only event storage for the habits tracker (SQLite).

Two logs live in one database file:
- track: track/untrack events (habit, event_date, started)
- log:   completion events (habit, logged)

Rows are only ever appended. The one exception is CompletionLog.delete_day,
which wipes every completion of a single calendar day.
"""

from __future__ import annotations

import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from pathlib import Path
from typing import Any, Callable, Generic, Iterator, TypeVar


SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS track (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  habit TEXT NOT NULL CHECK (length(habit) > 0),
  event_date TEXT NOT NULL,
  started INTEGER NOT NULL DEFAULT 1 CHECK (started IN (0, 1))
);
CREATE INDEX IF NOT EXISTS track_event_date_idx ON track(event_date);

CREATE TABLE IF NOT EXISTS log (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  habit TEXT NOT NULL,
  logged TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS log_logged_idx ON log(logged);
"""

# Fixed-width microseconds keep lexical order equal to chronological order.
_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class HabitsError(Exception):
    """Base class for every error the tracker reports by kind."""

    kind = "error"


class StorageUnavailable(HabitsError):
    kind = "storage_unavailable"


def format_ts(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(_TS_FORMAT)


def parse_ts(raw: str) -> datetime:
    return datetime.strptime(raw, _TS_FORMAT).replace(tzinfo=timezone.utc)


def day_bounds(day: date, tz: tzinfo = timezone.utc) -> tuple[datetime, datetime]:
    """Return the [start, end) UTC instants of a calendar day in `tz`."""
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


@dataclass(frozen=True)
class TrackEvent:
    id: int | None
    habit: str
    timestamp: datetime
    started: bool


@dataclass(frozen=True)
class CompletionEvent:
    id: int | None
    habit: str
    logged_at: datetime


T = TypeVar("T")


@contextmanager
def _storage_errors(action: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as e:
        raise StorageUnavailable(f"{action} failed: {e}") from e


class EventLog(ABC, Generic[T]):
    """
    Ordered append-only log backed by one table.

    Subclasses name the table, its timestamp column and how rows map to
    records. Ordering is timestamp ascending, then id (insertion order).
    """

    table = ""
    ts_column = ""

    def __init__(self, store: HabitStore) -> None:
        self._store = store

    @abstractmethod
    def _insert(self, record: T) -> tuple[str, tuple[Any, ...]]:
        """Return the INSERT statement and parameters for one record."""

    @abstractmethod
    def _from_row(self, row: sqlite3.Row) -> T:
        """Build a record from one table row."""

    def append(self, record: T) -> int:
        sql, params = self._insert(record)
        with _storage_errors(f"append to {self.table}"):
            cur = self._store.conn.execute(sql, params)
            self._store.commit()
        return int(cur.lastrowid)

    def _select(self, where: str = "", params: tuple[Any, ...] = ()) -> list[T]:
        sql = f"SELECT * FROM {self.table}"
        if where:
            sql += f" WHERE {where}"
        sql += f" ORDER BY {self.ts_column} ASC, id ASC"
        with _storage_errors(f"scan of {self.table}"):
            rows = self._store.conn.execute(sql, params).fetchall()
        return [self._from_row(r) for r in rows]

    def scan_ordered(self, predicate: Callable[[T], bool] | None = None) -> list[T]:
        records = self._select()
        if predicate is None:
            return records
        return [r for r in records if predicate(r)]

    def count(self) -> int:
        with _storage_errors(f"count of {self.table}"):
            return int(
                self._store.conn.execute(f"SELECT COUNT(1) FROM {self.table}").fetchone()[0]
            )


class TrackLog(EventLog[TrackEvent]):
    table = "track"
    ts_column = "event_date"

    def _insert(self, record: TrackEvent) -> tuple[str, tuple[Any, ...]]:
        return (
            "INSERT INTO track (habit, event_date, started) VALUES (?, ?, ?)",
            (record.habit, format_ts(record.timestamp), 1 if record.started else 0),
        )

    def _from_row(self, row: sqlite3.Row) -> TrackEvent:
        return TrackEvent(
            id=int(row["id"]),
            habit=str(row["habit"]),
            timestamp=parse_ts(str(row["event_date"])),
            started=bool(row["started"]),
        )


class CompletionLog(EventLog[CompletionEvent]):
    table = "log"
    ts_column = "logged"

    def _insert(self, record: CompletionEvent) -> tuple[str, tuple[Any, ...]]:
        return (
            "INSERT INTO log (habit, logged) VALUES (?, ?)",
            (record.habit, format_ts(record.logged_at)),
        )

    def _from_row(self, row: sqlite3.Row) -> CompletionEvent:
        return CompletionEvent(
            id=int(row["id"]),
            habit=str(row["habit"]),
            logged_at=parse_ts(str(row["logged"])),
        )

    def scan_day(self, day: date, tz: tzinfo = timezone.utc) -> list[CompletionEvent]:
        start, end = day_bounds(day, tz)
        return self._select("logged >= ? AND logged < ?", (format_ts(start), format_ts(end)))

    def delete_day(self, day: date, tz: tzinfo = timezone.utc) -> int:
        start, end = day_bounds(day, tz)
        with _storage_errors("delete from log"):
            cur = self._store.conn.execute(
                "DELETE FROM log WHERE logged >= ? AND logged < ?",
                (format_ts(start), format_ts(end)),
            )
            self._store.commit()
        return int(cur.rowcount)


class HabitStore:
    """Holds one connection and the two event logs that share it."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self._tx_depth = 0
        self.tracks = TrackLog(self)
        self.completions = CompletionLog(self)

    @classmethod
    def open(cls, db_path: Path | str) -> HabitStore:
        conn = connect(db_path)
        store = cls(conn)
        try:
            store.ensure_schema()
        except StorageUnavailable:
            conn.close()
            raise
        return store

    def ensure_schema(self) -> int:
        with _storage_errors("schema setup"):
            user_version = int(self.conn.execute("PRAGMA user_version;").fetchone()[0])
            if user_version == SCHEMA_VERSION:
                return user_version
            if user_version != 0:
                raise StorageUnavailable(
                    f"Unsupported DB schema version: {user_version} (expected {SCHEMA_VERSION})"
                )
            self.conn.executescript(SCHEMA_SQL)
            self.conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION};")
            self.conn.commit()
        return SCHEMA_VERSION

    def schema_version(self) -> int:
        with _storage_errors("schema lookup"):
            return int(self.conn.execute("PRAGMA user_version;").fetchone()[0])

    def commit(self) -> None:
        # Appends inside transaction() are committed together on exit.
        if self._tx_depth == 0:
            self.conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[HabitStore]:
        self._tx_depth += 1
        try:
            yield self
        except BaseException:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                with _storage_errors("rollback"):
                    self.conn.rollback()
            raise
        self._tx_depth -= 1
        if self._tx_depth == 0:
            with _storage_errors("commit"):
                self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> HabitStore:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


def connect(db_path: Path | str) -> sqlite3.Connection:
    if str(db_path) != ":memory:":
        try:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailable(f"cannot create data dir for {db_path}: {e}") from e
    with _storage_errors(f"open {db_path}"):
        conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    return conn
