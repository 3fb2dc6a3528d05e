from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence

import pytest

from calendar_access.provider.contract import Instances, Selection, Tables
from calendar_access.provider.operations import CalendarOperations, CalendarOperationsConfig

SCHEMA = {
    Tables.CALENDARS: (
        "_id INTEGER PRIMARY KEY AUTOINCREMENT, account_name TEXT, calendar_displayName TEXT, "
        "ownerAccount TEXT, calendar_access_level INTEGER DEFAULT 0"
    ),
    Tables.EVENTS: (
        "_id INTEGER PRIMARY KEY AUTOINCREMENT, calendar_id TEXT, title TEXT, description TEXT, "
        "eventLocation TEXT, customAppUri TEXT, dtstart INTEGER, dtend INTEGER, duration INTEGER, "
        "allDay INTEGER DEFAULT 0, hasAlarm INTEGER DEFAULT 0, rrule TEXT, "
        "deleted INTEGER DEFAULT 0, eventTimezone TEXT"
    ),
    Tables.ATTENDEES: (
        "_id INTEGER PRIMARY KEY AUTOINCREMENT, event_id TEXT, attendeeName TEXT, "
        "attendeeEmail TEXT, attendeeRelationship INTEGER, attendeeStatus INTEGER, "
        "attendeeType INTEGER"
    ),
    Tables.REMINDERS: (
        "_id INTEGER PRIMARY KEY AUTOINCREMENT, event_id TEXT, method INTEGER, minutes INTEGER"
    ),
}


def ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows: list[dict[str, Any]]) -> None:
        self._rows = rows
        self.closed = False

    def __iter__(self):
        return iter(self._rows)

    def close(self) -> None:
        self.closed = True


class FakeCalendarStore:
    """In-memory calendar provider.

    Tabular endpoints are backed by sqlite so that selections are evaluated
    for real. Instances are seeded explicitly, the way a provider would have
    materialized them from the recurrence rule.
    """

    def __init__(self) -> None:
        self._conn = sqlite3.connect(":memory:", check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        for table, columns in SCHEMA.items():
            self._conn.execute(f"CREATE TABLE {table} ({columns})")
        self.instances: list[dict[str, Any]] = []
        self.queries: list[tuple[str, Selection | None, tuple[int, int] | None]] = []
        self.cursors: list[FakeCursor] = []
        self.fail_on: set[tuple[str, str]] = set()

    # Seeding -------------------------------------------------------------------
    def add_calendar(self, **values: Any) -> str:
        return self.insert(Tables.CALENDARS, values)

    def add_event(self, calendar_id: str, **values: Any) -> str:
        return self.insert(Tables.EVENTS, {"calendar_id": calendar_id, **values})

    def add_attendee(self, event_id: str, email: str, name: str = "", relationship: int = 1, **values: Any) -> str:
        return self.insert(
            Tables.ATTENDEES,
            {
                "event_id": event_id,
                "attendeeEmail": email,
                "attendeeName": name,
                "attendeeRelationship": relationship,
                **values,
            },
        )

    def add_reminder(self, event_id: str, minutes: int, method: int = 4) -> str:
        return self.insert(Tables.REMINDERS, {"event_id": event_id, "minutes": minutes, "method": method})

    def add_instance(self, event_id: str, begin: int, end: int, deleted: int = 0) -> None:
        self.instances.append(
            {Instances.EVENT_ID: event_id, Instances.BEGIN: begin, Instances.END: end, Instances.DELETED: deleted}
        )

    def rows(self, table: str) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(row) for row in self._conn.execute(f"SELECT * FROM {table} ORDER BY _id")]

    def queries_for(self, table: str) -> list[tuple[str, Selection | None, tuple[int, int] | None]]:
        return [query for query in self.queries if query[0] == table]

    # CalendarStore -------------------------------------------------------------
    def query(
        self,
        table: str,
        projection: Sequence[str],
        selection: Selection | None = None,
        sort_order: str | None = None,
        *,
        window: tuple[int, int] | None = None,
    ) -> FakeCursor:
        self._check("query", table)
        self.queries.append((table, selection, window))
        if table == Tables.INSTANCES:
            cursor = FakeCursor(self._instances(projection, selection, window))
        else:
            columns = ", ".join(f'"{column}"' for column in projection)
            sql = f"SELECT {columns} FROM {table}"
            if selection is not None:
                sql += f" WHERE {selection.clause}"
            if sort_order:
                sql += f" ORDER BY {sort_order}"
            with self._lock:
                rows = self._conn.execute(sql, selection.args if selection else ()).fetchall()
            cursor = FakeCursor([dict(row) for row in rows])
        self.cursors.append(cursor)
        return cursor

    def insert(self, table: str, values: Mapping[str, Any]) -> str:
        self._check("insert", table)
        columns = ", ".join(f'"{column}"' for column in values)
        placeholders = ", ".join("?" for _ in values)
        with self._lock:
            cursor = self._conn.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", tuple(values.values())
            )
        return str(cursor.lastrowid)

    def bulk_insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> int:
        for row in rows:
            self.insert(table, row)
        return len(rows)

    def update(self, table: str, values: Mapping[str, Any], selection: Selection) -> int:
        self._check("update", table)
        assignments = ", ".join(f'"{column}" = ?' for column in values)
        with self._lock:
            cursor = self._conn.execute(
                f"UPDATE {table} SET {assignments} WHERE {selection.clause}",
                tuple(values.values()) + selection.args,
            )
        return cursor.rowcount

    def delete(self, table: str, selection: Selection) -> int:
        self._check("delete", table)
        with self._lock:
            cursor = self._conn.execute(f"DELETE FROM {table} WHERE {selection.clause}", selection.args)
        return cursor.rowcount

    # Internal helpers ----------------------------------------------------------
    def _check(self, action: str, table: str) -> None:
        if (action, table) in self.fail_on:
            raise RuntimeError(f"provider unavailable: {action} {table}")

    def _instances(
        self,
        projection: Sequence[str],
        selection: Selection | None,
        window: tuple[int, int] | None,
    ) -> list[dict[str, Any]]:
        assert selection is not None and window is not None
        event_id = selection.args[0]
        begin, end = window
        matching = [
            row
            for row in self.instances
            if row[Instances.EVENT_ID] == event_id
            and row[Instances.DELETED] != 1
            and row[Instances.BEGIN] <= end
            and row[Instances.END] >= begin
        ]
        matching.sort(key=lambda row: row[Instances.BEGIN])
        return [{column: row[column] for column in projection if column in row} for row in matching]


class FakePermissions:
    def __init__(self, granted: bool = True) -> None:
        self.granted = granted
        self.requests: list[tuple[str, ...]] = []

    def check(self, permission: str) -> bool:
        return self.granted

    def request(self, permissions: Sequence[str]) -> None:
        self.requests.append(tuple(permissions))


class RecordingDispatcher:
    def __init__(self) -> None:
        self.pending: list[Callable[[], None]] = []
        self._lock = threading.Lock()

    def post(self, callback: Callable[[], None]) -> None:
        with self._lock:
            self.pending.append(callback)

    def run_pending(self) -> int:
        with self._lock:
            callbacks, self.pending = self.pending, []
        for callback in callbacks:
            callback()
        return len(callbacks)


@pytest.fixture
def store() -> FakeCalendarStore:
    return FakeCalendarStore()


@pytest.fixture
def permissions() -> FakePermissions:
    return FakePermissions()


@pytest.fixture
def make_operations(store: FakeCalendarStore, permissions: FakePermissions):
    created: list[CalendarOperations] = []

    def _make(**config: Any) -> CalendarOperations:
        extra: dict[str, Any] = {}
        for key in ("dispatcher", "clock"):
            if key in config:
                extra[key] = config.pop(key)
        config.setdefault("time_zone", "UTC")
        operations = CalendarOperations(
            store,
            permissions=permissions,
            config=CalendarOperationsConfig(**config),
            **extra,
        )
        created.append(operations)
        return operations

    yield _make
    for operations in created:
        operations.close()


@pytest.fixture
def operations(make_operations) -> CalendarOperations:
    return make_operations()
