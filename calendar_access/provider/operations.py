from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Any, Callable, Iterable, Literal, Sequence, TypeVar

from dateutil.relativedelta import relativedelta
from dateutil.tz import tzlocal

from .contract import (
    CALENDAR_PERMISSIONS,
    Attendees,
    CalendarStore,
    Calendars,
    Events,
    ImmediateDispatcher,
    Instances,
    MainThreadDispatcher,
    PermissionService,
    Reminders,
    Row,
    Selection,
    Tables,
    attendee_by_email,
    attendees_of,
    event_by_id,
    events_in_calendar,
    events_in_range,
    instances_of,
    reminders_of,
)
from .mapper import (
    MissingColumnError,
    attendee_from_row,
    attendee_values,
    calendar_from_row,
    event_from_row,
    event_values,
    occurrence_from_row,
    reminder_from_row,
    reminder_values,
)
from .models import Attendee, Calendar, Event, Reminder

logger = logging.getLogger(__name__)

T = TypeVar("T")

PermissionPolicy = Literal["raise", "lenient"]
EnrichmentMode = Literal["sync", "background", "off"]


class CalendarAccessError(Exception):
    """Base error for calendar provider access issues."""


class PermissionDeniedError(CalendarAccessError):
    """Raised when the host has not granted read and write calendar access."""


class ProviderError(CalendarAccessError):
    """Raised when a call into the host calendar provider fails."""


class EventNotFoundError(CalendarAccessError):
    """Raised when an event lookup or update does not match exactly one row."""


@dataclass(slots=True)
class CalendarOperationsConfig:
    """Behavioral switches for :class:`CalendarOperations`.

    ``default_window_months`` bounds recurring event expansion when a caller
    reads events without a date range: occurrences are materialized from
    midnight ``N`` months ago until the last second of the day ``N`` months
    ahead, in the host's local time zone.
    """

    permission_policy: PermissionPolicy = "raise"
    enrichment: EnrichmentMode = "sync"
    enrichment_workers: int = 4
    reconcile_attendees: bool = True
    default_window_months: int = 6
    time_zone: str | None = None

    def __post_init__(self) -> None:
        if self.permission_policy not in ("raise", "lenient"):
            raise ValueError(f"Unknown permission policy: {self.permission_policy!r}")
        if self.enrichment not in ("sync", "background", "off"):
            raise ValueError(f"Unknown enrichment mode: {self.enrichment!r}")
        if self.enrichment_workers < 1:
            raise ValueError("enrichment_workers must be at least 1")
        if self.default_window_months < 0:
            raise ValueError("default_window_months must be non-negative")


Clock = Callable[[], datetime]


def _local_now() -> datetime:
    return datetime.now(tzlocal())


def _to_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class CalendarOperations:
    """Read/write façade over the host calendar provider."""

    def __init__(
        self,
        store: CalendarStore,
        *,
        permissions: PermissionService | None = None,
        dispatcher: MainThreadDispatcher | None = None,
        config: CalendarOperationsConfig | None = None,
        clock: Clock | None = None,
        logger_instance: logging.Logger | None = None,
    ) -> None:
        self.config = config or CalendarOperationsConfig()
        self._store = store
        self._permissions = permissions
        self._dispatcher = dispatcher or ImmediateDispatcher()
        self._clock = clock or _local_now
        self._logger = logger_instance or logger
        self._enrichment_pool: ThreadPoolExecutor | None = None
        self._background_worker: ThreadPoolExecutor | None = None

    # Authorization -----------------------------------------------------------------
    def has_permissions(self) -> bool:
        if self._permissions is None:
            return True
        return all(self._permissions.check(permission) for permission in CALENDAR_PERMISSIONS)

    def request_permissions(self) -> None:
        if self._permissions is None:
            return
        self._permissions.request(CALENDAR_PERMISSIONS)

    def _authorize(self, action: str) -> bool:
        if self.has_permissions():
            return True
        self.request_permissions()
        self._logger.warning("Calendar permissions missing, cannot %s", action)
        if self.config.permission_policy == "raise":
            raise PermissionDeniedError(f"Calendar permissions are required to {action}")
        return False

    # Calendars ---------------------------------------------------------------------
    def get_calendars(self) -> list[Calendar]:
        if not self._authorize("list calendars"):
            return []
        rows = self._rows("list calendars", Tables.CALENDARS, Calendars.PROJECTION)
        calendars = self._map_rows(rows, calendar_from_row, "calendar")
        self._logger.info("Loaded %s calendars", len(calendars))
        return calendars

    # Events ------------------------------------------------------------------------
    def get_all_events(self, calendar_id: str) -> list[Event]:
        return self.get_events(events_in_calendar(calendar_id))

    def get_events_by_date_range(self, calendar_id: str, start: int, end: int) -> list[Event]:
        if end < start:
            raise ValueError("end must not be before start")
        return self.get_events(events_in_range(calendar_id, start, end), start, end)

    def get_event(self, calendar_id: str, event_id: str) -> Event | None:
        if not self._authorize("read events"):
            return None
        events = self.get_events(event_by_id(calendar_id, event_id), expand_recurring=False)
        if len(events) != 1:
            raise EventNotFoundError(
                f"Expected one event {event_id} in calendar {calendar_id}, found {len(events)}"
            )
        return events[0]

    def get_events(
        self,
        selection: Selection,
        query_start: int | None = None,
        query_end: int | None = None,
        *,
        expand_recurring: bool = True,
    ) -> list[Event]:
        """Return events matching ``selection`` ordered by start.

        Recurring events are replaced by their occurrences between
        ``query_start`` and ``query_end``; a missing bound falls back to the
        configured default window.
        """

        if not self._authorize("read events"):
            return []
        self._logger.debug("Querying events with condition: %s %s", selection.clause, selection.args)
        rows = self._rows("query events", Tables.EVENTS, Events.PROJECTION, selection, Events.SORT_ORDER)

        events: list[Event] = []
        window: tuple[int, int] | None = None
        for row in rows:
            try:
                event = event_from_row(row)
            except (MissingColumnError, ValueError) as exc:
                self._logger.warning("Skipping event row %s: %s", row.get(Events.ID), exc)
                continue
            if expand_recurring and event.is_recurring:
                if window is None:
                    window = self._window(query_start, query_end)
                events.extend(self._expand(event, *window))
            else:
                events.append(event)

        self._enrich(events)
        return events

    def default_window(self) -> tuple[int, int]:
        now = self._clock()
        months = relativedelta(months=self.config.default_window_months)
        start = (now - months).replace(hour=0, minute=0, second=0, microsecond=0)
        end = (now + months).replace(hour=23, minute=59, second=59, microsecond=0)
        return _to_millis(start), _to_millis(end)

    def _window(self, query_start: int | None, query_end: int | None) -> tuple[int, int]:
        if query_start is not None and query_end is not None:
            return query_start, query_end
        default_start, default_end = self.default_window()
        return (
            default_start if query_start is None else query_start,
            default_end if query_end is None else query_end,
        )

    def _expand(self, master: Event, query_start: int, query_end: int) -> list[Event]:
        rows = self._rows(
            f"query instances of event {master.event_id}",
            Tables.INSTANCES,
            Instances.PROJECTION,
            instances_of(master.event_id or ""),
            Instances.SORT_ORDER,
            window=(query_start, query_end),
        )
        occurrences: list[Event] = []
        for row in rows:
            try:
                occurrence = occurrence_from_row(master, row)
            except (MissingColumnError, ValueError) as exc:
                self._logger.warning("Skipping instance row of event %s: %s", master.event_id, exc)
                continue
            if query_start <= occurrence.start <= query_end:
                occurrences.append(occurrence)
        self._logger.debug(
            "Expanded recurring event %s into %s instances", master.event_id, len(occurrences)
        )
        return occurrences

    def create_update_event(self, calendar_id: str, event: Event) -> Event:
        if not self._authorize("write events"):
            return event
        values = event_values(calendar_id, event, self._time_zone())
        if event.event_id is None:
            new_id = self._call("insert event", self._store.insert, Tables.EVENTS, values)
            event.event_id = str(new_id)
            self._logger.info("Created event %s in calendar %s", event.event_id, calendar_id)
            return event

        updated = self._call(
            f"update event {event.event_id}",
            self._store.update,
            Tables.EVENTS,
            values,
            event_by_id(calendar_id, event.event_id),
        )
        if not updated:
            raise EventNotFoundError(f"Event {event.event_id} not found in calendar {calendar_id}")
        self._logger.info("Updated event %s in calendar %s", event.event_id, calendar_id)
        return event

    def delete_event(self, calendar_id: str, event_id: str) -> bool:
        if not self._authorize("delete events"):
            return False
        deleted = self._call(
            f"delete event {event_id}",
            self._store.delete,
            Tables.EVENTS,
            event_by_id(calendar_id, event_id),
        )
        self._logger.info("Deleted %s rows for event %s", deleted, event_id)
        return deleted != 0

    # Reminders ---------------------------------------------------------------------
    def get_reminders(self, event_id: str) -> list[Reminder]:
        if not self._authorize("read reminders"):
            return []
        return self._read_reminders(event_id)

    def add_reminder(self, calendar_id: str, event_id: str, minutes: int) -> Event | None:
        if not self._authorize("write reminders"):
            return None
        reminder = Reminder(minutes=minutes)
        event = self.get_event(calendar_id, event_id)
        if event is None:
            return None
        self._call(
            f"insert reminder for event {event_id}",
            self._store.insert,
            Tables.REMINDERS,
            reminder_values(event_id, reminder),
        )
        if not event.has_alarm:
            self._call(
                f"flag alarm on event {event_id}",
                self._store.update,
                Tables.EVENTS,
                {Events.HAS_ALARM: 1},
                event_by_id(calendar_id, event_id),
            )
        event.has_alarm = True
        event.reminder = reminder
        self._logger.info("Added %s minute reminder to event %s", minutes, event_id)
        return event

    def update_reminder(self, calendar_id: str, event_id: str, minutes: int) -> int:
        if not self._authorize("write reminders"):
            return 0
        if minutes < 0:
            raise ValueError("Reminder minutes must be non-negative")
        self.get_event(calendar_id, event_id)
        return self._call(
            f"update reminders of event {event_id}",
            self._store.update,
            Tables.REMINDERS,
            {Reminders.MINUTES: minutes},
            reminders_of(event_id),
        )

    def delete_reminder(self, event_id: str) -> int:
        if not self._authorize("delete reminders"):
            return 0
        return self._call(
            f"delete reminders of event {event_id}",
            self._store.delete,
            Tables.REMINDERS,
            reminders_of(event_id),
        )

    # Attendees ---------------------------------------------------------------------
    def get_attendees(self, event_id: str) -> list[Attendee]:
        if not self._authorize("read attendees"):
            return []
        return self._read_attendees(event_id)

    def add_attendees(self, event_id: str, attendees: Sequence[Attendee]) -> int:
        if not self._authorize("write attendees"):
            return 0
        if not attendees:
            return 0
        return self._insert_attendees(event_id, attendees)

    def delete_attendee(self, event_id: str, attendee: Attendee) -> int:
        if not self._authorize("delete attendees"):
            return 0
        return self._call(
            f"delete attendee {attendee.email} of event {event_id}",
            self._store.delete,
            Tables.ATTENDEES,
            attendee_by_email(event_id, attendee.email),
        )

    def delete_all_attendees(self, event_id: str) -> int:
        if not self._authorize("delete attendees"):
            return 0
        return self._delete_attendees(event_id)

    # Lifecycle ---------------------------------------------------------------------
    def close(self) -> None:
        """Stop enrichment workers, waiting for queued lookups to finish."""

        for executor in (self._background_worker, self._enrichment_pool):
            if executor is not None:
                executor.shutdown(wait=True)
        self._background_worker = None
        self._enrichment_pool = None

    # Enrichment --------------------------------------------------------------------
    def _enrich(self, events: list[Event]) -> None:
        if not events or self.config.enrichment == "off":
            return
        if self.config.enrichment == "background":
            worker = self._get_background_worker()
            for event in events:
                worker.submit(self._enrich_in_background, event)
            return

        by_id: dict[str, list[Event]] = {}
        for event in events:
            by_id.setdefault(event.event_id or "", []).append(event)

        pool = self._get_enrichment_pool()
        lookups = {
            event_id: (
                pool.submit(self._read_reminders, event_id),
                pool.submit(self._read_attendees, event_id),
            )
            for event_id in by_id
        }
        for event_id, (reminders_future, attendees_future) in lookups.items():
            try:
                reminders = reminders_future.result()
                attendees = attendees_future.result()
            except CalendarAccessError as exc:
                self._logger.warning("Unable to enrich event %s: %s", event_id, exc)
                continue
            for event in by_id[event_id]:
                event.reminder = reminders[0] if reminders else None
                event.attendees = list(attendees)

    def _enrich_in_background(self, event: Event) -> None:
        event_id = event.event_id or ""
        try:
            reminders = self._read_reminders(event_id)
            self._dispatcher.post(
                partial(setattr, event, "reminder", reminders[0] if reminders else None)
            )
            attendees = self._read_attendees(event_id)
            self._dispatcher.post(partial(setattr, event, "attendees", attendees))
        except Exception as exc:
            self._logger.exception("Background enrichment of event %s failed: %s", event_id, exc)

    def _get_enrichment_pool(self) -> ThreadPoolExecutor:
        if self._enrichment_pool is None:
            self._enrichment_pool = ThreadPoolExecutor(
                max_workers=self.config.enrichment_workers,
                thread_name_prefix="calendar-enrichment",
            )
        return self._enrichment_pool

    def _get_background_worker(self) -> ThreadPoolExecutor:
        if self._background_worker is None:
            self._background_worker = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="calendar-background"
            )
        return self._background_worker

    # Internal helpers -------------------------------------------------------------
    def _read_reminders(self, event_id: str) -> list[Reminder]:
        rows = self._rows(
            f"query reminders of event {event_id}",
            Tables.REMINDERS,
            Reminders.PROJECTION,
            reminders_of(event_id),
        )
        return self._map_rows(rows, reminder_from_row, "reminder")

    def _read_attendees(self, event_id: str) -> list[Attendee]:
        rows = self._rows(
            f"query attendees of event {event_id}",
            Tables.ATTENDEES,
            Attendees.PROJECTION,
            attendees_of(event_id),
        )

        organizer: Attendee | None = None
        unique: dict[str, Attendee] = {}
        without_email: list[Attendee] = []
        for attendee in self._map_rows(rows, attendee_from_row, "attendee"):
            if attendee.is_organizer:
                if organizer is None:
                    organizer = attendee
                continue
            if attendee.email:
                unique.setdefault(attendee.email, attendee)
            else:
                without_email.append(attendee)

        if organizer is not None:
            unique.pop(organizer.email, None)
        attendees = sorted([*unique.values(), *without_email], key=lambda attendee: attendee.email)
        if organizer is not None:
            attendees.insert(0, organizer)

        if len(attendees) != len(rows) and self.config.reconcile_attendees:
            self._logger.warning(
                "Event %s has %s attendee rows for %s attendees, rewriting",
                event_id,
                len(rows),
                len(attendees),
            )
            self._delete_attendees(event_id)
            if attendees:
                self._insert_attendees(event_id, attendees)
        return attendees

    def _insert_attendees(self, event_id: str, attendees: Iterable[Attendee]) -> int:
        rows = [attendee_values(event_id, attendee) for attendee in attendees]
        inserted = self._call(
            f"insert attendees of event {event_id}",
            self._store.bulk_insert,
            Tables.ATTENDEES,
            rows,
        )
        self._logger.info("Inserted %s attendees for event %s", inserted, event_id)
        return inserted

    def _delete_attendees(self, event_id: str) -> int:
        return self._call(
            f"delete attendees of event {event_id}",
            self._store.delete,
            Tables.ATTENDEES,
            attendees_of(event_id),
        )

    def _rows(
        self,
        action: str,
        table: str,
        projection: Sequence[str],
        selection: Selection | None = None,
        sort_order: str | None = None,
        *,
        window: tuple[int, int] | None = None,
    ) -> list[Row]:
        cursor = self._call(
            action, self._store.query, table, projection, selection, sort_order, window=window
        )
        if cursor is None:
            self._logger.error("Provider returned no cursor, cannot %s", action)
            return []
        with closing(cursor):
            rows = self._call(action, lambda: [dict(row) for row in cursor])
        if not rows:
            self._logger.debug("No rows returned, %s", action)
        return rows

    def _map_rows(self, rows: Iterable[Row], mapper: Callable[[Row], T], kind: str) -> list[T]:
        records: list[T] = []
        for row in rows:
            try:
                records.append(mapper(row))
            except (MissingColumnError, ValueError) as exc:
                self._logger.warning("Skipping %s row: %s", kind, exc)
        return records

    def _call(self, action: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return func(*args, **kwargs)
        except CalendarAccessError:
            raise
        except Exception as exc:
            self._logger.exception("Failed to %s: %s", action, exc)
            raise ProviderError(f"Failed to {action}") from exc

    def _time_zone(self) -> str:
        if self.config.time_zone:
            return self.config.time_zone
        return self._clock().tzname() or "UTC"
