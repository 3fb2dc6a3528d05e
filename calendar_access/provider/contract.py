"""Host calendar provider contract.

The façade never talks to a concrete calendar database. The host hands it a
:class:`CalendarStore` (tabular query/mutation endpoints), an optional
:class:`PermissionService` and a :class:`MainThreadDispatcher`. This module
also holds the provider's table and column names and the selection builder
used to compose parameterized predicates for those tables.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Mapping, Protocol, Sequence

Row = Mapping[str, Any]

# Permissions -----------------------------------------------------------------------
READ_CALENDAR = "READ_CALENDAR"
WRITE_CALENDAR = "WRITE_CALENDAR"
CALENDAR_PERMISSIONS = (WRITE_CALENDAR, READ_CALENDAR)


class Tables:
    CALENDARS = "calendars"
    EVENTS = "events"
    INSTANCES = "instances"
    ATTENDEES = "attendees"
    REMINDERS = "reminders"


class Calendars:
    ID = "_id"
    ACCOUNT_NAME = "account_name"
    DISPLAY_NAME = "calendar_displayName"
    OWNER_ACCOUNT = "ownerAccount"
    ACCESS_LEVEL = "calendar_access_level"

    PROJECTION = (ID, ACCOUNT_NAME, DISPLAY_NAME, OWNER_ACCOUNT, ACCESS_LEVEL)


class Events:
    ID = "_id"
    CALENDAR_ID = "calendar_id"
    TITLE = "title"
    DESCRIPTION = "description"
    LOCATION = "eventLocation"
    CUSTOM_APP_URI = "customAppUri"
    DTSTART = "dtstart"
    DTEND = "dtend"
    DURATION = "duration"
    ALL_DAY = "allDay"
    HAS_ALARM = "hasAlarm"
    RRULE = "rrule"
    DELETED = "deleted"
    TIMEZONE = "eventTimezone"

    PROJECTION = (
        ID,
        TITLE,
        DESCRIPTION,
        LOCATION,
        CUSTOM_APP_URI,
        DTSTART,
        DTEND,
        ALL_DAY,
        DURATION,
        HAS_ALARM,
        RRULE,
    )
    REQUIRED = (ID, TITLE, DTSTART, DTEND)
    SORT_ORDER = f"{DTSTART} ASC"


class Instances:
    EVENT_ID = "event_id"
    TITLE = "title"
    BEGIN = "begin"
    END = "end"
    LOCATION = "eventLocation"
    ALL_DAY = "allDay"
    DELETED = "deleted"

    PROJECTION = (EVENT_ID, TITLE, BEGIN, END, LOCATION, ALL_DAY)
    SORT_ORDER = f"{BEGIN} ASC"


class Attendees:
    ID = "_id"
    EVENT_ID = "event_id"
    NAME = "attendeeName"
    EMAIL = "attendeeEmail"
    RELATIONSHIP = "attendeeRelationship"
    STATUS = "attendeeStatus"
    TYPE = "attendeeType"

    RELATIONSHIP_ATTENDEE = 1
    RELATIONSHIP_ORGANIZER = 2

    PROJECTION = (EVENT_ID, ID, NAME, EMAIL, RELATIONSHIP, STATUS, TYPE)


class Reminders:
    ID = "_id"
    EVENT_ID = "event_id"
    METHOD = "method"
    MINUTES = "minutes"

    METHOD_ALARM = 4

    PROJECTION = (EVENT_ID, METHOD, MINUTES)


@dataclass(frozen=True)
class Selection:
    """A predicate clause with ``?`` placeholders and its bound arguments."""

    clause: str
    args: tuple[Any, ...] = field(default_factory=tuple)

    def __and__(self, other: "Selection") -> "Selection":
        return Selection(f"{self.clause} AND {other.clause}", self.args + other.args)

    def __or__(self, other: "Selection") -> "Selection":
        return Selection(f"{self.clause} OR {other.clause}", self.args + other.args)

    def grouped(self) -> "Selection":
        return Selection(f"({self.clause})", self.args)


def equals(column: str, value: Any) -> Selection:
    return Selection(f"{column} = ?", (value,))


def not_equals(column: str, value: Any) -> Selection:
    return Selection(f"{column} != ?", (value,))


def at_most(column: str, value: Any) -> Selection:
    return Selection(f"{column} <= ?", (value,))


def at_least(column: str, value: Any) -> Selection:
    return Selection(f"{column} >= ?", (value,))


def is_not_null(column: str) -> Selection:
    return Selection(f"{column} IS NOT NULL")


# Selections used by the façade --------------------------------------------------------
def events_in_calendar(calendar_id: str) -> Selection:
    return equals(Events.CALENDAR_ID, calendar_id) & not_equals(Events.DELETED, 1)


def events_in_range(calendar_id: str, start_ms: int, end_ms: int) -> Selection:
    overlapping = (at_most(Events.DTSTART, end_ms) & at_least(Events.DTEND, start_ms)).grouped()
    recurring = (
        is_not_null(Events.RRULE) & not_equals(Events.RRULE, "") & at_most(Events.DTSTART, end_ms)
    ).grouped()
    return events_in_calendar(calendar_id) & (overlapping | recurring).grouped()


def event_by_id(calendar_id: str, event_id: str) -> Selection:
    return equals(Events.CALENDAR_ID, calendar_id) & equals(Events.ID, event_id)


def instances_of(event_id: str) -> Selection:
    return equals(Instances.EVENT_ID, event_id) & not_equals(Instances.DELETED, 1)


def attendees_of(event_id: str) -> Selection:
    return equals(Attendees.EVENT_ID, event_id)


def attendee_by_email(event_id: str, email: str) -> Selection:
    return attendees_of(event_id) & equals(Attendees.EMAIL, email)


def reminders_of(event_id: str) -> Selection:
    return equals(Reminders.EVENT_ID, event_id)


# Host capabilities ---------------------------------------------------------------------
class Cursor(Protocol):
    """Result rows of a provider query. Must be closed by the reader."""

    def __iter__(self) -> Iterator[Row]:
        ...

    def close(self) -> None:
        ...


class CalendarStore(Protocol):
    """Tabular endpoints of the host calendar provider.

    ``window`` is only meaningful for the instances table, where it carries the
    ``(begin_ms, end_ms)`` bounds the provider materializes occurrences for.
    """

    def query(
        self,
        table: str,
        projection: Sequence[str],
        selection: Selection | None = None,
        sort_order: str | None = None,
        *,
        window: tuple[int, int] | None = None,
    ) -> Cursor | None:
        ...

    def insert(self, table: str, values: Mapping[str, Any]) -> str:
        """Insert one row and return the new row identifier."""
        ...

    def bulk_insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> int:
        ...

    def update(self, table: str, values: Mapping[str, Any], selection: Selection) -> int:
        ...

    def delete(self, table: str, selection: Selection) -> int:
        ...


class PermissionService(Protocol):
    def check(self, permission: str) -> bool:
        ...

    def request(self, permissions: Sequence[str]) -> None:
        ...


class MainThreadDispatcher(Protocol):
    def post(self, callback: Callable[[], None]) -> None:
        ...


class ImmediateDispatcher:
    """Dispatcher that runs callbacks on the calling thread."""

    def post(self, callback: Callable[[], None]) -> None:
        callback()
