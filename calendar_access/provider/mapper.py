"""Projection of provider rows into records, and of records into row values."""

from __future__ import annotations

from typing import Any, Mapping

from .contract import Attendees, Calendars, Events, Instances, Reminders, Row
from .models import Attendee, Calendar, Event, Reminder


class MissingColumnError(KeyError):
    """Raised when a row lacks a column the record cannot be built without."""


def _as_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def _as_int(value: Any) -> int:
    if value is None or value == "":
        return 0
    return int(value)


def _optional_int(value: Any) -> int | None:
    """Lenient read of a column the record can do without.

    Providers may hold non-numeric text in such columns (``duration`` is an
    RFC 2445 string like ``P3600S`` on some hosts); those read as missing.
    """

    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_bool(value: Any) -> bool:
    return (_optional_int(value) or 0) > 0


def calendar_from_row(row: Row) -> Calendar:
    if Calendars.ID not in row:
        raise MissingColumnError(Calendars.ID)
    return Calendar(
        calendar_id=str(row[Calendars.ID]),
        name=_as_str(row.get(Calendars.DISPLAY_NAME)),
        account_name=_as_str(row.get(Calendars.ACCOUNT_NAME)),
        owner_account=_as_str(row.get(Calendars.OWNER_ACCOUNT)),
        access_level=_optional_int(row.get(Calendars.ACCESS_LEVEL)) or 0,
    )


def event_from_row(row: Row) -> Event:
    missing = [column for column in Events.REQUIRED if column not in row]
    if missing:
        raise MissingColumnError(", ".join(missing))
    rrule = _as_str(row.get(Events.RRULE))
    return Event(
        event_id=str(row[Events.ID]),
        title=_as_str(row[Events.TITLE]) or "",
        description=_as_str(row.get(Events.DESCRIPTION)),
        start=_as_int(row[Events.DTSTART]),
        end=_as_int(row[Events.DTEND]),
        duration=_optional_int(row.get(Events.DURATION)) or 0,
        location=_as_str(row.get(Events.LOCATION)),
        url=_as_str(row.get(Events.CUSTOM_APP_URI)),
        is_all_day=_as_bool(row.get(Events.ALL_DAY)),
        has_alarm=_as_bool(row.get(Events.HAS_ALARM)),
        recurrence_rule=rrule or None,
    )


def occurrence_from_row(master: Event, row: Row) -> Event:
    if Instances.BEGIN not in row or Instances.END not in row:
        raise MissingColumnError(f"{Instances.BEGIN}, {Instances.END}")
    return master.occurrence(_as_int(row[Instances.BEGIN]), _as_int(row[Instances.END]))


def attendee_from_row(row: Row) -> Attendee:
    if Attendees.EMAIL not in row:
        raise MissingColumnError(Attendees.EMAIL)
    relationship = _optional_int(row.get(Attendees.RELATIONSHIP))
    return Attendee(
        attendee_id=_as_str(row.get(Attendees.ID)),
        name=_as_str(row.get(Attendees.NAME)) or "",
        email=_as_str(row[Attendees.EMAIL]) or "",
        is_organizer=relationship == Attendees.RELATIONSHIP_ORGANIZER,
        status=_optional_int(row.get(Attendees.STATUS)),
        attendee_type=_optional_int(row.get(Attendees.TYPE)),
    )


def reminder_from_row(row: Row) -> Reminder:
    if Reminders.MINUTES not in row:
        raise MissingColumnError(Reminders.MINUTES)
    method = _optional_int(row.get(Reminders.METHOD))
    return Reminder(
        minutes=_as_int(row[Reminders.MINUTES]),
        method=Reminders.METHOD_ALARM if method is None else method,
    )


# Record -> row values --------------------------------------------------------------
def event_values(calendar_id: str, event: Event, time_zone: str) -> dict[str, Any]:
    values: dict[str, Any] = {
        Events.DTSTART: event.start,
        Events.DTEND: event.end,
        Events.TITLE: event.title,
        Events.DESCRIPTION: event.description,
        Events.CALENDAR_ID: calendar_id,
        Events.TIMEZONE: time_zone,
        Events.ALL_DAY: int(event.is_all_day),
        Events.HAS_ALARM: int(event.has_alarm),
    }
    if event.location is not None:
        values[Events.LOCATION] = event.location
    if event.url is not None:
        values[Events.CUSTOM_APP_URI] = event.url
    return values


def attendee_values(event_id: str, attendee: Attendee) -> dict[str, Any]:
    values: dict[str, Any] = {
        Attendees.EVENT_ID: event_id,
        Attendees.NAME: attendee.name,
        Attendees.EMAIL: attendee.email,
        Attendees.RELATIONSHIP: (
            Attendees.RELATIONSHIP_ORGANIZER
            if attendee.is_organizer
            else Attendees.RELATIONSHIP_ATTENDEE
        ),
    }
    if attendee.status is not None:
        values[Attendees.STATUS] = attendee.status
    if attendee.attendee_type is not None:
        values[Attendees.TYPE] = attendee.attendee_type
    return values


def reminder_values(event_id: str, reminder: Reminder) -> Mapping[str, Any]:
    return {
        Reminders.EVENT_ID: event_id,
        Reminders.MINUTES: reminder.minutes,
        Reminders.METHOD: reminder.method,
    }
