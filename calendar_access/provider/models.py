from __future__ import annotations

import re
from dataclasses import dataclass, replace

from .contract import Reminders

_NON_NAME = re.compile(r"((@.*)|[^a-zA-Z])+")


@dataclass(slots=True)
class Calendar:
    """A calendar visible to the host."""

    calendar_id: str
    name: str | None = None
    account_name: str | None = None
    owner_account: str | None = None
    access_level: int = 0


@dataclass(slots=True)
class Reminder:
    """Reminder fired ``minutes`` before the event starts."""

    minutes: int
    method: int = Reminders.METHOD_ALARM

    def __post_init__(self) -> None:
        if self.minutes < 0:
            raise ValueError("Reminder minutes must be non-negative")


@dataclass(slots=True)
class Attendee:
    """Event attendee.

    ``status`` and ``attendee_type`` are kept as the provider's raw values so
    that rewriting attendee rows does not lose them.
    """

    email: str
    name: str = ""
    attendee_id: str | None = None
    is_organizer: bool = False
    status: int | None = None
    attendee_type: int | None = None

    def __post_init__(self) -> None:
        if not self.name and self.email:
            self.name = name_from_email(self.email)


@dataclass(slots=True)
class Event:
    """A calendar event with epoch-millisecond bounds.

    An event without ``event_id`` is transient; the provider assigns the
    identifier once it is persisted.
    """

    title: str
    start: int
    end: int
    event_id: str | None = None
    description: str | None = None
    location: str | None = None
    url: str | None = None
    is_all_day: bool = False
    has_alarm: bool = False
    duration: int = 0
    recurrence_rule: str | None = None
    reminder: Reminder | None = None
    attendees: list[Attendee] | None = None

    def __post_init__(self) -> None:
        if not self.end and self.duration > 0:
            self.end = self.start + self.duration

    @property
    def is_persisted(self) -> bool:
        return self.event_id is not None

    @property
    def is_recurring(self) -> bool:
        return bool(self.recurrence_rule)

    def occurrence(self, begin: int, end: int) -> "Event":
        """Copy of this event moved to a single occurrence's bounds."""

        return replace(self, start=begin, end=end, duration=0, reminder=None, attendees=None)


def name_from_email(email: str) -> str:
    """Best-effort display name built from the local part of an address."""

    cleaned = _NON_NAME.sub(" ", email).strip()
    if not cleaned:
        return ""
    return cleaned[0].upper() + cleaned[1:]
