"""Access layer for the host calendar provider."""

from .contract import (
    CalendarStore,
    ImmediateDispatcher,
    MainThreadDispatcher,
    PermissionService,
    Selection,
)
from .models import Attendee, Calendar, Event, Reminder
from .operations import (
    CalendarAccessError,
    CalendarOperations,
    CalendarOperationsConfig,
    EventNotFoundError,
    PermissionDeniedError,
    ProviderError,
)

__all__ = [
    "Attendee",
    "Calendar",
    "CalendarAccessError",
    "CalendarOperations",
    "CalendarOperationsConfig",
    "CalendarStore",
    "Event",
    "EventNotFoundError",
    "ImmediateDispatcher",
    "MainThreadDispatcher",
    "PermissionDeniedError",
    "PermissionService",
    "ProviderError",
    "Reminder",
    "Selection",
]
