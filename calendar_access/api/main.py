"""REST bridge exposing the calendar provider façade to a host UI."""

from __future__ import annotations

from typing import Callable, List, Optional, TypeVar

from fastapi import FastAPI, HTTPException, Query, status
from pydantic import BaseModel, Field, model_validator

from ..provider.models import Attendee, Calendar, Event, Reminder
from ..provider.operations import (
    CalendarOperations,
    EventNotFoundError,
    PermissionDeniedError,
    ProviderError,
)

T = TypeVar("T")


class PermissionResponse(BaseModel):
    granted: bool


class CalendarResponse(BaseModel):
    calendar_id: str
    name: Optional[str]
    account_name: Optional[str]
    owner_account: Optional[str]
    access_level: int


class ReminderPayload(BaseModel):
    minutes: int = Field(ge=0)


class AttendeePayload(BaseModel):
    email: str = Field(min_length=1)
    name: str = ""
    is_organizer: bool = False
    status: Optional[int] = None
    attendee_type: Optional[int] = None

    def build_attendee(self) -> Attendee:
        return Attendee(
            email=self.email,
            name=self.name,
            is_organizer=self.is_organizer,
            status=self.status,
            attendee_type=self.attendee_type,
        )


class AttendeeResponse(AttendeePayload):
    attendee_id: Optional[str] = None


class AttendeesRequest(BaseModel):
    attendees: List[AttendeePayload]


class EventPayload(BaseModel):
    """Event fields accepted on create and update."""

    title: str
    start: int = Field(ge=0, description="Start in epoch milliseconds")
    end: int = Field(default=0, ge=0, description="End in epoch milliseconds")
    duration: int = Field(default=0, ge=0, description="Used when end is zero")
    description: Optional[str] = None
    location: Optional[str] = None
    url: Optional[str] = None
    is_all_day: bool = False
    has_alarm: bool = False

    @model_validator(mode="after")
    def _check_bounds(self) -> "EventPayload":
        if not self.end and not self.duration:
            raise ValueError("Events require an 'end' or a positive 'duration'")
        if self.end and self.end < self.start:
            raise ValueError("end must not be before start")
        return self

    def build_event(self, event_id: Optional[str] = None) -> Event:
        return Event(
            event_id=event_id,
            title=self.title,
            start=self.start,
            end=self.end,
            duration=self.duration,
            description=self.description,
            location=self.location,
            url=self.url,
            is_all_day=self.is_all_day,
            has_alarm=self.has_alarm,
        )


class EventResponse(BaseModel):
    event_id: Optional[str]
    title: str
    start: int
    end: int
    description: Optional[str]
    location: Optional[str]
    url: Optional[str]
    is_all_day: bool
    has_alarm: bool
    recurrence_rule: Optional[str]
    reminder: Optional[ReminderPayload]
    attendees: Optional[List[AttendeeResponse]]


class CountResponse(BaseModel):
    count: int


class DeleteResponse(BaseModel):
    deleted: bool


def _serialize_calendar(calendar: Calendar) -> CalendarResponse:
    return CalendarResponse(
        calendar_id=calendar.calendar_id,
        name=calendar.name,
        account_name=calendar.account_name,
        owner_account=calendar.owner_account,
        access_level=calendar.access_level,
    )


def _serialize_reminder(reminder: Reminder) -> ReminderPayload:
    return ReminderPayload(minutes=reminder.minutes)


def _serialize_attendee(attendee: Attendee) -> AttendeeResponse:
    return AttendeeResponse(
        attendee_id=attendee.attendee_id,
        email=attendee.email,
        name=attendee.name,
        is_organizer=attendee.is_organizer,
        status=attendee.status,
        attendee_type=attendee.attendee_type,
    )


def _serialize_event(event: Event) -> EventResponse:
    attendees = None
    if event.attendees is not None:
        attendees = [_serialize_attendee(attendee) for attendee in event.attendees]
    return EventResponse(
        event_id=event.event_id,
        title=event.title,
        start=event.start,
        end=event.end,
        description=event.description,
        location=event.location,
        url=event.url,
        is_all_day=event.is_all_day,
        has_alarm=event.has_alarm,
        recurrence_rule=event.recurrence_rule,
        reminder=_serialize_reminder(event.reminder) if event.reminder else None,
        attendees=attendees,
    )


def _call(func: Callable[..., T], *args: object) -> T:
    try:
        return func(*args)
    except PermissionDeniedError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    except EventNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except ProviderError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def create_app(operations: CalendarOperations) -> FastAPI:
    app = FastAPI(title="Calendar Access API")

    def _load_event(calendar_id: str, event_id: str) -> Event:
        event = _call(operations.get_event, calendar_id, event_id)
        if event is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Event '{event_id}' was not found.",
            )
        return event

    @app.get("/api/permissions", response_model=PermissionResponse)
    def get_permissions() -> PermissionResponse:
        return PermissionResponse(granted=operations.has_permissions())

    @app.post("/api/permissions", status_code=status.HTTP_202_ACCEPTED, response_model=PermissionResponse)
    def request_permissions() -> PermissionResponse:
        operations.request_permissions()
        return PermissionResponse(granted=operations.has_permissions())

    @app.get("/api/calendars", response_model=List[CalendarResponse])
    def list_calendars() -> List[CalendarResponse]:
        return [_serialize_calendar(calendar) for calendar in _call(operations.get_calendars)]

    @app.get("/api/calendars/{calendar_id}/events", response_model=List[EventResponse])
    def list_events(
        calendar_id: str,
        start: Optional[int] = Query(default=None, ge=0),
        end: Optional[int] = Query(default=None, ge=0),
    ) -> List[EventResponse]:
        if (start is None) != (end is None):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Both 'start' and 'end' are required for a date range.",
            )
        if start is None:
            events = _call(operations.get_all_events, calendar_id)
        else:
            events = _call(operations.get_events_by_date_range, calendar_id, start, end)
        return [_serialize_event(event) for event in events]

    @app.get("/api/calendars/{calendar_id}/events/{event_id}", response_model=EventResponse)
    def get_event(calendar_id: str, event_id: str) -> EventResponse:
        return _serialize_event(_load_event(calendar_id, event_id))

    @app.post(
        "/api/calendars/{calendar_id}/events",
        status_code=status.HTTP_201_CREATED,
        response_model=EventResponse,
    )
    def create_event(calendar_id: str, payload: EventPayload) -> EventResponse:
        event = _call(operations.create_update_event, calendar_id, payload.build_event())
        return _serialize_event(event)

    @app.put("/api/calendars/{calendar_id}/events/{event_id}", response_model=EventResponse)
    def update_event(calendar_id: str, event_id: str, payload: EventPayload) -> EventResponse:
        event = _call(operations.create_update_event, calendar_id, payload.build_event(event_id))
        return _serialize_event(event)

    @app.delete("/api/calendars/{calendar_id}/events/{event_id}", response_model=DeleteResponse)
    def delete_event(calendar_id: str, event_id: str) -> DeleteResponse:
        deleted = _call(operations.delete_event, calendar_id, event_id)
        if not deleted:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Event '{event_id}' was not found.",
            )
        return DeleteResponse(deleted=deleted)

    @app.get(
        "/api/calendars/{calendar_id}/events/{event_id}/reminders",
        response_model=List[ReminderPayload],
    )
    def list_reminders(calendar_id: str, event_id: str) -> List[ReminderPayload]:
        _load_event(calendar_id, event_id)
        reminders = _call(operations.get_reminders, event_id)
        return [_serialize_reminder(reminder) for reminder in reminders]

    @app.post(
        "/api/calendars/{calendar_id}/events/{event_id}/reminders",
        status_code=status.HTTP_201_CREATED,
        response_model=EventResponse,
    )
    def add_reminder(calendar_id: str, event_id: str, payload: ReminderPayload) -> EventResponse:
        event = _call(operations.add_reminder, calendar_id, event_id, payload.minutes)
        if event is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Event '{event_id}' was not found.",
            )
        return _serialize_event(event)

    @app.put(
        "/api/calendars/{calendar_id}/events/{event_id}/reminders",
        response_model=CountResponse,
    )
    def update_reminder(calendar_id: str, event_id: str, payload: ReminderPayload) -> CountResponse:
        return CountResponse(
            count=_call(operations.update_reminder, calendar_id, event_id, payload.minutes)
        )

    @app.delete(
        "/api/calendars/{calendar_id}/events/{event_id}/reminders",
        response_model=CountResponse,
    )
    def delete_reminders(calendar_id: str, event_id: str) -> CountResponse:
        _load_event(calendar_id, event_id)
        return CountResponse(count=_call(operations.delete_reminder, event_id))

    @app.get("/api/events/{event_id}/attendees", response_model=List[AttendeeResponse])
    def list_attendees(event_id: str) -> List[AttendeeResponse]:
        return [_serialize_attendee(attendee) for attendee in _call(operations.get_attendees, event_id)]

    @app.post(
        "/api/events/{event_id}/attendees",
        status_code=status.HTTP_201_CREATED,
        response_model=CountResponse,
    )
    def add_attendees(event_id: str, payload: AttendeesRequest) -> CountResponse:
        attendees = [attendee.build_attendee() for attendee in payload.attendees]
        return CountResponse(count=_call(operations.add_attendees, event_id, attendees))

    @app.delete("/api/events/{event_id}/attendees/{email}", response_model=CountResponse)
    def delete_attendee(event_id: str, email: str) -> CountResponse:
        count = _call(operations.delete_attendee, event_id, Attendee(email=email))
        return CountResponse(count=count)

    return app
