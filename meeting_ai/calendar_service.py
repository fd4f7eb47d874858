"""
Calendar collaborators used for auto-scheduling.

InMemoryCalendar answers availability with a business-hours slot scan and
keeps events in memory. GoogleCalendarService does the same against Google
Calendar through googleapiclient.
"""

import asyncio
import logging
import uuid
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build_from_document
from googleapiclient.discovery_cache import get_static_doc
from googleapiclient.errors import HttpError

from api.email.credentials import CredentialSession
from api.email.errors import NetworkOrProviderError, Unauthorized

from .models import Availability, CalendarEvent, ScheduleRequest, TimeSlot

logger = logging.getLogger(__name__)

CALENDAR_SCOPES = [
    'https://www.googleapis.com/auth/calendar.events',
    'https://www.googleapis.com/auth/calendar.readonly',
]

BUSINESS_START_HOUR = 9
BUSINESS_END_HOUR = 17
SUGGESTION_COUNT = 3

# Recurring commitments blocked every day
DEFAULT_BUSY_SLOTS = [('09:00', '09:30'), ('11:00', '12:00'), ('12:00', '13:00')]


def _to_minutes(value: str) -> int:
    hours, minutes = value.split(':')
    return int(hours) * 60 + int(minutes)


def _overlaps(a: Tuple[str, str], b: Tuple[str, str]) -> bool:
    return _to_minutes(a[0]) < _to_minutes(b[1]) and _to_minutes(b[0]) < _to_minutes(a[1])


def resolve_date(value: Optional[str], today: date) -> date:
    """Date part of an ISO date/datetime string; today when missing or unparseable."""
    if value:
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            logger.debug(f"Could not resolve meeting date from {value!r}")
    return today


def compute_availability(
    day: date,
    busy: Iterable[Tuple[str, str]],
    preferred_time: Optional[str] = None,
) -> Availability:
    """
    One-hour business-hours slots minus busy intervals.

    Suggested times are the first free slot starts; a free preferred_time is
    moved to the front.
    """
    busy = list(busy)
    business = [
        (f"{hour:02d}:00", f"{hour + 1:02d}:00")
        for hour in range(BUSINESS_START_HOUR, BUSINESS_END_HOUR)
    ]
    available = [slot for slot in business if not any(_overlaps(slot, b) for b in busy)]

    starts = [start for start, _ in available]
    if preferred_time and preferred_time in starts:
        starts.remove(preferred_time)
        starts.insert(0, preferred_time)

    slots = [TimeSlot(start, end, True) for start, end in available]
    slots.extend(TimeSlot(start, end, False) for start, end in busy)
    return Availability(
        date=day.isoformat(),
        slots=slots,
        suggested_times=starts[:SUGGESTION_COUNT],
    )


class InMemoryCalendar:
    """Calendar kept in process memory."""

    name = 'In-memory calendar'

    def __init__(
        self,
        busy_slots: Optional[List[Tuple[str, str]]] = None,
        today: Callable[[], date] = date.today,
    ):
        self.busy_slots = list(DEFAULT_BUSY_SLOTS if busy_slots is None else busy_slots)
        self.today = today
        self._events: Dict[str, CalendarEvent] = {}

    @property
    def is_connected(self) -> bool:
        return True

    def get_status(self) -> Dict[str, Any]:
        return {'name': self.name, 'connected': self.is_connected}

    async def connect(self) -> None:
        """Nothing to sign in to."""
        return None

    async def disconnect(self) -> None:
        return None

    def _busy_for(self, day: date) -> List[Tuple[str, str]]:
        busy = list(self.busy_slots)
        for event in self._events.values():
            if event.status == 'cancelled' or event.start.date() != day:
                continue
            busy.append((event.start.strftime('%H:%M'), event.end.strftime('%H:%M')))
        return busy

    async def check_availability(
        self,
        date: Optional[str],
        participants: List[str],
        preferred_time: Optional[str] = None,
    ) -> Availability:
        day = resolve_date(date, self.today())
        return compute_availability(day, self._busy_for(day), preferred_time)

    async def schedule_event(self, request: ScheduleRequest) -> CalendarEvent:
        event = CalendarEvent(
            id=uuid.uuid4().hex,
            title=request.title,
            start=request.start,
            end=request.end,
            attendees=list(request.attendees),
            location=request.location,
            description=request.description,
        )
        self._events[event.id] = event
        logger.info(f"Scheduled event '{event.title}' at {event.start.isoformat()}")
        return event

    async def get_events(self, start: datetime, end: datetime) -> List[CalendarEvent]:
        return sorted(
            (e for e in self._events.values()
             if e.status != 'cancelled' and start <= e.start <= end),
            key=lambda e: e.start,
        )

    async def cancel_event(self, event_id: str, reason: Optional[str] = None) -> bool:
        event = self._events.get(event_id)
        if event is None:
            return False
        event.status = 'cancelled'
        event.description = f"{event.description or ''}\n\nCancelled: {reason or 'Meeting cancelled'}".strip()
        return True


class GoogleCalendarService:
    """
    Google Calendar backed collaborator.

    Event times are naive local times interpreted in time_zone.
    """

    name = 'Google Calendar'

    def __init__(
        self,
        session: CredentialSession,
        time_zone: str = 'UTC',
        calendar_id: str = 'primary',
        service_factory: Optional[Callable[[str], Any]] = None,
    ):
        self.session = session
        self.time_zone = time_zone
        self.calendar_id = calendar_id
        self._service_factory = service_factory
        self._service = None
        self._service_token: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self.session.signed_in

    def get_status(self) -> Dict[str, Any]:
        return {'name': self.name, 'connected': self.is_connected, 'calendar_id': self.calendar_id}

    async def connect(self) -> None:
        """
        Sign in to Google Calendar (restore, silent, then consent flow).

        Raises:
            NotConfigured: no OAuth client for the calendar session
            UserCancelled: the consent flow was abandoned
        """
        await self.session.sign_in()
        logger.info("Google Calendar connected")

    async def disconnect(self) -> None:
        await self.session.revoke()
        self._service = None
        self._service_token = None
        logger.info("Google Calendar disconnected")

    def _get_service(self, token: str):
        if self._service is None or self._service_token != token:
            if self._service_factory is not None:
                self._service = self._service_factory(token)
            else:
                doc = get_static_doc('calendar', 'v3')
                self._service = build_from_document(doc, credentials=Credentials(token=token))
            self._service_token = token
        return self._service

    async def _execute(self, build_request: Callable[[Any], Any]) -> Dict[str, Any]:
        token = await self.session.get_access_token()
        service = self._get_service(token)
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, lambda: build_request(service).execute())
        except HttpError as e:
            if e.resp.status in (401, 403):
                self.session.invalidate()
                raise Unauthorized(f"Google Calendar rejected the token ({e.resp.status})", 'google_calendar')
            raise NetworkOrProviderError(f"Google Calendar error {e.resp.status}: {e}", 'google_calendar') from e

    def _localize(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=ZoneInfo(self.time_zone))
        return value

    async def check_availability(
        self,
        date: Optional[str],
        participants: List[str],
        preferred_time: Optional[str] = None,
    ) -> Availability:
        tz = ZoneInfo(self.time_zone)
        day = resolve_date(date, datetime.now(tz).date())
        day_start = datetime.combine(day, time.min, tzinfo=tz)
        day_end = day_start + timedelta(days=1)
        body = {
            'timeMin': day_start.isoformat(),
            'timeMax': day_end.isoformat(),
            'timeZone': self.time_zone,
            'items': [{'id': self.calendar_id}],
        }
        result = await self._execute(lambda s: s.freebusy().query(body=body))

        busy = []
        for interval in result.get('calendars', {}).get(self.calendar_id, {}).get('busy', []):
            busy_start = max(datetime.fromisoformat(interval['start'].replace('Z', '+00:00')).astimezone(tz), day_start)
            busy_end = min(datetime.fromisoformat(interval['end'].replace('Z', '+00:00')).astimezone(tz), day_end)
            end_label = '24:00' if busy_end == day_end else busy_end.strftime('%H:%M')
            busy.append((busy_start.strftime('%H:%M'), end_label))

        return compute_availability(day, busy, preferred_time)

    async def schedule_event(self, request: ScheduleRequest) -> CalendarEvent:
        body = {
            'summary': request.title,
            'description': request.description,
            'location': request.location,
            'start': {'dateTime': self._localize(request.start).isoformat(), 'timeZone': self.time_zone},
            'end': {'dateTime': self._localize(request.end).isoformat(), 'timeZone': self.time_zone},
            'attendees': [{'email': email} for email in request.attendees],
        }
        created = await self._execute(
            lambda s: s.events().insert(calendarId=self.calendar_id, body=body, sendUpdates='all')
        )
        logger.info(f"Created Google Calendar event {created.get('id')}")
        return CalendarEvent(
            id=created.get('id', ''),
            title=created.get('summary', request.title),
            start=request.start,
            end=request.end,
            attendees=list(request.attendees),
            location=request.location,
            description=request.description,
            status=created.get('status', 'confirmed'),
        )

    async def get_events(self, start: datetime, end: datetime) -> List[CalendarEvent]:
        result = await self._execute(
            lambda s: s.events().list(
                calendarId=self.calendar_id,
                timeMin=self._localize(start).isoformat(),
                timeMax=self._localize(end).isoformat(),
                singleEvents=True,
                orderBy='startTime',
            )
        )

        events = []
        for item in result.get('items', []):
            start_value = item.get('start', {}).get('dateTime')
            end_value = item.get('end', {}).get('dateTime')
            if not start_value or not end_value:
                # All-day events have no dateTime
                continue
            events.append(CalendarEvent(
                id=item.get('id', ''),
                title=item.get('summary', ''),
                start=datetime.fromisoformat(start_value.replace('Z', '+00:00')),
                end=datetime.fromisoformat(end_value.replace('Z', '+00:00')),
                attendees=[a.get('email', '') for a in item.get('attendees', [])],
                location=item.get('location'),
                description=item.get('description'),
                status=item.get('status', 'confirmed'),
            ))
        return events

    async def cancel_event(self, event_id: str, reason: Optional[str] = None) -> bool:
        try:
            await self._execute(
                lambda s: s.events().delete(calendarId=self.calendar_id, eventId=event_id, sendUpdates='all')
            )
            return True
        except NetworkOrProviderError as e:
            logger.error(f"Failed to cancel event {event_id}: {e}")
            return False
