"""
Email room synchronization.

SyncOrchestrator runs one pass for one room: fetch unread messages, parse
each with the AI collaborator and trigger calendar/CRM actions.
AutoSyncScheduler runs passes periodically and guards against overlapping
passes for the same room.
"""

import asyncio
import logging
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from meeting_ai.models import CRMContact, CRMSyncRequest, ParsedEmailData, ScheduleRequest

from .errors import SyncInProgress
from .providers.base import EmailFilter, EmailMessage, EmailProvider
from .rooms import Room, RoomRegistry

logger = logging.getLogger(__name__)

# Auto-scheduling needs strictly more than this
MEETING_CONFIDENCE_THRESHOLD = 0.70
MEETING_DURATION = timedelta(minutes=60)
MEETING_LOCATION = 'Video Conference'


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ParsedEmailResult:
    message_id: str
    room_id: str
    parsed_data: Optional[ParsedEmailData] = None
    ai_processed: bool = False
    meeting_scheduled: bool = False
    calendar_event_id: Optional[str] = None
    crm_synced: bool = False
    processed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'message_id': self.message_id,
            'room_id': self.room_id,
            'parsed_data': self.parsed_data.to_dict() if self.parsed_data else None,
            'ai_processed': self.ai_processed,
            'meeting_scheduled': self.meeting_scheduled,
            'calendar_event_id': self.calendar_event_id,
            'crm_synced': self.crm_synced,
            'processed_at': self.processed_at.isoformat() if self.processed_at else None,
        }


@dataclass
class SyncStatus:
    """
    Progress of one sync pass.

    synced_messages counts messages looked at (parse attempted), not
    messages that produced an action.
    """
    room_id: str
    is_syncing: bool = False
    last_sync_time: Optional[datetime] = None
    total_messages: int = 0
    synced_messages: int = 0
    errors: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    results: List[ParsedEmailResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'room_id': self.room_id,
            'is_syncing': self.is_syncing,
            'last_sync_time': self.last_sync_time.isoformat() if self.last_sync_time else None,
            'total_messages': self.total_messages,
            'synced_messages': self.synced_messages,
            'errors': list(self.errors),
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'results': [r.to_dict() for r in self.results],
        }


class SyncOrchestrator:
    """
    Runs sync passes. Does not guard against concurrent passes for a room;
    use AutoSyncScheduler.request_sync for guarded entry.
    """

    def __init__(
        self,
        registry: RoomRegistry,
        get_provider: Callable[[str], EmailProvider],
        parser,
        calendar=None,
        crm=None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize the orchestrator.

        Args:
            registry: Room registry
            get_provider: Returns the adapter for a provider id
            parser: AI parser exposing async parse_email(text)
            calendar: Calendar collaborator (optional)
            crm: CRM collaborator (optional)
            clock: Current time source
        """
        self.registry = registry
        self.get_provider = get_provider
        self.parser = parser
        self.calendar = calendar
        self.crm = crm
        self.clock = clock
        self._statuses: Dict[str, SyncStatus] = {}

    def get_status(self, room_id: str) -> Optional[SyncStatus]:
        status = self._statuses.get(room_id)
        return deepcopy(status) if status else None

    async def sync_room(self, room_id: str) -> SyncStatus:
        """
        Run one sync pass for a room.

        Fetch failures end the pass with the error recorded; per-message
        failures are recorded and the pass continues.

        Raises:
            RoomNotFound: unknown room id
        """
        room = self.registry.get_room(room_id)
        status = SyncStatus(room_id=room_id, is_syncing=True, started_at=self.clock())
        self._statuses[room_id] = status
        logger.info(f"Starting sync for room {room.name}")

        provider = self.get_provider(room.provider_id)
        provider.bind_room(room_id)

        try:
            messages = await provider.list_messages(EmailFilter(is_read=False))
        except Exception as e:
            logger.error(f"Room sync failed for {room_id}: {e}")
            status.errors.append(f"Sync failed: {e}")
            status.finished_at = self.clock()
            status.is_syncing = False
            return deepcopy(status)

        status.total_messages = len(messages)

        settings = room.settings
        if settings.ai_parsing and settings.meeting_detection:
            for message in messages:
                result = await self._process_message(message, room, status)
                if result is not None:
                    status.results.append(result)
                status.synced_messages += 1

        now = self.clock()
        unread = sum(1 for m in messages if not m.is_read)
        self.registry.record_sync(room_id, now, unread)
        status.last_sync_time = now
        status.finished_at = now
        status.is_syncing = False

        logger.info(
            f"Room sync completed: {room.name} "
            f"({status.synced_messages}/{status.total_messages} processed, {len(status.errors)} errors)"
        )
        return deepcopy(status)

    async def _process_message(
        self,
        message: EmailMessage,
        room: Room,
        status: SyncStatus,
    ) -> Optional[ParsedEmailResult]:
        try:
            response = await self.parser.parse_email(message.body.text or message.snippet)
        except Exception as e:
            logger.warning(f"Failed to process message {message.id} with AI: {e}")
            status.errors.append(f"Failed to process message {message.id}: {e}")
            return None

        if not response.success or response.data is None:
            logger.debug(f"No meeting data for message {message.id}")
            return None

        parsed = response.data
        result = ParsedEmailResult(
            message_id=message.id,
            room_id=room.id,
            parsed_data=parsed,
            ai_processed=True,
            processed_at=self.clock(),
        )

        if (room.settings.calendar_integration
                and self.calendar is not None
                and parsed.intent == 'schedule_meeting'
                and parsed.confidence > MEETING_CONFIDENCE_THRESHOLD):
            try:
                await self._schedule_meeting(parsed, result)
            except Exception as e:
                logger.warning(f"Failed to auto-schedule meeting for message {message.id}: {e}")
                status.errors.append(f"Failed to schedule meeting for message {message.id}: {e}")

        if room.settings.crm_sync and self.crm is not None and self.crm.has_connected_provider():
            try:
                crm_response = await self.crm.sync_contact(CRMSyncRequest(
                    contact=CRMContact(
                        name=parsed.contact_name,
                        email=parsed.email,
                        company=parsed.company,
                        source='email_parsing',
                    ),
                    email_content=message.body.text,
                ))
                result.crm_synced = crm_response.success
            except Exception as e:
                logger.warning(f"Failed to sync contact for message {message.id}: {e}")
                status.errors.append(f"Failed to sync contact for message {message.id}: {e}")

        return result

    async def _schedule_meeting(self, parsed: ParsedEmailData, result: ParsedEmailResult) -> None:
        logger.info(f"Auto-scheduling meeting for: {parsed.contact_name}")
        availability = await self.calendar.check_availability(parsed.datetime, parsed.participants)
        if not availability.suggested_times:
            logger.info(f"No free slot on {availability.date}")
            return

        start = datetime.fromisoformat(f"{availability.date}T{availability.suggested_times[0]}")
        event = await self.calendar.schedule_event(ScheduleRequest(
            title=f"Meeting with {parsed.contact_name} - {parsed.company}",
            start=start,
            end=start + MEETING_DURATION,
            attendees=list(parsed.participants),
            description=f"Auto-scheduled meeting based on email from {parsed.contact_name}",
            location=MEETING_LOCATION,
        ))
        result.meeting_scheduled = True
        result.calendar_event_id = event.id
        logger.info(f"Meeting scheduled: {event.title}")


class AutoSyncScheduler:
    """
    Periodic sync of every active room whose interval has elapsed.
    """

    def __init__(
        self,
        registry: RoomRegistry,
        orchestrator: SyncOrchestrator,
        tick_minutes: float = 5,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.registry = registry
        self.orchestrator = orchestrator
        self.tick_minutes = tick_minutes
        self.clock = clock
        self._in_flight: Set[str] = set()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    def is_syncing(self, room_id: str) -> bool:
        return room_id in self._in_flight

    async def request_sync(self, room_id: str):
        """
        Run a pass unless one is already running for the room.

        Raises:
            SyncInProgress: a pass for this room is in flight
            RoomNotFound: unknown room id
        """
        if room_id in self._in_flight:
            raise SyncInProgress(f"Sync already running for room {room_id}")

        self._in_flight.add(room_id)
        try:
            return await self.orchestrator.sync_room(room_id)
        finally:
            self._in_flight.discard(room_id)

    def _is_due(self, room: Room, now: datetime) -> bool:
        if room.last_sync_time is None:
            return True
        return now - room.last_sync_time >= timedelta(minutes=room.settings.sync_interval)

    async def tick(self) -> List[str]:
        """
        Sync every due room once. Rooms with a pass in flight are skipped.

        Returns:
            Ids of the rooms synced in this tick
        """
        synced = []
        now = self.clock()

        for room in self.registry.list_active_rooms():
            if not room.settings.auto_sync:
                continue
            if room.id in self._in_flight:
                logger.debug(f"Skipping {room.id}: sync in progress")
                continue
            if not self._is_due(room, now):
                continue

            try:
                await self.request_sync(room.id)
                synced.append(room.id)
            except SyncInProgress:
                logger.debug(f"Skipping {room.id}: sync in progress")
            except Exception as e:
                logger.error(f"Auto-sync failed for room {room.id}: {e}")

        return synced

    async def start(self):
        """Start periodic background sync."""
        if self._running:
            logger.warning("Auto-sync already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sync_loop())
        logger.info(f"Started auto-sync (every {self.tick_minutes} minutes)")

    async def stop(self):
        """Stop periodic background sync."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Stopped auto-sync")

    async def _sync_loop(self):
        """Main sync loop."""
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Error in sync loop: {e}")

            # Wait for next tick
            await asyncio.sleep(self.tick_minutes * 60)

    def get_status(self) -> Dict[str, Any]:
        return {
            'running': self._running,
            'tick_minutes': self.tick_minutes,
            'in_flight': sorted(self._in_flight),
        }
